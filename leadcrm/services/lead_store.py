"""
Lead store — dedup-safe inserts, filtered listing and review-status transitions.

Review status moves only between to_be_reviewed and a decision:

    to_be_reviewed ──▶ approved | rejected
    approved | rejected ──▶ to_be_reviewed

approved ↔ rejected directly is refused; the reviewer resets first.
"""
import logging
import math
from collections import namedtuple
from datetime import datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError

from leadcrm.config import DEFAULT_REVIEW_STATUS, REJECT_REASONS, REVIEW_STATUSES
from leadcrm.database import get_session
from leadcrm.models.lead import Lead
from leadcrm.models.lead_status_change import LeadStatusChange

logger = logging.getLogger('services.lead_store')

InsertResult = namedtuple('InsertResult', ['inserted', 'lead_id'])

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200

_ALLOWED_TRANSITIONS = {
    'to_be_reviewed': {'approved', 'rejected'},
    'approved': {'to_be_reviewed'},
    'rejected': {'to_be_reviewed'},
}

_LEAD_FIELDS = (
    'linkedin_url', 'first_name', 'last_name', 'full_name', 'title', 'company',
    'location', 'industry', 'email', 'phone', 'connection_degree',
    'profile_image', 'source',
)


class LeadNotFound(LookupError):
    def __init__(self, lead_id):
        self.lead_id = lead_id
        super().__init__(f"Lead {lead_id} not found")


class InvalidReviewTransition(Exception):
    """Raised when a review status change skips the to_be_reviewed step."""
    def __init__(self, lead_id, from_status, to_status):
        self.lead_id = lead_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Lead {lead_id} cannot move from {from_status} to {to_status}")


# ── Inserts ───────────────────────────────────────────────────────────────────

def insert_or_skip(record, import_job_id=None) -> InsertResult:
    """
    Insert a LeadRecord unless a lead with the same identity already exists.

    The existence check is an optimization; the unique constraint on
    dedup_key decides races between concurrent imports. Any other database
    error propagates.
    """
    dedup_key = record.identity_key()
    if not dedup_key:
        raise ValueError("Lead record has no identity (no LinkedIn URL and no name)")

    session = get_session()
    try:
        existing = session.execute(
            select(Lead.id).where(Lead.dedup_key == dedup_key)
        ).scalar_one_or_none()
        if existing is not None:
            return InsertResult(False, existing)

        lead = Lead(
            dedup_key=dedup_key,
            import_job_id=import_job_id,
            review_status=DEFAULT_REVIEW_STATUS,
            **{name: getattr(record, name) for name in _LEAD_FIELDS},
        )
        session.add(lead)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info("Lead %s inserted concurrently; skipping", dedup_key)
            existing = session.execute(
                select(Lead.id).where(Lead.dedup_key == dedup_key)
            ).scalar_one_or_none()
            return InsertResult(False, existing)
        return InsertResult(True, lead.id)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ── Queries ───────────────────────────────────────────────────────────────────

def _parse_date(value, name):
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise ValueError(f"Invalid {name}: {value!r} (expected ISO date)")


def _truthy(value):
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def _apply_filters(stmt, filters):
    status = filters.get('review_status')
    if status:
        statuses = [status] if isinstance(status, str) else list(status)
        stmt = stmt.where(Lead.review_status.in_(statuses))

    if filters.get('source'):
        stmt = stmt.where(Lead.source == filters['source'])

    for flag, column in (('has_email', Lead.email), ('has_linkedin', Lead.linkedin_url)):
        if filters.get(flag) is None or filters.get(flag) == '':
            continue
        present = (column.is_not(None)) & (column != '')
        stmt = stmt.where(present if _truthy(filters[flag]) else ~present)

    for name in ('title', 'company', 'location', 'industry'):
        if filters.get(name):
            stmt = stmt.where(getattr(Lead, name).ilike(f"%{filters[name]}%"))

    if filters.get('search'):
        term = f"%{filters['search']}%"
        stmt = stmt.where(or_(
            Lead.full_name.ilike(term),
            Lead.company.ilike(term),
            Lead.title.ilike(term),
        ))

    created_from = _parse_date(filters.get('created_from'), 'created_from')
    if created_from:
        stmt = stmt.where(Lead.created_at >= created_from)
    created_to = _parse_date(filters.get('created_to'), 'created_to')
    if created_to:
        stmt = stmt.where(Lead.created_at <= created_to)
    return stmt


def list_leads(filters=None, page=1, limit=DEFAULT_PAGE_SIZE):
    """Filtered, newest-first page of leads."""
    filters = filters or {}
    page = max(1, int(page or 1))
    limit = max(1, min(MAX_PAGE_SIZE, int(limit or DEFAULT_PAGE_SIZE)))

    session = get_session()
    try:
        base = _apply_filters(select(Lead), filters)
        total = session.execute(
            select(func.count()).select_from(base.subquery())
        ).scalar_one()
        rows = session.execute(
            base.order_by(Lead.created_at.desc(), Lead.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()
        return {
            'leads': [lead.to_dict() for lead in rows],
            'total': total,
            'page': page,
            'limit': limit,
            'pages': math.ceil(total / limit) if total else 0,
        }
    finally:
        session.close()


def get_lead(lead_id):
    """Return the lead as a dict, or None."""
    session = get_session()
    try:
        lead = session.get(Lead, lead_id)
        return lead.to_dict() if lead else None
    finally:
        session.close()


def review_stats():
    session = get_session()
    try:
        rows = session.execute(
            select(Lead.review_status, func.count()).group_by(Lead.review_status)
        ).all()
    finally:
        session.close()
    stats = {status: 0 for status in REVIEW_STATUSES}
    for status, count in rows:
        stats[status] = stats.get(status, 0) + count
    stats['total'] = sum(count for _, count in rows)
    return stats


# ── Review transitions ────────────────────────────────────────────────────────

def _validate_target(new_status, reason):
    if new_status not in REVIEW_STATUSES:
        raise ValueError(f"Invalid review status: {new_status}")
    if new_status == 'rejected' and reason not in REJECT_REASONS:
        raise ValueError(f"Invalid reject reason: {reason!r}. Allowed: {REJECT_REASONS}")


def _apply_transition(session, lead, new_status, reason=None, changed_by=None) -> bool:
    """Mutate lead in the session. Returns False for a same-status no-op."""
    current = lead.review_status or DEFAULT_REVIEW_STATUS
    if current == new_status:
        return False
    if new_status not in _ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidReviewTransition(lead.id, current, new_status)

    lead.review_status = new_status
    if new_status == DEFAULT_REVIEW_STATUS:
        lead.reviewed_at = None
        lead.rejected_reason = None
    else:
        lead.reviewed_at = datetime.now(timezone.utc)
        lead.rejected_reason = reason if new_status == 'rejected' else None

    session.add(LeadStatusChange(
        lead_id=lead.id,
        from_status=current,
        to_status=new_status,
        reason=reason if new_status == 'rejected' else None,
        changed_by=changed_by,
    ))
    return True


def change_review_status(lead_id, new_status, reason=None, changed_by=None):
    """
    Move one lead to new_status and return its updated dict.

    Raises LeadNotFound, InvalidReviewTransition, or ValueError for an unknown
    status / missing reject reason.
    """
    _validate_target(new_status, reason)
    session = get_session()
    try:
        lead = session.get(Lead, lead_id)
        if lead is None:
            raise LeadNotFound(lead_id)
        if _apply_transition(session, lead, new_status, reason, changed_by):
            session.commit()
            logger.info("Lead %s → %s", lead_id, new_status)
        return lead.to_dict()
    except (LeadNotFound, InvalidReviewTransition):
        session.rollback()
        raise
    except Exception:
        session.rollback()
        logger.error("Failed to change review status of lead %s", lead_id, exc_info=True)
        raise
    finally:
        session.close()


def bulk_change_review_status(lead_ids, new_status, reason=None, changed_by=None):
    """
    Apply one review transition to many leads in a single commit.

    Forbidden transitions are reported, not raised:
    {'updated': [...], 'unchanged': [...], 'invalid': [...], 'not_found': [...]}
    """
    _validate_target(new_status, reason)
    outcome = {'updated': [], 'unchanged': [], 'invalid': [], 'not_found': []}
    ids = list(dict.fromkeys(lead_ids or []))
    if not ids:
        return outcome

    session = get_session()
    try:
        leads = {
            lead.id: lead for lead in
            session.execute(select(Lead).where(Lead.id.in_(ids))).scalars()
        }
        for lead_id in ids:
            lead = leads.get(lead_id)
            if lead is None:
                outcome['not_found'].append(lead_id)
                continue
            try:
                changed = _apply_transition(session, lead, new_status, reason, changed_by)
            except InvalidReviewTransition:
                outcome['invalid'].append(lead_id)
                continue
            outcome['updated' if changed else 'unchanged'].append(lead_id)
        session.commit()
    except Exception:
        session.rollback()
        logger.error("Bulk review change to %s failed", new_status, exc_info=True)
        raise
    finally:
        session.close()

    logger.info("Bulk review → %s: %d updated, %d unchanged, %d invalid, %d not found",
                new_status, len(outcome['updated']), len(outcome['unchanged']),
                len(outcome['invalid']), len(outcome['not_found']))
    return outcome
