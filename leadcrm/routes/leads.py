"""
Lead routes — listing, detail, and review-status changes.
"""
import logging
from flask import Blueprint, request, jsonify

from leadcrm.config import REJECT_REASONS
from leadcrm.services.lead_store import (
    InvalidReviewTransition, LeadNotFound,
    bulk_change_review_status, change_review_status,
    get_lead, list_leads, review_stats,
)

logger = logging.getLogger('routes.leads')

bp = Blueprint('leads', __name__)

FILTER_PARAMS = (
    'review_status', 'source', 'has_email', 'has_linkedin', 'title',
    'company', 'location', 'industry', 'search', 'created_from', 'created_to',
)


@bp.route('/api/leads')
def leads_list():
    """Filtered, paginated lead list."""
    filters = {name: request.args.get(name) for name in FILTER_PARAMS if request.args.get(name)}
    statuses = request.args.getlist('review_status')
    if len(statuses) > 1:
        filters['review_status'] = statuses

    page = request.args.get('page', 1, type=int)
    limit = request.args.get('limit', 50, type=int)
    try:
        return jsonify(list_leads(filters, page=page, limit=limit))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400


@bp.route('/api/leads/<int:lead_id>')
def lead_detail(lead_id):
    lead = get_lead(lead_id)
    if not lead:
        return jsonify({'error': 'Lead not found'}), 404
    return jsonify(lead)


@bp.route('/api/leads/<int:lead_id>/review', methods=['POST'])
def review_lead(lead_id):
    """Change one lead's review status: {review_status, reason?}."""
    data = request.get_json(silent=True) or {}
    try:
        lead = change_review_status(
            lead_id, data.get('review_status'),
            reason=data.get('reason'), changed_by=data.get('changed_by'),
        )
    except LeadNotFound as e:
        return jsonify({'error': str(e)}), 404
    except InvalidReviewTransition as e:
        return jsonify({'error': str(e)}), 409
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    return jsonify(lead)


def _bulk(new_status, reason=None):
    data = request.get_json(silent=True) or {}
    lead_ids = data.get('lead_ids') or data.get('leadIds')
    if not isinstance(lead_ids, list) or not lead_ids:
        return jsonify({'error': "'lead_ids' must be a non-empty list"}), 400
    try:
        lead_ids = [int(lead_id) for lead_id in lead_ids]
    except (TypeError, ValueError):
        return jsonify({'error': "'lead_ids' must contain integers"}), 400

    try:
        outcome = bulk_change_review_status(
            lead_ids, new_status, reason=reason, changed_by=data.get('changed_by'),
        )
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        logger.error("Bulk review change to %s failed", new_status, exc_info=True)
        return jsonify({'error': str(e)}), 500
    return jsonify(outcome)


@bp.route('/api/leads/approve', methods=['POST'])
def approve_leads():
    return _bulk('approved')


@bp.route('/api/leads/reject', methods=['POST'])
def reject_leads():
    data = request.get_json(silent=True) or {}
    reason = data.get('reason')
    if reason not in REJECT_REASONS:
        return jsonify({'error': f"Invalid reason. Allowed: {REJECT_REASONS}"}), 400
    return _bulk('rejected', reason=reason)


@bp.route('/api/leads/reset', methods=['POST'])
def reset_leads():
    return _bulk('to_be_reviewed')


@bp.route('/api/leads/review-stats')
def leads_review_stats():
    return jsonify(review_stats())
