"""
Result parser — normalizes PhantomBuster CSV / JSON artifacts into LeadRecords.

Export phantoms name their columns inconsistently ("Profile URL", "profileUrl",
"linkedin_profile_url", ...). Headers are canonicalized to camelCase and then
looked up through alias tables, so a new column spelling only needs one more
alias entry.

A bad row never aborts a parse: it is counted in ParseResult.malformed_count.
"""
import csv
import io
import json
import logging
import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from leadcrm.config import DEFAULT_REVIEW_STATUS

logger = logging.getLogger('services.result_parser')

CSV = 'csv'
JSON = 'json'


class MalformedPayloadError(Exception):
    """Raised when an artifact is not in an understood shape."""


# ── Lead record ───────────────────────────────────────────────────────────────

@dataclass
class LeadRecord:
    """One normalized prospect, prior to persistence."""
    linkedin_url: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    title: Optional[str] = None
    company: Optional[str] = None
    location: Optional[str] = None
    industry: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    connection_degree: Optional[str] = None
    profile_image: Optional[str] = None
    source: Optional[str] = None
    review_status: str = DEFAULT_REVIEW_STATUS

    def identity_key(self) -> Optional[str]:
        """
        Dedup identity: LinkedIn URL when present, else full name + company.

        A heuristic, not a hard key. The store enforces it with a unique
        constraint so concurrent imports stay safe.
        """
        if self.linkedin_url:
            return self.linkedin_url.lower()
        if self.full_name:
            return f"name:{self.full_name.strip().lower()}|{(self.company or '').strip().lower()}"
        return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# canonical field → camelCase header spellings seen in phantom exports
FIELD_ALIASES = {
    'linkedin_url': ['profileUrl', 'linkedinProfileUrl', 'linkedInProfileUrl', 'linkedinUrl',
                     'linkedInUrl', 'linkedin', 'url', 'profile', 'profileLink'],
    'first_name': ['firstName', 'firstname'],
    'last_name': ['lastName', 'lastname'],
    'full_name': ['fullName', 'name', 'scraperFullName'],
    'title': ['title', 'headline', 'linkedinHeadline', 'occupation', 'jobTitle'],
    'company': ['company', 'companyName', 'currentCompany', 'organization', 'jobCompany'],
    'location': ['location', 'city'],
    'industry': ['industry', 'companyIndustry'],
    'email': ['email', 'emailAddress', 'mail'],
    'phone': ['phone', 'phoneNumber', 'phoneNumbers'],
    'connection_degree': ['connectionDegree', 'degree', 'connection', 'connectionLevel'],
    'profile_image': ['profileImageUrl', 'imgUrl', 'profilePicture', 'profileImage'],
}

# "VP Sales at Acme Corp | Speaker" → "Acme Corp"
_TITLE_COMPANY_RE = re.compile(r'(?:\s+at\s+|@\s*)(.+?)(?:\s+[|•\-]\s+|$)', re.IGNORECASE)


# ── Normalization helpers ─────────────────────────────────────────────────────

def canonical_key(header: str) -> str:
    """'Profile URL' / 'profile_url' / 'ProfileUrl' → 'profileUrl'."""
    if not isinstance(header, str):
        return ''
    first, *rest = re.split(r'[\s_\-]+', header.strip().lstrip('\ufeff'))
    head = first.lower() if first.isupper() else first[:1].lower() + first[1:]
    return head + ''.join(word[:1].upper() + word[1:].lower() for word in rest)


def _clean(value) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    value = value.strip()
    return value or None


def normalize_linkedin_url(url: Optional[str]) -> Optional[str]:
    """Strip tracking query params, fragment and trailing slash."""
    url = _clean(url)
    if not url:
        return None
    parts = urlsplit(url)
    if not parts.netloc:
        return url.split('?', 1)[0].split('#', 1)[0].rstrip('/') or None
    path = parts.path.rstrip('/')
    return urlunsplit((parts.scheme or 'https', parts.netloc.lower(), path, '', ''))


def normalize_row(row: Dict[str, Any], source: Optional[str] = None) -> Optional[LeadRecord]:
    """
    Map one raw export row to a LeadRecord.

    Returns None when the row cannot be identified (no LinkedIn URL and no name).
    """
    by_key = {}
    for header, value in row.items():
        key = canonical_key(header).lower()
        if key and key not in by_key:
            by_key[key] = value

    values = {}
    for field_name, aliases in FIELD_ALIASES.items():
        for alias in aliases:
            value = _clean(by_key.get(alias.lower()))
            if value:
                values[field_name] = value
                break

    record = LeadRecord(source=source, **values)
    record.linkedin_url = normalize_linkedin_url(record.linkedin_url)

    if not record.full_name and (record.first_name or record.last_name):
        record.full_name = f"{record.first_name or ''} {record.last_name or ''}".strip()

    if not record.company and record.title:
        match = _TITLE_COMPANY_RE.search(record.title)
        if match:
            record.company = match.group(1).strip() or None

    if record.identity_key() is None:
        return None
    return record


# ── Parse result ──────────────────────────────────────────────────────────────

class ParseResult:
    """
    Lazy, finite, restartable sequence of LeadRecords.

    The artifact is already fully buffered, so every iteration re-walks it in
    artifact row order. malformed_count is computed on first access.
    """

    def __init__(self, rows_factory, source=None):
        self._rows_factory = rows_factory
        self._source = source
        self._counts: Optional[Tuple[int, int]] = None

    def _walk(self) -> Iterator[Tuple[Optional[LeadRecord], bool]]:
        for row in self._rows_factory():
            if row is None:
                yield None, True
                continue
            try:
                record = normalize_row(row, self._source)
            except Exception:
                logger.warning("Could not normalize row; counting as malformed", exc_info=True)
                record = None
            yield record, record is None

    def __iter__(self) -> Iterator[LeadRecord]:
        for record, malformed in self._walk():
            if not malformed:
                yield record

    def _count(self) -> Tuple[int, int]:
        if self._counts is None:
            valid = malformed = 0
            for _, bad in self._walk():
                if bad:
                    malformed += 1
                else:
                    valid += 1
            self._counts = (valid, malformed)
        return self._counts

    def __len__(self):
        return self._count()[0]

    @property
    def malformed_count(self) -> int:
        return self._count()[1]


# ── Format readers ────────────────────────────────────────────────────────────

def _csv_rows(text: str):
    """Yield dict rows, or None for a row whose column count differs from the header."""
    reader = csv.reader(io.StringIO(text.lstrip('\ufeff')))
    header = None
    while True:
        try:
            raw = next(reader)
        except StopIteration:
            return
        except csv.Error:
            logger.warning("Unreadable CSV line %d; counting as malformed", reader.line_num)
            if header is not None:
                yield None
            continue
        if not raw or not any(cell.strip() for cell in raw):
            continue
        if header is None:
            header = [h.strip().lower() for h in raw]
            continue
        if len(raw) != len(header):
            yield None
            continue
        yield dict(zip(header, raw))


def _json_rows(items: List[Any]):
    for item in items:
        yield item if isinstance(item, dict) else None


def parse(raw_payload, fmt: str, source: Optional[str] = None) -> ParseResult:
    """
    Parse a downloaded artifact.

    CSV payloads are text. JSON payloads may be text or an already-decoded
    structure, and must be a list of objects.
    """
    fmt = (fmt or '').lower()

    if fmt == CSV:
        if isinstance(raw_payload, bytes):
            raw_payload = raw_payload.decode('utf-8-sig', errors='replace')
        if not isinstance(raw_payload, str):
            raise MalformedPayloadError(f"CSV payload must be text, got {type(raw_payload).__name__}")
        text = raw_payload
        return ParseResult(lambda: _csv_rows(text), source=source)

    if fmt == JSON:
        data = raw_payload
        if isinstance(data, (bytes, str)):
            try:
                data = json.loads(data)
            except ValueError as e:
                raise MalformedPayloadError(f"JSON payload could not be decoded: {e}")
        if not isinstance(data, list):
            raise MalformedPayloadError(
                f"JSON payload must be a list of objects, got {type(data).__name__}"
            )
        items = list(data)
        return ParseResult(lambda: _json_rows(items), source=source)

    raise MalformedPayloadError(f"Unsupported result format: {fmt!r}")
