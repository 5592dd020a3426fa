"""
PhantomBuster API client — launch automations, poll containers, download results.

Thin by design: every method is one bounded network round trip and nothing is
retried here. Retry policy belongs to the import poller, which is why fetch
failures are split into TransientFetchError (try again next tick) and
PermanentFetchError (give up on the job).
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, NamedTuple, Optional
from urllib.parse import urlsplit

import requests

from leadcrm.config import (
    PHANTOMBUSTER_API_KEY, PHANTOMBUSTER_API_URL,
    PHANTOMBUSTER_REQUEST_TIMEOUT, PHANTOMBUSTER_DOWNLOAD_TIMEOUT,
)
from leadcrm.services.circuit_breaker import CircuitOpenError, get_breaker

logger = logging.getLogger('services.phantombuster')

CSV = 'csv'
JSON = 'json'


# ============================================================================
# ERRORS
# ============================================================================

class PhantomBusterError(Exception):
    """Base class for every PhantomBuster client failure."""
    def __init__(self, message, status=None, code=None):
        super().__init__(message)
        self.status = status
        self.code = code


class LaunchError(PhantomBusterError):
    """The remote side refused to start the automation."""


class FetchError(PhantomBusterError):
    """Container status could not be fetched."""


class TransientFetchError(FetchError):
    """Timeout, connection failure, 5xx/429 or open circuit — retry later."""


class PermanentFetchError(FetchError):
    """Non-retryable client error (bad API key, unknown container)."""


class DownloadError(PhantomBusterError):
    """Result artifact unreachable, or not in the declared format."""


class ServiceUnavailableError(PhantomBusterError):
    """Upstream did not give a usable answer (network, 5xx, 429, open circuit)."""


# ============================================================================
# CONTAINER STATUS
# ============================================================================

RUNNING_STATUSES = {'queued', 'starting', 'running', 'launching'}
FINISHED_STATUSES = {'finished', 'success', 'done'}


@dataclass
class ContainerStatus:
    """Snapshot of one remote container execution."""
    status: str
    exit_code: Optional[int] = None
    result_object: Any = None
    output: str = ''
    exit_message: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status in RUNNING_STATUSES and self.exit_code is None

    @property
    def is_terminal(self) -> bool:
        return (self.status in FINISHED_STATUSES or self.status == 'error'
                or self.exit_code is not None)

    @property
    def succeeded(self) -> bool:
        if self.status == 'error':
            return False
        if self.exit_code is not None:
            return self.exit_code == 0
        return self.status in FINISHED_STATUSES

    def failure_reason(self) -> str:
        """Best human-readable reason for a failed container."""
        if self.exit_message:
            return self.exit_message
        lines = [line.strip() for line in (self.output or '').splitlines() if line.strip()]
        for line in lines:
            if re.search(r'error|invalid|failed|missing|exception', line, re.IGNORECASE):
                return line
        if lines:
            return lines[-1]
        return 'Unknown error (check the PhantomBuster dashboard for this container)'


# ============================================================================
# RESULT URL EXTRACTION
# ============================================================================

_CSV_URL_PATTERNS = [
    re.compile(r'CSV saved at (https?://[^\s"\']+)', re.IGNORECASE),
    re.compile(r'saved at (https?://[^\s"\']+\.csv)', re.IGNORECASE),
    re.compile(r'(https?://[^\s"\']+\.csv)\b', re.IGNORECASE),
]
_JSON_URL_PATTERNS = [
    re.compile(r'JSON saved at (https?://[^\s"\']+)', re.IGNORECASE),
    re.compile(r'saved at (https?://[^\s"\']+\.json)', re.IGNORECASE),
    re.compile(r'(https?://[^\s"\']+\.json)\b', re.IGNORECASE),
]


def detect_format(url: Optional[str]) -> Optional[str]:
    """csv / json from the URL path extension, else None."""
    if not url or not isinstance(url, str):
        return None
    path = urlsplit(url.strip()).path.lower()
    if path.endswith('.csv'):
        return CSV
    if path.endswith('.json'):
        return JSON
    return None


class ResultFile(NamedTuple):
    url: str
    format: str


# Keys under which a resultObject may carry the result rows themselves
INLINE_RESULT_KEYS = ('data', 'result', 'output', 'rows', 'profiles', 'leads', 'items', 'results')


def _is_http_url(value) -> bool:
    return isinstance(value, str) and value.startswith(('http://', 'https://'))


def _log_files(output: Optional[str]) -> Dict[str, str]:
    """format → first URL the log announces for it."""
    found = {}
    if not output or not isinstance(output, str):
        return found
    for fmt, patterns in ((CSV, _CSV_URL_PATTERNS), (JSON, _JSON_URL_PATTERNS)):
        for pattern in patterns:
            match = pattern.search(output)
            if match:
                found[fmt] = match.group(1).rstrip('.,;)')
                break
    return found


def _decode_result_object(result_object: Any) -> Any:
    """A bare URL stays a string; any other string is decoded as JSON (None if it isn't)."""
    if not isinstance(result_object, str):
        return result_object
    candidate = result_object.strip()
    if _is_http_url(candidate):
        return candidate
    try:
        return json.loads(candidate)
    except ValueError:
        return None


def _structured_files(result_object: Any) -> Dict[str, str]:
    """format → URL named by the resultObject (bare URL or csvURL / jsonUrl keys)."""
    obj = _decode_result_object(result_object)
    if _is_http_url(obj):
        fmt = detect_format(obj)
        return {fmt: obj} if fmt else {}
    if not isinstance(obj, dict):
        return {}
    keys = {k.lower(): v for k, v in obj.items() if isinstance(k, str)}
    return {fmt: keys[key] for fmt, key in ((CSV, 'csvurl'), (JSON, 'jsonurl'))
            if _is_http_url(keys.get(key))}


def _first(found: Dict[str, str]) -> Optional[ResultFile]:
    for fmt in (CSV, JSON):
        if fmt in found:
            return ResultFile(found[fmt], fmt)
    return None


def extract_result_url(output: Optional[str]) -> Optional[ResultFile]:
    """
    Find the result artifact URL in a container's free-text log.

    Phantoms announce their files with sentences like "CSV saved at <url>".
    CSV wins over JSON: the CSV holds the full result history while the JSON
    may hold only the latest increment.
    """
    return _first(_log_files(output))


def structured_result_url(result_object: Any) -> Optional[ResultFile]:
    """
    Read the result file from the container's resultObject, when it has one.

    resultObject is either a bare URL or a JSON document (string or decoded)
    with csvURL / jsonUrl style keys.
    """
    return _first(_structured_files(result_object))


def select_result_file(result_object: Any, output: Optional[str]) -> Optional[ResultFile]:
    """
    Pick the file to import from everything the container points at.

    Format outranks origin: structured CSV, log CSV, structured JSON, log JSON.
    """
    structured, logged = _structured_files(result_object), _log_files(output)
    for fmt in (CSV, JSON):
        for found in (structured, logged):
            if fmt in found:
                return ResultFile(found[fmt], fmt)
    return None


def inline_result_rows(result_object: Any) -> Optional[list]:
    """
    Result rows carried inside the resultObject itself: a JSON list, or an
    object holding the list under one of INLINE_RESULT_KEYS. None when absent
    or empty.
    """
    obj = _decode_result_object(result_object)
    if isinstance(obj, list):
        return obj or None
    if isinstance(obj, dict):
        for key in INLINE_RESULT_KEYS:
            rows = obj.get(key)
            if isinstance(rows, list) and rows:
                return rows
    return None


# ============================================================================
# CLIENT
# ============================================================================

class PhantomBusterClient:
    """
    PhantomBuster v2 API client.

    Auth is the X-Phantombuster-Key header. API calls run through the
    'phantombuster' circuit breaker, artifact downloads through
    'phantombuster_download'.
    """

    def __init__(self, api_key: str, base_url: str = PHANTOMBUSTER_API_URL,
                 request_timeout: float = PHANTOMBUSTER_REQUEST_TIMEOUT,
                 download_timeout: float = PHANTOMBUSTER_DOWNLOAD_TIMEOUT,
                 breaker=None, download_breaker=None):
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.request_timeout = request_timeout
        self.download_timeout = download_timeout
        self.breaker = breaker
        self.download_breaker = download_breaker
        self._session = requests.Session()

    @property
    def headers(self) -> Dict[str, str]:
        return {
            'X-Phantombuster-Key': self.api_key or '',
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def launch(self, automation_id: str, parameters: Optional[Dict] = None) -> str:
        """Start an automation run and return its container id."""
        body: Dict[str, Any] = {'id': automation_id}
        if parameters:
            body['arguments'] = parameters

        try:
            resp = self._api('POST', '/agents/launch', json=body)
        except ServiceUnavailableError as e:
            raise LaunchError(f"Could not launch phantom {automation_id}: {e}", status=e.status, code=e.code)

        if not resp.ok:
            code, message = _describe_error(resp)
            raise LaunchError(message, status=resp.status_code, code=code)

        data = _json_body(resp)
        container_id = data.get('containerId') if isinstance(data, dict) else None
        if not container_id:
            raise LaunchError(f"PhantomBuster did not return a container id for phantom {automation_id}",
                              status=resp.status_code)

        logger.info("Phantom %s launched → container %s", automation_id, container_id)
        return str(container_id)

    def fetch_status(self, container_id: str) -> ContainerStatus:
        """Fetch one container's status, exit code, result object and log output."""
        params = {'id': container_id, 'withOutput': 'true', 'withResultObject': 'true'}
        try:
            resp = self._api('GET', '/containers/fetch', params=params)
        except ServiceUnavailableError as e:
            raise TransientFetchError(str(e), status=e.status, code=e.code)

        if not resp.ok:
            code, message = _describe_error(resp)
            raise PermanentFetchError(message, status=resp.status_code, code=code)

        data = _json_body(resp)
        if not isinstance(data, dict):
            raise TransientFetchError(f"Unexpected container payload for {container_id}",
                                      status=resp.status_code)

        exit_code = data.get('exitCode')
        try:
            exit_code = int(exit_code) if exit_code is not None else None
        except (TypeError, ValueError):
            exit_code = None

        return ContainerStatus(
            status=str(data.get('status') or 'unknown').lower(),
            exit_code=exit_code,
            result_object=data.get('resultObject'),
            output=data.get('output') or '',
            exit_message=data.get('exitMessage'),
        )

    def download_result(self, url: str, fmt: Optional[str] = None):
        """
        Download a result artifact.

        Returns text for CSV and the decoded structure for JSON.
        """
        fmt = (fmt or detect_format(url) or '').lower()
        if fmt not in (CSV, JSON):
            raise DownloadError(f"Unknown result format for {url}")

        try:
            if self.download_breaker is not None:
                resp = self.download_breaker.call(self._get_artifact, url)
            else:
                resp = self._get_artifact(url)
        except CircuitOpenError as e:
            raise DownloadError(str(e))
        except requests.exceptions.RequestException as e:
            raise DownloadError(f"Result file unreachable: {e}")

        if not resp.ok:
            raise DownloadError(f"Result download failed with HTTP {resp.status_code}: {url}",
                                status=resp.status_code)

        content_type = (resp.headers.get('Content-Type') or '').split(';')[0].strip().lower()
        if _content_type_mismatch(content_type, fmt):
            raise DownloadError(f"Expected {fmt.upper()} but got content type '{content_type}' from {url}",
                                status=resp.status_code)

        if fmt == CSV:
            return resp.content.decode('utf-8-sig', errors='replace')

        try:
            return json.loads(resp.content.decode('utf-8-sig', errors='replace'))
        except ValueError as e:
            raise DownloadError(f"Result file is not valid JSON: {e}", status=resp.status_code)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _api(self, method: str, path: str, **kwargs) -> requests.Response:
        """One API round trip; 4xx responses are returned for the caller to classify."""
        url = f"{self.base_url}{path}"
        try:
            if self.breaker is not None:
                return self.breaker.call(self._send, method, url, **kwargs)
            return self._send(method, url, **kwargs)
        except CircuitOpenError as e:
            raise ServiceUnavailableError(str(e), code='PB_CIRCUIT_OPEN')
        except requests.exceptions.Timeout as e:
            raise ServiceUnavailableError(f"PhantomBuster request timed out: {e}", code='PB_TIMEOUT')
        except requests.exceptions.RequestException as e:
            raise ServiceUnavailableError(f"Network error talking to PhantomBuster: {e}",
                                          code='PB_NETWORK_ERROR')

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        resp = self._session.request(method, url, headers=self.headers,
                                       timeout=self.request_timeout, **kwargs)
        logger.debug("%s %s → %d", method, url, resp.status_code)
        if resp.status_code >= 500 or resp.status_code == 429:
            code, message = _describe_error(resp)
            raise ServiceUnavailableError(message, status=resp.status_code, code=code)
        return resp

    def _get_artifact(self, url: str) -> requests.Response:
        resp = self._session.get(url, timeout=self.download_timeout)
        if resp.status_code >= 500:
            raise DownloadError(f"Result host returned HTTP {resp.status_code}", status=resp.status_code)
        return resp


# ── Response helpers ─────────────────────────────────────────────────────────

def _json_body(resp):
    try:
        return resp.json()
    except ValueError:
        return None


def _describe_error(resp):
    """Map an error response to (code, human message)."""
    data = _json_body(resp) or {}
    details = data.get('details') if isinstance(data, dict) else None
    raw = ''
    if isinstance(data, dict):
        raw = data.get('error') or data.get('message') or ''
    if not raw and isinstance(details, dict):
        raw = details.get('message') or ''
    elif not raw and isinstance(details, str):
        raw = details
    raw = str(raw) if raw else ''
    slug = details.get('detailedErrorSlug') if isinstance(details, dict) else None
    status = resp.status_code

    if status in (400, 403, 429) and re.search(r'monthly quota for profile searches exceeded', raw, re.I):
        return ('PB_LINKEDIN_QUOTA_EXCEEDED',
                'LinkedIn has reached its monthly quota for profile searches on this account.')
    if status == 429 and (slug == 'maxParallelismReached' or re.search(r'maximum parallel executions', raw, re.I)):
        return ('PB_MAX_PARALLELISM',
                'PhantomBuster agent is already running and reached its maximum parallel executions limit.')
    if status == 404:
        return ('PB_NOT_FOUND', raw or 'PhantomBuster reports that this agent or container does not exist.')
    if status in (401, 403):
        return ('PB_AUTH_ERROR', f"PhantomBuster rejected the API key ({status})" + (f": {raw}" if raw else ''))
    return ('PB_API_ERROR', f"PhantomBuster API error ({status})" + (f": {raw}" if raw else ''))


def _content_type_mismatch(content_type: str, fmt: str) -> bool:
    if not content_type:
        return False
    if content_type == 'text/html':
        return True
    if fmt == CSV:
        return 'json' in content_type
    return content_type in ('text/csv', 'application/csv')


def get_client(api_key: str = None) -> PhantomBusterClient:
    """Build a client from config, wired to the registered circuit breakers."""
    return PhantomBusterClient(
        api_key=api_key or PHANTOMBUSTER_API_KEY,
        breaker=get_breaker('phantombuster'),
        download_breaker=get_breaker('phantombuster_download'),
    )
