"""
Centralized configuration — env vars, poller tuning, review constants.
"""
import os


def _float_env(name, default):
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return float(default)


def _int_env(name, default):
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return int(default)


# ── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FORMAT = os.getenv('LOG_FORMAT', 'text')

# ── Redis ─────────────────────────────────────────────────────────────────────
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

# ── PostgreSQL ────────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///local.db')
# create_all() on startup; off when the schema is managed outside the app
AUTO_CREATE_SCHEMA = os.getenv('AUTO_CREATE_SCHEMA', 'true').lower() in ('1', 'true', 'yes')

# ── PhantomBuster ─────────────────────────────────────────────────────────────
PHANTOMBUSTER_API_KEY = os.getenv('PHANTOMBUSTER_API_KEY')
PHANTOMBUSTER_API_URL = os.getenv('PHANTOMBUSTER_API_URL', 'https://api.phantombuster.com/api/v2')
PHANTOMBUSTER_REQUEST_TIMEOUT = _float_env('PHANTOMBUSTER_REQUEST_TIMEOUT', 30)
PHANTOMBUSTER_DOWNLOAD_TIMEOUT = _float_env('PHANTOMBUSTER_DOWNLOAD_TIMEOUT', 60)

# Circuit breakers: service name → (consecutive failures to open, seconds before a probe)
SERVICE_BREAKERS = {
    'phantombuster':          (_int_env('PHANTOMBUSTER_BREAKER_THRESHOLD', 5), _float_env('PHANTOMBUSTER_BREAKER_RESET', 120)),
    'phantombuster_download': (_int_env('DOWNLOAD_BREAKER_THRESHOLD', 3), _float_env('DOWNLOAD_BREAKER_RESET', 300)),
}

PHANTOM_CONNECTIONS_EXPORT_ID = os.getenv('PHANTOM_CONNECTIONS_EXPORT_ID')
PHANTOM_SEARCH_EXPORT_ID = os.getenv('PHANTOM_SEARCH_EXPORT_ID')

# Source tag → automation id launched for it
IMPORT_SOURCES = {
    'connections_export': PHANTOM_CONNECTIONS_EXPORT_ID,
    'search_export':      PHANTOM_SEARCH_EXPORT_ID,
}

# ── Import poller ─────────────────────────────────────────────────────────────
IMPORT_POLL_INTERVAL = _float_env('IMPORT_POLL_INTERVAL', 3)
IMPORT_POLL_TIMEOUT = _float_env('IMPORT_POLL_TIMEOUT', 600)
IMPORT_MAX_TRANSIENT_RETRIES = _int_env('IMPORT_MAX_TRANSIENT_RETRIES', 3)
IMPORT_EXPECTED_DURATION = _float_env('IMPORT_EXPECTED_DURATION', 120)
IMPORT_JOB_RETENTION = _float_env('IMPORT_JOB_RETENTION', 86400)

# ── Slack notifications ──────────────────────────────────────────────────────
SLACK_WEBHOOK_URL = os.getenv('SLACK_WEBHOOK_URL')

# ── Auth ─────────────────────────────────────────────────────────────────────
DASHBOARD_PASSWORD = os.getenv('DASHBOARD_PASSWORD')

# ── Import job status values ─────────────────────────────────────────────────
JOB_STATUSES = [
    'queued',
    'running',
    'completed',
    'error',
]
TERMINAL_JOB_STATUSES = ('completed', 'error')

# ── Lead review ──────────────────────────────────────────────────────────────
REVIEW_STATUSES = [
    'to_be_reviewed',
    'approved',
    'rejected',
]
DEFAULT_REVIEW_STATUS = 'to_be_reviewed'

REJECT_REASONS = [
    'not_icp',
    'low_quality',
    'duplicate',
    'wrong_geography',
    'other',
]
