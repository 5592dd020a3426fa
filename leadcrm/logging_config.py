"""
Logging setup, called once from create_app().

LOG_LEVEL picks the level (INFO when unset or unknown) and LOG_FORMAT picks
the output: ``text`` for a terminal, ``json`` for a log aggregator.

Import code logs with ``extra={'job_id': ...}`` so one import can be followed
across the poller, the PhantomBuster client and the lead store.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone

NO_JOB = '-'

TEXT_FORMAT = '[%(asctime)s] %(levelname)s %(name)s [job=%(job_id)s] %(message)s'
TEXT_DATEFMT = '%Y-%m-%d %H:%M:%S'

# Libraries whose INFO output drowns the import logs
QUIET_LOGGERS = ('urllib3', 'requests', 'sqlalchemy.engine', 'werkzeug')


class JSONFormatter(logging.Formatter):
    """One JSON object per line; job_id only appears on import records."""

    def format(self, record):
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        if getattr(record, 'job_id', NO_JOB) not in (None, NO_JOB):
            entry['job_id'] = record.job_id
        if record.exc_info and record.exc_info[0] is not None:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry)


class JobIdFilter(logging.Filter):

    def filter(self, record):
        if not hasattr(record, 'job_id'):
            record.job_id = NO_JOB
        return True


def _level_from_env():
    level = logging.getLevelName(os.getenv('LOG_LEVEL', 'INFO').upper())
    return level if isinstance(level, int) else logging.INFO


def _build_handler(level, log_format):
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(JobIdFilter())
    if log_format == 'json':
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt=TEXT_DATEFMT))
    return handler


def configure_logging(app=None):
    level = _level_from_env()
    log_format = os.getenv('LOG_FORMAT', 'text').lower()

    root = logging.getLogger()
    root.setLevel(level)
    # re-init replaces the handler instead of stacking a second one
    root.handlers.clear()
    root.addHandler(_build_handler(level, log_format))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if app is not None:
        app.logger.setLevel(level)
