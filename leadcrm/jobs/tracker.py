"""
Job tracker — process-local registry of import jobs.

Owned by the ImportManager (no module-level global). The poller for a job is
its only writer; status requests read concurrently, so every access goes
through one lock and readers get copies.

Rules:
  - update() on an unknown id is a silent no-op (a late tick for a purged job
    is not an error)
  - terminal jobs (completed / error) are immutable
  - progress never decreases
  - terminal jobs are evicted after ``retention`` seconds
"""
import copy
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from leadcrm.config import IMPORT_JOB_RETENTION, TERMINAL_JOB_STATUSES

logger = logging.getLogger('jobs.tracker')

QUEUED = 'queued'
RUNNING = 'running'
COMPLETED = 'completed'
ERROR = 'error'

_UPDATABLE = ('status', 'progress', 'message', 'result', 'anomaly', 'container_id')


class JobNotFound(KeyError):
    """Raised by JobTracker.get() for an unknown (or evicted) job id."""
    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(job_id)

    def __str__(self):
        return f"Import job {self.job_id} not found"


@dataclass
class Job:
    """State of one PhantomBuster import invocation."""
    id: str
    automation_id: Optional[str] = None
    source: Optional[str] = None
    container_id: Optional[str] = None
    status: str = QUEUED
    progress: int = 0
    message: str = 'Queued'
    result: Optional[Dict[str, Any]] = None
    anomaly: bool = False
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    updated_at: Optional[str] = None
    finished_at: Optional[str] = None
    # monotonic timestamp used for eviction; not exposed
    finished_mono: Optional[float] = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'job_id': self.id,
            'automation_id': self.automation_id,
            'source': self.source,
            'container_id': self.container_id,
            'status': self.status,
            'progress': self.progress,
            'message': self.message,
            'anomaly': self.anomaly,
            'created_at': self.created_at,
            'updated_at': self.updated_at or self.created_at,
            'finished_at': self.finished_at,
        }
        if self.result is not None:
            data['result'] = dict(self.result)
        return data


class JobTracker:
    """Thread-safe job_id → Job mapping with TTL eviction of finished jobs."""

    def __init__(self, retention: float = IMPORT_JOB_RETENTION, clock=time.monotonic):
        self.retention = retention
        self._clock = clock
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def create(self, automation_id: str = None, source: str = None) -> str:
        """Insert a new queued job and return its id."""
        self.purge_expired()
        job_id = str(uuid.uuid4())
        with self._lock:
            self._jobs[job_id] = Job(id=job_id, automation_id=automation_id, source=source)
        logger.info("Import job created (automation=%s, source=%s)", automation_id, source,
                    extra={'job_id': job_id})
        return job_id

    def update(self, job_id: str, **partial) -> bool:
        """
        Merge partial state into a job.

        Returns True when the job changed. Unknown ids and terminal jobs are
        left alone without raising.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                logger.debug("Ignoring update for unknown job", extra={'job_id': job_id})
                return False
            if job.is_terminal:
                logger.debug("Ignoring update for terminal job (%s)", job.status, extra={'job_id': job_id})
                return False

            for key, value in partial.items():
                if key not in _UPDATABLE:
                    raise ValueError(f"Unknown job field: {key}")
                if key == 'progress':
                    value = max(job.progress, min(100, int(value)))
                setattr(job, key, value)

            job.updated_at = datetime.now().isoformat()
            if job.is_terminal:
                job.finished_at = job.updated_at
                job.finished_mono = self._clock()
                if job.status == COMPLETED:
                    job.progress = 100
            return True

    def get(self, job_id: str) -> Job:
        """Return a copy of the job, or raise JobNotFound."""
        self.purge_expired()
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            return copy.deepcopy(job)

    def list_recent(self, limit: int = 20) -> List[Job]:
        self.purge_expired()
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
            return [copy.deepcopy(j) for j in jobs[:limit]]

    def purge_expired(self) -> int:
        """Drop terminal jobs older than the retention window."""
        now = self._clock()
        with self._lock:
            expired = [
                job_id for job_id, job in self._jobs.items()
                if job.finished_mono is not None and now - job.finished_mono >= self.retention
            ]
            for job_id in expired:
                del self._jobs[job_id]
        if expired:
            logger.info("Evicted %d finished import job(s)", len(expired))
        return len(expired)

    def __len__(self):
        with self._lock:
            return len(self._jobs)
