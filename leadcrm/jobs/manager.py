"""
Import manager — creates import jobs and owns their pollers.

One manager is built per Flask app (app.extensions['import_manager']); it owns
the JobTracker and the map of still-active pollers. A poller is dropped from
the map as soon as its job reaches a terminal state.
"""
import logging
import threading
import time
from typing import Dict, List

from flask import current_app

from leadcrm.config import IMPORT_SOURCES
from leadcrm.jobs.poller import ImportPoller, PollerSettings
from leadcrm.jobs.scheduler import ThreadingScheduler
from leadcrm.jobs.tracker import COMPLETED, ERROR, Job, JobTracker
from leadcrm.services.lead_store import insert_or_skip
from leadcrm.services.notifications import notify_import_complete, notify_import_failed
from leadcrm.services.phantombuster import get_client

logger = logging.getLogger('jobs.manager')


class ImportManager:

    def __init__(self, tracker: JobTracker = None, client_factory=get_client,
                 persist=insert_or_skip, scheduler=None, settings: PollerSettings = None,
                 sources: Dict[str, str] = None, clock=time.monotonic):
        self.tracker = tracker or JobTracker()
        self.client_factory = client_factory
        self.persist = persist
        self.scheduler = scheduler or ThreadingScheduler()
        self.settings = settings or PollerSettings()
        self.sources = IMPORT_SOURCES if sources is None else sources
        self._clock = clock
        self._pollers: Dict[str, ImportPoller] = {}
        self._lock = threading.Lock()

    def resolve_automation(self, source=None, automation_id=None) -> str:
        if automation_id:
            return automation_id
        if not source:
            raise ValueError("Either 'source' or 'automation_id' is required")
        if source not in self.sources:
            raise ValueError(f"Unknown import source: {source}. Available: {sorted(self.sources)}")
        automation_id = self.sources[source]
        if not automation_id:
            raise ValueError(f"No PhantomBuster automation configured for source '{source}'")
        return automation_id

    def launch_import(self, source=None, automation_id=None, parameters=None) -> Job:
        """Create a queued job and start polling it in the background."""
        automation_id = self.resolve_automation(source, automation_id)
        job_id = self.tracker.create(automation_id=automation_id, source=source)

        poller = ImportPoller(
            job_id=job_id,
            automation_id=automation_id,
            parameters=parameters,
            source=source,
            tracker=self.tracker,
            client=self.client_factory(),
            persist=self.persist,
            scheduler=self.scheduler,
            settings=self.settings,
            clock=self._clock,
            on_finished=self._on_finished,
        )
        with self._lock:
            self._pollers[job_id] = poller
        poller.start()

        logger.info("Import launched for phantom %s", automation_id, extra={'job_id': job_id})
        return self.tracker.get(job_id)

    def get_status(self, job_id: str) -> dict:
        """Raises JobNotFound for unknown or evicted jobs."""
        return self.tracker.get(job_id).to_dict()

    def cancel(self, job_id: str) -> Job:
        """Cancel a running import. Cancelling a finished import changes nothing."""
        self.tracker.get(job_id)
        with self._lock:
            poller = self._pollers.get(job_id)
        if poller is not None:
            poller.cancel()
        return self.tracker.get(job_id)

    def list_jobs(self, limit: int = 20) -> List[dict]:
        return [job.to_dict() for job in self.tracker.list_recent(limit)]

    def active_count(self) -> int:
        with self._lock:
            return len(self._pollers)

    def shutdown(self):
        """Cancel every in-flight import (process exit, tests)."""
        with self._lock:
            pollers = list(self._pollers.values())
        for poller in pollers:
            poller.cancel()

    def _on_finished(self, job_id: str):
        with self._lock:
            self._pollers.pop(job_id, None)

        job = self.tracker.get(job_id)
        if job.status == COMPLETED:
            notify_import_complete(job)
        elif job.status == ERROR and job.message != 'cancelled':
            notify_import_failed(job)


def get_import_manager() -> ImportManager:
    """The ImportManager attached to the current Flask app."""
    return current_app.extensions['import_manager']
