"""
Import poller — drives one PhantomBuster import from launch to a terminal state.

    queued ──launch──▶ running ──tick…tick──▶ completed | error

Each step runs as a scheduled continuation and arms the next one only after
its own work is done, so updates to one job are strictly ordered. Two handles
are held per job: the pending step and the wall-clock deadline. Whoever
finishes the job first (a tick, the deadline, or cancel()) cancels both.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from leadcrm.config import (
    IMPORT_POLL_INTERVAL, IMPORT_POLL_TIMEOUT,
    IMPORT_MAX_TRANSIENT_RETRIES, IMPORT_EXPECTED_DURATION,
)
from leadcrm.jobs.tracker import COMPLETED, ERROR, RUNNING
from leadcrm.services.phantombuster import (
    JSON, DownloadError, LaunchError, PermanentFetchError, TransientFetchError,
    inline_result_rows, select_result_file, structured_result_url,
)
from leadcrm.services.result_parser import MalformedPayloadError, parse

logger = logging.getLogger('jobs.poller')

# Progress stays inside this band until the job actually completes
MIN_RUNNING_PROGRESS = 5
MAX_RUNNING_PROGRESS = 95


@dataclass
class PollerSettings:
    interval: float = IMPORT_POLL_INTERVAL
    timeout: float = IMPORT_POLL_TIMEOUT
    max_transient_retries: int = IMPORT_MAX_TRANSIENT_RETRIES
    expected_duration: float = IMPORT_EXPECTED_DURATION


def _empty_result() -> Dict[str, int]:
    return {'saved_count': 0, 'skipped_count': 0, 'malformed_count': 0}


class ImportPoller:
    """
    One poller per import job.

    persist(record, import_job_id=...) must return an object with an
    ``inserted`` flag; it is the lead store's insert-or-skip operation.
    """

    def __init__(self, job_id: str, automation_id: str, tracker, client,
                 persist: Callable, scheduler, settings: PollerSettings = None,
                 parameters: Optional[Dict] = None, source: Optional[str] = None,
                 clock=time.monotonic, on_finished: Callable = None):
        self.job_id = job_id
        self.automation_id = automation_id
        self.parameters = parameters or {}
        self.source = source
        self.tracker = tracker
        self.client = client
        self.persist = persist
        self.scheduler = scheduler
        self.settings = settings or PollerSettings()
        self.on_finished = on_finished
        self._clock = clock

        self.container_id: Optional[str] = None
        self._started_at: Optional[float] = None
        self._launched_at: Optional[float] = None
        self._transient_failures = 0
        # running totals, set once saving starts; attached to any terminal state
        self._counts: Optional[Dict[str, int]] = None

        self._lock = threading.Lock()
        self._step_handle = None
        self._deadline_handle = None
        self._done = False
        # while records are being saved, cancel / deadline park their outcome here
        self._saving = False
        self._interrupt = None

    @property
    def done(self) -> bool:
        return self._done

    def _log(self, level, msg, *args, **kwargs):
        logger.log(level, msg, *args, extra={'job_id': self.job_id}, **kwargs)

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start(self):
        """Schedule the launch step right away and arm the deadline."""
        self._started_at = self._clock()
        with self._lock:
            self._deadline_handle = self.scheduler.call_later(self.settings.timeout, self._on_deadline)
            self._step_handle = self.scheduler.call_later(0, self._run_step, self._launch)

    def cancel(self) -> bool:
        """Stop polling and fail the job. Returns False if it had already finished."""
        finished = self._finish(ERROR, 'cancelled')
        if finished:
            self._log(logging.INFO, "Import cancelled")
        return finished

    def _arm(self, step):
        with self._lock:
            if self._done:
                return
            self._step_handle = self.scheduler.call_later(self.settings.interval, self._run_step, step)

    def _run_step(self, step):
        if self._done:
            return
        try:
            step()
        except Exception as e:
            self._log(logging.ERROR, "Unexpected failure in %s", step.__name__, exc_info=True)
            self._finish(ERROR, f"Unexpected error: {e}")

    def _on_deadline(self):
        if self._finish(ERROR, f"timeout: import did not finish within {int(self.settings.timeout)}s"):
            self._log(logging.WARNING, "Import timed out (container=%s)", self.container_id)

    def _finish(self, status: str, message: str, result: Dict = None, anomaly: bool = False) -> bool:
        """
        Move the job to a terminal state. Only the first caller wins.

        Mid-save, the outcome is parked and the save loop finishes the job after
        the record in flight, so the summary matches what was stored.
        """
        with self._lock:
            if self._done:
                return False
            if self._saving:
                if self._interrupt is not None:
                    return False
                self._interrupt = (status, message)
                return True
            self._done = True
            handles = (self._step_handle, self._deadline_handle)
            self._step_handle = self._deadline_handle = None

        for handle in handles:
            if handle is not None:
                handle.cancel()

        if result is None and self._counts is not None:
            result = dict(self._counts)
        fields = {'status': status, 'message': message, 'anomaly': anomaly}
        if result is not None:
            fields['result'] = result
        self.tracker.update(self.job_id, **fields)

        self._log(logging.INFO if status == COMPLETED else logging.WARNING,
                  "Import %s: %s", status, message)
        if self.on_finished is not None:
            try:
                self.on_finished(self.job_id)
            except Exception:
                self._log(logging.ERROR, "on_finished callback failed", exc_info=True)
        return True

    # ── Steps ─────────────────────────────────────────────────────────

    def _launch(self):
        try:
            container_id = self.client.launch(self.automation_id, self.parameters)
        except LaunchError as e:
            self._finish(ERROR, f"Launch failed: {e}")
            return

        self.container_id = container_id
        self._launched_at = self._clock()
        self.tracker.update(self.job_id, status=RUNNING, container_id=container_id,
                            progress=MIN_RUNNING_PROGRESS,
                            message='Automation launched, waiting for results')
        self._log(logging.INFO, "Phantom %s running in container %s", self.automation_id, container_id)
        self._arm(self._tick)

    def _tick(self):
        if self._clock() - self._started_at >= self.settings.timeout:
            self._on_deadline()
            return

        try:
            status = self.client.fetch_status(self.container_id)
        except TransientFetchError as e:
            self._transient_failures += 1
            if self._transient_failures > self.settings.max_transient_retries:
                self._finish(ERROR, f"polling exhausted after {self._transient_failures} "
                                    f"consecutive status fetch failures: {e}")
                return
            self._log(logging.WARNING, "Status fetch failed (%d/%d), retrying: %s",
                      self._transient_failures, self.settings.max_transient_retries, e)
            self._arm(self._tick)
            return
        except PermanentFetchError as e:
            self._finish(ERROR, str(e))
            return

        self._transient_failures = 0

        if status.is_terminal:
            if status.succeeded:
                self._handle_results(status)
            else:
                self._finish(ERROR, f"Automation failed: {status.failure_reason()}")
            return

        elapsed = self._clock() - self._launched_at
        self.tracker.update(self.job_id, status=RUNNING,
                            progress=self._estimate_progress(elapsed),
                            message=f"Automation {status.status} ({int(elapsed)}s elapsed)")
        self._arm(self._tick)

    def _estimate_progress(self, elapsed: float) -> int:
        """Elapsed / expected duration, held below 100 until results are saved."""
        expected = self.settings.expected_duration or 1
        pct = int(elapsed / expected * 100)
        return max(MIN_RUNNING_PROGRESS, min(MAX_RUNNING_PROGRESS, pct))

    def _locate_results(self, status):
        """
        (result_file, inline_rows): a file named by resultObject (ranked with the
        log's), else rows carried inline in resultObject, else a file from the log.
        """
        if structured_result_url(status.result_object) is None:
            inline = inline_result_rows(status.result_object)
            if inline is not None:
                return None, inline
        return select_result_file(status.result_object, status.output), None

    def _handle_results(self, status):
        result_file, inline = self._locate_results(status)
        if result_file is None and inline is None:
            self._finish(COMPLETED, 'Automation finished but no result file was found in its output',
                         result=_empty_result(), anomaly=True)
            return

        counts = self._counts = _empty_result()
        try:
            if inline is not None:
                payload, fmt = inline, JSON
            else:
                self.tracker.update(self.job_id, message=f"Downloading {result_file.format.upper()} results")
                payload, fmt = self.client.download_result(result_file.url, result_file.format), result_file.format
            records = parse(payload, fmt, source=self.source)
            counts['malformed_count'] = records.malformed_count
            self.tracker.update(self.job_id, message=f"Saving {len(records)} leads")

            self._set_saving(True)
            try:
                for record in records:
                    if self._interrupt is not None:
                        break
                    outcome = self.persist(record, import_job_id=self.job_id)
                    counts['saved_count' if outcome.inserted else 'skipped_count'] += 1
            finally:
                self._set_saving(False)
        except DownloadError as e:
            self._finish(ERROR, f"Result download failed: {e}")
            return
        except MalformedPayloadError as e:
            self._finish(ERROR, f"Result file could not be parsed: {e}")
            return
        except Exception as e:
            self._log(logging.ERROR, "Saving leads failed after %d saved", counts['saved_count'], exc_info=True)
            self._finish(ERROR, f"Saving leads failed: {e}")
            return

        if self._interrupt is not None:
            self._finish(*self._interrupt)
            return

        saved, skipped = counts['saved_count'], counts['skipped_count']
        if saved == 0 and skipped == 0:
            self._finish(COMPLETED, 'Automation finished but the result file contained no leads', anomaly=True)
            return

        message = f"Imported {saved} new leads ({skipped} duplicates skipped)"
        if counts['malformed_count']:
            message += f", {counts['malformed_count']} malformed rows ignored"
        self._finish(COMPLETED, message)

    def _set_saving(self, saving: bool):
        with self._lock:
            self._saving = saving
