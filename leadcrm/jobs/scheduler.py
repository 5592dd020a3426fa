"""
Continuation scheduler for import pollers.

A poller never sleeps: each step schedules the next one through a scheduler
and keeps the returned handle, so cancelling the handle stops future ticks.
"""
import logging
import threading

logger = logging.getLogger('jobs.scheduler')


class Handle:
    """A pending delayed call that can be cancelled before it fires."""

    def __init__(self, timer: threading.Timer):
        self._timer = timer

    def cancel(self):
        self._timer.cancel()


class ThreadingScheduler:
    """Runs each continuation on a daemon threading.Timer."""

    def call_later(self, delay, fn, *args) -> Handle:
        timer = threading.Timer(max(0.0, delay), self._run, args=(fn, args))
        timer.daemon = True
        timer.start()
        return Handle(timer)

    @staticmethod
    def _run(fn, args):
        try:
            fn(*args)
        except Exception:
            logger.error("Scheduled callback %s failed", getattr(fn, '__name__', fn), exc_info=True)
