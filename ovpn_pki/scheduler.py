import threading
from typing import Optional

import schedule

from .errors import PkiError
from .log import get_logger

logger = get_logger(__name__)

TICK_SECONDS = 30


class CrlRefreshScheduler:
    """Regenerates the CRL of one instance on a fixed interval."""

    def __init__(self, state, interval_hours: int = 24, tick: float = TICK_SECONDS):
        self.state = state
        self.interval_hours = interval_hours
        self.tick = tick
        self.scheduler = schedule.Scheduler()
        self.job = self.scheduler.every(interval_hours).hours.do(self.refresh)
        self._stop = threading.Event()
        self.thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def start(self) -> None:
        """Start the refresh thread"""
        if self.running:
            return
        self._stop.clear()
        self.thread = threading.Thread(target=self._run_scheduler, name="crl-refresh", daemon=True)
        self.thread.start()
        logger.info("CRL refresh scheduler started (every %d hours)", self.interval_hours)

    def stop(self) -> None:
        self._stop.set()
        if self.thread:
            self.thread.join(timeout=2)
        self.thread = None

    def _run_scheduler(self) -> None:
        while not self._stop.is_set():
            self.scheduler.run_pending()
            self._stop.wait(self.tick)

    def refresh(self) -> bool:
        """One refresh attempt; failures are logged and retried on the next run."""
        try:
            self.state.refresh_crl(cancel=self._stop)
        except PkiError as e:
            logger.warning("Scheduled CRL refresh failed: %s", e)
            return False
        return True

    def run_now(self) -> None:
        """Trigger every pending refresh immediately."""
        self.scheduler.run_all()
