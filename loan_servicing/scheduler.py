"""
Overdue Sweep Scheduler

Runs LoanServicingEngine.sweep_overdue once a day at a fixed hour of the
business timezone on a daemon thread.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from .config import get_config


def seconds_until(hour: int, now: datetime) -> float:
    """Seconds from now to the next occurrence of hour:00 in now's timezone"""
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class OverdueSweepScheduler:
    """Daily sweep thread with start/stop/run_once"""

    def __init__(self, engine, hour: Optional[int] = None, tz_name: Optional[str] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        cfg = get_config()
        self.engine = engine
        self.hour = cfg.sweep_hour if hour is None else hour
        self.tz = ZoneInfo(tz_name or cfg.business_timezone)
        self.clock = clock or (lambda: datetime.now(self.tz))
        self.running = False
        self.last_result: Optional[int] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.logger = logging.getLogger("loan_servicing.scheduler")

    def run_once(self) -> int:
        """Run one sweep as of business today"""
        swept = self.engine.sweep_overdue(self.clock().date())
        self.last_result = swept
        return swept

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            wait = seconds_until(self.hour, self.clock())
            if self._stop_event.wait(wait):
                break
            try:
                self.run_once()
            except Exception as e:
                self.logger.error(f"Overdue sweep failed: {e}")

    def start(self) -> None:
        """Start the sweep thread"""
        if self.running:
            return
        self.running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="overdue-sweep")
        self._thread.daemon = True
        self._thread.start()
        self.logger.info(f"Overdue sweep scheduled daily at {self.hour:02d}:00 {self.tz.key}")

    def stop(self) -> None:
        """Stop the sweep thread"""
        self.running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None
        self.logger.info("Overdue sweep scheduler stopped")

    def is_running(self) -> bool:
        """Check if running"""
        return self.running
