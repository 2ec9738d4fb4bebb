from __future__ import annotations

import logging
import threading
from typing import Optional

from tether.config_manager import ConfigManager
from tether.refresh_service import CalendarRefreshService

logger = logging.getLogger(__name__)


class RefreshScheduler:
    def __init__(self, refresh_service: CalendarRefreshService, config_manager: ConfigManager) -> None:
        self.refresh_service = refresh_service
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()
        self._trigger_reason = "manual"
        self._reason_lock = threading.Lock()
        self._wakeups: list[threading.Timer] = []

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="tether-refresh-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        with self._reason_lock:
            wakeups, self._wakeups = self._wakeups, []
        for timer in wakeups:
            timer.cancel()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self, reason: str = "manual") -> None:
        with self._reason_lock:
            self._trigger_reason = reason
        self._manual_trigger_event.set()

    def schedule_wakeup(self, delay_seconds: float) -> None:
        """Request a refresh once a snooze runs out; the periodic pass is the fallback."""
        timer = threading.Timer(max(0.0, float(delay_seconds)), self.trigger_manual, kwargs={"reason": "snooze-wakeup"})
        timer.daemon = True
        with self._reason_lock:
            self._wakeups = [item for item in self._wakeups if item.is_alive()]
            self._wakeups.append(timer)
        timer.start()

    def _interval_seconds(self) -> int:
        try:
            return max(30, int(self.config_manager.load().refresh.interval_seconds))
        except Exception:
            logger.exception("Could not read refresh interval; using 900 seconds")
            return 900

    def _loop(self) -> None:
        # Run one pass at startup so notifications are reconciled quickly.
        self.refresh_service.background_refresh(trigger="startup")

        while not self._stop_event.is_set():
            manual = self._manual_trigger_event.wait(timeout=self._interval_seconds())
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            if manual:
                with self._reason_lock:
                    reason, self._trigger_reason = self._trigger_reason, "manual"
                self.refresh_service.background_refresh(trigger=reason)
            else:
                self.refresh_service.background_refresh(trigger="scheduled")
