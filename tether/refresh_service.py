from __future__ import annotations

import logging
import threading
import time
import traceback
from concurrent.futures import Future
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from tether.active_tracker import ActiveNotificationTracker
from tether.caldav_client import CalDAVService
from tether.config_manager import ConfigManager
from tether.dismissal_store import DismissalStore
from tether.event_processor import EventProcessor
from tether.identity import notification_id_for
from tether.models import AppConfig, RefreshResult, refresh_window, utc_now
from tether.state_store import StateStore, StorageError

logger = logging.getLogger(__name__)


def _display_timezone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown display timezone %r, falling back to UTC", name)
        return timezone.utc


class CalendarRefreshService:
    """Runs full reconciliation passes between the calendar and the notification sink.

    At most one pass runs at a time. A caller arriving while a pass is in
    flight waits for that pass and receives its result instead of starting
    another one.
    """

    def __init__(
        self,
        *,
        config_manager: ConfigManager,
        state_store: StateStore,
        dismissal_store: DismissalStore,
        tracker: ActiveNotificationTracker,
        sink: Any,
        calendar_source: Any = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.dismissal_store = dismissal_store
        self.tracker = tracker
        self.sink = sink
        self.calendar_source = calendar_source
        self._clock = clock
        self._pass_lock = threading.Lock()
        self._in_flight: Future[RefreshResult] | None = None

    def _calendar_service(self, config: AppConfig, display_tz: tzinfo) -> Any:
        if self.calendar_source is not None:
            return self.calendar_source
        return CalDAVService(config.caldav, local_tz=display_tz)

    def _log_cancel(self, title: str, key: str, notification_id: int) -> None:
        try:
            self.state_store.record_notification_event(
                event_type="cancelled",
                title=title,
                event_key=key,
                notification_id=notification_id,
                extra="Orphaned",
            )
        except StorageError as exc:
            logger.warning("Could not append cancel entry to notification log: %s", exc)

    def _collect_valid_keys(self, now: datetime, config: AppConfig) -> tuple[set[str] | None, int]:
        display_tz = _display_timezone(config.refresh.timezone)
        source = self._calendar_service(config, display_tz)
        try:
            calendars = source.list_calendars()
        except Exception as exc:
            logger.warning("Calendar list unavailable, leaving notifications untouched: %s", exc)
            return None, 0

        window_start, window_end = refresh_window(
            now,
            config.refresh.lookback_days,
            config.refresh.lookahead_days,
        )
        pending_ids = {item.notification_id for item in self.sink.list_pending()}
        processor = EventProcessor(
            dismissal_store=self.dismissal_store,
            tracker=self.tracker,
            sink=self.sink,
            state_store=self.state_store,
            first_run_timestamp=self.state_store.first_run_timestamp(),
            already_scheduled_ids=pending_ids,
            stale_event_days=config.refresh.stale_event_days,
            display_tz=display_tz,
        )

        valid_keys: set[str] = set()
        events_processed = 0
        for calendar in calendars:
            if not calendar.calendar_id:
                continue
            try:
                events = source.list_events(calendar.calendar_id, window_start, window_end)
            except Exception as exc:
                logger.warning("Skipping calendar %s: %s", calendar.calendar_id, exc)
                continue
            for event in events:
                valid_keys.update(processor.process_event(event, now))
                events_processed += 1
        return valid_keys, events_processed

    def refresh_notifications(self, now: datetime | None = None) -> set[str] | None:
        """Issue due notifications and return the keys that should stay alive.

        Returns None, not an empty set, when the calendar list could not be
        read: an empty set would cancel every existing notification.
        """
        valid_keys, _ = self._collect_valid_keys(now or self._clock(), self.config_manager.load())
        return valid_keys

    def cancel_orphaned_notifications(self, valid_keys: Iterable[str]) -> int:
        valid = set(valid_keys)
        valid_ids = {notification_id_for(key) for key in valid}
        cancelled_ids: set[int] = set()

        for pending in self.sink.list_pending():
            if pending.notification_id in valid_ids:
                continue
            self.sink.cancel(pending.notification_id)
            cancelled_ids.add(pending.notification_id)
            self._log_cancel(pending.title, str(pending.payload.get("eventHash", "")), pending.notification_id)

        for key in sorted(self.tracker.get_all() - valid):
            notification_id = notification_id_for(key)
            if notification_id in cancelled_ids:
                continue
            if notification_id in valid_ids:
                logger.warning("Notification id %d shared by a live reminder; not cancelling %s", notification_id, key[:8])
                continue
            self.sink.cancel(notification_id)
            cancelled_ids.add(notification_id)
            self._log_cancel("", key, notification_id)

        self.tracker.replace_all(valid)
        if cancelled_ids:
            logger.info("Cancelled %d orphaned notifications", len(cancelled_ids))
        return len(cancelled_ids)

    def _run_pass(self, trigger: str) -> RefreshResult:
        started = time.monotonic()
        events_processed = 0
        valid_count = 0
        cancelled = 0
        try:
            config = self.config_manager.load()
            now = self._clock()
            valid_keys, events_processed = self._collect_valid_keys(now, config)
            if valid_keys is None:
                status = "skipped"
                message = "Calendar access failed; existing notifications left untouched."
            else:
                valid_count = len(valid_keys)
                cancelled = self.cancel_orphaned_notifications(valid_keys)
                status = "success"
                message = f"Processed {events_processed} events, {valid_count} live reminders, {cancelled} cancelled."
        except Exception as exc:
            status = "error"
            message = f"{type(exc).__name__}: {exc}"
            logger.error("Refresh pass failed (trigger=%s): %s\n%s", trigger, message, traceback.format_exc(limit=5))

        result = RefreshResult(
            status=status,
            message=message,
            duration_ms=int((time.monotonic() - started) * 1000),
            events_processed=events_processed,
            valid_keys=valid_count,
            cancelled=cancelled,
            trigger=trigger,
        )
        try:
            self.state_store.record_refresh_run(result)
        except StorageError as exc:
            logger.warning("Could not record refresh run: %s", exc)
        return result

    def full_refresh(self, trigger: str = "manual") -> RefreshResult:
        with self._pass_lock:
            in_flight = self._in_flight
            if in_flight is None:
                in_flight = Future()
                self._in_flight = in_flight
                owner = True
            else:
                owner = False

        if not owner:
            logger.info("Refresh already running; %s trigger waits for it", trigger)
            return in_flight.result()

        try:
            result = self._run_pass(trigger)
        except BaseException as exc:
            with self._pass_lock:
                self._in_flight = None
            in_flight.set_exception(exc)
            raise
        with self._pass_lock:
            self._in_flight = None
        in_flight.set_result(result)
        return result

    def background_refresh(self, trigger: str = "scheduled") -> RefreshResult | None:
        """Housekeeping plus a full pass; never raises so the caller keeps retrying."""
        try:
            config = self.config_manager.load()
            try:
                self.dismissal_store.clear_expired_snoozes(now=self._clock())
                self.dismissal_store.cleanup_older_than(
                    config.reminders.dismissal_retention_days,
                    now=self._clock(),
                )
            except StorageError as exc:
                logger.warning("Dismissal housekeeping skipped: %s", exc)
            return self.full_refresh(trigger=trigger)
        except Exception:
            logger.exception("Background refresh failed (trigger=%s)", trigger)
            return None
