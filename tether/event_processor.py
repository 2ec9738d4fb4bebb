from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Iterable

from tether.active_tracker import ActiveNotificationTracker
from tether.dismissal_store import DismissalStore
from tether.identity import compute_key, notification_id_for
from tether.models import EventSnapshot, to_epoch_millis
from tether.state_store import StateStore, StorageError

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Calendar Event"
NOTIFICATION_ACTIONS = ["open", "snooze", "dismiss"]


def _clock_time(value: datetime) -> str:
    return value.strftime("%I:%M %p").lstrip("0")


def _month_day(value: datetime) -> str:
    return f"{value.strftime('%b')} {value.day}"


def build_notification_body(
    *,
    start: datetime,
    end: datetime,
    reminder_time: datetime,
    all_day: bool,
    location: str | None = None,
    display_tz: tzinfo = timezone.utc,
) -> str:
    local_start = start.astimezone(display_tz)
    local_end = end.astimezone(display_tz)
    local_reminder = reminder_time.astimezone(display_tz)
    days_diff = (local_start.date() - local_reminder.date()).days

    if all_day:
        if days_diff == 0:
            time_line = "All day"
        elif days_diff == 1:
            time_line = "Tomorrow, all day"
        else:
            time_line = f"{_month_day(local_start)}, all day"
    else:
        time_range = f"{_clock_time(local_start)} – {_clock_time(local_end)}"
        if days_diff == 0:
            time_line = time_range
        elif days_diff == 1:
            time_line = f"Tomorrow, {time_range}"
        else:
            time_line = f"{_month_day(local_start)}, {time_range}"

    if location:
        return f"{time_line}\n{location}"
    return time_line


class EventProcessor:
    """Decides, per reminder of one occurrence, whether to schedule, show or skip.

    Built fresh for each refresh pass. ``process_event`` returns every reminder
    key that should keep its notification, including ones it chose not to
    (re)issue on this pass.
    """

    def __init__(
        self,
        *,
        dismissal_store: DismissalStore,
        tracker: ActiveNotificationTracker,
        sink: Any,
        state_store: StateStore | None = None,
        first_run_timestamp: datetime | None = None,
        already_scheduled_ids: Iterable[int] | None = None,
        stale_event_days: int = 1,
        display_tz: tzinfo = timezone.utc,
    ) -> None:
        self.dismissal_store = dismissal_store
        self.tracker = tracker
        self.sink = sink
        self.state_store = state_store
        self.first_run_timestamp = first_run_timestamp
        self.already_scheduled_ids = set(already_scheduled_ids or ())
        self.stale_event_days = stale_event_days
        self.display_tz = display_tz

    def _is_dismissed(self, key: str) -> bool:
        try:
            return self.dismissal_store.is_dismissed(key)
        except StorageError as exc:
            logger.warning("Dismissal lookup failed for %s, delivering anyway: %s", key[:8], exc)
            return False

    def _snoozed_until(self, key: str) -> datetime | None:
        try:
            return self.dismissal_store.get_snoozed_until(key)
        except StorageError as exc:
            logger.warning("Snooze lookup failed for %s, delivering anyway: %s", key[:8], exc)
            return None

    def _log(self, event_type: str, title: str, key: str, notification_id: int, extra: str | None = None) -> None:
        if self.state_store is None:
            return
        try:
            self.state_store.record_notification_event(
                event_type=event_type,
                title=title,
                event_key=key,
                notification_id=notification_id,
                extra=extra,
            )
        except StorageError as exc:
            logger.warning("Could not append %s entry to notification log: %s", event_type, exc)

    def process_event(self, event: EventSnapshot, now: datetime) -> set[str]:
        if not event.event_id or event.start is None or event.end is None:
            return set()
        if not event.reminder_minutes:
            return set()

        cutoff = now - timedelta(days=self.stale_event_days)
        if event.end < cutoff:
            logger.debug("Skipping %r: ended %s, before cutoff %s", event.title, event.end, cutoff)
            return set()

        title = event.title or DEFAULT_TITLE
        valid_keys: set[str] = set()

        for minutes in event.reminder_minutes:
            reminder_time = event.start - timedelta(minutes=minutes)
            key = compute_key(event, minutes)
            notification_id = notification_id_for(key)
            valid_keys.add(key)

            if self.first_run_timestamp is not None and reminder_time <= self.first_run_timestamp:
                logger.debug("Reminder %d min for %r: due before first run", minutes, title)
                continue

            if self._is_dismissed(key):
                logger.debug("Reminder %d min for %r: dismissed", minutes, title)
                continue

            snoozed_until = self._snoozed_until(key)
            if snoozed_until is not None and now < snoozed_until:
                logger.debug("Reminder %d min for %r: snoozed until %s", minutes, title, snoozed_until)
                continue

            payload = {
                "eventId": event.event_id,
                "eventHash": key,
                "eventEnd": to_epoch_millis(event.end),
            }
            body = build_notification_body(
                start=event.start,
                end=event.end,
                reminder_time=reminder_time,
                all_day=event.all_day,
                location=event.location,
                display_tz=self.display_tz,
            )

            if reminder_time > now:
                if notification_id in self.already_scheduled_ids:
                    logger.debug("Reminder %d min for %r: already scheduled", minutes, title)
                    continue
                logger.info("Scheduling %r (%d min) for %s", title, minutes, reminder_time.isoformat())
                self.sink.create(
                    notification_id,
                    title,
                    body,
                    list(NOTIFICATION_ACTIONS),
                    payload,
                    schedule=reminder_time,
                )
                self.already_scheduled_ids.add(notification_id)
                self.tracker.add(key)
                self._log("scheduled", title, key, notification_id, f"Scheduled for {reminder_time.isoformat()}")
            else:
                logger.info("Showing %r (%d min)", title, minutes)
                self.sink.create(notification_id, title, body, list(NOTIFICATION_ACTIONS), payload)
                self.tracker.add(key)
                self._log("shown", title, key, notification_id)

        return valid_keys
