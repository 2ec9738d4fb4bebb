from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from tether.active_tracker import ActiveNotificationTracker
from tether.dismissal_store import DismissalStore
from tether.identity import notification_id_for
from tether.models import from_epoch_millis, utc_now
from tether.state_store import StateStore

logger = logging.getLogger(__name__)

VALID_ACTIONS = {"open", "snooze", "dismiss"}
KEY_PATTERN = re.compile(r"^[0-9a-f]{8,}$")


def _parse_end_millis(value: Any) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return from_epoch_millis(int(str(value).strip()))
    except (TypeError, ValueError, OverflowError, OSError):
        return None


@dataclass
class NotificationAction:
    action: str
    event_id: str
    event_hash: str
    event_end: datetime

    @classmethod
    def parse(cls, payload: str | dict[str, Any] | None, now: datetime | None = None) -> "NotificationAction | None":
        """Parse an action payload, or return None when it is unusable.

        Accepts the structured map form and the legacy ``action|eventId|hash|endMillis``
        text form. A missing or unreadable end time falls back to ``now``.
        """
        if payload is None:
            return None
        fallback_end = now or utc_now()
        if isinstance(payload, dict):
            action = str(payload.get("action", "") or "").strip()
            event_id = str(payload.get("eventId", "") or "")
            event_hash = str(payload.get("eventHash", "") or "").strip()
            if not action or not event_hash:
                return None
            event_end = _parse_end_millis(payload.get("eventEnd")) or fallback_end
            return cls(action=action, event_id=event_id, event_hash=event_hash, event_end=event_end)

        parts = str(payload).split("|")
        if len(parts) < 3:
            return None
        event_end = _parse_end_millis(parts[3]) if len(parts) > 3 else None
        return cls(
            action=parts[0],
            event_id=parts[1],
            event_hash=parts[2],
            event_end=event_end or fallback_end,
        )


class NotificationActionHandler:
    def __init__(
        self,
        *,
        dismissal_store: DismissalStore,
        tracker: ActiveNotificationTracker,
        sink: Any,
        state_store: StateStore,
        snooze_minutes: Callable[[], int],
        request_wakeup: Callable[[float], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.dismissal_store = dismissal_store
        self.tracker = tracker
        self.sink = sink
        self.state_store = state_store
        self.snooze_minutes = snooze_minutes
        self.request_wakeup = request_wakeup
        self._clock = clock

    def handle(self, action: NotificationAction | None) -> bool:
        if action is None or action.action not in VALID_ACTIONS:
            return False
        if not KEY_PATTERN.match(action.event_hash):
            logger.warning("Ignoring %s action with malformed key %r", action.action, action.event_hash)
            return False
        if action.action == "snooze":
            self._snooze(action)
        else:
            self._dismiss(action)
            if action.action == "open":
                self._log("opened", action, extra=action.event_id or None)
        return True

    def handle_background(self, payload: str | dict[str, Any] | None) -> bool:
        """Parse and handle an action delivered by a notification client; never raises."""
        try:
            return self.handle(NotificationAction.parse(payload, now=self._clock()))
        except Exception:
            logger.exception("Notification action failed; the next refresh will reconcile")
            return False

    def _dismiss(self, action: NotificationAction) -> None:
        self.dismissal_store.dismiss(action.event_hash, action.event_end)
        self.sink.cancel(notification_id_for(action.event_hash))
        self.tracker.remove(action.event_hash)
        self._log("dismissed", action)

    def _snooze(self, action: NotificationAction) -> None:
        delay = timedelta(minutes=max(1, int(self.snooze_minutes())))
        until = self._clock() + delay
        self.dismissal_store.snooze(action.event_hash, action.event_end, until)
        self.sink.cancel(notification_id_for(action.event_hash))
        self.tracker.remove(action.event_hash)
        self._log("snoozed", action, extra=f"Snoozed until {until.isoformat()}")
        if self.request_wakeup is not None:
            self.request_wakeup(delay.total_seconds())

    def _log(self, event_type: str, action: NotificationAction, extra: str | None = None) -> None:
        self.state_store.record_notification_event(
            event_type=event_type,
            title=action.event_id or "",
            event_key=action.event_hash,
            notification_id=notification_id_for(action.event_hash),
            extra=extra,
        )
