from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def date_to_datetime(
    value: datetime | date | None,
    is_end: bool = False,
    tz: tzinfo = timezone.utc,
) -> datetime | None:
    """Anchor a date, or a floating datetime, in ``tz``."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=tz)
        return value
    if is_end:
        return datetime.combine(value, time.max, tzinfo=tz)
    return datetime.combine(value, time.min, tzinfo=tz)


def to_epoch_millis(value: datetime) -> int:
    return int(round(_ensure_tz(value).timestamp() * 1000))


def from_epoch_millis(value: int) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
        )


@dataclass
class RefreshConfig:
    lookback_days: int = 1
    lookahead_days: int = 7
    stale_event_days: int = 1
    interval_seconds: int = 900
    timezone: str = "UTC"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RefreshConfig":
        data = data or {}
        return cls(
            lookback_days=max(0, int(data.get("lookback_days", 1))),
            lookahead_days=max(1, int(data.get("lookahead_days", 7))),
            stale_event_days=max(0, int(data.get("stale_event_days", 1))),
            interval_seconds=max(30, int(data.get("interval_seconds", 900))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
        )


@dataclass
class ReminderConfig:
    snooze_minutes: int = 15
    dismissal_retention_days: int = 30
    max_dismissal_bytes: int = 500_000

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ReminderConfig":
        data = data or {}
        return cls(
            snooze_minutes=max(1, int(data.get("snooze_minutes", 15))),
            dismissal_retention_days=max(1, int(data.get("dismissal_retention_days", 30))),
            max_dismissal_bytes=max(1024, int(data.get("max_dismissal_bytes", 500_000))),
        )


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    reminders: ReminderConfig = field(default_factory=ReminderConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            refresh=RefreshConfig.from_dict(data.get("refresh")),
            reminders=ReminderConfig.from_dict(data.get("reminders")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str
    url: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EventSnapshot:
    """One calendar occurrence as seen at refresh time."""

    calendar_id: str
    event_id: str
    title: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    location: str | None = None
    description: str | None = None
    all_day: bool = False
    reminder_minutes: tuple[int, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "calendar_id": self.calendar_id,
            "event_id": self.event_id,
            "title": self.title,
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "location": self.location,
            "description": self.description,
            "all_day": self.all_day,
            "reminder_minutes": list(self.reminder_minutes),
        }


@dataclass
class DismissalEntry:
    event_end: datetime
    snoozed_until: datetime | None = None

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "DismissalEntry":
        snooze = data.get("snooze")
        return cls(
            event_end=from_epoch_millis(int(data["end"])),
            snoozed_until=from_epoch_millis(int(snooze)) if snooze is not None else None,
        )

    def to_json(self) -> dict[str, int]:
        payload = {"end": to_epoch_millis(self.event_end)}
        if self.snoozed_until is not None:
            payload["snooze"] = to_epoch_millis(self.snoozed_until)
        return payload


@dataclass
class PendingNotification:
    notification_id: int
    title: str
    payload: dict[str, Any] = field(default_factory=dict)
    fire_at: datetime | None = None


@dataclass
class ShownNotification:
    notification_id: int
    title: str
    body: str = ""
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class RefreshResult:
    status: str
    message: str
    duration_ms: int
    events_processed: int
    valid_keys: int
    cancelled: int
    trigger: str
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "events_processed": self.events_processed,
            "valid_keys": self.valid_keys,
            "cancelled": self.cancelled,
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }


def refresh_window(now: datetime, lookback_days: int, lookahead_days: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now)
    return now_utc - timedelta(days=lookback_days), now_utc + timedelta(days=lookahead_days)
