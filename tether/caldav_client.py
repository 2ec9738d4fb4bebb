from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any

import caldav
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from tether.models import CalDAVConfig, CalendarInfo, EventSnapshot, date_to_datetime

logger = logging.getLogger(__name__)


def _coerce_datetime(value: Any, is_end: bool = False, local_tz: tzinfo = timezone.utc) -> datetime | None:
    if isinstance(value, (datetime, date)):
        return date_to_datetime(value, is_end=is_end, tz=local_tz)
    return None


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _vevents(calendar_obj: ICalendar) -> list[ICEvent]:
    return [component for component in calendar_obj.walk() if component.name == "VEVENT"]


def _reminder_minutes(
    vevent: ICEvent,
    start: datetime | None,
    end: datetime | None,
    local_tz: tzinfo = timezone.utc,
) -> tuple[int, ...]:
    minutes: list[int] = []
    for alarm in vevent.walk("VALARM"):
        trigger = alarm.get("TRIGGER")
        if trigger is None or start is None:
            continue
        value = getattr(trigger, "dt", None)
        related = str(getattr(trigger, "params", {}).get("RELATED", "START")).upper()
        if isinstance(value, timedelta):
            anchor = end if related == "END" and end is not None else start
            offset = start - (anchor + value)
        elif isinstance(value, datetime):
            offset = start - _coerce_datetime(value, local_tz=local_tz)
        else:
            continue
        value_minutes = int(offset.total_seconds() // 60)
        if value_minutes not in minutes:
            minutes.append(value_minutes)
    return tuple(minutes)


def parse_vevent(calendar_id: str, vevent: ICEvent, local_tz: tzinfo = timezone.utc) -> EventSnapshot:
    """Build a snapshot; dates and floating times are read as wall-clock time in ``local_tz``."""
    uid = str(vevent.get("UID", "")).strip()
    dtstart_raw = vevent.decoded("DTSTART") if vevent.get("DTSTART") is not None else None
    start = _coerce_datetime(dtstart_raw, is_end=False, local_tz=local_tz)
    dtend_raw = vevent.decoded("DTEND") if vevent.get("DTEND") is not None else None
    all_day = isinstance(dtstart_raw, date) and not isinstance(dtstart_raw, datetime)
    if all_day and isinstance(dtend_raw, date) and not isinstance(dtend_raw, datetime):
        # DTEND of an all-day event is exclusive
        end = _coerce_datetime(dtend_raw, is_end=False, local_tz=local_tz)
    else:
        end = _coerce_datetime(dtend_raw, is_end=True, local_tz=local_tz)
    if start and end is None:
        end = start + (timedelta(days=1) if all_day else timedelta(hours=1))
    return EventSnapshot(
        calendar_id=calendar_id,
        event_id=uid,
        title=str(vevent.get("SUMMARY", "")).strip() or None,
        start=start,
        end=end,
        location=str(vevent.get("LOCATION", "")).strip() or None,
        description=str(vevent.get("DESCRIPTION", "")).strip() or None,
        all_day=all_day,
        reminder_minutes=_reminder_minutes(vevent, start, end, local_tz),
    )


class CalDAVService:
    def __init__(self, config: CalDAVConfig, local_tz: tzinfo = timezone.utc) -> None:
        self.config = config
        self.local_tz = local_tz
        self._client: Any = None
        self._principal: Any = None
        self._calendar_cache: dict[str, Any] = {}

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.base_url or not self.config.username:
            raise RuntimeError("CalDAV config is incomplete.")
        self._client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
        )
        self._principal = self._client.principal()

    def list_calendars(self) -> list[CalendarInfo]:
        self._connect()
        self._calendar_cache = {}
        calendars: list[CalendarInfo] = []
        for calendar in self._principal.calendars():
            calendar_id = str(calendar.url)
            name = getattr(calendar, "name", "") or calendar_id
            self._calendar_cache[calendar_id] = calendar
            calendars.append(CalendarInfo(calendar_id=calendar_id, name=name, url=calendar_id))
        return calendars

    def _get_calendar(self, calendar_id: str) -> Any:
        if calendar_id in self._calendar_cache:
            return self._calendar_cache[calendar_id]
        for calendar in self._principal.calendars():
            cid = str(calendar.url)
            self._calendar_cache[cid] = calendar
        if calendar_id not in self._calendar_cache:
            raise RuntimeError(f"Calendar not found: {calendar_id}")
        return self._calendar_cache[calendar_id]

    def list_events(self, calendar_id: str, start: datetime, end: datetime) -> list[EventSnapshot]:
        self._connect()
        calendar = self._get_calendar(calendar_id)
        resources = calendar.date_search(start=start, end=end, expand=True)
        events: list[EventSnapshot] = []
        for item in resources:
            try:
                events.extend(self._parse_resource(calendar_id, item))
            except ValueError as exc:
                logger.warning("Skipping unparseable resource in %s: %s", calendar_id, exc)
        return events

    def _parse_resource(self, calendar_id: str, resource: Any) -> list[EventSnapshot]:
        calendar_obj = ICalendar.from_ical(_decode_raw_ical(resource.data))
        return [parse_vevent(calendar_id, vevent, self.local_tz) for vevent in _vevents(calendar_obj)]
