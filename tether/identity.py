from __future__ import annotations

import hashlib

from tether.models import EventSnapshot, to_epoch_millis


NOTIFICATION_ID_HEX_CHARS = 8
NOTIFICATION_ID_MASK = 0x7FFFFFFF


def compute_key(event: EventSnapshot, reminder_minutes: int | None = None) -> str:
    """Content hash for one occurrence, optionally scoped to one reminder offset.

    The provider event id is not part of the key.
    """
    parts = [
        event.calendar_id or "",
        event.title or "",
        str(to_epoch_millis(event.start)) if event.start is not None else "",
        str(to_epoch_millis(event.end)) if event.end is not None else "",
        event.location or "",
        event.description or "",
        "true" if event.all_day else "false",
    ]
    if reminder_minutes is not None:
        parts.append(f"reminder:{int(reminder_minutes)}")
    return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()  # nosec B324


def notification_id_for(key: str) -> int:
    return int(key[:NOTIFICATION_ID_HEX_CHARS], 16) & NOTIFICATION_ID_MASK
