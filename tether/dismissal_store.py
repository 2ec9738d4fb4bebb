from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable

from tether.models import DismissalEntry, utc_now
from tether.state_store import StateStore, load_json

logger = logging.getLogger(__name__)

STORAGE_KEY = "dismissed_events"
DEFAULT_MAX_BYTES = 500_000


def _decode_entries(raw: str | None) -> dict[str, DismissalEntry]:
    data = load_json(raw, {})
    if not isinstance(data, dict):
        logger.warning("Dismissal store holds a non-object payload; treating it as empty")
        return {}
    entries: dict[str, DismissalEntry] = {}
    for key, value in data.items():
        if not isinstance(value, dict):
            logger.warning("Skipping malformed dismissal entry %s", str(key)[:8])
            continue
        try:
            entries[str(key)] = DismissalEntry.from_json(value)
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            continue
    return entries


def _encode_entries(entries: dict[str, DismissalEntry]) -> str:
    return json.dumps({key: entry.to_json() for key, entry in entries.items()}, separators=(",", ":"))


def _prune_oldest(entries: dict[str, DismissalEntry], max_bytes: int) -> str:
    encoded = _encode_entries(entries)
    if len(encoded.encode("utf-8")) <= max_bytes:
        return encoded
    before = len(entries)
    size = len(encoded.encode("utf-8"))
    for key in sorted(entries, key=lambda item: entries[item].event_end):
        if size <= max_bytes:
            break
        # "key":{...} plus its separating comma
        item = f"{json.dumps(key)}:{json.dumps(entries[key].to_json(), separators=(',', ':'))},"
        size -= len(item.encode("utf-8"))
        del entries[key]
    encoded = _encode_entries(entries)
    logger.warning("Dismissal store over %d bytes; pruned %d oldest entries", max_bytes, before - len(entries))
    return encoded


class DismissalStore:
    """Dismissed and snoozed reminders keyed by reminder key."""

    def __init__(self, state_store: StateStore, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        self.state_store = state_store
        self.max_bytes = max(1024, int(max_bytes))
        self._lock = threading.Lock()

    def _load_entries(self) -> dict[str, DismissalEntry]:
        return _decode_entries(self.state_store.get_meta(STORAGE_KEY))

    def _mutate(self, change: Callable[[dict[str, DismissalEntry]], None]) -> int:
        size = 0

        def apply(raw: str | None) -> str | None:
            nonlocal size
            entries = _decode_entries(raw)
            change(entries)
            size = len(entries)
            if not entries:
                return None
            encoded = _prune_oldest(entries, self.max_bytes)
            size = len(entries)
            return encoded

        with self._lock:
            self.state_store.update_meta(STORAGE_KEY, apply)
        return size

    def dismiss(self, key: str, event_end: datetime) -> None:
        def change(entries: dict[str, DismissalEntry]) -> None:
            entries[key] = DismissalEntry(event_end=event_end, snoozed_until=None)

        total = self._mutate(change)
        logger.debug("Dismissed %s, total=%d", key[:8], total)

    def snooze(self, key: str, event_end: datetime, until: datetime) -> None:
        def change(entries: dict[str, DismissalEntry]) -> None:
            entries[key] = DismissalEntry(event_end=event_end, snoozed_until=until)

        total = self._mutate(change)
        logger.debug("Snoozed %s until %s, total=%d", key[:8], until.isoformat(), total)

    def undismiss(self, key: str) -> None:
        self._mutate(lambda entries: entries.pop(key, None))

    def is_dismissed(self, key: str) -> bool:
        entry = self._load_entries().get(key)
        return entry is not None and entry.snoozed_until is None

    def get_snoozed_until(self, key: str) -> datetime | None:
        entry = self._load_entries().get(key)
        return entry.snoozed_until if entry is not None else None

    def entries(self) -> dict[str, DismissalEntry]:
        return self._load_entries()

    def clear_all(self) -> None:
        with self._lock:
            self.state_store.delete_meta(STORAGE_KEY)

    def clear_expired_snoozes(self, now: datetime | None = None) -> int:
        current = now or utc_now()
        removed = 0

        def change(entries: dict[str, DismissalEntry]) -> None:
            nonlocal removed
            expired = [
                key
                for key, entry in entries.items()
                if entry.snoozed_until is not None and entry.snoozed_until < current
            ]
            for key in expired:
                del entries[key]
            removed = len(expired)

        self._mutate(change)
        return removed

    def cleanup_older_than(self, days: int = 30, now: datetime | None = None) -> int:
        cutoff = (now or utc_now()) - timedelta(days=days)
        removed = 0

        def change(entries: dict[str, DismissalEntry]) -> None:
            nonlocal removed
            stale = [key for key, entry in entries.items() if entry.event_end < cutoff]
            for key in stale:
                del entries[key]
            removed = len(stale)

        self._mutate(change)
        if removed:
            logger.info("Removed %d dismissals whose events ended before %s", removed, cutoff.isoformat())
        return removed
