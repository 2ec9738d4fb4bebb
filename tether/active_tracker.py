from __future__ import annotations

import json
import logging
import threading
from typing import Iterable

from tether.state_store import StateStore, load_json

logger = logging.getLogger(__name__)

STORAGE_KEY = "active_notification_keys"


def _decode_keys(raw: str | None) -> set[str]:
    data = load_json(raw, [])
    if not isinstance(data, list):
        return set()
    return {str(item) for item in data if isinstance(item, str) and item}


def _encode_keys(keys: Iterable[str]) -> str:
    return json.dumps(sorted(set(keys)))


class ActiveNotificationTracker:
    """Keys of every notification currently shown or scheduled.

    The notification sink can only enumerate pending notifications, so this
    set is what lets a refresh find already-shown notifications whose event
    has since disappeared.
    """

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store
        self._lock = threading.Lock()

    def add(self, key: str) -> None:
        def apply(raw: str | None) -> str:
            keys = _decode_keys(raw)
            keys.add(key)
            return _encode_keys(keys)

        with self._lock:
            self.state_store.update_meta(STORAGE_KEY, apply)
        logger.debug("Tracking notification %s", key[:8])

    def remove(self, key: str) -> None:
        def apply(raw: str | None) -> str:
            keys = _decode_keys(raw)
            keys.discard(key)
            return _encode_keys(keys)

        with self._lock:
            self.state_store.update_meta(STORAGE_KEY, apply)
        logger.debug("Stopped tracking notification %s", key[:8])

    def get_all(self) -> set[str]:
        return _decode_keys(self.state_store.get_meta(STORAGE_KEY))

    def replace_all(self, keys: Iterable[str]) -> None:
        encoded = _encode_keys(keys)
        with self._lock:
            self.state_store.update_meta(STORAGE_KEY, lambda _raw: encoded)
        logger.debug("Replaced tracked notifications, total=%d", len(json.loads(encoded)))
