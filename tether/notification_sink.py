from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from tether.models import PendingNotification, ShownNotification, parse_iso_datetime, utc_now
from tether.state_store import StateStore, load_json

logger = logging.getLogger(__name__)


class LocalNotificationSink:
    """Notification outbox kept in the state database.

    A notification with a future ``fire_at`` is pending; one without, or whose
    time has come, counts as shown until it is cancelled.
    """

    def __init__(self, state_store: StateStore, clock: Callable[[], datetime] = utc_now) -> None:
        self.state_store = state_store
        self._clock = clock

    def create(
        self,
        notification_id: int,
        title: str,
        body: str,
        actions: list[str],
        payload: dict[str, Any],
        schedule: datetime | None = None,
    ) -> None:
        fire_at = schedule.astimezone(timezone.utc).isoformat() if schedule is not None else None
        with self.state_store.session(write=True) as conn:
            conn.execute(
                """
                INSERT INTO notifications(id, title, body, actions_json, payload_json, fire_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    body = excluded.body,
                    actions_json = excluded.actions_json,
                    payload_json = excluded.payload_json,
                    fire_at = excluded.fire_at,
                    created_at = excluded.created_at
                """,
                (
                    int(notification_id),
                    title,
                    body,
                    json.dumps(list(actions)),
                    json.dumps(payload, ensure_ascii=False),
                    fire_at,
                    utc_now().isoformat(),
                ),
            )
        logger.debug("Stored notification %d (fire_at=%s)", notification_id, fire_at or "now")

    def cancel(self, notification_id: int) -> None:
        with self.state_store.session(write=True) as conn:
            conn.execute("DELETE FROM notifications WHERE id = ?", (int(notification_id),))
        logger.debug("Cancelled notification %d", notification_id)

    def get_payload(self, notification_id: int) -> dict[str, Any] | None:
        with self.state_store.session() as conn:
            row = conn.execute(
                "SELECT payload_json FROM notifications WHERE id = ?",
                (int(notification_id),),
            ).fetchone()
        if row is None:
            return None
        payload = load_json(row["payload_json"], {})
        return payload if isinstance(payload, dict) else {}

    def _rows(self) -> list[dict[str, Any]]:
        with self.state_store.session() as conn:
            rows = conn.execute(
                "SELECT id, title, body, actions_json, payload_json, fire_at FROM notifications ORDER BY id"
            ).fetchall()
        return [dict(row) for row in rows]

    def list_pending(self) -> list[PendingNotification]:
        now = self._clock()
        pending: list[PendingNotification] = []
        for row in self._rows():
            fire_at = parse_iso_datetime(row["fire_at"]) if row["fire_at"] else None
            if fire_at is None or fire_at <= now:
                continue
            pending.append(
                PendingNotification(
                    notification_id=int(row["id"]),
                    title=str(row["title"]),
                    payload=load_json(row["payload_json"], {}),
                    fire_at=fire_at,
                )
            )
        return pending

    def list_shown(self) -> list[ShownNotification]:
        now = self._clock()
        shown: list[ShownNotification] = []
        for row in self._rows():
            fire_at = parse_iso_datetime(row["fire_at"]) if row["fire_at"] else None
            if fire_at is not None and fire_at > now:
                continue
            shown.append(
                ShownNotification(
                    notification_id=int(row["id"]),
                    title=str(row["title"]),
                    body=str(row["body"]),
                    payload=load_json(row["payload_json"], {}),
                )
            )
        return shown
