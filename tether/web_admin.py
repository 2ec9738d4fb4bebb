from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from tether.active_tracker import ActiveNotificationTracker
from tether.config_manager import MASK, ConfigError, ConfigManager
from tether.dismissal_store import DismissalStore
from tether.models import serialize_datetime
from tether.notification_actions import NotificationAction, NotificationActionHandler
from tether.notification_sink import LocalNotificationSink
from tether.refresh_service import CalendarRefreshService
from tether.scheduler import RefreshScheduler
from tether.state_store import StateStore, StorageError


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class NotificationActionRequest(BaseModel):
    payload: dict[str, Any] | str
    action: str | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str, calendar_source: Any = None) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.state_store.ensure_first_run_timestamp()
        config = self.config_manager.load()
        self.dismissal_store = DismissalStore(self.state_store, max_bytes=config.reminders.max_dismissal_bytes)
        self.tracker = ActiveNotificationTracker(self.state_store)
        self.sink = LocalNotificationSink(self.state_store)
        self.refresh_service = CalendarRefreshService(
            config_manager=self.config_manager,
            state_store=self.state_store,
            dismissal_store=self.dismissal_store,
            tracker=self.tracker,
            sink=self.sink,
            calendar_source=calendar_source,
        )
        self.scheduler = RefreshScheduler(self.refresh_service, self.config_manager)
        self.action_handler = NotificationActionHandler(
            dismissal_store=self.dismissal_store,
            tracker=self.tracker,
            sink=self.sink,
            state_store=self.state_store,
            snooze_minutes=lambda: self.config_manager.load().reminders.snooze_minutes,
            request_wakeup=self.scheduler.schedule_wakeup,
        )


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_password = str(current.get("caldav", {}).get("password", ""))

    caldav = sanitized.get("caldav")
    if isinstance(caldav, dict):
        password = caldav.get("password")
        if password is not None:
            password_text = str(password).strip()
            if password_text in {"", MASK}:
                if current_password:
                    caldav.pop("password", None)
                else:
                    caldav["password"] = ""
        if not caldav:
            sanitized.pop("caldav", None)

    return sanitized


def _action_from_request(request: NotificationActionRequest) -> NotificationAction | None:
    payload = request.payload
    if isinstance(payload, dict) and request.action:
        payload = {**payload, "action": request.action}
    action = NotificationAction.parse(payload)
    if action is not None and isinstance(request.payload, str) and request.action:
        action.action = request.action
    return action


def create_app() -> FastAPI:
    config_path = os.getenv("TETHER_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("TETHER_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Tether Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        try:
            app.state.context.config_manager.update(sanitized_payload)
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.post("/api/refresh/run")
    def trigger_refresh() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual("manual")
        return {"message": "refresh triggered"}

    @app.post("/api/refresh/run-now")
    def run_refresh_now() -> dict[str, Any]:
        result = app.state.context.refresh_service.full_refresh(trigger="foreground")
        return {"message": "refresh completed", "result": result.to_dict()}

    @app.get("/api/refresh/status")
    def refresh_status(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_refresh_runs(limit=limit)}

    @app.get("/api/notifications")
    def list_notifications() -> dict[str, Any]:
        sink = app.state.context.sink
        return {
            "shown": [
                {
                    "id": item.notification_id,
                    "title": item.title,
                    "body": item.body,
                    "payload": item.payload,
                }
                for item in sink.list_shown()
            ],
            "pending": [
                {
                    "id": item.notification_id,
                    "title": item.title,
                    "payload": item.payload,
                    "fire_at": serialize_datetime(item.fire_at),
                }
                for item in sink.list_pending()
            ],
        }

    @app.post("/api/notifications/action")
    def notification_action(request: NotificationActionRequest) -> dict[str, Any]:
        action = _action_from_request(request)
        try:
            handled = app.state.context.action_handler.handle(action)
        except StorageError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"handled": handled, "action": action.action if action is not None else None}

    @app.post("/api/notifications/{notification_id}/{action}")
    def tap_notification(notification_id: int, action: str) -> dict[str, Any]:
        payload = app.state.context.sink.get_payload(notification_id)
        if payload is None:
            raise HTTPException(status_code=404, detail="notification not found")
        handled = app.state.context.action_handler.handle_background({**payload, "action": action})
        return {"handled": handled, "action": action}

    @app.get("/api/dismissals")
    def list_dismissals() -> dict[str, Any]:
        entries = app.state.context.dismissal_store.entries()
        return {
            "dismissals": [
                {
                    "key": key,
                    "event_end": serialize_datetime(entry.event_end),
                    "snoozed_until": serialize_datetime(entry.snoozed_until),
                }
                for key, entry in sorted(entries.items(), key=lambda item: item[1].event_end)
            ]
        }

    @app.delete("/api/dismissals")
    def clear_dismissals() -> dict[str, str]:
        app.state.context.dismissal_store.clear_all()
        return {"message": "dismissals cleared"}

    @app.delete("/api/dismissals/{key}")
    def undismiss(key: str) -> dict[str, str]:
        app.state.context.dismissal_store.undismiss(key)
        app.state.context.scheduler.trigger_manual("undismiss")
        return {"message": "dismissal removed"}

    @app.get("/api/log")
    def notification_log(limit: int = 100) -> dict[str, Any]:
        return {"entries": app.state.context.state_store.recent_notification_events(limit=limit)}

    return app


app = create_app()
