from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from atlascal.ai_client import OpenAICompatibleClient
from atlascal.calendar_store import CalendarStore, parse_document_payload
from atlascal.config_manager import ConfigManager
from atlascal.errors import CalendarNotFound, InvalidPayload, PlannerUnreachable
from atlascal.models import CalendarDocument
from atlascal.planner import (
    bound_messages,
    build_messages,
    normalize_plan_reply,
    sanitize_context,
)
from atlascal.state_store import AuditLog

logger = logging.getLogger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class CalendarNameRequest(BaseModel):
    name: str = ""


class SaveCalendarRequest(BaseModel):
    state: Any = None
    baseState: Any = None
    baseRevision: int | None = None


class LegacySaveRequest(BaseModel):
    state: Any = None


class ChatMessage(BaseModel):
    role: str = "user"
    text: str = ""


class PlanEventsRequest(BaseModel):
    messages: list[ChatMessage] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        self.store = CalendarStore(config.store.calendars_dir, config.store.legacy_file)
        self.audit_log = AuditLog(config.store.audit_db_path)


def create_app() -> FastAPI:
    config_path = os.getenv("ATLASCAL_CONFIG_PATH", "config.yaml")
    context = AppContext(config_path=config_path)

    app = FastAPI(title="Atlascal", version="0.1.0")
    app.state.context = context

    def _not_found(exc: CalendarNotFound) -> HTTPException:
        return HTTPException(status_code=404, detail="Calendar not found")

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        manager = app.state.context.config_manager
        try:
            updated = manager.update(request.payload)
        except InvalidPayload as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"message": "config updated", "config": manager.masked(updated)}

    @app.get("/api/calendars")
    def list_calendars() -> dict[str, Any]:
        return {"calendars": [item.to_dict() for item in app.state.context.store.list_calendars()]}

    @app.post("/api/calendars")
    def create_calendar(request: CalendarNameRequest) -> dict[str, Any]:
        calendar_id, _ = app.state.context.store.create(request.name)
        name = app.state.context.store.name_of(calendar_id)
        app.state.context.audit_log.record(
            calendar_id=calendar_id, action="create_calendar", details={"name": name}, revision=0
        )
        return {"id": calendar_id, "name": name}

    @app.put("/api/calendars/{calendar_id}/rename")
    def rename_calendar(calendar_id: str, request: CalendarNameRequest) -> dict[str, Any]:
        try:
            info = app.state.context.store.rename(calendar_id, request.name)
        except CalendarNotFound as exc:
            raise _not_found(exc) from exc
        except InvalidPayload as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        app.state.context.audit_log.record(
            calendar_id=calendar_id, action="rename_calendar", details={"name": info.name}
        )
        return {"success": True, "id": calendar_id, "name": info.name}

    @app.delete("/api/calendars/{calendar_id}")
    def delete_calendar(calendar_id: str) -> dict[str, Any]:
        try:
            app.state.context.store.delete(calendar_id)
        except CalendarNotFound as exc:
            raise _not_found(exc) from exc
        app.state.context.audit_log.record(calendar_id=calendar_id, action="delete_calendar")
        return {"success": True}

    @app.get("/api/calendars/{calendar_id}")
    def get_calendar(calendar_id: str) -> dict[str, Any]:
        store = app.state.context.store
        try:
            snapshot = store.get(calendar_id)
            name = store.name_of(calendar_id)
        except CalendarNotFound as exc:
            raise _not_found(exc) from exc
        return {
            "state": snapshot.document.to_dict(),
            "revision": snapshot.revision,
            "name": name,
            "updatedAt": snapshot.updated_at,
        }

    @app.post("/api/calendars/{calendar_id}")
    def save_calendar(calendar_id: str, request: SaveCalendarRequest) -> dict[str, Any]:
        store = app.state.context.store
        try:
            incoming = parse_document_payload(request.state)
            base = parse_document_payload(request.baseState) if request.baseState is not None else None
            snapshot = store.put(calendar_id, incoming, base=base, base_revision=request.baseRevision)
        except CalendarNotFound as exc:
            raise _not_found(exc) from exc
        except InvalidPayload as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if snapshot.changed:
            app.state.context.audit_log.record(
                calendar_id=calendar_id,
                action="merge_calendar" if snapshot.merged else "save_calendar",
                details={"base_revision": request.baseRevision},
                revision=snapshot.revision,
            )
        return {
            "success": True,
            "state": snapshot.document.to_dict(),
            "revision": snapshot.revision,
            "merged": snapshot.merged,
        }

    @app.post("/api/ai/plan-events")
    def plan_events(request: PlanEventsRequest) -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        messages = bound_messages(
            [message.model_dump() for message in request.messages],
            config.ai.message_limit,
        )
        if not messages:
            raise HTTPException(status_code=400, detail="At least one message is required.")
        planning_context = sanitize_context(request.context)
        client = OpenAICompatibleClient(config.ai)
        try:
            parsed = client.generate_plan(messages=build_messages(planning_context, messages))
        except PlannerUnreachable as exc:
            logger.warning("Planning model unavailable: %s", exc)
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
        reply = normalize_plan_reply(parsed)
        app.state.context.audit_log.record(
            calendar_id="*",
            action="plan_request",
            details={
                "status": reply.status,
                "events": len(reply.events),
                "messages": len(messages),
            },
        )
        return reply.to_dict()

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, calendar_id: str | None = None) -> dict[str, Any]:
        return {"events": app.state.context.audit_log.recent(limit=limit, calendar_id=calendar_id)}

    @app.get("/api/calendar")
    def get_legacy_calendar() -> dict[str, Any]:
        calendars = app.state.context.store.list_calendars()
        if not calendars:
            return {"state": CalendarDocument().to_dict(), "revision": 0}
        snapshot = app.state.context.store.get(calendars[0].calendar_id)
        return {"state": snapshot.document.to_dict(), "revision": snapshot.revision}

    @app.post("/api/calendar")
    def save_legacy_calendar(request: LegacySaveRequest) -> dict[str, Any]:
        store = app.state.context.store
        calendars = store.list_calendars()
        if not calendars:
            raise HTTPException(status_code=404, detail="No calendars exist")
        calendar_id = calendars[0].calendar_id
        try:
            snapshot = store.put(calendar_id, parse_document_payload(request.state))
        except InvalidPayload as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if snapshot.changed:
            app.state.context.audit_log.record(
                calendar_id=calendar_id, action="save_calendar", details={"legacy": True}, revision=snapshot.revision
            )
        return {"success": True, "state": snapshot.document.to_dict(), "revision": snapshot.revision}

    return app
