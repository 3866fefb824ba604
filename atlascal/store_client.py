from __future__ import annotations

from typing import Any

import requests

from atlascal.errors import CalendarNotFound, InvalidPayload, PlannerUnreachable, StoreUnreachable
from atlascal.models import CalendarDocument, CalendarInfo, StoreSnapshot, SyncConfig
from atlascal.planner import PlanReply


def _snapshot_from_payload(payload: Any) -> StoreSnapshot:
    if not isinstance(payload, dict) or not isinstance(payload.get("state"), dict):
        raise InvalidPayload("store response does not carry a calendar state")
    revision = payload.get("revision")
    if not isinstance(revision, int):
        raise InvalidPayload("store response does not carry a revision")
    return StoreSnapshot(
        document=CalendarDocument.from_dict(payload["state"]),
        revision=revision,
        updated_at=str(payload.get("updatedAt") or ""),
        merged=bool(payload.get("merged", False)),
    )


class CalendarServiceClient:
    """HTTP transport for the calendar store and planner endpoints."""

    def __init__(self, config: SyncConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self._session = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.config.server_url.rstrip('/')}{path}"

    def _request(self, method: str, path: str, *, calendar_id: str = "", **kwargs: Any) -> Any:
        try:
            response = self._session.request(
                method,
                self._url(path),
                timeout=self.config.request_timeout_seconds,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise StoreUnreachable(f"{type(exc).__name__}: {exc}") from exc
        if response.status_code == 404 and calendar_id:
            raise CalendarNotFound(calendar_id)
        if response.status_code == 400:
            raise InvalidPayload(response.text[:300])
        if response.status_code >= 500:
            raise StoreUnreachable(f"HTTP {response.status_code}: {response.text[:300]}")
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as exc:
            raise InvalidPayload("store response is not JSON") from exc

    def list_calendars(self) -> list[CalendarInfo]:
        payload = self._request("GET", "/api/calendars")
        items = payload.get("calendars", []) if isinstance(payload, dict) else []
        return [
            CalendarInfo(
                calendar_id=str(item.get("id", "")),
                name=str(item.get("name", "")),
                updated_at=str(item.get("updatedAt", "")),
            )
            for item in items
            if isinstance(item, dict) and item.get("id")
        ]

    def create_calendar(self, name: str) -> str:
        payload = self._request("POST", "/api/calendars", json={"name": name})
        return str(payload["id"])

    def rename_calendar(self, calendar_id: str, name: str) -> None:
        self._request("PUT", f"/api/calendars/{calendar_id}/rename", calendar_id=calendar_id, json={"name": name})

    def delete_calendar(self, calendar_id: str) -> None:
        self._request("DELETE", f"/api/calendars/{calendar_id}", calendar_id=calendar_id)

    def get_calendar(self, calendar_id: str) -> StoreSnapshot:
        return _snapshot_from_payload(self._request("GET", f"/api/calendars/{calendar_id}", calendar_id=calendar_id))

    def save_calendar(
        self,
        calendar_id: str,
        incoming: CalendarDocument,
        base: CalendarDocument | None,
        base_revision: int | None,
    ) -> StoreSnapshot:
        payload = self._request(
            "POST",
            f"/api/calendars/{calendar_id}",
            calendar_id=calendar_id,
            json={
                "state": incoming.to_dict(),
                "baseState": base.to_dict() if base is not None else None,
                "baseRevision": base_revision,
            },
        )
        return _snapshot_from_payload(payload)

    def plan_events(self, messages: list[dict[str, str]], context: dict[str, Any]) -> PlanReply:
        try:
            payload = self._request("POST", "/api/ai/plan-events", json={"messages": messages, "context": context})
        except StoreUnreachable as exc:
            raise PlannerUnreachable(str(exc)) from exc
        return PlanReply.from_dict(payload)
