from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from atlascal.errors import PlannerUnreachable, StaleResult
from atlascal.geocoder import BatchGeocoder, GeocodeFn
from atlascal.models import CalendarDocument, PlanSummary, PlannerConfig
from atlascal.plan_scheduler import schedule_plan
from atlascal.planner import (
    STATUS_NEEDS_CLARIFICATION,
    STATUS_READY,
    PlanReply,
    build_planning_context,
    normalize_candidates,
)
from atlascal.rollback import RollbackLedger
from atlascal.sync_client import SyncClient

logger = logging.getLogger(__name__)

OUTCOME_APPLIED = "applied"
OUTCOME_NOTHING_ADDED = "nothing_added"
OUTCOME_STALE = "stale"
OUTCOME_UNAVAILABLE = "unavailable"
OUTCOME_NO_CALENDAR = "no_calendar"
OUTCOME_ROLLED_BACK = "rolled_back"
OUTCOME_NOTHING_TO_ROLL_BACK = "nothing_to_roll_back"
OUTCOME_CALENDAR_GONE = "calendar_gone"

CALENDAR_GONE_MESSAGE = "This calendar no longer exists."


class PlannerTransport(Protocol):
    def plan_events(self, messages: list[dict[str, str]], context: dict[str, Any]) -> PlanReply: ...

    def delete_calendar(self, calendar_id: str) -> None: ...


@dataclass
class PlanOutcome:
    status: str
    message: str
    summary: PlanSummary | None = None
    document: CalendarDocument | None = None
    created_ids: list[str] = field(default_factory=list)

    @property
    def applied(self) -> bool:
        return self.status in {OUTCOME_APPLIED, OUTCOME_ROLLED_BACK}


class PlanSession:
    """Chat-driven planning for whichever calendar the sync client has open.

    The calendar id active when a request starts is remembered; if another
    calendar is active by the time the model and geocoding round trips are
    done, the result is dropped without touching either calendar or the
    rollback ledger.
    """

    def __init__(
        self,
        *,
        sync_client: SyncClient,
        transport: PlannerTransport,
        geocode: GeocodeFn,
        ledger: RollbackLedger | None = None,
        planner_config: PlannerConfig | None = None,
        message_limit: int = 14,
        geocode_workers: int = 4,
        timezone: str = "UTC",
    ) -> None:
        self.sync_client = sync_client
        self.transport = transport
        self.geocode = geocode
        self.ledger = ledger or RollbackLedger()
        self.planner_config = planner_config or PlannerConfig()
        self.message_limit = max(1, message_limit)
        self.geocode_workers = geocode_workers
        self.timezone = timezone
        self.focus_index = 0
        self.history: list[dict[str, str]] = []
        sync_client.on_calendar_lost.append(self._forget_calendar)

    def _remember(self, role: str, text: str) -> None:
        self.history.append({"role": role, "text": text})
        del self.history[: -self.message_limit]

    def _forget_calendar(self, calendar_id: str) -> None:
        self.ledger.discard(calendar_id)
        if self.sync_client.active_calendar_id is None:
            self.history.clear()
            self.focus_index = 0

    def _ensure_current(self, token: str) -> None:
        active = self.sync_client.active_calendar_id
        if active != token:
            raise StaleResult(token, active)

    def select_calendar(self, calendar_id: str) -> CalendarDocument:
        document = self.sync_client.select(calendar_id)
        self.history.clear()
        self.focus_index = 0
        return document

    def can_rollback(self) -> bool:
        calendar_id = self.sync_client.active_calendar_id
        return calendar_id is not None and self.ledger.has_snapshot(calendar_id)

    def submit(self, text: str) -> PlanOutcome:
        token = self.sync_client.active_calendar_id
        if token is None or self.sync_client.working is None:
            return PlanOutcome(status=OUTCOME_NO_CALENDAR, message="Create or select a calendar first.")
        text = str(text or "").strip()
        if not text:
            return PlanOutcome(status=STATUS_NEEDS_CLARIFICATION, message="Describe what you would like to schedule.")
        self._remember("user", text)
        context = build_planning_context(self.sync_client.working, timezone=self.timezone)
        try:
            reply = self.transport.plan_events(list(self.history), context)
        except PlannerUnreachable as exc:
            logger.warning("Planner unavailable: %s", exc)
            message = f"The planner is unavailable right now ({exc}). Please try again shortly."
            return PlanOutcome(status=OUTCOME_UNAVAILABLE, message=message)

        try:
            self._ensure_current(token)
            if reply.status != STATUS_READY:
                self._remember("assistant", reply.message)
                return PlanOutcome(status=STATUS_NEEDS_CLARIFICATION, message=reply.message)
            return self._apply(token, reply)
        except StaleResult as exc:
            logger.info("Discarding stale plan result: %s", exc)
            return PlanOutcome(status=OUTCOME_STALE, message="")

    def _apply(self, token: str, reply: PlanReply) -> PlanOutcome:
        normalized = normalize_candidates(
            reply.events,
            default_duration=self.planner_config.default_duration_minutes,
        )
        before = copy.deepcopy(self.sync_client.working)
        scheduled = schedule_plan(
            normalized.candidates,
            before,
            BatchGeocoder(self.geocode, max_workers=self.geocode_workers),
            skipped_invalid=normalized.invalid,
            palette=self.planner_config.palette,
        )
        summary = scheduled.summary
        message = f"{reply.message} {summary.describe()}".strip()
        self._ensure_current(token)
        if summary.created == 0:
            self._remember("assistant", message)
            return PlanOutcome(status=OUTCOME_NOTHING_ADDED, message=message, summary=summary)

        self.ledger.capture(token, before, self.focus_index)
        self.sync_client.apply_local(scheduled.document)
        if self.sync_client.active_calendar_id != token:
            return PlanOutcome(status=OUTCOME_CALENDAR_GONE, message=CALENDAR_GONE_MESSAGE)
        self.focus_index = min(self.focus_index + summary.window_shift_days, scheduled.document.num_days - 1)
        self._remember("assistant", message)
        logger.info(
            "Applied plan to %s: created=%d overlap=%d invalid=%d unresolved=%d",
            token,
            summary.created,
            summary.skipped_overlap,
            summary.skipped_invalid,
            len(summary.unresolved_places),
        )
        return PlanOutcome(
            status=OUTCOME_APPLIED,
            message=message,
            summary=summary,
            document=scheduled.document,
            created_ids=scheduled.created_ids,
        )

    def rollback(self) -> PlanOutcome:
        calendar_id = self.sync_client.active_calendar_id
        if calendar_id is None:
            return PlanOutcome(status=OUTCOME_NO_CALENDAR, message="Create or select a calendar first.")
        snapshot = self.ledger.consume(calendar_id)
        if snapshot is None:
            return PlanOutcome(status=OUTCOME_NOTHING_TO_ROLL_BACK, message="Nothing to roll back.")
        self.sync_client.apply_local(snapshot.document)
        if self.sync_client.active_calendar_id != calendar_id:
            return PlanOutcome(status=OUTCOME_CALENDAR_GONE, message=CALENDAR_GONE_MESSAGE)
        self.focus_index = snapshot.focus_index
        self._remember("assistant", "Rolled back the last AI changes.")
        return PlanOutcome(
            status=OUTCOME_ROLLED_BACK,
            message="Rolled back the last AI changes.",
            document=copy.deepcopy(snapshot.document),
        )

    def delete_calendar(self, calendar_id: str) -> None:
        self.transport.delete_calendar(calendar_id)
        self.ledger.discard(calendar_id)
        if self.sync_client.active_calendar_id == calendar_id:
            self.sync_client.close()
            self.history.clear()
            self.focus_index = 0
