from __future__ import annotations

import copy
import logging
import threading
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from typing import Callable, Protocol

from atlascal.errors import CalendarNotFound, StoreUnreachable
from atlascal.models import CalendarDocument, StoreSnapshot, SyncConfig

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_SYNCING = "syncing"
STATE_SAVING = "saving"


class CalendarTransport(Protocol):
    def get_calendar(self, calendar_id: str) -> StoreSnapshot: ...

    def save_calendar(
        self,
        calendar_id: str,
        incoming: CalendarDocument,
        base: CalendarDocument | None,
        base_revision: int | None,
    ) -> StoreSnapshot: ...


@dataclass
class PendingSave:
    seq: int
    calendar_id: str
    incoming: CalendarDocument
    base: CalendarDocument
    base_revision: int


class SyncClient:
    """Keeps one active calendar in step with the store.

    The client holds a working document plus the ``base`` document and
    revision it last synchronized from. Local edits are saved against that
    base so the store can three-way merge them; a poll that sees a newer
    revision replaces both the working document and the base.
    """

    def __init__(self, transport: CalendarTransport, config: SyncConfig, executor: Executor | None = None) -> None:
        self.transport = transport
        self.config = config
        self._executor = executor
        self._lock = threading.RLock()
        self.active_calendar_id: str | None = None
        self.working: CalendarDocument | None = None
        self.base: CalendarDocument | None = None
        self.revision: int = 0
        self.state = STATE_IDLE
        self.online = True
        self.last_error = ""
        self._save_seq = 0
        self._inflight: set[int] = set()
        self.on_calendar_lost: list[Callable[[str], None]] = []

    @property
    def poll_interval_seconds(self) -> float:
        if self.online:
            return self.config.poll_interval_seconds
        return self.config.offline_poll_interval_seconds

    def _mark_online(self) -> None:
        if not self.online:
            logger.info("Calendar store reachable again")
        self.online = True
        self.last_error = ""

    def _mark_offline(self, exc: Exception) -> None:
        if self.online:
            logger.warning("Calendar store unreachable: %s", exc)
        else:
            logger.debug("Calendar store still unreachable: %s", exc)
        self.online = False
        self.last_error = str(exc)

    def _adopt(self, snapshot: StoreSnapshot) -> None:
        self.working = copy.deepcopy(snapshot.document)
        self.base = copy.deepcopy(snapshot.document)
        self.revision = snapshot.revision

    def _lose_calendar(self, calendar_id: str) -> None:
        """Closes the client after the store reported ``calendar_id`` as gone."""
        logger.warning("Calendar %s no longer exists in the store", calendar_id)
        with self._lock:
            if self.active_calendar_id == calendar_id:
                self.close()
        for callback in list(self.on_calendar_lost):
            callback(calendar_id)

    def select(self, calendar_id: str) -> CalendarDocument:
        """Opens a calendar. CalendarNotFound propagates to the caller."""
        with self._lock:
            self.active_calendar_id = calendar_id
            self.working = None
            self.base = None
            self.revision = 0
            self.state = STATE_SYNCING
        try:
            snapshot = self.transport.get_calendar(calendar_id)
        except StoreUnreachable as exc:
            with self._lock:
                self._mark_offline(exc)
                self.state = STATE_IDLE
            raise
        except CalendarNotFound:
            with self._lock:
                if self.active_calendar_id == calendar_id:
                    self.close()
            raise
        except Exception:
            with self._lock:
                self.state = STATE_IDLE
            raise
        with self._lock:
            self._mark_online()
            if self.active_calendar_id == calendar_id:
                self._adopt(snapshot)
            self.state = STATE_IDLE
            return copy.deepcopy(self.working)

    def poll(self) -> bool:
        """Fetches the active calendar; returns True when a newer revision was adopted.

        A strictly newer revision always replaces the working document, unsaved
        local edits included. Unsaved edits are re-sent only when the store is
        still at the revision they were made against.
        """
        with self._lock:
            calendar_id = self.active_calendar_id
            if calendar_id is None:
                return False
            if self.state == STATE_IDLE:
                self.state = STATE_SYNCING
        try:
            snapshot = self.transport.get_calendar(calendar_id)
        except StoreUnreachable as exc:
            with self._lock:
                self._mark_offline(exc)
                if self.state == STATE_SYNCING:
                    self.state = STATE_IDLE
            return False
        except CalendarNotFound:
            self._lose_calendar(calendar_id)
            return False
        with self._lock:
            self._mark_online()
            if self.state == STATE_SYNCING:
                self.state = STATE_IDLE
            if calendar_id != self.active_calendar_id:
                return False
            if snapshot.revision > self.revision or self.working is None:
                self._adopt(snapshot)
                logger.debug("Adopted remote revision %d for %s", snapshot.revision, calendar_id)
                return True
            unsaved = (
                snapshot.revision == self.revision
                and self.base is not None
                and not self._inflight
                and not self.working.equivalent(self.base)
            )
        if unsaved:
            logger.info("Re-sending unsaved edits for %s", calendar_id)
            self.schedule_save()
        return False

    def apply_local(self, document: CalendarDocument) -> PendingSave | None:
        """Replaces the working document with a local edit and schedules its save."""
        with self._lock:
            if self.active_calendar_id is None:
                return None
            self.working = copy.deepcopy(document)
            return self.schedule_save()

    def schedule_save(self) -> PendingSave | None:
        with self._lock:
            if self.active_calendar_id is None or self.working is None or self.base is None:
                return None
            self._save_seq += 1
            pending = PendingSave(
                seq=self._save_seq,
                calendar_id=self.active_calendar_id,
                incoming=copy.deepcopy(self.working),
                base=copy.deepcopy(self.base),
                base_revision=self.revision,
            )
            self._inflight.add(pending.seq)
            self.state = STATE_SAVING
        if self._executor is not None:
            future: Future = self._executor.submit(self.dispatch, pending)
            future.add_done_callback(_log_save_failure)
        else:
            self.dispatch(pending)
        return pending

    def dispatch(self, pending: PendingSave) -> bool:
        """Sends a scheduled save; returns True when its response was applied."""
        try:
            snapshot = self.transport.save_calendar(
                pending.calendar_id,
                pending.incoming,
                pending.base,
                pending.base_revision,
            )
        except StoreUnreachable as exc:
            with self._lock:
                self._inflight.discard(pending.seq)
                self._mark_offline(exc)
                self._settle()
            return False
        except CalendarNotFound:
            with self._lock:
                self._inflight.discard(pending.seq)
                self._settle()
            self._lose_calendar(pending.calendar_id)
            return False
        except Exception:
            with self._lock:
                self._inflight.discard(pending.seq)
                self._settle()
            raise
        with self._lock:
            self._inflight.discard(pending.seq)
            self._mark_online()
            self._settle()
            if pending.seq != self._save_seq:
                logger.debug("Discarding superseded save response #%d", pending.seq)
                return False
            if pending.calendar_id != self.active_calendar_id:
                logger.debug("Discarding save response for inactive calendar %s", pending.calendar_id)
                return False
            if snapshot.revision < self.revision:
                return False
            self._adopt(snapshot)
            return True

    def _settle(self) -> None:
        if not self._inflight and self.state == STATE_SAVING:
            self.state = STATE_IDLE

    def close(self) -> None:
        with self._lock:
            self.active_calendar_id = None
            self.working = None
            self.base = None
            self.revision = 0
            self.state = STATE_IDLE


def _log_save_failure(future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error("Background save failed: %s", exc)
