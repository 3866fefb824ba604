from __future__ import annotations

import copy
import threading
from dataclasses import dataclass

from atlascal.models import CalendarDocument


@dataclass
class RollbackSnapshot:
    document: CalendarDocument
    focus_index: int = 0


class RollbackLedger:
    """One undo slot per calendar: the document as it was before the last AI batch.

    Capturing overwrites the slot; consuming empties it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._slots: dict[str, RollbackSnapshot] = {}

    def capture(self, calendar_id: str, document: CalendarDocument, focus_index: int = 0) -> None:
        snapshot = RollbackSnapshot(document=copy.deepcopy(document), focus_index=int(focus_index))
        with self._lock:
            self._slots[calendar_id] = snapshot

    def consume(self, calendar_id: str) -> RollbackSnapshot | None:
        with self._lock:
            return self._slots.pop(calendar_id, None)

    def has_snapshot(self, calendar_id: str) -> bool:
        with self._lock:
            return calendar_id in self._slots

    def discard(self, calendar_id: str) -> None:
        with self._lock:
            self._slots.pop(calendar_id, None)
