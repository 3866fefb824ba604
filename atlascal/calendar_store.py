from __future__ import annotations

import copy
import json
import logging
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from atlascal.config_manager import write_text_atomic
from atlascal.errors import CalendarNotFound, InvalidPayload
from atlascal.models import (
    CalendarDocument,
    CalendarInfo,
    StoreSnapshot,
    utc_now,
)
from atlascal.reconciler import merge_documents

logger = logging.getLogger(__name__)

LEGACY_CALENDAR_NAME = "My Calendar"


@dataclass
class _Entry:
    name: str
    document: CalendarDocument
    revision: int
    updated_at: str

    def snapshot(self, *, merged: bool = False, changed: bool = False) -> StoreSnapshot:
        return StoreSnapshot(
            document=copy.deepcopy(self.document),
            revision=self.revision,
            updated_at=self.updated_at,
            merged=merged,
            changed=changed,
        )


def _now_iso() -> str:
    return utc_now().isoformat()


class CalendarStore:
    """Authoritative per-calendar documents with revisions and a JSON file mirror.

    Every mutation rewrites the calendar file first and only then replaces the
    in-memory entry, both under the same lock.
    """

    def __init__(self, calendars_dir: str, legacy_file: str = "") -> None:
        self.calendars_dir = Path(calendars_dir)
        self.legacy_file = Path(legacy_file) if legacy_file else None
        self._lock = threading.RLock()
        self._entries: dict[str, _Entry] = {}
        self._load_all()

    def _file_path(self, calendar_id: str) -> Path:
        return self.calendars_dir / f"{calendar_id}.json"

    def _write(self, calendar_id: str, entry: _Entry) -> None:
        self.calendars_dir.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(
            {
                "name": entry.name,
                "state": entry.document.to_dict(),
                "revision": entry.revision,
                "updatedAt": entry.updated_at,
            },
            ensure_ascii=False,
            indent=2,
        )
        write_text_atomic(self._file_path(calendar_id), payload)

    def _read(self, path: Path) -> _Entry | None:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Skipping unreadable calendar file %s: %s", path, exc)
            return None
        if not isinstance(raw, dict):
            logger.warning("Skipping calendar file %s: root is not an object", path)
            return None
        state = raw.get("state") if isinstance(raw.get("state"), dict) else raw
        revision = raw.get("revision", 0)
        return _Entry(
            name=str(raw.get("name") or "Untitled"),
            document=CalendarDocument.from_dict(state),
            revision=revision if isinstance(revision, int) and revision >= 0 else 0,
            updated_at=str(raw.get("updatedAt") or _now_iso()),
        )

    def _load_all(self) -> None:
        with self._lock:
            self.calendars_dir.mkdir(parents=True, exist_ok=True)
            existing = sorted(self.calendars_dir.glob("*.json"))
            if not existing and self.legacy_file is not None and self.legacy_file.exists():
                self._migrate_legacy(self.legacy_file)
            for path in sorted(self.calendars_dir.glob("*.json")):
                calendar_id = path.stem
                if calendar_id in self._entries:
                    continue
                entry = self._read(path)
                if entry is not None:
                    self._entries[calendar_id] = entry
            logger.info("Loaded %d calendar(s) from %s", len(self._entries), self.calendars_dir)

    def _migrate_legacy(self, legacy_path: Path) -> None:
        entry = self._read(legacy_path)
        if entry is None:
            return
        entry.name = LEGACY_CALENDAR_NAME
        entry.revision = 0
        calendar_id = str(uuid.uuid4())
        self._write(calendar_id, entry)
        self._entries[calendar_id] = entry
        logger.info("Migrated legacy calendar file %s to calendar %s", legacy_path, calendar_id)

    def _require(self, calendar_id: str) -> _Entry:
        entry = self._entries.get(calendar_id)
        if entry is None:
            raise CalendarNotFound(calendar_id)
        return entry

    def list_calendars(self) -> list[CalendarInfo]:
        with self._lock:
            items = [
                CalendarInfo(calendar_id=calendar_id, name=entry.name, updated_at=entry.updated_at)
                for calendar_id, entry in self._entries.items()
            ]
        items.sort(key=lambda item: item.updated_at, reverse=True)
        return items

    def create(self, name: str = "Untitled", document: CalendarDocument | None = None) -> tuple[str, StoreSnapshot]:
        cleaned = str(name or "").strip() or "Untitled"
        calendar_id = str(uuid.uuid4())
        with self._lock:
            entry = _Entry(
                name=cleaned,
                document=copy.deepcopy(document) if document is not None else CalendarDocument(),
                revision=0,
                updated_at=_now_iso(),
            )
            self._write(calendar_id, entry)
            self._entries[calendar_id] = entry
            logger.info("Created calendar %s (%s)", calendar_id, cleaned)
            return calendar_id, entry.snapshot()

    def rename(self, calendar_id: str, name: str) -> CalendarInfo:
        cleaned = str(name or "").strip()
        if not cleaned:
            raise InvalidPayload("Name is required")
        with self._lock:
            entry = self._require(calendar_id)
            renamed = _Entry(
                name=cleaned,
                document=entry.document,
                revision=entry.revision,
                updated_at=_now_iso(),
            )
            self._write(calendar_id, renamed)
            self._entries[calendar_id] = renamed
            return CalendarInfo(calendar_id=calendar_id, name=renamed.name, updated_at=renamed.updated_at)

    def delete(self, calendar_id: str) -> None:
        with self._lock:
            self._require(calendar_id)
            self._file_path(calendar_id).unlink(missing_ok=True)
            del self._entries[calendar_id]
            logger.info("Deleted calendar %s", calendar_id)

    def name_of(self, calendar_id: str) -> str:
        with self._lock:
            return self._require(calendar_id).name

    def get(self, calendar_id: str) -> StoreSnapshot:
        with self._lock:
            return self._require(calendar_id).snapshot()

    def put(
        self,
        calendar_id: str,
        incoming: CalendarDocument,
        base: CalendarDocument | None = None,
        base_revision: int | None = None,
    ) -> StoreSnapshot:
        """Accept a save, merging it when the caller's base revision is stale.

        A save with no base revision, or one matching the current revision, is
        taken verbatim. A stale save with a base document is three-way merged
        against the current document. The revision only advances when the
        resulting document differs from the current one.
        """
        with self._lock:
            entry = self._require(calendar_id)
            merged = False
            if base_revision is not None and base_revision != entry.revision and base is not None:
                outcome = merge_documents(current=entry.document, base=base, incoming=incoming)
                next_document = outcome.document
                merged = True
                logger.debug(
                    "Merged stale save for %s (base r%d, current r%d): scalars=%s written=%s deleted=%s",
                    calendar_id,
                    base_revision,
                    entry.revision,
                    outcome.scalar_fields,
                    outcome.written_ids,
                    outcome.deleted_ids,
                )
            else:
                next_document = copy.deepcopy(incoming)

            if next_document.equivalent(entry.document):
                return entry.snapshot(merged=merged)

            accepted = _Entry(
                name=entry.name,
                document=next_document,
                revision=entry.revision + 1,
                updated_at=_now_iso(),
            )
            self._write(calendar_id, accepted)
            self._entries[calendar_id] = accepted
            return accepted.snapshot(merged=merged, changed=True)


def parse_document_payload(payload: Any) -> CalendarDocument:
    if not isinstance(payload, dict):
        raise InvalidPayload("calendar state must be an object")
    return CalendarDocument.from_dict(payload)
