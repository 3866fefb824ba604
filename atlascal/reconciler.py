from __future__ import annotations

import copy
from dataclasses import dataclass, field

from atlascal.models import SCALAR_FIELDS, CalendarDocument, group_by_day


@dataclass
class MergeOutcome:
    document: CalendarDocument
    scalar_fields: list[str] = field(default_factory=list)
    written_ids: list[str] = field(default_factory=list)
    deleted_ids: list[str] = field(default_factory=list)

    @property
    def changed_anything(self) -> bool:
        return bool(self.scalar_fields or self.written_ids or self.deleted_ids)


def merge_documents(
    *,
    current: CalendarDocument,
    base: CalendarDocument,
    incoming: CalendarDocument,
) -> MergeOutcome:
    """Three-way merge of a caller's save against the authoritative document.

    ``base`` is what the caller last synchronized from and ``incoming`` is the
    caller's edit of it. Only what the caller changed relative to ``base`` is
    written over ``current``:

    * scalar settings the caller touched take the incoming value, others keep
      the current value;
    * events added or edited by the caller replace the current event with the
      same id as a whole (no field-level merge inside an event);
    * events the caller deleted are removed even if someone else edited them;
    * events added by someone else since ``base`` are left alone.
    """
    merged = copy.deepcopy(current)
    touched_scalars: list[str] = []
    for name in SCALAR_FIELDS:
        incoming_value = getattr(incoming, name)
        if incoming_value != getattr(base, name):
            setattr(merged, name, incoming_value)
            touched_scalars.append(name)

    base_map = base.flatten()
    incoming_map = incoming.flatten()
    working = merged.flatten()

    written: list[str] = []
    for event_id, incoming_event in incoming_map.items():
        if incoming_event != base_map.get(event_id):
            working[event_id] = copy.deepcopy(incoming_event)
            written.append(event_id)

    deleted: list[str] = []
    for event_id in base_map:
        if event_id in incoming_map:
            continue
        if working.pop(event_id, None) is not None:
            deleted.append(event_id)

    merged.events = group_by_day(working.values())
    return MergeOutcome(
        document=merged,
        scalar_fields=touched_scalars,
        written_ids=written,
        deleted_ids=deleted,
    )
