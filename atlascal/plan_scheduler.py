from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable

from atlascal.geocoder import BatchGeocoder, GeocodeFn, normalize_place_name
from atlascal.models import (
    DEFAULT_PALETTE,
    CalendarDocument,
    CalendarEvent,
    PlanCandidate,
    PlanSummary,
)


@dataclass
class ScheduledPlan:
    document: CalendarDocument
    summary: PlanSummary
    created_ids: list[str]


def _new_event_id() -> str:
    return str(uuid.uuid4())


def schedule_plan(
    candidates: list[PlanCandidate],
    document: CalendarDocument,
    geocode: GeocodeFn | BatchGeocoder,
    *,
    window_start: date | None = None,
    skipped_invalid: int = 0,
    palette: list[str] | None = None,
    id_factory: Callable[[], str] = _new_event_id,
) -> ScheduledPlan:
    """Places normalized candidates into a copy of ``document``.

    Candidates are placed in (day, start) order; one that overlaps anything
    already on its day, including an earlier candidate of the same batch, is
    skipped. If a candidate falls before the window start, the window moves
    back far enough for it and all existing events keep their absolute dates.
    """
    window_start = window_start or document.start_date
    palette = palette or list(DEFAULT_PALETTE)
    resolver = geocode if isinstance(geocode, BatchGeocoder) else BatchGeocoder(geocode)

    dated = [((candidate.date - window_start).days, candidate) for candidate in candidates]
    dated.sort(key=lambda item: (item[0], item[1].start_minutes))
    shift = max(0, -min((offset for offset, _ in dated), default=0))

    result = copy.deepcopy(document)
    summary = PlanSummary(skipped_invalid=skipped_invalid, window_shift_days=shift)
    if shift:
        result.start_date = window_start - timedelta(days=shift)
        result.num_days += shift
        shifted: dict[int, list[CalendarEvent]] = {}
        for day, day_events in result.events.items():
            for event in day_events:
                event.day_index = day + shift
            shifted[day + shift] = day_events
        result.events = shifted

    resolver.prefetch(
        name for _, candidate in dated for name in (candidate.origin, candidate.destination) if name
    )

    unresolved: list[str] = []
    unresolved_keys: set[str] = set()
    created_ids: list[str] = []
    for offset, candidate in dated:
        places = {}
        for role, name in (("location", candidate.origin), ("destination", candidate.destination)):
            if not name:
                places[role] = None
                continue
            place = resolver.resolve(name)
            if place is None and normalize_place_name(name) not in unresolved_keys:
                unresolved_keys.add(normalize_place_name(name))
                unresolved.append(name)
            places[role] = place

        day_index = offset + shift
        bucket = result.events.setdefault(day_index, [])
        if any(existing.overlaps(candidate.start_minutes, candidate.end_minutes) for existing in bucket):
            summary.skipped_overlap += 1
            continue

        color = candidate.color or palette[len(created_ids) % len(palette)]
        event = CalendarEvent(
            id=id_factory(),
            day_index=day_index,
            start_minutes=candidate.start_minutes,
            end_minutes=candidate.end_minutes,
            title=candidate.title,
            description=candidate.description,
            color=color,
            location=places["location"],
            destination=places["destination"],
        )
        bucket.append(event)
        bucket.sort(key=lambda item: item.start_minutes)
        created_ids.append(event.id)

    result.events = {day: items for day, items in result.events.items() if items}
    if result.events:
        result.num_days = max(result.num_days, max(result.events) + 1)
    summary.created = len(created_ids)
    summary.unresolved_places = unresolved
    return ScheduledPlan(document=result, summary=summary, created_ids=created_ids)
