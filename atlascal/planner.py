from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

from atlascal.models import (
    MINUTES_PER_DAY,
    CalendarDocument,
    PlanCandidate,
    format_minutes,
    today_utc,
)

STATUS_READY = "ready"
STATUS_NEEDS_CLARIFICATION = "needs_clarification"
MAX_CONTEXT_EVENTS = 200
MAX_START_MINUTES = MINUTES_PER_DAY - 30
UNPARSEABLE_MESSAGE = (
    "I could not parse that reliably. Please restate with exact date, time, and locations."
)
CLARIFY_MESSAGE = (
    "I need a bit more detail to schedule this accurately. Please clarify exact date/time or locations."
)

ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_24H_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
HEX_COLOR_PATTERN = re.compile(r"^#[0-9a-fA-F]{6}$")

SYSTEM_PROMPT = """You are an assistant that converts travel/scheduling chat into calendar events.
Respond with STRICT JSON only, no markdown.

Current date: {today}
User timezone: {timezone}
Calendar visible window starts on: {window_start}
Calendar visible window ends on: {window_end}
Visible days in UI: {visible_days}
Typical hourly bounds: {start_hour}:00-{end_hour}:00

Existing events (do not overlap with these unless user explicitly asks to replace):
{existing_events}

Output JSON schema:
{{
  "status": "ready" | "needs_clarification",
  "assistantMessage": "short message for user",
  "events": [
    {{
      "title": "string",
      "description": "string",
      "date": "YYYY-MM-DD",
      "startTime": "HH:MM",
      "endTime": "HH:MM",
      "origin": "free-text place",
      "destination": "free-text place",
      "color": "#RRGGBB optional"
    }}
  ]
}}

Rules:
1. If date/time or locations are ambiguous, set status to "needs_clarification", ask specific follow-up questions, and return an empty events array.
2. If enough detail exists, set status to "ready" and return all events.
3. Always use 24-hour HH:MM format.
4. Use exact dates in YYYY-MM-DD format; resolve relative dates from current date and timezone.
5. Do not overlap new events with existing events. If overlap is unavoidable, ask a clarification question.
6. Do not include extra keys.
"""


def clean_string(value: Any, max_len: int = 500) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()[:max_len]


def _first_present(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def parse_iso_date(value: str) -> date | None:
    if not ISO_DATE_PATTERN.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def parse_time_24h(value: str) -> int | None:
    match = TIME_24H_PATTERN.match(value)
    if not match:
        return None
    return int(match.group(1)) * 60 + int(match.group(2))


def _clamp_int(value: Any, low: int, high: int, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


@dataclass
class NormalizedPlan:
    candidates: list[PlanCandidate] = field(default_factory=list)
    invalid: int = 0


def sanitize_plan_event(raw: Any) -> dict[str, str] | None:
    """Resolves field aliases and bounds every text field of one proposed event.

    Returns None unless the date is a real YYYY-MM-DD date and both times are
    24-hour HH:MM. Extra keys are dropped.
    """
    if not isinstance(raw, dict):
        return None
    event = {
        "title": clean_string(_first_present(raw, "title", "name"), 120),
        "description": clean_string(_first_present(raw, "description", "notes"), 800),
        "date": clean_string(raw.get("date"), 10),
        "startTime": clean_string(_first_present(raw, "startTime", "start"), 5),
        "endTime": clean_string(_first_present(raw, "endTime", "end"), 5),
        "origin": clean_string(_first_present(raw, "origin", "location", "from"), 160),
        "destination": clean_string(_first_present(raw, "destination", "to"), 160),
        "color": clean_string(raw.get("color"), 20),
    }
    if (
        parse_iso_date(event["date"]) is None
        or parse_time_24h(event["startTime"]) is None
        or parse_time_24h(event["endTime"]) is None
    ):
        return None
    return event


def normalize_candidate(raw: Any, default_duration: int = 60) -> PlanCandidate | None:
    event = sanitize_plan_event(raw)
    if event is None:
        return None
    start = max(0, min(MAX_START_MINUTES, parse_time_24h(event["startTime"])))
    end = parse_time_24h(event["endTime"])
    if end <= start:
        end = min(MINUTES_PER_DAY, start + default_duration)

    color = event["color"]
    return PlanCandidate(
        title=event["title"] or "Untitled",
        date=parse_iso_date(event["date"]),
        start_minutes=start,
        end_minutes=end,
        description=event["description"],
        origin=event["origin"],
        destination=event["destination"],
        color=color if HEX_COLOR_PATTERN.match(color) else None,
    )


def normalize_candidates(raw_events: Any, default_duration: int = 60) -> NormalizedPlan:
    """Validates model-proposed events, keeping their order and counting the dropped ones."""
    plan = NormalizedPlan()
    if not isinstance(raw_events, list):
        return plan
    for item in raw_events:
        candidate = normalize_candidate(item, default_duration=default_duration)
        if candidate is None:
            plan.invalid += 1
            continue
        plan.candidates.append(candidate)
    return plan


@dataclass
class PlanReply:
    status: str
    message: str
    events: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "assistantMessage": self.message, "events": list(self.events)}

    @classmethod
    def from_dict(cls, data: Any) -> "PlanReply":
        if not isinstance(data, dict):
            return cls(status=STATUS_NEEDS_CLARIFICATION, message=UNPARSEABLE_MESSAGE)
        return normalize_plan_reply(
            {
                "status": data.get("status"),
                "assistantMessage": data.get("assistantMessage"),
                "events": data.get("events"),
            }
        )


def normalize_plan_reply(parsed: dict[str, Any] | None) -> PlanReply:
    """Coerces a parsed model reply into a ready or needs_clarification result.

    Unparseable replies and ``ready`` replies without a single valid event
    both come back as needs_clarification with no events.
    """
    if parsed is None:
        return PlanReply(status=STATUS_NEEDS_CLARIFICATION, message=UNPARSEABLE_MESSAGE)
    raw_events = parsed.get("events")
    sanitized = [sanitize_plan_event(item) for item in raw_events] if isinstance(raw_events, list) else []
    events = [item for item in sanitized if item is not None]
    valid_count = len(events)

    status = parsed.get("status")
    if status not in {STATUS_READY, STATUS_NEEDS_CLARIFICATION}:
        status = STATUS_READY if valid_count else STATUS_NEEDS_CLARIFICATION
    if status == STATUS_READY and valid_count == 0:
        status = STATUS_NEEDS_CLARIFICATION
    if status == STATUS_NEEDS_CLARIFICATION:
        events = []

    if status == STATUS_READY:
        fallback = f"I found {valid_count} event{'' if valid_count == 1 else 's'} to add."
    else:
        fallback = CLARIFY_MESSAGE
    message = clean_string(_first_present(parsed, "assistantMessage", "message", "reply"), 1200)
    return PlanReply(status=status, message=message or fallback, events=events)


def bound_messages(raw_messages: Any, limit: int) -> list[dict[str, str]]:
    if not isinstance(raw_messages, list):
        return []
    messages: list[dict[str, str]] = []
    for item in raw_messages[-max(1, limit) :]:
        if not isinstance(item, dict):
            continue
        content = clean_string(item.get("text", item.get("content")), 2000)
        if not content:
            continue
        role = "assistant" if item.get("role") == "assistant" else "user"
        messages.append({"role": role, "content": content})
    return messages


def _sanitize_context_event(raw: Any) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None
    event_date = clean_string(raw.get("date"), 10)
    start_time = clean_string(raw.get("startTime"), 5)
    end_time = clean_string(raw.get("endTime"), 5)
    if parse_iso_date(event_date) is None or parse_time_24h(start_time) is None or parse_time_24h(end_time) is None:
        return None
    return {
        "dayIndex": _clamp_int(raw.get("dayIndex"), 0, 10_000, 0),
        "date": event_date,
        "startTime": start_time,
        "endTime": end_time,
        "title": clean_string(raw.get("title"), 120) or "Untitled",
        "origin": clean_string(raw.get("origin"), 140),
        "destination": clean_string(raw.get("destination"), 140),
    }


def sanitize_context(raw: Any) -> dict[str, Any]:
    raw = raw if isinstance(raw, dict) else {}
    today = today_utc().isoformat()

    def _date_or_today(value: Any) -> str:
        text = clean_string(value, 10)
        return text if parse_iso_date(text) is not None else today

    raw_events = raw.get("existingEvents")
    existing: list[dict[str, Any]] = []
    if isinstance(raw_events, list):
        for item in raw_events:
            cleaned = _sanitize_context_event(item)
            if cleaned is not None:
                existing.append(cleaned)
    return {
        "today": today,
        "timezone": clean_string(raw.get("timezone"), 80) or "UTC",
        "calendarStartDate": _date_or_today(raw.get("calendarStartDate")),
        "calendarEndDate": _date_or_today(raw.get("calendarEndDate")),
        "visibleDays": _clamp_int(raw.get("visibleDays"), 1, 90, 5),
        "dayStartHour": _clamp_int(raw.get("dayStartHour"), 0, 23, 7),
        "dayEndHour": _clamp_int(raw.get("dayEndHour"), 1, 24, 22),
        "existingEvents": existing[:MAX_CONTEXT_EVENTS],
    }


def format_existing_events(events: list[dict[str, Any]]) -> str:
    if not events:
        return "[]"
    lines = []
    for event in events:
        route_bits = " -> ".join(part for part in (event.get("origin"), event.get("destination")) if part)
        route = f" | {route_bits}" if route_bits else ""
        lines.append(
            f"{event['date']} [day {event['dayIndex']}] {event['startTime']}-{event['endTime']} {event['title']}{route}"
        )
    return "\n".join(lines)


def build_system_prompt(context: dict[str, Any]) -> str:
    return SYSTEM_PROMPT.format(
        today=context["today"],
        timezone=context["timezone"],
        window_start=context["calendarStartDate"],
        window_end=context["calendarEndDate"],
        visible_days=context["visibleDays"],
        start_hour=context["dayStartHour"],
        end_hour=context["dayEndHour"],
        existing_events=format_existing_events(context["existingEvents"]),
    )


def build_messages(context: dict[str, Any], history: list[dict[str, str]]) -> list[dict[str, str]]:
    return [{"role": "system", "content": build_system_prompt(context)}, *history]


def build_planning_context(document: CalendarDocument, timezone: str = "UTC") -> dict[str, Any]:
    """Client-side context for the planning model, existing events sorted by date then time."""
    existing: list[tuple[date, int, dict[str, Any]]] = []
    for event in document.flatten().values():
        event_date = document.start_date + timedelta(days=event.day_index)
        existing.append(
            (
                event_date,
                event.start_minutes,
                {
                    "dayIndex": event.day_index,
                    "date": event_date.isoformat(),
                    "startTime": format_minutes(event.start_minutes),
                    "endTime": format_minutes(min(event.end_minutes, MINUTES_PER_DAY - 1)),
                    "title": event.title or "Untitled",
                    "origin": event.location.name if event.location else "",
                    "destination": event.destination.name if event.destination else "",
                },
            )
        )
    existing.sort(key=lambda item: (item[0], item[1]))
    return {
        "timezone": timezone,
        "calendarStartDate": document.start_date.isoformat(),
        "calendarEndDate": document.end_date().isoformat(),
        "visibleDays": document.num_days,
        "dayStartHour": document.start_hour,
        "dayEndHour": document.end_hour,
        "existingEvents": [item[2] for item in existing[:MAX_CONTEXT_EVENTS]],
    }
