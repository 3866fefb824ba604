from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any


VIEW_MODES = ("row", "grid", "day")
MINUTES_PER_DAY = 1440
DEFAULT_NUM_DAYS = 5
DEFAULT_START_HOUR = 7
DEFAULT_END_HOUR = 22
DEFAULT_VIEW_MODE = "row"
DEFAULT_PALETTE = [
    "#5B7FBF",
    "#E07A5F",
    "#81B29A",
    "#F2CC8F",
    "#9D6FB5",
    "#3D9CA8",
    "#D4676C",
    "#7A8B99",
]
SCALAR_FIELDS = ("num_days", "start_date", "start_hour", "end_hour", "view_mode")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def today_utc() -> date:
    return utc_now().date()


def parse_start_date(value: Any, fallback: date | None = None) -> date:
    """Accepts a plain date or an ISO datetime string; only the date part is kept."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()[:10]
        try:
            return date.fromisoformat(text)
        except ValueError:
            pass
    return fallback or today_utc()


def _coerce_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return default
    return default


def format_minutes(minutes: int) -> str:
    minutes = max(0, min(MINUTES_PER_DAY, int(minutes)))
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


@dataclass
class StoreConfig:
    calendars_dir: str = "data/calendars"
    legacy_file: str = "data/calendar-data.json"
    audit_db_path: str = "data/audit.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StoreConfig":
        data = data or {}
        return cls(
            calendars_dir=str(data.get("calendars_dir", "data/calendars")).strip() or "data/calendars",
            legacy_file=str(data.get("legacy_file", "data/calendar-data.json")).strip(),
            audit_db_path=str(data.get("audit_db_path", "data/audit.db")).strip() or "data/audit.db",
        )


@dataclass
class AIConfig:
    base_url: str = "http://127.0.0.1:11434/v1"
    api_key: str = ""
    model: str = "gemma3:1b"
    timeout_seconds: int = 45
    temperature: float = 0.15
    message_limit: int = 14

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AIConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "http://127.0.0.1:11434/v1")).strip(),
            api_key=str(data.get("api_key", "") or "").strip(),
            model=str(data.get("model", "gemma3:1b")).strip() or "gemma3:1b",
            timeout_seconds=max(1, int(data.get("timeout_seconds", 45))),
            temperature=float(data.get("temperature", 0.15)),
            message_limit=max(1, int(data.get("message_limit", 14))),
        )


@dataclass
class GeocoderConfig:
    base_url: str = "https://nominatim.openstreetmap.org"
    user_agent: str = "atlascal/0.1"
    timeout_seconds: int = 10
    max_workers: int = 4

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GeocoderConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "https://nominatim.openstreetmap.org")).strip(),
            user_agent=str(data.get("user_agent", "atlascal/0.1")).strip() or "atlascal/0.1",
            timeout_seconds=max(1, int(data.get("timeout_seconds", 10))),
            max_workers=max(1, int(data.get("max_workers", 4))),
        )


@dataclass
class SyncConfig:
    server_url: str = "http://127.0.0.1:3000"
    poll_interval_seconds: float = 2.0
    offline_poll_interval_seconds: float = 10.0
    request_timeout_seconds: float = 10.0
    timezone: str = "UTC"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        poll = max(0.5, float(data.get("poll_interval_seconds", 2.0)))
        return cls(
            server_url=str(data.get("server_url", "http://127.0.0.1:3000")).strip().rstrip("/"),
            poll_interval_seconds=poll,
            offline_poll_interval_seconds=max(poll, float(data.get("offline_poll_interval_seconds", 10.0))),
            request_timeout_seconds=max(1.0, float(data.get("request_timeout_seconds", 10.0))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
        )


@dataclass
class PlannerConfig:
    palette: list[str] = field(default_factory=lambda: list(DEFAULT_PALETTE))
    default_duration_minutes: int = 60

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PlannerConfig":
        data = data or {}
        raw_palette = data.get("palette", DEFAULT_PALETTE)
        if not isinstance(raw_palette, list):
            raw_palette = DEFAULT_PALETTE
        palette = [str(x).strip() for x in raw_palette if re.fullmatch(r"#[0-9a-fA-F]{6}", str(x).strip())]
        return cls(
            palette=palette or list(DEFAULT_PALETTE),
            default_duration_minutes=max(1, min(MINUTES_PER_DAY, int(data.get("default_duration_minutes", 60)))),
        )


@dataclass
class AppConfig:
    store: StoreConfig = field(default_factory=StoreConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    geocoder: GeocoderConfig = field(default_factory=GeocoderConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    planner: PlannerConfig = field(default_factory=PlannerConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            store=StoreConfig.from_dict(data.get("store")),
            ai=AIConfig.from_dict(data.get("ai")),
            geocoder=GeocoderConfig.from_dict(data.get("geocoder")),
            sync=SyncConfig.from_dict(data.get("sync")),
            planner=PlannerConfig.from_dict(data.get("planner")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class Place:
    name: str
    lat: float
    lng: float

    @classmethod
    def from_dict(cls, data: Any) -> "Place | None":
        if not isinstance(data, dict):
            return None
        try:
            lat = float(data["lat"])
            lng = float(data["lng"])
        except (KeyError, TypeError, ValueError):
            return None
        return cls(name=str(data.get("name", "") or ""), lat=lat, lng=lng)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "lat": self.lat, "lng": self.lng}


@dataclass
class CalendarEvent:
    id: str
    day_index: int
    start_minutes: int
    end_minutes: int
    title: str = ""
    description: str = ""
    color: str | None = None
    location: Place | None = None
    destination: Place | None = None
    route_mode: str | None = None
    route: Any = None

    @classmethod
    def from_dict(cls, data: Any, day_index: int | None = None) -> "CalendarEvent | None":
        if not isinstance(data, dict):
            return None
        event_id = str(data.get("id", "") or "").strip()
        if not event_id:
            return None
        start = _coerce_int(data.get("startMinutes"), -1)
        end = _coerce_int(data.get("endMinutes"), -1)
        if start < 0 or end < 0:
            return None
        raw_day = data.get("dayIndex", day_index)
        resolved_day = _coerce_int(raw_day, day_index if day_index is not None else 0)
        return cls(
            id=event_id,
            day_index=max(0, resolved_day),
            start_minutes=min(MINUTES_PER_DAY, start),
            end_minutes=min(MINUTES_PER_DAY, end),
            title=str(data.get("title", "") or ""),
            description=str(data.get("description", "") or ""),
            color=(str(data["color"]) if data.get("color") else None),
            location=Place.from_dict(data.get("location")),
            destination=Place.from_dict(data.get("destination")),
            route_mode=(str(data["routeMode"]) if data.get("routeMode") else None),
            route=data.get("route"),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "dayIndex": self.day_index,
            "startMinutes": self.start_minutes,
            "endMinutes": self.end_minutes,
            "title": self.title,
            "description": self.description,
        }
        if self.color:
            payload["color"] = self.color
        if self.location is not None:
            payload["location"] = self.location.to_dict()
        if self.destination is not None:
            payload["destination"] = self.destination.to_dict()
        if self.route_mode:
            payload["routeMode"] = self.route_mode
        if self.route is not None:
            payload["route"] = self.route
        return payload

    def overlaps(self, start_minutes: int, end_minutes: int) -> bool:
        return self.start_minutes < end_minutes and self.end_minutes > start_minutes


@dataclass
class CalendarDocument:
    num_days: int = DEFAULT_NUM_DAYS
    start_date: date = field(default_factory=today_utc)
    start_hour: int = DEFAULT_START_HOUR
    end_hour: int = DEFAULT_END_HOUR
    view_mode: str = DEFAULT_VIEW_MODE
    events: dict[int, list[CalendarEvent]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CalendarDocument":
        settings = raw.get("settings") if isinstance(raw.get("settings"), dict) else {}

        def pick(key: str) -> Any:
            return raw[key] if raw.get(key) is not None else settings.get(key)

        num_days = _coerce_int(pick("numDays"), DEFAULT_NUM_DAYS)
        view_mode = str(pick("viewMode") or DEFAULT_VIEW_MODE)
        events: list[CalendarEvent] = []
        raw_events = raw.get("events")
        if isinstance(raw_events, dict):
            for day_key, day_events in raw_events.items():
                if not isinstance(day_events, list):
                    continue
                bucket_day = _coerce_int(day_key, 0)
                for item in day_events:
                    event = CalendarEvent.from_dict(item, day_index=bucket_day)
                    if event is not None:
                        events.append(event)
        return cls(
            num_days=num_days if num_days > 0 else DEFAULT_NUM_DAYS,
            start_date=parse_start_date(pick("startDate")),
            start_hour=_coerce_int(pick("startHour"), DEFAULT_START_HOUR),
            end_hour=_coerce_int(pick("endHour"), DEFAULT_END_HOUR),
            view_mode=view_mode if view_mode in VIEW_MODES else DEFAULT_VIEW_MODE,
            events=group_by_day(events),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "numDays": self.num_days,
            "startDate": self.start_date.isoformat(),
            "startHour": self.start_hour,
            "endHour": self.end_hour,
            "viewMode": self.view_mode,
            "events": {
                str(day): [event.to_dict() for event in day_events]
                for day, day_events in sorted(self.events.items())
                if day_events
            },
        }

    def scalars(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in SCALAR_FIELDS}

    def flatten(self) -> dict[str, CalendarEvent]:
        return flatten_events(self.events)

    def equivalent(self, other: "CalendarDocument") -> bool:
        """Content equality that ignores bucket ordering and empty buckets."""
        if self.scalars() != other.scalars():
            return False
        if self.flatten() != other.flatten():
            return False
        mine = {day for day, items in self.events.items() if items}
        theirs = {day for day, items in other.events.items() if items}
        return mine == theirs

    def end_date(self) -> date:
        return self.start_date + timedelta(days=max(1, self.num_days) - 1)


def flatten_events(events_by_day: dict[int, list[CalendarEvent]]) -> dict[str, CalendarEvent]:
    result: dict[str, CalendarEvent] = {}
    for day_events in events_by_day.values():
        for event in day_events or []:
            if not event.id:
                continue
            result[event.id] = event
    return result


def group_by_day(events: Any) -> dict[int, list[CalendarEvent]]:
    grouped: dict[int, list[CalendarEvent]] = {}
    for event in events:
        grouped.setdefault(event.day_index, []).append(event)
    for day_events in grouped.values():
        day_events.sort(key=lambda item: item.start_minutes)
    return grouped


@dataclass
class StoreSnapshot:
    document: CalendarDocument
    revision: int
    updated_at: str = ""
    merged: bool = False
    changed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.document.to_dict(),
            "revision": self.revision,
            "updatedAt": self.updated_at,
            "merged": self.merged,
        }


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.calendar_id, "name": self.name, "updatedAt": self.updated_at}


@dataclass
class PlanCandidate:
    title: str
    date: date
    start_minutes: int
    end_minutes: int
    description: str = ""
    origin: str = ""
    destination: str = ""
    color: str | None = None


@dataclass
class PlanSummary:
    created: int = 0
    skipped_invalid: int = 0
    skipped_overlap: int = 0
    unresolved_places: list[str] = field(default_factory=list)
    window_shift_days: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "skippedInvalid": self.skipped_invalid,
            "skippedOverlap": self.skipped_overlap,
            "unresolvedPlaces": list(self.unresolved_places),
            "windowShiftDays": self.window_shift_days,
        }

    def describe(self) -> str:
        noun = "event" if self.created == 1 else "events"
        parts = [f"Added {self.created} {noun}."]
        if self.skipped_overlap:
            parts.append(f"Skipped {self.skipped_overlap} overlapping.")
        if self.skipped_invalid:
            parts.append(f"Ignored {self.skipped_invalid} invalid.")
        if self.unresolved_places:
            parts.append(f"Could not locate: {', '.join(self.unresolved_places)}.")
        if self.window_shift_days:
            parts.append(f"Moved the calendar start back {self.window_shift_days} day(s).")
        return " ".join(parts)
