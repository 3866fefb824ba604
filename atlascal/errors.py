from __future__ import annotations


class AtlasError(Exception):
    """Base class for errors raised by atlascal."""


class CalendarNotFound(AtlasError):
    def __init__(self, calendar_id: str) -> None:
        super().__init__(f"Calendar not found: {calendar_id}")
        self.calendar_id = calendar_id


class InvalidPayload(AtlasError, ValueError):
    pass


class StoreUnreachable(AtlasError):
    pass


class PlannerUnreachable(AtlasError):
    def __init__(self, message: str, *, status_code: int = 503) -> None:
        super().__init__(message)
        self.status_code = status_code


class StaleResult(AtlasError):
    def __init__(self, expected_calendar_id: str, active_calendar_id: str | None) -> None:
        super().__init__(
            f"Result computed for calendar {expected_calendar_id} but {active_calendar_id} is active"
        )
        self.expected_calendar_id = expected_calendar_id
        self.active_calendar_id = active_calendar_id
