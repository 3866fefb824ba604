from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Callable, TextIO

from atlascal.config_manager import ConfigManager
from atlascal.errors import AtlasError, CalendarNotFound
from atlascal.geocoder import GeocodeFn, NominatimGeocoder
from atlascal.models import AppConfig
from atlascal.plan_session import PlanSession
from atlascal.scheduler import SyncPoller
from atlascal.store_client import CalendarServiceClient
from atlascal.sync_client import SyncClient

logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  /calendars          list calendars
  /open <id>          switch to a calendar
  /new <name>         create a calendar and open it
  /delete             delete the open calendar
  /undo               roll back the last AI batch
  /sync               poll the store now
  /quit               exit
Anything else is sent to the planner."""


class CalendarClient:
    """Wires the store transport, sync loop and planning session from one config."""

    def __init__(
        self,
        config: AppConfig,
        *,
        transport: CalendarServiceClient | None = None,
        geocode: GeocodeFn | None = None,
    ) -> None:
        self.config = config
        self.transport = transport or CalendarServiceClient(config.sync)
        self.sync = SyncClient(self.transport, config.sync)
        self.poller = SyncPoller(self.sync)
        self.session = PlanSession(
            sync_client=self.sync,
            transport=self.transport,
            geocode=geocode or NominatimGeocoder(config.geocoder),
            planner_config=config.planner,
            message_limit=config.ai.message_limit,
            geocode_workers=config.geocoder.max_workers,
            timezone=config.sync.timezone,
        )

    @classmethod
    def from_config_path(cls, config_path: str, **kwargs) -> "CalendarClient":
        return cls(ConfigManager(config_path).load(), **kwargs)

    def open(self, calendar_id: str | None = None) -> str:
        """Opens ``calendar_id`` or the most recently updated calendar, creating one if none exist."""
        if calendar_id is None:
            calendars = self.transport.list_calendars()
            calendar_id = calendars[0].calendar_id if calendars else self.transport.create_calendar("My Calendar")
        self.session.select_calendar(calendar_id)
        self.poller.start()
        return calendar_id

    def close(self) -> None:
        self.poller.stop()
        self.sync.close()

    def handle(self, line: str) -> str:
        text = line.strip()
        command, _, argument = text.partition(" ")
        argument = argument.strip()
        if command == "/help":
            return HELP_TEXT
        if command == "/calendars":
            items = self.transport.list_calendars()
            if not items:
                return "No calendars yet."
            active = self.sync.active_calendar_id
            return "\n".join(
                f"{'*' if item.calendar_id == active else ' '} {item.calendar_id}  {item.name}" for item in items
            )
        if command == "/open":
            if not argument:
                return "Usage: /open <id>"
            try:
                self.open(argument)
            except CalendarNotFound:
                return f"Calendar {argument} does not exist."
            return f"Opened {argument}."
        if command == "/new":
            calendar_id = self.transport.create_calendar(argument or "Untitled")
            self.open(calendar_id)
            return f"Created and opened {calendar_id}."
        if command == "/delete":
            calendar_id = self.sync.active_calendar_id
            if calendar_id is None:
                return "No calendar is open."
            self.session.delete_calendar(calendar_id)
            return f"Deleted {calendar_id}."
        if command == "/undo":
            return self.session.rollback().message
        if command == "/sync":
            self.poller.trigger_manual()
            return "Sync requested."
        return self.session.submit(text).message


def main(
    argv: list[str] | None = None,
    *,
    stdin: TextIO = sys.stdin,
    stdout: TextIO = sys.stdout,
    factory: Callable[..., CalendarClient] = CalendarClient.from_config_path,
) -> int:
    parser = argparse.ArgumentParser(prog="atlascal-client", description="Chat planner for a shared atlascal calendar")
    parser.add_argument("--config", default=os.getenv("ATLASCAL_CONFIG_PATH", "config.yaml"))
    parser.add_argument("--calendar", default=None, help="calendar id to open (default: most recent)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=os.getenv("ATLASCAL_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    client = factory(args.config)
    try:
        try:
            calendar_id = client.open(args.calendar)
        except AtlasError as exc:
            print(f"Unable to open calendar: {exc}", file=stdout)
            return 1
        print(f"Opened {calendar_id}. Type /help for commands.", file=stdout)
        for line in stdin:
            if not line.strip():
                continue
            if line.strip() == "/quit":
                break
            try:
                print(client.handle(line), file=stdout)
            except AtlasError as exc:
                logger.warning("Command failed: %s", exc)
                print(f"Error: {exc}", file=stdout)
    finally:
        client.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
