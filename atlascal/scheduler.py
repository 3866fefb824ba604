from __future__ import annotations

import logging
import threading
from typing import Optional

from atlascal.sync_client import SyncClient

logger = logging.getLogger(__name__)


class SyncPoller:
    def __init__(self, sync_client: SyncClient) -> None:
        self.sync_client = sync_client
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="atlascal-sync-poller", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _poll_once(self) -> None:
        try:
            self.sync_client.poll()
        except Exception:
            logger.exception("Unexpected error while polling calendar store")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self._poll_once()
            # Cadence follows connectivity: fast while online, slower during an outage.
            self._manual_trigger_event.wait(timeout=self.sync_client.poll_interval_seconds)
            self._manual_trigger_event.clear()
