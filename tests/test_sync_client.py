import copy
import tempfile
import unittest
from datetime import date

from atlascal.calendar_store import CalendarStore
from atlascal.errors import CalendarNotFound, StoreUnreachable
from atlascal.models import CalendarDocument, CalendarEvent, SyncConfig, group_by_day
from atlascal.sync_client import STATE_IDLE, PendingSave, SyncClient


class StoreTransport:
    """In-process transport over a real CalendarStore with a switchable outage."""

    def __init__(self, store: CalendarStore) -> None:
        self.store = store
        self.offline = False
        self.saves: list[tuple[str, int | None]] = []

    def _check(self) -> None:
        if self.offline:
            raise StoreUnreachable("connection refused")

    def get_calendar(self, calendar_id):
        self._check()
        return self.store.get(calendar_id)

    def save_calendar(self, calendar_id, incoming, base, base_revision):
        self._check()
        self.saves.append((calendar_id, base_revision))
        return self.store.put(calendar_id, incoming, base=base, base_revision=base_revision)


def _add(document: CalendarDocument, event_id: str, day: int = 0, start: int = 540) -> CalendarDocument:
    updated = copy.deepcopy(document)
    events = updated.flatten()
    events[event_id] = CalendarEvent(id=event_id, day_index=day, start_minutes=start, end_minutes=start + 60)
    updated.events = group_by_day(events.values())
    return updated


class SyncClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = CalendarStore(self.temp_dir.name)
        self.calendar_id, _ = self.store.create("Trip", CalendarDocument(start_date=date(2027, 1, 1)))
        self.transport = StoreTransport(self.store)
        self.config = SyncConfig(poll_interval_seconds=2.0, offline_poll_interval_seconds=10.0)
        self.client = SyncClient(self.transport, self.config)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_select_loads_document_and_unknown_id_propagates(self) -> None:
        document = self.client.select(self.calendar_id)
        self.assertEqual(document.start_date, date(2027, 1, 1))
        self.assertEqual(self.client.revision, 0)
        self.assertEqual(self.client.state, STATE_IDLE)
        with self.assertRaises(CalendarNotFound):
            self.client.select("missing")

    def test_local_edit_is_saved_and_adopted(self) -> None:
        self.client.select(self.calendar_id)
        self.client.apply_local(_add(self.client.working, "mine"))
        self.assertEqual(self.client.revision, 1)
        self.assertIn("mine", self.client.base.flatten())
        self.assertEqual(self.transport.saves, [(self.calendar_id, 0)])
        self.assertEqual(self.client.state, STATE_IDLE)

    def test_poll_adopts_only_newer_revisions(self) -> None:
        self.client.select(self.calendar_id)
        self.assertFalse(self.client.poll())

        remote = self.store.get(self.calendar_id).document
        self.store.put(self.calendar_id, _add(remote, "theirs"), base=remote, base_revision=0)
        self.assertTrue(self.client.poll())
        self.assertEqual(self.client.revision, 1)
        self.assertIn("theirs", self.client.working.flatten())

    def test_concurrent_edits_merge_through_store(self) -> None:
        self.client.select(self.calendar_id)
        remote = self.store.get(self.calendar_id).document
        self.store.put(self.calendar_id, _add(remote, "theirs", day=1), base=remote, base_revision=0)

        self.client.apply_local(_add(self.client.working, "mine"))
        self.assertEqual(self.client.revision, 2)
        self.assertEqual(sorted(self.client.working.flatten()), ["mine", "theirs"])

    def test_superseded_save_response_is_discarded(self) -> None:
        self.client.select(self.calendar_id)
        first = self.client.apply_local(_add(self.client.working, "a"))
        self.assertIsInstance(first, PendingSave)

        self.client.working = _add(self.client.working, "b")
        stale = PendingSave(
            seq=first.seq,
            calendar_id=self.calendar_id,
            incoming=first.incoming,
            base=first.base,
            base_revision=first.base_revision,
        )
        self.client.schedule_save()
        revision = self.client.revision
        self.assertFalse(self.client.dispatch(stale))
        self.assertEqual(self.client.revision, revision)
        self.assertIn("b", self.client.working.flatten())

    def test_response_for_inactive_calendar_is_discarded(self) -> None:
        other_id, _ = self.store.create("Other", CalendarDocument(start_date=date(2027, 2, 1)))
        self.client.select(self.calendar_id)
        self.client._save_seq += 1
        pending = PendingSave(
            seq=self.client._save_seq,
            calendar_id=self.calendar_id,
            incoming=_add(self.client.working, "late"),
            base=copy.deepcopy(self.client.base),
            base_revision=0,
        )
        self.client.select(other_id)
        self.assertFalse(self.client.dispatch(pending))
        self.assertEqual(self.client.working.start_date, date(2027, 2, 1))

    def test_offline_slows_polling_and_resends_on_recovery(self) -> None:
        self.client.select(self.calendar_id)
        self.transport.offline = True
        with self.assertLogs("atlascal.sync_client", level="WARNING"):
            self.client.apply_local(_add(self.client.working, "offline-edit"))
        self.assertFalse(self.client.online)
        self.assertEqual(self.client.poll_interval_seconds, 10.0)
        self.assertFalse(self.client.poll())
        self.assertEqual(self.store.get(self.calendar_id).revision, 0)

        self.transport.offline = False
        self.client.poll()
        self.assertTrue(self.client.online)
        self.assertEqual(self.client.poll_interval_seconds, 2.0)
        self.assertEqual(self.store.get(self.calendar_id).revision, 1)
        self.assertIn("offline-edit", self.client.working.flatten())

    def test_newer_remote_revision_wins_over_unsent_offline_edit(self) -> None:
        self.client.select(self.calendar_id)
        self.transport.offline = True
        with self.assertLogs("atlascal.sync_client", level="WARNING"):
            self.client.apply_local(_add(self.client.working, "LOCAL"))

        remote = self.store.get(self.calendar_id).document
        self.store.put(self.calendar_id, _add(remote, "REMOTE", day=1), base=remote, base_revision=0)

        self.transport.offline = False
        self.assertTrue(self.client.poll())
        self.assertEqual(self.client.revision, 1)
        self.assertEqual(list(self.client.working.flatten()), ["REMOTE"])
        self.assertEqual(self.transport.saves, [])
        self.assertEqual(self.store.get(self.calendar_id).revision, 1)

    def test_deleted_calendar_closes_client_on_poll(self) -> None:
        lost: list[str] = []
        self.client.on_calendar_lost.append(lost.append)
        self.client.select(self.calendar_id)
        self.store.delete(self.calendar_id)

        with self.assertLogs("atlascal.sync_client", level="WARNING"):
            self.assertFalse(self.client.poll())
        self.assertIsNone(self.client.active_calendar_id)
        self.assertEqual(lost, [self.calendar_id])
        self.assertFalse(self.client.poll())

    def test_deleted_calendar_closes_client_on_save(self) -> None:
        lost: list[str] = []
        self.client.on_calendar_lost.append(lost.append)
        self.client.select(self.calendar_id)
        self.store.delete(self.calendar_id)

        with self.assertLogs("atlascal.sync_client", level="WARNING"):
            self.client.apply_local(_add(self.client.working, "mine"))
        self.assertIsNone(self.client.active_calendar_id)
        self.assertEqual(self.client.state, STATE_IDLE)
        self.assertEqual(lost, [self.calendar_id])

    def test_close_clears_active_calendar(self) -> None:
        self.client.select(self.calendar_id)
        self.client.close()
        self.assertIsNone(self.client.active_calendar_id)
        self.assertFalse(self.client.poll())
        self.assertIsNone(self.client.apply_local(CalendarDocument()))


if __name__ == "__main__":
    unittest.main()
