import unittest
from datetime import date
from unittest import mock

import requests

from atlascal.errors import CalendarNotFound, InvalidPayload, PlannerUnreachable, StoreUnreachable
from atlascal.models import CalendarDocument, SyncConfig
from atlascal.store_client import CalendarServiceClient


def _response(status_code: int = 200, payload=None, text: str = "") -> mock.Mock:
    response = mock.Mock(status_code=status_code, text=text)
    response.json.return_value = payload
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"HTTP {status_code}")
    return response


class CalendarServiceClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = mock.Mock(spec=requests.Session)
        self.client = CalendarServiceClient(SyncConfig(server_url="http://store.local:3000/"), session=self.session)

    def test_save_posts_state_with_base_and_parses_snapshot(self) -> None:
        document = CalendarDocument(start_date=date(2027, 1, 1))
        self.session.request.return_value = _response(
            payload={"success": True, "state": document.to_dict(), "revision": 4, "merged": True}
        )
        snapshot = self.client.save_calendar("cal", document, document, 3)

        self.assertEqual(snapshot.revision, 4)
        self.assertTrue(snapshot.merged)
        method, url = self.session.request.call_args.args
        self.assertEqual((method, url), ("POST", "http://store.local:3000/api/calendars/cal"))
        sent = self.session.request.call_args.kwargs["json"]
        self.assertEqual(sent["baseRevision"], 3)
        self.assertEqual(sent["baseState"]["startDate"], "2027-01-01")

    def test_list_calendars_skips_malformed_items(self) -> None:
        self.session.request.return_value = _response(
            payload={"calendars": [{"id": "a", "name": "A", "updatedAt": "t"}, {"name": "no id"}, "junk"]}
        )
        calendars = self.client.list_calendars()
        self.assertEqual([(c.calendar_id, c.name) for c in calendars], [("a", "A")])

    def test_error_mapping(self) -> None:
        self.session.request.return_value = _response(404)
        with self.assertRaises(CalendarNotFound):
            self.client.get_calendar("gone")

        self.session.request.return_value = _response(400, text="Invalid state payload")
        with self.assertRaises(InvalidPayload):
            self.client.rename_calendar("cal", "")

        self.session.request.return_value = _response(500, text="disk full")
        with self.assertRaises(StoreUnreachable):
            self.client.delete_calendar("cal")

        self.session.request.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(StoreUnreachable):
            self.client.get_calendar("cal")

    def test_snapshot_without_revision_is_invalid(self) -> None:
        self.session.request.return_value = _response(payload={"state": {}})
        with self.assertRaises(InvalidPayload):
            self.client.get_calendar("cal")

    def test_plan_events_maps_outage_to_planner_unreachable(self) -> None:
        self.session.request.return_value = _response(
            payload={"status": "needs_clarification", "assistantMessage": "Which day?", "events": []}
        )
        reply = self.client.plan_events([{"role": "user", "text": "lunch"}], {})
        self.assertEqual(reply.message, "Which day?")

        self.session.request.return_value = _response(503, text="AI planner is unavailable")
        with self.assertRaises(PlannerUnreachable):
            self.client.plan_events([{"role": "user", "text": "lunch"}], {})


if __name__ == "__main__":
    unittest.main()
