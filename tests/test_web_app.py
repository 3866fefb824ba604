import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import requests
import yaml
from fastapi.testclient import TestClient

from atlascal.web_app import create_app


def _state(*events, start_date="2027-01-01", num_days=5) -> dict:
    buckets: dict[str, list] = {}
    for event in events:
        buckets.setdefault(str(event["dayIndex"]), []).append(event)
    return {
        "numDays": num_days,
        "startDate": start_date,
        "startHour": 7,
        "endHour": 22,
        "viewMode": "row",
        "events": buckets,
    }


def _event(event_id: str, day: int, start: int = 540, end: int = 600) -> dict:
    return {"id": event_id, "dayIndex": day, "startMinutes": start, "endMinutes": end, "title": event_id}


def _completion(content: str) -> mock.Mock:
    response = mock.Mock(ok=True, status_code=200)
    response.json.return_value = {"choices": [{"message": {"content": content}}]}
    return response


class WebAppTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.config_path = root / "config.yaml"
        self.config_path.write_text(
            yaml.safe_dump(
                {
                    "store": {
                        "calendars_dir": str(root / "calendars"),
                        "legacy_file": str(root / "calendar-data.json"),
                        "audit_db_path": str(root / "audit.db"),
                    },
                    "ai": {"base_url": "https://llm.example.com/v1", "api_key": "secret-key", "model": "m"},
                }
            ),
            encoding="utf-8",
        )
        patcher = mock.patch.dict(os.environ, {"ATLASCAL_CONFIG_PATH": str(self.config_path)})
        patcher.start()
        self.addCleanup(patcher.stop)
        self.client = TestClient(create_app())

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _create(self, name: str = "Trip") -> str:
        resp = self.client.post("/api/calendars", json={"name": name})
        self.assertEqual(resp.status_code, 200)
        return resp.json()["id"]

    def test_healthz(self) -> None:
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})

    def test_config_secret_is_masked_and_preserved(self) -> None:
        resp = self.client.get("/api/config")
        self.assertEqual(resp.json()["ai"]["api_key"], "***")

        resp = self.client.put("/api/config", json={"payload": {"ai": {"api_key": "***", "model": "llama3"}}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["config"]["ai"]["model"], "llama3")
        stored = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        self.assertEqual(stored["ai"]["api_key"], "secret-key")

    def test_calendar_lifecycle(self) -> None:
        calendar_id = self._create("  ")
        listed = self.client.get("/api/calendars").json()["calendars"]
        self.assertEqual([item["id"] for item in listed], [calendar_id])
        self.assertTrue(listed[0]["name"])

        resp = self.client.put(f"/api/calendars/{calendar_id}/rename", json={"name": "Road trip"})
        self.assertEqual(resp.json(), {"success": True, "id": calendar_id, "name": "Road trip"})
        self.assertEqual(
            self.client.put(f"/api/calendars/{calendar_id}/rename", json={"name": " "}).status_code, 400
        )

        resp = self.client.get(f"/api/calendars/{calendar_id}")
        self.assertEqual(resp.json()["revision"], 0)
        self.assertEqual(resp.json()["name"], "Road trip")

        self.assertEqual(self.client.delete(f"/api/calendars/{calendar_id}").json(), {"success": True})
        self.assertEqual(self.client.get(f"/api/calendars/{calendar_id}").status_code, 404)
        self.assertEqual(self.client.delete(f"/api/calendars/{calendar_id}").status_code, 404)

    def test_concurrent_saves_merge_and_are_audited(self) -> None:
        calendar_id = self._create()
        base = self.client.get(f"/api/calendars/{calendar_id}").json()["state"]

        first = self.client.post(
            f"/api/calendars/{calendar_id}",
            json={"state": {**base, "events": {"0": [_event("E1", 0)]}}, "baseState": base, "baseRevision": 0},
        ).json()
        self.assertEqual(first["revision"], 1)
        self.assertFalse(first["merged"])

        second = self.client.post(
            f"/api/calendars/{calendar_id}",
            json={"state": {**base, "events": {"1": [_event("E2", 1)]}}, "baseState": base, "baseRevision": 0},
        ).json()
        self.assertEqual(second["revision"], 2)
        self.assertTrue(second["merged"])
        self.assertEqual(second["state"]["events"]["0"][0]["id"], "E1")
        self.assertEqual(second["state"]["events"]["1"][0]["id"], "E2")

        noop = self.client.post(
            f"/api/calendars/{calendar_id}",
            json={"state": second["state"], "baseState": second["state"], "baseRevision": 2},
        ).json()
        self.assertEqual(noop["revision"], 2)

        actions = [item["action"] for item in self.client.get("/api/audit/events").json()["events"]]
        self.assertEqual(actions, ["merge_calendar", "save_calendar", "create_calendar"])
        scoped = self.client.get("/api/audit/events", params={"calendar_id": calendar_id, "limit": 1}).json()
        self.assertEqual(len(scoped["events"]), 1)
        self.assertEqual(scoped["events"][0]["revision"], 2)

    def test_save_rejects_bad_payload_and_unknown_calendar(self) -> None:
        calendar_id = self._create()
        resp = self.client.post(f"/api/calendars/{calendar_id}", json={"state": ["nope"]})
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post("/api/calendars/missing", json={"state": _state()})
        self.assertEqual(resp.status_code, 404)

    def test_legacy_calendar_routes_use_most_recent_calendar(self) -> None:
        empty = self.client.get("/api/calendar").json()
        self.assertEqual(empty["revision"], 0)
        self.assertEqual(empty["state"]["events"], {})
        self.assertEqual(self.client.post("/api/calendar", json={"state": _state()}).status_code, 404)

        self._create("Older")
        newest = self._create("Newest")
        saved = self.client.post("/api/calendar", json={"state": _state(_event("L1", 0))}).json()
        self.assertEqual(saved["revision"], 1)
        current = self.client.get(f"/api/calendars/{newest}").json()
        self.assertEqual(current["state"]["events"]["0"][0]["id"], "L1")
        self.assertEqual(self.client.get("/api/calendar").json()["revision"], 1)

    def test_unknown_config_section_is_rejected(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"caldav": {"password": "x"}}})
        self.assertEqual(resp.status_code, 400)

    def test_plan_events_returns_normalized_reply(self) -> None:
        content = json.dumps(
            {
                "status": "ready",
                "message": "Added breakfast.",
                "events": [{"title": "Breakfast", "date": "2027-01-02", "startTime": "08:00", "endTime": "09:00", "priority": "high"}],
            }
        )
        with mock.patch("atlascal.ai_client.requests.post", return_value=_completion(content)) as post:
            resp = self.client.post(
                "/api/ai/plan-events",
                json={
                    "messages": [{"role": "user", "text": "breakfast tomorrow"}],
                    "context": {"calendarStartDate": "2027-01-01", "existingEvents": []},
                },
            )
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"], "ready")
        self.assertEqual(body["events"][0]["title"], "Breakfast")
        self.assertNotIn("priority", body["events"][0])

        sent = post.call_args.kwargs["json"]
        self.assertEqual(sent["model"], "m")
        self.assertEqual(sent["temperature"], 0.15)
        self.assertEqual(sent["messages"][0]["role"], "system")
        self.assertEqual(sent["messages"][-1], {"role": "user", "content": "breakfast tomorrow"})
        self.assertEqual(post.call_args.kwargs["headers"]["Authorization"], "Bearer secret-key")

    def test_plan_events_unparseable_reply_asks_for_clarification(self) -> None:
        with mock.patch("atlascal.ai_client.requests.post", return_value=_completion("sure thing!")):
            resp = self.client.post("/api/ai/plan-events", json={"messages": [{"role": "user", "text": "hi"}]})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "needs_clarification")
        self.assertEqual(resp.json()["events"], [])

    def test_plan_events_requires_a_message(self) -> None:
        resp = self.client.post("/api/ai/plan-events", json={"messages": [{"role": "user", "text": "  "}]})
        self.assertEqual(resp.status_code, 400)

    def test_plan_events_maps_model_failures(self) -> None:
        with mock.patch("atlascal.ai_client.requests.post", side_effect=requests.ConnectionError("refused")):
            resp = self.client.post("/api/ai/plan-events", json={"messages": [{"role": "user", "text": "hi"}]})
        self.assertEqual(resp.status_code, 503)

        failing = mock.Mock(ok=False, status_code=500, text="boom")
        with mock.patch("atlascal.ai_client.requests.post", return_value=failing):
            resp = self.client.post("/api/ai/plan-events", json={"messages": [{"role": "user", "text": "hi"}]})
        self.assertEqual(resp.status_code, 502)


if __name__ == "__main__":
    unittest.main()
