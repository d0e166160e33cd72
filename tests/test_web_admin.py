import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from calmirror.models import ActiveEntry, ConflictType, DeltaPage, EventData
from calmirror.web_admin import create_app


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = str(Path(self.temp_dir.name) / "config.yaml")
        self.state_path = str(Path(self.temp_dir.name) / "state.db")
        os.environ["CALMIRROR_CONFIG_PATH"] = self.config_path
        os.environ["CALMIRROR_STATE_PATH"] = self.state_path
        self.app = create_app()
        self.context = self.app.state.context
        self.client = TestClient(self.app)

        self.graph = mock.Mock()
        patcher = mock.patch("calmirror.sync_engine.GraphClient", return_value=self.graph)
        patcher.start()
        self.addCleanup(patcher.stop)

        # Seed a credential for masking/preserve tests.
        resp = self.client.put("/api/config", json={"payload": {"credentials": {"alice": "secret-token"}}})
        self.assertEqual(resp.status_code, 200)

    def tearDown(self) -> None:
        self.context.sync_engine.shutdown()
        self.temp_dir.cleanup()

    def _create_event(self, **overrides) -> dict:
        body = {"subject": "Dentist", "start": "2024-05-01T09:00:00Z", "end": "2024-05-01T10:00:00Z"}
        body.update(overrides)
        resp = self.client.post("/api/users/alice/events", json=body)
        self.assertEqual(resp.status_code, 201)
        return resp.json()["event"]

    def test_healthz(self) -> None:
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})

    def test_config_masks_credentials(self) -> None:
        data = self.client.get("/api/config").json()
        self.assertEqual(data["credentials"], {"alice": "***"})
        self.assertEqual(data["provider"]["base_url"], "https://graph.microsoft.com/v1.0")

    def test_put_config_masked_secret_does_not_override(self) -> None:
        resp = self.client.put(
            "/api/config",
            json={"payload": {"credentials": {"alice": "***", "bob": "bob-token"}, "sync": {"interval_seconds": 600}}},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["config"]["credentials"], {"alice": "***", "bob": "***"})
        stored = self.context.config_manager.load()
        self.assertEqual(stored.credentials, {"alice": "secret-token", "bob": "bob-token"})
        self.assertEqual(stored.sync.interval_seconds, 600)

    def test_start_sync_and_poll_status(self) -> None:
        self.graph.fetch_delta.return_value = DeltaPage(
            entries=[
                ActiveEntry(
                    "p1",
                    {
                        "id": "p1",
                        "subject": "Remote",
                        "start": {"dateTime": "2024-05-01T09:00:00", "timeZone": "UTC"},
                        "end": {"dateTime": "2024-05-01T10:00:00", "timeZone": "UTC"},
                    },
                )
            ],
            final_delta_cursor="delta-1",
        )
        resp = self.client.post("/api/sync/start", json={"user_id": "alice", "direction": "pull"})
        self.assertEqual(resp.status_code, 202)
        job_id = resp.json()["job_id"]
        self.context.sync_engine.wait_for_job(job_id, timeout=5)

        status = self.client.get(f"/api/sync/jobs/{job_id}")
        self.assertEqual(status.status_code, 200)
        self.assertEqual(status.json()["job"]["status"], "completed")
        self.assertEqual(status.json()["outcome"], "found")

        history = self.client.get("/api/users/alice/sync/history").json()["runs"]
        self.assertEqual(len(history), 1)
        metrics = self.client.get("/api/users/alice/sync/metrics", params={"window_days": 3}).json()
        self.assertEqual(metrics["period_days"], 3)
        state = self.client.get("/api/users/alice/sync/state").json()
        self.assertEqual(state["delta_token"], "delta-1")

        events = self.client.get("/api/users/alice/events").json()["events"]
        self.assertEqual([event["provider_id"] for event in events], ["p1"])

        reset = self.client.delete("/api/users/alice/sync/state")
        self.assertTrue(reset.json()["reset"])
        self.assertEqual(self.client.get("/api/users/alice/sync/state").status_code, 404)

    def test_sync_error_mapping(self) -> None:
        self.assertEqual(self.client.get("/api/sync/jobs/sync_missing").status_code, 404)
        resp = self.client.post("/api/sync/start", json={"user_id": "mallory"})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json()["error"], "AuthenticationError")
        cancel = self.client.post("/api/sync/jobs/sync_missing/cancel", json={"user_id": "alice"})
        self.assertEqual(cancel.json(), {"job_id": "sync_missing", "cancelled": False})

    def test_local_event_edits(self) -> None:
        created = self._create_event()
        self.assertTrue(created["locally_modified"])
        self.assertEqual(created["calendar_id"], "")

        patched = self.client.patch(f"/api/events/{created['id']}", json={"location": "Clinic"})
        self.assertEqual(patched.status_code, 200)
        self.assertEqual(patched.json()["event"]["location"], "Clinic")

        bad = self.client.patch(f"/api/events/{created['id']}", json={"end": "2024-05-01T08:00:00Z"})
        self.assertEqual(bad.status_code, 400)

        deleted = self.client.delete(f"/api/events/{created['id']}")
        self.assertEqual(deleted.json(), {"event_id": created["id"], "deleted": True, "tombstoned": False})
        self.assertEqual(self.client.delete(f"/api/events/{created['id']}").status_code, 404)

    def test_delete_pushed_event_leaves_tombstone(self) -> None:
        created = self._create_event()
        store = self.context.state_store
        store.save_event(store.get_event(created["id"]).with_updates(provider_id="p9", locally_modified=False))
        deleted = self.client.delete(f"/api/events/{created['id']}")
        self.assertTrue(deleted.json()["tombstoned"])
        row = store.get_event(created["id"])
        self.assertTrue(row.locally_deleted)
        self.assertTrue(row.locally_modified)

    def test_conflict_listing_and_resolution(self) -> None:
        created = self._create_event()
        event = self.context.state_store.get_event(created["id"])
        resolver = self.context.sync_engine.conflict_resolver
        conflict = resolver.store_conflict(
            "alice",
            resolver.deleted_remotely(event),
        )
        self.assertIs(conflict.conflict_type, ConflictType.DELETED_REMOTELY)

        listed = self.client.get("/api/conflicts", params={"user_id": "alice"}).json()["conflicts"]
        self.assertEqual([item["id"] for item in listed], [conflict.id])
        self.assertEqual(self.client.get(f"/api/conflicts/{conflict.id}").json()["conflict_type"], "deleted_remotely")
        self.assertEqual(self.client.get("/api/conflicts/conflict_missing").status_code, 404)
        self.assertEqual(self.client.get("/api/conflicts", params={"status": "bogus"}).status_code, 400)

        merge_without_data = self.client.post(f"/api/conflicts/{conflict.id}/resolve", json={"resolution": "merge"})
        self.assertEqual(merge_without_data.status_code, 400)

        merged = EventData(subject="Kept", start=event.start, end=event.end).to_dict()
        resp = self.client.post(
            f"/api/conflicts/{conflict.id}/resolve",
            json={"resolution": "merge", "merged_data": merged, "notes": "keep it"},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["conflict"]["resolution"], "merge")
        self.assertEqual(self.context.state_store.get_event(created["id"]).subject, "Kept")

        again = self.client.post(f"/api/conflicts/{conflict.id}/resolve", json={"resolution": "skip"})
        self.assertEqual(again.status_code, 409)
        resolved = self.client.get("/api/conflicts", params={"user_id": "alice", "status": "all"}).json()
        self.assertEqual(len(resolved["conflicts"]), 1)


if __name__ == "__main__":
    unittest.main()
