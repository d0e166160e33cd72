import unittest
from datetime import datetime, timezone
from unittest import mock

from calmirror.delta_fetch import DeltaFetchStrategy, needs_full_sync
from calmirror.errors import DeltaTokenExpired, ProviderUnavailable, SyncCancelled
from calmirror.models import ActiveEntry, DeltaPage, EntryKind, RemovedEntry, SyncState


def _state(token: str | None = "delta-1", synced: bool = True) -> SyncState:
    return SyncState(
        user_id="alice",
        delta_token=token,
        last_delta_sync_at=datetime(2024, 5, 1, tzinfo=timezone.utc) if synced else None,
    )


class DeltaFetchTests(unittest.TestCase):
    def test_needs_full_sync(self) -> None:
        self.assertTrue(needs_full_sync(None, False))
        self.assertTrue(needs_full_sync(_state(token=None), False))
        self.assertTrue(needs_full_sync(_state(synced=False), False))
        self.assertTrue(needs_full_sync(_state(), True))
        self.assertFalse(needs_full_sync(_state(), False))

    def test_follows_pages_and_returns_final_cursor_only(self) -> None:
        client = mock.Mock()
        client.fetch_delta.side_effect = [
            DeltaPage(entries=[ActiveEntry("e1", {"id": "e1"})], next_page_cursor="next-1"),
            DeltaPage(entries=[RemovedEntry("e2")], next_page_cursor="next-2", final_delta_cursor="ignored"),
            DeltaPage(entries=[ActiveEntry("e3", {"id": "e3"})], final_delta_cursor="delta-final"),
        ]
        batch = DeltaFetchStrategy(client).fetch(None, page_size=50)

        self.assertTrue(batch.full_sync)
        self.assertEqual(batch.pages, 3)
        self.assertEqual([entry.provider_id for entry in batch.entries], ["e1", "e2", "e3"])
        self.assertEqual(batch.delta_token, "delta-final")
        cursors = [call.kwargs["cursor"] for call in client.fetch_delta.call_args_list]
        self.assertEqual(cursors, [None, "next-1", "next-2"])
        self.assertEqual(client.fetch_delta.call_args_list[0].kwargs["page_size"], 50)

    def test_incremental_resumes_from_stored_cursor(self) -> None:
        client = mock.Mock()
        client.fetch_delta.return_value = DeltaPage(entries=[], final_delta_cursor="delta-2")
        batch = DeltaFetchStrategy(client).fetch(_state(), calendar_id="work")
        self.assertFalse(batch.full_sync)
        self.assertEqual(client.fetch_delta.call_args.kwargs["cursor"], "delta-1")
        self.assertEqual(client.fetch_delta.call_args.kwargs["calendar_id"], "work")
        self.assertEqual(batch.delta_token, "delta-2")

    def test_expired_cursor_falls_back_to_full_sync(self) -> None:
        client = mock.Mock()
        client.fetch_delta.side_effect = [
            DeltaTokenExpired("HTTP 410 syncStateNotFound"),
            DeltaPage(entries=[ActiveEntry("e1", {"id": "e1"})], final_delta_cursor="delta-fresh"),
        ]
        batch = DeltaFetchStrategy(client).fetch(_state())
        self.assertTrue(batch.full_sync)
        self.assertEqual(batch.delta_token, "delta-fresh")
        self.assertIsNone(client.fetch_delta.call_args.kwargs["cursor"])

    def test_skip_deleted_filters_removed_entries(self) -> None:
        client = mock.Mock()
        client.fetch_delta.return_value = DeltaPage(
            entries=[ActiveEntry("e1", {"id": "e1"}), RemovedEntry("e2")], final_delta_cursor="d"
        )
        batch = DeltaFetchStrategy(client).fetch(None, skip_deleted=True)
        self.assertEqual([entry.kind for entry in batch.entries], [EntryKind.ACTIVE])

    def test_max_pages_guard(self) -> None:
        client = mock.Mock()
        client.fetch_delta.return_value = DeltaPage(entries=[], next_page_cursor="forever")
        with self.assertRaises(ProviderUnavailable):
            DeltaFetchStrategy(client, max_pages=3).fetch(None)
        self.assertEqual(client.fetch_delta.call_count, 3)

    def test_cancellation_between_pages(self) -> None:
        client = mock.Mock()
        client.fetch_delta.return_value = DeltaPage(entries=[], next_page_cursor="more")
        calls = {"count": 0}

        def should_cancel() -> bool:
            calls["count"] += 1
            return calls["count"] > 1

        with self.assertRaises(SyncCancelled):
            DeltaFetchStrategy(client, should_cancel=should_cancel).fetch(None)
        self.assertEqual(client.fetch_delta.call_count, 1)


if __name__ == "__main__":
    unittest.main()
