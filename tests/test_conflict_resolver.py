import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from calmirror.conflict_resolver import ConflictResolver, compare_event_data
from calmirror.errors import ConflictAlreadyResolved, ConflictNotFound, ValidationError
from calmirror.models import (
    ConflictResolution,
    ConflictType,
    EventData,
    EventSyncStatus,
    LocalEvent,
    RemoteEvent,
)
from calmirror.state_store import StateStore

START = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
END = START + timedelta(hours=1)


def _local(**kwargs) -> LocalEvent:
    defaults = {
        "user_id": "alice",
        "provider_id": "p1",
        "etag": "etag-1",
        "subject": "Standup",
        "location": "Room 1",
        "start": START,
        "end": END,
        "locally_modified": True,
    }
    defaults.update(kwargs)
    return LocalEvent(**defaults)


def _remote(**kwargs) -> RemoteEvent:
    defaults = {
        "provider_id": "p1",
        "etag": "etag-2",
        "subject": "Standup",
        "location": "Room 1",
        "start": START,
        "end": END,
    }
    defaults.update(kwargs)
    return RemoteEvent(**defaults)


class ConflictDetectionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.resolver = ConflictResolver(state_store=None)

    def test_identical_events_have_no_conflict(self) -> None:
        self.assertIsNone(self.resolver.detect_conflicts(_local(), _remote()))

    def test_subject_only_difference_is_auto_resolvable_title(self) -> None:
        info = self.resolver.detect_conflicts(_local(), _remote(subject="Daily standup"))
        self.assertIs(info.conflict_type, ConflictType.TITLE)
        self.assertTrue(info.auto_resolvable)

    def test_time_differences_win_precedence_and_block_auto_resolution(self) -> None:
        info = self.resolver.detect_conflicts(_local(), _remote(start=START + timedelta(minutes=30)))
        self.assertIs(info.conflict_type, ConflictType.START_TIME)
        self.assertFalse(info.auto_resolvable)

        info = self.resolver.detect_conflicts(_local(), _remote(end=END + timedelta(minutes=30), subject="Other"))
        self.assertIs(info.conflict_type, ConflictType.TIME_MISMATCH)
        self.assertFalse(info.auto_resolvable)

    def test_multiple_text_differences_are_not_auto_resolvable(self) -> None:
        info = self.resolver.detect_conflicts(_local(), _remote(location="Room 2", description="notes"))
        self.assertIs(info.conflict_type, ConflictType.DESCRIPTION_MISMATCH)
        self.assertFalse(info.auto_resolvable)

    def test_all_day_and_recurrence_are_both_modified(self) -> None:
        differences = compare_event_data(EventData(is_all_day=True), EventData(is_recurring=True))
        self.assertEqual(differences, [ConflictType.BOTH_MODIFIED])

    def test_blank_and_missing_text_compare_equal(self) -> None:
        info = self.resolver.detect_conflicts(_local(description=None), _remote(description=""))
        self.assertIsNone(info)


class ConflictResolutionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.resolver = ConflictResolver(self.store)
        self.event = self.store.save_event(_local(sync_status=EventSyncStatus.CONFLICTED, remotely_modified=True))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _store_title_conflict(self):
        info = self.resolver.detect_conflicts(self.event, _remote(subject="Remote title"))
        return self.resolver.store_conflict("alice", info)

    def test_store_conflict_reuses_identical_pending_record(self) -> None:
        first = self._store_title_conflict()
        second = self._store_title_conflict()
        self.assertEqual(first.id, second.id)
        self.assertEqual(len(self.resolver.list_conflicts("alice")), 1)

    def test_use_remote_applies_snapshot_and_cleans_row(self) -> None:
        conflict = self._store_title_conflict()
        resolved = self.resolver.resolve_conflict_manually(conflict.id, ConflictResolution.USE_REMOTE)
        self.assertIs(resolved.resolution, ConflictResolution.USE_REMOTE)
        self.assertEqual(resolved.resolved_by, "user")
        event = self.store.get_event(self.event.id)
        self.assertEqual(event.subject, "Remote title")
        self.assertEqual(event.etag, "etag-2")
        self.assertFalse(event.locally_modified)
        self.assertIs(event.sync_status, EventSyncStatus.COMPLETED)

    def test_use_local_keeps_row_dirty_and_pending(self) -> None:
        conflict = self._store_title_conflict()
        self.resolver.resolve_conflict_manually(conflict.id, ConflictResolution.USE_LOCAL, notes="mine")
        event = self.store.get_event(self.event.id)
        self.assertEqual(event.subject, "Standup")
        self.assertTrue(event.locally_modified)
        self.assertIs(event.sync_status, EventSyncStatus.PENDING)
        self.assertEqual(self.resolver.get_conflict(conflict.id).notes, "mine")

    def test_merge_requires_data_and_writes_it(self) -> None:
        conflict = self._store_title_conflict()
        with self.assertRaises(ValidationError):
            self.resolver.resolve_conflict_manually(conflict.id, ConflictResolution.MERGE)
        merged = EventData(subject="Merged", location="Room 3", start=START, end=END)
        resolved = self.resolver.resolve_conflict_manually(conflict.id, ConflictResolution.MERGE, merged)
        self.assertEqual(resolved.resolved_data.subject, "Merged")
        event = self.store.get_event(self.event.id)
        self.assertEqual(event.subject, "Merged")
        self.assertTrue(event.locally_modified)
        self.assertIs(event.sync_status, EventSyncStatus.PENDING)

    def test_skip_leaves_data_untouched(self) -> None:
        conflict = self._store_title_conflict()
        self.resolver.resolve_conflict_manually(conflict.id, ConflictResolution.SKIP)
        event = self.store.get_event(self.event.id)
        self.assertEqual(event.subject, "Standup")
        self.assertIs(event.sync_status, EventSyncStatus.PENDING)

    def test_second_resolution_has_no_effect(self) -> None:
        conflict = self._store_title_conflict()
        self.resolver.resolve_conflict_manually(conflict.id, ConflictResolution.SKIP)
        with self.assertRaises(ConflictAlreadyResolved):
            self.resolver.resolve_conflict_manually(conflict.id, ConflictResolution.USE_REMOTE)
        self.assertEqual(self.store.get_event(self.event.id).subject, "Standup")
        self.assertIs(self.resolver.get_conflict(conflict.id).resolution, ConflictResolution.SKIP)

    def test_unknown_conflict_raises_not_found(self) -> None:
        with self.assertRaises(ConflictNotFound):
            self.resolver.resolve_conflict_manually("conflict_missing", ConflictResolution.SKIP)

    def test_deleted_remotely_use_remote_deletes_row(self) -> None:
        conflict = self.resolver.store_conflict("alice", self.resolver.deleted_remotely(self.event))
        self.assertIsNone(conflict.remote_version)
        self.resolver.resolve_conflict_manually(conflict.id, ConflictResolution.USE_REMOTE)
        self.assertIsNone(self.store.get_event(self.event.id))

    def test_deleted_remotely_use_local_unbinds_for_recreate(self) -> None:
        conflict = self.resolver.store_conflict("alice", self.resolver.deleted_remotely(self.event))
        self.resolver.resolve_conflict_manually(conflict.id, ConflictResolution.USE_LOCAL)
        event = self.store.get_event(self.event.id)
        self.assertIsNone(event.provider_id)
        self.assertIsNone(event.etag)
        self.assertTrue(event.locally_modified)

    def test_auto_resolve_only_touches_auto_resolvable(self) -> None:
        conflict = self._store_title_conflict()
        resolved = self.resolver.auto_resolve(conflict)
        self.assertEqual(resolved.resolved_by, "system")
        self.assertIs(resolved.resolution, ConflictResolution.USE_REMOTE)

        time_info = self.resolver.detect_conflicts(
            self.store.get_event(self.event.id), _remote(subject="Remote title", start=START - timedelta(hours=1))
        )
        time_conflict = self.resolver.store_conflict("alice", time_info)
        self.assertIsNone(self.resolver.auto_resolve(time_conflict))


if __name__ == "__main__":
    unittest.main()
