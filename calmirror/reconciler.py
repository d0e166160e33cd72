from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable

from calmirror.conflict_resolver import ConflictResolver
from calmirror.errors import JobLevelError, SyncCancelled
from calmirror.graph_client import remote_event_from_payload
from calmirror.models import (
    ActiveEntry,
    Conflict,
    ConflictStrategy,
    DeltaEntry,
    EntryKind,
    EventSyncStatus,
    LocalEvent,
    RemovedEntry,
    SyncResult,
    normalize_calendar_id,
    utc_now,
)
from calmirror.state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOutcome:
    action: str
    event: LocalEvent | None = None
    conflict: Conflict | None = None

    @property
    def conflicted(self) -> bool:
        return self.action == "conflicted"

    @property
    def skipped(self) -> bool:
        return self.action == "absent"


class Reconciler:
    """Applies delta entries to the local mirror of one user's calendar."""

    def __init__(
        self,
        state_store: StateStore,
        conflict_resolver: ConflictResolver,
        *,
        user_id: str,
        calendar_id: str | None = None,
        conflict_strategy: ConflictStrategy = ConflictStrategy.MANUAL,
    ) -> None:
        self.state_store = state_store
        self.conflict_resolver = conflict_resolver
        self.user_id = user_id
        self.calendar_id = normalize_calendar_id(calendar_id)
        self.conflict_strategy = conflict_strategy

    def reconcile_batch(
        self,
        entries: Iterable[DeltaEntry],
        *,
        should_cancel: Callable[[], bool] | None = None,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> SyncResult:
        items = list(entries)
        result = SyncResult()
        total = len(items)
        for index, entry in enumerate(items):
            if should_cancel is not None and should_cancel():
                raise SyncCancelled("cancelled during reconciliation")
            try:
                outcome = self.apply_entry(entry)
            except (JobLevelError, SyncCancelled):
                raise
            except Exception as exc:
                logger.warning("Failed to apply delta entry %s: %s", entry.provider_id or "<no id>", exc)
                result.error_count += 1
                result.errors.append(f"{entry.provider_id or '<no id>'}: {exc}")
            else:
                if outcome.conflicted:
                    result.conflict_count += 1
                    if outcome.conflict is not None:
                        result.conflicts.append(outcome.conflict.to_dict())
                elif outcome.skipped:
                    result.skipped_count += 1
                else:
                    result.synced_count += 1
            if on_progress is not None:
                on_progress(index, total)
        result.success = result.error_count == 0
        return result

    def apply_entry(self, entry: DeltaEntry) -> ReconcileOutcome:
        if entry.kind is EntryKind.REMOVED:
            return self._apply_removed(entry)
        return self._apply_active(entry)

    def _apply_removed(self, entry: RemovedEntry) -> ReconcileOutcome:
        existing = self.state_store.find_by_user_and_provider_id(self.user_id, entry.provider_id)
        if existing is None:
            return ReconcileOutcome(action="absent")
        if existing.locally_deleted or not existing.locally_modified:
            self.state_store.delete_event(existing.id)
            logger.debug("Removed mirror row %s (%s)", existing.id, entry.reason)
            return ReconcileOutcome(action="deleted")

        conflict = self.conflict_resolver.store_conflict(
            self.user_id, self.conflict_resolver.deleted_remotely(existing)
        )
        marked = self.state_store.save_event(
            existing.with_updates(remotely_modified=True, sync_status=EventSyncStatus.CONFLICTED)
        )
        return ReconcileOutcome(action="conflicted", event=marked, conflict=conflict)

    def _apply_active(self, entry: ActiveEntry) -> ReconcileOutcome:
        remote = remote_event_from_payload(entry.payload)
        now = utc_now()
        existing = self.state_store.find_by_user_and_provider_id(self.user_id, remote.provider_id)

        if existing is None:
            created = LocalEvent(
                user_id=self.user_id,
                calendar_id=self.calendar_id,
                provider_id=remote.provider_id,
                etag=remote.etag,
                last_synced_at=now,
                sync_status=EventSyncStatus.COMPLETED,
            ).apply_data(remote.to_event_data())
            return ReconcileOutcome(action="created", event=self.state_store.save_event(created))

        if not existing.locally_modified:
            updated = existing.apply_data(remote.to_event_data()).with_updates(
                etag=remote.etag,
                remotely_modified=False,
                last_synced_at=now,
                sync_status=EventSyncStatus.COMPLETED,
            )
            return ReconcileOutcome(action="updated", event=self.state_store.save_event(updated))

        info = self.conflict_resolver.detect_conflicts(existing, remote, since=existing.last_synced_at)
        if info is None:
            # Both sides converged; the local edit flag is left for push to settle.
            updated = existing.apply_data(remote.to_event_data()).with_updates(
                etag=remote.etag,
                remotely_modified=False,
                last_synced_at=now,
            )
            return ReconcileOutcome(action="updated", event=self.state_store.save_event(updated))

        conflict = self.conflict_resolver.store_conflict(self.user_id, info)
        marked = self.state_store.save_event(
            existing.with_updates(remotely_modified=True, sync_status=EventSyncStatus.CONFLICTED)
        )
        if self.conflict_strategy is ConflictStrategy.AUTO and conflict.auto_resolvable:
            resolved = self.conflict_resolver.auto_resolve(conflict)
            if resolved is not None:
                logger.info("Auto-resolved %s conflict on event %s", conflict.conflict_type.value, existing.id)
                return ReconcileOutcome(action="auto_resolved", event=self.state_store.get_event(existing.id))
        return ReconcileOutcome(action="conflicted", event=marked, conflict=conflict)
