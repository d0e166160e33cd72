from __future__ import annotations

import logging
from datetime import datetime

from calmirror.errors import ConflictAlreadyResolved, ConflictNotFound, ValidationError
from calmirror.models import (
    Conflict,
    ConflictInfo,
    ConflictResolution,
    ConflictType,
    EventData,
    EventSyncStatus,
    LocalEvent,
    RemoteEvent,
    new_id,
    utc_now,
)
from calmirror.state_store import StateStore

logger = logging.getLogger(__name__)

# Checked in this order; the first differing category classifies the conflict.
CATEGORY_PRECEDENCE = (
    ConflictType.START_TIME,
    ConflictType.TIME_MISMATCH,
    ConflictType.TITLE,
    ConflictType.DESCRIPTION_MISMATCH,
    ConflictType.LOCATION_MISMATCH,
    ConflictType.BOTH_MODIFIED,
)
AUTO_RESOLVABLE_TYPES = {
    ConflictType.TITLE,
    ConflictType.DESCRIPTION_MISMATCH,
    ConflictType.LOCATION_MISMATCH,
}


def _same_instant(left: datetime | None, right: datetime | None) -> bool:
    if left is None or right is None:
        return left is right
    return left == right


def compare_event_data(local: EventData, remote: EventData) -> list[ConflictType]:
    """Return the differing categories, ordered by precedence and without duplicates."""
    differing: set[ConflictType] = set()
    if not _same_instant(local.start, remote.start):
        differing.add(ConflictType.START_TIME)
    if not _same_instant(local.end, remote.end):
        differing.add(ConflictType.TIME_MISMATCH)
    if (local.subject or "") != (remote.subject or ""):
        differing.add(ConflictType.TITLE)
    if (local.description or "") != (remote.description or ""):
        differing.add(ConflictType.DESCRIPTION_MISMATCH)
    if (local.location or "") != (remote.location or ""):
        differing.add(ConflictType.LOCATION_MISMATCH)
    if bool(local.is_all_day) != bool(remote.is_all_day):
        differing.add(ConflictType.BOTH_MODIFIED)
    if bool(local.is_recurring) != bool(remote.is_recurring):
        differing.add(ConflictType.BOTH_MODIFIED)
    return [category for category in CATEGORY_PRECEDENCE if category in differing]


def is_auto_resolvable(differences: list[ConflictType]) -> bool:
    return len(differences) == 1 and differences[0] in AUTO_RESOLVABLE_TYPES


class ConflictResolver:
    """Detects divergence between mirror rows and remote events and owns the resolution lifecycle."""

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def detect_conflicts(
        self,
        local: LocalEvent,
        remote: RemoteEvent,
        since: datetime | None = None,
    ) -> ConflictInfo | None:
        differences = compare_event_data(local.to_event_data(), remote.to_event_data())
        if not differences:
            return None
        logger.debug(
            "Event %s diverged from remote %s since %s: %s",
            local.id,
            remote.provider_id,
            since or local.last_synced_at,
            ", ".join(item.value for item in differences),
        )
        return ConflictInfo(
            event_id=local.id,
            conflict_type=differences[0],
            local_version=local.to_event_data(),
            remote_version=remote.to_event_data(),
            auto_resolvable=is_auto_resolvable(differences),
            differences=differences,
        )

    def deleted_remotely(self, local: LocalEvent) -> ConflictInfo:
        return ConflictInfo(
            event_id=local.id,
            conflict_type=ConflictType.DELETED_REMOTELY,
            local_version=local.to_event_data(),
            remote_version=None,
            auto_resolvable=False,
            differences=[ConflictType.DELETED_REMOTELY],
        )

    def store_conflict(self, user_id: str, info: ConflictInfo) -> Conflict:
        existing = self.state_store.find_pending_conflict(
            event_id=info.event_id,
            conflict_type=info.conflict_type,
            remote_version=info.remote_version,
        )
        if existing is not None:
            logger.debug("Reusing pending conflict %s for event %s", existing.id, info.event_id)
            return existing
        conflict = Conflict(
            id=new_id("conflict"),
            event_id=info.event_id,
            user_id=user_id,
            conflict_type=info.conflict_type,
            local_version=info.local_version,
            remote_version=info.remote_version,
            auto_resolvable=info.auto_resolvable,
        )
        self.state_store.insert_conflict(conflict)
        logger.info(
            "Stored %s conflict %s for event %s (auto_resolvable=%s)",
            conflict.conflict_type.value,
            conflict.id,
            conflict.event_id,
            conflict.auto_resolvable,
        )
        return conflict

    def get_conflict(self, conflict_id: str) -> Conflict:
        conflict = self.state_store.get_conflict(conflict_id)
        if conflict is None:
            raise ConflictNotFound(f"conflict {conflict_id} not found")
        return conflict

    def list_conflicts(
        self,
        user_id: str | None = None,
        resolution: ConflictResolution | None = ConflictResolution.PENDING,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Conflict]:
        return self.state_store.list_conflicts(user_id=user_id, resolution=resolution, limit=limit, offset=offset)

    def resolve_conflict_manually(
        self,
        conflict_id: str,
        resolution: ConflictResolution,
        merged_data: EventData | None = None,
        *,
        resolved_by: str = "user",
        notes: str | None = None,
    ) -> Conflict:
        if resolution is ConflictResolution.PENDING:
            raise ValidationError("resolution must not be pending")
        conflict = self.get_conflict(conflict_id)
        if conflict.is_resolved:
            raise ConflictAlreadyResolved(f"conflict {conflict_id} already resolved as {conflict.resolution.value}")
        if resolution is ConflictResolution.MERGE and merged_data is None:
            raise ValidationError("merge resolution requires merged data")
        if resolution is ConflictResolution.USE_REMOTE and conflict.remote_version is None and (
            conflict.conflict_type is not ConflictType.DELETED_REMOTELY
        ):
            raise ValidationError(f"conflict {conflict_id} has no remote version to apply")

        event = self.state_store.get_event(conflict.event_id)
        event_to_save, event_to_delete, resolved_data = self._plan_mirror_change(
            conflict, event, resolution, merged_data
        )
        applied = self.state_store.resolve_conflict(
            conflict_id,
            resolution=resolution,
            resolved_by=resolved_by,
            resolved_data=resolved_data,
            notes=notes,
            event_to_save=event_to_save,
            event_to_delete=event_to_delete,
        )
        if not applied:
            raise ConflictAlreadyResolved(f"conflict {conflict_id} already resolved")
        logger.info("Conflict %s resolved with %s by %s", conflict_id, resolution.value, resolved_by)
        return self.get_conflict(conflict_id)

    def auto_resolve(self, conflict: Conflict) -> Conflict | None:
        if not conflict.auto_resolvable or conflict.is_resolved:
            return None
        return self.resolve_conflict_manually(
            conflict.id,
            ConflictResolution.USE_REMOTE,
            resolved_by="system",
            notes="auto-resolved single-field conflict",
        )

    def _plan_mirror_change(
        self,
        conflict: Conflict,
        event: LocalEvent | None,
        resolution: ConflictResolution,
        merged_data: EventData | None,
    ) -> tuple[LocalEvent | None, str | None, EventData | None]:
        if event is None:
            # Mirror row already gone; only the conflict is stamped.
            return None, None, merged_data
        deleted_remotely = conflict.conflict_type is ConflictType.DELETED_REMOTELY
        now = utc_now()

        if resolution is ConflictResolution.USE_REMOTE:
            if deleted_remotely:
                return None, event.id, None
            remote = conflict.remote_version
            updated = event.apply_data(remote).with_updates(
                etag=remote.etag or event.etag,
                locally_modified=False,
                remotely_modified=False,
                last_synced_at=now,
                sync_status=EventSyncStatus.COMPLETED,
            )
            return updated, None, remote

        if resolution is ConflictResolution.USE_LOCAL:
            updated = event.with_updates(
                locally_modified=True,
                remotely_modified=False,
                sync_status=EventSyncStatus.PENDING,
            )
            if deleted_remotely:
                updated = updated.with_updates(provider_id=None, etag=None)
            elif conflict.remote_version is not None and conflict.remote_version.etag:
                updated = updated.with_updates(etag=conflict.remote_version.etag)
            return updated, None, event.to_event_data()

        if resolution is ConflictResolution.MERGE:
            updated = event.apply_data(merged_data).with_updates(
                locally_modified=True,
                remotely_modified=False,
                locally_deleted=False,
                sync_status=EventSyncStatus.PENDING,
            )
            if deleted_remotely:
                updated = updated.with_updates(provider_id=None, etag=None)
            return updated, None, merged_data

        # Skip leaves the data alone and releases the row for the next push.
        return event.with_updates(sync_status=EventSyncStatus.PENDING), None, None
