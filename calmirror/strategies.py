from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

from calmirror.conflict_resolver import ConflictResolver
from calmirror.delta_fetch import DeltaFetchStrategy, DeltaSource
from calmirror.errors import JobLevelError, SyncCancelled
from calmirror.graph_client import to_provider_payload
from calmirror.models import (
    EventSyncStatus,
    LocalEvent,
    SyncOptions,
    SyncResult,
    SyncState,
    normalize_calendar_id,
    utc_now,
)
from calmirror.reconciler import Reconciler
from calmirror.state_store import StateStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class EventWriter(Protocol):
    def create_event(self, payload: dict[str, Any], calendar_id: str | None = None) -> tuple[str, str | None]: ...

    def update_event(self, provider_id: str, payload: dict[str, Any]) -> str | None: ...

    def delete_event(self, provider_id: str) -> None: ...


def _never_cancel() -> bool:
    return False


def _ignore_progress(_value: float) -> None:
    return None


class SyncStrategy:
    def run(self) -> SyncResult:
        raise NotImplementedError


class PullStrategy(SyncStrategy):
    def __init__(
        self,
        client: DeltaSource,
        state_store: StateStore,
        conflict_resolver: ConflictResolver,
        *,
        user_id: str,
        options: SyncOptions,
        max_pages: int = 1000,
        should_cancel: Callable[[], bool] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.client = client
        self.state_store = state_store
        self.conflict_resolver = conflict_resolver
        self.user_id = user_id
        self.options = options
        self.calendar_id = normalize_calendar_id(options.calendar_id)
        self.max_pages = max_pages
        self.should_cancel = should_cancel or _never_cancel
        self.on_progress = on_progress or _ignore_progress

    def _load_state(self) -> SyncState | None:
        return self.state_store.get_sync_state(self.user_id, self.calendar_id)

    def run(self) -> SyncResult:
        fetcher = DeltaFetchStrategy(self.client, max_pages=self.max_pages, should_cancel=self.should_cancel)
        batch = fetcher.fetch(
            self._load_state(),
            calendar_id=self.calendar_id or None,
            full_sync=self.options.full_sync,
            skip_deleted=self.options.skip_deleted,
            page_size=self.options.page_size,
        )
        self.on_progress(30.0)

        reconciler = Reconciler(
            self.state_store,
            self.conflict_resolver,
            user_id=self.user_id,
            calendar_id=self.calendar_id,
            conflict_strategy=self.options.conflict_resolution,
        )

        def report(index: int, total: int) -> None:
            self.on_progress(30.0 + 60.0 * (index + 1) / max(1, total))

        result = reconciler.reconcile_batch(batch.entries, should_cancel=self.should_cancel, on_progress=report)
        result.delta_token = batch.delta_token
        result.full_sync = batch.full_sync
        logger.info(
            "Pull for %s: synced=%s conflicts=%s errors=%s skipped=%s",
            self.user_id,
            result.synced_count,
            result.conflict_count,
            result.error_count,
            result.skipped_count,
        )
        return result


class PushStrategy(SyncStrategy):
    def __init__(
        self,
        client: EventWriter,
        state_store: StateStore,
        *,
        user_id: str,
        options: SyncOptions,
        should_cancel: Callable[[], bool] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.client = client
        self.state_store = state_store
        self.user_id = user_id
        self.options = options
        self.calendar_id = normalize_calendar_id(options.calendar_id)
        self.should_cancel = should_cancel or _never_cancel
        self.on_progress = on_progress or _ignore_progress

    def run(self) -> SyncResult:
        result = SyncResult()
        dirty = self.state_store.find_dirty(self.user_id, self.calendar_id)
        total = len(dirty)
        logger.info("Pushing %s locally modified events for %s", total, self.user_id)
        for index, event in enumerate(dirty):
            if self.should_cancel():
                raise SyncCancelled("cancelled during push")
            if event.sync_status is EventSyncStatus.CONFLICTED:
                result.skipped_count += 1
            else:
                binding: tuple[str, str | None] | None = None
                try:
                    binding = self._push_remote(event)
                    self._settle(event, binding)
                except (JobLevelError, SyncCancelled):
                    raise
                except Exception as exc:
                    logger.warning("Failed to push event %s: %s", event.id, exc)
                    result.error_count += 1
                    result.errors.append(f"{event.id}: {exc}")
                    failed = event.with_updates(sync_status=EventSyncStatus.FAILED)
                    if binding is not None:
                        # Remote write succeeded; the row stays dirty but bound to it.
                        failed = failed.with_updates(provider_id=binding[0], etag=binding[1] or event.etag)
                    self.state_store.save_event(failed)
                else:
                    result.synced_count += 1
            self.on_progress(100.0 * (index + 1) / total)
        result.success = result.error_count == 0
        return result

    def _push_remote(self, event: LocalEvent) -> tuple[str, str | None] | None:
        if event.locally_deleted:
            if event.provider_id:
                self.client.delete_event(event.provider_id)
            return None
        payload = to_provider_payload(event)
        if event.provider_id:
            return event.provider_id, self.client.update_event(event.provider_id, payload)
        provider_id, etag = self.client.create_event(payload, calendar_id=self.calendar_id or None)
        return provider_id, etag

    def _settle(self, event: LocalEvent, binding: tuple[str, str | None] | None) -> None:
        if binding is None:
            self.state_store.delete_event(event.id)
            return
        provider_id, etag = binding
        self.state_store.save_event(
            event.with_updates(
                provider_id=provider_id,
                etag=etag or event.etag,
                locally_modified=False,
                last_synced_at=utc_now(),
                sync_status=EventSyncStatus.COMPLETED,
            )
        )


class BidirectionalStrategy(SyncStrategy):
    def __init__(
        self,
        pull: PullStrategy,
        push: PushStrategy,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        report = on_progress or _ignore_progress
        pull.on_progress = lambda value: report(value * 0.5)
        push.on_progress = lambda value: report(50.0 + value * 0.5)
        self.pull = pull
        self.push = push

    def run(self) -> SyncResult:
        pulled = self.pull.run()
        pushed = self.push.run()
        return pulled.merge(pushed)
