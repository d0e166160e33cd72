from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Protocol

from calmirror.errors import DeltaTokenExpired, ProviderUnavailable, SyncCancelled
from calmirror.models import DeltaEntry, DeltaPage, EntryKind, SyncState

logger = logging.getLogger(__name__)


class DeltaSource(Protocol):
    def fetch_delta(
        self,
        cursor: str | None = None,
        calendar_id: str | None = None,
        page_size: int | None = None,
    ) -> DeltaPage: ...


@dataclass
class DeltaBatch:
    entries: list[DeltaEntry] = field(default_factory=list)
    delta_token: str | None = None
    full_sync: bool = False
    pages: int = 0


def needs_full_sync(state: SyncState | None, requested_full_sync: bool) -> bool:
    if requested_full_sync or state is None:
        return True
    return not state.delta_token or state.last_delta_sync_at is None


class DeltaFetchStrategy:
    def __init__(
        self,
        client: DeltaSource,
        *,
        max_pages: int = 1000,
        should_cancel: Callable[[], bool] | None = None,
    ) -> None:
        self.client = client
        self.max_pages = max(1, int(max_pages))
        self.should_cancel = should_cancel or (lambda: False)

    def fetch(
        self,
        state: SyncState | None,
        *,
        calendar_id: str | None = None,
        full_sync: bool = False,
        skip_deleted: bool = False,
        page_size: int | None = None,
    ) -> DeltaBatch:
        if needs_full_sync(state, full_sync):
            logger.info("Fetching full delta round for calendar %r", calendar_id or "default")
            batch = self._collect(None, calendar_id, page_size)
            batch.full_sync = True
        else:
            try:
                logger.info("Fetching incremental delta for calendar %r", calendar_id or "default")
                batch = self._collect(state.delta_token, calendar_id, page_size)
            except DeltaTokenExpired as exc:
                logger.warning("Delta cursor rejected (%s), falling back to full sync", exc)
                batch = self._collect(None, calendar_id, page_size)
                batch.full_sync = True

        if skip_deleted:
            before = len(batch.entries)
            batch.entries = [entry for entry in batch.entries if entry.kind is EntryKind.ACTIVE]
            logger.debug("Dropped %s removed entries", before - len(batch.entries))
        logger.info(
            "Delta fetch finished: %s pages, %s entries, full_sync=%s",
            batch.pages,
            len(batch.entries),
            batch.full_sync,
        )
        return batch

    def _collect(self, cursor: str | None, calendar_id: str | None, page_size: int | None) -> DeltaBatch:
        batch = DeltaBatch()
        next_cursor = cursor
        while True:
            if self.should_cancel():
                raise SyncCancelled("cancelled during delta fetch")
            if batch.pages >= self.max_pages:
                raise ProviderUnavailable(f"delta pagination did not terminate after {self.max_pages} pages")
            page = self.client.fetch_delta(cursor=next_cursor, calendar_id=calendar_id, page_size=page_size)
            batch.pages += 1
            batch.entries.extend(page.entries)
            logger.debug("Delta page %s: %s entries", batch.pages, len(page.entries))
            if not page.next_page_cursor:
                batch.delta_token = page.final_delta_cursor
                return batch
            next_cursor = page.next_page_cursor
