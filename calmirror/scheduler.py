from __future__ import annotations

import logging
import threading
from typing import Optional

from calmirror.config_manager import ConfigManager
from calmirror.errors import SyncError
from calmirror.models import SyncDirection, SyncTrigger
from calmirror.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="calmirror-sync-scheduler", daemon=True)
        self._thread.start()
        logger.info("Sync scheduler started")

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("Sync scheduler stopped")

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def run_scheduled(self, trigger: SyncTrigger = SyncTrigger.SCHEDULED) -> list[str]:
        config = self.config_manager.load()
        direction = SyncDirection(config.sync.default_direction)
        started: list[str] = []
        for user_id in config.sync.scheduled_users:
            options = self.sync_engine.default_options(config)
            options.trigger = trigger
            try:
                started.append(self.sync_engine.start_sync(user_id, direction, options))
            except SyncError as exc:
                logger.info("Skipped %s sync for %s: %s", trigger.value, user_id, exc)
        return started

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(60, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            try:
                self.run_scheduled(SyncTrigger.MANUAL if manual else SyncTrigger.SCHEDULED)
            except Exception:
                logger.exception("Scheduled sync round failed")
