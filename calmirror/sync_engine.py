from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import Any, Callable

from calmirror.auth import ConfigCredentialProvider, CredentialProvider
from calmirror.config_manager import ConfigManager
from calmirror.conflict_resolver import ConflictResolver
from calmirror.errors import AuthenticationError, SyncAlreadyRunning, SyncCancelled, SyncError, ValidationError
from calmirror.graph_client import GraphClient
from calmirror.models import (
    AppConfig,
    ConflictStrategy,
    JobStatus,
    LookupOutcome,
    SyncDirection,
    SyncJob,
    SyncOptions,
    SyncResult,
    SyncState,
    SyncStateStatus,
    SyncStatusResult,
    normalize_calendar_id,
    serialize_datetime,
    utc_now,
)
from calmirror.state_store import StateStore
from calmirror.strategies import BidirectionalStrategy, PullStrategy, PushStrategy, SyncStrategy

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "cancelled"


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        credentials: CredentialProvider | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.credentials = credentials or ConfigCredentialProvider(config_manager)
        self.conflict_resolver = ConflictResolver(state_store)
        self._lock = threading.RLock()
        self._jobs: dict[str, SyncJob] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._retention_seconds = config_manager.load().sync.job_retention_seconds

    # Job table

    def _worker_alive(self, job_id: str) -> bool:
        thread = self._threads.get(job_id)
        return thread is not None and thread.is_alive()

    def _evict_expired(self) -> None:
        now = utc_now()
        retention = timedelta(seconds=self._retention_seconds)
        with self._lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.status.is_terminal
                and job.ended_at is not None
                and job.ended_at + retention <= now
                and not self._worker_alive(job_id)
            ]
            for job_id in expired:
                self._jobs.pop(job_id, None)
                self._threads.pop(job_id, None)
                logger.debug("Evicted sync job %s", job_id)

    def _active_job_for(self, user_id: str) -> SyncJob | None:
        # A cancelled job stays active until its worker has stopped touching the mirror.
        with self._lock:
            for job in self._jobs.values():
                if job.user_id == user_id and (not job.status.is_terminal or self._worker_alive(job.id)):
                    return job
        return None

    def default_options(self, config: AppConfig) -> SyncOptions:
        return SyncOptions(conflict_resolution=ConflictStrategy(config.sync.conflict_resolution))

    def start_sync(
        self,
        user_id: str,
        direction: SyncDirection | None = None,
        options: SyncOptions | None = None,
    ) -> str:
        user_id = str(user_id or "").strip()
        if not user_id:
            raise ValidationError("user_id is required")
        config = self.config_manager.load()
        self._retention_seconds = config.sync.job_retention_seconds
        direction = direction or SyncDirection(config.sync.default_direction)
        options = options or self.default_options(config)

        with self._lock:
            self._evict_expired()
            active = self._active_job_for(user_id)
            if active is not None:
                state = "stopping" if active.status.is_terminal else active.status.value
                logger.info("Rejected sync for %s: job %s is %s", user_id, active.id, state)
                raise SyncAlreadyRunning(f"sync job {active.id} is still {state} for {user_id}")
            if not self.credentials.is_authenticated(user_id):
                logger.info("Rejected sync for %s: no valid credential", user_id)
                raise AuthenticationError(f"user {user_id} is not authenticated")

            job = SyncJob(
                user_id=user_id,
                direction=direction,
                options=options,
                calendar_id=normalize_calendar_id(options.calendar_id),
            )
            self.state_store.upsert_sync_state(
                user_id,
                job.calendar_id,
                sync_in_progress=True,
                last_sync_status=SyncStateStatus.IN_PROGRESS,
                last_sync_error=None,
            )
            self._jobs[job.id] = job
            thread = threading.Thread(target=self._run_job, args=(job.id,), name=f"calmirror-{job.id}", daemon=True)
            self._threads[job.id] = thread
            thread.start()

        logger.info(
            "Started %s sync %s for %s (trigger=%s, full_sync=%s)",
            direction.value,
            job.id,
            user_id,
            options.trigger.value,
            options.full_sync,
        )
        return job.id

    def get_sync_status(self, job_id: str) -> SyncStatusResult:
        self._evict_expired()
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return SyncStatusResult(outcome=LookupOutcome.NOT_FOUND, job_id=job_id)
            return SyncStatusResult(outcome=LookupOutcome.FOUND, job_id=job_id, job=job.to_dict())

    def cancel_sync(self, user_id: str, job_id: str) -> bool:
        self._evict_expired()
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.user_id != user_id or job.status.is_terminal:
                return False
            job.cancel_requested = True
            self._mark_terminal(job, JobStatus.FAILED, result=job.result, error=CANCELLED_ERROR)
        logger.info("Cancelled sync job %s for %s", job_id, user_id)
        self._persist_outcome(job, baseline_token=None)
        return True

    def list_jobs(self, user_id: str | None = None) -> list[dict[str, Any]]:
        self._evict_expired()
        with self._lock:
            jobs = [job for job in self._jobs.values() if user_id is None or job.user_id == user_id]
            jobs.sort(key=lambda item: item.started_at, reverse=True)
            return [job.to_dict() for job in jobs]

    def wait_for_job(self, job_id: str, timeout: float | None = None) -> SyncStatusResult:
        with self._lock:
            thread = self._threads.get(job_id)
        if thread is not None:
            thread.join(timeout=timeout)
        return self.get_sync_status(job_id)

    def shutdown(self, timeout: float = 5.0) -> None:
        with self._lock:
            running = [
                (job, self._threads.get(job.id)) for job in self._jobs.values() if not job.status.is_terminal
            ]
        for job, _ in running:
            self.cancel_sync(job.user_id, job.id)
        for _, thread in running:
            if thread is not None:
                thread.join(timeout=timeout)

    # Worker

    def _mark_terminal(
        self,
        job: SyncJob,
        status: JobStatus,
        *,
        result: SyncResult | None,
        error: str | None,
    ) -> bool:
        with self._lock:
            if job.status.is_terminal:
                return False
            job.status = status
            job.ended_at = utc_now()
            job.result = result
            job.error = error
            if status is JobStatus.COMPLETED:
                job.progress = 100.0
            return True

    def _set_progress(self, job: SyncJob, value: float) -> None:
        with self._lock:
            if not job.status.is_terminal:
                job.progress = max(0.0, min(100.0, float(value)))

    def _build_strategy(self, job: SyncJob, client: GraphClient, config: AppConfig) -> SyncStrategy:
        should_cancel: Callable[[], bool] = lambda: job.cancel_requested
        progress: Callable[[float], None] = lambda value: self._set_progress(job, value)
        pull = PullStrategy(
            client,
            self.state_store,
            self.conflict_resolver,
            user_id=job.user_id,
            options=job.options,
            max_pages=config.provider.max_pages,
            should_cancel=should_cancel,
            on_progress=progress,
        )
        push = PushStrategy(
            client,
            self.state_store,
            user_id=job.user_id,
            options=job.options,
            should_cancel=should_cancel,
            on_progress=progress,
        )
        if job.direction is SyncDirection.PULL:
            return pull
        if job.direction is SyncDirection.PUSH:
            return push
        return BidirectionalStrategy(pull, push, on_progress=progress)

    def _run_job(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status.is_terminal:
                return
            job.status = JobStatus.RUNNING

        baseline_token: str | None = None
        transitioned = False
        try:
            state = self.state_store.get_sync_state(job.user_id, job.calendar_id)
            baseline_token = state.delta_token if state else None
            config = self.config_manager.load()
            client = GraphClient(config.provider, token_getter=self.credentials.token_getter(job.user_id))
            result = self._build_strategy(job, client, config).run()
        except SyncCancelled:
            logger.info("Sync job %s stopped after cancellation", job.id)
            transitioned = self._mark_terminal(job, JobStatus.FAILED, result=None, error=CANCELLED_ERROR)
        except Exception as exc:
            logger.error("Sync job %s for %s failed: %s", job.id, job.user_id, exc, exc_info=True)
            transitioned = self._mark_terminal(job, JobStatus.FAILED, result=None, error=str(exc) or type(exc).__name__)
        else:
            transitioned = self._mark_terminal(job, JobStatus.COMPLETED, result=result, error=None)
            if transitioned:
                logger.info(
                    "Sync job %s completed: synced=%s conflicts=%s errors=%s skipped=%s",
                    job.id,
                    result.synced_count,
                    result.conflict_count,
                    result.error_count,
                    result.skipped_count,
                )
        finally:
            # No job may stay running once the worker exits.
            if not job.status.is_terminal:
                transitioned = self._mark_terminal(job, JobStatus.FAILED, result=None, error="worker exited")
        if transitioned:
            self._persist_outcome(job, baseline_token=baseline_token)

    def _persist_outcome(self, job: SyncJob, *, baseline_token: str | None) -> None:
        result = job.result
        ran_pull = job.direction in {SyncDirection.PULL, SyncDirection.BIDIRECTIONAL}
        updates: dict[str, Any] = {"sync_in_progress": False}
        increments: dict[str, int] = {}

        if job.status is JobStatus.COMPLETED and result is not None:
            increments = {
                "synced_events": result.synced_count,
                "conflicted_events": result.conflict_count,
                "failed_events": result.error_count,
            }
            if result.success:
                updates["last_sync_status"] = SyncStateStatus.COMPLETED
                updates["last_sync_error"] = None
            else:
                updates["last_sync_status"] = SyncStateStatus.FAILED
                updates["last_sync_error"] = f"{result.error_count} event(s) failed: " + "; ".join(result.errors[:5])
            if ran_pull:
                updates["total_events"] = self.state_store.count_user_events(job.user_id, job.calendar_id)
                if result.error_count == 0 and result.delta_token:
                    if self.state_store.compare_and_set_delta_token(
                        job.user_id, job.calendar_id, expected=baseline_token, new=result.delta_token
                    ):
                        updates["last_delta_sync_at"] = job.ended_at
                        if result.full_sync:
                            updates["last_full_sync_at"] = job.ended_at
                    else:
                        logger.warning("Delta cursor for %s changed during job %s, not persisting", job.user_id, job.id)
        else:
            updates["last_sync_status"] = SyncStateStatus.FAILED
            updates["last_sync_error"] = job.error

        self.state_store.upsert_sync_state(job.user_id, job.calendar_id, increments=increments, **updates)
        self.state_store.record_sync_run(
            job_id=job.id,
            user_id=job.user_id,
            calendar_id=job.calendar_id,
            direction=job.direction.value,
            trigger=job.trigger.value,
            status=job.status.value,
            started_at=job.started_at,
            ended_at=job.ended_at or utc_now(),
            synced_count=result.synced_count if result else 0,
            conflict_count=result.conflict_count if result else 0,
            error_count=result.error_count if result else 0,
            skipped_count=result.skipped_count if result else 0,
            full_sync=result.full_sync if result else False,
            error=job.error,
        )

    # Read side

    def get_sync_history(self, user_id: str, limit: int = 20, offset: int = 0) -> list[dict[str, Any]]:
        return self.state_store.recent_sync_runs(user_id, limit=limit, offset=offset)

    def get_sync_metrics(self, user_id: str, window_days: int = 7) -> dict[str, Any]:
        window_days = max(1, int(window_days))
        runs = self.state_store.sync_runs_since(user_id, utc_now() - timedelta(days=window_days))
        completed = [run for run in runs if run["status"] == JobStatus.COMPLETED.value]
        durations = [int(run["duration_ms"]) for run in runs]
        last_run = runs[0] if runs else None
        return {
            "user_id": user_id,
            "period_days": window_days,
            "total_syncs": len(runs),
            "successful_syncs": sum(1 for run in completed if int(run["error_count"]) == 0),
            "failed_syncs": len(runs) - sum(1 for run in completed if int(run["error_count"]) == 0),
            "synced_events": sum(int(run["synced_count"]) for run in runs),
            "conflicted_events": sum(int(run["conflict_count"]) for run in runs),
            "failed_events": sum(int(run["error_count"]) for run in runs),
            "average_duration_ms": int(sum(durations) / len(durations)) if durations else 0,
            "pending_conflicts": self.state_store.count_pending_conflicts(user_id),
            "last_sync_time": last_run["ended_at"] if last_run else None,
        }

    def get_sync_state(self, user_id: str, calendar_id: str | None = None) -> SyncState | None:
        return self.state_store.get_sync_state(user_id, calendar_id)

    def reset_sync_state(self, user_id: str, calendar_id: str | None = None) -> bool:
        with self._lock:
            self._evict_expired()
            active = self._active_job_for(user_id)
            if active is not None:
                raise SyncAlreadyRunning(f"cannot reset sync state while job {active.id} is {active.status.value}")
            removed = self.state_store.delete_sync_state(user_id, calendar_id)
        logger.info("Reset sync state for %s calendar %r: %s", user_id, normalize_calendar_id(calendar_id), removed)
        return removed

    def test_sync_capabilities(self, user_id: str) -> dict[str, Any]:
        capabilities: dict[str, Any] = {
            "user_id": user_id,
            "can_sync": False,
            "delta_supported": False,
            "calendars": [],
            "errors": [],
            "checked_at": serialize_datetime(utc_now()),
        }
        if not self.credentials.is_authenticated(user_id):
            capabilities["errors"].append("not authenticated")
            return capabilities
        capabilities["can_sync"] = True

        config = self.config_manager.load()
        client = GraphClient(config.provider, token_getter=self.credentials.token_getter(user_id))
        try:
            client.fetch_delta(page_size=1)
            capabilities["delta_supported"] = True
        except SyncError as exc:
            logger.warning("Delta probe failed for %s: %s", user_id, exc)
            capabilities["errors"].append(f"delta: {exc}")
        try:
            capabilities["calendars"] = [item.to_dict() for item in client.list_calendars()]
        except SyncError as exc:
            logger.warning("Could not list calendars for %s: %s", user_id, exc)
            capabilities["errors"].append(f"calendars: {exc}")
        return capabilities
