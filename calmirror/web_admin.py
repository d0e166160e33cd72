from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from calmirror.auth import ConfigCredentialProvider
from calmirror.config_manager import MASK, ConfigManager
from calmirror.errors import (
    AuthenticationError,
    ConflictAlreadyResolved,
    ConflictNotFound,
    EventNotFound,
    JobLevelError,
    SyncAlreadyRunning,
    SyncError,
    ValidationError,
)
from calmirror.models import (
    ConflictResolution,
    ConflictStrategy,
    EventData,
    EventSyncStatus,
    LocalEvent,
    SyncDirection,
    SyncOptions,
    SyncTrigger,
    normalize_calendar_id,
    parse_iso_datetime,
)
from calmirror.scheduler import SyncScheduler
from calmirror.state_store import StateStore
from calmirror.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

EDITABLE_EVENT_FIELDS = (
    "subject",
    "description",
    "location",
    "start",
    "end",
    "time_zone",
    "is_all_day",
    "is_recurring",
    "recurrence_pattern",
)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SyncStartRequest(BaseModel):
    user_id: str = Field(min_length=1)
    direction: SyncDirection | None = None
    trigger: SyncTrigger = SyncTrigger.MANUAL
    full_sync: bool = False
    calendar_id: str | None = None
    conflict_resolution: ConflictStrategy | None = None
    skip_deleted: bool = False
    page_size: int | None = Field(default=None, ge=1, le=1000)


class SyncCancelRequest(BaseModel):
    user_id: str = Field(min_length=1)


class ConflictResolveRequest(BaseModel):
    resolution: ConflictResolution
    merged_data: dict[str, Any] | None = None
    resolved_by: str = "user"
    notes: str | None = Field(default=None, max_length=2000)


class EventCreateRequest(BaseModel):
    calendar_id: str | None = None
    subject: str = ""
    description: str | None = None
    location: str | None = None
    start: str
    end: str
    time_zone: str | None = None
    is_all_day: bool = False
    is_recurring: bool = False
    recurrence_pattern: str | None = None


class EventUpdateRequest(BaseModel):
    subject: str | None = None
    description: str | None = None
    location: str | None = None
    start: str | None = None
    end: str | None = None
    time_zone: str | None = None
    is_all_day: bool | None = None
    is_recurring: bool | None = None
    recurrence_pattern: str | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.credentials = ConfigCredentialProvider(self.config_manager)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store, self.credentials)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    credentials = sanitized.get("credentials")
    if isinstance(credentials, dict):
        current_credentials = current.get("credentials", {}) or {}
        cleaned: dict[str, Any] = {}
        for user_id, token in credentials.items():
            token_text = str(token or "").strip()
            if token_text in {"", MASK}:
                # Masked or blank values keep whatever token is stored.
                if user_id in current_credentials:
                    continue
            cleaned[user_id] = token_text
        if cleaned:
            sanitized["credentials"] = cleaned
        else:
            sanitized.pop("credentials", None)
    return sanitized


def _http_status_for(exc: SyncError) -> int:
    if isinstance(exc, AuthenticationError):
        return 401
    if isinstance(exc, (SyncAlreadyRunning, ConflictAlreadyResolved)):
        return 409
    if isinstance(exc, (ConflictNotFound, EventNotFound)):
        return 404
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, JobLevelError):
        return 503
    return 400


def _parse_event_time(value: str | None, name: str) -> Any:
    try:
        parsed = parse_iso_datetime(value)
    except ValueError as exc:
        raise ValidationError(f"invalid {name}: {value!r}") from exc
    if parsed is None:
        raise ValidationError(f"{name} is required")
    return parsed


def _edit_status(event: LocalEvent) -> EventSyncStatus:
    # A pending conflict keeps the row out of push until it is resolved.
    if event.sync_status is EventSyncStatus.CONFLICTED:
        return EventSyncStatus.CONFLICTED
    return EventSyncStatus.PENDING


def _load_event(state_store: StateStore, event_id: str) -> LocalEvent:
    event = state_store.get_event(event_id)
    if event is None:
        raise EventNotFound(f"event {event_id} not found")
    return event


def create_app() -> FastAPI:
    config_path = os.getenv("CALMIRROR_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CALMIRROR_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="calmirror admin", version="0.1.0")
    app.state.context = context

    @app.exception_handler(SyncError)
    def _sync_error_handler(_request: Request, exc: SyncError) -> JSONResponse:
        status_code = _http_status_for(exc)
        if status_code >= 500:
            logger.warning("Upstream failure on admin request: %s", exc)
        return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": type(exc).__name__})

    @app.on_event("startup")
    def _startup() -> None:
        if app.state.context.config_manager.load().sync.scheduler_enabled:
            app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()
        app.state.context.sync_engine.shutdown()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    # Sync jobs

    @app.post("/api/sync/start", status_code=202)
    def start_sync(request: SyncStartRequest) -> dict[str, Any]:
        engine: SyncEngine = app.state.context.sync_engine
        config = app.state.context.config_manager.load()
        options = SyncOptions(
            trigger=request.trigger,
            full_sync=request.full_sync,
            calendar_id=request.calendar_id,
            conflict_resolution=request.conflict_resolution or ConflictStrategy(config.sync.conflict_resolution),
            skip_deleted=request.skip_deleted,
            page_size=request.page_size,
        )
        job_id = engine.start_sync(request.user_id, request.direction, options)
        return {"job_id": job_id, "status_url": f"/api/sync/jobs/{job_id}"}

    @app.post("/api/sync/run")
    def trigger_scheduled_round() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.get("/api/sync/jobs")
    def list_jobs(user_id: str | None = None) -> dict[str, Any]:
        return {"jobs": app.state.context.sync_engine.list_jobs(user_id)}

    @app.get("/api/sync/jobs/{job_id}")
    def sync_status(job_id: str) -> dict[str, Any]:
        status = app.state.context.sync_engine.get_sync_status(job_id)
        if not status.found:
            raise HTTPException(status_code=404, detail="sync job not found")
        return status.to_dict()

    @app.post("/api/sync/jobs/{job_id}/cancel")
    def cancel_sync(job_id: str, request: SyncCancelRequest) -> dict[str, Any]:
        cancelled = app.state.context.sync_engine.cancel_sync(request.user_id, job_id)
        return {"job_id": job_id, "cancelled": cancelled}

    @app.get("/api/users/{user_id}/sync/history")
    def sync_history(user_id: str, limit: int = 20, offset: int = 0) -> dict[str, Any]:
        return {"runs": app.state.context.sync_engine.get_sync_history(user_id, limit=limit, offset=offset)}

    @app.get("/api/users/{user_id}/sync/metrics")
    def sync_metrics(user_id: str, window_days: int = 7) -> dict[str, Any]:
        return app.state.context.sync_engine.get_sync_metrics(user_id, window_days=window_days)

    @app.get("/api/users/{user_id}/sync/state")
    def get_sync_state(user_id: str, calendar_id: str | None = None) -> dict[str, Any]:
        state = app.state.context.sync_engine.get_sync_state(user_id, calendar_id)
        if state is None:
            raise HTTPException(status_code=404, detail="sync state not found")
        return state.to_dict()

    @app.delete("/api/users/{user_id}/sync/state")
    def reset_sync_state(user_id: str, calendar_id: str | None = None) -> dict[str, Any]:
        removed = app.state.context.sync_engine.reset_sync_state(user_id, calendar_id)
        return {"user_id": user_id, "calendar_id": normalize_calendar_id(calendar_id), "reset": removed}

    @app.get("/api/users/{user_id}/sync/capabilities")
    def sync_capabilities(user_id: str) -> dict[str, Any]:
        return app.state.context.sync_engine.test_sync_capabilities(user_id)

    # Conflicts

    @app.get("/api/conflicts")
    def list_conflicts(
        user_id: str | None = None,
        status: str = "pending",
        limit: int = 100,
        offset: int = 0,
    ) -> dict[str, Any]:
        if status == "all":
            resolution = None
        else:
            try:
                resolution = ConflictResolution(status)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=f"unknown conflict status {status!r}") from exc
        conflicts = app.state.context.sync_engine.conflict_resolver.list_conflicts(
            user_id=user_id, resolution=resolution, limit=limit, offset=offset
        )
        return {"conflicts": [conflict.to_dict() for conflict in conflicts]}

    @app.get("/api/conflicts/{conflict_id}")
    def get_conflict(conflict_id: str) -> dict[str, Any]:
        return app.state.context.sync_engine.conflict_resolver.get_conflict(conflict_id).to_dict()

    @app.post("/api/conflicts/{conflict_id}/resolve")
    def resolve_conflict(conflict_id: str, request: ConflictResolveRequest) -> dict[str, Any]:
        merged = EventData.from_dict(request.merged_data) if request.merged_data is not None else None
        conflict = app.state.context.sync_engine.conflict_resolver.resolve_conflict_manually(
            conflict_id,
            request.resolution,
            merged,
            resolved_by=request.resolved_by or "user",
            notes=request.notes,
        )
        return {"message": "conflict resolved", "conflict": conflict.to_dict()}

    # Local mirror edits

    @app.get("/api/users/{user_id}/events")
    def list_events(user_id: str, calendar_id: str | None = None, limit: int = 500) -> dict[str, Any]:
        events = app.state.context.state_store.list_events(user_id, calendar_id=calendar_id, limit=limit)
        return {"events": [event.to_dict() for event in events]}

    @app.post("/api/users/{user_id}/events", status_code=201)
    def create_event(user_id: str, request: EventCreateRequest) -> dict[str, Any]:
        start = _parse_event_time(request.start, "start")
        end = _parse_event_time(request.end, "end")
        if end < start:
            raise ValidationError("end must not be earlier than start")
        event = LocalEvent(
            user_id=user_id,
            calendar_id=normalize_calendar_id(request.calendar_id),
            subject=request.subject,
            description=request.description,
            location=request.location,
            start=start,
            end=end,
            time_zone=request.time_zone,
            is_all_day=request.is_all_day,
            is_recurring=request.is_recurring,
            recurrence_pattern=request.recurrence_pattern,
            locally_modified=True,
            sync_status=EventSyncStatus.PENDING,
        )
        saved = app.state.context.state_store.save_event(event)
        return {"event": saved.to_dict()}

    @app.patch("/api/events/{event_id}")
    def update_event(event_id: str, request: EventUpdateRequest) -> dict[str, Any]:
        state_store: StateStore = app.state.context.state_store
        event = _load_event(state_store, event_id)
        if event.locally_deleted:
            raise EventNotFound(f"event {event_id} is deleted")
        changes = request.model_dump(exclude_unset=True)
        for name in ("start", "end"):
            if name in changes:
                changes[name] = _parse_event_time(changes[name], name)
        updates = {name: value for name, value in changes.items() if name in EDITABLE_EVENT_FIELDS}
        updated = event.with_updates(**updates)
        if updated.start and updated.end and updated.end < updated.start:
            raise ValidationError("end must not be earlier than start")
        saved = state_store.save_event(updated.with_updates(locally_modified=True, sync_status=_edit_status(event)))
        return {"event": saved.to_dict()}

    @app.delete("/api/events/{event_id}")
    def delete_event(event_id: str) -> dict[str, Any]:
        state_store: StateStore = app.state.context.state_store
        event = _load_event(state_store, event_id)
        if not event.provider_id:
            state_store.delete_event(event.id)
            return {"event_id": event_id, "deleted": True, "tombstoned": False}
        state_store.save_event(
            event.with_updates(locally_deleted=True, locally_modified=True, sync_status=_edit_status(event))
        )
        return {"event_id": event_id, "deleted": False, "tombstoned": True}

    return app
