from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


DEFAULT_CALENDAR_ID = ""
DEFAULT_PROVIDER_BASE_URL = "https://graph.microsoft.com/v1.0"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Graph emits seven fractional digits, fromisoformat accepts at most six.
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for index, char in enumerate(tail):
            if not char.isdigit():
                rest = tail[index:]
                break
            digits += char
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def normalize_calendar_id(value: str | None) -> str:
    return str(value or "").strip()


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class SyncDirection(str, Enum):
    PULL = "pull"
    PUSH = "push"
    BIDIRECTIONAL = "bidirectional"


class SyncTrigger(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"
    USER_ACTION = "user_action"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.FAILED}


class EventSyncStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CONFLICTED = "conflicted"
    FAILED = "failed"


class SyncStateStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ConflictType(str, Enum):
    TITLE = "title"
    DESCRIPTION_MISMATCH = "description_mismatch"
    LOCATION_MISMATCH = "location_mismatch"
    START_TIME = "start_time"
    TIME_MISMATCH = "time_mismatch"
    BOTH_MODIFIED = "both_modified"
    DELETED_REMOTELY = "deleted_remotely"


class ConflictResolution(str, Enum):
    PENDING = "pending"
    USE_LOCAL = "use_local"
    USE_REMOTE = "use_remote"
    MERGE = "merge"
    SKIP = "skip"


class ConflictStrategy(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"


class EntryKind(str, Enum):
    ACTIVE = "active"
    REMOVED = "removed"


class LookupOutcome(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"


@dataclass
class ProviderConfig:
    base_url: str = DEFAULT_PROVIDER_BASE_URL
    timeout_seconds: int = 30
    page_size: int = 100
    max_pages: int = 1000

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ProviderConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", DEFAULT_PROVIDER_BASE_URL)).strip().rstrip("/")
            or DEFAULT_PROVIDER_BASE_URL,
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            page_size=max(1, int(data.get("page_size", 100))),
            max_pages=max(1, int(data.get("max_pages", 1000))),
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 900
    scheduler_enabled: bool = False
    scheduled_users: list[str] = field(default_factory=list)
    default_direction: str = SyncDirection.BIDIRECTIONAL.value
    conflict_resolution: str = ConflictStrategy.MANUAL.value
    job_retention_seconds: int = 3600

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        direction = str(data.get("default_direction", SyncDirection.BIDIRECTIONAL.value)).strip().lower()
        if direction not in {item.value for item in SyncDirection}:
            direction = SyncDirection.BIDIRECTIONAL.value
        strategy = str(data.get("conflict_resolution", ConflictStrategy.MANUAL.value)).strip().lower()
        if strategy not in {item.value for item in ConflictStrategy}:
            strategy = ConflictStrategy.MANUAL.value
        return cls(
            interval_seconds=max(60, int(data.get("interval_seconds", 900))),
            scheduler_enabled=bool(data.get("scheduler_enabled", False)),
            scheduled_users=[str(x).strip() for x in data.get("scheduled_users", []) or [] if str(x).strip()],
            default_direction=direction,
            conflict_resolution=strategy,
            job_retention_seconds=max(0, int(data.get("job_retention_seconds", 3600))),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(level=level)


@dataclass
class AppConfig:
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    credentials: dict[str, str] = field(default_factory=dict)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        raw_credentials = data.get("credentials", {})
        credentials: dict[str, str] = {}
        if isinstance(raw_credentials, dict):
            for key, value in raw_credentials.items():
                user_id = str(key).strip()
                token = str(value or "").strip()
                if user_id and token:
                    credentials[user_id] = token
        return cls(
            provider=ProviderConfig.from_dict(data.get("provider")),
            sync=SyncConfig.from_dict(data.get("sync")),
            credentials=credentials,
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str
    is_default: bool = False
    can_edit: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EventData:
    """Comparable snapshot of an event, used for conflict records."""

    subject: str = ""
    description: str | None = None
    location: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    time_zone: str | None = None
    is_all_day: bool = False
    is_recurring: bool = False
    recurrence_pattern: str | None = None
    etag: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "EventData":
        data = data or {}
        return cls(
            subject=str(data.get("subject", "") or ""),
            description=data.get("description"),
            location=data.get("location"),
            start=parse_iso_datetime(data.get("start")),
            end=parse_iso_datetime(data.get("end")),
            time_zone=data.get("time_zone"),
            is_all_day=bool(data.get("is_all_day", False)),
            is_recurring=bool(data.get("is_recurring", False)),
            recurrence_pattern=data.get("recurrence_pattern"),
            etag=data.get("etag"),
        )


@dataclass
class RemoteEvent:
    provider_id: str
    subject: str = ""
    description: str | None = None
    location: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    time_zone: str | None = None
    is_all_day: bool = False
    is_recurring: bool = False
    recurrence_pattern: str | None = None
    etag: str | None = None
    last_modified_at: datetime | None = None

    def to_event_data(self) -> EventData:
        return EventData(
            subject=self.subject,
            description=self.description,
            location=self.location,
            start=self.start,
            end=self.end,
            time_zone=self.time_zone,
            is_all_day=self.is_all_day,
            is_recurring=self.is_recurring,
            recurrence_pattern=self.recurrence_pattern,
            etag=self.etag,
        )


@dataclass
class LocalEvent:
    user_id: str
    id: str = field(default_factory=lambda: new_id("evt"))
    calendar_id: str = DEFAULT_CALENDAR_ID
    provider_id: str | None = None
    etag: str | None = None
    subject: str = ""
    description: str | None = None
    location: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    time_zone: str | None = None
    is_all_day: bool = False
    is_recurring: bool = False
    recurrence_pattern: str | None = None
    locally_modified: bool = False
    remotely_modified: bool = False
    locally_deleted: bool = False
    last_synced_at: datetime | None = None
    sync_status: EventSyncStatus = EventSyncStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["sync_status"] = self.sync_status.value
        for key in ("start", "end", "last_synced_at", "created_at", "updated_at"):
            payload[key] = serialize_datetime(getattr(self, key))
        return payload

    def to_event_data(self) -> EventData:
        return EventData(
            subject=self.subject,
            description=self.description,
            location=self.location,
            start=self.start,
            end=self.end,
            time_zone=self.time_zone,
            is_all_day=self.is_all_day,
            is_recurring=self.is_recurring,
            recurrence_pattern=self.recurrence_pattern,
            etag=self.etag,
        )

    def clone(self) -> "LocalEvent":
        return replace(self)

    def with_updates(self, **kwargs: Any) -> "LocalEvent":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied

    def apply_data(self, data: EventData) -> "LocalEvent":
        return self.with_updates(
            subject=data.subject,
            description=data.description,
            location=data.location,
            start=data.start,
            end=data.end,
            time_zone=data.time_zone,
            is_all_day=data.is_all_day,
            is_recurring=data.is_recurring,
            recurrence_pattern=data.recurrence_pattern,
        )


@dataclass(frozen=True)
class ActiveEntry:
    provider_id: str
    payload: dict[str, Any]
    kind: EntryKind = field(default=EntryKind.ACTIVE, init=False)


@dataclass(frozen=True)
class RemovedEntry:
    provider_id: str
    reason: str = "deleted"
    kind: EntryKind = field(default=EntryKind.REMOVED, init=False)


DeltaEntry = Union[ActiveEntry, RemovedEntry]


@dataclass
class DeltaPage:
    entries: list[DeltaEntry]
    next_page_cursor: str | None = None
    final_delta_cursor: str | None = None


@dataclass
class SyncState:
    user_id: str
    calendar_id: str = DEFAULT_CALENDAR_ID
    delta_token: str | None = None
    last_full_sync_at: datetime | None = None
    last_delta_sync_at: datetime | None = None
    sync_in_progress: bool = False
    total_events: int = 0
    synced_events: int = 0
    conflicted_events: int = 0
    failed_events: int = 0
    last_sync_status: SyncStateStatus = SyncStateStatus.PENDING
    last_sync_error: str | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_sync_status"] = self.last_sync_status.value
        for key in ("last_full_sync_at", "last_delta_sync_at", "updated_at"):
            payload[key] = serialize_datetime(getattr(self, key))
        return payload


@dataclass
class ConflictInfo:
    event_id: str
    conflict_type: ConflictType
    local_version: EventData
    remote_version: EventData | None
    auto_resolvable: bool
    differences: list[ConflictType] = field(default_factory=list)


@dataclass
class Conflict:
    id: str
    event_id: str
    user_id: str
    conflict_type: ConflictType
    local_version: EventData
    remote_version: EventData | None
    auto_resolvable: bool
    resolution: ConflictResolution = ConflictResolution.PENDING
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolved_data: EventData | None = None
    notes: str | None = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def is_resolved(self) -> bool:
        return self.resolution is not ConflictResolution.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "user_id": self.user_id,
            "conflict_type": self.conflict_type.value,
            "local_version": self.local_version.to_dict(),
            "remote_version": self.remote_version.to_dict() if self.remote_version else None,
            "auto_resolvable": self.auto_resolvable,
            "resolution": self.resolution.value,
            "resolved_at": serialize_datetime(self.resolved_at),
            "resolved_by": self.resolved_by,
            "resolved_data": self.resolved_data.to_dict() if self.resolved_data else None,
            "notes": self.notes,
            "created_at": serialize_datetime(self.created_at),
        }


@dataclass
class SyncOptions:
    trigger: SyncTrigger = SyncTrigger.MANUAL
    full_sync: bool = False
    calendar_id: str | None = None
    conflict_resolution: ConflictStrategy = ConflictStrategy.MANUAL
    skip_deleted: bool = False
    page_size: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger.value,
            "full_sync": self.full_sync,
            "calendar_id": self.calendar_id,
            "conflict_resolution": self.conflict_resolution.value,
            "skip_deleted": self.skip_deleted,
            "page_size": self.page_size,
        }


@dataclass
class SyncResult:
    success: bool = True
    synced_count: int = 0
    conflict_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    errors: list[str] = field(default_factory=list)
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    delta_token: str | None = None
    full_sync: bool = False

    def merge(self, other: "SyncResult") -> "SyncResult":
        return SyncResult(
            success=self.success and other.success,
            synced_count=self.synced_count + other.synced_count,
            conflict_count=self.conflict_count + other.conflict_count,
            error_count=self.error_count + other.error_count,
            skipped_count=self.skipped_count + other.skipped_count,
            errors=[*self.errors, *other.errors],
            conflicts=[*self.conflicts, *other.conflicts],
            delta_token=self.delta_token or other.delta_token,
            full_sync=self.full_sync or other.full_sync,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "synced_count": self.synced_count,
            "conflict_count": self.conflict_count,
            "error_count": self.error_count,
            "skipped_count": self.skipped_count,
            "errors": list(self.errors),
            "conflicts": list(self.conflicts),
            "full_sync": self.full_sync,
        }


@dataclass
class SyncJob:
    user_id: str
    direction: SyncDirection
    options: SyncOptions
    id: str = field(default_factory=lambda: new_id("sync"))
    calendar_id: str = DEFAULT_CALENDAR_ID
    status: JobStatus = JobStatus.PENDING
    progress: float = 0.0
    started_at: datetime = field(default_factory=utc_now)
    ended_at: datetime | None = None
    result: SyncResult | None = None
    error: str | None = None
    cancel_requested: bool = False

    @property
    def trigger(self) -> SyncTrigger:
        return self.options.trigger

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "calendar_id": self.calendar_id,
            "direction": self.direction.value,
            "trigger": self.trigger.value,
            "status": self.status.value,
            "progress": round(self.progress, 2),
            "started_at": serialize_datetime(self.started_at),
            "ended_at": serialize_datetime(self.ended_at),
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
        }


@dataclass
class SyncStatusResult:
    outcome: LookupOutcome
    job_id: str
    job: dict[str, Any] | None = None

    @property
    def found(self) -> bool:
        return self.outcome is LookupOutcome.FOUND

    def to_dict(self) -> dict[str, Any]:
        return {"outcome": self.outcome.value, "job_id": self.job_id, "job": self.job}
