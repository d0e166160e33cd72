from __future__ import annotations


class SyncError(Exception):
    """Base class for calendar sync failures."""


class JobLevelError(SyncError):
    """Aborts the remaining batch and fails the whole job."""


class AuthenticationError(JobLevelError):
    pass


class ProviderRateLimited(JobLevelError):
    def __init__(self, message: str, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ProviderUnavailable(JobLevelError):
    pass


class DeltaTokenExpired(SyncError):
    pass


class ProviderRequestError(SyncError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ValidationError(SyncError):
    pass


class SyncAlreadyRunning(SyncError):
    pass


class SyncCancelled(SyncError):
    pass


class ConflictNotFound(SyncError):
    pass


class ConflictAlreadyResolved(SyncError):
    pass


class EventNotFound(SyncError):
    pass
