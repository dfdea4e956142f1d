"""Application-layer exceptions. Do not reuse domain exceptions."""

from typing import Optional


class ApplicationError(Exception):
    """Base for all application-layer errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class QueryValidationError(ApplicationError):
    """Raised when a search request is invalid. Carries the offending field name."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(message)


class AuditRecordNotFoundError(ApplicationError):
    """Raised when an audit record id does not exist (or was reclaimed by retention)."""


class RetentionConfigurationError(ApplicationError):
    """Raised when a retention policy has neither an age nor a count limit."""


class AuditStoreError(ApplicationError):
    """Base for audit store failures. Infrastructure maps driver errors onto these."""

    retryable: bool = False

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        self.cause = cause
        super().__init__(message)


class TransientStoreError(AuditStoreError):
    """Connection loss, timeout, lock contention. Writes are retried with backoff."""

    retryable = True


class PermanentStoreError(AuditStoreError):
    """Schema mismatch, constraint violation. Retrying cannot succeed."""


class StoreUnavailableError(AuditStoreError):
    """Store could not serve a read. Surfaced to callers as retryable."""

    retryable = True
