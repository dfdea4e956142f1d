# Application layer: capture, write pipeline, retention and queries over the audit store.

from broker_audit.application.exceptions import (
    ApplicationError,
    AuditRecordNotFoundError,
    AuditStoreError,
    PermanentStoreError,
    QueryValidationError,
    RetentionConfigurationError,
    StoreUnavailableError,
    TransientStoreError,
)
from broker_audit.application.audit_store import AuditStore, SearchQuery, SortDirection, SortField
from broker_audit.application.writer import AuditWriter, WriterHealth
from broker_audit.application.interceptor import (
    OperationContext,
    OperationInterceptor,
    OperationOutcome,
    PartialOperationError,
    audited,
)
from broker_audit.application.query_engine import PageEnvelope, QueryEngine
from broker_audit.application.retention import RetentionEnforcer, RetentionPolicy, RetentionRunResult, RetentionState

__all__ = [
    "ApplicationError",
    "AuditRecordNotFoundError",
    "AuditStoreError",
    "PermanentStoreError",
    "QueryValidationError",
    "RetentionConfigurationError",
    "StoreUnavailableError",
    "TransientStoreError",
    "AuditStore",
    "SearchQuery",
    "SortDirection",
    "SortField",
    "AuditWriter",
    "WriterHealth",
    "OperationContext",
    "OperationInterceptor",
    "OperationOutcome",
    "PartialOperationError",
    "audited",
    "PageEnvelope",
    "QueryEngine",
    "RetentionEnforcer",
    "RetentionPolicy",
    "RetentionRunResult",
    "RetentionState",
]
