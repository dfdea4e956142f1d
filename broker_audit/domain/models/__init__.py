"""Domain models (dataclasses, enums)."""

from broker_audit.domain.models.audit import (
    RESOURCE_TYPE_BY_OPERATION,
    SYSTEM_USERNAME,
    AuditRecord,
    AuditStatus,
    OperationType,
    PersistedAuditRecord,
    ResourceType,
)

__all__ = [
    "RESOURCE_TYPE_BY_OPERATION",
    "SYSTEM_USERNAME",
    "AuditRecord",
    "AuditStatus",
    "OperationType",
    "PersistedAuditRecord",
    "ResourceType",
]
