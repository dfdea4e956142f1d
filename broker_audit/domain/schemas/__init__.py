"""Pydantic schemas for the audit read API."""

from broker_audit.domain.schemas.audit import (
    AuditConfigurationResponse,
    AuditFilter,
    AuditPageResponse,
    AuditRecordResponse,
)

__all__ = [
    "AuditConfigurationResponse",
    "AuditFilter",
    "AuditPageResponse",
    "AuditRecordResponse",
]
