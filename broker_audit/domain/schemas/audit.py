"""Pydantic schemas for the audit read API and query filters. No DB or infrastructure."""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from broker_audit.domain.models.audit import (
    CLIENT_IP_MAX_LENGTH,
    CLUSTER_NAME_MAX_LENGTH,
    RESOURCE_NAME_MAX_LENGTH,
    USERNAME_MAX_LENGTH,
    AuditStatus,
    OperationType,
    PersistedAuditRecord,
)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Query filter
# ---------------------------------------------------------------------------

class AuditFilter(_CamelModel):
    """
    Filter for audit searches. Every field is optional; an absent or
    blank field means "no constraint". All present fields are ANDed.
    """

    username: Optional[str] = Field(None, max_length=USERNAME_MAX_LENGTH, description="Substring match")
    cluster_name: Optional[str] = Field(
        None, max_length=CLUSTER_NAME_MAX_LENGTH, description="Exact match unless configured otherwise"
    )
    operation_type: Optional[OperationType] = None
    resource_type: Optional[str] = Field(
        None, max_length=100, description="Exact match; comma-separated list matches any of them"
    )
    resource_name: Optional[str] = Field(None, max_length=RESOURCE_NAME_MAX_LENGTH, description="Substring match")
    status: Optional[AuditStatus] = None
    start_time: Optional[datetime] = Field(None, description="Inclusive lower bound on timestamp")
    end_time: Optional[datetime] = Field(None, description="Inclusive upper bound on timestamp")
    client_ip: Optional[str] = Field(None, max_length=CLIENT_IP_MAX_LENGTH, description="Exact match")

    @field_validator("username", "cluster_name", "resource_type", "resource_name", "client_ip")
    @classmethod
    def blank_means_unset(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    def resource_types(self) -> List[str]:
        if not self.resource_type:
            return []
        return [t.strip() for t in self.resource_type.split(",") if t.strip()]


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class AuditRecordResponse(_CamelModel):
    """Read view of one persisted audit record."""

    id: uuid.UUID
    username: str
    cluster_name: str
    operation_type: OperationType
    resource_type: str
    resource_name: str
    resource_details: Optional[Dict[str, Any]] = None
    status: AuditStatus
    error_message: Optional[str] = None
    timestamp: datetime
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: PersistedAuditRecord) -> "AuditRecordResponse":
        return cls(
            id=record.id,
            username=record.username,
            cluster_name=record.cluster_name,
            operation_type=record.operation_type,
            resource_type=record.resource_type,
            resource_name=record.resource_name,
            resource_details=dict(record.resource_details) if record.resource_details is not None else None,
            status=record.status,
            error_message=record.error_message,
            timestamp=record.timestamp,
            client_ip=record.client_ip,
            user_agent=record.user_agent,
            created_at=record.created_at,
        )


class AuditPageResponse(_CamelModel):
    """Page envelope for audit searches."""

    items: List[AuditRecordResponse]
    page: int
    page_size: int
    total_items: int
    total_pages: int
    has_next: bool
    has_previous: bool


class AuditConfigurationResponse(_CamelModel):
    audit_enabled: bool
    async_processing: bool
    queue_capacity: int
    worker_count: int
    batch_size: int
    retry_max_attempts: int
    retention_enabled: bool
    retention_max_age_days: Optional[int] = None
    retention_max_records: Optional[int] = None
    retention_interval_seconds: float
    max_page_size: int
