# broker_audit/infrastructure/database/models.py

import uuid

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Index, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB

from broker_audit.domain.models.audit import (
    CLIENT_IP_MAX_LENGTH,
    CLUSTER_NAME_MAX_LENGTH,
    ERROR_MESSAGE_MAX_LENGTH,
    RESOURCE_NAME_MAX_LENGTH,
    USER_AGENT_MAX_LENGTH,
    USERNAME_MAX_LENGTH,
    AuditStatus,
    OperationType,
)
from broker_audit.infrastructure.database.session import Base

_OPERATION_TYPES = ", ".join(f"'{op.value}'" for op in OperationType)
_STATUSES = ", ".join(f"'{s.value}'" for s in AuditStatus)


class AuditRow(Base):
    """
    ORM model for persisted audit records. Append-only: rows are inserted by the
    writer and deleted by retention; nothing updates them.
    """

    __tablename__ = "audits"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    username = Column(String(USERNAME_MAX_LENGTH), nullable=False, index=True)
    cluster_name = Column(String(CLUSTER_NAME_MAX_LENGTH), nullable=False, index=True)
    operation_type = Column(String(50), nullable=False, index=True)
    resource_type = Column(String(100), nullable=False)
    resource_name = Column(String(RESOURCE_NAME_MAX_LENGTH), nullable=False, index=True)
    resource_details = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)
    status = Column(String(20), nullable=False, index=True)
    error_message = Column(String(ERROR_MESSAGE_MAX_LENGTH), nullable=True)
    client_ip = Column(String(CLIENT_IP_MAX_LENGTH), nullable=True)
    user_agent = Column(String(USER_AGENT_MAX_LENGTH), nullable=True)

    # Capture time: authoritative for display ordering.
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    # Persistence time: drives retention.
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        Index("ix_audits_username_timestamp", "username", "timestamp"),
        Index("ix_audits_cluster_name_timestamp", "cluster_name", "timestamp"),
        CheckConstraint(f"operation_type IN ({_OPERATION_TYPES})", name="ck_audits_operation_type"),
        CheckConstraint(f"status IN ({_STATUSES})", name="ck_audits_status"),
    )
