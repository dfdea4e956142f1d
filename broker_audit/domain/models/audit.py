"""Domain model for audit records. Pure business semantics; no ORM or infrastructure."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

SYSTEM_USERNAME = "system"


class OperationType(str, Enum):
    """Closed set of state-mutating operations that are audited. Reads are never audited."""

    CREATE_EXCHANGE = "CREATE_EXCHANGE"
    DELETE_EXCHANGE = "DELETE_EXCHANGE"
    CREATE_QUEUE = "CREATE_QUEUE"
    DELETE_QUEUE = "DELETE_QUEUE"
    PURGE_QUEUE = "PURGE_QUEUE"
    CREATE_BINDING_EXCHANGE = "CREATE_BINDING_EXCHANGE"
    CREATE_BINDING_QUEUE = "CREATE_BINDING_QUEUE"
    DELETE_BINDING = "DELETE_BINDING"
    PUBLISH_MESSAGE_EXCHANGE = "PUBLISH_MESSAGE_EXCHANGE"
    PUBLISH_MESSAGE_QUEUE = "PUBLISH_MESSAGE_QUEUE"
    MOVE_MESSAGES_QUEUE = "MOVE_MESSAGES_QUEUE"


class AuditStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    PARTIAL = "PARTIAL"  # some steps completed, others did not


class ResourceType(str, Enum):
    EXCHANGE = "exchange"
    QUEUE = "queue"
    BINDING = "binding"
    MESSAGE = "message"
    SHOVELS = "shovels"


# operation_type -> the only resource_type it may be recorded against
RESOURCE_TYPE_BY_OPERATION: Dict[OperationType, ResourceType] = {
    OperationType.CREATE_EXCHANGE: ResourceType.EXCHANGE,
    OperationType.DELETE_EXCHANGE: ResourceType.EXCHANGE,
    OperationType.CREATE_QUEUE: ResourceType.QUEUE,
    OperationType.DELETE_QUEUE: ResourceType.QUEUE,
    OperationType.PURGE_QUEUE: ResourceType.QUEUE,
    OperationType.CREATE_BINDING_EXCHANGE: ResourceType.BINDING,
    OperationType.CREATE_BINDING_QUEUE: ResourceType.BINDING,
    OperationType.DELETE_BINDING: ResourceType.BINDING,
    OperationType.PUBLISH_MESSAGE_EXCHANGE: ResourceType.MESSAGE,
    OperationType.PUBLISH_MESSAGE_QUEUE: ResourceType.MESSAGE,
    OperationType.MOVE_MESSAGES_QUEUE: ResourceType.SHOVELS,
}

USERNAME_MAX_LENGTH = 100
CLUSTER_NAME_MAX_LENGTH = 200
ERROR_MESSAGE_MAX_LENGTH = 1000
RESOURCE_NAME_MAX_LENGTH = 500
USER_AGENT_MAX_LENGTH = 500
CLIENT_IP_MAX_LENGTH = 45


@dataclass(frozen=True)
class AuditRecord:
    """
    Candidate audit record as captured by the interceptor, before persistence.
    Immutable: corrections are new records, never edits.
    """

    timestamp: datetime
    username: str
    cluster_name: str
    operation_type: OperationType
    resource_type: str
    resource_name: str
    status: AuditStatus
    resource_details: Optional[Mapping[str, Any]] = None
    error_message: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Structured representation for JSON logging (fallback sink)."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "username": self.username,
            "cluster_name": self.cluster_name,
            "operation_type": self.operation_type.value,
            "resource_type": self.resource_type,
            "resource_name": self.resource_name,
            "resource_details": dict(self.resource_details) if self.resource_details is not None else None,
            "status": self.status.value,
            "error_message": self.error_message,
            "client_ip": self.client_ip,
            "user_agent": self.user_agent,
        }


@dataclass(frozen=True)
class PersistedAuditRecord(AuditRecord):
    """Audit record as stored: id and created_at are assigned at persistence time."""

    id: uuid.UUID = field(default_factory=uuid.uuid4)
    created_at: Optional[datetime] = None

    @classmethod
    def from_candidate(
        cls,
        record: AuditRecord,
        *,
        id: uuid.UUID,
        created_at: datetime,
    ) -> "PersistedAuditRecord":
        return cls(
            timestamp=record.timestamp,
            username=record.username,
            cluster_name=record.cluster_name,
            operation_type=record.operation_type,
            resource_type=record.resource_type,
            resource_name=record.resource_name,
            status=record.status,
            resource_details=record.resource_details,
            error_message=record.error_message,
            client_ip=record.client_ip,
            user_agent=record.user_agent,
            id=id,
            created_at=created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["id"] = str(self.id)
        out["created_at"] = self.created_at.isoformat() if self.created_at else None
        return out
