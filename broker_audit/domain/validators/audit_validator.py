"""Validators for audit record invariants. Pure functions, no infrastructure or DB access."""

import json
from typing import Any, Mapping, Optional

from broker_audit.domain.exceptions import (
    AuditValidationError,
    IncompatibleResourceTypeError,
    InvalidResourceDetailsError,
)
from broker_audit.domain.models.audit import (
    CLIENT_IP_MAX_LENGTH,
    CLUSTER_NAME_MAX_LENGTH,
    ERROR_MESSAGE_MAX_LENGTH,
    RESOURCE_NAME_MAX_LENGTH,
    RESOURCE_TYPE_BY_OPERATION,
    USER_AGENT_MAX_LENGTH,
    USERNAME_MAX_LENGTH,
    AuditRecord,
    AuditStatus,
    OperationType,
)


def _require_text(value: Optional[str], field: str) -> None:
    if value is None or not str(value).strip():
        raise AuditValidationError(f"{field} must not be empty")


def validate_resource_type(operation_type: OperationType, resource_type: str) -> None:
    """Enforce the operation/resource compatibility table."""
    expected = RESOURCE_TYPE_BY_OPERATION.get(operation_type)
    if expected is None:
        raise IncompatibleResourceTypeError(f"{operation_type!r} is not an audited operation")
    if resource_type != expected.value:
        raise IncompatibleResourceTypeError(
            f"{operation_type.value} must be recorded with resource_type "
            f"'{expected.value}', got '{resource_type}'"
        )


def validate_status_error(status: AuditStatus, error_message: Optional[str]) -> None:
    """SUCCESS never carries an error message; FAILURE and PARTIAL always do."""
    has_error = bool(error_message and error_message.strip())
    if status == AuditStatus.SUCCESS and error_message is not None:
        raise AuditValidationError("error_message must be absent when status is SUCCESS")
    if status != AuditStatus.SUCCESS and not has_error:
        raise AuditValidationError(f"error_message is required when status is {status.value}")
    if error_message is not None and len(error_message) > ERROR_MESSAGE_MAX_LENGTH:
        raise AuditValidationError(f"error_message exceeds {ERROR_MESSAGE_MAX_LENGTH} characters")


def validate_resource_details(details: Optional[Mapping[str, Any]]) -> None:
    """Details are optional, but when present must be a JSON-serializable mapping."""
    if details is None:
        return
    if not isinstance(details, Mapping):
        raise InvalidResourceDetailsError("resource_details must be a mapping")
    try:
        json.dumps(dict(details))
    except (TypeError, ValueError) as e:
        raise InvalidResourceDetailsError("resource_details must be JSON-serializable") from e


def validate_audit_record(record: AuditRecord) -> None:
    """
    Validate every invariant of a candidate record.
    Raises AuditValidationError (or a subclass) on the first violation.
    """
    _require_text(record.username, "username")
    _require_text(record.cluster_name, "cluster_name")
    _require_text(record.resource_name, "resource_name")
    if record.timestamp.tzinfo is None:
        raise AuditValidationError("timestamp must be timezone-aware")
    if not isinstance(record.operation_type, OperationType):
        raise AuditValidationError("operation_type must be an OperationType")
    validate_resource_type(record.operation_type, record.resource_type)
    validate_status_error(record.status, record.error_message)
    validate_resource_details(record.resource_details)
    if len(record.username) > USERNAME_MAX_LENGTH:
        raise AuditValidationError(f"username exceeds {USERNAME_MAX_LENGTH} characters")
    if len(record.cluster_name) > CLUSTER_NAME_MAX_LENGTH:
        raise AuditValidationError(f"cluster_name exceeds {CLUSTER_NAME_MAX_LENGTH} characters")
    if len(record.resource_name) > RESOURCE_NAME_MAX_LENGTH:
        raise AuditValidationError(f"resource_name exceeds {RESOURCE_NAME_MAX_LENGTH} characters")
    if record.client_ip is not None and len(record.client_ip) > CLIENT_IP_MAX_LENGTH:
        raise AuditValidationError(f"client_ip exceeds {CLIENT_IP_MAX_LENGTH} characters")
    if record.user_agent is not None and len(record.user_agent) > USER_AGENT_MAX_LENGTH:
        raise AuditValidationError(f"user_agent exceeds {USER_AGENT_MAX_LENGTH} characters")
