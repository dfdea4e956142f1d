"""Domain validators. Pure functions."""

from broker_audit.domain.validators.audit_validator import validate_audit_record

__all__ = ["validate_audit_record"]
