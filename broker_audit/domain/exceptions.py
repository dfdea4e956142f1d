"""Domain-specific exceptions. Pure domain layer, no infrastructure."""


class DomainError(Exception):
    """Base for all domain-layer errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class AuditValidationError(DomainError):
    """Raised when an audit record violates a model invariant."""


class IncompatibleResourceTypeError(AuditValidationError):
    """Raised when operation_type and resource_type are not a known pairing."""


class InvalidResourceDetailsError(AuditValidationError):
    """Raised when resource_details is not a JSON-serializable mapping."""
