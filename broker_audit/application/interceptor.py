"""
Operation interceptor: turns one mutating call into exactly one audit record.

Call sites either wrap the management-API call with run(context, thunk), decorate
it with @audited(...), or report the outcome themselves through capture(). None of
these ever raise because of the audit pipeline, and none wait for persistence.
"""

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar, Union

from broker_audit.application.writer import AuditWriter
from broker_audit.core.context import client_ip_ctx, user_agent_ctx, username_ctx
from broker_audit.domain.models.audit import (
    CLIENT_IP_MAX_LENGTH,
    CLUSTER_NAME_MAX_LENGTH,
    ERROR_MESSAGE_MAX_LENGTH,
    RESOURCE_NAME_MAX_LENGTH,
    RESOURCE_TYPE_BY_OPERATION,
    SYSTEM_USERNAME,
    USER_AGENT_MAX_LENGTH,
    USERNAME_MAX_LENGTH,
    AuditRecord,
    AuditStatus,
    OperationType,
)
from broker_audit.domain.validators.audit_validator import validate_audit_record
from broker_audit.observability.metrics import CAPTURE_ERRORS, MetricsCollector

T = TypeVar("T")

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"
SENSITIVE_KEYS = ("password", "secret", "token", "credential", "authorization", "api_key")
MASK = "****"
_MAX_DEPTH = 3
_MAX_COLLECTION_ITEMS = 50
_MAX_STRING_LENGTH = 1000


class PartialOperationError(Exception):
    """
    Raised by a multi-step operation that completed some steps but not all
    (e.g. messages transferred but the temporary shovel not cleaned up).
    `completed` describes what did finish and is recorded in resource_details.
    """

    def __init__(self, message: str, completed: Optional[Mapping[str, Any]] = None) -> None:
        self.message = message
        self.completed = dict(completed) if completed else {}
        super().__init__(message)


@dataclass(frozen=True)
class OperationContext:
    """What is being attempted, by whom, against which cluster."""

    operation_type: OperationType
    cluster_name: str
    resource_name: str
    resource_type: Optional[str] = None  # defaults to the type paired with operation_type
    principal: Optional[str] = None
    parameters: Optional[Mapping[str, Any]] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    started_at: Optional[datetime] = None


@dataclass(frozen=True)
class OperationOutcome:
    """How the wrapped call ended. Build with success(), failure() or partial()."""

    status: AuditStatus
    error_message: Optional[str] = None
    details: Optional[Mapping[str, Any]] = None

    @classmethod
    def success(cls, details: Optional[Mapping[str, Any]] = None) -> "OperationOutcome":
        return cls(status=AuditStatus.SUCCESS, details=details)

    @classmethod
    def failure(
        cls,
        error: Union[BaseException, str],
        details: Optional[Mapping[str, Any]] = None,
    ) -> "OperationOutcome":
        message = error if isinstance(error, str) else user_facing_message(error)
        return cls(status=AuditStatus.FAILURE, error_message=message or "Operation failed", details=details)

    @classmethod
    def partial(cls, message: str, completed: Optional[Mapping[str, Any]] = None) -> "OperationOutcome":
        details = {"completed": dict(completed)} if completed else None
        return cls(status=AuditStatus.PARTIAL, error_message=message or "Operation partially completed", details=details)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "OperationOutcome":
        if isinstance(exc, PartialOperationError):
            return cls.partial(exc.message, exc.completed)
        if isinstance(exc, asyncio.CancelledError):
            return cls.failure("Operation cancelled")
        return cls.failure(exc)


def user_facing_message(exc: BaseException) -> str:
    """First line of str(exc), falling back to the exception class name. Never a traceback."""
    text = str(exc).strip()
    if not text:
        return type(exc).__name__
    return text.splitlines()[0][:ERROR_MESSAGE_MAX_LENGTH]


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in SENSITIVE_KEYS)


def sanitize_value(value: Any, depth: int = 0) -> Any:
    """Reduce an arbitrary parameter value to something small and JSON-serializable."""
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return value[:_MAX_STRING_LENGTH]
    if isinstance(value, Enum):
        return sanitize_value(value.value, depth)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        if depth >= _MAX_DEPTH:
            return f"Map[size={len(value)}]"
        return sanitize_parameters(value, depth + 1)
    if isinstance(value, (list, tuple, set, frozenset)):
        if depth >= _MAX_DEPTH or len(value) > _MAX_COLLECTION_ITEMS:
            return f"Collection[size={len(value)}]"
        return [sanitize_value(v, depth + 1) for v in value]
    return f"{type(value).__name__}[{str(value)[:200]}]"


def sanitize_parameters(parameters: Mapping[str, Any], depth: int = 0) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in parameters.items():
        key = str(key)
        out[key] = MASK if _is_sensitive(key) else sanitize_value(value, depth)
    return out


def _clip(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value[:limit] or None


class OperationInterceptor:
    """
    Builds audit records from call context + outcome and submits them to the writer.
    Bookkeeping is bounded: parameter sanitising plus one non-blocking enqueue.
    """

    def __init__(
        self,
        writer: AuditWriter,
        enabled: bool = True,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._writer = writer
        self._enabled = enabled
        self._metrics = metrics or MetricsCollector()
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self._enabled

    def capture(
        self,
        context: OperationContext,
        outcome: OperationOutcome,
        elapsed_ms: Optional[float] = None,
    ) -> None:
        """Record one attempted operation. Never raises; the return value is meaningless."""
        if not self._enabled:
            return
        try:
            record = self.build_record(context, outcome, elapsed_ms)
        except Exception as e:
            self._metrics.increment(CAPTURE_ERRORS)
            logger.warning(
                "audit_capture_failed",
                exc_info=True,
                extra={"operation_type": getattr(context, "operation_type", None), "error": str(e)},
            )
            record = self._degraded_record(context, outcome, e)
            if record is None:
                return
        try:
            self._writer.submit(record)
        except Exception:
            logger.exception("audit_submit_failed")

    def build_record(
        self,
        context: OperationContext,
        outcome: OperationOutcome,
        elapsed_ms: Optional[float] = None,
    ) -> AuditRecord:
        """Derive and validate the candidate record. Raises on malformed context."""
        operation_type = OperationType(context.operation_type)
        resource_type = context.resource_type or RESOURCE_TYPE_BY_OPERATION[operation_type].value

        details: Dict[str, Any] = {}
        if context.parameters:
            details.update(sanitize_parameters(context.parameters))
        if outcome.details:
            details.update(sanitize_parameters(outcome.details))
        if elapsed_ms is not None:
            details["executionTimeMs"] = round(elapsed_ms, 3)

        record = AuditRecord(
            timestamp=context.started_at or self._clock(),
            username=_clip(context.principal or username_ctx.get(), USERNAME_MAX_LENGTH) or SYSTEM_USERNAME,
            cluster_name=_clip(context.cluster_name, CLUSTER_NAME_MAX_LENGTH),
            operation_type=operation_type,
            resource_type=resource_type,
            resource_name=_clip(context.resource_name, RESOURCE_NAME_MAX_LENGTH) or UNKNOWN,
            status=outcome.status,
            resource_details=details or None,
            error_message=_clip(outcome.error_message, ERROR_MESSAGE_MAX_LENGTH)
            if outcome.status != AuditStatus.SUCCESS
            else None,
            client_ip=_clip(context.client_ip or client_ip_ctx.get(), CLIENT_IP_MAX_LENGTH),
            user_agent=_clip(context.user_agent or user_agent_ctx.get(), USER_AGENT_MAX_LENGTH),
        )
        validate_audit_record(record)
        return record

    def _degraded_record(
        self,
        context: OperationContext,
        outcome: OperationOutcome,
        error: Exception,
    ) -> Optional[AuditRecord]:
        """Minimal record for a context that failed to build; keeps the one-record-per-call guarantee."""
        try:
            operation_type = OperationType(context.operation_type)
            status = outcome.status if isinstance(outcome.status, AuditStatus) else AuditStatus(outcome.status)
            error_message = None
            if status != AuditStatus.SUCCESS:
                error_message = _clip(outcome.error_message, ERROR_MESSAGE_MAX_LENGTH) or "Operation failed"
            return AuditRecord(
                timestamp=self._clock(),
                username=_clip(context.principal, USERNAME_MAX_LENGTH) or SYSTEM_USERNAME,
                cluster_name=_clip(context.cluster_name, CLUSTER_NAME_MAX_LENGTH) or UNKNOWN,
                operation_type=operation_type,
                resource_type=RESOURCE_TYPE_BY_OPERATION[operation_type].value,
                resource_name=_clip(context.resource_name, RESOURCE_NAME_MAX_LENGTH) or UNKNOWN,
                status=status,
                resource_details={"captureError": user_facing_message(error)},
                error_message=error_message,
            )
        except Exception:
            logger.error("audit_capture_abandoned", exc_info=True)
            return None

    async def run(
        self,
        context: OperationContext,
        thunk: Callable[[], Awaitable[T]],
        outcome_from_result: Optional[Callable[[T], OperationOutcome]] = None,
    ) -> T:
        """
        Await thunk(), record its outcome, and return its result or re-raise its
        exception unchanged. outcome_from_result maps results that signal failure
        without raising (e.g. a client returning ok=False).
        """
        if context.started_at is None:
            context = replace(context, started_at=self._clock())
        t0 = time.perf_counter()
        try:
            result = await thunk()
        except BaseException as exc:
            self.capture(context, OperationOutcome.from_exception(exc), (time.perf_counter() - t0) * 1000)
            raise
        elapsed_ms = (time.perf_counter() - t0) * 1000
        outcome = OperationOutcome.success()
        if outcome_from_result is not None:
            try:
                outcome = outcome_from_result(result)
            except Exception:
                logger.warning("audit_outcome_mapping_failed", exc_info=True)
        self.capture(context, outcome, elapsed_ms)
        return result


InterceptorRef = Union[OperationInterceptor, Callable[[], Optional[OperationInterceptor]]]


def audited(
    interceptor: InterceptorRef,
    operation_type: OperationType,
    build_context: Callable[..., Mapping[str, Any]],
):
    """
    Decorator for async mutating call sites.

    build_context receives the wrapped function's arguments and returns the
    OperationContext fields (cluster_name, resource_name, parameters, ...).
    interceptor may be a zero-argument callable so it can be resolved at call time.
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            target = interceptor if isinstance(interceptor, OperationInterceptor) else interceptor()
            if target is None:
                return await func(*args, **kwargs)
            try:
                fields = dict(build_context(*args, **kwargs))
                fields.pop("operation_type", None)
                context = OperationContext(operation_type=operation_type, **fields)
            except Exception:
                logger.warning("audit_context_build_failed", exc_info=True, extra={"function": func.__qualname__})
                context = OperationContext(operation_type=operation_type, cluster_name=UNKNOWN, resource_name=UNKNOWN)
            return await target.run(context, lambda: func(*args, **kwargs))

        return wrapper

    return decorator
