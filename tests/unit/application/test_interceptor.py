"""OperationInterceptor: one record per call, outcome mapping, degraded capture, decorator, sanitising."""

import asyncio
from unittest.mock import MagicMock

import pytest

from broker_audit.application.interceptor import (
    MASK,
    OperationContext,
    OperationInterceptor,
    OperationOutcome,
    PartialOperationError,
    audited,
    sanitize_parameters,
)
from broker_audit.core.context import client_ip_ctx, username_ctx
from broker_audit.domain.models.audit import (
    CLUSTER_NAME_MAX_LENGTH,
    SYSTEM_USERNAME,
    USERNAME_MAX_LENGTH,
    AuditStatus,
    OperationType,
)
from broker_audit.domain.schemas.audit import AuditFilter
from broker_audit.observability.metrics import CAPTURE_ERRORS, MetricsCollector


@pytest.fixture
def writer():
    w = MagicMock()
    w.submit = MagicMock(return_value=True)
    return w


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def interceptor(writer, metrics, clock):
    return OperationInterceptor(writer, metrics=metrics, clock=clock)


def _ctx(**overrides) -> OperationContext:
    values = {
        "operation_type": OperationType.CREATE_QUEUE,
        "cluster_name": "prod-1",
        "resource_name": "orders",
        "principal": "alice",
    }
    values.update(overrides)
    return OperationContext(**values)


def _submitted(writer):
    assert writer.submit.call_count == 1
    return writer.submit.call_args.args[0]


def test_capture_success_submits_one_record(interceptor, writer, base_time):
    interceptor.capture(_ctx(parameters={"durable": True}), OperationOutcome.success())
    record = _submitted(writer)
    assert record.status == AuditStatus.SUCCESS
    assert record.error_message is None
    assert record.resource_type == "queue"
    assert record.username == "alice"
    assert record.timestamp == base_time
    assert record.resource_details == {"durable": True}


@pytest.mark.asyncio
async def test_run_records_failure_and_reraises(interceptor, writer):
    async def create_queue():
        raise RuntimeError("PRECONDITION_FAILED - inequivalent arg 'durable'\ntraceback line")

    with pytest.raises(RuntimeError):
        await interceptor.run(_ctx(), create_queue)

    record = _submitted(writer)
    assert record.status == AuditStatus.FAILURE
    assert record.error_message == "PRECONDITION_FAILED - inequivalent arg 'durable'"
    assert "executionTimeMs" in record.resource_details


@pytest.mark.asyncio
async def test_run_returns_result_and_records_success(interceptor, writer):
    async def purge():
        return {"messagesPurged": 12}

    result = await interceptor.run(
        _ctx(operation_type=OperationType.PURGE_QUEUE),
        purge,
        outcome_from_result=lambda r: OperationOutcome.success(details=r),
    )
    assert result == {"messagesPurged": 12}
    record = _submitted(writer)
    assert record.status == AuditStatus.SUCCESS
    assert record.resource_details["messagesPurged"] == 12


@pytest.mark.asyncio
async def test_partial_operation_recorded_as_partial(interceptor, writer):
    async def move():
        raise PartialOperationError("shovel cleanup failed", completed={"messagesMoved": 40})

    context = _ctx(
        operation_type=OperationType.MOVE_MESSAGES_QUEUE,
        parameters={"destinationQueue": "orders.retry"},
    )
    with pytest.raises(PartialOperationError):
        await interceptor.run(context, move)

    record = _submitted(writer)
    assert record.status == AuditStatus.PARTIAL
    assert record.error_message == "shovel cleanup failed"
    assert record.resource_type == "shovels"
    assert record.resource_details["completed"] == {"messagesMoved": 40}
    assert "sourceQueue" not in record.resource_details


@pytest.mark.asyncio
async def test_cancelled_operation_recorded_as_failure(interceptor, writer):
    async def slow():
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await interceptor.run(_ctx(), slow)

    record = _submitted(writer)
    assert record.status == AuditStatus.FAILURE
    assert record.error_message == "Operation cancelled"


def test_malformed_context_still_produces_one_record(interceptor, writer, metrics):
    interceptor.capture(_ctx(cluster_name="", resource_name=""), OperationOutcome.failure("nope"))
    record = _submitted(writer)
    assert record.cluster_name == "unknown"
    assert record.resource_name == "unknown"
    assert record.status == AuditStatus.FAILURE
    assert "captureError" in record.resource_details
    assert metrics.counter(CAPTURE_ERRORS) == 1


def test_long_cluster_and_principal_clipped_to_column_width(interceptor, writer, metrics):
    interceptor.capture(_ctx(cluster_name="c" * 300, principal="u" * 150), OperationOutcome.success())
    record = _submitted(writer)
    assert record.cluster_name == "c" * CLUSTER_NAME_MAX_LENGTH
    assert record.username == "u" * USERNAME_MAX_LENGTH
    assert "captureError" not in (record.resource_details or {})
    assert metrics.counter(CAPTURE_ERRORS) == 0


@pytest.mark.asyncio
async def test_clipped_cluster_name_is_persisted_and_findable(interceptor, writer, sqlite_store):
    interceptor.capture(_ctx(cluster_name="c" * 300), OperationOutcome.success())
    await sqlite_store.insert_many([_submitted(writer)])

    exact = AuditFilter(cluster_name="c" * CLUSTER_NAME_MAX_LENGTH)
    assert await sqlite_store.count(exact, case_sensitive=True, cluster_name_substring=False) == 1


def test_writer_failure_never_reaches_caller(interceptor, writer):
    writer.submit.side_effect = RuntimeError("writer exploded")
    interceptor.capture(_ctx(), OperationOutcome.success())
    assert writer.submit.call_count == 1


def test_principal_and_client_ip_fall_back_to_request_context(interceptor, writer):
    user_token = username_ctx.set("bob")
    ip_token = client_ip_ctx.set("10.0.0.7")
    try:
        interceptor.capture(_ctx(principal=None), OperationOutcome.success())
    finally:
        username_ctx.reset(user_token)
        client_ip_ctx.reset(ip_token)
    record = _submitted(writer)
    assert record.username == "bob"
    assert record.client_ip == "10.0.0.7"


def test_no_principal_records_system(interceptor, writer):
    interceptor.capture(_ctx(principal=None), OperationOutcome.success())
    assert _submitted(writer).username == SYSTEM_USERNAME


def test_disabled_interceptor_records_nothing(writer):
    interceptor = OperationInterceptor(writer, enabled=False)
    interceptor.capture(_ctx(), OperationOutcome.success())
    writer.submit.assert_not_called()


def test_sanitize_masks_secrets_and_summarises_large_collections():
    out = sanitize_parameters(
        {
            "password": "hunter2",
            "apiToken": "abc",
            "headers": {"Authorization": "Bearer x", "x-trace": "1"},
            "ids": list(range(60)),
            "routingKey": "orders.#",
        }
    )
    assert out["password"] == MASK
    assert out["apiToken"] == MASK
    assert out["headers"] == {"Authorization": MASK, "x-trace": "1"}
    assert out["ids"] == "Collection[size=60]"
    assert out["routingKey"] == "orders.#"


@pytest.mark.asyncio
async def test_audited_decorator_records_call(interceptor, writer):
    @audited(
        interceptor,
        OperationType.DELETE_EXCHANGE,
        lambda cluster, name, **kw: {"cluster_name": cluster, "resource_name": name, "principal": "ops"},
    )
    async def delete_exchange(cluster, name, if_unused=False):
        return True

    assert await delete_exchange("prod-1", "events", if_unused=True) is True
    record = _submitted(writer)
    assert record.operation_type == OperationType.DELETE_EXCHANGE
    assert record.resource_type == "exchange"
    assert record.resource_name == "events"
    assert record.username == "ops"


@pytest.mark.asyncio
async def test_audited_decorator_survives_broken_context_builder(interceptor, writer):
    def broken(*args, **kwargs):
        raise KeyError("cluster")

    @audited(lambda: interceptor, OperationType.CREATE_EXCHANGE, broken)
    async def create_exchange():
        return "ok"

    assert await create_exchange() == "ok"
    record = _submitted(writer)
    assert record.cluster_name == "unknown"
    assert record.status == AuditStatus.SUCCESS
