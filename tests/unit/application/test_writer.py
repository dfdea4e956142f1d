"""AuditWriter: non-blocking submit, drop accounting, batching, retry/backoff, permanent-error isolation, fallback, shutdown."""

import asyncio
import logging
import time
import uuid
from unittest.mock import AsyncMock

import pytest

from broker_audit.application.exceptions import PermanentStoreError, TransientStoreError
from broker_audit.application.writer import AuditWriter
from broker_audit.config.logging import FALLBACK_LOGGER_NAME
from broker_audit.domain.models.audit import PersistedAuditRecord
from broker_audit.observability.metrics import (
    RECORDS_DROPPED,
    RECORDS_PERSISTED,
    RECORDS_SUBMITTED,
    WRITE_RETRIES,
    MetricsCollector,
)


class FakeStore:
    """insert_many that records batches; raises queued failures first, rejects 'poison' records permanently."""

    def __init__(self, failures=None, hang: float = 0.0):
        self.batches: list[list] = []
        self.failures = list(failures or [])
        self.hang = hang

    async def insert_many(self, records):
        if self.hang:
            await asyncio.sleep(self.hang)
        if self.failures:
            raise self.failures.pop(0)
        if any(r.resource_name == "poison" for r in records):
            raise PermanentStoreError("value too long for column")
        self.batches.append(list(records))
        return [PersistedAuditRecord.from_candidate(r, id=uuid.uuid4(), created_at=r.timestamp) for r in records]

    @property
    def stored(self):
        return [r for batch in self.batches for r in batch]


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def sleep():
    return AsyncMock(return_value=None)


@pytest.mark.asyncio
async def test_submitted_record_is_persisted(settings, make_record, metrics):
    store = FakeStore()
    writer = AuditWriter(store, settings, metrics)
    await writer.start()
    assert writer.submit(make_record()) is True
    await writer.flush()
    await writer.stop()

    assert len(store.stored) == 1
    assert writer.health().persisted_count == 1
    assert metrics.counter(RECORDS_PERSISTED) == 1
    by_cluster = metrics.export_metrics()["counters_by_labels"][RECORDS_SUBMITTED]
    assert by_cluster[f"{RECORDS_SUBMITTED}:cluster=prod-1"] == 1


@pytest.mark.asyncio
async def test_saturated_queue_drops_newest_without_raising(make_settings, make_record, metrics):
    writer = AuditWriter(FakeStore(), make_settings(audit_queue_capacity=2), metrics)
    assert writer.submit(make_record(resource_name="q1")) is True
    assert writer.submit(make_record(resource_name="q2")) is True

    assert writer.submit(make_record(resource_name="q3")) is False
    health = writer.health()
    assert health.dropped_count == 1
    assert health.queue_depth == 2
    labels = metrics.export_metrics()["counters_by_labels"][RECORDS_DROPPED]
    assert labels[f"{RECORDS_DROPPED}:category=queue_full"] == 1


@pytest.mark.asyncio
async def test_submit_under_saturation_is_fast(make_settings, make_record):
    writer = AuditWriter(FakeStore(), make_settings(audit_queue_capacity=1), MetricsCollector())
    writer.submit(make_record())
    record = make_record()
    started = time.perf_counter()
    for _ in range(1000):
        writer.submit(record)
    elapsed = time.perf_counter() - started
    assert writer.health().dropped_count == 1000
    assert elapsed / 1000 < 0.001


@pytest.mark.asyncio
async def test_records_are_written_in_batches(settings, make_record):
    store = FakeStore()
    writer = AuditWriter(store, settings, MetricsCollector())
    for i in range(5):
        writer.submit(make_record(resource_name=f"q{i}"))
    await writer.start()
    await writer.flush()
    await writer.stop()

    assert len(store.batches) == 1
    assert [r.resource_name for r in store.batches[0]] == ["q0", "q1", "q2", "q3", "q4"]


@pytest.mark.asyncio
async def test_transient_failures_retried_with_backoff(make_settings, make_record, metrics, sleep):
    settings = make_settings(
        audit_retry_max_attempts=5,
        audit_retry_base_delay_seconds=0.1,
        audit_retry_max_delay_seconds=0.15,
    )
    store = FakeStore(failures=[TransientStoreError("connection reset")] * 3)
    writer = AuditWriter(store, settings, metrics, sleep=sleep)
    await writer.start()
    writer.submit(make_record())
    await writer.flush()
    await writer.stop()

    assert len(store.stored) == 1
    assert [c.args[0] for c in sleep.await_args_list] == [0.1, 0.15, 0.15]
    assert metrics.counter(WRITE_RETRIES) == 3
    assert writer.health().consecutive_failures == 0


@pytest.mark.asyncio
async def test_exhausted_retries_go_to_fallback_log(settings, make_record, sleep, caplog):
    store = FakeStore(failures=[TransientStoreError("db down")] * settings.audit_retry_max_attempts)
    writer = AuditWriter(store, settings, MetricsCollector(), sleep=sleep)
    await writer.start()
    with caplog.at_level(logging.ERROR, logger=FALLBACK_LOGGER_NAME):
        writer.submit(make_record(resource_name="orders"))
        await writer.flush()
    await writer.stop()

    health = writer.health()
    assert health.failed_count == 1
    assert health.consecutive_failures == settings.audit_retry_max_attempts
    fallback = [r for r in caplog.records if r.name == FALLBACK_LOGGER_NAME]
    assert len(fallback) == 1
    assert fallback[0].reason == "retries_exhausted"
    assert fallback[0].audit_record["resource_name"] == "orders"


@pytest.mark.asyncio
async def test_permanent_error_isolates_bad_record(settings, make_record, sleep):
    store = FakeStore()
    writer = AuditWriter(store, settings, MetricsCollector(), sleep=sleep)
    for name in ("good-1", "poison", "good-2"):
        writer.submit(make_record(resource_name=name))
    await writer.start()
    await writer.flush()
    await writer.stop()

    assert sorted(r.resource_name for r in store.stored) == ["good-1", "good-2"]
    assert writer.health().failed_count == 1
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_write_timeout_counts_as_transient(make_settings, make_record, sleep):
    settings = make_settings(audit_write_timeout_seconds=0.05, audit_retry_max_attempts=1)
    writer = AuditWriter(FakeStore(hang=1.0), settings, MetricsCollector(), sleep=sleep)
    await writer.start()
    writer.submit(make_record())
    await writer.flush()
    await writer.stop()

    assert writer.health().failed_count == 1


@pytest.mark.asyncio
async def test_stop_drains_queue_then_rejects(settings, make_record):
    store = FakeStore()
    writer = AuditWriter(store, settings, MetricsCollector())
    await writer.start()
    for i in range(5):
        writer.submit(make_record(resource_name=f"q{i}"))
    await writer.stop(drain=True)

    assert len(store.stored) == 5
    assert writer.running is False
    assert writer.submit(make_record()) is False
    assert writer.health().dropped_count == 1


@pytest.mark.asyncio
async def test_submit_from_worker_thread(settings, make_record):
    store = FakeStore()
    writer = AuditWriter(store, settings, MetricsCollector())
    await writer.start()
    accepted = await asyncio.to_thread(writer.submit, make_record())
    await writer.flush()
    await writer.stop()

    assert accepted is True
    assert len(store.stored) == 1


@pytest.mark.asyncio
async def test_synchronous_mode_bypasses_queue(make_settings, make_record):
    store = FakeStore()
    writer = AuditWriter(store, make_settings(audit_async_processing=False), MetricsCollector())
    await writer.start()
    writer.submit(make_record())
    assert writer.health().queue_depth == 0
    await writer.flush()
    await writer.stop()

    assert len(store.stored) == 1


class StallingStore:
    """Rejects multi-record batches permanently; stores single records, but stalls on 'slow'."""

    def __init__(self):
        self.stored = []
        self.stalled = asyncio.Event()

    async def insert_many(self, records):
        if len(records) > 1:
            raise PermanentStoreError("value too long for column")
        if records[0].resource_name == "slow":
            self.stalled.set()
            await asyncio.Event().wait()
        self.stored.extend(records)
        return [PersistedAuditRecord.from_candidate(r, id=uuid.uuid4(), created_at=r.timestamp) for r in records]


@pytest.mark.asyncio
async def test_shutdown_during_bisection_demotes_only_unsettled_records(settings, make_record, caplog):
    store = StallingStore()
    writer = AuditWriter(store, settings, MetricsCollector())
    for name in ("good-1", "slow", "good-2"):
        writer.submit(make_record(resource_name=name))
    await writer.start()
    await asyncio.wait_for(store.stalled.wait(), timeout=2)

    with caplog.at_level(logging.ERROR, logger=FALLBACK_LOGGER_NAME):
        await writer.stop(drain=False)

    assert [r.resource_name for r in store.stored] == ["good-1"]
    health = writer.health()
    assert health.persisted_count == 1
    assert health.failed_count == 2
    demoted = [r.audit_record["resource_name"] for r in caplog.records if r.name == FALLBACK_LOGGER_NAME]
    assert demoted == ["slow", "good-2"]


@pytest.mark.asyncio
async def test_submit_from_worker_thread_reports_drop_on_full_queue(make_settings, make_record, metrics):
    store = StallingStore()
    writer = AuditWriter(store, make_settings(audit_queue_capacity=1), metrics)
    await writer.start()
    writer.submit(make_record(resource_name="slow"))
    await asyncio.wait_for(store.stalled.wait(), timeout=2)
    assert writer.submit(make_record(resource_name="q2")) is True

    accepted = await asyncio.to_thread(writer.submit, make_record(resource_name="q3"))
    await asyncio.sleep(0)

    assert accepted is False
    assert writer.health().dropped_count == 1
    assert writer.health().queue_depth == 1
    labels = metrics.export_metrics()["counters_by_labels"][RECORDS_DROPPED]
    assert labels[f"{RECORDS_DROPPED}:category=queue_full"] == 1
    await writer.stop(drain=False)
