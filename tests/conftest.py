"""Shared fixtures: audit record factory, settings factory, in-memory SQLite store with a controllable clock."""

from datetime import datetime, timedelta, timezone

import pytest

from broker_audit.config.settings import AuditSettings
from broker_audit.domain.models.audit import (
    RESOURCE_TYPE_BY_OPERATION,
    AuditRecord,
    AuditStatus,
    OperationType,
)
from broker_audit.infrastructure.database.audit_store_db import SqlAlchemyAuditStore
from broker_audit.infrastructure.database.session import build_engine, build_session_factory, create_schema

BASE_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _record(
    operation_type: OperationType = OperationType.CREATE_QUEUE,
    status: AuditStatus = AuditStatus.SUCCESS,
    username: str = "alice",
    cluster_name: str = "prod-1",
    resource_name: str = "orders",
    timestamp: datetime = BASE_TIME,
    error_message: str | None = None,
    resource_details: dict | None = None,
    client_ip: str | None = None,
) -> AuditRecord:
    if status != AuditStatus.SUCCESS and error_message is None:
        error_message = "boom"
    return AuditRecord(
        timestamp=timestamp,
        username=username,
        cluster_name=cluster_name,
        operation_type=operation_type,
        resource_type=RESOURCE_TYPE_BY_OPERATION[operation_type].value,
        resource_name=resource_name,
        status=status,
        resource_details=resource_details,
        error_message=error_message,
        client_ip=client_ip,
    )


def _settings(**overrides) -> AuditSettings:
    values = {
        "environment": "test",
        "database_url": "sqlite+aiosqlite:///:memory:",
        "redis_url": None,
        "audit_queue_capacity": 100,
        "audit_worker_count": 1,
        "audit_batch_size": 10,
        "audit_retry_max_attempts": 3,
        "audit_retry_base_delay_seconds": 0.0,
        "audit_retry_max_delay_seconds": 0.0,
        "audit_write_timeout_seconds": 1.0,
        "audit_shutdown_timeout_seconds": 2.0,
        "retention_initial_delay_seconds": 0.0,
        "log_level": "WARNING",
    }
    values.update(overrides)
    return AuditSettings(**values)


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime = BASE_TIME) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeLockBackend:
    """Dict-backed stand-in for the Redis operations DistributedLock uses. Records TTLs."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttl: dict[str, int] = {}

    async def set_nx_ex(self, key: str, value: str, ttl: int) -> bool:
        if key in self.store:
            return False
        self.store[key] = value
        self.ttl[key] = ttl
        return True

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def delete_if_value(self, key: str, value: str) -> bool:
        if self.store.get(key) != value:
            return False
        del self.store[key]
        self.ttl.pop(key, None)
        return True


@pytest.fixture
def base_time():
    return BASE_TIME


@pytest.fixture
def make_record():
    """Factory for valid candidate records; override any field by keyword."""
    return _record


@pytest.fixture
def make_settings():
    """Factory for AuditSettings tuned for fast tests; override any field by keyword."""
    return _settings


@pytest.fixture
def settings():
    return _settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def db_engine(settings):
    engine = build_engine(settings)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sqlite_store(db_engine, clock):
    return SqlAlchemyAuditStore(build_session_factory(db_engine), clock=clock)


@pytest.fixture
def lock_backend():
    return FakeLockBackend()
