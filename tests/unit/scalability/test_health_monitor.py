"""HealthMonitor: store reachability, writer saturation and failure streaks, retention state."""

import pytest

from broker_audit.application.writer import WriterHealth
from broker_audit.scalability.health_monitor import HealthMonitor


def _writer(queue_depth=0, capacity=100, consecutive_failures=0) -> WriterHealth:
    return WriterHealth(
        queue_depth=queue_depth,
        queue_capacity=capacity,
        dropped_count=0,
        failed_count=0,
        persisted_count=10,
        consecutive_failures=consecutive_failures,
        running=True,
    )


async def _ok():
    return None


@pytest.mark.asyncio
async def test_system_health_empty():
    out = await HealthMonitor().system_health()
    assert out["store"]["status"] == "unknown"
    assert out["redis"]["status"] == "disabled"
    assert out["status"] == "ok"


@pytest.mark.asyncio
async def test_system_health_with_checks():
    monitor = HealthMonitor(
        store_health=_ok,
        redis_health=_ok,
        writer_health=_writer,
        retention_status=lambda: {"state": "idle"},
    )
    out = await monitor.system_health()
    assert out["store"]["status"] == "ok"
    assert out["redis"]["status"] == "ok"
    assert out["writer"]["status"] == "ok"
    assert out["writer"]["persisted_count"] == 10
    assert out["retention"] == {"state": "idle"}
    assert out["status"] == "ok"


@pytest.mark.asyncio
async def test_degraded_when_store_down():
    async def store_fail():
        raise RuntimeError("connection refused")

    out = await HealthMonitor(store_health=store_fail).system_health()
    assert out["store"]["status"] == "error"
    assert out["status"] == "degraded"


@pytest.mark.asyncio
async def test_redis_failure_is_not_degraded():
    async def redis_fail():
        raise ConnectionError("redis down")

    out = await HealthMonitor(store_health=_ok, redis_health=redis_fail).system_health()
    assert out["redis"]["status"] == "error"
    assert out["status"] == "ok"


@pytest.mark.asyncio
async def test_degraded_when_queue_nearly_full():
    out = await HealthMonitor(writer_health=lambda: _writer(queue_depth=95)).system_health()
    assert out["writer"]["status"] == "saturated"
    assert out["status"] == "degraded"


@pytest.mark.asyncio
async def test_degraded_after_failure_streak():
    monitor = HealthMonitor(writer_health=lambda: _writer(consecutive_failures=5), failure_threshold=5)
    out = await monitor.system_health()
    assert out["writer"]["status"] == "failing"
    assert out["status"] == "degraded"
