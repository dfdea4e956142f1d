"""Aggregate audit subsystem health: store, Redis, writer queue, retention. Integrates with observability."""

from typing import Any, Awaitable, Callable

from broker_audit.application.writer import WriterHealth

QUEUE_SATURATION_THRESHOLD = 0.9


class HealthMonitor:
    """
    Aggregates health checks. All backends injected; no global state.
    Returns dict with status per component and overall ("ok" or "degraded").

    Degraded when the store is unreachable, the writer queue is more than 90% full,
    or the writer has failed as many consecutive batches as it retries.
    """

    def __init__(
        self,
        store_health: Callable[[], Awaitable[None]] | None = None,
        redis_health: Callable[[], Awaitable[Any]] | None = None,
        writer_health: Callable[[], WriterHealth] | None = None,
        retention_status: Callable[[], dict[str, Any]] | None = None,
        failure_threshold: int = 5,
    ) -> None:
        self._store = store_health
        self._redis = redis_health
        self._writer = writer_health
        self._retention = retention_status
        self._failure_threshold = failure_threshold

    async def system_health(self) -> dict[str, Any]:
        """Return aggregated health: store, redis, writer, retention, status."""
        out: dict[str, Any] = {
            "store": {"status": "unknown"},
            "redis": {"status": "disabled"},
            "writer": {},
            "retention": {},
            "status": "ok",
        }
        if self._store:
            try:
                await self._store()
                out["store"] = {"status": "ok"}
            except Exception as e:
                out["store"] = {"status": "error", "error": str(e)}
                out["status"] = "degraded"
        if self._redis:
            try:
                await self._redis()
                out["redis"] = {"status": "ok"}
            except Exception as e:
                # Retention falls back to the local lock; not fatal for the audit path.
                out["redis"] = {"status": "error", "error": str(e)}
        if self._writer:
            health = self._writer()
            writer = health.to_dict()
            writer["status"] = "ok"
            if health.queue_depth > health.queue_capacity * QUEUE_SATURATION_THRESHOLD:
                writer["status"] = "saturated"
                out["status"] = "degraded"
            elif health.consecutive_failures >= self._failure_threshold:
                writer["status"] = "failing"
                out["status"] = "degraded"
            out["writer"] = writer
        if self._retention:
            try:
                out["retention"] = self._retention()
            except Exception:
                out["retention"] = {}
        return out
