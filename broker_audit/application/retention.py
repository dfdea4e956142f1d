"""
Retention enforcer: a long-lived ticker that deletes audit records past the
retention horizon in bounded batches. Single-flight per process (and across
replicas when a distributed lock is supplied). A failed run is logged and
retried on the next tick; it never propagates into the host process.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from broker_audit.application.audit_store import AuditStore
from broker_audit.application.exceptions import RetentionConfigurationError
from broker_audit.config.settings import AuditSettings
from broker_audit.observability.metrics import RETENTION_DELETED, RETENTION_RUNS, MetricsCollector
from broker_audit.scalability.distributed_lock import DistributedLock

logger = logging.getLogger(__name__)

RETENTION_LOCK_KEY = "audit:retention"


class RetentionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # result only: a run was already in flight


@dataclass(frozen=True)
class RetentionPolicy:
    """Either limit alone triggers deletion; with both set, both are enforced on every run."""

    max_age: Optional[timedelta] = None
    max_records: Optional[int] = None
    batch_size: int = 1000
    run_budget_seconds: float = 300.0

    def __post_init__(self) -> None:
        if self.max_age is None and self.max_records is None:
            raise RetentionConfigurationError("retention policy needs max_age and/or max_records")
        if self.max_age is not None and self.max_age <= timedelta(0):
            raise RetentionConfigurationError("max_age must be positive")
        if self.max_records is not None and self.max_records < 1:
            raise RetentionConfigurationError("max_records must be at least 1")
        if self.batch_size < 1:
            raise RetentionConfigurationError("batch_size must be at least 1")

    @classmethod
    def from_settings(cls, settings: AuditSettings) -> "RetentionPolicy":
        max_age = None
        if settings.retention_max_age_days is not None:
            max_age = timedelta(days=settings.retention_max_age_days)
        return cls(
            max_age=max_age,
            max_records=settings.retention_max_records,
            batch_size=settings.retention_batch_size,
            run_budget_seconds=settings.retention_run_budget_seconds,
        )


@dataclass(frozen=True)
class RetentionRunResult:
    state: RetentionState
    started_at: datetime
    finished_at: datetime
    deleted_by_age: int = 0
    deleted_by_count: int = 0
    budget_exhausted: bool = False
    error: Optional[str] = None

    @property
    def deleted_total(self) -> int:
        return self.deleted_by_age + self.deleted_by_count

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "deleted_by_age": self.deleted_by_age,
            "deleted_by_count": self.deleted_by_count,
            "budget_exhausted": self.budget_exhausted,
            "error": self.error,
        }


class RetentionEnforcer:
    """Idle -> Running -> (Completed | Failed) -> Idle. Overlapping triggers are skipped."""

    def __init__(
        self,
        store: AuditStore,
        policy: RetentionPolicy,
        interval_seconds: float = 86_400.0,
        initial_delay_seconds: float = 0.0,
        metrics: Optional[MetricsCollector] = None,
        distributed_lock: Optional[DistributedLock] = None,
        lock_ttl_seconds: int = 900,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._policy = policy
        self._interval = interval_seconds
        self._initial_delay = initial_delay_seconds
        self._metrics = metrics or MetricsCollector()
        self._distributed_lock = distributed_lock
        self._lock_ttl = lock_ttl_seconds
        self._clock = clock
        self._sleep = sleep
        self._run_lock = asyncio.Lock()
        self._state = RetentionState.IDLE
        self._last_result: Optional[RetentionRunResult] = None
        self._task: Optional[asyncio.Task[None]] = None

    @classmethod
    def from_settings(
        cls,
        store: AuditStore,
        settings: AuditSettings,
        metrics: Optional[MetricsCollector] = None,
        distributed_lock: Optional[DistributedLock] = None,
    ) -> "RetentionEnforcer":
        return cls(
            store=store,
            policy=RetentionPolicy.from_settings(settings),
            interval_seconds=settings.retention_interval_seconds,
            initial_delay_seconds=settings.retention_initial_delay_seconds,
            metrics=metrics,
            distributed_lock=distributed_lock,
            lock_ttl_seconds=settings.retention_lock_ttl_seconds,
        )

    @property
    def state(self) -> RetentionState:
        return self._state

    @property
    def last_result(self) -> Optional[RetentionRunResult]:
        return self._last_result

    @property
    def policy(self) -> RetentionPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run_schedule(), name="audit-retention")
            logger.info(
                "retention_scheduler_started",
                extra={
                    "interval_seconds": self._interval,
                    "max_age_days": self._policy.max_age.days if self._policy.max_age else None,
                    "max_records": self._policy.max_records,
                },
            )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("retention_scheduler_stopped")

    async def _run_schedule(self) -> None:
        if self._initial_delay > 0:
            await self._sleep(self._initial_delay)
        while True:
            try:
                await self.run_once()
            except Exception:
                # run_once reports its own failures; this keeps the ticker alive regardless.
                logger.exception("retention_tick_failed")
            await self._sleep(self._interval)

    # ------------------------------------------------------------------
    # One enforcement run
    # ------------------------------------------------------------------

    async def run_once(self) -> RetentionRunResult:
        """Run the policy now. Returns a SKIPPED result if a run is already in flight."""
        if self._run_lock.locked():
            logger.info("retention_run_skipped", extra={"reason": "run_in_progress"})
            now = self._clock()
            return RetentionRunResult(state=RetentionState.SKIPPED, started_at=now, finished_at=now)

        async with self._run_lock:
            if not await self._acquire_distributed_lock():
                now = self._clock()
                logger.info(
                    "retention_run_skipped",
                    extra={"reason": "held_by_other_replica", "holder": await self._lock_holder()},
                )
                return RetentionRunResult(state=RetentionState.SKIPPED, started_at=now, finished_at=now)
            try:
                return await self._execute()
            finally:
                await self._release_distributed_lock()

    async def _execute(self) -> RetentionRunResult:
        self._state = RetentionState.RUNNING
        started_at = self._clock()
        deadline = time.monotonic() + self._policy.run_budget_seconds
        deleted_by_age = 0
        deleted_by_count = 0
        budget_exhausted = False
        logger.info("retention_run_started", extra={"started_at": started_at.isoformat()})

        try:
            if self._policy.max_age is not None:
                cutoff = started_at - self._policy.max_age
                deleted_by_age, budget_exhausted = await self._delete_in_batches(
                    lambda: self._store.delete_created_before(cutoff, self._policy.batch_size),
                    deadline,
                )
            if self._policy.max_records is not None and not budget_exhausted:
                deleted_by_count, budget_exhausted = await self._delete_in_batches(
                    lambda: self._store.delete_oldest_beyond(self._policy.max_records, self._policy.batch_size),
                    deadline,
                )
        except Exception as e:
            result = RetentionRunResult(
                state=RetentionState.FAILED,
                started_at=started_at,
                finished_at=self._clock(),
                deleted_by_age=deleted_by_age,
                deleted_by_count=deleted_by_count,
                error=str(e) or type(e).__name__,
            )
            logger.error("retention_run_failed", exc_info=True, extra=result.to_dict())
            return self._finish(result)

        if budget_exhausted:
            logger.warning(
                "retention_run_budget_exhausted",
                extra={
                    "budget_seconds": self._policy.run_budget_seconds,
                    "deleted_by_age": deleted_by_age,
                    "deleted_by_count": deleted_by_count,
                },
            )
        result = RetentionRunResult(
            state=RetentionState.COMPLETED,
            started_at=started_at,
            finished_at=self._clock(),
            deleted_by_age=deleted_by_age,
            deleted_by_count=deleted_by_count,
            budget_exhausted=budget_exhausted,
        )
        logger.info("retention_run_completed", extra=result.to_dict())
        return self._finish(result)

    async def _delete_in_batches(
        self,
        delete_batch: Callable[[], Awaitable[int]],
        deadline: float,
    ) -> tuple[int, bool]:
        """Repeat delete_batch until a short batch. Returns (deleted, budget_exhausted)."""
        total = 0
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return total, True
            try:
                deleted = await asyncio.wait_for(delete_batch(), remaining)
            except asyncio.TimeoutError:
                # The cancelled batch rolls back; the next run picks it up again.
                return total, True
            total += deleted
            logger.debug("retention_batch_deleted", extra={"deleted": deleted, "total": total})
            if deleted < self._policy.batch_size:
                return total, False

    def _finish(self, result: RetentionRunResult) -> RetentionRunResult:
        # The terminal state lives on last_result; the enforcer itself returns to IDLE.
        self._last_result = result
        self._metrics.increment(RETENTION_RUNS, category=result.state.value)
        if result.deleted_by_age:
            self._metrics.increment(RETENTION_DELETED, result.deleted_by_age, category="age")
        if result.deleted_by_count:
            self._metrics.increment(RETENTION_DELETED, result.deleted_by_count, category="count")
        self._state = RetentionState.IDLE
        return result

    async def _acquire_distributed_lock(self) -> bool:
        if self._distributed_lock is None:
            return True
        try:
            return await self._distributed_lock.acquire(RETENTION_LOCK_KEY, ttl=self._lock_ttl)
        except Exception:
            # Deletes are idempotent, so a duplicate run across replicas is harmless.
            logger.warning("retention_lock_unavailable", exc_info=True)
            return True

    async def _lock_holder(self) -> Optional[str]:
        try:
            return await self._distributed_lock.holder(RETENTION_LOCK_KEY)
        except Exception:
            return None

    async def _release_distributed_lock(self) -> None:
        if self._distributed_lock is None:
            return
        try:
            await self._distributed_lock.release(RETENTION_LOCK_KEY)
        except Exception:
            logger.warning("retention_lock_release_failed", exc_info=True)
