"""
Asynchronous durable audit writer.

A bounded asyncio.Queue decouples submission (request path) from persistence
(worker tasks). submit() is O(1) and never raises; when the queue is full the
newest record is dropped and counted. Workers drain the queue in batches, retry
transient store failures with capped exponential backoff, and demote records
they cannot store to the fallback log.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence

from broker_audit.application.audit_store import AuditStore
from broker_audit.application.exceptions import PermanentStoreError
from broker_audit.config.logging import FALLBACK_LOGGER_NAME
from broker_audit.config.settings import AuditSettings
from broker_audit.domain.models.audit import AuditRecord
from broker_audit.observability.metrics import (
    RECORDS_DROPPED,
    RECORDS_FAILED,
    RECORDS_PERSISTED,
    RECORDS_SUBMITTED,
    WRITE_LATENCY,
    WRITE_RETRIES,
    MetricsCollector,
)

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger(FALLBACK_LOGGER_NAME)


@dataclass
class _BatchProgress:
    """Records of the in-flight batch already persisted or demoted. Always a prefix of the batch."""

    settled: int = 0


@dataclass(frozen=True)
class WriterHealth:
    """Point-in-time view of the writer for monitoring and alerting."""

    queue_depth: int
    queue_capacity: int
    dropped_count: int
    failed_count: int
    persisted_count: int
    consecutive_failures: int
    running: bool

    def to_dict(self) -> dict:
        return {
            "queue_depth": self.queue_depth,
            "queue_capacity": self.queue_capacity,
            "dropped_count": self.dropped_count,
            "failed_count": self.failed_count,
            "persisted_count": self.persisted_count,
            "consecutive_failures": self.consecutive_failures,
            "running": self.running,
        }


class AuditWriter:
    """
    Bounded queue + worker pool in front of an AuditStore.

    Drop policy: newest-dropped. The interceptor must never wait for queue space,
    so a full queue rejects the incoming record instead of evicting an older one.
    """

    def __init__(
        self,
        store: AuditStore,
        settings: AuditSettings,
        metrics: Optional[MetricsCollector] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._settings = settings
        self._metrics = metrics or MetricsCollector()
        self._sleep = sleep
        self._capacity = settings.audit_queue_capacity
        self._queue: asyncio.Queue[AuditRecord] = asyncio.Queue(maxsize=self._capacity)
        self._workers: List[asyncio.Task[None]] = []
        self._inflight: set[asyncio.Task[None]] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread_id: Optional[int] = None
        self._closed = False

        self._dropped = 0
        self._failed = 0
        self._persisted = 0
        self._consecutive_failures = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return bool(self._workers) and not self._closed

    async def start(self) -> None:
        """Spawn the worker pool on the running loop. Idempotent."""
        if self._workers:
            return
        self._loop = asyncio.get_running_loop()
        self._loop_thread_id = threading.get_ident()
        self._closed = False
        for i in range(self._settings.audit_worker_count):
            self._workers.append(asyncio.create_task(self._run_worker(i), name=f"audit-writer-{i}"))
        logger.info(
            "audit_writer_started",
            extra={
                "worker_count": self._settings.audit_worker_count,
                "queue_capacity": self._capacity,
                "async_processing": self._settings.audit_async_processing,
            },
        )

    async def stop(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        """
        Stop accepting records, optionally drain the queue within timeout, then cancel
        workers. Anything still queued goes to the fallback log.
        """
        if not self._workers:
            return
        self._closed = True
        if timeout is None:
            timeout = self._settings.audit_shutdown_timeout_seconds
        if drain:
            try:
                await asyncio.wait_for(self.flush(), timeout)
            except asyncio.TimeoutError:
                logger.warning("audit_writer_drain_timeout", extra={"queue_depth": self._queue.qsize()})
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        while not self._queue.empty():
            self._demote([self._queue.get_nowait()], "shutdown", None)
            self._queue.task_done()
        logger.info("audit_writer_stopped", extra=self.health().to_dict())

    async def flush(self) -> None:
        """Wait until every queued and in-flight record has been persisted or demoted."""
        await self._queue.join()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ------------------------------------------------------------------
    # Submission (request path)
    # ------------------------------------------------------------------

    def submit(self, record: AuditRecord) -> bool:
        """
        Hand a record to the pipeline. Non-blocking, never raises.
        Returns True when accepted, False when dropped.

        From another thread the full-queue check is best-effort: the queue is read
        outside the loop, so a record accepted here can still be dropped (and
        counted) if the queue fills before the loop runs the enqueue.
        """
        try:
            if self._loop is not None and threading.get_ident() != self._loop_thread_id:
                reason = self._rejection_reason()
                if reason is not None:
                    self._loop.call_soon_threadsafe(self._reject, record, reason)
                    return False
                self._loop.call_soon_threadsafe(self._enqueue, record)
                return True
            return self._enqueue(record)
        except Exception:
            logger.exception("audit_submit_failed")
            return False

    def _count_submission(self, record: AuditRecord) -> None:
        self._metrics.increment(RECORDS_SUBMITTED)
        self._metrics.increment(RECORDS_SUBMITTED, cluster=record.cluster_name)

    def _enqueue(self, record: AuditRecord) -> bool:
        self._count_submission(record)
        if self._closed:
            self._record_drop(record, "writer_closed")
            return False
        if not self._settings.audit_async_processing and self.running:
            task = asyncio.get_running_loop().create_task(self._write_batch([record]))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            return True
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self._record_drop(record, "queue_full")
            return False
        return True

    def _rejection_reason(self) -> Optional[str]:
        if self._closed:
            return "writer_closed"
        bypasses_queue = not self._settings.audit_async_processing and self.running
        if not bypasses_queue and self._queue.full():
            return "queue_full"
        return None

    def _reject(self, record: AuditRecord, reason: str) -> None:
        self._count_submission(record)
        self._record_drop(record, reason)

    def _record_drop(self, record: AuditRecord, reason: str) -> None:
        self._dropped += 1
        self._metrics.increment(RECORDS_DROPPED, category=reason)
        if self._dropped == 1 or self._dropped % self._settings.audit_drop_log_interval == 0:
            logger.warning(
                "audit_record_dropped",
                extra={
                    "reason": reason,
                    "dropped_count": self._dropped,
                    "queue_capacity": self._capacity,
                    "operation_type": record.operation_type.value,
                    "cluster_name": record.cluster_name,
                },
            )

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _run_worker(self, index: int) -> None:
        batch_size = self._settings.audit_batch_size
        while True:
            batch = [await self._queue.get()]
            while len(batch) < batch_size:
                try:
                    batch.append(self._queue.get_nowait())
                except asyncio.QueueEmpty:
                    break
            progress = _BatchProgress()
            try:
                await self._write_batch(batch, progress)
            except asyncio.CancelledError:
                self._demote(batch[progress.settled :], "shutdown_inflight", None)
                raise
            except Exception as e:
                # _write_batch handles store errors; this guards the worker itself.
                logger.exception("audit_worker_error", extra={"worker": index})
                self._demote(batch[progress.settled :], "worker_error", e)
            finally:
                for _ in batch:
                    self._queue.task_done()

    def _backoff(self, attempt: int) -> float:
        delay = self._settings.audit_retry_base_delay_seconds * (2 ** (attempt - 1))
        return min(delay, self._settings.audit_retry_max_delay_seconds)

    async def _write_batch(self, batch: Sequence[AuditRecord], progress: Optional[_BatchProgress] = None) -> None:
        if progress is None:
            progress = _BatchProgress()
        max_attempts = self._settings.audit_retry_max_attempts
        timeout = self._settings.audit_write_timeout_seconds
        attempt = 0
        while True:
            attempt += 1
            started = time.perf_counter()
            try:
                persisted = await asyncio.wait_for(self._store.insert_many(batch), timeout)
            except PermanentStoreError as e:
                self._consecutive_failures += 1
                if len(batch) > 1:
                    # Isolate the offending record(s); the rest of the batch is still valid.
                    logger.warning(
                        "audit_batch_permanent_error",
                        extra={"batch_size": len(batch), "error": e.message},
                    )
                    for record in batch:
                        await self._write_batch([record], progress)
                    return
                self._demote(batch, "permanent_error", e)
                progress.settled += len(batch)
                return
            except Exception as e:
                # TransientStoreError, per-attempt timeouts and unclassified driver errors.
                self._consecutive_failures += 1
                if attempt >= max_attempts:
                    self._demote(batch, "retries_exhausted", e)
                    progress.settled += len(batch)
                    return
                delay = self._backoff(attempt)
                self._metrics.increment(WRITE_RETRIES)
                logger.warning(
                    "audit_write_retry",
                    extra={
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "delay_seconds": delay,
                        "batch_size": len(batch),
                        "error": str(e) or type(e).__name__,
                    },
                )
                await self._sleep(delay)
                continue

            self._consecutive_failures = 0
            progress.settled += len(batch)
            self._persisted += len(persisted)
            self._metrics.increment(RECORDS_PERSISTED, len(persisted))
            self._metrics.observe_latency(WRITE_LATENCY, (time.perf_counter() - started) * 1000)
            logger.debug("audit_batch_persisted", extra={"batch_size": len(persisted), "attempt": attempt})
            return

    def _demote(self, records: Sequence[AuditRecord], reason: str, error: Optional[BaseException]) -> None:
        """Write records to the fallback log and count them as failed. Terminal state."""
        for record in records:
            self._failed += 1
            self._metrics.increment(RECORDS_FAILED, category=reason)
            fallback_logger.error(
                "audit_record_not_persisted",
                extra={
                    "reason": reason,
                    "error": (str(error) or type(error).__name__) if error is not None else None,
                    "audit_record": record.to_dict(),
                },
            )

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def health(self) -> WriterHealth:
        return WriterHealth(
            queue_depth=self._queue.qsize(),
            queue_capacity=self._capacity,
            dropped_count=self._dropped,
            failed_count=self._failed,
            persisted_count=self._persisted,
            consecutive_failures=self._consecutive_failures,
            running=self.running,
        )
