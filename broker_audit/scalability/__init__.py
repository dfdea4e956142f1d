"""Scalability layer: distributed locking and health aggregation. No FastAPI."""

from broker_audit.scalability.distributed_lock import DistributedLock
from broker_audit.scalability.health_monitor import HealthMonitor

__all__ = [
    "DistributedLock",
    "HealthMonitor",
]
