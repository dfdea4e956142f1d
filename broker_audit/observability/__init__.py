"""Observability layer: in-memory metrics for the audit pipeline. No external SaaS."""

from broker_audit.observability.metrics import MetricsCollector

__all__ = [
    "MetricsCollector",
]
