"""FastAPI dependency injection: components built in the app lifespan, read back from app.state."""

from fastapi import Request

from broker_audit.application.query_engine import QueryEngine
from broker_audit.config.settings import AuditSettings
from broker_audit.observability.metrics import MetricsCollector
from broker_audit.scalability.health_monitor import HealthMonitor


def get_app_settings(request: Request) -> AuditSettings:
    return request.app.state.settings


def get_query_engine(request: Request) -> QueryEngine:
    return request.app.state.query_engine


def get_metrics(request: Request) -> MetricsCollector:
    return request.app.state.metrics


def get_health_monitor(request: Request) -> HealthMonitor:
    return request.app.state.health_monitor
