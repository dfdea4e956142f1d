# broker_audit/api/routers/health.py

from typing import Annotated

from fastapi import APIRouter, Depends, Request

from broker_audit.api.dependencies import get_app_settings, get_health_monitor, get_metrics
from broker_audit.config.settings import AuditSettings
from broker_audit.observability.metrics import MetricsCollector
from broker_audit.scalability.health_monitor import HealthMonitor

router = APIRouter()


@router.get("/health")
async def health(
    request: Request,
    settings: Annotated[AuditSettings, Depends(get_app_settings)],
    monitor: Annotated[HealthMonitor, Depends(get_health_monitor)],
    metrics: Annotated[MetricsCollector, Depends(get_metrics)],
):
    """Store reachability, writer queue/failure state, retention state."""
    out = await monitor.system_health()
    out["correlation_id"] = request.state.correlation_id
    out["environment"] = settings.environment
    out["version"] = settings.version
    if settings.enable_metrics:
        out["metrics"] = metrics.export_metrics()
    return out
