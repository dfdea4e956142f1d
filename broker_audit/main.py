# broker_audit/main.py

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from broker_audit.api.middleware import CorrelationIdMiddleware, RequestContextMiddleware
from broker_audit.api.routers import audits, health
from broker_audit.application.audit_store import AuditStore
from broker_audit.application.exceptions import (
    ApplicationError,
    AuditRecordNotFoundError,
    QueryValidationError,
    StoreUnavailableError,
)
from broker_audit.application.interceptor import OperationInterceptor
from broker_audit.application.query_engine import QueryEngine
from broker_audit.application.retention import RetentionEnforcer
from broker_audit.application.writer import AuditWriter
from broker_audit.config.logging import configure_logging
from broker_audit.config.settings import AuditSettings, get_settings
from broker_audit.domain.exceptions import AuditValidationError, DomainError
from broker_audit.infrastructure.cache.redis_client import RedisClient
from broker_audit.infrastructure.database.audit_store_db import SqlAlchemyAuditStore
from broker_audit.infrastructure.database.session import build_engine, build_session_factory, create_schema
from broker_audit.observability.metrics import MetricsCollector
from broker_audit.scalability.distributed_lock import DistributedLock
from broker_audit.scalability.health_monitor import HealthMonitor

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = "5"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the audit pipeline, start writer workers and the retention ticker, tear both down on shutdown."""
    settings: AuditSettings = app.state.settings
    store: Optional[AuditStore] = app.state.store
    engine = None
    if store is None:
        engine = build_engine(settings)
        await create_schema(engine)
        store = SqlAlchemyAuditStore(build_session_factory(engine))

    redis_client = RedisClient(settings.redis_url) if settings.redis_url else None
    lock = DistributedLock(redis_client) if redis_client else None

    metrics = MetricsCollector()
    writer = AuditWriter(store, settings, metrics)
    retention = RetentionEnforcer.from_settings(store, settings, metrics, lock) if settings.retention_enabled else None

    def retention_status() -> dict:
        if retention is None:
            return {"enabled": False}
        last = retention.last_result
        return {
            "enabled": True,
            "state": retention.state.value,
            "last_run": last.to_dict() if last else None,
        }

    app.state.store = store
    app.state.metrics = metrics
    app.state.writer = writer
    app.state.interceptor = OperationInterceptor(writer, enabled=settings.audit_enabled, metrics=metrics)
    app.state.query_engine = QueryEngine.from_settings(store, settings, metrics)
    app.state.retention = retention
    app.state.health_monitor = HealthMonitor(
        store_health=store.ping,
        redis_health=redis_client.ping if redis_client else None,
        writer_health=writer.health,
        retention_status=retention_status,
        failure_threshold=settings.audit_retry_max_attempts,
    )

    await writer.start()
    if retention is not None:
        retention.start()
    logger.info("audit_pipeline_started", extra={"audit_config": settings.summary()})
    try:
        yield
    finally:
        if retention is not None:
            await retention.stop()
        await writer.stop(drain=True)
        if redis_client is not None:
            await redis_client.close()
        if engine is not None:
            await engine.dispose()
        logger.info("audit_pipeline_stopped")


def create_app(settings: Optional[AuditSettings] = None, store: Optional[AuditStore] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store

    # Middleware order: last added runs first (outermost). Request flow: CorrelationId -> RequestContext.
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(CorrelationIdMiddleware)

    @app.exception_handler(QueryValidationError)
    async def query_validation_error_handler(request, exc: QueryValidationError):
        return JSONResponse(status_code=422, content={"detail": exc.message, "field": exc.field})

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request, exc: RequestValidationError):
        err = exc.errors()[0] if exc.errors() else {}
        loc = err.get("loc") or ()
        return JSONResponse(
            status_code=422,
            content={"detail": err.get("msg", "Invalid request"), "field": str(loc[-1]) if loc else None},
        )

    @app.exception_handler(AuditRecordNotFoundError)
    async def not_found_error_handler(request, exc: AuditRecordNotFoundError):
        return JSONResponse(status_code=404, content={"detail": exc.message})

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_error_handler(request, exc: StoreUnavailableError):
        return JSONResponse(
            status_code=503,
            content={"detail": "Audit store temporarily unavailable"},
            headers={"Retry-After": RETRY_AFTER_SECONDS},
        )

    @app.exception_handler(AuditValidationError)
    async def audit_validation_error_handler(request, exc: AuditValidationError):
        return JSONResponse(status_code=422, content={"detail": exc.message})

    @app.exception_handler(DomainError)
    async def domain_error_handler(request, exc: DomainError):
        return JSONResponse(status_code=400, content={"detail": exc.message})

    @app.exception_handler(ApplicationError)
    async def application_error_handler(request, exc: ApplicationError):
        return JSONResponse(status_code=500, content={"detail": exc.message})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request, exc: Exception):
        logger.error("unhandled_error", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    # Routers: /health, /api/audits
    app.include_router(health.router)
    app.include_router(audits.router, prefix="/api/audits")
    return app


app = create_app()
