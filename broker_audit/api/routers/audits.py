"""Audit read API: GET /api/audits (search), GET /api/audits/{audit_id}, GET /api/audits/config."""

from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from broker_audit.api.dependencies import get_app_settings, get_query_engine
from broker_audit.application.exceptions import QueryValidationError
from broker_audit.application.query_engine import QueryEngine
from broker_audit.config.settings import AuditSettings
from broker_audit.domain.schemas.audit import (
    AuditConfigurationResponse,
    AuditFilter,
    AuditPageResponse,
    AuditRecordResponse,
)

router = APIRouter()


def _build_filter(**values) -> AuditFilter:
    """Build the filter from raw query values; schema violations surface as field-level errors."""
    try:
        return AuditFilter(**values)
    except ValidationError as e:
        err = e.errors()[0]
        field = str(err["loc"][0]) if err.get("loc") else "filter"
        raise QueryValidationError(field, err.get("msg", "Invalid filter value")) from None


@router.get("", response_model=AuditPageResponse)
async def search_audits(
    engine: Annotated[QueryEngine, Depends(get_query_engine)],
    page: Annotated[int, Query()] = 0,
    page_size: Annotated[Optional[int], Query(alias="pageSize")] = None,
    sort_by: Annotated[Optional[str], Query(alias="sortBy")] = None,
    sort_direction: Annotated[Optional[str], Query(alias="sortDirection")] = None,
    username: Annotated[Optional[str], Query()] = None,
    cluster_name: Annotated[Optional[str], Query(alias="clusterName")] = None,
    operation_type: Annotated[Optional[str], Query(alias="operationType")] = None,
    resource_type: Annotated[Optional[str], Query(alias="resourceType")] = None,
    resource_name: Annotated[Optional[str], Query(alias="resourceName")] = None,
    status: Annotated[Optional[str], Query()] = None,
    start_time: Annotated[Optional[datetime], Query(alias="startTime")] = None,
    end_time: Annotated[Optional[datetime], Query(alias="endTime")] = None,
    client_ip: Annotated[Optional[str], Query(alias="clientIp")] = None,
):
    """Filtered, paginated, sorted audit search. Newest first by default."""
    audit_filter = _build_filter(
        username=username,
        cluster_name=cluster_name,
        operation_type=operation_type or None,
        resource_type=resource_type,
        resource_name=resource_name,
        status=status or None,
        start_time=start_time,
        end_time=end_time,
        client_ip=client_ip,
    )
    result = await engine.search(audit_filter, page, page_size, sort_by, sort_direction)
    return AuditPageResponse(
        items=[AuditRecordResponse.from_record(r) for r in result.items],
        page=result.page,
        page_size=result.page_size,
        total_items=result.total_items,
        total_pages=result.total_pages,
        has_next=result.has_next,
        has_previous=result.has_previous,
    )


@router.get("/config", response_model=AuditConfigurationResponse)
async def audit_configuration(
    settings: Annotated[AuditSettings, Depends(get_app_settings)],
):
    """Current audit pipeline and retention configuration."""
    return AuditConfigurationResponse(**settings.summary())


@router.get("/{audit_id}", response_model=AuditRecordResponse)
async def get_audit(
    audit_id: str,
    engine: Annotated[QueryEngine, Depends(get_query_engine)],
):
    record = await engine.get(audit_id)
    return AuditRecordResponse.from_record(record)


@router.api_route("/{audit_id}", methods=["PUT", "PATCH", "DELETE"], include_in_schema=False)
async def reject_audit_mutation(audit_id: str):
    # Audit records are append-only; corrections are new records.
    return JSONResponse(
        status_code=405,
        content={"detail": "Audit records are immutable"},
        headers={"Allow": "GET"},
    )
