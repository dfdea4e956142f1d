"""
Query engine for the audit trail: validates a filter + pagination + sort request,
caps it, and turns it into one COUNT and one bounded indexed read.

Field matching:
    username        case-sensitive substring
    cluster_name    exact (substring when configured)
    operation_type  exact
    resource_type   exact, comma-separated list matches any
    resource_name   case-sensitive substring
    status          exact
    start/end_time  inclusive range on capture timestamp
    client_ip       exact
Case sensitivity of the string filters is configurable.
"""

import logging
import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Generic, List, Optional, TypeVar, Union

from broker_audit.application.audit_store import AuditStore, SearchQuery, SortDirection, SortField
from broker_audit.application.exceptions import (
    AuditRecordNotFoundError,
    AuditStoreError,
    QueryValidationError,
    StoreUnavailableError,
)
from broker_audit.config.settings import AuditSettings
from broker_audit.domain.models.audit import PersistedAuditRecord
from broker_audit.domain.schemas.audit import AuditFilter
from broker_audit.observability.metrics import QUERY_LATENCY, MetricsCollector

T = TypeVar("T")

logger = logging.getLogger(__name__)

# Accepted spellings for each sortable field (lower-cased).
_SORT_ALIASES = {
    "timestamp": SortField.TIMESTAMP,
    "username": SortField.USERNAME,
    "cluster_name": SortField.CLUSTER_NAME,
    "clustername": SortField.CLUSTER_NAME,
    "status": SortField.STATUS,
}


@dataclass(frozen=True)
class PageEnvelope(Generic[T]):
    """One page of results plus what a pagination UI needs. page is 0-based."""

    items: List[T]
    page: int
    page_size: int
    total_items: int
    total_pages: int
    has_next: bool
    has_previous: bool

    @classmethod
    def build(cls, items: List[T], page: int, page_size: int, total_items: int) -> "PageEnvelope[T]":
        total_pages = math.ceil(total_items / page_size) if total_items else 0
        return cls(
            items=items,
            page=page,
            page_size=page_size,
            total_items=total_items,
            total_pages=total_pages,
            has_next=page < total_pages - 1,
            has_previous=page > 0,
        )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_sort_field(value: Union[str, SortField, None]) -> SortField:
    if value is None or value == "":
        return SortField.TIMESTAMP
    if isinstance(value, SortField):
        return value
    field = _SORT_ALIASES.get(str(value).strip().lower())
    if field is None:
        allowed = ", ".join(f.value for f in SortField)
        raise QueryValidationError("sort_field", f"Invalid sort field: {value}. Allowed fields: {allowed}")
    return field


def parse_sort_direction(value: Union[str, SortDirection, None]) -> SortDirection:
    if value is None or value == "":
        return SortDirection.DESC
    if isinstance(value, SortDirection):
        return value
    try:
        return SortDirection(str(value).strip().lower())
    except ValueError:
        raise QueryValidationError("sort_direction", "Sort direction must be 'asc' or 'desc'") from None


class QueryEngine:
    """Read side of the audit trail. Never writes, never deletes."""

    def __init__(
        self,
        store: AuditStore,
        max_page_size: int = 500,
        default_page_size: int = 50,
        case_sensitive: bool = True,
        cluster_name_match: str = "exact",
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self._store = store
        self._max_page_size = max_page_size
        self._default_page_size = default_page_size
        self._case_sensitive = case_sensitive
        self._cluster_name_substring = cluster_name_match == "substring"
        self._metrics = metrics or MetricsCollector()

    @classmethod
    def from_settings(
        cls,
        store: AuditStore,
        settings: AuditSettings,
        metrics: Optional[MetricsCollector] = None,
    ) -> "QueryEngine":
        return cls(
            store=store,
            max_page_size=settings.query_max_page_size,
            default_page_size=settings.query_default_page_size,
            case_sensitive=settings.query_case_sensitive,
            cluster_name_match=settings.query_cluster_name_match,
            metrics=metrics,
        )

    @property
    def max_page_size(self) -> int:
        return self._max_page_size

    def build_query(
        self,
        audit_filter: Optional[AuditFilter] = None,
        page: int = 0,
        page_size: Optional[int] = None,
        sort_field: Union[str, SortField, None] = None,
        sort_direction: Union[str, SortDirection, None] = None,
    ) -> SearchQuery:
        """Validate and bound a search request. Raises QueryValidationError with the offending field."""
        audit_filter = audit_filter or AuditFilter()
        if page_size is None:
            page_size = self._default_page_size
        if isinstance(page, bool) or not isinstance(page, int) or page < 0:
            raise QueryValidationError("page", "Page number must be a non-negative integer")
        if isinstance(page_size, bool) or not isinstance(page_size, int) or not 1 <= page_size <= self._max_page_size:
            raise QueryValidationError("page_size", f"Page size must be between 1 and {self._max_page_size}")

        start, end = audit_filter.start_time, audit_filter.end_time
        if start is not None:
            start = _as_utc(start)
        if end is not None:
            end = _as_utc(end)
        if start is not None and end is not None and start > end:
            raise QueryValidationError("start_time", "start_time must be before or equal to end_time")
        if (start, end) != (audit_filter.start_time, audit_filter.end_time):
            audit_filter = audit_filter.model_copy(update={"start_time": start, "end_time": end})

        return SearchQuery(
            filter=audit_filter,
            offset=page * page_size,
            limit=page_size,
            sort_field=parse_sort_field(sort_field),
            sort_direction=parse_sort_direction(sort_direction),
            case_sensitive=self._case_sensitive,
            cluster_name_substring=self._cluster_name_substring,
        )

    async def search(
        self,
        audit_filter: Optional[AuditFilter] = None,
        page: int = 0,
        page_size: Optional[int] = None,
        sort_field: Union[str, SortField, None] = None,
        sort_direction: Union[str, SortDirection, None] = None,
    ) -> PageEnvelope[PersistedAuditRecord]:
        """Return one page of matching records, newest first unless told otherwise."""
        query = self.build_query(audit_filter, page, page_size, sort_field, sort_direction)
        started = time.perf_counter()
        try:
            total = await self._store.count(
                query.filter,
                case_sensitive=query.case_sensitive,
                cluster_name_substring=query.cluster_name_substring,
            )
            items: List[PersistedAuditRecord] = []
            if total > query.offset:
                items = await self._store.search(query)
        except StoreUnavailableError:
            raise
        except AuditStoreError as e:
            raise StoreUnavailableError(f"Audit store unavailable: {e.message}", cause=e) from e
        finally:
            self._metrics.observe_latency(QUERY_LATENCY, (time.perf_counter() - started) * 1000)

        logger.debug(
            "audit_search",
            extra={
                "page": page,
                "page_size": query.limit,
                "total_items": total,
                "sort_field": query.sort_field.value,
                "sort_direction": query.sort_direction.value,
            },
        )
        return PageEnvelope.build(items, page, query.limit, total)

    async def get(self, record_id: Union[uuid.UUID, str]) -> PersistedAuditRecord:
        """Return one record by id. Raises AuditRecordNotFoundError when absent."""
        if not isinstance(record_id, uuid.UUID):
            try:
                record_id = uuid.UUID(str(record_id))
            except ValueError:
                raise QueryValidationError("id", f"Invalid audit record id: {record_id}") from None
        try:
            record = await self._store.get(record_id)
        except StoreUnavailableError:
            raise
        except AuditStoreError as e:
            raise StoreUnavailableError(f"Audit store unavailable: {e.message}", cause=e) from e
        if record is None:
            raise AuditRecordNotFoundError(f"Audit record {record_id} not found")
        return record
