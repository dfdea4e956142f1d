"""Audit store protocol. Application layer depends on this; infrastructure implements it."""

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Protocol, Sequence

from broker_audit.domain.models.audit import AuditRecord, PersistedAuditRecord
from broker_audit.domain.schemas.audit import AuditFilter


class SortField(str, Enum):
    """Sortable columns. Each one is backed by an index."""

    TIMESTAMP = "timestamp"
    USERNAME = "username"
    CLUSTER_NAME = "cluster_name"
    STATUS = "status"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class SearchQuery:
    """Validated, bounded search handed to the store. limit is already capped."""

    filter: AuditFilter
    offset: int
    limit: int
    sort_field: SortField = SortField.TIMESTAMP
    sort_direction: SortDirection = SortDirection.DESC
    case_sensitive: bool = True
    cluster_name_substring: bool = False


class AuditStore(Protocol):
    """
    Append-only audit storage. The writer only inserts, the query engine only reads,
    the retention enforcer only deletes. There is no update operation.
    """

    async def insert_many(self, records: Sequence[AuditRecord]) -> List[PersistedAuditRecord]:
        """Persist records atomically; assign id and created_at. Raises TransientStoreError or PermanentStoreError."""
        ...

    async def get(self, record_id: uuid.UUID) -> Optional[PersistedAuditRecord]:
        """Return one record or None. Raises StoreUnavailableError."""
        ...

    async def search(self, query: SearchQuery) -> List[PersistedAuditRecord]:
        """Return at most query.limit matching records in the requested order."""
        ...

    async def count(self, audit_filter: AuditFilter, *, case_sensitive: bool, cluster_name_substring: bool) -> int:
        """Number of records matching the filter."""
        ...

    async def delete_created_before(self, cutoff: datetime, limit: int) -> int:
        """Delete up to limit records with created_at < cutoff. Returns rows deleted."""
        ...

    async def delete_oldest_beyond(self, keep: int, limit: int) -> int:
        """Delete up to limit of the oldest records (by created_at) beyond the newest keep. Returns rows deleted."""
        ...

    async def count_all(self) -> int:
        ...

    async def ping(self) -> None:
        """Cheap liveness check. Raises StoreUnavailableError."""
        ...
