"""DB-backed audit store. Persists audit records to the audits table (PostgreSQL in production, SQLite in tests)."""

import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.exc import (
    DataError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
    SQLAlchemyError,
    StatementError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from broker_audit.application.audit_store import SearchQuery, SortDirection, SortField
from broker_audit.application.exceptions import (
    AuditStoreError,
    PermanentStoreError,
    StoreUnavailableError,
    TransientStoreError,
)
from broker_audit.domain.models.audit import AuditRecord, AuditStatus, OperationType, PersistedAuditRecord
from broker_audit.domain.schemas.audit import AuditFilter
from broker_audit.infrastructure.database.models import AuditRow

_SORT_COLUMNS = {
    SortField.TIMESTAMP: AuditRow.timestamp,
    SortField.USERNAME: AuditRow.username,
    SortField.CLUSTER_NAME: AuditRow.cluster_name,
    SortField.STATUS: AuditRow.status,
}

_TRANSIENT_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError, OSError)
_PERMANENT_ERRORS = (IntegrityError, DataError, ProgrammingError, StatementError)


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _write_error(exc: Exception) -> AuditStoreError:
    # Transient checks come first: OperationalError and IntegrityError share a DBAPIError base.
    if isinstance(exc, _TRANSIENT_ERRORS):
        return TransientStoreError(f"Audit store write failed: {exc}", cause=exc)
    if isinstance(exc, _PERMANENT_ERRORS):
        return PermanentStoreError(f"Audit store rejected write: {exc}", cause=exc)
    return TransientStoreError(f"Audit store write failed: {exc}", cause=exc)


def _to_record(row: AuditRow) -> PersistedAuditRecord:
    return PersistedAuditRecord(
        id=row.id,
        timestamp=_utc(row.timestamp),
        created_at=_utc(row.created_at),
        username=row.username,
        cluster_name=row.cluster_name,
        operation_type=OperationType(row.operation_type),
        resource_type=row.resource_type,
        resource_name=row.resource_name,
        resource_details=row.resource_details,
        status=AuditStatus(row.status),
        error_message=row.error_message,
        client_ip=row.client_ip,
        user_agent=row.user_agent,
    )


def _text_match(column, value: str, *, substring: bool, case_sensitive: bool):
    if not case_sensitive:
        column, value = func.lower(column), value.lower()
    if substring:
        return column.contains(value, autoescape=True)
    return column == value


def _conditions(audit_filter: AuditFilter, *, case_sensitive: bool, cluster_name_substring: bool) -> list:
    conds = []
    if audit_filter.username:
        conds.append(
            _text_match(AuditRow.username, audit_filter.username, substring=True, case_sensitive=case_sensitive)
        )
    if audit_filter.cluster_name:
        conds.append(
            _text_match(
                AuditRow.cluster_name,
                audit_filter.cluster_name,
                substring=cluster_name_substring,
                case_sensitive=case_sensitive,
            )
        )
    if audit_filter.operation_type is not None:
        conds.append(AuditRow.operation_type == audit_filter.operation_type.value)
    resource_types = audit_filter.resource_types()
    if resource_types:
        if case_sensitive:
            conds.append(AuditRow.resource_type.in_(resource_types))
        else:
            conds.append(func.lower(AuditRow.resource_type).in_([t.lower() for t in resource_types]))
    if audit_filter.resource_name:
        conds.append(
            _text_match(AuditRow.resource_name, audit_filter.resource_name, substring=True, case_sensitive=case_sensitive)
        )
    if audit_filter.status is not None:
        conds.append(AuditRow.status == audit_filter.status.value)
    if audit_filter.start_time is not None:
        conds.append(AuditRow.timestamp >= _utc(audit_filter.start_time))
    if audit_filter.end_time is not None:
        conds.append(AuditRow.timestamp <= _utc(audit_filter.end_time))
    if audit_filter.client_ip:
        conds.append(AuditRow.client_ip == audit_filter.client_ip)
    return conds


class SqlAlchemyAuditStore:
    """
    Append-only audit store over an async SQLAlchemy session factory. Implements AuditStore protocol.
    Each call runs in its own short transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def insert_many(self, records: Sequence[AuditRecord]) -> List[PersistedAuditRecord]:
        """Insert all records in one transaction. Either every record is stored or none is."""
        if not records:
            return []
        now = _utc(self._clock())
        persisted: List[PersistedAuditRecord] = []
        rows: List[AuditRow] = []
        for record in records:
            timestamp = _utc(record.timestamp)
            # created_at never precedes the capture timestamp
            created_at = max(now, timestamp)
            p = PersistedAuditRecord.from_candidate(record, id=uuid.uuid4(), created_at=created_at)
            rows.append(
                AuditRow(
                    id=p.id,
                    timestamp=timestamp,
                    created_at=created_at,
                    username=p.username,
                    cluster_name=p.cluster_name,
                    operation_type=p.operation_type.value,
                    resource_type=p.resource_type,
                    resource_name=p.resource_name,
                    resource_details=dict(p.resource_details) if p.resource_details is not None else None,
                    status=p.status.value,
                    error_message=p.error_message,
                    client_ip=p.client_ip,
                    user_agent=p.user_agent,
                )
            )
            persisted.append(p)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add_all(rows)
        except (SQLAlchemyError, OSError) as e:
            raise _write_error(e) from e
        return persisted

    async def get(self, record_id: uuid.UUID) -> Optional[PersistedAuditRecord]:
        try:
            async with self._session_factory() as session:
                row = await session.get(AuditRow, record_id)
                return _to_record(row) if row is not None else None
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Audit store unavailable: {e}", cause=e) from e

    async def search(self, query: SearchQuery) -> List[PersistedAuditRecord]:
        conds = _conditions(
            query.filter,
            case_sensitive=query.case_sensitive,
            cluster_name_substring=query.cluster_name_substring,
        )
        column = _SORT_COLUMNS[query.sort_field]
        if query.sort_direction is SortDirection.ASC:
            order = (column.asc(), AuditRow.id.asc())
        else:
            order = (column.desc(), AuditRow.id.desc())
        stmt = select(AuditRow).where(*conds).order_by(*order).offset(query.offset).limit(query.limit)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [_to_record(row) for row in result.scalars().all()]
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Audit store unavailable: {e}", cause=e) from e

    async def count(self, audit_filter: AuditFilter, *, case_sensitive: bool, cluster_name_substring: bool) -> int:
        conds = _conditions(audit_filter, case_sensitive=case_sensitive, cluster_name_substring=cluster_name_substring)
        stmt = select(func.count()).select_from(AuditRow).where(*conds)
        try:
            async with self._session_factory() as session:
                return int((await session.execute(stmt)).scalar_one())
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Audit store unavailable: {e}", cause=e) from e

    async def count_all(self) -> int:
        try:
            async with self._session_factory() as session:
                return int((await session.execute(select(func.count()).select_from(AuditRow))).scalar_one())
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Audit store unavailable: {e}", cause=e) from e

    async def delete_created_before(self, cutoff: datetime, limit: int) -> int:
        ids = (
            select(AuditRow.id)
            .where(AuditRow.created_at < _utc(cutoff))
            .order_by(AuditRow.created_at.asc(), AuditRow.id.asc())
            .limit(limit)
        )
        return await self._delete_ids(ids)

    async def delete_oldest_beyond(self, keep: int, limit: int) -> int:
        try:
            async with self._session_factory() as session:
                total = int((await session.execute(select(func.count()).select_from(AuditRow))).scalar_one())
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Audit store unavailable: {e}", cause=e) from e
        excess = total - keep
        if excess <= 0:
            return 0
        ids = (
            select(AuditRow.id)
            .order_by(AuditRow.created_at.asc(), AuditRow.id.asc())
            .limit(min(limit, excess))
        )
        return await self._delete_ids(ids)

    async def _delete_ids(self, ids) -> int:
        stmt = (
            delete(AuditRow)
            .where(AuditRow.id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    return result.rowcount or 0
        except (SQLAlchemyError, OSError) as e:
            raise _write_error(e) from e

    async def ping(self) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(select(1))
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Audit store unavailable: {e}", cause=e) from e
