"""
SqlCallStore — Portable SQL persistence for PostgreSQL, MySQL, SQLite.

Saves use an optimistic version check:
    UPDATE calls SET ..., version = version + 1
    WHERE id = :id AND version = :expected
so two writers that read the same version cannot both win.
"""
from __future__ import annotations

import uuid
import structlog
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from database.models import CallRow
from database.session import create_engine, create_session_factory, create_tables, session_scope
from database.store_base import (
    BaseCallStore, ConcurrentModificationError, DuplicateExternalIdError,
)
from models.schemas import CallRecord, CallStatus, LeadData, utcnow

logger = structlog.get_logger()


class SqlCallStore(BaseCallStore):
    """
    Persistent call store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(
        self,
        url: str = "sqlite:///./calls.db",
        echo: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._url = url
        self._echo = echo
        self._clock = clock
        self._engine: Optional[AsyncEngine] = None
        self._factory: Optional[async_sessionmaker[AsyncSession]] = None

    async def init(self) -> None:
        if self._engine is not None:
            return
        self._engine = create_engine(self._url, echo=self._echo)
        self._factory = create_session_factory(self._engine)
        await create_tables(self._engine)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._factory = None
            logger.info("database_closed")

    def _session(self):
        if self._factory is None:
            raise RuntimeError("SqlCallStore.init() must be awaited before use")
        return session_scope(self._factory)

    # ── Reads ──────────────────────────────────────────────

    async def get(self, call_id: str) -> Optional[CallRecord]:
        async with self._session() as db:
            row = await db.get(CallRow, call_id)
            return self._row_to_record(row) if row else None

    async def get_by_external_id(self, external_call_id: str) -> Optional[CallRecord]:
        async with self._session() as db:
            stmt = select(CallRow).where(CallRow.external_call_id == external_call_id)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_record(row) if row else None

    async def list_by_status(self, status: CallStatus) -> list[CallRecord]:
        async with self._session() as db:
            stmt = select(CallRow).where(CallRow.status == status.value)
            result = await db.execute(stmt)
            return [self._row_to_record(r) for r in result.scalars().all()]

    async def list_recent(self, limit: int = 50) -> list[CallRecord]:
        async with self._session() as db:
            stmt = select(CallRow).order_by(CallRow.created_at.desc()).limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_record(r) for r in result.scalars().all()]

    async def list_stale(
        self, statuses: Iterable[CallStatus], older_than: datetime,
    ) -> list[CallRecord]:
        async with self._session() as db:
            stmt = select(CallRow).where(
                CallRow.status.in_([s.value for s in statuses]),
                CallRow.updated_at < older_than,
            )
            result = await db.execute(stmt)
            return [self._row_to_record(r) for r in result.scalars().all()]

    async def list_missing_summary(self, statuses: Iterable[CallStatus]) -> list[CallRecord]:
        async with self._session() as db:
            stmt = select(CallRow).where(
                CallRow.status.in_([s.value for s in statuses]),
                CallRow.summary.is_(None),
            )
            result = await db.execute(stmt)
            return [self._row_to_record(r) for r in result.scalars().all()]

    # ── Writes ─────────────────────────────────────────────

    async def create(self, phone: str, lead_data: Optional[LeadData] = None) -> CallRecord:
        now = self._clock()
        record = CallRecord(
            id=str(uuid.uuid4()), phone=phone, lead_data=lead_data,
            created_at=now, updated_at=now,
        )
        async with self._session() as db:
            db.add(CallRow(**self._record_to_values(record), id=record.id, version=0))
        return record

    async def save(self, record: CallRecord) -> None:
        now = self._clock()
        values = self._record_to_values(record)
        values["updated_at"] = now

        try:
            async with self._session() as db:
                if record.external_call_id:
                    await self._check_external_owner(db, record)

                stmt = (
                    update(CallRow)
                    .where(CallRow.id == record.id, CallRow.version == record.version)
                    .values(**values, version=record.version + 1)
                )
                result = await db.execute(stmt)
                if result.rowcount == 0:
                    existing = await db.get(CallRow, record.id)
                    if existing is not None:
                        raise ConcurrentModificationError(record.id, record.version, existing.version)
                    db.add(CallRow(**values, id=record.id, version=record.version + 1))
        except IntegrityError as e:
            # Unique index on external_call_id lost a race with another writer
            raise DuplicateExternalIdError(record.external_call_id or "", "unknown") from e

        record.updated_at = now
        record.version += 1

    @staticmethod
    async def _check_external_owner(db: AsyncSession, record: CallRecord) -> None:
        stmt = select(CallRow.id).where(CallRow.external_call_id == record.external_call_id)
        owner = (await db.execute(stmt)).scalar_one_or_none()
        if owner and owner != record.id:
            raise DuplicateExternalIdError(record.external_call_id, owner)

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _record_to_values(record: CallRecord) -> dict[str, Any]:
        doc = record.model_dump(mode="json")
        return {
            "external_call_id": record.external_call_id,
            "phone": record.phone,
            "lead_data": doc["lead_data"],
            "status": record.status.value,
            "conversation_state": record.conversation_state.value,
            "transcript": doc["transcript"],
            "transcript_finalized": record.transcript_finalized,
            "summary": doc["summary"],
            "error_message": record.error_message,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
            "started_at": record.started_at,
            "completed_at": record.completed_at,
        }

    @staticmethod
    def _row_to_record(row: CallRow) -> CallRecord:
        return CallRecord.model_validate(row.to_dict())
