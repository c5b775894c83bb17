"""
InMemoryCallStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database server)
  - Full interface compatibility with SqlCallStore
  - Safe under asyncio (single event loop, no awaits inside mutations)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from database.store_base import (
    BaseCallStore, ConcurrentModificationError, DuplicateExternalIdError,
)
from models.schemas import CallRecord, CallStatus, LeadData, utcnow

logger = structlog.get_logger()


class InMemoryCallStore(BaseCallStore):
    """
    Keeps each record as its JSON document so callers never share
    mutable state with the store.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._calls: dict[str, dict[str, Any]] = {}        # id → record doc
        self._external_index: dict[str, str] = {}          # external_call_id → id
        logger.info("inmemory_store_initialized")

    # ── Reads ─────────────────────────────────────────────

    async def get(self, call_id: str) -> Optional[CallRecord]:
        data = self._calls.get(call_id)
        return CallRecord.model_validate(data) if data else None

    async def get_by_external_id(self, external_call_id: str) -> Optional[CallRecord]:
        cid = self._external_index.get(external_call_id)
        if not cid:
            return None
        return await self.get(cid)

    async def list_by_status(self, status: CallStatus) -> list[CallRecord]:
        return [
            CallRecord.model_validate(c) for c in self._calls.values()
            if c["status"] == status.value
        ]

    async def list_recent(self, limit: int = 50) -> list[CallRecord]:
        records = [CallRecord.model_validate(c) for c in self._calls.values()]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]

    async def list_stale(
        self, statuses: Iterable[CallStatus], older_than: datetime,
    ) -> list[CallRecord]:
        wanted = {s.value for s in statuses}
        stale = []
        for c in self._calls.values():
            if c["status"] not in wanted:
                continue
            record = CallRecord.model_validate(c)
            if record.updated_at < older_than:
                stale.append(record)
        return stale

    async def list_missing_summary(self, statuses: Iterable[CallStatus]) -> list[CallRecord]:
        wanted = {s.value for s in statuses}
        return [
            CallRecord.model_validate(c) for c in self._calls.values()
            if c["status"] in wanted and c.get("summary") is None
        ]

    # ── Writes ────────────────────────────────────────────

    async def create(self, phone: str, lead_data: Optional[LeadData] = None) -> CallRecord:
        now = self._clock()
        record = CallRecord(phone=phone, lead_data=lead_data, created_at=now, updated_at=now)
        self._calls[record.id] = record.model_dump(mode="json")
        logger.debug("call_created", call_id=record.id)
        return record

    async def save(self, record: CallRecord) -> None:
        existing = self._calls.get(record.id)
        stored_version = existing["version"] if existing else 0
        if existing and stored_version != record.version:
            raise ConcurrentModificationError(record.id, record.version, stored_version)

        ext = record.external_call_id
        if ext:
            owner = self._external_index.get(ext)
            if owner and owner != record.id:
                raise DuplicateExternalIdError(ext, owner)

        record.updated_at = self._clock()
        record.version = stored_version + 1
        self._calls[record.id] = record.model_dump(mode="json")
        if ext:
            self._external_index[ext] = record.id

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        counts: dict[str, int] = {"calls": len(self._calls)}
        for c in self._calls.values():
            counts[c["status"]] = counts.get(c["status"], 0) + 1
        return counts
