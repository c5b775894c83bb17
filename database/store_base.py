"""
Abstract Call Store — Interface for all storage backends.

Implementations:
  - SqlCallStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryCallStore (dict-based, single-process, no persistence)
  - FileCallStore     (JSON file on disk, single-process, durable)

Every backend enforces the same two save-time rules:
  - an external call id belongs to at most one record
  - a record is saved only if nobody else saved it since it was read
    (optimistic version check)
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional

from models.schemas import CallRecord, CallStatus, LeadData


class StoreError(Exception):
    """Base class for call store failures."""


class CallNotFoundError(StoreError):
    def __init__(self, call_id: str):
        super().__init__(f"Call {call_id} not found")
        self.call_id = call_id


class DuplicateExternalIdError(StoreError):
    def __init__(self, external_call_id: str, owner_id: str):
        super().__init__(
            f"External call id {external_call_id} already belongs to call {owner_id}"
        )
        self.external_call_id = external_call_id
        self.owner_id = owner_id


class ConcurrentModificationError(StoreError):
    def __init__(self, call_id: str, expected: int, actual: int):
        super().__init__(
            f"Call {call_id} was modified concurrently (expected version {expected}, found {actual})"
        )
        self.call_id = call_id


class BaseCallStore(ABC):
    """Interface that all call store backends must implement."""

    async def init(self) -> None:
        """Prepare the backend (create tables, load files). Idempotent."""

    async def close(self) -> None:
        """Release backend resources."""

    # ── Reads ─────────────────────────────────────────────────

    @abstractmethod
    async def get(self, call_id: str) -> Optional[CallRecord]:
        ...

    @abstractmethod
    async def get_by_external_id(self, external_call_id: str) -> Optional[CallRecord]:
        ...

    @abstractmethod
    async def list_by_status(self, status: CallStatus) -> list[CallRecord]:
        ...

    @abstractmethod
    async def list_recent(self, limit: int = 50) -> list[CallRecord]:
        ...

    @abstractmethod
    async def list_stale(
        self, statuses: Iterable[CallStatus], older_than: datetime,
    ) -> list[CallRecord]:
        """Records in one of `statuses` whose updated_at is before `older_than`."""
        ...

    @abstractmethod
    async def list_missing_summary(self, statuses: Iterable[CallStatus]) -> list[CallRecord]:
        """Records in one of `statuses` that have no summary yet."""
        ...

    # ── Writes ────────────────────────────────────────────────

    @abstractmethod
    async def create(self, phone: str, lead_data: Optional[LeadData] = None) -> CallRecord:
        ...

    @abstractmethod
    async def save(self, record: CallRecord) -> None:
        """
        Persist the record atomically.

        Stamps updated_at and bumps version on the passed object.
        Raises DuplicateExternalIdError / ConcurrentModificationError.
        """
        ...
