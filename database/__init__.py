"""
Database layer — Multi-backend persistence for call records.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store(settings.database)
  await store.init()
  call = await store.get_by_external_id("vapi-call-id")
"""
from database.models import Base, CallRow
from database.store_base import (
    BaseCallStore, StoreError, CallNotFoundError,
    DuplicateExternalIdError, ConcurrentModificationError,
)
from database.store import SqlCallStore
from database.store_memory import InMemoryCallStore
from database.store_file import FileCallStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "CallRow",
    # Store interface + errors
    "BaseCallStore", "StoreError", "CallNotFoundError",
    "DuplicateExternalIdError", "ConcurrentModificationError",
    # Store backends
    "SqlCallStore", "InMemoryCallStore", "FileCallStore",
    # Factory
    "create_store",
]
