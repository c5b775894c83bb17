"""
FileCallStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    calls.json          {call_id: record document}

Features:
  - Survives process restarts (unlike InMemoryCallStore)
  - No external dependencies (no database server)
  - Flushes on every mutation via write-to-temp + rename
  - Single-process only (no cross-process write safety)

Best for: small deployments, demos, edge devices, air-gapped environments.
"""
from __future__ import annotations

import json
import structlog
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from database.store_memory import InMemoryCallStore
from models.schemas import CallRecord, LeadData, utcnow

logger = structlog.get_logger()


class FileCallStore(InMemoryCallStore):
    """
    Extends InMemoryCallStore with JSON file persistence.

    On init: loads all records from disk into memory.
    On every write: flushes the whole collection to disk.
    """

    def __init__(self, data_dir: str = "./data", clock: Callable[[], datetime] = utcnow):
        super().__init__(clock=clock)
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    @property
    def path(self) -> Path:
        return self._data_dir / "calls.json"

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("file_store_load_error", path=str(self.path), error=str(e))
            return

        self._calls = data if isinstance(data, dict) else {}
        # Rebuild index
        self._external_index.clear()
        for cid, c in self._calls.items():
            if c.get("external_call_id"):
                self._external_index[c["external_call_id"]] = cid
        logger.debug("file_store_loaded", records=len(self._calls))

    def _flush(self) -> None:
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self._calls, f, indent=2, default=str)
        tmp_path.replace(self.path)  # atomic on POSIX

    # ── Override write methods to trigger persistence ──────

    async def create(self, phone: str, lead_data: Optional[LeadData] = None) -> CallRecord:
        record = await super().create(phone, lead_data)
        self._flush()
        return record

    async def save(self, record: CallRecord) -> None:
        await super().save(record)
        self._flush()
