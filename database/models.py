"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB. On PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - Transcript and summary are stored as JSON documents on the call row;
    they are always read and written together with the record.
  - external_call_id is UNIQUE: one record per platform call.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import String, Integer, Boolean, DateTime, Text, Index, JSON
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Calls
# ──────────────────────────────────────────────────────────────

class CallRow(Base):
    __tablename__ = "calls"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    external_call_id: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    lead_data: Mapped[Any] = mapped_column(JSON(none_as_null=True), nullable=True)

    status: Mapped[str] = mapped_column(String(32), default="PENDING", nullable=False)
    conversation_state: Mapped[str] = mapped_column(String(32), default="GREETING", nullable=False)

    transcript: Mapped[Any] = mapped_column(JSON, default=list)
    transcript_finalized: Mapped[bool] = mapped_column(Boolean, default=False)
    summary: Mapped[Any] = mapped_column(JSON(none_as_null=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("ix_calls_status_updated", "status", "updated_at"),
        Index("ix_calls_created", "created_at"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "external_call_id": self.external_call_id,
            "phone": self.phone,
            "lead_data": self.lead_data,
            "status": self.status,
            "conversation_state": self.conversation_state,
            "transcript": self.transcript or [],
            "transcript_finalized": bool(self.transcript_finalized),
            "summary": self.summary,
            "error_message": self.error_message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "version": self.version,
        }
