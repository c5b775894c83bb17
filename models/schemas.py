"""
Core data models for the call reconciliation service.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class CallStatus(str, Enum):
    PENDING = "PENDING"
    CALLING = "CALLING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    NO_ANSWER = "NO_ANSWER"
    VOICEMAIL = "VOICEMAIL"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    CallStatus.COMPLETED, CallStatus.FAILED,
    CallStatus.NO_ANSWER, CallStatus.VOICEMAIL,
})

# Statuses the reaper considers "open" (a call is live on the platform)
OPEN_STATUSES = (CallStatus.CALLING, CallStatus.IN_PROGRESS)


class ConversationState(str, Enum):
    GREETING = "GREETING"
    QUALIFICATION = "QUALIFICATION"
    CLOSING = "CLOSING"
    END = "END"


# Dialogue progress order; END is reserved for the terminal transition
CONVERSATION_ORDER = {
    ConversationState.GREETING: 0,
    ConversationState.QUALIFICATION: 1,
    ConversationState.CLOSING: 2,
    ConversationState.END: 3,
}


class InterestLevel(str, Enum):
    HOT = "HOT"
    WARM = "WARM"
    COLD = "COLD"
    NOT_INTERESTED = "NOT_INTERESTED"


class TranscriptRole(str, Enum):
    USER = "user"
    BOT = "bot"
    SYSTEM = "system"


# ──────────────────────────────────────────────────────────────
#  Lead: the contact and property being called about
# ──────────────────────────────────────────────────────────────

class LeadData(BaseModel):
    """Contact and property metadata supplied when a call is requested."""
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    phone: str = Field(min_length=10, max_length=15, pattern=r"^\+?[1-9]\d{1,14}$")
    county: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=2, max_length=2)
    acreage: Optional[float] = Field(default=None, gt=0)
    property_address: Optional[str] = Field(default=None, max_length=500)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


# ──────────────────────────────────────────────────────────────
#  Transcript
# ──────────────────────────────────────────────────────────────

class TranscriptEntry(BaseModel):
    """A single reconciled line of conversation."""
    role: TranscriptRole
    text: str
    time_offset: Optional[float] = None       # seconds from call start
    timestamp_ms: Optional[float] = None      # platform wall-clock time

    @property
    def sort_offset(self) -> float:
        return self.time_offset if self.time_offset is not None else 0.0


# ──────────────────────────────────────────────────────────────
#  Summary
# ──────────────────────────────────────────────────────────────

class CallSummary(BaseModel):
    duration: int = 0                         # seconds
    outcome: str
    interest_level: InterestLevel = InterestLevel.COLD
    key_points: list[str] = []
    next_action: Optional[str] = None
    appointment_scheduled: bool = False


# ──────────────────────────────────────────────────────────────
#  Call Record: the sole persisted entity
# ──────────────────────────────────────────────────────────────

class CallRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    external_call_id: Optional[str] = None    # assigned by the voice platform
    phone: str
    lead_data: Optional[LeadData] = None
    status: CallStatus = CallStatus.PENDING
    conversation_state: ConversationState = ConversationState.GREETING
    transcript: list[TranscriptEntry] = []
    transcript_finalized: bool = False        # final replace already applied
    summary: Optional[CallSummary] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 0

    @field_validator("created_at", "updated_at", "started_at", "completed_at")
    @classmethod
    def _ensure_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        # SQLite hands back naive datetimes
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_public_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data.pop("version", None)
        return data
