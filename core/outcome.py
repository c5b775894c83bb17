"""
Outcome Classifier — derives a CallSummary from a finished call.

Classification is keyword-based. It sits behind OutcomeClassifier so a
stronger strategy can replace KeywordOutcomeClassifier without touching
the lifecycle controller.

Interest precedence (first match wins):
    NOT_INTERESTED → HOT → WARM → COLD

classify() never raises; any internal failure yields a conservative COLD
summary.
"""
from __future__ import annotations

import abc
import structlog
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence

from channels.vapi.events import platform_duration
from context.transcript import transcript_text
from models.schemas import (
    CallRecord, CallStatus, CallSummary, ConversationState, InterestLevel,
    LeadData, TranscriptEntry, CONVERSATION_ORDER,
)

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Keyword sets
# ──────────────────────────────────────────────────────────────

NOT_INTERESTED_MARKERS = (
    "not interested", "no thanks", "no thank you", "don't call", "do not call",
    "stop calling", "remove me",
)
HOT_MARKERS = (
    "yes", "interested", "how much", "make an offer", "what's the price", "price",
)
WARM_MARKERS = (
    "maybe", "thinking about", "tell me more", "not sure", "let me think",
)

GENERIC_NEXT_ACTION = "Review transcript"


def analyze_interest(text: str) -> InterestLevel:
    lower = text.lower().replace("’", "'")
    if any(m in lower for m in NOT_INTERESTED_MARKERS):
        return InterestLevel.NOT_INTERESTED
    if any(m in lower for m in HOT_MARKERS):
        return InterestLevel.HOT
    if any(m in lower for m in WARM_MARKERS):
        return InterestLevel.WARM
    return InterestLevel.COLD


# ──────────────────────────────────────────────────────────────
#  Input
# ──────────────────────────────────────────────────────────────

@dataclass
class ClassificationInput:
    """
    Everything the classifier may look at.

    `reached_state` is the dialogue progress before the terminal transition
    forced the record to END.
    """
    status: CallStatus
    transcript: list[TranscriptEntry] = field(default_factory=list)
    reached_state: ConversationState = ConversationState.GREETING
    lead_data: Optional[LeadData] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    platform_messages: Optional[Sequence[Any]] = None

    @classmethod
    def from_record(
        cls,
        record: CallRecord,
        reached_state: Optional[ConversationState] = None,
        platform_messages: Optional[Sequence[Any]] = None,
    ) -> "ClassificationInput":
        if reached_state is None:
            # Progress before END is not stored; treat it as unknown
            reached_state = (ConversationState.GREETING
                             if record.conversation_state == ConversationState.END
                             else record.conversation_state)
        return cls(
            status=record.status,
            transcript=list(record.transcript),
            reached_state=reached_state,
            lead_data=record.lead_data,
            started_at=record.started_at,
            completed_at=record.completed_at,
            error_message=record.error_message,
            platform_messages=platform_messages,
        )

    def reached(self, state: ConversationState) -> bool:
        return CONVERSATION_ORDER[self.reached_state] >= CONVERSATION_ORDER[state]


# ──────────────────────────────────────────────────────────────
#  Strategy interface
# ──────────────────────────────────────────────────────────────

class OutcomeClassifier(abc.ABC):

    @abc.abstractmethod
    def classify(self, data: ClassificationInput) -> CallSummary:
        """Return a summary. Must not raise."""


class KeywordOutcomeClassifier(OutcomeClassifier):
    """Default heuristic classifier."""

    def classify(self, data: ClassificationInput) -> CallSummary:
        try:
            return self._classify(data)
        except Exception as e:
            logger.warning("classification_degraded", status=data.status.value, error=str(e))
            return self.fallback_summary(data)

    @staticmethod
    def fallback_summary(data: ClassificationInput) -> CallSummary:
        return CallSummary(
            duration=0,
            outcome="Call ended",
            interest_level=InterestLevel.COLD,
            key_points=[],
            next_action=GENERIC_NEXT_ACTION,
            appointment_scheduled=False,
        )

    def _classify(self, data: ClassificationInput) -> CallSummary:
        text = transcript_text(data.transcript)
        interest = analyze_interest(text)
        return CallSummary(
            duration=self.duration(data),
            outcome=self.outcome(data, interest),
            interest_level=interest,
            key_points=self.key_points(data),
            next_action=self.next_action(data, interest),
            appointment_scheduled=(
                data.status == CallStatus.COMPLETED
                and interest != InterestLevel.NOT_INTERESTED
                and (data.reached(ConversationState.CLOSING) or "appointment" in text.lower())
            ),
        )

    # ── Pieces ────────────────────────────────────────────

    @staticmethod
    def duration(data: ClassificationInput) -> int:
        if data.started_at and data.completed_at:
            seconds = (data.completed_at - data.started_at).total_seconds()
            if seconds >= 0:
                return int(seconds)
        span = platform_duration(data.platform_messages or data.transcript)
        return int(span) if span else 0

    @staticmethod
    def key_points(data: ClassificationInput) -> list[str]:
        points = []
        lead = data.lead_data
        if lead:
            acreage = f"{lead.acreage:g}" if lead.acreage else "?"
            points.append(f"Property: {acreage} acres in {lead.county} County, {lead.state}")

        if data.reached(ConversationState.CLOSING):
            points.append("Reached closing stage - discussed offer")
        elif data.reached(ConversationState.QUALIFICATION):
            points.append("Lead qualified - answered qualification questions")

        if data.transcript:
            points.append(f"Conversation length: {len(data.transcript)} exchanges")

        if data.status == CallStatus.FAILED:
            points.append(f"Call failed: {data.error_message}" if data.error_message
                          else "Call timed out or failed")
        return points

    @staticmethod
    def outcome(data: ClassificationInput, interest: InterestLevel) -> str:
        if data.status == CallStatus.NO_ANSWER:
            return "No answer from recipient"
        if data.status == CallStatus.VOICEMAIL:
            return "Reached voicemail"
        if interest == InterestLevel.NOT_INTERESTED:
            return "Not interested in selling"
        if data.status == CallStatus.FAILED:
            return "Call failed or timed out"
        if interest == InterestLevel.HOT:
            if data.reached(ConversationState.CLOSING):
                return "Discussed offer - ready for offer"
            return "Lead qualified - needs offer"
        if data.reached(ConversationState.CLOSING):
            return "Discussed offer - follow up needed"
        if data.reached(ConversationState.QUALIFICATION):
            return "Answered qualification questions"
        if interest == InterestLevel.WARM:
            return "Lead considering - follow up needed"
        return "Call completed" if data.transcript else "Initial contact made"

    @staticmethod
    def next_action(data: ClassificationInput, interest: InterestLevel) -> str:
        if data.status == CallStatus.NO_ANSWER:
            return "Retry call later"
        if data.status == CallStatus.VOICEMAIL:
            return "Retry call tomorrow"
        if interest == InterestLevel.NOT_INTERESTED:
            return "Mark as do not contact"
        if data.status == CallStatus.FAILED:
            return "Retry call later"
        if interest == InterestLevel.HOT:
            return "Send offer via email"
        if interest == InterestLevel.WARM:
            return "Follow up in 1 week"
        if data.transcript:
            return "Follow up in 2-4 weeks"
        return GENERIC_NEXT_ACTION
