"""
Lifecycle Controller — the call status state machine.

Call status:
    PENDING → CALLING → IN_PROGRESS → {COMPLETED | FAILED | NO_ANSWER | VOICEMAIL}

CALLING may be entered straight from PENDING on queued/ringing; IN_PROGRESS
only from CALLING. Terminal statuses are sinks: once a record is terminal,
nothing here changes its status, completed_at or summary again.

Every mutation runs under the record's lock and re-reads the record first,
so webhooks, the reaper and API operations never interleave on one call.

Terminal path (shared by webhooks, the reaper and manual operations):
    1. status, completed_at, conversation_state=END, error_message → save
    2. classifier runs once on the freshest transcript → save summary
A failure in step 2 is logged; the record stays terminal without a summary
and the reaper backfills it on a later sweep.
"""
from __future__ import annotations

import re
import structlog
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Callable, Optional, Sequence

from channels.vapi.events import (
    CallEvent, FinalTranscriptAvailable, RawMessage, StatusChanged,
    TranscriptUpdated, UnhandledEvent,
)
from context.locks import KeyedLocks
from context.transcript import merge_incremental, replace_final
from core.outcome import ClassificationInput, KeywordOutcomeClassifier, OutcomeClassifier
from database.store_base import BaseCallStore, CallNotFoundError
from models.schemas import (
    CallRecord, CallStatus, CallSummary, ConversationState, CONVERSATION_ORDER, utcnow,
)

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  End-reason classification
# ──────────────────────────────────────────────────────────────

SUCCESS_REASONS = frozenset({
    "completed",
    "customer-ended-call",
    "assistant-ended-call",
    "silence-timed-out",
    "assistant-said-end-call-phrase",
    "assistant-said-message-too-long",
})
VOICEMAIL_MARKERS = ("voicemail", "voicemail-reached")
NO_ANSWER_MARKERS = ("no-answer", "no-answer-voicemail")

QUEUED_SIGNALS = ("queued", "ringing")
IN_PROGRESS_SIGNAL = "in-progress"
END_SIGNALS = ("ended", "failed", "busy", "no-answer")

SIP_MESSAGES = (
    ("sip-503", "Service Unavailable (SIP 503) - recipient's phone service temporarily unavailable"),
    ("sip-486", "Busy Here (SIP 486) - recipient is busy"),
    ("sip-480", "Temporarily Unavailable (SIP 480)"),
)


def classify_end_reason(reason: str) -> CallStatus:
    """success > voicemail > no-answer > FAILED."""
    reason = (reason or "").strip().lower()
    if reason in SUCCESS_REASONS:
        return CallStatus.COMPLETED
    if any(m in reason for m in VOICEMAIL_MARKERS):
        return CallStatus.VOICEMAIL
    if any(m in reason for m in NO_ANSWER_MARKERS):
        return CallStatus.NO_ANSWER
    return CallStatus.FAILED


def format_end_reason(reason: str) -> str:
    """
    "pipeline-error-openai-voice-failed" → "Pipeline error: openai voice failed"
    "call.in-progress.error-sip-500"     → "Sip 500"
    """
    formatted = re.sub(r"^call\.(in-progress\.)?", "", reason)
    formatted = re.sub(r"^pipeline-error-", "Pipeline error: ", formatted)
    formatted = re.sub(r"^error-", "", formatted)
    formatted = re.sub(r"[-_]", " ", formatted)
    return formatted[:1].upper() + formatted[1:]


def end_reason_message(status: CallStatus, reason: str) -> Optional[str]:
    """Human-readable error_message for a terminal status; None for COMPLETED."""
    if status == CallStatus.COMPLETED:
        return None
    if status == CallStatus.VOICEMAIL:
        return "Call reached voicemail"
    if status == CallStatus.NO_ANSWER:
        return "No answer from recipient"

    for code, message in SIP_MESSAGES:
        if code in reason:
            return message
    if "busy" in reason:
        return "Recipient line was busy"
    if reason == "failed":
        return "Call failed"
    return format_end_reason(reason) or "Call failed"


# ──────────────────────────────────────────────────────────────
#  Errors / results
# ──────────────────────────────────────────────────────────────

class LifecycleError(Exception):
    """Operation not allowed in the call's current state."""


class InvalidTransitionError(LifecycleError):
    pass


class SummaryUnavailableError(LifecycleError):
    """A summary cannot be produced (no transcript)."""


@dataclass
class LifecycleOutcome:
    call_id: Optional[str]
    applied: bool
    detail: str
    status: Optional[CallStatus] = None

    def to_dict(self) -> dict:
        return {
            "call_id": self.call_id,
            "applied": self.applied,
            "detail": self.detail,
            "status": self.status.value if self.status else None,
        }


# ──────────────────────────────────────────────────────────────
#  Controller
# ──────────────────────────────────────────────────────────────

class LifecycleController:

    def __init__(
        self,
        store: BaseCallStore,
        classifier: Optional[OutcomeClassifier] = None,
        locks: Optional[KeyedLocks] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.classifier = classifier or KeywordOutcomeClassifier()
        self.locks = locks or KeyedLocks()
        self._clock = clock

    @asynccontextmanager
    async def _locked(self, call_id: str) -> AsyncIterator[CallRecord]:
        async with self.locks.hold(call_id):
            record = await self.store.get(call_id)
            if record is None:
                raise CallNotFoundError(call_id)
            yield record

    # ── Webhook events ────────────────────────────────────

    async def handle(self, event: CallEvent) -> LifecycleOutcome:
        """Apply one normalized webhook event."""
        if isinstance(event, UnhandledEvent):
            return LifecycleOutcome(event.external_call_id, False, f"ignored:{event.event_type}")

        if isinstance(event, StatusChanged):
            handler = self._on_status
        elif isinstance(event, FinalTranscriptAvailable):
            handler = self._on_final_report
        elif isinstance(event, TranscriptUpdated):
            handler = self._on_transcript_update
        else:
            raise TypeError(f"Unknown call event type: {type(event).__name__}")

        record = await self.store.get_by_external_id(event.external_call_id)
        if record is None:
            logger.warning("webhook_call_not_found",
                           external_call_id=event.external_call_id,
                           event_kind=type(event).__name__)
            return LifecycleOutcome(None, False, "call_not_found")
        return await handler(record.id, event)

    async def _on_status(self, call_id: str, event: StatusChanged) -> LifecycleOutcome:
        signal = event.status
        async with self._locked(call_id) as record:
            if signal in END_SIGNALS:
                reason = event.ended_reason or ("completed" if signal == "ended" else signal)
                return await self._end_signal(record, reason, event.final_messages)

            if record.is_terminal:
                logger.info("status_ignored_terminal", call_id=call_id,
                            signal=signal, status=record.status.value)
                return LifecycleOutcome(call_id, False, "already_terminal", record.status)

            if signal in QUEUED_SIGNALS:
                if record.status == CallStatus.PENDING:
                    record.status = CallStatus.CALLING
                    await self.store.save(record)
                    logger.info("call_calling", call_id=call_id, signal=signal)
                    return LifecycleOutcome(call_id, True, signal, record.status)
                # Late queued/ringing after answer must not regress the call
                return LifecycleOutcome(call_id, False, f"{signal}:no_change", record.status)

            if signal == IN_PROGRESS_SIGNAL:
                if record.status == CallStatus.CALLING:
                    record.status = CallStatus.IN_PROGRESS
                    if record.started_at is None:
                        record.started_at = self._clock()
                    await self.store.save(record)
                    logger.info("call_in_progress", call_id=call_id)
                    return LifecycleOutcome(call_id, True, signal, record.status)
                logger.info("status_transition_rejected", call_id=call_id,
                            signal=signal, status=record.status.value)
                return LifecycleOutcome(call_id, False, f"{signal}:no_change", record.status)

            logger.debug("status_signal_unknown", call_id=call_id, signal=signal)
            return LifecycleOutcome(call_id, False, f"unknown_status:{signal}", record.status)

    async def _end_signal(
        self,
        record: CallRecord,
        reason: str,
        final_messages: Optional[Sequence[RawMessage]],
    ) -> LifecycleOutcome:
        if final_messages is not None and not record.transcript_finalized:
            self._apply_final_transcript(record, final_messages)
            await self.store.save(record)

        if record.is_terminal:
            if record.summary is None:
                await self._summarize(record, None, final_messages)
            logger.info("terminal_redelivery", call_id=record.id, status=record.status.value)
            return LifecycleOutcome(record.id, False, "already_terminal", record.status)

        status = classify_end_reason(reason)
        return await self._terminate_locked(
            record, status, end_reason_message(status, reason.strip().lower()),
            platform_messages=final_messages, reason=reason,
        )

    async def _on_final_report(
        self, call_id: str, event: FinalTranscriptAvailable,
    ) -> LifecycleOutcome:
        async with self._locked(call_id) as record:
            applied = False
            if event.messages and not record.transcript_finalized:
                self._apply_final_transcript(record, event.messages)
                await self.store.save(record)
                applied = True

            if not record.is_terminal and event.ended_reason:
                # The report arrives after the call ended; the status-update may be lost
                status = classify_end_reason(event.ended_reason)
                return await self._terminate_locked(
                    record, status,
                    end_reason_message(status, event.ended_reason.strip().lower()),
                    platform_messages=event.messages, reason=event.ended_reason,
                )

            if record.is_terminal and record.summary is None:
                applied = await self._summarize(record, None, event.messages) or applied

            return LifecycleOutcome(call_id, applied, "end_of_call_report", record.status)

    async def _on_transcript_update(
        self, call_id: str, event: TranscriptUpdated,
    ) -> LifecycleOutcome:
        async with self._locked(call_id) as record:
            if record.transcript_finalized or record.is_terminal:
                return LifecycleOutcome(call_id, False, "transcript_closed", record.status)

            merged = merge_incremental(record.transcript, event.messages)
            if len(merged) == len(record.transcript):
                return LifecycleOutcome(call_id, False, "transcript_unchanged", record.status)

            added = len(merged) - len(record.transcript)
            record.transcript = merged
            await self.store.save(record)
            logger.debug("transcript_merged", call_id=call_id, added=added, total=len(merged))
            return LifecycleOutcome(call_id, True, f"transcript_added:{added}", record.status)

    @staticmethod
    def _apply_final_transcript(record: CallRecord, messages: Sequence[RawMessage]) -> None:
        previous = len(record.transcript)
        record.transcript = replace_final(messages)
        record.transcript_finalized = True
        logger.info("transcript_finalized", call_id=record.id,
                    previous_entries=previous, final_entries=len(record.transcript))

    # ── Terminal path ─────────────────────────────────────

    async def terminate(
        self,
        call_id: str,
        status: CallStatus,
        error_message: Optional[str] = None,
        stale_before: Optional[datetime] = None,
    ) -> LifecycleOutcome:
        """
        Force a terminal transition. No-op on an already terminal record.

        With `stale_before`, the record is left alone if it was updated at or
        after that instant (checked under the lock).
        """
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        async with self._locked(call_id) as record:
            if record.is_terminal:
                return LifecycleOutcome(call_id, False, "already_terminal", record.status)
            if stale_before is not None and record.updated_at >= stale_before:
                return LifecycleOutcome(call_id, False, "recently_updated", record.status)
            return await self._terminate_locked(record, status, error_message)

    async def _terminate_locked(
        self,
        record: CallRecord,
        status: CallStatus,
        error_message: Optional[str],
        platform_messages: Optional[Sequence[RawMessage]] = None,
        reason: Optional[str] = None,
    ) -> LifecycleOutcome:
        reached = record.conversation_state
        record.status = status
        record.completed_at = record.completed_at or self._clock()
        record.conversation_state = ConversationState.END
        record.error_message = error_message if status != CallStatus.COMPLETED else None
        await self.store.save(record)
        logger.info("call_terminal", call_id=record.id, status=status.value,
                    reason=reason, error=record.error_message)

        if record.summary is None:
            await self._summarize(record, reached, platform_messages)
        return LifecycleOutcome(record.id, True, "terminal", status)

    async def _summarize(
        self,
        record: CallRecord,
        reached: Optional[ConversationState],
        platform_messages: Optional[Sequence[RawMessage]] = None,
    ) -> bool:
        """Classify and persist the summary. Returns False on failure."""
        try:
            summary = self.classifier.classify(
                ClassificationInput.from_record(record, reached, platform_messages)
            )
            record.summary = summary
            await self.store.save(record)
        except Exception as e:
            record.summary = None
            logger.error("call_summary_failed", call_id=record.id, error=str(e))
            return False
        logger.info("call_summary_generated", call_id=record.id,
                    interest=summary.interest_level.value, outcome=summary.outcome)
        return True

    async def backfill_summary(self, call_id: str) -> bool:
        """Summarize a terminal, summary-less record. True if one was written."""
        async with self._locked(call_id) as record:
            if not record.is_terminal or record.summary is not None:
                return False
            return await self._summarize(record, None)

    async def regenerate_summary(self, call_id: str) -> CallSummary:
        """
        Manually produce the summary of a finished call.

        A summary is written at most once, so an existing one is returned
        unchanged.
        """
        async with self._locked(call_id) as record:
            if record.summary is not None:
                return record.summary
            if not record.is_terminal:
                raise InvalidTransitionError("Call is still in progress")
            if not record.transcript:
                raise SummaryUnavailableError("Cannot generate summary - no transcript available")
            if not await self._summarize(record, None):
                raise LifecycleError("Summary generation failed")
            return record.summary

    # ── Placement / API operations ────────────────────────

    async def mark_calling(self, call_id: str) -> LifecycleOutcome:
        async with self._locked(call_id) as record:
            if record.status != CallStatus.PENDING:
                return LifecycleOutcome(call_id, False, "not_pending", record.status)
            record.status = CallStatus.CALLING
            await self.store.save(record)
            return LifecycleOutcome(call_id, True, "calling", record.status)

    async def attach_external_id(self, call_id: str, external_call_id: str) -> LifecycleOutcome:
        """Bind the platform call id. The binding never changes once set."""
        async with self._locked(call_id) as record:
            if record.external_call_id == external_call_id:
                return LifecycleOutcome(call_id, False, "already_attached", record.status)
            if record.external_call_id:
                raise InvalidTransitionError(
                    f"Call {call_id} is already bound to {record.external_call_id}"
                )
            record.external_call_id = external_call_id
            await self.store.save(record)
            logger.info("call_external_id_attached", call_id=call_id,
                        external_call_id=external_call_id)
            return LifecycleOutcome(call_id, True, "attached", record.status)

    async def mark_placement_failed(self, call_id: str, error: str) -> LifecycleOutcome:
        return await self.terminate(
            call_id, CallStatus.FAILED, f"Failed to initiate call: {error}",
        )

    async def advance_conversation_state(
        self, call_id: str, state: ConversationState,
    ) -> LifecycleOutcome:
        """
        Move the dialogue marker forward (GREETING → QUALIFICATION → CLOSING).
        END is reserved for the terminal transition.
        """
        if state == ConversationState.END:
            raise InvalidTransitionError("END is set only by a terminal transition")
        async with self._locked(call_id) as record:
            if record.is_terminal:
                raise InvalidTransitionError("Call has already ended")
            current = record.conversation_state
            if CONVERSATION_ORDER[state] <= CONVERSATION_ORDER[current]:
                return LifecycleOutcome(call_id, False, f"state_unchanged:{current.value}",
                                        record.status)
            record.conversation_state = state
            await self.store.save(record)
            logger.info("conversation_state_advanced", call_id=call_id,
                        from_state=current.value, to_state=state.value)
            return LifecycleOutcome(call_id, True, f"state:{state.value}", record.status)
