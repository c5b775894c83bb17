"""Tests for the call lifecycle controller."""
import asyncio

import pytest
from structlog.testing import capture_logs

from channels.vapi.events import StatusChanged, UnhandledEvent, parse_event
from context.lifecycle import (
    InvalidTransitionError, LifecycleController, SummaryUnavailableError,
    classify_end_reason, end_reason_message, format_end_reason,
)
from core.outcome import KeywordOutcomeClassifier, OutcomeClassifier
from database.store_base import CallNotFoundError
from models.schemas import (
    CallStatus, ConversationState, InterestLevel, TranscriptEntry, TranscriptRole,
)


class ExplodingClassifier(OutcomeClassifier):
    def classify(self, data):
        raise RuntimeError("model unavailable")


class CountingClassifier(KeywordOutcomeClassifier):
    def __init__(self):
        self.calls = 0

    def classify(self, data):
        self.calls += 1
        return super().classify(data)


async def _deliver(controller, payload):
    return await controller.handle(parse_event(payload))


# ──────────────────────────────────────────────────────────────
#  End reasons
# ──────────────────────────────────────────────────────────────

class TestEndReasons:
    @pytest.mark.parametrize("reason,expected", [
        ("customer-ended-call", CallStatus.COMPLETED),
        ("assistant-ended-call", CallStatus.COMPLETED),
        ("silence-timed-out", CallStatus.COMPLETED),
        ("completed", CallStatus.COMPLETED),
        ("voicemail", CallStatus.VOICEMAIL),
        ("voicemail-reached", CallStatus.VOICEMAIL),
        ("no-answer-voicemail", CallStatus.VOICEMAIL),
        ("customer-did-not-answer", CallStatus.FAILED),
        ("no-answer", CallStatus.NO_ANSWER),
        ("call.in-progress.error-sip-503", CallStatus.FAILED),
        ("pipeline-error-openai-voice-failed", CallStatus.FAILED),
        ("", CallStatus.FAILED),
    ])
    def test_classification(self, reason, expected):
        assert classify_end_reason(reason) == expected

    @pytest.mark.parametrize("status,reason,message", [
        (CallStatus.COMPLETED, "customer-ended-call", None),
        (CallStatus.VOICEMAIL, "voicemail", "Call reached voicemail"),
        (CallStatus.NO_ANSWER, "no-answer", "No answer from recipient"),
        (CallStatus.FAILED, "call.in-progress.error-sip-503",
         "Service Unavailable (SIP 503) - recipient's phone service temporarily unavailable"),
        (CallStatus.FAILED, "error-sip-486-busy", "Busy Here (SIP 486) - recipient is busy"),
        (CallStatus.FAILED, "sip-480", "Temporarily Unavailable (SIP 480)"),
        (CallStatus.FAILED, "busy", "Recipient line was busy"),
        (CallStatus.FAILED, "failed", "Call failed"),
        (CallStatus.FAILED, "pipeline-error-openai-voice-failed", "Pipeline error: openai voice failed"),
        (CallStatus.FAILED, "", "Call failed"),
    ])
    def test_error_messages(self, status, reason, message):
        assert end_reason_message(status, reason) == message

    def test_format_strips_call_prefix(self):
        assert format_end_reason("call.in-progress.error-providerfault-transport") == \
            "Providerfault transport"


# ──────────────────────────────────────────────────────────────
#  Status transitions
# ──────────────────────────────────────────────────────────────

class TestStatusTransitions:
    @pytest.mark.asyncio
    async def test_ringing_moves_pending_to_calling(self, store, controller, sample_lead, webhook):
        record = await store.create(sample_lead.phone, sample_lead)
        await controller.attach_external_id(record.id, "vapi-x")

        outcome = await _deliver(controller, webhook.status("vapi-x", "ringing"))
        assert outcome.applied
        assert (await store.get(record.id)).status == CallStatus.CALLING

    @pytest.mark.asyncio
    async def test_in_progress_sets_started_at(self, open_call, controller, store, clock, webhook):
        clock.advance(4)
        await _deliver(controller, webhook.status("vapi-call-1", "in-progress"))
        record = await store.get(open_call.id)
        assert record.status == CallStatus.IN_PROGRESS
        assert record.started_at == clock()

    @pytest.mark.asyncio
    async def test_late_ringing_does_not_regress(self, live_call, controller, store, webhook):
        outcome = await _deliver(controller, webhook.status("vapi-call-1", "ringing"))
        assert outcome.applied is False
        assert (await store.get(live_call.id)).status == CallStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_in_progress_requires_calling(self, store, controller, sample_lead, webhook):
        record = await store.create(sample_lead.phone, sample_lead)
        await controller.attach_external_id(record.id, "vapi-y")
        outcome = await _deliver(controller, webhook.status("vapi-y", "in-progress"))
        assert outcome.applied is False
        assert (await store.get(record.id)).status == CallStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_status_is_ignored(self, open_call, controller, store, webhook):
        outcome = await _deliver(controller, webhook.status("vapi-call-1", "forwarding"))
        assert outcome.applied is False
        assert (await store.get(open_call.id)).status == CallStatus.CALLING


# ──────────────────────────────────────────────────────────────
#  Terminal transitions
# ──────────────────────────────────────────────────────────────

class TestTerminal:
    @pytest.mark.asyncio
    async def test_customer_ended_call_completes(self, live_call, controller, store, clock, webhook):
        clock.advance(95)
        outcome = await _deliver(controller, webhook.status(
            "vapi-call-1", "ended", "customer-ended-call",
            messages=[
                webhook.line("bot", "Hi Dale, calling about your land in Travis County", 0.5),
                webhook.line("user", "Maybe, tell me more", 4.0),
            ],
        ))
        record = await store.get(live_call.id)
        assert outcome.applied
        assert record.status == CallStatus.COMPLETED
        assert record.error_message is None
        assert record.completed_at == clock()
        assert record.conversation_state == ConversationState.END
        assert record.transcript_finalized
        assert [e.text for e in record.transcript][-1] == "Maybe, tell me more"
        assert record.summary is not None
        assert record.summary.interest_level == InterestLevel.WARM
        assert record.summary.duration == 95

    @pytest.mark.asyncio
    async def test_voicemail(self, open_call, controller, store, webhook):
        await _deliver(controller, webhook.status("vapi-call-1", "ended", "voicemail-reached"))
        record = await store.get(open_call.id)
        assert record.status == CallStatus.VOICEMAIL
        assert record.error_message == "Call reached voicemail"
        assert record.summary.next_action == "Retry call tomorrow"

    @pytest.mark.asyncio
    async def test_ended_without_reason_is_completed(self, live_call, controller, store, webhook):
        await _deliver(controller, webhook.status("vapi-call-1", "ended"))
        assert (await store.get(live_call.id)).status == CallStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_busy_signal(self, open_call, controller, store, webhook):
        await _deliver(controller, webhook.status("vapi-call-1", "busy"))
        record = await store.get(open_call.id)
        assert record.status == CallStatus.FAILED
        assert record.error_message == "Recipient line was busy"

    @pytest.mark.asyncio
    async def test_no_answer_signal(self, open_call, controller, store, webhook):
        await _deliver(controller, webhook.status("vapi-call-1", "no-answer"))
        record = await store.get(open_call.id)
        assert record.status == CallStatus.NO_ANSWER
        assert record.error_message == "No answer from recipient"

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, live_call, controller, store, clock, webhook):
        payload = webhook.status("vapi-call-1", "ended", "customer-ended-call")
        await _deliver(controller, payload)
        first = await store.get(live_call.id)

        clock.advance(60)
        outcome = await _deliver(controller, payload)
        second = await store.get(live_call.id)
        assert outcome.applied is False
        assert second.completed_at == first.completed_at
        assert second.summary == first.summary

    @pytest.mark.asyncio
    async def test_terminal_is_a_sink(self, live_call, controller, store, webhook):
        await _deliver(controller, webhook.status("vapi-call-1", "ended", "customer-ended-call"))
        for payload in (
            webhook.status("vapi-call-1", "ringing"),
            webhook.status("vapi-call-1", "in-progress"),
            webhook.status("vapi-call-1", "ended", "pipeline-error-openai-voice-failed"),
            webhook.status("vapi-call-1", "failed"),
        ):
            await _deliver(controller, payload)
        record = await store.get(live_call.id)
        assert record.status == CallStatus.COMPLETED
        assert record.error_message is None

    @pytest.mark.asyncio
    async def test_terminate_rejects_open_status(self, open_call, controller):
        with pytest.raises(ValueError):
            await controller.terminate(open_call.id, CallStatus.IN_PROGRESS)

    @pytest.mark.asyncio
    async def test_terminate_unknown_call(self, controller):
        with pytest.raises(CallNotFoundError):
            await controller.terminate("missing", CallStatus.FAILED)

    @pytest.mark.asyncio
    async def test_terminate_skips_recently_updated(self, live_call, controller, store, clock):
        cutoff = clock()
        clock.advance(5)
        await controller.advance_conversation_state(live_call.id, ConversationState.QUALIFICATION)
        outcome = await controller.terminate(live_call.id, CallStatus.FAILED, stale_before=cutoff)
        assert outcome.detail == "recently_updated"
        assert (await store.get(live_call.id)).status == CallStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_concurrent_end_events_summarize_once(self, live_call, store, clock, webhook):
        classifier = CountingClassifier()
        controller = LifecycleController(store, classifier, clock=clock)
        outcomes = await asyncio.gather(
            _deliver(controller, webhook.status("vapi-call-1", "ended", "customer-ended-call")),
            _deliver(controller, webhook.status("vapi-call-1", "ended", "silence-timed-out")),
            _deliver(controller, webhook.report("vapi-call-1", [webhook.line("user", "bye", 3)],
                                                "customer-ended-call")),
        )
        assert sum(1 for o in outcomes if o.detail == "terminal") == 1
        assert classifier.calls == 1
        record = await store.get(live_call.id)
        assert record.status == CallStatus.COMPLETED
        assert record.summary is not None


# ──────────────────────────────────────────────────────────────
#  Transcript reconciliation
# ──────────────────────────────────────────────────────────────

class TestTranscriptReconciliation:
    @pytest.mark.asyncio
    async def test_incremental_updates_merge(self, live_call, controller, store, webhook):
        await _deliver(controller, webhook.update("vapi-call-1", [webhook.line("bot", "Hi", 0.5)]))
        outcome = await _deliver(controller, webhook.update("vapi-call-1", [
            webhook.line("bot", "Hi", 0.5),
            webhook.line("user", "Who is this?", 2.1),
        ]))
        assert outcome.detail == "transcript_added:1"
        record = await store.get(live_call.id)
        assert [e.text for e in record.transcript] == ["Hi", "Who is this?"]
        assert record.transcript_finalized is False

    @pytest.mark.asyncio
    async def test_repeated_update_is_unchanged(self, live_call, controller, webhook):
        payload = webhook.update("vapi-call-1", [webhook.line("bot", "Hi", 0.5)])
        await _deliver(controller, payload)
        outcome = await _deliver(controller, payload)
        assert outcome.applied is False

    @pytest.mark.asyncio
    async def test_final_transcript_wins(self, live_call, controller, store, webhook):
        await _deliver(controller, webhook.update("vapi-call-1", [
            webhook.line("user", "yes I'm interested", 1),
            webhook.line("bot", "great, one moment", 2),
        ]))
        await _deliver(controller, webhook.report("vapi-call-1", [
            webhook.line("user", "yes I'm interested"),
            webhook.line("bot", "great — let's talk price"),
        ], "customer-ended-call"))

        record = await store.get(live_call.id)
        assert [e.text for e in record.transcript] == ["yes I'm interested", "great — let's talk price"]
        assert record.status == CallStatus.COMPLETED

        # Late partials never reopen a finalized transcript
        outcome = await _deliver(controller, webhook.update("vapi-call-1", [
            webhook.line("bot", "great, one moment", 2),
        ]))
        assert outcome.detail == "transcript_closed"
        assert len((await store.get(live_call.id)).transcript) == 2

    @pytest.mark.asyncio
    async def test_report_without_reason_keeps_call_open(self, live_call, controller, store, webhook):
        await _deliver(controller, webhook.report("vapi-call-1", [webhook.line("user", "hello", 1)]))
        record = await store.get(live_call.id)
        assert record.transcript_finalized
        assert record.status == CallStatus.IN_PROGRESS

        await _deliver(controller, webhook.status(
            "vapi-call-1", "ended", "customer-ended-call",
            messages=[webhook.line("user", "a different rendering", 1)],
        ))
        record = await store.get(live_call.id)
        assert record.status == CallStatus.COMPLETED
        assert [e.text for e in record.transcript] == ["hello"]

    @pytest.mark.asyncio
    async def test_report_after_timeout_fills_transcript(self, live_call, controller, store, webhook):
        await controller.terminate(live_call.id, CallStatus.FAILED, "Call timed out")
        await _deliver(controller, webhook.report("vapi-call-1", [webhook.line("user", "hello?", 1)],
                                                  "customer-ended-call"))
        record = await store.get(live_call.id)
        assert record.status == CallStatus.FAILED
        assert record.error_message == "Call timed out"
        assert [e.text for e in record.transcript] == ["hello?"]


# ──────────────────────────────────────────────────────────────
#  Correlation and dispatch
# ──────────────────────────────────────────────────────────────

class TestDispatch:
    @pytest.mark.asyncio
    async def test_unknown_external_id(self, controller, store, webhook):
        outcome = await _deliver(controller, webhook.status("never-placed", "ended"))
        assert outcome.detail == "call_not_found"
        assert outcome.applied is False
        assert await store.list_recent() == []

    @pytest.mark.asyncio
    async def test_unknown_external_id_is_logged(self, controller, webhook):
        with capture_logs() as logs:
            await _deliver(controller, webhook.report("never-placed", [], "customer-ended-call"))
        miss = [e for e in logs if e["event"] == "webhook_call_not_found"]
        assert miss[0]["external_call_id"] == "never-placed"
        assert miss[0]["event_kind"] == "FinalTranscriptAvailable"

    @pytest.mark.asyncio
    async def test_unhandled_event(self, controller):
        outcome = await controller.handle(UnhandledEvent(event_type="speech-update"))
        assert outcome.detail == "ignored:speech-update"

    @pytest.mark.asyncio
    async def test_unknown_event_type_raises(self, controller):
        with pytest.raises(TypeError):
            await controller.handle(object())

    @pytest.mark.asyncio
    async def test_outcome_to_dict(self, open_call, controller):
        outcome = await controller.handle(StatusChanged(external_call_id="vapi-call-1", status="in-progress"))
        assert outcome.to_dict() == {
            "call_id": open_call.id, "applied": True,
            "detail": "in-progress", "status": "IN_PROGRESS",
        }


# ──────────────────────────────────────────────────────────────
#  Summaries
# ──────────────────────────────────────────────────────────────

class TestSummaries:
    @pytest.mark.asyncio
    async def test_classifier_failure_leaves_record_terminal(self, live_call, store, clock, webhook):
        broken = LifecycleController(store, ExplodingClassifier(), clock=clock)
        outcome = await _deliver(broken, webhook.status("vapi-call-1", "ended", "customer-ended-call"))
        record = await store.get(live_call.id)
        assert outcome.applied
        assert record.status == CallStatus.COMPLETED
        assert record.summary is None

        healthy = LifecycleController(store, KeywordOutcomeClassifier(), clock=clock)
        assert await healthy.backfill_summary(live_call.id) is True
        assert (await store.get(live_call.id)).summary is not None
        assert await healthy.backfill_summary(live_call.id) is False

    @pytest.mark.asyncio
    async def test_backfill_skips_open_calls(self, live_call, controller):
        assert await controller.backfill_summary(live_call.id) is False

    @pytest.mark.asyncio
    async def test_summary_uses_reached_state(self, live_call, controller, store, webhook):
        await controller.advance_conversation_state(live_call.id, ConversationState.CLOSING)
        await _deliver(controller, webhook.status(
            "vapi-call-1", "ended", "customer-ended-call",
            messages=[webhook.line("user", "Yes, how much would you pay?", 3)],
        ))
        summary = (await store.get(live_call.id)).summary
        assert summary.outcome == "Discussed offer - ready for offer"
        assert summary.appointment_scheduled is True

    @pytest.mark.asyncio
    async def test_regenerate_requires_terminal(self, live_call, controller):
        with pytest.raises(InvalidTransitionError):
            await controller.regenerate_summary(live_call.id)

    @pytest.mark.asyncio
    async def test_regenerate_requires_transcript(self, store, controller, sample_lead):
        record = await store.create(sample_lead.phone, sample_lead)
        record.status = CallStatus.COMPLETED
        await store.save(record)
        with pytest.raises(SummaryUnavailableError):
            await controller.regenerate_summary(record.id)

    @pytest.mark.asyncio
    async def test_regenerate_writes_once(self, store, controller, sample_lead):
        record = await store.create(sample_lead.phone, sample_lead)
        record.status = CallStatus.COMPLETED
        record.transcript = [TranscriptEntry(role=TranscriptRole.USER, text="not interested")]
        await store.save(record)

        first = await controller.regenerate_summary(record.id)
        second = await controller.regenerate_summary(record.id)
        assert first.interest_level == InterestLevel.NOT_INTERESTED
        assert second == first


# ──────────────────────────────────────────────────────────────
#  Placement and API operations
# ──────────────────────────────────────────────────────────────

class TestOperations:
    @pytest.mark.asyncio
    async def test_mark_calling_only_from_pending(self, open_call, controller):
        outcome = await controller.mark_calling(open_call.id)
        assert outcome.applied is False

    @pytest.mark.asyncio
    async def test_attach_external_id_is_write_once(self, open_call, controller):
        again = await controller.attach_external_id(open_call.id, "vapi-call-1")
        assert again.applied is False
        with pytest.raises(InvalidTransitionError):
            await controller.attach_external_id(open_call.id, "vapi-call-2")

    @pytest.mark.asyncio
    async def test_placement_failure(self, store, controller, sample_lead):
        record = await store.create(sample_lead.phone, sample_lead)
        await controller.mark_calling(record.id)
        await controller.mark_placement_failed(record.id, "Invalid phone number")

        record = await store.get(record.id)
        assert record.status == CallStatus.FAILED
        assert record.error_message == "Failed to initiate call: Invalid phone number"
        assert record.summary.outcome == "Call failed or timed out"

    @pytest.mark.asyncio
    async def test_conversation_state_moves_forward_only(self, live_call, controller, store):
        assert (await controller.advance_conversation_state(
            live_call.id, ConversationState.CLOSING)).applied
        back = await controller.advance_conversation_state(live_call.id, ConversationState.QUALIFICATION)
        assert back.applied is False
        assert (await store.get(live_call.id)).conversation_state == ConversationState.CLOSING

    @pytest.mark.asyncio
    async def test_conversation_state_end_is_reserved(self, live_call, controller):
        with pytest.raises(InvalidTransitionError):
            await controller.advance_conversation_state(live_call.id, ConversationState.END)

    @pytest.mark.asyncio
    async def test_conversation_state_closed_after_terminal(self, live_call, controller):
        await controller.terminate(live_call.id, CallStatus.COMPLETED)
        with pytest.raises(InvalidTransitionError):
            await controller.advance_conversation_state(live_call.id, ConversationState.CLOSING)

    @pytest.mark.asyncio
    async def test_locks_released(self, live_call, controller):
        await controller.terminate(live_call.id, CallStatus.COMPLETED)
        assert len(controller.locks) == 0
