"""
Vapi webhook normalizer.

Vapi wraps every server message in an envelope:
    {"message": {"type": "status-update", "status": "...", "call": {"id": ...}, ...}}

The wire format is open-ended, so the envelope models accept unknown fields.
Every message must carry a string `type` and, if present, a `call` object;
the typed body is checked only for the kinds handled below. A parsed envelope is
reduced to one of a closed set of event kinds:

    StatusChanged             status-update
    FinalTranscriptAvailable  end-of-call-report
    TranscriptUpdated         conversation-update
    UnhandledEvent            anything else (accepted and ignored)
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

logger = structlog.get_logger()


class EventValidationError(Exception):
    """Structurally invalid webhook body. `details` is [{field, message}]."""

    def __init__(self, details: list[dict[str, str]]):
        self.details = details
        fields = ", ".join(d["field"] for d in details) or "body"
        super().__init__(f"Invalid webhook payload: {fields}")


# ──────────────────────────────────────────────────────────────
#  Wire envelope
# ──────────────────────────────────────────────────────────────

class _Passthrough(BaseModel):
    model_config = ConfigDict(extra="allow")


class WireCall(_Passthrough):
    id: Optional[str] = None


class WireMessageHead(_Passthrough):
    """The only fields every server message must carry in a usable shape."""
    type: str
    call: Optional[WireCall] = None


class WebhookEnvelope(_Passthrough):
    message: WireMessageHead


class WireMessage(_Passthrough):
    role: Optional[str] = None
    message: Optional[str] = None
    content: Optional[str] = None
    time: Optional[float] = None
    endTime: Optional[float] = None
    secondsFromStart: Optional[float] = None


class WireArtifact(_Passthrough):
    messages: Optional[list[WireMessage]] = None


class WireServerMessage(_Passthrough):
    """Typed body, applied to handled event kinds only."""
    status: Optional[str] = None
    endedReason: Optional[str] = None
    artifact: Optional[WireArtifact] = None
    messages: Optional[list[WireMessage]] = None
    conversation: Optional[list[WireMessage]] = None


# ──────────────────────────────────────────────────────────────
#  Normalized events
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RawMessage:
    """One transcript fragment as delivered by the platform."""
    role: str
    text: str
    time_offset: Optional[float] = None       # secondsFromStart
    timestamp_ms: Optional[float] = None      # time
    end_timestamp_ms: Optional[float] = None  # endTime


@dataclass(frozen=True)
class StatusChanged:
    external_call_id: str
    status: str
    ended_reason: Optional[str] = None
    final_messages: Optional[tuple[RawMessage, ...]] = None


@dataclass(frozen=True)
class FinalTranscriptAvailable:
    external_call_id: str
    messages: tuple[RawMessage, ...] = ()
    ended_reason: Optional[str] = None


@dataclass(frozen=True)
class TranscriptUpdated:
    external_call_id: str
    messages: tuple[RawMessage, ...] = ()


@dataclass(frozen=True)
class UnhandledEvent:
    event_type: str
    external_call_id: Optional[str] = None


CallEvent = Union[StatusChanged, FinalTranscriptAvailable, TranscriptUpdated, UnhandledEvent]

HANDLED_TYPES = ("status-update", "end-of-call-report", "conversation-update")


# ──────────────────────────────────────────────────────────────
#  Parsing
# ──────────────────────────────────────────────────────────────

def _error_details(exc: ValidationError, prefix: str = "") -> list[dict[str, str]]:
    details = []
    for err in exc.errors():
        path = [str(p) for p in err["loc"]]
        if prefix:
            path.insert(0, prefix)
        details.append({"field": ".".join(path) or "body", "message": err["msg"]})
    return details


def parse_envelope(payload: Any) -> WebhookEnvelope:
    """Structural validation of a decoded JSON body: envelope, type and call id."""
    if not isinstance(payload, dict):
        raise EventValidationError([{"field": "body", "message": "Expected a JSON object"}])
    try:
        return WebhookEnvelope.model_validate(payload)
    except ValidationError as e:
        raise EventValidationError(_error_details(e)) from e


def _typed_body(head: WireMessageHead) -> WireServerMessage:
    try:
        return WireServerMessage.model_validate(head.model_extra or {})
    except ValidationError as e:
        raise EventValidationError(_error_details(e, prefix="message")) from e


def _to_raw(messages: Optional[list[WireMessage]]) -> tuple[RawMessage, ...]:
    # Fragments without a role cannot be attributed to a speaker
    return tuple(
        RawMessage(
            role=msg.role,
            text=msg.message if msg.message is not None else (msg.content or ""),
            time_offset=msg.secondsFromStart,
            timestamp_ms=msg.time,
            end_timestamp_ms=msg.endTime,
        )
        for msg in messages or ()
        if msg.role
    )


def _artifact_messages(body: WireServerMessage) -> Optional[tuple[RawMessage, ...]]:
    if body.artifact is None or body.artifact.messages is None:
        return None
    return _to_raw(body.artifact.messages)


def _live_messages(body: WireServerMessage) -> tuple[RawMessage, ...]:
    for source in (
        body.artifact.messages if body.artifact else None,
        body.messages,
        body.conversation,
    ):
        if source:
            return _to_raw(source)
    return ()


def normalize(envelope: WebhookEnvelope) -> Optional[CallEvent]:
    """
    Reduce a validated envelope to a CallEvent.

    Unhandled kinds are never inspected beyond type and call id. Handled
    kinds get their typed body checked here and raise EventValidationError
    when it is malformed.

    Returns None when a handled event carries no call id; there is nothing
    to correlate it with, so it is dropped.
    """
    head = envelope.message
    event_type = head.type
    external_id = head.call.id if head.call else None

    if event_type not in HANDLED_TYPES:
        logger.debug("webhook_event_unhandled", event_type=event_type, call_id=external_id)
        return UnhandledEvent(event_type=event_type, external_call_id=external_id)

    body = _typed_body(head)
    if not external_id:
        logger.warning("webhook_event_missing_call_id", event_type=event_type)
        return None

    if event_type == "status-update":
        status = (body.status or "").strip().lower()
        if not status:
            logger.warning("status_update_missing_status", call_id=external_id)
            return UnhandledEvent(event_type=event_type, external_call_id=external_id)
        return StatusChanged(
            external_call_id=external_id,
            status=status,
            ended_reason=body.endedReason,
            final_messages=_artifact_messages(body) if status == "ended" else None,
        )

    if event_type == "end-of-call-report":
        return FinalTranscriptAvailable(
            external_call_id=external_id,
            messages=_artifact_messages(body) or (),
            ended_reason=body.endedReason,
        )

    return TranscriptUpdated(external_call_id=external_id, messages=_live_messages(body))


def parse_event(payload: Any) -> Optional[CallEvent]:
    """Validate and normalize in one step. Raises EventValidationError."""
    return normalize(parse_envelope(payload))


def platform_duration(messages: Optional[Iterable[Any]] = None) -> Optional[float]:
    """
    Seconds spanned by platform message timing.

    Accepts RawMessages or stored TranscriptEntries (no endTime).

    Uses wall-clock `time`/`endTime` (ms) when present, otherwise the
    largest `secondsFromStart`.
    """
    messages = list(messages or ())
    if not messages:
        return None

    starts = [m.timestamp_ms for m in messages if m.timestamp_ms is not None]
    ends = [getattr(m, "end_timestamp_ms", None) or m.timestamp_ms for m in messages]
    ends = [e for e in ends if e is not None]
    if starts and ends:
        span = (max(ends) - min(starts)) / 1000.0
        if span > 0:
            return span

    offsets = [m.time_offset for m in messages if m.time_offset is not None]
    if offsets:
        return max(offsets)
    return None
