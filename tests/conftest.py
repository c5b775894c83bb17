"""Shared test fixtures for the call reconciliation service."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from models.schemas import CallRecord, CallStatus, LeadData
from database.store_memory import InMemoryCallStore
from context.lifecycle import LifecycleController
from core.outcome import KeywordOutcomeClassifier


class FakeClock:
    """Manually advanced clock shared by the store, controller and reaper."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 3, 1, 15, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class WebhookFactory:
    """Builds Vapi server-message envelopes."""

    @staticmethod
    def status(call_id: str, status: str, ended_reason: Optional[str] = None,
               messages: Optional[list[dict[str, Any]]] = None) -> dict[str, Any]:
        message: dict[str, Any] = {
            "type": "status-update",
            "status": status,
            "call": {"id": call_id, "status": status},
        }
        if ended_reason:
            message["endedReason"] = ended_reason
        if messages is not None:
            message["artifact"] = {"messages": messages}
        return {"message": message}

    @staticmethod
    def report(call_id: str, messages: list[dict[str, Any]],
               ended_reason: Optional[str] = None) -> dict[str, Any]:
        message: dict[str, Any] = {
            "type": "end-of-call-report",
            "call": {"id": call_id, "cost": 0.12},
            "artifact": {"messages": messages, "recordingUrl": "https://example.com/rec.wav"},
        }
        if ended_reason:
            message["endedReason"] = ended_reason
        return {"message": message}

    @staticmethod
    def update(call_id: str, messages: list[dict[str, Any]]) -> dict[str, Any]:
        return {"message": {
            "type": "conversation-update",
            "call": {"id": call_id},
            "artifact": {"messages": messages},
        }}

    @staticmethod
    def line(role: str, text: str, offset: Optional[float] = None, **extra) -> dict[str, Any]:
        msg: dict[str, Any] = {"role": role, "message": text}
        if offset is not None:
            msg["secondsFromStart"] = offset
        msg.update(extra)
        return msg


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def webhook() -> WebhookFactory:
    return WebhookFactory()


@pytest.fixture
def sample_lead() -> LeadData:
    return LeadData(
        first_name="Dale",
        last_name="Hutchins",
        phone="+15125550142",
        county="Travis",
        state="TX",
        acreage=40,
        property_address="1200 Ranch Rd 620",
    )


@pytest.fixture
def store(clock) -> InMemoryCallStore:
    return InMemoryCallStore(clock=clock)


@pytest.fixture
def controller(store, clock) -> LifecycleController:
    return LifecycleController(store, KeywordOutcomeClassifier(), clock=clock)


@pytest_asyncio.fixture
async def open_call(store, controller, sample_lead) -> CallRecord:
    """A placed call: CALLING with external id `vapi-call-1`."""
    record = await store.create(sample_lead.phone, sample_lead)
    await controller.mark_calling(record.id)
    await controller.attach_external_id(record.id, "vapi-call-1")
    return await store.get(record.id)


@pytest_asyncio.fixture
async def live_call(open_call, controller) -> CallRecord:
    """A placed call that has been answered (IN_PROGRESS)."""
    from channels.vapi.events import StatusChanged
    await controller.handle(StatusChanged(external_call_id="vapi-call-1", status="in-progress"))
    record = await controller.store.get(open_call.id)
    assert record.status == CallStatus.IN_PROGRESS
    return record
