"""
Vapi voice platform integration.

- signature: webhook HMAC verification
- events:    webhook envelope validation and normalization
- client:    outbound call placement (place_call, end_call, get_call, close)

Usage:
    from channels.vapi import VapiClient, parse_event
    client = VapiClient(api_key, phone_number_id, assistant_id)
    result = await client.place_call(lead)
"""
from channels.vapi.signature import (
    SIGNATURE_HEADER, compute_signature, verify_signature, check_webhook_signature,
)
from channels.vapi.events import (
    EventValidationError, RawMessage, CallEvent,
    StatusChanged, FinalTranscriptAvailable, TranscriptUpdated, UnhandledEvent,
    parse_envelope, normalize, parse_event, platform_duration,
)
from channels.vapi.client import VapiClient, PlacementResult, VoicePlatformError

__all__ = [
    "SIGNATURE_HEADER", "compute_signature", "verify_signature", "check_webhook_signature",
    "EventValidationError", "RawMessage", "CallEvent",
    "StatusChanged", "FinalTranscriptAvailable", "TranscriptUpdated", "UnhandledEvent",
    "parse_envelope", "normalize", "parse_event", "platform_duration",
    "VapiClient", "PlacementResult", "VoicePlatformError",
]
