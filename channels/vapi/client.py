"""
Vapi REST client — outbound call placement and call management.

Call flow:
1. place_call() → Vapi dials the lead with the configured assistant
2. Status / transcript webhooks arrive at /webhook/vapi
3. end_call() terminates an active call

API Docs: https://docs.vapi.ai/api-reference/calls/create
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from models.schemas import LeadData

logger = structlog.get_logger()


class VoicePlatformError(Exception):
    """Failure talking to the voice platform."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


@dataclass
class PlacementResult:
    external_call_id: str
    status: str = "queued"
    raw: Optional[dict[str, Any]] = None


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, VoicePlatformError) and exc.retryable


class VapiClient:
    """Vapi REST API client for outbound calls."""

    def __init__(
        self,
        api_key: str,
        phone_number_id: str,
        assistant_id: str,
        base_url: str = "https://api.vapi.ai",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.phone_number_id = phone_number_id
        self.assistant_id = assistant_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.phone_number_id and self.assistant_id)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                transport=self._transport,
            )
        return self._client

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        try:
            resp = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error("vapi_transport_error", path=path, error=str(e))
            raise VoicePlatformError(f"Vapi API error: {e}", retryable=True) from e

        if resp.status_code >= 400:
            logger.error(
                "vapi_api_error",
                status=resp.status_code,
                body=resp.text[:500],
                path=path,
            )
            raise VoicePlatformError(
                f"Vapi API error: {_error_message(resp)}",
                status_code=resp.status_code,
                retryable=resp.status_code >= 500 or resp.status_code == 429,
            )
        if not resp.content:
            return {}
        return resp.json()

    # ── Call Management ─────────────────────────────────────

    async def place_call(self, lead: LeadData) -> PlacementResult:
        """
        Place an outbound call to the lead.

        Lead fields are passed to the assistant as variable values.
        """
        if not self.configured:
            raise VoicePlatformError("Vapi API error: client is not configured")

        payload = {
            "phoneNumberId": self.phone_number_id,
            "assistantId": self.assistant_id,
            "customer": {"number": lead.phone, "name": lead.full_name},
            "assistantOverrides": {
                "variableValues": {
                    "firstName": lead.first_name,
                    "lastName": lead.last_name,
                    "county": lead.county,
                    "state": lead.state,
                    "acreage": str(lead.acreage) if lead.acreage is not None else "unknown",
                    "propertyAddress": lead.property_address or "your property",
                },
            },
        }

        logger.info("vapi_place_call", to=lead.phone)
        result = await self._request("POST", "/call", json=payload)

        call_id = result.get("id")
        if not call_id:
            raise VoicePlatformError("Vapi API error: response did not include a call id")

        return PlacementResult(
            external_call_id=call_id,
            status=result.get("status", "queued"),
            raw=result,
        )

    async def get_call(self, external_call_id: str) -> dict[str, Any]:
        """Full call object: status, cost, artifact, etc."""
        return await self._request("GET", f"/call/{external_call_id}")

    async def end_call(self, external_call_id: str) -> None:
        """Terminate an active call on the platform side."""
        logger.info("vapi_end_call", call_id=external_call_id)
        await self._request("DELETE", f"/call/{external_call_id}")

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        msg = body.get("message") or body.get("error")
        if isinstance(msg, list):
            msg = "; ".join(str(m) for m in msg)
        if msg:
            return str(msg)
    return f"HTTP {resp.status_code}"
