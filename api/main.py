"""
FastAPI Application — Vapi webhooks + call management API.

Provides:
- Webhook endpoint for Vapi server messages (signature-gated)
- REST API to start, inspect and end calls
- Health check

The store, lifecycle controller, placement client and reaper are built by
create_app() and owned by the app: the lifespan opens the store, starts the
reaper and closes everything on shutdown.
"""
from __future__ import annotations

import json
import structlog
from contextlib import asynccontextmanager
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config.settings import Settings, get_settings
from channels.vapi.client import VapiClient, VoicePlatformError
from channels.vapi.events import EventValidationError, parse_event
from channels.vapi.signature import SIGNATURE_HEADER, check_webhook_signature
from context.lifecycle import (
    InvalidTransitionError, LifecycleController, SummaryUnavailableError,
)
from core.outcome import KeywordOutcomeClassifier
from core.reaper import StaleCallReaper
from database.store_base import BaseCallStore, CallNotFoundError
from database.store_factory import create_store
from models.schemas import CallStatus, ConversationState, LeadData, utcnow

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class ConversationStateRequest(BaseModel):
    state: ConversationState


def _field_errors(errors: list[dict[str, Any]]) -> list[dict[str, str]]:
    return [
        {"field": ".".join(str(loc) for loc in e["loc"] if loc != "body"), "message": e["msg"]}
        for e in errors
    ]


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[BaseCallStore] = None,
    placement: Optional[VapiClient] = None,
) -> FastAPI:
    """
    Build the application.

    `store` and `placement` may be injected (tests, embedding); otherwise
    they are created from settings.
    """
    settings = settings or get_settings()
    owns_store = store is None
    store = store or create_store(settings.database)
    placement = placement or VapiClient(
        api_key=settings.vapi.api_key,
        phone_number_id=settings.vapi.phone_number_id,
        assistant_id=settings.vapi.assistant_id,
        base_url=settings.vapi.base_url,
        timeout=settings.vapi.timeout_seconds,
    )
    controller = LifecycleController(store, KeywordOutcomeClassifier())
    reaper = StaleCallReaper(
        controller, store,
        timeout_s=settings.reaper.timeout_seconds,
        interval_s=settings.reaper.interval_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.init()
        if settings.reaper.enabled:
            await reaper.start()
        if not settings.vapi.webhook_secret:
            logger.warning("webhook_secret_not_configured",
                           allow_unsigned=settings.vapi.allow_unsigned_webhooks)
        logger.info("call_reconciler_started",
                    store=type(store).__name__, reaper=settings.reaper.enabled)
        yield

        await reaper.stop()
        await placement.close()
        if owns_store:
            await store.close()
        logger.info("call_reconciler_stopped")

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Vapi call lifecycle and webhook reconciliation",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.controller = controller
    app.state.reaper = reaper
    app.state.placement = placement

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Map domain exceptions to HTTP responses
    @app.exception_handler(CallNotFoundError)
    async def _not_found(_: Request, exc: CallNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": "Call not found", "call_id": exc.call_id})

    @app.exception_handler(RequestValidationError)
    async def _request_validation(_: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": "Validation error", "details": _field_errors(exc.errors())},
        )

    async def _get_call_or_404(call_id: str):
        record = await store.get(call_id)
        if record is None:
            raise CallNotFoundError(call_id)
        return record

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "store": type(store).__name__,
            "reaper_running": reaper.running,
        }

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS: Vapi
    # ══════════════════════════════════════════════════════════

    @app.post("/webhook/vapi")
    async def vapi_webhook(request: Request):
        """
        Receive a Vapi server message.

        401 on signature failure, 400 on a structurally invalid body,
        200 for everything else (including ignored events).
        """
        body_bytes = await request.body()

        signature = request.headers.get(SIGNATURE_HEADER)
        if not check_webhook_signature(
            body_bytes, signature,
            settings.vapi.webhook_secret,
            settings.vapi.allow_unsigned_webhooks,
        ):
            return JSONResponse(
                status_code=401,
                content={"error": "Unauthorized", "message": "Invalid webhook signature"},
            )

        try:
            payload = json.loads(body_bytes)
        except ValueError:
            logger.warning("vapi_webhook_malformed_json", size=len(body_bytes))
            return JSONResponse(
                status_code=400,
                content={
                    "error": "Invalid webhook payload",
                    "details": [{"field": "body", "message": "Body is not valid JSON"}],
                },
            )

        try:
            event = parse_event(payload)
        except EventValidationError as e:
            logger.warning("vapi_webhook_invalid", details=e.details)
            return JSONResponse(
                status_code=400,
                content={"error": "Invalid webhook payload", "details": e.details},
            )

        if event is not None:
            try:
                outcome = await controller.handle(event)
                logger.debug("vapi_webhook_processed", **outcome.to_dict())
            except Exception:
                # Upstream retries must not be triggered by internal failures
                logger.exception("vapi_webhook_processing_failed", event_kind=type(event).__name__)

        return {"success": True}

    # ══════════════════════════════════════════════════════════
    #  CALLS
    # ══════════════════════════════════════════════════════════

    @app.post("/calls/start")
    async def start_call(lead: LeadData):
        record = await store.create(lead.phone, lead)
        await controller.mark_calling(record.id)

        try:
            result = await placement.place_call(lead)
        except VoicePlatformError as e:
            logger.error("call_placement_failed", call_id=record.id, error=str(e))
            await controller.mark_placement_failed(record.id, str(e))
            return JSONResponse(
                status_code=502,
                content={
                    "error": "Failed to initiate call",
                    "message": str(e),
                    "call_id": record.id,
                },
            )

        await controller.attach_external_id(record.id, result.external_call_id)
        logger.info("call_started", call_id=record.id, external_call_id=result.external_call_id)
        return {
            "success": True,
            "call_id": record.id,
            "external_call_id": result.external_call_id,
            "status": CallStatus.CALLING.value,
        }

    @app.get("/calls")
    async def list_calls(
        status: Optional[str] = None,
        limit: int = Query(50, ge=1, le=200),
    ):
        if status:
            try:
                wanted = CallStatus(status.upper())
            except ValueError:
                raise HTTPException(400, f"Unknown call status: {status}")
            records = await store.list_by_status(wanted)
            records.sort(key=lambda r: r.created_at, reverse=True)
            records = records[:limit]
        else:
            records = await store.list_recent(limit)
        return {"calls": [r.to_public_dict() for r in records], "count": len(records)}

    @app.get("/calls/{call_id}")
    async def get_call(call_id: str):
        record = await _get_call_or_404(call_id)
        return record.to_public_dict()

    @app.get("/calls/{call_id}/summary")
    async def get_call_summary(call_id: str):
        record = await _get_call_or_404(call_id)
        if record.summary is None:
            return JSONResponse(status_code=404, content={"error": "Call summary not available yet"})
        return {
            "call_id": record.id,
            "status": record.status.value,
            "summary": record.summary.model_dump(mode="json"),
            "transcript": [e.model_dump(mode="json") for e in record.transcript],
        }

    @app.post("/calls/{call_id}/end")
    async def end_call(call_id: str):
        record = await _get_call_or_404(call_id)
        if record.is_terminal:
            return {"success": True, "message": "Call already ended", "status": record.status.value}

        if record.external_call_id:
            try:
                await placement.end_call(record.external_call_id)
            except VoicePlatformError as e:
                logger.error("call_end_failed", call_id=call_id, error=str(e))
                return JSONResponse(
                    status_code=502,
                    content={"error": "Failed to end call", "message": str(e)},
                )

        outcome = await controller.terminate(call_id, CallStatus.COMPLETED)
        return {"success": True, "message": "Call ended", "status": outcome.status.value}

    @app.post("/calls/{call_id}/state")
    async def update_conversation_state(call_id: str, req: ConversationStateRequest):
        try:
            outcome = await controller.advance_conversation_state(call_id, req.state)
        except InvalidTransitionError as e:
            return JSONResponse(status_code=409, content={"error": str(e)})
        record = await _get_call_or_404(call_id)
        return {
            "success": True,
            "changed": outcome.applied,
            "conversation_state": record.conversation_state.value,
        }

    @app.post("/calls/{call_id}/generate-summary")
    async def generate_summary(call_id: str):
        try:
            summary = await controller.regenerate_summary(call_id)
        except SummaryUnavailableError as e:
            return JSONResponse(status_code=400, content={"error": str(e)})
        except InvalidTransitionError as e:
            return JSONResponse(status_code=409, content={"error": str(e)})
        return {"success": True, "summary": summary.model_dump(mode="json")}

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
