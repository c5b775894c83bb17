"""
Webhook signature verification for Vapi server messages.

Vapi signs the raw request body with HMAC-SHA256 using the shared
webhook secret and sends the hex digest in the `x-vapi-signature` header.
"""
from __future__ import annotations

import hashlib
import hmac
import structlog
from typing import Optional, Union

logger = structlog.get_logger()

SIGNATURE_HEADER = "x-vapi-signature"


def compute_signature(raw_body: Union[bytes, str], secret: str) -> str:
    """Hex HMAC-SHA256 of the raw body."""
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(
    raw_body: Optional[Union[bytes, str]],
    signature: Optional[str],
    secret: str,
) -> bool:
    """
    Constant-time check of a claimed signature against the raw body.

    Missing or malformed input is a failed verification, never an exception.
    """
    if not signature or raw_body is None or not secret:
        return False
    try:
        expected = compute_signature(raw_body, secret)
        return hmac.compare_digest(expected, signature.strip())
    except (TypeError, ValueError, UnicodeError):
        return False


def check_webhook_signature(
    raw_body: Optional[bytes],
    signature: Optional[str],
    secret: str,
    allow_unsigned: bool = False,
) -> bool:
    """
    Gate applied before any event processing.

    - Secret configured   → the verification result.
    - No secret, allow_unsigned → accepted with a warning (development only).
    - No secret otherwise → rejected.
    """
    if secret:
        ok = verify_signature(raw_body, signature, secret)
        if not ok:
            logger.warning("webhook_signature_invalid", has_signature=bool(signature))
        return ok

    if allow_unsigned:
        logger.warning(
            "webhook_signature_verification_disabled",
            reason="no webhook secret configured and unsigned webhooks allowed",
        )
        return True

    logger.error("webhook_secret_missing", action="rejecting unsigned webhook")
    return False
