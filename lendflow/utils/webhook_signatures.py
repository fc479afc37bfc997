"""
Outbound webhook signing.

Each delivery carries `x-signature`: the lowercase hex HMAC-SHA256 of the exact
request body bytes, keyed by the subscription secret. Subscribers recompute it
over the raw body they received (verify_signature below does exactly that).
"""
import hashlib
import hmac
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-signature"


def serialize_body(event_type: str, payload: Any) -> bytes:
    """
    Serialize the webhook body once. The returned bytes are both signed and
    sent, so the signature always covers exactly what goes over the wire.
    """
    body = {"eventType": event_type, "payload": payload}
    return json.dumps(
        body, separators=(",", ":"), ensure_ascii=False, allow_nan=False, default=str,
    ).encode("utf-8")


def sign_payload(secret: str, body: bytes) -> str:
    """Lowercase hex HMAC-SHA256 of body keyed by secret."""
    return hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256,
    ).hexdigest()


def verify_signature(
    secret: str,
    signature: str,
    body: bytes,
    header_prefix: str = "sha256=",
) -> bool:
    """
    Validate an HMAC-SHA256 webhook signature (subscriber side).
    Handles signatures with optional prefix (e.g., "sha256=...").
    Returns True if valid, False if invalid.
    """
    if not secret or not signature:
        return False

    sig = signature
    if sig.startswith(header_prefix):
        sig = sig[len(header_prefix):]

    try:
        expected = sign_payload(secret, body)
        return hmac.compare_digest(expected, sig.lower())
    except Exception as e:
        logger.error("HMAC-SHA256 validation error: %s", str(e))
        return False
