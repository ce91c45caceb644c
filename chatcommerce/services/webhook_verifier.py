"""Edge validation for inbound provider webhooks.

Runs before anything else touches the request: bounds the payload size, then
checks the HMAC-SHA256 signature the provider computed over the raw body.
"""

import hashlib
import hmac
from typing import Optional

MAX_PAYLOAD_BYTES = 1024 * 1024
SIGNATURE_PREFIX = "sha256="


class VerificationError(Exception):
    """Inbound request rejected at the edge. Not retried from this layer."""

    status_code = 401
    code = "verification_failed"


class InvalidSignature(VerificationError):
    code = "invalid_signature"


class PayloadTooLarge(VerificationError):
    status_code = 413
    code = "payload_too_large"

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Payload of {size} bytes exceeds limit of {limit} bytes")


def compute_signature(raw_body: bytes, shared_secret: str) -> str:
    digest = hmac.new(shared_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def _normalize_signature(signature_header: str) -> str:
    value = signature_header.strip()
    if value.lower().startswith(SIGNATURE_PREFIX):
        value = value[len(SIGNATURE_PREFIX) :]
    return value.lower()


def verify(
    raw_body: bytes,
    signature_header: Optional[str],
    shared_secret: Optional[str],
    *,
    max_bytes: int = MAX_PAYLOAD_BYTES,
) -> None:
    """Raise VerificationError unless the body is within limits and correctly signed."""
    size = len(raw_body)
    if size > max_bytes:
        raise PayloadTooLarge(size, max_bytes)

    if not shared_secret:
        raise InvalidSignature("Webhook secret is not configured")
    if not signature_header or not signature_header.strip():
        raise InvalidSignature("Missing signature header")

    expected = compute_signature(raw_body, shared_secret)[len(SIGNATURE_PREFIX) :]
    provided = _normalize_signature(signature_header)
    if not hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8")):
        raise InvalidSignature("Signature mismatch")


def verify_subscription(mode: Optional[str], token: Optional[str], expected_token: Optional[str]) -> bool:
    """Provider subscription handshake (hub.mode / hub.verify_token)."""
    if mode != "subscribe" or not token or not expected_token:
        return False
    return hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8"))
