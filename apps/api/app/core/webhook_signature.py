"""Provider webhook signature scheme (``v1,<base64 hmac-sha256>``)."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from datetime import UTC, datetime
import hashlib
import hmac
from secrets import compare_digest

_SIGNATURE_VERSION = "v1"
_SECRET_PREFIX = "whsec_"


@dataclass(frozen=True, slots=True)
class SignatureCheck:
    valid: bool
    reason: str | None = None


def _secret_key(secret: str) -> bytes:
    if secret.startswith(_SECRET_PREFIX):
        try:
            return base64.b64decode(secret[len(_SECRET_PREFIX):], validate=True)
        except binascii.Error:
            pass
    return secret.encode("utf-8")


def compute_signature(*, secret: str, delivery_id: str, timestamp: str, body: bytes) -> str:
    """Return the base64 signature for ``{delivery_id}.{timestamp}.{body}``."""
    signed_content = f"{delivery_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(_secret_key(secret), signed_content, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def sign_headers(*, secret: str, delivery_id: str, timestamp: str, body: bytes) -> dict[str, str]:
    """Build the header set a provider would send for ``body``."""
    signature = compute_signature(secret=secret, delivery_id=delivery_id, timestamp=timestamp, body=body)
    return {
        "webhook-id": delivery_id,
        "webhook-timestamp": timestamp,
        "webhook-signature": f"{_SIGNATURE_VERSION},{signature}",
    }


def verify_signature(
    *,
    secret: str,
    delivery_id: str | None,
    timestamp: str | None,
    signature_header: str | None,
    body: bytes,
    tolerance_seconds: int,
    now: datetime | None = None,
) -> SignatureCheck:
    if not delivery_id or not timestamp or not signature_header:
        return SignatureCheck(valid=False, reason="missing_headers")

    # The header bytes are signed verbatim, so only canonical decimal seconds are accepted.
    if not (timestamp.isascii() and timestamp.isdigit()):
        return SignatureCheck(valid=False, reason="malformed_timestamp")
    try:
        sent_at = datetime.fromtimestamp(int(timestamp), tz=UTC)
    except (ValueError, OverflowError, OSError):
        return SignatureCheck(valid=False, reason="malformed_timestamp")

    current = now or datetime.now(UTC)
    if abs((current - sent_at).total_seconds()) > tolerance_seconds:
        return SignatureCheck(valid=False, reason="stale_timestamp")

    expected = compute_signature(secret=secret, delivery_id=delivery_id, timestamp=timestamp, body=body)
    # Header may carry several space-separated signatures during secret rotation.
    for candidate in signature_header.split():
        version, _, value = candidate.partition(",")
        if version != _SIGNATURE_VERSION or not value:
            continue
        if compare_digest(value.encode("ascii", "ignore"), expected.encode("ascii")):
            return SignatureCheck(valid=True)
    return SignatureCheck(valid=False, reason="signature_mismatch")
