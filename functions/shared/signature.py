"""
Paddle webhook signature verification.

The Paddle-Signature header looks like ``ts=1700000000;h1=<hex>``. The
signed payload is ``"{ts}:{raw_body}"`` and h1 is its HMAC-SHA256 under
the endpoint's secret key. Verification must run on the exact bytes that
were received, before any JSON parsing.
"""

import hashlib
import hmac
import logging
import time
from typing import Optional, Union

from shared.constants import SIGNATURE_MAX_AGE_SECONDS

logger = logging.getLogger(__name__)


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def _parse_signature_header(signature_header: str) -> tuple[Optional[str], list[str]]:
    """Split the header into its timestamp and h1 digests."""
    ts = None
    digests = []
    for part in signature_header.split(";"):
        key, sep, value = part.strip().partition("=")
        if not sep or not value:
            continue
        if key == "ts" and ts is None:
            ts = value
        elif key == "h1":
            digests.append(value)
    return ts, digests


def compute_signature(raw_body: Union[str, bytes], secret: str, ts: Union[int, str]) -> str:
    """Hex HMAC-SHA256 of ``"{ts}:{raw_body}"``."""
    signed_payload = _to_bytes(str(ts)) + b":" + _to_bytes(raw_body)
    return hmac.new(_to_bytes(secret), signed_payload, hashlib.sha256).hexdigest()


def build_paddle_signature(raw_body: Union[str, bytes], secret: str, ts: Optional[int] = None) -> str:
    """Build a Paddle-Signature header value for a body (local tooling and tests)."""
    if ts is None:
        ts = int(time.time())
    return f"ts={ts};h1={compute_signature(raw_body, secret, ts)}"


def verify_paddle_signature(
    raw_body: Union[str, bytes],
    secret: str,
    signature_header: str,
    now: Optional[float] = None,
) -> bool:
    """
    Verify a Paddle-Signature header against the raw request body.

    Fails closed: a missing field, a timestamp outside the replay window,
    a digest mismatch or any parsing error returns False. Never raises.

    Args:
        raw_body: Request body exactly as received
        secret: Endpoint secret key
        signature_header: Value of the Paddle-Signature header
        now: Current unix time in seconds (defaults to time.time())

    Returns:
        True if any h1 digest matches and the timestamp is fresh
    """
    try:
        if not secret or not signature_header:
            return False

        ts, digests = _parse_signature_header(signature_header)
        if ts is None or not digests:
            return False

        ts_seconds = int(ts)
        current = time.time() if now is None else now
        if abs(current - ts_seconds) > SIGNATURE_MAX_AGE_SECONDS:
            logger.warning(
                "Rejected stale webhook signature",
                extra={"signature_age_seconds": int(current - ts_seconds)},
            )
            return False

        expected = compute_signature(raw_body, secret, ts)
        matched = False
        for digest in digests:
            # Every candidate is compared so timing does not reveal which one matched
            if hmac.compare_digest(expected, digest.lower()):
                matched = True
        return matched
    except Exception as e:
        logger.warning(f"Webhook signature verification error: {type(e).__name__}")
        return False
