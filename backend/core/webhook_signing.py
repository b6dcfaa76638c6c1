"""HMAC-SHA256 signing for workflow webhooks.

Used in both directions: the trigger router verifies inbound calls to a
workflow's webhook URL against that webhook's secret, and the `webhook`
action and notification channel sign what they send out.

    X-Webhook-Signature: sha256=<hex>[,sha256=<hex>...]
    X-Webhook-Timestamp: <unix seconds>      optional on inbound calls
    X-Webhook-Delivery:  <uuid>              outbound only

The signed message is the raw body, or f"{timestamp}.{body}" when a
timestamp header is present; a timestamped call older (or newer) than the
tolerance is rejected. A sender may list several signatures while it
moves to a rotated secret; any one match is accepted.
"""

import hashlib
import hmac
import secrets
import time
from typing import Iterator, Optional
from uuid import uuid4

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
DELIVERY_HEADER = "X-Webhook-Delivery"

SIGNATURE_SCHEME = "sha256"
SECRET_PREFIX = "whsec_"
DEFAULT_TOLERANCE_SECONDS = 300


def _signed_message(payload: bytes, timestamp: Optional[int]) -> bytes:
    if timestamp is None:
        return payload
    return b"%d." % timestamp + payload


def compute_signature(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Return the `sha256=<hex>` signature for a payload."""
    mac = hmac.new(secret.encode(), _signed_message(payload, timestamp), hashlib.sha256)
    return f"{SIGNATURE_SCHEME}={mac.hexdigest()}"


def sign_webhook_payload(
    payload: bytes,
    secret: str,
    timestamp: Optional[int] = None,
    delivery_id: Optional[str] = None,
) -> dict[str, str]:
    """Headers for an outbound JSON delivery, timestamped with now unless given."""
    ts = int(time.time()) if timestamp is None else timestamp
    return {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: compute_signature(payload, secret, ts),
        TIMESTAMP_HEADER: str(ts),
        DELIVERY_HEADER: delivery_id or str(uuid4()),
    }


def iter_signatures(header: Optional[str]) -> Iterator[str]:
    """Yield each well-formed `sha256=` entry of a signature header."""
    for part in (header or "").split(","):
        part = part.strip()
        scheme, sep, digest = part.partition("=")
        if sep and scheme == SIGNATURE_SCHEME and digest:
            yield part


def parse_timestamp(value: Optional[str]) -> Optional[int]:
    """Parse a timestamp header; raises ValueError when present but malformed."""
    if value is None or value == "":
        return None
    return int(value)


def verify_webhook_signature(
    payload: bytes,
    secret: str,
    signature_header: Optional[str],
    timestamp_header: Optional[str] = None,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """True when one of the listed signatures matches and the timestamp is fresh."""
    candidates = list(iter_signatures(signature_header))
    if not candidates:
        return False

    try:
        ts = parse_timestamp(timestamp_header)
    except ValueError:
        return False
    if ts is not None:
        current = time.time() if now is None else now
        if abs(int(current) - ts) > tolerance:
            return False

    expected = compute_signature(payload, secret, ts)
    # compare every candidate so timing does not reveal which one matched
    matched = False
    for candidate in candidates:
        matched |= hmac.compare_digest(expected, candidate)
    return matched


def generate_webhook_secret() -> str:
    return f"{SECRET_PREFIX}{secrets.token_urlsafe(32)}"
