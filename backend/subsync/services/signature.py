"""Webhook signature verification (Stripe v1 scheme).

Header format: ``t=<unix timestamp>,v1=<hex hmac>[,v1=<hex hmac>...][,v0=...]``

The signed payload is ``<timestamp>.<raw body>`` and the signature is
HMAC-SHA256 keyed with the endpoint secret. Several v1 values may be present
while a secret is being rotated; any match is accepted. All comparisons are
constant-time.
"""
import hashlib
import hmac
import time
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from subsync.core.errors import InvalidSignature, MalformedHeader, StaleTimestamp

SIGNATURE_SCHEME = "v1"
DEFAULT_TOLERANCE_SECONDS = 300


class VerificationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: int
    signature: str  # the candidate that matched


def parse_signature_header(signature_header: Optional[str]) -> Tuple[int, List[str]]:
    """Split a signature header into its timestamp and v1 candidates.

    Raises:
        MalformedHeader: header missing, no timestamp, or no v1 signature
    """
    if not signature_header or not signature_header.strip():
        raise MalformedHeader("Missing signature header")

    timestamp = None
    candidates = []
    for item in signature_header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t" and timestamp is None:
            try:
                timestamp = int(value)
            except ValueError:
                raise MalformedHeader(f"Invalid timestamp in signature header: {value!r}")
        elif key == SIGNATURE_SCHEME and value:
            candidates.append(value)

    if timestamp is None:
        raise MalformedHeader("Signature header has no timestamp")
    if not candidates:
        raise MalformedHeader(f"Signature header has no {SIGNATURE_SCHEME} signature")

    return timestamp, candidates


def compute_signature(raw_body: bytes, secret: str, timestamp: int) -> str:
    """Hex HMAC-SHA256 of ``<timestamp>.<raw_body>``"""
    signed_payload = f"{timestamp}.".encode("utf-8") + raw_body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def sign(raw_body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a signature header for ``raw_body`` (local tooling and tests)"""
    if timestamp is None:
        timestamp = int(time.time())
    return f"t={timestamp},{SIGNATURE_SCHEME}={compute_signature(raw_body, secret, timestamp)}"


def verify(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: Optional[int] = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> VerificationResult:
    """Authenticate a raw webhook body.

    Args:
        raw_body: Request body exactly as received
        signature_header: Value of the Stripe-Signature header
        secret: Endpoint signing secret
        tolerance: Maximum age of the signed timestamp in seconds (None disables)
        now: Current unix time, defaults to time.time()

    Returns:
        VerificationResult with the signed timestamp

    Raises:
        MalformedHeader, InvalidSignature, StaleTimestamp
    """
    timestamp, candidates = parse_signature_header(signature_header)

    expected = compute_signature(raw_body, secret, timestamp).encode("ascii")
    matched = None
    for candidate in candidates:
        # Evaluate every candidate so timing doesn't reveal which one matched
        if hmac.compare_digest(expected, candidate.encode("utf-8", errors="replace")) and matched is None:
            matched = candidate

    if matched is None:
        raise InvalidSignature("No signatures found matching the expected signature for payload")

    if tolerance is not None:
        current = time.time() if now is None else now
        if timestamp < current - tolerance:
            raise StaleTimestamp(f"Timestamp outside the tolerance zone ({int(current - timestamp)}s old)")

    return VerificationResult(timestamp=timestamp, signature=matched)
