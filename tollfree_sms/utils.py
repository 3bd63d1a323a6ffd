"""
Utility functions: webhook signature verification and phone helpers.
"""

import hmac
import hashlib
import logging
import re
import time
from typing import Mapping, Optional, Union

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-surge-signature"

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


def mask_phone(phone: Optional[str]) -> str:
    """Keep only the last 4 digits of a phone number for logging."""
    if not phone:
        return "????"
    return f"***{phone[-4:]}"


def is_e164(phone: Optional[str]) -> bool:
    return bool(phone) and bool(E164_PATTERN.match(phone))


def normalize_to_e164(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a user-entered phone number to E.164.

    10-digit numbers are treated as US numbers, 11-digit numbers starting
    with 1 as US numbers with country code. Returns None when the input
    cannot be normalized.
    """
    if not phone:
        return None
    raw = phone.strip()
    digits = re.sub(r"\D", "", raw)
    if raw.startswith("+"):
        candidate = f"+{digits}"
    elif len(digits) == 10:
        candidate = f"+1{digits}"
    elif len(digits) == 11 and digits.startswith("1"):
        candidate = f"+{digits}"
    else:
        return None
    return candidate if is_e164(candidate) else None


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup on plain dicts and Starlette Headers alike."""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, val in headers.items():
        if key.lower() == lowered:
            return val
    return None


def parse_signature_header(value: str) -> Optional[tuple[str, str]]:
    """
    Split a "t=<unix-seconds>,v1=<hex>" header into (timestamp, signature).
    """
    parts = {}
    for item in value.split(","):
        key, sep, val = item.strip().partition("=")
        if sep:
            parts[key] = val
    timestamp = parts.get("t")
    signature = parts.get("v1")
    if not timestamp or not signature:
        return None
    return timestamp, signature


def verify_signature(
    headers: Mapping[str, str],
    raw_body: Union[bytes, str],
    signing_key: str,
    tolerance_seconds: Optional[int] = None,
    now: Optional[float] = None,
) -> bool:
    """
    Verify a Surge webhook signature.

    Signed payload is "{timestamp}.{raw_body}" and the digest is a hex
    HMAC-SHA256 keyed with the shared signing secret.

    Args:
        headers: Request headers (any casing of x-surge-signature)
        raw_body: Raw request body exactly as received
        signing_key: Shared webhook secret
        tolerance_seconds: Reject timestamps further than this from now;
            None or 0 disables the check
        now: Clock override for tests

    Returns:
        True if signature is valid, False otherwise
    """
    header_value = _header(headers, SIGNATURE_HEADER)
    if not header_value or not signing_key:
        logger.warning("Missing signature header or signing key - rejecting webhook")
        return False

    parsed = parse_signature_header(header_value)
    if parsed is None:
        logger.warning("Invalid signature header format")
        return False
    timestamp, received = parsed

    if tolerance_seconds:
        try:
            ts_int = int(timestamp)
        except ValueError:
            logger.warning(f"Invalid signature timestamp: {timestamp}")
            return False
        current = time.time() if now is None else now
        if abs(int(current) - ts_int) > tolerance_seconds:
            logger.warning(f"Webhook timestamp outside tolerance: {timestamp}")
            return False

    body = raw_body if isinstance(raw_body, bytes) else raw_body.encode("utf-8")
    signed_payload = timestamp.encode("utf-8") + b"." + body
    expected = hmac.new(signing_key.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected.encode("utf-8"), received.strip().lower().encode("utf-8"))
    if not is_valid:
        logger.warning("Webhook signature verification failed")
    return is_valid


def sign_payload(raw_body: Union[bytes, str], signing_key: str, timestamp: Optional[int] = None) -> str:
    """
    Build an x-surge-signature header value for raw_body.

    Used by tests and by operators replaying captured webhooks.
    """
    ts = str(int(time.time()) if timestamp is None else timestamp)
    body = raw_body if isinstance(raw_body, bytes) else raw_body.encode("utf-8")
    digest = hmac.new(signing_key.encode("utf-8"), ts.encode("utf-8") + b"." + body, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"
