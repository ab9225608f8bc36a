"""
PayMongo webhook signature verification.

Header format: ``Paymongo-Signature: t=<unix seconds>,s=<hex hmac>``; the HMAC-SHA256
is computed over ``"<t>.<raw body>"`` with the webhook secret. PayMongo's own
``te=`` (test mode) and ``li=`` (live mode) fields are accepted in place of ``s=``.
"""
import hashlib
import hmac
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Paymongo-Signature"


def parse_signature_header(header: str) -> Dict[str, str]:
    parts: Dict[str, str] = {}
    for item in header.split(","):
        if "=" not in item:
            continue
        name, value = item.split("=", 1)
        parts[name.strip()] = value.strip()
    return parts


def compute_signature(timestamp: str, raw_body: bytes, secret: str) -> str:
    signed = timestamp.encode() + b"." + raw_body
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def sign_payload(raw_body: bytes, secret: str, timestamp: int) -> str:
    """Header value for `raw_body`, as PayMongo would send it."""
    return f"t={timestamp},s={compute_signature(str(timestamp), raw_body, secret)}"


def verify_signature(raw_body: bytes, header: Optional[str], secret: str) -> bool:
    """
    True when `header` carries a valid HMAC of `raw_body` under `secret`.
    Comparison is constant-time.
    """
    if not header or not secret:
        return False

    parts = parse_signature_header(header)
    timestamp = parts.get("t")
    provided = parts.get("s") or parts.get("te") or parts.get("li")
    if not timestamp or not provided:
        logger.warning("Webhook signature header missing timestamp or signature")
        return False

    expected = compute_signature(timestamp, raw_body, secret)
    return hmac.compare_digest(provided.lower(), expected)
