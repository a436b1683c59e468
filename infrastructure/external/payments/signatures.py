"""
Webhook signature verification for providers without SDK-side helpers.

All functions operate on the raw, unparsed request body and compare digests in
constant time. They return ``False`` on any mismatch or malformed header and
never raise for bad input; adapters translate the result into exceptions.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Any, Mapping, Optional


def get_header(headers: Mapping[str, Any], *names: str) -> Optional[str]:
    """Case-insensitive header lookup returning the first non-empty match."""
    lowered = {str(k).lower(): v for k, v in headers.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value:
            return str(value)
    return None


def _hmac_sha256(secret: str, payload: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()


def _parse_pairs(header: str) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if sep:
            pairs.append((key.strip(), value.strip()))
    return pairs


def verify_square_signature(body: bytes, header: str, key: str, notification_url: str) -> bool:
    """Base64 HMAC-SHA256 over ``notification_url + body``."""
    if not header or not key or not notification_url:
        return False
    digest = _hmac_sha256(key, notification_url.encode("utf-8") + body)
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, header.strip())


def verify_mercadopago_signature(
    body: bytes,
    header: str,
    secret: str,
    request_id: Optional[str],
) -> bool:
    """``ts=<ts>,v1=<hex>`` in either order; HMAC over the request-id manifest."""
    if not header or not secret or not request_id:
        return False
    pairs = dict(_parse_pairs(header))
    ts = pairs.get("ts")
    signature = pairs.get("v1")
    if not ts or not signature:
        return False
    manifest = f"id={request_id};request-id={request_id};ts={ts};".encode("utf-8") + body
    expected = _hmac_sha256(secret, manifest).hex()
    return hmac.compare_digest(expected, signature)


PAYPAL_TRANSMISSION_HEADERS = (
    "PAYPAL-TRANSMISSION-ID",
    "PAYPAL-TRANSMISSION-SIG",
    "PAYPAL-TRANSMISSION-TIME",
)


def verify_paypal_webhook_id(
    headers: Mapping[str, Any],
    payload: Mapping[str, Any],
    webhook_id: str,
) -> bool:
    """
    Stand-in check: transmission headers present and the delivered webhook id
    matches the configured one.

    The transmission signature is not validated against PayPal's certificate
    chain, so this is weaker than the HMAC schemes above.
    """
    if not webhook_id:
        return False
    if any(get_header(headers, name) is None for name in PAYPAL_TRANSMISSION_HEADERS):
        return False
    delivered = get_header(headers, "PAYPAL-WEBHOOK-ID") or payload.get("webhook_id")
    if not delivered:
        return False
    return hmac.compare_digest(str(delivered), webhook_id)
