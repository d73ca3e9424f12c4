"""
HMAC-SHA256 signing for outbound webhook payloads.

Receivers recompute the digest over the raw request body with their
endpoint secret and compare it to the X-Signature-SHA256 header.
"""
import hashlib
import hmac
from typing import Mapping

SIGNATURE_HEADER = "X-Signature-SHA256"


def sign_payload(payload: bytes, secret: str) -> str:
    """Generate the hex HMAC-SHA256 signature of the exact payload bytes."""
    return hmac.new(
        secret.encode("utf-8"),
        payload,
        hashlib.sha256,
    ).hexdigest()


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """
    Check a hex signature against the payload in constant time.

    A malformed signature (wrong length, non-hex, non-ASCII) is simply
    not valid; nothing about where the comparison failed is exposed.
    """
    if not isinstance(signature, str) or len(signature) != hashlib.sha256().digest_size * 2:
        return False
    try:
        provided = bytes.fromhex(signature)
    except (TypeError, ValueError):
        return False
    expected = bytes.fromhex(sign_payload(payload, secret))
    return hmac.compare_digest(expected, provided)


def verify_webhook_request(body: bytes, headers: Mapping[str, str], secret: str) -> bool:
    """
    Verify an incoming delivery on the receiving side.

    `headers` may be any mapping; the signature header is looked up
    case-insensitively.
    """
    signature = None
    for name, value in headers.items():
        if name.lower() == SIGNATURE_HEADER.lower():
            signature = value
            break
    if not signature:
        return False
    return verify_signature(body, signature, secret)
