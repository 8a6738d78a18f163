"""
Webhook authentication - verify an inbound Cakto notification is authentic.

Cakto does not sign the body; it echoes a shared secret back to us, either in
a header (x-cakto-signature / x-cakto-token / Authorization: Bearer) or as a
"secret" field in the JSON body. Trusted internal callers (replay script,
edge functions) authenticate with the internal service key instead.

verify_cakto_request() is pure: no I/O, no logging side effects beyond the
returned verdict. Fails closed when the secret is not configured.
"""
import hashlib
import hmac
from typing import Any, Mapping, Optional

from pydantic import BaseModel

# Header precedence for the vendor token
_SIGNATURE_HEADERS = ("x-cakto-signature", "x-cakto-token")


class SignatureVerdict(BaseModel):
    accepted: bool
    internal_call: bool = False
    reason: Optional[str] = None
    error_kind: Optional[str] = None  # authentication, validation


def _reject(error_kind: str, reason: str) -> SignatureVerdict:
    return SignatureVerdict(accepted=False, error_kind=error_kind, reason=reason)


def _bearer_token(headers: Mapping[str, str]) -> str:
    auth = headers.get("authorization", "") or ""
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return ""


def _secure_equals(expected: str, received: Any) -> bool:
    if not expected or not isinstance(received, str) or not received:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))


def verify_cakto_request(
    webhook_secret: str,
    internal_service_key: str,
    headers: Mapping[str, str],
    body: Any,
) -> SignatureVerdict:
    """
    Decide whether a Cakto webhook request may be processed.

    Order of checks:
    1. Secret not configured -> authentication rejection (never accept unsigned)
    2. Body empty or not a JSON object -> validation rejection
    3. Bearer token == internal service key -> accepted as internal call
    4. Vendor token header (signature, token, bearer) or body["secret"] == secret
    """
    if not webhook_secret:
        return _reject("authentication", "Webhook secret not configured")

    if not isinstance(body, dict) or not body:
        return _reject("validation", "Empty or non-object body")

    lowered = {str(k).lower(): v for k, v in headers.items()}
    bearer = _bearer_token(lowered)

    if internal_service_key and _secure_equals(internal_service_key, bearer):
        return SignatureVerdict(accepted=True, internal_call=True)

    received = ""
    for header in _SIGNATURE_HEADERS:
        received = lowered.get(header, "") or ""
        if received:
            break
    if not received:
        received = bearer

    if _secure_equals(webhook_secret, received) or _secure_equals(webhook_secret, body.get("secret")):
        return SignatureVerdict(accepted=True)

    return _reject("authentication", "Invalid or missing signature")


def compute_payload_hash(body: bytes) -> str:
    """Compute SHA-256 hash of raw payload for dedup and audit."""
    return hashlib.sha256(body).hexdigest()
