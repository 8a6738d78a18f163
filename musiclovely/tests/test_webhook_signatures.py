"""
Cakto webhook authentication tests.
These protect the authentication boundary for every payment notification.
"""
import hashlib

from src.utils.webhook_signatures import (
    SignatureVerdict,
    verify_cakto_request,
    compute_payload_hash,
)

SECRET = "s3cret"
INTERNAL = "internal-key"
BODY = {"event": "purchase_approved", "data": {"id": "tx_123456"}}


def _verify(headers=None, body=BODY, secret=SECRET, internal=INTERNAL) -> SignatureVerdict:
    return verify_cakto_request(secret, internal, headers or {}, body)


class TestFailClosed:
    def test_missing_secret_rejects_even_valid_looking_request(self):
        verdict = _verify({"x-cakto-signature": SECRET}, secret="")
        assert verdict.accepted is False
        assert verdict.error_kind == "authentication"

    def test_missing_secret_rejects_internal_bearer(self):
        verdict = _verify({"authorization": f"Bearer {INTERNAL}"}, secret="")
        assert verdict.accepted is False


class TestBodyValidation:
    def test_empty_dict_is_validation_error(self):
        verdict = _verify({"x-cakto-signature": SECRET}, body={})
        assert verdict.accepted is False
        assert verdict.error_kind == "validation"

    def test_non_object_body_is_validation_error(self):
        verdict = _verify({"x-cakto-signature": SECRET}, body=["not", "an", "object"])
        assert verdict.error_kind == "validation"

    def test_none_body_is_validation_error(self):
        verdict = _verify({"x-cakto-signature": SECRET}, body=None)
        assert verdict.error_kind == "validation"


class TestAccepted:
    def test_signature_header(self):
        verdict = _verify({"x-cakto-signature": SECRET})
        assert verdict.accepted is True
        assert verdict.internal_call is False

    def test_token_header(self):
        assert _verify({"x-cakto-token": SECRET}).accepted is True

    def test_bearer_with_webhook_secret(self):
        assert _verify({"authorization": f"Bearer {SECRET}"}).accepted is True

    def test_secret_in_body(self):
        assert _verify(body={**BODY, "secret": SECRET}).accepted is True

    def test_header_names_are_case_insensitive(self):
        assert _verify({"X-Cakto-Signature": SECRET}).accepted is True

    def test_internal_service_key_marks_internal_call(self):
        verdict = _verify({"Authorization": f"Bearer {INTERNAL}"})
        assert verdict.accepted is True
        assert verdict.internal_call is True

    def test_signature_header_takes_precedence_over_token(self):
        """A wrong signature header is not rescued by a correct token header."""
        verdict = _verify({"x-cakto-signature": "wrong", "x-cakto-token": SECRET})
        assert verdict.accepted is False


class TestRejected:
    def test_no_credentials(self):
        verdict = _verify({})
        assert verdict.accepted is False
        assert verdict.error_kind == "authentication"

    def test_wrong_secret(self):
        assert _verify({"x-cakto-signature": "nope"}).accepted is False

    def test_wrong_body_secret(self):
        assert _verify(body={**BODY, "secret": "nope"}).accepted is False

    def test_non_string_body_secret(self):
        assert _verify(body={**BODY, "secret": 12345}).accepted is False

    def test_internal_key_unset_does_not_accept_empty_bearer(self):
        verdict = _verify({"authorization": "Bearer "}, internal="")
        assert verdict.accepted is False


class TestComputePayloadHash:
    def test_sha256_hex(self):
        body = b'{"event":"purchase_approved"}'
        assert compute_payload_hash(body) == hashlib.sha256(body).hexdigest()

    def test_different_bodies_differ(self):
        assert compute_payload_hash(b"a") != compute_payload_hash(b"b")
