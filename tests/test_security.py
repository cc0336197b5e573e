"""
Tests for security helpers and provider plumbing.
Covers: recovery tokens, identifier masking, field encryption, Calendly
signature verification with key rotation, Calendly cancellation, retry backoff.
"""
import hashlib
import hmac
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from app.config import Settings
from app.core.encryption import EncryptionService, is_encrypted
from app.core.exceptions import ExternalProviderError, ValidationError, WebhookSignatureError
from app.core.retry import retry_operation
from app.core.security import (
    create_recovery_token,
    mask_identifier,
    sanitize_for_logging,
    verify_recovery_token,
)
from app.gateways.calendly_gateway import CalendlyGateway

from tests.helpers import CALENDLY_KEY, EVENT_URI

BODY = b'{"event":"invitee.created"}'


def hex_signature(body: bytes, key: str, timestamp: str | None = None) -> str:
    signed = f"{timestamp}.".encode() + body if timestamp else body
    return hmac.new(key.encode(), signed, hashlib.sha256).hexdigest()


class TestRecoveryTokens:
    def test_round_trip(self):
        token, expires_at = create_recovery_token("booking-1", "PAYMENT_PENDING")
        payload = verify_recovery_token(token)
        assert payload["sub"] == "booking-1"
        assert payload["state"] == "PAYMENT_PENDING"
        assert expires_at > datetime.now(UTC)

    def test_expired_token_rejected(self):
        token, _ = create_recovery_token(
            "booking-1", "PAYMENT_PENDING", expires_delta=timedelta(seconds=-5)
        )
        with pytest.raises(ValidationError):
            verify_recovery_token(token)

    def test_tampered_token_rejected(self):
        token, _ = create_recovery_token("booking-1", "PAYMENT_PENDING")
        with pytest.raises(ValidationError):
            verify_recovery_token(token[:-4] + "AAAA")


class TestMasking:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("cs_test_abc123", "cs_t****c123"),
            ("pi_1234", "[MASKED]"),
            (None, None),
            ("", ""),
        ],
    )
    def test_mask_identifier(self, value, expected):
        assert mask_identifier(value) == expected

    def test_sanitize_leaves_other_fields(self):
        data = {"payment_intent_id": "pi_test_789012", "reason": "Conflict"}
        sanitized = sanitize_for_logging(data)
        assert sanitized == {"payment_intent_id": "pi_t****9012", "reason": "Conflict"}
        assert data["payment_intent_id"] == "pi_test_789012"


class TestEncryption:
    def test_fields_round_trip(self):
        service = EncryptionService(b"k" * 32)
        data = {"payment_session_id": "cs_test_abc123", "reason": "Conflict"}

        secured = service.encrypt_fields(data, ("payment_session_id",))
        assert is_encrypted(secured["payment_session_id"])
        assert secured["reason"] == "Conflict"
        assert service.encrypt_fields(secured, ("payment_session_id",)) == secured

        plain = service.decrypt_fields(secured, ("payment_session_id",))
        assert plain == data

    def test_key_length_enforced(self):
        with pytest.raises(ValueError):
            EncryptionService(b"short")


class TestCalendlySignature:
    def _gateway(self, **overrides) -> CalendlyGateway:
        values = {"environment": "production", "calendly_webhook_signing_key": CALENDLY_KEY}
        values.update(overrides)
        return CalendlyGateway(Settings(**values))

    def test_bare_hex_digest_accepted(self):
        self._gateway().verify_webhook(BODY, hex_signature(BODY, CALENDLY_KEY))

    def test_timestamped_signature_accepted(self):
        header = f"t=1761994800,v1={hex_signature(BODY, CALENDLY_KEY, '1761994800')}"
        self._gateway().verify_webhook(BODY, header)

    def test_secondary_key_accepted_during_rotation(self):
        gateway = self._gateway(calendly_webhook_signing_key_secondary="previous-key")
        gateway.verify_webhook(BODY, hex_signature(BODY, "previous-key"))

    def test_wrong_key_rejected(self):
        with pytest.raises(WebhookSignatureError) as exc_info:
            self._gateway().verify_webhook(BODY, hex_signature(BODY, "someone-else"))
        assert exc_info.value.code == "invalid_signature"
        assert exc_info.value.status_code == 401

    def test_missing_key_is_configuration_error(self):
        gateway = self._gateway(calendly_webhook_signing_key=None)
        with pytest.raises(WebhookSignatureError) as exc_info:
            gateway.verify_webhook(BODY, "deadbeef")
        assert exc_info.value.code == "configuration_error"

    def test_dev_skip_only_without_key(self):
        gateway = self._gateway(
            environment="development",
            calendly_skip_signature_in_dev=True,
            calendly_webhook_signing_key=None,
        )
        gateway.verify_webhook(BODY, None)


class TestCalendlyCancel:
    def _gateway(self, handler, token: str | None = "cal_token") -> CalendlyGateway:
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="https://api.calendly.com"
        )
        return CalendlyGateway(Settings(calendly_api_token=token), client=client)

    async def test_cancel_posts_to_event_uuid(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"resource": {}})

        result = await self._gateway(handler).cancel_event(EVENT_URI, "Conflict")

        assert result.success
        assert seen[0].url.path == "/scheduled_events/EVT123/cancellation"
        assert seen[0].headers["Authorization"] == "Bearer cal_token"

    async def test_already_cancelled_counts_as_success(self):
        gateway = self._gateway(
            lambda request: httpx.Response(403, text="Event is already canceled")
        )
        result = await gateway.cancel_event(EVENT_URI)
        assert result.success
        assert result.already_cancelled

    async def test_not_found_is_failure(self):
        gateway = self._gateway(lambda request: httpx.Response(404, text="Not found"))
        result = await gateway.cancel_event(EVENT_URI)
        assert not result.success
        assert "404" in result.error_message

    async def test_unconfigured(self):
        gateway = self._gateway(lambda request: httpx.Response(201), token=None)
        result = await gateway.cancel_event(EVENT_URI)
        assert result.error_message == "Calendly not configured"


class TestRetryOperation:
    async def test_succeeds_after_transient_failures(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise httpx.ConnectError("reset")
            return "ok"

        result = await retry_operation(
            flaky, provider="stripe", name="retrieve", max_attempts=3, initial_delay=0
        )
        assert result == "ok"
        assert len(calls) == 3

    async def test_exhaustion_raises_provider_error(self):
        async def down():
            raise httpx.ConnectError("unreachable")

        with pytest.raises(ExternalProviderError) as exc_info:
            await retry_operation(
                down, provider="calendly", name="cancel", max_attempts=2, initial_delay=0
            )
        assert exc_info.value.status_code == 502
        assert "unreachable" in exc_info.value.message

    async def test_unlisted_errors_propagate(self):
        async def broken():
            raise KeyError("resource")

        with pytest.raises(KeyError):
            await retry_operation(
                broken,
                provider="calendly",
                name="cancel",
                initial_delay=0,
                retry_on=(httpx.HTTPError,),
            )
