"""Calendly scheduling gateway."""

import hashlib
import hmac
import logging

import httpx

from app.config import Settings, settings as default_settings
from app.core.exceptions import ExternalProviderError, WebhookSignatureError
from app.core.retry import retry_operation
from app.gateways.base import CancellationResult, GatewayType, SchedulingGateway

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "calendly-webhook-signature"


def _parse_signature(header: str) -> tuple[str | None, list[str]]:
    """Split a signature header into (timestamp, signatures).

    Accepts a bare hex digest or the ``t=<ts>,v1=<sig>`` form.
    """
    if "v1=" not in header:
        return None, [header.strip()]
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


class CalendlyGateway(SchedulingGateway):
    """Calendly API and webhook verification."""

    def __init__(self, config: Settings | None = None, client: httpx.AsyncClient | None = None):
        self.config = config or default_settings
        self._client = client

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.CALENDLY

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.calendly_api_base_url,
                timeout=30.0,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def verify_webhook(self, payload: bytes, signature: str | None) -> None:
        """HMAC-SHA256 over the raw body with the primary then secondary key."""
        primary = self.config.calendly_webhook_signing_key
        secondary = self.config.calendly_webhook_signing_key_secondary

        if (
            self.config.environment == "development"
            and self.config.calendly_skip_signature_in_dev
            and not primary
        ):
            logger.warning("Skipping Calendly webhook signature verification in development")
            return

        if not signature:
            raise WebhookSignatureError("Missing Calendly webhook signature", "missing_signature")

        if not primary:
            logger.error("Calendly webhook signing key not configured")
            raise WebhookSignatureError("Webhook signing key not configured", "configuration_error")

        timestamp, candidates = _parse_signature(signature)
        signed = f"{timestamp}.".encode() + payload if timestamp else payload

        for index, key in enumerate(k for k in (primary, secondary) if k):
            expected = hmac.new(key.encode("utf-8"), signed, hashlib.sha256).hexdigest()
            if any(hmac.compare_digest(expected, candidate) for candidate in candidates):
                if index == 1:
                    logger.info("Validated webhook signature using secondary signing key")
                return

        logger.warning(f"Invalid Calendly webhook signature (length={len(signature)})")
        raise WebhookSignatureError("Invalid webhook signature", "invalid_signature")

    async def cancel_event(self, event_uri: str, reason: str | None = None) -> CancellationResult:
        """Cancel a scheduled event.

        A 403 whose body says the event is already canceled counts as success.
        """
        if not self.config.calendly_api_token:
            return CancellationResult(success=False, error_message="Calendly not configured")

        event_uuid = event_uri.rstrip("/").rsplit("/", 1)[-1]
        client = await self._get_client()

        async def _call() -> httpx.Response:
            response = await client.post(
                f"/scheduled_events/{event_uuid}/cancellation",
                json={"reason": (reason or "Cancelled by booking service")[:500]},
                headers={"Authorization": f"Bearer {self.config.calendly_api_token}"},
            )
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        try:
            response = await retry_operation(
                _call,
                provider=GatewayType.CALENDLY.value,
                name="cancel_event",
                retry_on=(httpx.HTTPError,),
            )
        except ExternalProviderError as e:
            return CancellationResult(success=False, error_message=e.message)

        if response.status_code in (200, 201):
            return CancellationResult(success=True)
        if response.status_code == 403 and "already" in response.text.lower():
            return CancellationResult(success=True, already_cancelled=True)
        return CancellationResult(
            success=False,
            error_message=f"Calendly returned {response.status_code}: {response.text[:200]}",
        )
