"""Provider gateway registry.

Hands out the payment and scheduling gateway instances. No business logic
here - only gateway construction and lifecycle.
"""

from app.config import Settings, settings as default_settings
from app.gateways.base import PaymentGateway, SchedulingGateway
from app.gateways.calendly_gateway import CalendlyGateway
from app.gateways.stripe_gateway import StripeGateway


class GatewayService:
    """Lazily builds one gateway per provider."""

    def __init__(self, config: Settings | None = None):
        self.config = config or default_settings
        self._payment: PaymentGateway | None = None
        self._scheduling: SchedulingGateway | None = None

    @property
    def payment(self) -> PaymentGateway:
        if self._payment is None:
            self._payment = StripeGateway(self.config)
        return self._payment

    @property
    def scheduling(self) -> SchedulingGateway:
        if self._scheduling is None:
            self._scheduling = CalendlyGateway(self.config)
        return self._scheduling

    async def close(self) -> None:
        """Release HTTP clients held by gateways."""
        if isinstance(self._scheduling, CalendlyGateway):
            await self._scheduling.close()


# Singleton instance
gateway_service = GatewayService()
