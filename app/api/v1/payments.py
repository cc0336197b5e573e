"""Payment endpoints: checkout creation and the status-check fallback."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from app.api.deps import Checkout
from app.core.middleware import RateLimiter
from app.schemas.payment import CheckoutCreate, CheckoutResponse, CheckoutStatusResponse

router = APIRouter()

checkout_rate_limit = RateLimiter(requests_per_minute=10, key_prefix="checkout")


@router.post(
    "/checkout/create",
    response_model=CheckoutResponse,
    dependencies=[Depends(checkout_rate_limit)],
)
async def create_checkout(data: CheckoutCreate, checkout: Checkout) -> CheckoutResponse:
    """Open a hosted checkout session and move the booking to PAYMENT_PENDING."""
    link = await checkout.create_checkout(data.booking_id, data.return_url)
    return CheckoutResponse(
        session_id=link.session_id,
        url=link.url,
        booking_id=link.booking.id,
        state=link.booking.state,
    )


@router.get("/checkout/status", response_model=CheckoutStatusResponse)
async def checkout_status(
    checkout: Checkout,
    session_id: Annotated[str, Query(alias="sessionId", min_length=1)],
) -> CheckoutStatusResponse:
    """Poll a checkout session; converges with the webhook path."""
    result = await checkout.check_status(session_id)
    return CheckoutStatusResponse(
        payment_status=result.payment_status,
        payment_intent_id=result.payment_intent_id,
        booking_id=result.booking.id,
        state=result.booking.state,
    )
