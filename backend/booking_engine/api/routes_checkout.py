import logging

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.dependencies import get_checkout, get_db_session
from booking_engine.domain.bookings import schemas as booking_schemas
from booking_engine.domain.checkout.service import CheckoutOrchestrator, CheckoutResult
from booking_engine.domain.pricing.models import PricingQuote, QuoteRequest

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutResponse(BaseModel):
    booking: booking_schemas.BookingResponse
    payment_status: str | None = None
    provider_ref: str | None = None
    client_secret: str | None = None


class GatewayCallback(BaseModel):
    provider_ref: str | None = Field(default=None, max_length=255)


class AbortRequest(BaseModel):
    reason: str = Field(default="payment_failed", max_length=255)


def _checkout_response(result: CheckoutResult) -> CheckoutResponse:
    payment = result.payment
    return CheckoutResponse(
        booking=booking_schemas.BookingResponse.model_validate(result.booking),
        payment_status=payment.status if payment else None,
        provider_ref=payment.provider_ref if payment else result.booking.provider_ref,
        client_secret=payment.client_secret if payment else None,
    )


@router.post("/v1/checkout/quote", response_model=PricingQuote)
async def quote(
    request: QuoteRequest,
    session: AsyncSession = Depends(get_db_session),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> PricingQuote:
    return await checkout.quote(session, request)


@router.post(
    "/v1/checkout/hold",
    response_model=booking_schemas.BookingDetailResponse,
    status_code=status.HTTP_201_CREATED,
)
async def hold(
    request: booking_schemas.HoldRequest,
    session: AsyncSession = Depends(get_db_session),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> booking_schemas.BookingDetailResponse:
    booking = await checkout.hold(session, request)
    return booking_schemas.BookingDetailResponse.model_validate(booking)


@router.post("/v1/checkout/{booking_id}/pay", response_model=CheckoutResponse)
async def pay(
    booking_id: str,
    session: AsyncSession = Depends(get_db_session),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> CheckoutResponse:
    return _checkout_response(await checkout.pay(session, booking_id))


@router.post("/v1/checkout/{booking_id}/confirm", response_model=CheckoutResponse)
async def confirm(
    booking_id: str,
    callback: GatewayCallback | None = None,
    session: AsyncSession = Depends(get_db_session),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> CheckoutResponse:
    provider_ref = callback.provider_ref if callback else None
    return _checkout_response(await checkout.confirm(session, booking_id, provider_ref=provider_ref))


@router.post("/v1/checkout/{booking_id}/abort", response_model=booking_schemas.BookingResponse)
async def abort(
    booking_id: str,
    request: AbortRequest | None = None,
    session: AsyncSession = Depends(get_db_session),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
) -> booking_schemas.BookingResponse:
    reason = request.reason if request else "payment_failed"
    booking = await checkout.abort(session, booking_id, reason=reason)
    return booking_schemas.BookingResponse.model_validate(booking)
