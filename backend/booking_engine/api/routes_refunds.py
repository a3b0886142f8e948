from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.dependencies import get_app_settings, get_db_session, get_gateway
from booking_engine.domain.bookings import service as booking_service
from booking_engine.domain.refunds import schemas as refund_schemas
from booking_engine.domain.refunds import service as refund_service
from booking_engine.infra.payment_gateway import PaymentGateway

router = APIRouter()


def _response(refund) -> refund_schemas.RefundRequestResponse:
    return refund_schemas.RefundRequestResponse.model_validate(refund)


@router.get("/v1/bookings/{booking_id}/refund-quote", response_model=refund_schemas.RefundQuoteResponse)
async def refund_quote(
    booking_id: str, session: AsyncSession = Depends(get_db_session)
) -> refund_schemas.RefundQuoteResponse:
    booking = await booking_service.get_booking(session, booking_id)
    return await refund_service.quote_refund(session, booking)


@router.post(
    "/v1/bookings/{booking_id}/refund-requests",
    response_model=refund_schemas.RefundRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_refund_request(
    booking_id: str,
    payload: refund_schemas.RefundRequestCreate,
    session: AsyncSession = Depends(get_db_session),
) -> refund_schemas.RefundRequestResponse:
    return _response(await refund_service.create_refund_request(session, booking_id, payload))


@router.get("/v1/refund-requests/{request_id}", response_model=refund_schemas.RefundRequestResponse)
async def get_refund_request(
    request_id: str, session: AsyncSession = Depends(get_db_session)
) -> refund_schemas.RefundRequestResponse:
    return _response(await refund_service.get_refund_request(session, request_id))


@router.post("/v1/refund-requests/{request_id}/review", response_model=refund_schemas.RefundRequestResponse)
async def start_review(
    request_id: str,
    review: refund_schemas.RefundReview,
    session: AsyncSession = Depends(get_db_session),
) -> refund_schemas.RefundRequestResponse:
    return _response(await refund_service.start_review(session, request_id, review))


@router.post("/v1/refund-requests/{request_id}/approve", response_model=refund_schemas.RefundRequestResponse)
async def approve(
    request_id: str,
    approval: refund_schemas.RefundApproval,
    session: AsyncSession = Depends(get_db_session),
) -> refund_schemas.RefundRequestResponse:
    return _response(await refund_service.approve(session, request_id, approval))


@router.post("/v1/refund-requests/{request_id}/reject", response_model=refund_schemas.RefundRequestResponse)
async def reject(
    request_id: str,
    review: refund_schemas.RefundReview,
    session: AsyncSession = Depends(get_db_session),
) -> refund_schemas.RefundRequestResponse:
    return _response(await refund_service.reject(session, request_id, review))


@router.post("/v1/refund-requests/{request_id}/withdraw", response_model=refund_schemas.RefundRequestResponse)
async def withdraw(
    request_id: str, session: AsyncSession = Depends(get_db_session)
) -> refund_schemas.RefundRequestResponse:
    return _response(await refund_service.withdraw(session, request_id))


@router.post("/v1/refund-requests/{request_id}/process", response_model=refund_schemas.RefundRequestResponse)
async def process_payout(
    request_id: str,
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    gateway: PaymentGateway = Depends(get_gateway),
) -> refund_schemas.RefundRequestResponse:
    app_settings = get_app_settings(http_request)
    refund = await refund_service.process_payout(
        session,
        request_id,
        gateway,
        max_attempts=app_settings.gateway_max_attempts,
        backoff_seconds=app_settings.gateway_backoff_seconds,
    )
    return _response(refund)
