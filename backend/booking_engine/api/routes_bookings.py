from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.dependencies import get_db_session
from booking_engine.domain.bookings import schemas as booking_schemas
from booking_engine.domain.bookings import service as booking_service

router = APIRouter()


@router.get("/v1/bookings/{booking_id}", response_model=booking_schemas.BookingDetailResponse)
async def get_booking(
    booking_id: str, session: AsyncSession = Depends(get_db_session)
) -> booking_schemas.BookingDetailResponse:
    booking = await booking_service.get_booking(session, booking_id)
    return booking_schemas.BookingDetailResponse.model_validate(booking)


@router.post("/v1/bookings/{booking_id}/cancel", response_model=booking_schemas.BookingResponse)
async def cancel_booking(
    booking_id: str,
    request: booking_schemas.CancelRequest | None = None,
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingResponse:
    reason = request.reason if request else None
    booking = await booking_service.cancel(session, booking_id, reason=reason)
    return booking_schemas.BookingResponse.model_validate(booking)


@router.post("/v1/bookings/{booking_id}/check-in", response_model=booking_schemas.BookingResponse)
async def check_in(booking_id: str, session: AsyncSession = Depends(get_db_session)) -> booking_schemas.BookingResponse:
    booking = await booking_service.check_in(session, booking_id)
    return booking_schemas.BookingResponse.model_validate(booking)


@router.post("/v1/bookings/{booking_id}/check-out", response_model=booking_schemas.BookingResponse)
async def check_out(booking_id: str, session: AsyncSession = Depends(get_db_session)) -> booking_schemas.BookingResponse:
    booking = await booking_service.check_out(session, booking_id)
    return booking_schemas.BookingResponse.model_validate(booking)


@router.post("/v1/bookings/{booking_id}/no-show", response_model=booking_schemas.BookingResponse)
async def mark_no_show(
    booking_id: str, session: AsyncSession = Depends(get_db_session)
) -> booking_schemas.BookingResponse:
    booking = await booking_service.mark_no_show(session, booking_id)
    return booking_schemas.BookingResponse.model_validate(booking)


@router.post("/v1/bookings/{booking_id}/payments", response_model=booking_schemas.BookingResponse)
async def record_payment(
    booking_id: str,
    request: booking_schemas.PaymentRecordRequest,
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingResponse:
    booking = await booking_service.record_payment(session, booking_id, request.amount_cents)
    return booking_schemas.BookingResponse.model_validate(booking)
