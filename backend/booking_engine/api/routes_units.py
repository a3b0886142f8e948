from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.dependencies import get_db_session
from booking_engine.domain.availability import schemas as availability_schemas
from booking_engine.domain.availability import service as availability_service
from booking_engine.domain.dates import StayRange
from booking_engine.domain.errors import ValidationError
from booking_engine.domain.units import schemas as unit_schemas
from booking_engine.domain.units import service as unit_service

router = APIRouter()


@router.post("/v1/units", response_model=unit_schemas.UnitResponse, status_code=status.HTTP_201_CREATED)
async def create_unit(
    payload: unit_schemas.UnitCreate,
    session: AsyncSession = Depends(get_db_session),
) -> unit_schemas.UnitResponse:
    unit = await unit_service.create_unit(session, payload)
    return unit_schemas.UnitResponse.model_validate(unit)


@router.get("/v1/units/{unit_id}", response_model=unit_schemas.UnitResponse)
async def get_unit(unit_id: str, session: AsyncSession = Depends(get_db_session)) -> unit_schemas.UnitResponse:
    unit = await unit_service.get_unit(session, unit_id)
    return unit_schemas.UnitResponse.model_validate(unit)


@router.patch("/v1/units/{unit_id}", response_model=unit_schemas.UnitResponse)
async def update_unit(
    unit_id: str,
    payload: unit_schemas.UnitUpdate,
    session: AsyncSession = Depends(get_db_session),
) -> unit_schemas.UnitResponse:
    unit = await unit_service.update_unit(session, unit_id, payload)
    return unit_schemas.UnitResponse.model_validate(unit)


@router.get("/v1/units/{unit_id}/seasonal-rates", response_model=list[unit_schemas.SeasonalRateResponse])
async def list_seasonal_rates(
    unit_id: str, session: AsyncSession = Depends(get_db_session)
) -> list[unit_schemas.SeasonalRateResponse]:
    await unit_service.get_unit(session, unit_id)
    rates = await unit_service.list_seasonal_rates(session, unit_id)
    return [unit_schemas.SeasonalRateResponse.model_validate(rate) for rate in rates]


@router.post(
    "/v1/units/{unit_id}/seasonal-rates",
    response_model=unit_schemas.SeasonalRateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_seasonal_rate(
    unit_id: str,
    payload: unit_schemas.SeasonalRateCreate,
    session: AsyncSession = Depends(get_db_session),
) -> unit_schemas.SeasonalRateResponse:
    rate = await unit_service.add_seasonal_rate(session, unit_id, payload)
    return unit_schemas.SeasonalRateResponse.model_validate(rate)


@router.patch("/v1/seasonal-rates/{rate_id}", response_model=unit_schemas.SeasonalRateResponse)
async def update_seasonal_rate(
    rate_id: int,
    payload: unit_schemas.SeasonalRateUpdate,
    session: AsyncSession = Depends(get_db_session),
) -> unit_schemas.SeasonalRateResponse:
    rate = await unit_service.update_seasonal_rate(session, rate_id, payload)
    return unit_schemas.SeasonalRateResponse.model_validate(rate)


@router.delete("/v1/seasonal-rates/{rate_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_seasonal_rate(rate_id: int, session: AsyncSession = Depends(get_db_session)) -> None:
    await unit_service.delete_seasonal_rate(session, rate_id)


def _promotion_response(promotion) -> unit_schemas.PromotionResponse:
    return unit_schemas.PromotionResponse.model_validate(promotion)


@router.post("/v1/promotions", response_model=unit_schemas.PromotionResponse, status_code=status.HTTP_201_CREATED)
async def create_promotion(
    payload: unit_schemas.PromotionCreate,
    session: AsyncSession = Depends(get_db_session),
) -> unit_schemas.PromotionResponse:
    return _promotion_response(await unit_service.create_promotion(session, payload))


@router.get("/v1/promotions/{promotion_id}", response_model=unit_schemas.PromotionResponse)
async def get_promotion(
    promotion_id: str, session: AsyncSession = Depends(get_db_session)
) -> unit_schemas.PromotionResponse:
    return _promotion_response(await unit_service.get_promotion(session, promotion_id))


@router.patch("/v1/promotions/{promotion_id}", response_model=unit_schemas.PromotionResponse)
async def update_promotion(
    promotion_id: str,
    payload: unit_schemas.PromotionUpdate,
    session: AsyncSession = Depends(get_db_session),
) -> unit_schemas.PromotionResponse:
    return _promotion_response(await unit_service.update_promotion(session, promotion_id, payload))


@router.post("/v1/addons", response_model=unit_schemas.AddOnResponse, status_code=status.HTTP_201_CREATED)
async def create_addon(
    payload: unit_schemas.AddOnCreate,
    session: AsyncSession = Depends(get_db_session),
) -> unit_schemas.AddOnResponse:
    addon = await unit_service.create_addon(session, payload)
    return unit_schemas.AddOnResponse.model_validate(addon)


@router.get("/v1/units/{unit_id}/addons", response_model=list[unit_schemas.AddOnResponse])
async def list_unit_addons(
    unit_id: str, session: AsyncSession = Depends(get_db_session)
) -> list[unit_schemas.AddOnResponse]:
    unit = await unit_service.get_unit(session, unit_id)
    addons = await unit_service.list_addons_for_unit(session, unit)
    return [unit_schemas.AddOnResponse.model_validate(addon) for addon in addons]


@router.put("/v1/units/{unit_id}/cancellation-policy", response_model=unit_schemas.CancellationPolicyResponse)
async def set_unit_cancellation_policy(
    unit_id: str,
    payload: unit_schemas.CancellationPolicyUpdate,
    session: AsyncSession = Depends(get_db_session),
) -> unit_schemas.CancellationPolicyResponse:
    policy = await unit_service.set_cancellation_policy(session, payload, unit_id=unit_id)
    return unit_schemas.CancellationPolicyResponse.model_validate(policy)


@router.put(
    "/v1/properties/{property_id}/cancellation-policy",
    response_model=unit_schemas.CancellationPolicyResponse,
)
async def set_property_cancellation_policy(
    property_id: str,
    payload: unit_schemas.CancellationPolicyUpdate,
    session: AsyncSession = Depends(get_db_session),
) -> unit_schemas.CancellationPolicyResponse:
    policy = await unit_service.set_cancellation_policy(session, payload, property_id=property_id)
    return unit_schemas.CancellationPolicyResponse.model_validate(policy)


@router.post(
    "/v1/units/{unit_id}/blocks",
    response_model=availability_schemas.AvailabilityBlockResponse,
    status_code=status.HTTP_201_CREATED,
)
async def block_dates(
    unit_id: str,
    payload: availability_schemas.ManualBlockCreate,
    session: AsyncSession = Depends(get_db_session),
) -> availability_schemas.AvailabilityBlockResponse:
    await unit_service.get_unit(session, unit_id)
    block = await availability_service.block_dates(session, unit_id, payload)
    return availability_schemas.AvailabilityBlockResponse.model_validate(block)


@router.delete("/v1/blocks/{block_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unblock(block_id: int, session: AsyncSession = Depends(get_db_session)) -> None:
    await availability_service.unblock(session, block_id)


@router.get("/v1/units/{unit_id}/availability", response_model=availability_schemas.AvailabilityResponse)
async def get_availability(
    unit_id: str,
    check_in: date = Query(...),
    check_out: date = Query(...),
    session: AsyncSession = Depends(get_db_session),
) -> availability_schemas.AvailabilityResponse:
    if check_out <= check_in:
        raise ValidationError(
            detail="check_out must be after check_in",
            errors=[{"field": "check_out", "message": "must be after check_in"}],
        )
    await unit_service.get_unit(session, unit_id)
    conflicts = await availability_service.find_conflicts(session, unit_id, StayRange(check_in, check_out))
    return availability_schemas.AvailabilityResponse(
        unit_id=unit_id,
        check_in=check_in,
        check_out=check_out,
        available=not conflicts,
        conflicts=[availability_schemas.AvailabilityBlockResponse.model_validate(block) for block in conflicts],
    )
