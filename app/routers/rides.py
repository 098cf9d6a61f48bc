"""
Rides router — create / estimate / fetch / status / complete / cancel
"""
import logging

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Header, Request, status

from app.dependencies import get_ride_service
from app.middleware.auth import get_current_actor, get_current_driver, get_current_rider
from app.middleware.idempotency import check_idempotency, store_idempotency_result
from app.models.ride import Ride
from app.redis_client import get_redis
from app.schemas.schemas import (
    Actor,
    CancelRequest,
    CompleteRequest,
    FareEstimateRequest,
    FareEstimateResponse,
    FareQuote,
    RideCreateRequest,
    RideResponse,
    StatusUpdateRequest,
)
from app.services.lifecycle import RideService, to_place

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/rides", tags=["Rides"])


def _ride_response(service: RideService, ride: Ride, actor: Actor) -> RideResponse:
    resp = RideResponse.model_validate(ride)
    resp.waiting = service.waiting_details(ride)
    if actor.id != ride.rider_id:
        resp.otp = None
    return resp


@router.post("", status_code=status.HTTP_201_CREATED, response_model=RideResponse)
async def create_ride(
    payload: RideCreateRequest,
    request: Request,
    service: RideService = Depends(get_ride_service),
    redis: aioredis.Redis = Depends(get_redis),
    rider: Actor = Depends(get_current_rider),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    if idempotency_key:
        cached = await check_idempotency(request, redis, rider.id)
        if cached:
            return cached

    ride = await service.create_ride(rider.id, payload, idempotency_key)
    resp = _ride_response(service, ride, rider)

    if idempotency_key:
        await store_idempotency_result(redis, rider.id, idempotency_key, 201, resp.model_dump(mode="json"))
    return resp


@router.post("/estimate", response_model=FareEstimateResponse)
async def estimate_fare(
    payload: FareEstimateRequest,
    service: RideService = Depends(get_ride_service),
    _: Actor = Depends(get_current_actor),
):
    route, quotes = await service.estimate(payload)
    return FareEstimateResponse(
        distance_km=route.distance_km,
        duration_min=route.duration_min,
        estimates=[
            FareQuote(
                category=q.category,
                base_fare=q.base_fare,
                state_tax=q.surcharges.state_tax,
                entry_toll=q.surcharges.entry_toll,
                airport_fee=q.surcharges.airport_fee,
                total_fare=q.total_fare,
            )
            for q in quotes
        ],
    )


@router.get("/{ride_id}", response_model=RideResponse)
async def get_ride(
    ride_id: str,
    service: RideService = Depends(get_ride_service),
    actor: Actor = Depends(get_current_actor),
):
    ride = await service.get_ride(ride_id, actor)
    return _ride_response(service, ride, actor)


@router.patch("/{ride_id}/status", response_model=RideResponse)
async def update_status(
    ride_id: str,
    payload: StatusUpdateRequest,
    service: RideService = Depends(get_ride_service),
    actor: Actor = Depends(get_current_actor),
):
    # Hide rides the caller has no part in
    await service.get_ride(ride_id, actor)
    ride = await service.update_status(
        ride_id,
        actor,
        payload.status,
        otp=payload.otp,
        final_place=to_place(payload.final_location),
        reason=payload.cancellation_reason,
    )
    return _ride_response(service, ride, actor)


@router.post("/{ride_id}/complete", response_model=RideResponse)
async def complete_ride(
    ride_id: str,
    payload: CompleteRequest,
    service: RideService = Depends(get_ride_service),
    driver: Actor = Depends(get_current_driver),
):
    await service.get_ride(ride_id, driver)
    ride = await service.complete_ride(ride_id, driver, to_place(payload.final_location))
    return _ride_response(service, ride, driver)


@router.post("/{ride_id}/cancel", response_model=RideResponse)
async def cancel_ride(
    ride_id: str,
    payload: CancelRequest,
    service: RideService = Depends(get_ride_service),
    actor: Actor = Depends(get_current_actor),
):
    await service.get_ride(ride_id, actor)
    ride = await service.cancel_ride(ride_id, actor, payload.reason)
    return _ride_response(service, ride, actor)
