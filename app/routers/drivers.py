"""
Drivers router — POST /v1/drivers (register), PATCH /v1/drivers/{id}/status,
                 POST /v1/drivers/{id}/location, POST /v1/drivers/{id}/offers/{ride_id}
"""
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import atomic, get_db
from app.dependencies import get_channels, get_offer_broker
from app.errors import Forbidden, InvalidState, NotFound
from app.middleware.auth import get_current_driver
from app.models.driver import Driver
from app.redis_client import geo_add_driver, geo_remove_driver, get_redis
from app.schemas.schemas import (
    Actor,
    DriverCreateRequest,
    DriverResponse,
    LocationUpdateRequest,
    OfferResponseAck,
    OfferResponseRequest,
)
from app.services.notifier import ChannelRegistry
from app.services.offer import OfferResponseBroker

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/drivers", tags=["Drivers"])


def driver_channel(driver_id: str) -> str:
    return f"driver:{driver_id}"


async def _own_driver(driver_id: str, actor: Actor, db: AsyncSession) -> Driver:
    if actor.id != driver_id:
        raise Forbidden("Drivers can only act for themselves")
    driver = await db.get(Driver, driver_id)
    if driver is None:
        raise NotFound("Driver not found")
    return driver


@router.post("", status_code=status.HTTP_201_CREATED, response_model=DriverResponse)
async def create_driver(
    payload: DriverCreateRequest,
    db: AsyncSession = Depends(get_db),
):
    """Register a new driver. No auth required for onboarding."""
    existing = await db.execute(select(Driver.id).where(Driver.phone == payload.phone))
    if existing.first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Phone already registered")
    driver = Driver(
        name=payload.name,
        phone=payload.phone,
        category=payload.category.lower(),
        status="offline",
    )
    async with atomic(db):
        db.add(driver)
    await db.refresh(driver)
    logger.info("Driver registered: id=%s category=%s", driver.id, driver.category)
    return DriverResponse.model_validate(driver)


@router.patch("/{driver_id}/status", status_code=status.HTTP_200_OK)
async def update_driver_status(
    driver_id: str,
    new_status: str,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    channels: ChannelRegistry = Depends(get_channels),
    actor: Actor = Depends(get_current_driver),
):
    """Go online (available) or offline. Not allowed mid-trip."""
    valid = {"offline", "available"}
    if new_status not in valid:
        raise HTTPException(status_code=400, detail=f"status must be one of {valid}")
    driver = await _own_driver(driver_id, actor, db)
    if driver.status == "on_trip":
        raise InvalidState("Driver is on a trip")

    async with atomic(db):
        driver.status = new_status

    if new_status == "available":
        await channels.bind(driver_id, driver_channel(driver_id))
        if driver.lat is not None and driver.lng is not None:
            await geo_add_driver(redis, driver.category, driver_id, driver.lat, driver.lng)
    else:
        await channels.unbind(driver_id)
        await geo_remove_driver(redis, driver.category, driver_id)
    logger.info("Driver %s is now %s", driver_id, new_status)
    return {"id": driver_id, "status": new_status}


@router.post("/{driver_id}/location", status_code=status.HTTP_204_NO_CONTENT)
async def update_location(
    driver_id: str,
    payload: LocationUpdateRequest,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    actor: Actor = Depends(get_current_driver),
):
    """
    Location ping. Refreshes the driver's heartbeat and, while available,
    its position in the GEO index.
    """
    driver = await _own_driver(driver_id, actor, db)
    async with atomic(db):
        driver.lat = payload.lat
        driver.lng = payload.lng
        driver.location_updated_at = payload.timestamp or datetime.now(timezone.utc)

    if driver.status == "available":
        await geo_add_driver(redis, driver.category, driver_id, payload.lat, payload.lng)


@router.post("/{driver_id}/offers/{ride_id}", response_model=OfferResponseAck)
async def respond_to_offer(
    driver_id: str,
    ride_id: str,
    payload: OfferResponseRequest,
    broker: OfferResponseBroker = Depends(get_offer_broker),
    actor: Actor = Depends(get_current_driver),
):
    """Accept or decline a ride offer. Answers after the offer window are ignored."""
    if actor.id != driver_id:
        raise Forbidden("Drivers can only answer their own offers")
    delivered = await broker.submit(ride_id, driver_id, payload.accepted)
    if not delivered:
        logger.info("Late offer response ride=%s driver=%s ignored", ride_id, driver_id)
    return OfferResponseAck(ride_id=ride_id, driver_id=driver_id, delivered=delivered)
