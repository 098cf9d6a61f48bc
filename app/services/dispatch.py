"""
Driver dispatch for a SEARCHING ride.

Flow:
  1. Look up online drivers of the ride's category around the pickup,
     starting at the initial radius
  2. Offer the ride to each new candidate, nearest first, re-checking the
     ride's status before every query and every offer
  3. On acceptance, assign with a single conditional UPDATE
     (status = SEARCHING AND driver_id IS NULL); a miss means another driver
     won and the loop moves on
  4. Widen the radius by a fixed step until the cap; the caller cancels the
     ride if nobody was assigned
"""
import logging
from dataclasses import dataclass, field

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings
from app.database import atomic
from app.errors import ConcurrencyConflict, NotFound
from app.models.driver import Driver
from app.models.ride import Ride
from app.redis_client import geo_remove_driver
from app.schemas.events import (
    AcceptanceFailedEvent,
    AssignmentConfirmedEvent,
    NoDriverFoundEvent,
    RideAssignedEvent,
    RideUnavailableEvent,
)
from app.schemas.schemas import RideStatusEnum
from app.services.clock import Clock, utcnow
from app.services.driver_directory import DriverCandidate, DriverDirectory
from app.services.geo import GeoEstimator, Place, RouteEstimate
from app.services.notifier import Notifier
from app.services.offer import OfferProtocol
from app.services.state_machine import RideStateMachine

logger = logging.getLogger(__name__)
settings = get_settings()

NO_DRIVER_FOUND = "no_driver_found"


@dataclass
class DispatchResult:
    ride_id: str
    assigned: bool
    status: str | None
    driver_id: str | None = None
    attempted: list[str] = field(default_factory=list)


class DispatchEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        directory: DriverDirectory,
        offers: OfferProtocol,
        geo: GeoEstimator,
        notifier: Notifier,
        redis: aioredis.Redis | None = None,
        initial_radius_km: float | None = None,
        radius_step_km: float | None = None,
        max_radius_km: float | None = None,
        offer_timeout: float | None = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.directory = directory
        self.offers = offers
        self.geo = geo
        self.notifier = notifier
        self.redis = redis
        self.initial_radius_km = initial_radius_km if initial_radius_km is not None else settings.dispatch_initial_radius_km
        self.radius_step_km = radius_step_km if radius_step_km is not None else settings.dispatch_radius_step_km
        self.max_radius_km = max_radius_km if max_radius_km is not None else settings.dispatch_max_radius_km
        self.offer_timeout = offer_timeout if offer_timeout is not None else settings.dispatch_offer_timeout_seconds
        if self.radius_step_km <= 0:
            raise ValueError("radius_step_km must be positive")
        self.clock = clock

    async def _load(self, ride_id: str) -> Ride:
        async with self.session_factory() as db:
            ride = await db.get(Ride, ride_id)
        if ride is None:
            raise NotFound()
        return ride

    def _stopped(self, ride: Ride, attempted: list[str]) -> DispatchResult:
        logger.info("Dispatch for ride=%s stopped, status is %s", ride.id, ride.status)
        return DispatchResult(ride.id, assigned=False, status=ride.status, driver_id=ride.driver_id, attempted=attempted)

    async def dispatch(self, ride_id: str) -> DispatchResult:
        attempted: list[str] = []
        radius = self.initial_radius_km

        while radius <= self.max_radius_km:
            ride = await self._load(ride_id)
            if ride.status != RideStatusEnum.SEARCHING:
                return self._stopped(ride, attempted)

            pickup = Place(address=ride.pickup_address, lat=ride.pickup_lat, lng=ride.pickup_lng)
            candidates = await self.directory.find_online(pickup, radius, ride.category, exclude=attempted)
            logger.info("Ride %s: %d candidate(s) within %.1f km", ride_id, len(candidates), radius)

            for candidate in candidates:
                ride = await self._load(ride_id)
                if ride.status != RideStatusEnum.SEARCHING:
                    return self._stopped(ride, attempted)

                attempted.append(candidate.driver_id)
                metrics = await self.geo.estimate(candidate.place, pickup)
                offer = await self.offers.offer(ride, candidate, metrics, self.offer_timeout)
                logger.info("Ride %s offer to driver=%s: %s", ride_id, candidate.driver_id, offer.outcome.value)
                if not offer.accepted:
                    continue

                try:
                    assigned = await self.assign(ride_id, candidate, metrics)
                except ConcurrencyConflict:
                    logger.warning("Ride %s lost assignment race for driver=%s", ride_id, candidate.driver_id)
                    await self._reject(ride_id, candidate.driver_id)
                    continue
                except SQLAlchemyError:
                    logger.exception("Assignment failed ride=%s driver=%s", ride_id, candidate.driver_id)
                    await self._reject(ride_id, candidate.driver_id)
                    continue

                await self._announce(assigned, candidate, metrics)
                return DispatchResult(
                    ride_id,
                    assigned=True,
                    status=assigned.status,
                    driver_id=candidate.driver_id,
                    attempted=attempted,
                )

            radius += self.radius_step_km

        logger.warning("Ride %s: no driver within %.1f km", ride_id, self.max_radius_km)
        ride = await self._load(ride_id)
        return DispatchResult(ride_id, assigned=False, status=ride.status, driver_id=ride.driver_id, attempted=attempted)

    async def assign(self, ride_id: str, candidate: DriverCandidate, metrics: RouteEstimate) -> Ride:
        """Give the ride to ``candidate`` unless someone else already has it."""
        async with self.session_factory() as db:
            async with atomic(db):
                result = await db.execute(
                    update(Ride)
                    .where(
                        Ride.id == ride_id,
                        Ride.status == RideStatusEnum.SEARCHING.value,
                        Ride.driver_id.is_(None),
                    )
                    .values(
                        driver_id=candidate.driver_id,
                        status=RideStatusEnum.ACCEPTED.value,
                        accepted_at=self.clock(),
                        pickup_distance_km=metrics.distance_km,
                        pickup_duration_min=metrics.duration_min,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConcurrencyConflict()
                await db.execute(
                    update(Driver)
                    .where(Driver.id == candidate.driver_id)
                    .values(status="on_trip")
                    .execution_options(synchronize_session=False)
                )
            ride = await db.get(Ride, ride_id)
        logger.info("Ride %s assigned to driver=%s", ride_id, candidate.driver_id)
        return ride

    async def _reject(self, ride_id: str, driver_id: str) -> None:
        ride = await self._load(ride_id)
        reason = "already_accepted" if ride.driver_id and ride.driver_id != driver_id else "ride_unavailable"
        await self.notifier.notify(driver_id, AcceptanceFailedEvent(ride_id=ride_id, reason=reason))

    async def _announce(self, ride: Ride, candidate: DriverCandidate, metrics: RouteEstimate) -> None:
        await self.notifier.notify(
            ride.rider_id,
            RideAssignedEvent(
                ride_id=ride.id,
                driver_id=candidate.driver_id,
                otp=ride.otp,
                pickup_distance_km=metrics.distance_km,
                pickup_duration_min=metrics.duration_min,
            ),
        )
        await self.notifier.notify(
            candidate.driver_id, AssignmentConfirmedEvent(ride_id=ride.id, driver_id=candidate.driver_id)
        )
        await self.notifier.broadcast(RideUnavailableEvent(ride_id=ride.id, accepted_by_driver_id=candidate.driver_id))
        if self.redis is not None:
            try:
                await geo_remove_driver(self.redis, candidate.category, candidate.driver_id)
            except RedisError as exc:
                logger.warning("Could not drop driver=%s from geo index: %s", candidate.driver_id, exc)

    async def give_up(self, ride_id: str) -> DispatchResult:
        """Cancel a ride nobody took and tell the rider, once."""
        async with self.session_factory() as db:
            async with atomic(db):
                won = await RideStateMachine(db, clock=self.clock).expire_unassigned(ride_id, NO_DRIVER_FOUND)
            ride = await db.get(Ride, ride_id)
        if ride is None:
            return DispatchResult(ride_id, assigned=False, status=None)
        if won:
            logger.warning("Ride %s cancelled, no driver found", ride_id)
            await self.notifier.notify(ride.rider_id, NoDriverFoundEvent(ride_id=ride_id))
        return DispatchResult(ride_id, assigned=False, status=ride.status, driver_id=ride.driver_id)


async def run_dispatch(engine: DispatchEngine, ride_id: str) -> DispatchResult:
    """Run one dispatch episode and cancel the ride if it ends unassigned."""
    try:
        result = await engine.dispatch(ride_id)
    except Exception:
        logger.exception("Dispatch crashed for ride=%s", ride_id)
        result = None

    if result is not None and (result.assigned or result.status != RideStatusEnum.SEARCHING):
        return result
    outcome = await engine.give_up(ride_id)
    if result is not None:
        outcome.attempted = result.attempted
    return outcome
