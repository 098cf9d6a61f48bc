"""
Ride lifecycle: creation, status changes, completion, payment and cancellation.

Every mutation runs inside ``atomic(db)``; notifications go out only after
the commit so a rolled back change is never announced.
"""
import asyncio
import logging
import secrets
from datetime import timedelta
from decimal import Decimal
from typing import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings
from app.database import atomic
from app.errors import Forbidden, InvalidState, NoDriversAvailable, NotFound, UpstreamFailure
from app.models.payment import Payment
from app.models.ride import Ride
from app.schemas.events import (
    PaymentStatusEvent,
    RideCancelledEvent,
    RideCompletedEvent,
    RideStatusEvent,
)
from app.schemas.schemas import (
    Actor,
    ActorRole,
    FareEstimateRequest,
    PaymentModeEnum,
    PlaceIn,
    RideCreateRequest,
    RideStatusEnum,
    SYSTEM_ACTOR,
    WaitingDetails,
)
from app.services import ledger, payment, pricing
from app.services.clock import Clock, as_utc, utcnow
from app.services.dispatch import DispatchEngine, run_dispatch
from app.services.geo import GeoEstimator, Place, RouteEstimate
from app.services.notifier import Notifier
from app.services.pricing import CancellationPolicy, UnsupportedCategory
from app.services.state_machine import RideStateMachine

logger = logging.getLogger(__name__)
settings = get_settings()

REQUEST_EXPIRED = "request_expired"

# Strong references to detached dispatch episodes
_background_tasks: set[asyncio.Task] = set()


def generate_otp(digits: int | None = None) -> str:
    digits = digits or settings.otp_digits
    low = 10 ** (digits - 1)
    return str(low + secrets.randbelow(9 * low))


def to_place(place: PlaceIn | None) -> Place | None:
    if place is None:
        return None
    return Place(address=place.address, lat=place.lat, lng=place.lng)


class RideService:
    def __init__(
        self,
        db: AsyncSession,
        geo: GeoEstimator,
        notifier: Notifier,
        engine: DispatchEngine,
        policy: CancellationPolicy | None = None,
        clock: Clock = utcnow,
        dispatch_mode: str | None = None,
        create_order: Callable[..., Awaitable[dict]] = payment.create_order,
    ):
        self.db = db
        self.geo = geo
        self.notifier = notifier
        self.engine = engine
        self.policy = policy or CancellationPolicy.from_settings()
        self.clock = clock
        self.dispatch_mode = dispatch_mode or settings.dispatch_mode
        self.create_order = create_order

    def _machine(self) -> RideStateMachine:
        return RideStateMachine(self.db, policy=self.policy, clock=self.clock)

    async def _notify_parties(self, ride: Ride, event, driver_id: str | None = None) -> None:
        await self.notifier.notify(ride.rider_id, event)
        driver_id = driver_id or ride.driver_id
        if driver_id:
            await self.notifier.notify(driver_id, event)

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def _route(self, pickup_in: PlaceIn, drop_in: PlaceIn) -> tuple[Place, Place, RouteEstimate]:
        pickup = await self.geo.locate(to_place(pickup_in))
        drop = await self.geo.locate(to_place(drop_in))
        route = await self.geo.estimate(pickup, drop)
        return pickup, drop, route

    async def estimate(self, request: FareEstimateRequest) -> tuple[RouteEstimate, list[pricing.Quote]]:
        pickup, drop, route = await self._route(request.pickup, request.drop)
        pickup_region = await self.geo.region_of(pickup)
        drop_region = await self.geo.region_of(drop)
        quotes = pricing.estimate_all(
            route.distance_km, route.duration_min, request.trip_kind.value, pickup, drop, pickup_region, drop_region
        )
        return route, quotes

    async def create_ride(self, rider_id: str, request: RideCreateRequest, idempotency_key: str | None = None) -> Ride:
        # keys are stored per rider so two riders may pick the same one
        stored_key = f"{rider_id}:{idempotency_key}" if idempotency_key else None
        if stored_key:
            existing = await self._ride_for_key(stored_key)
            if existing is not None:
                logger.info("Replaying ride %s for idempotency key %s", existing.id, idempotency_key)
                return existing

        pickup, drop, route = await self._route(request.pickup, request.drop)
        pickup_region = await self.geo.region_of(pickup)
        drop_region = await self.geo.region_of(drop)
        category = request.category.lower()
        try:
            quote = pricing.quote(
                route.distance_km,
                route.duration_min,
                category,
                request.trip_kind.value,
                pickup,
                drop,
                pickup_region,
                drop_region,
            )
        except UnsupportedCategory as exc:
            raise InvalidState(str(exc)) from exc

        now = self.clock()
        ride = Ride(
            rider_id=rider_id,
            pickup_address=pickup.address,
            pickup_lat=pickup.lat,
            pickup_lng=pickup.lng,
            pickup_region=pickup_region,
            drop_address=drop.address,
            drop_lat=drop.lat,
            drop_lng=drop.lng,
            drop_region=drop_region,
            category=category,
            trip_kind=request.trip_kind.value,
            distance_km=route.distance_km,
            duration_min=route.duration_min,
            estimated_fare=quote.total_fare,
            fare=quote.total_fare,
            state_tax=quote.surcharges.state_tax,
            entry_toll=quote.surcharges.entry_toll,
            airport_fee=quote.surcharges.airport_fee,
            extra_charges=Decimal("0"),
            payment_mode=request.payment_mode.value,
            payment_status="PENDING",
            status=RideStatusEnum.SEARCHING.value,
            otp=generate_otp(),
            request_expires_at=now + timedelta(minutes=settings.ride_request_ttl_minutes),
            idempotency_key=stored_key,
        )
        try:
            async with atomic(self.db):
                self.db.add(ride)
        except IntegrityError:
            # a concurrent retry with the same key got there first
            existing = await self._ride_for_key(stored_key) if stored_key else None
            if existing is None:
                raise
            logger.info("Replaying ride %s for concurrent idempotency key %s", existing.id, idempotency_key)
            return existing
        await self.db.refresh(ride)
        logger.info(
            "Ride created: id=%s rider=%s category=%s %.1f km fare=%s",
            ride.id, rider_id, category, route.distance_km, ride.fare,
        )

        await self._dispatch(ride)
        return ride

    async def _ride_for_key(self, stored_key: str) -> Ride | None:
        result = await self.db.execute(select(Ride).where(Ride.idempotency_key == stored_key))
        return result.scalar_one_or_none()

    async def _dispatch(self, ride: Ride) -> None:
        if self.dispatch_mode == "inline":
            result = await run_dispatch(self.engine, ride.id)
            await self.db.refresh(ride)
            if not result.assigned and ride.status == RideStatusEnum.CANCELLED:
                raise NoDriversAvailable()
            return
        task = asyncio.create_task(run_dispatch(self.engine, ride.id))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_ride(self, ride_id: str, actor: Actor) -> Ride:
        ride = await self.db.get(Ride, ride_id, populate_existing=True)
        if ride is None:
            raise NotFound()
        if actor.role != ActorRole.system and actor.id not in (ride.rider_id, ride.driver_id):
            raise NotFound()
        return ride

    def waiting_details(self, ride: Ride) -> WaitingDetails | None:
        if ride.status != RideStatusEnum.DRIVER_ARRIVED or ride.wait_started_at is None:
            return None
        free = settings.free_waiting_minutes
        per_minute = settings.waiting_charge_per_minute
        minutes, charge = pricing.wait_charge(ride.wait_started_at, self.clock(), free, per_minute)
        return WaitingDetails(
            waiting_started_at=as_utc(ride.wait_started_at),
            current_waiting_minutes=minutes,
            free_waiting_minutes=free,
            chargeable_minutes=max(minutes - free, 0),
            current_waiting_charges=charge,
            charge_per_minute=per_minute,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def update_status(
        self,
        ride_id: str,
        actor: Actor,
        new_status: RideStatusEnum,
        otp: str | None = None,
        final_place: Place | None = None,
        reason: str | None = None,
    ) -> Ride:
        if new_status in (RideStatusEnum.SEARCHING, RideStatusEnum.ACCEPTED):
            raise Forbidden(f"{new_status.value} is set by dispatch only")
        if new_status == RideStatusEnum.CANCELLED:
            return await self.cancel_ride(ride_id, actor, reason)
        if new_status in (RideStatusEnum.RIDE_ENDED, RideStatusEnum.PAYMENT_PENDING):
            return await self.complete_ride(ride_id, actor, final_place)

        machine = self._machine()
        async with atomic(self.db):
            if new_status == RideStatusEnum.DRIVER_ARRIVED:
                ride = await machine.arrive(ride_id, actor)
            else:
                ride = await machine.start(ride_id, actor, otp)
        await self._notify_parties(ride, RideStatusEvent(ride_id=ride.id, status=ride.status))
        return ride

    async def complete_ride(self, ride_id: str, actor: Actor, final_place: Place | None = None) -> Ride:
        machine = self._machine()
        order = None
        async with atomic(self.db):
            current = await machine.load(ride_id)
            amount = pricing.finalize_amount(current)
            ride = await machine.finish(ride_id, actor, amount, final_place)
            commission = pricing.platform_commission(amount)
            ride.commission = commission
            if ride.payment_mode == PaymentModeEnum.cash:
                await ledger.post_entry(
                    self.db,
                    ride.driver_id,
                    -commission,
                    ledger.COMMISSION,
                    ride_id=ride.id,
                    description=f"Platform commission on cash ride {ride.id}",
                )
            else:
                order = Payment(
                    ride_id=ride.id,
                    rider_id=ride.rider_id,
                    amount=amount,
                    currency=settings.currency,
                    status="PENDING",
                    idempotency_key=f"ride:{ride.id}:order",
                )
                self.db.add(order)
        await self.db.refresh(ride)
        logger.info("Ride %s completed: amount=%s mode=%s", ride.id, amount, ride.payment_mode)

        await self._notify_parties(
            ride,
            RideCompletedEvent(
                ride_id=ride.id,
                amount=amount,
                fare=ride.fare,
                extra_charges=ride.extra_charges,
                waiting_minutes=ride.waiting_minutes or 0,
                payment_mode=ride.payment_mode,
                distance_km=ride.distance_km,
                duration_min=ride.duration_min,
            ),
        )
        await self._notify_parties(ride, RideStatusEvent(ride_id=ride.id, status=ride.status))
        if order is not None:
            await self._open_payment_order(ride, order)
        return ride

    async def _open_payment_order(self, ride: Ride, order: Payment) -> None:
        try:
            result = await self.create_order(
                ride.id, ride.rider_id, order.amount, ride.payment_mode, order.idempotency_key
            )
        except UpstreamFailure as exc:
            logger.error("Payment order for ride %s not created: %s", ride.id, exc)
            return
        async with atomic(self.db):
            order.order_ref = result["order_ref"]
        await self.notifier.notify(
            ride.rider_id,
            PaymentStatusEvent(ride_id=ride.id, status="PENDING", amount=order.amount, order_ref=order.order_ref),
        )

    async def confirm_payment(self, ride_id: str, actor: Actor, psp_ref: str, success: bool) -> tuple[Ride, Payment | None]:
        ride = await self.get_ride(ride_id, actor)
        if actor.role == ActorRole.driver:
            raise Forbidden("Payments are confirmed by the rider")

        machine = self._machine()
        async with atomic(self.db):
            ride, changed = await machine.settle_payment(ride.id, success)
            result = await self.db.execute(select(Payment).where(Payment.ride_id == ride.id))
            order = result.scalar_one_or_none()
            if changed and order is not None:
                order.psp_ref = psp_ref
                order.status = "SUCCESS" if success else "FAILED"
            if changed and success:
                amount = ride.total_amount or pricing.finalize_amount(ride)
                commission = ride.commission
                if commission is None:
                    commission = pricing.platform_commission(amount)
                await ledger.post_entry(
                    self.db,
                    ride.driver_id,
                    amount - commission,
                    ledger.RIDE_EARNING,
                    ride_id=ride.id,
                    description=f"Earning for ride {ride.id}",
                )
        await self.db.refresh(ride)
        if not changed:
            return ride, order

        logger.info("Payment for ride %s %s (ref=%s)", ride.id, "settled" if success else "failed", psp_ref)
        event = PaymentStatusEvent(
            ride_id=ride.id,
            status=ride.payment_status,
            amount=ride.total_amount or Decimal("0"),
            order_ref=order.order_ref if order else None,
        )
        await self._notify_parties(ride, event)
        if success:
            await self._notify_parties(ride, RideStatusEvent(ride_id=ride.id, status=ride.status))
        return ride, order

    async def cancel_ride(self, ride_id: str, actor: Actor, reason: str | None = None) -> Ride:
        machine = self._machine()
        async with atomic(self.db):
            outcome = await machine.cancel(ride_id, actor, reason)
        ride = outcome.ride
        await self.db.refresh(ride)
        logger.info("Ride %s cancelled by %s, fee=%s", ride.id, actor.role.value, outcome.fee)
        await self._notify_parties(
            ride,
            RideCancelledEvent(
                ride_id=ride.id,
                cancelled_by=actor.role,
                reason=reason,
                cancellation_fee=outcome.fee,
            ),
            driver_id=outcome.driver_id,
        )
        return ride


# ---------------------------------------------------------------------------
# Request expiry
# ---------------------------------------------------------------------------

async def expire_stale_rides(
    session_factory: async_sessionmaker[AsyncSession],
    notifier: Notifier,
    clock: Clock = utcnow,
) -> int:
    """Cancel SEARCHING rides whose request window has passed."""
    now = clock()
    async with session_factory() as db:
        result = await db.execute(
            select(Ride.id, Ride.rider_id).where(
                Ride.status == RideStatusEnum.SEARCHING.value,
                Ride.request_expires_at.is_not(None),
                Ride.request_expires_at < now,
            )
        )
        stale = result.all()
        expired = 0
        for ride_id, rider_id in stale:
            async with atomic(db):
                won = await RideStateMachine(db, clock=clock).expire_unassigned(ride_id, REQUEST_EXPIRED)
            if not won:
                continue
            expired += 1
            await notifier.notify(
                rider_id,
                RideCancelledEvent(ride_id=ride_id, cancelled_by=SYSTEM_ACTOR.role, reason=REQUEST_EXPIRED),
            )
    if expired:
        logger.info("Expired %d stale ride request(s)", expired)
    return expired


async def run_expiry_sweeper(
    session_factory: async_sessionmaker[AsyncSession],
    notifier: Notifier,
    interval: float | None = None,
) -> None:
    interval = interval or settings.expiry_sweep_interval_seconds
    while True:
        try:
            await expire_stale_rides(session_factory, notifier)
        except Exception:
            logger.exception("Expiry sweep failed")
        await asyncio.sleep(interval)
