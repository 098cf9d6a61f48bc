"""
Ride status transitions.

Each transition is applied as a compare-and-swap on the ride's current status
inside the caller's open transaction; the caller commits (``atomic``). A
concurrent writer that got there first makes the swap miss and the call fails
with ``InvalidState`` without touching the row.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.errors import Forbidden, InvalidOTP, InvalidState, NotFound
from app.models.driver import Driver
from app.models.ride import Ride
from app.schemas.schemas import Actor, ActorRole, PaymentModeEnum
from app.schemas.schemas import RideStatusEnum as S
from app.services import ledger
from app.services.clock import Clock, utcnow
from app.services.geo import Place
from app.services.pricing import CancellationPolicy, wait_charge

logger = logging.getLogger(__name__)
settings = get_settings()

TRANSITIONS: dict[S, frozenset[S]] = {
    S.SEARCHING: frozenset({S.ACCEPTED, S.CANCELLED}),
    S.ACCEPTED: frozenset({S.DRIVER_ARRIVED, S.CANCELLED}),
    S.DRIVER_ARRIVED: frozenset({S.RIDE_STARTED, S.CANCELLED}),
    S.RIDE_STARTED: frozenset({S.RIDE_ENDED, S.PAYMENT_PENDING, S.CANCELLED}),
    S.PAYMENT_PENDING: frozenset({S.RIDE_ENDED}),
    S.RIDE_ENDED: frozenset(),
    S.CANCELLED: frozenset(),
}

# driver_id is set exactly while the ride is in one of these
ASSIGNED_STATUSES = frozenset({S.ACCEPTED, S.DRIVER_ARRIVED, S.RIDE_STARTED, S.PAYMENT_PENDING, S.RIDE_ENDED})

CANCELLABLE_BY: dict[ActorRole, frozenset[S]] = {
    ActorRole.rider: frozenset({S.SEARCHING, S.ACCEPTED, S.DRIVER_ARRIVED}),
    ActorRole.driver: frozenset({S.ACCEPTED, S.DRIVER_ARRIVED}),
    ActorRole.system: frozenset({S.SEARCHING, S.ACCEPTED, S.DRIVER_ARRIVED, S.RIDE_STARTED}),
}


def can_transition(current: str, target: str) -> bool:
    return S(target) in TRANSITIONS[S(current)]


@dataclass
class Cancellation:
    ride: Ride
    driver_id: str | None
    fee: Decimal


class RideStateMachine:
    def __init__(
        self,
        db: AsyncSession,
        policy: CancellationPolicy | None = None,
        clock: Clock = utcnow,
        free_waiting_minutes: int | None = None,
        waiting_charge_per_minute: int | None = None,
    ):
        self.db = db
        self.policy = policy or CancellationPolicy.from_settings()
        self.clock = clock
        self.free_waiting_minutes = (
            settings.free_waiting_minutes if free_waiting_minutes is None else free_waiting_minutes
        )
        self.waiting_charge_per_minute = (
            settings.waiting_charge_per_minute if waiting_charge_per_minute is None else waiting_charge_per_minute
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def load(self, ride_id: str) -> Ride:
        ride = await self.db.get(Ride, ride_id, populate_existing=True)
        if ride is None:
            raise NotFound()
        return ride

    def _require_assigned_driver(self, ride: Ride, actor: Actor) -> None:
        if actor.role != ActorRole.driver or ride.driver_id is None or ride.driver_id != actor.id:
            raise Forbidden("Only the assigned driver can do this")

    def _require_transition(self, ride: Ride, target: S) -> None:
        if not can_transition(ride.status, target):
            raise InvalidState(f"Cannot move ride from {ride.status} to {target.value}")

    async def _swap(self, ride: Ride, target: S, **values) -> Ride:
        result = await self.db.execute(
            update(Ride)
            .where(Ride.id == ride.id, Ride.status == ride.status)
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidState(f"Ride {ride.id} changed status concurrently")
        await self.db.refresh(ride)
        logger.info("Ride %s -> %s", ride.id, target.value)
        return ride

    async def release_driver(self, driver_id: str | None) -> None:
        if driver_id is None:
            return
        await self.db.execute(
            update(Driver)
            .where(Driver.id == driver_id, Driver.status == "on_trip")
            .values(status="available")
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def arrive(self, ride_id: str, actor: Actor) -> Ride:
        ride = await self.load(ride_id)
        self._require_assigned_driver(ride, actor)
        self._require_transition(ride, S.DRIVER_ARRIVED)
        now = self.clock()
        return await self._swap(ride, S.DRIVER_ARRIVED, wait_started_at=now, driver_arrived_at=now)

    async def start(self, ride_id: str, actor: Actor, otp: str | None) -> Ride:
        ride = await self.load(ride_id)
        self._require_assigned_driver(ride, actor)
        self._require_transition(ride, S.RIDE_STARTED)
        if not otp or otp != ride.otp:
            raise InvalidOTP()

        now = self.clock()
        minutes, charge = wait_charge(
            ride.wait_started_at, now, self.free_waiting_minutes, self.waiting_charge_per_minute
        )
        if charge:
            logger.info("Ride %s waited %d min, charging %s", ride.id, minutes, charge)
        return await self._swap(
            ride,
            S.RIDE_STARTED,
            extra_charges=(ride.extra_charges or Decimal("0")) + charge,
            fare=ride.fare + charge,
            waiting_minutes=minutes,
            wait_started_at=None,
            started_at=now,
            otp=None,
        )

    async def finish(self, ride_id: str, actor: Actor, amount: Decimal, final_place: Place | None = None) -> Ride:
        ride = await self.load(ride_id)
        self._require_assigned_driver(ride, actor)
        if ride.status != S.RIDE_STARTED:
            raise InvalidState("Ride can only be completed once started")

        cash = ride.payment_mode == PaymentModeEnum.cash
        values = dict(
            total_amount=amount,
            ended_at=self.clock(),
            payment_status="COMPLETED" if cash else "PENDING",
        )
        if final_place is not None and final_place.has_coordinates:
            values.update(drop_lat=final_place.lat, drop_lng=final_place.lng)
            if final_place.address:
                values["drop_address"] = final_place.address
        ride = await self._swap(ride, S.RIDE_ENDED if cash else S.PAYMENT_PENDING, **values)
        await self.release_driver(ride.driver_id)
        return ride

    async def settle_payment(self, ride_id: str, success: bool) -> tuple[Ride, bool]:
        """Returns the ride and whether this call changed it."""
        ride = await self.load(ride_id)
        if ride.status == S.RIDE_ENDED and ride.payment_status == "COMPLETED":
            return ride, False
        if ride.status != S.PAYMENT_PENDING:
            raise InvalidState(f"Ride {ride.id} is not awaiting payment")
        if success:
            return await self._swap(ride, S.RIDE_ENDED, payment_status="COMPLETED"), True

        if ride.payment_status == "FAILED":
            return ride, False
        await self.db.execute(
            update(Ride)
            .where(Ride.id == ride.id, Ride.status == S.PAYMENT_PENDING.value)
            .values(payment_status="FAILED")
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(ride)
        return ride, True

    async def cancel(self, ride_id: str, actor: Actor, reason: str | None = None) -> Cancellation:
        ride = await self.load(ride_id)
        if actor.role == ActorRole.rider and actor.id != ride.rider_id:
            raise Forbidden("Only the rider who booked can cancel")
        if actor.role == ActorRole.driver and (ride.driver_id is None or actor.id != ride.driver_id):
            raise Forbidden("Only the assigned driver can cancel")
        if ride.status not in CANCELLABLE_BY[actor.role]:
            raise InvalidState(f"Ride in {ride.status} cannot be cancelled by the {actor.role.value}")

        driver_id = ride.driver_id
        fee = self.policy.fee(actor.role.value, ride.accepted_at, self.clock(), ride.fare)
        ride = await self._swap(
            ride,
            S.CANCELLED,
            driver_id=None,
            otp=None,
            cancelled_by=actor.role.value,
            cancellation_reason=reason,
            cancellation_fee=fee,
        )
        await self.release_driver(driver_id)

        if fee > 0 and driver_id is not None:
            payer, payee = (ride.rider_id, driver_id) if actor.role == ActorRole.rider else (driver_id, ride.rider_id)
            await ledger.transfer(
                self.db,
                payer,
                payee,
                fee,
                ride_id=ride.id,
                description=f"Cancellation fee for ride {ride.id}",
            )
        return Cancellation(ride=ride, driver_id=driver_id, fee=fee)

    async def expire_unassigned(self, ride_id: str, reason: str) -> bool:
        """Cancel a ride nobody took. Only the call that wins the swap returns True."""
        result = await self.db.execute(
            update(Ride)
            .where(Ride.id == ride_id, Ride.status == S.SEARCHING.value, Ride.driver_id.is_(None))
            .values(status=S.CANCELLED.value, cancelled_by=ActorRole.system.value, cancellation_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
