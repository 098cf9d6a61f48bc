"""
Tagged payloads pushed over the notification channel.

Each event name has exactly one model; ``Notifier`` only accepts these, so a
payload is validated before it leaves the process.
"""
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel

from app.schemas.schemas import ActorRole, PaymentModeEnum, PaymentStatusEnum, RideStatusEnum


class Event(BaseModel):
    event: str
    ride_id: str


class RideOfferEvent(Event):
    event: Literal["ride_offer"] = "ride_offer"
    rider_id: str
    pickup_address: Optional[str] = None
    drop_address: Optional[str] = None
    category: str
    fare: Decimal
    distance_km: float
    duration_min: float
    payment_mode: PaymentModeEnum
    pickup_distance_km: float
    pickup_duration_min: float
    respond_within_seconds: float


class RideAssignedEvent(Event):
    event: Literal["ride_assigned"] = "ride_assigned"
    driver_id: str
    otp: str
    pickup_distance_km: float
    pickup_duration_min: float


class AssignmentConfirmedEvent(Event):
    event: Literal["ride_assignment_confirmed"] = "ride_assignment_confirmed"
    driver_id: str


class RideUnavailableEvent(Event):
    event: Literal["ride_unavailable"] = "ride_unavailable"
    accepted_by_driver_id: str


class AcceptanceFailedEvent(Event):
    event: Literal["ride_acceptance_failed"] = "ride_acceptance_failed"
    reason: Literal["already_accepted", "ride_unavailable"]


class RideStatusEvent(Event):
    event: Literal["ride_status_update"] = "ride_status_update"
    status: RideStatusEnum


class NoDriverFoundEvent(Event):
    event: Literal["no_driver_found"] = "no_driver_found"
    message: str = "No available drivers found nearby. Please try again later."


class RideCompletedEvent(Event):
    event: Literal["ride_completed"] = "ride_completed"
    amount: Decimal
    fare: Decimal
    extra_charges: Decimal
    waiting_minutes: int
    payment_mode: PaymentModeEnum
    distance_km: float
    duration_min: float


class PaymentStatusEvent(Event):
    event: Literal["payment_status"] = "payment_status"
    status: PaymentStatusEnum
    amount: Decimal
    order_ref: Optional[str] = None


class RideCancelledEvent(Event):
    event: Literal["ride_cancelled"] = "ride_cancelled"
    cancelled_by: ActorRole
    reason: Optional[str] = None
    cancellation_fee: Decimal = Decimal("0")
