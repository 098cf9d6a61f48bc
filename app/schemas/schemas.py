from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class RideStatusEnum(str, Enum):
    SEARCHING = "SEARCHING"
    ACCEPTED = "ACCEPTED"
    DRIVER_ARRIVED = "DRIVER_ARRIVED"
    RIDE_STARTED = "RIDE_STARTED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    RIDE_ENDED = "RIDE_ENDED"
    CANCELLED = "CANCELLED"


class PaymentModeEnum(str, Enum):
    cash = "cash"
    card = "card"
    upi = "upi"


class PaymentStatusEnum(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TripKindEnum(str, Enum):
    local = "local"
    outstation = "outstation"
    round_trip = "round_trip"


class DriverStatusEnum(str, Enum):
    offline = "offline"
    available = "available"
    on_trip = "on_trip"


class ActorRole(str, Enum):
    rider = "rider"
    driver = "driver"
    system = "system"


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------

class PlaceIn(BaseModel):
    """A pickup/drop point given as an address, coordinates, or both."""

    address: Optional[str] = Field(default=None, max_length=500)
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)

    @model_validator(mode="after")
    def _address_or_coordinates(self):
        has_coords = self.lat is not None and self.lng is not None
        if not self.address and not has_coords:
            raise ValueError("either address or lat/lng is required")
        if (self.lat is None) != (self.lng is None):
            raise ValueError("lat and lng must be given together")
        return self


# ---------------------------------------------------------------------------
# Ride schemas
# ---------------------------------------------------------------------------

class RideCreateRequest(BaseModel):
    pickup: PlaceIn
    drop: PlaceIn
    category: str = Field(default="sedan", min_length=2, max_length=30)
    trip_kind: TripKindEnum = TripKindEnum.local
    payment_mode: PaymentModeEnum = PaymentModeEnum.cash


class FareEstimateRequest(BaseModel):
    pickup: PlaceIn
    drop: PlaceIn
    trip_kind: TripKindEnum = TripKindEnum.local


class FareQuote(BaseModel):
    category: str
    base_fare: Decimal
    state_tax: Decimal
    entry_toll: Decimal
    airport_fee: Decimal
    total_fare: Decimal


class FareEstimateResponse(BaseModel):
    distance_km: float
    duration_min: float
    currency: str = "INR"
    estimates: list[FareQuote]


class WaitingDetails(BaseModel):
    waiting_started_at: datetime
    current_waiting_minutes: int
    free_waiting_minutes: int
    chargeable_minutes: int
    current_waiting_charges: Decimal
    charge_per_minute: int


class RideResponse(BaseModel):
    id: str
    rider_id: str
    driver_id: Optional[str] = None
    status: RideStatusEnum
    category: str
    trip_kind: TripKindEnum
    pickup_address: Optional[str] = None
    pickup_lat: Optional[float] = None
    pickup_lng: Optional[float] = None
    drop_address: Optional[str] = None
    drop_lat: Optional[float] = None
    drop_lng: Optional[float] = None
    distance_km: float
    duration_min: float
    estimated_fare: Decimal
    fare: Decimal
    extra_charges: Decimal
    total_amount: Optional[Decimal] = None
    payment_mode: PaymentModeEnum
    payment_status: PaymentStatusEnum
    pickup_distance_km: Optional[float] = None
    pickup_duration_min: Optional[float] = None
    cancellation_fee: Decimal = Decimal("0")
    cancelled_by: Optional[ActorRole] = None
    # Only shown to the rider, who reads it out to the driver at pickup
    otp: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    waiting: Optional[WaitingDetails] = None

    model_config = {"from_attributes": True}


class StatusUpdateRequest(BaseModel):
    status: RideStatusEnum
    otp: Optional[str] = Field(default=None, max_length=10)
    final_location: Optional[PlaceIn] = None
    cancellation_reason: Optional[str] = Field(default=None, max_length=500)


class CancelRequest(BaseModel):
    reason: str = Field(default="No reason provided", max_length=500)


class CompleteRequest(BaseModel):
    final_location: Optional[PlaceIn] = None


# ---------------------------------------------------------------------------
# Driver schemas
# ---------------------------------------------------------------------------

class DriverCreateRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    phone: str = Field(..., min_length=10, max_length=20)
    category: str = Field(default="sedan", min_length=2, max_length=30)


class DriverResponse(BaseModel):
    id: str
    name: str
    phone: str
    category: str
    status: DriverStatusEnum
    created_at: datetime

    model_config = {"from_attributes": True}


class LocationUpdateRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    timestamp: Optional[datetime] = None


class OfferResponseRequest(BaseModel):
    accepted: bool


class OfferResponseAck(BaseModel):
    ride_id: str
    driver_id: str
    delivered: bool


# ---------------------------------------------------------------------------
# Payment schemas
# ---------------------------------------------------------------------------

class PaymentConfirmRequest(BaseModel):
    psp_ref: str = Field(..., min_length=1, max_length=255)
    success: bool = True


class PaymentResponse(BaseModel):
    ride_id: str
    ride_status: RideStatusEnum
    payment_status: PaymentStatusEnum
    psp_ref: Optional[str] = None
    amount: float
    currency: str


# ---------------------------------------------------------------------------
# Caller identity
# ---------------------------------------------------------------------------

class Actor(BaseModel):
    id: str
    role: ActorRole


SYSTEM_ACTOR = Actor(id="system", role=ActorRole.system)
