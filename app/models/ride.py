import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, Float, Integer, Numeric, DateTime, ForeignKey, func
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base


class Ride(Base):
    __tablename__ = "rides"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    rider_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    # Set once by dispatch, cleared only on cancellation
    driver_id: Mapped[str | None] = mapped_column(String, ForeignKey("drivers.id"), nullable=True, index=True)

    pickup_address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    pickup_lat: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_lng: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_region: Mapped[str | None] = mapped_column(String(100), nullable=True)
    drop_address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    drop_lat: Mapped[float] = mapped_column(Float, nullable=False)
    drop_lng: Mapped[float] = mapped_column(Float, nullable=False)
    drop_region: Mapped[str | None] = mapped_column(String(100), nullable=True)

    category: Mapped[str] = mapped_column(String(30), nullable=False, default="sedan")
    # local | outstation | round_trip
    trip_kind: Mapped[str] = mapped_column(String(20), nullable=False, default="local")
    distance_km: Mapped[float] = mapped_column(Float, nullable=False)
    duration_min: Mapped[float] = mapped_column(Float, nullable=False)

    estimated_fare: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    fare: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    state_tax: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    entry_toll: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    airport_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    extra_charges: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    waiting_minutes: Mapped[int] = mapped_column(Integer, default=0)
    total_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    commission: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    # cash | card | upi
    payment_mode: Mapped[str] = mapped_column(String(20), nullable=False, default="cash")
    # PENDING | COMPLETED | FAILED
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")

    # SEARCHING | ACCEPTED | DRIVER_ARRIVED | RIDE_STARTED |
    # PAYMENT_PENDING | RIDE_ENDED | CANCELLED
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="SEARCHING", index=True)
    otp: Mapped[str | None] = mapped_column(String(10), nullable=True)

    wait_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    driver_arrived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    request_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    pickup_distance_km: Mapped[float | None] = mapped_column(Float, nullable=True)
    pickup_duration_min: Mapped[float | None] = mapped_column(Float, nullable=True)

    # rider | driver | system
    cancelled_by: Mapped[str | None] = mapped_column(String(20), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    cancellation_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))

    idempotency_key: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
