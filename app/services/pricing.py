"""
Fare calculation.

Pure functions over static tariff tables; all currency is Decimal and is
rounded to whole units before it is persisted.
"""
import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from app.config import get_settings
from app.services.clock import as_utc
from app.services.geo import Place, haversine_km

settings = get_settings()

MIN_DISTANCE_KM = 0.1

TRIP_LOCAL = "local"
TRIP_OUTSTATION = "outstation"
TRIP_ROUND = "round_trip"


# ---------------------------------------------------------------------------
# Tariff tables (INR)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DistanceTariff:
    """Per-km rate that drops once the trip passes ``breakpoint_km``."""

    short_rate: Decimal
    long_rate: Decimal
    breakpoint_km: float
    base: Decimal = Decimal("0")
    per_minute: Decimal = Decimal("0")

    def rate_for(self, distance_km: float) -> Decimal:
        return self.short_rate if distance_km <= self.breakpoint_km else self.long_rate


@dataclass(frozen=True)
class FlatTariff:
    """Fixed price covering ``allowance_km``, then per-km overage."""

    fixed: Decimal
    extra_per_km: Decimal
    allowance_km: float = 250


def _local(short: int, long: int) -> DistanceTariff:
    return DistanceTariff(Decimal(short), Decimal(long), breakpoint_km=8, base=Decimal("50"))


def _outstation(short: int, long: int) -> DistanceTariff:
    return DistanceTariff(Decimal(short), Decimal(long), breakpoint_km=150)


LOCAL_TARIFFS: dict[str, DistanceTariff] = {
    "mini": _local(17, 14),
    "sedan": _local(23, 17),
    "suv": _local(35, 27),
}
DEFAULT_LOCAL_TARIFF = _local(20, 15)

OUTSTATION_TARIFFS: dict[str, DistanceTariff] = {
    "mini": _outstation(14, 11),
    "sedan": _outstation(19, 14),
    "ertiga": _outstation(24, 18),
    "innova": _outstation(27, 24),
}
DEFAULT_OUTSTATION_TARIFF = OUTSTATION_TARIFFS["sedan"]

VAN_TARIFFS: dict[str, FlatTariff] = {
    "tempo_12": FlatTariff(Decimal("14000"), Decimal("23")),
    "tempo_16": FlatTariff(Decimal("16000"), Decimal("26")),
    "tempo_20": FlatTariff(Decimal("18000"), Decimal("30")),
    "tempo_26": FlatTariff(Decimal("20000"), Decimal("35")),
}

ESTIMATE_CATEGORIES: dict[str, tuple[str, ...]] = {
    TRIP_LOCAL: ("mini", "sedan", "suv"),
    TRIP_OUTSTATION: ("mini", "sedan", "ertiga", "innova"),
    TRIP_ROUND: ("mini", "sedan", "ertiga", "innova"),
}

# (origin region, destination region) -> category -> tax
STATE_TAX: dict[tuple[str, str], dict[str, Decimal]] = {
    ("Delhi", "Haryana"): {"mini": Decimal("100"), "sedan": Decimal("100"), "suv": Decimal("100")},
    ("Delhi", "Uttar Pradesh"): {"mini": Decimal("120"), "sedan": Decimal("120"), "suv": Decimal("200")},
    ("Haryana", "Uttar Pradesh"): {"mini": Decimal("220"), "sedan": Decimal("220"), "suv": Decimal("300")},
    ("Uttar Pradesh", "Haryana"): {"mini": Decimal("220"), "sedan": Decimal("220"), "suv": Decimal("300")},
}

MAJOR_AIRPORTS: dict[str, tuple[float, float]] = {
    "Indira Gandhi International Airport": (28.5562, 77.1000),
    "Noida International Airport": (28.1700, 77.6000),
    "Hindon Airport": (28.7075, 77.3586),
}


class UnsupportedCategory(ValueError):
    pass


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def is_van(category: str) -> bool:
    return category.startswith("tempo_")


# ---------------------------------------------------------------------------
# Base fare
# ---------------------------------------------------------------------------

def estimate_fare(distance_km: float, duration_min: float, category: str, trip_kind: str) -> Decimal:
    """Base fare for a trip, before regional surcharges and waiting time."""
    category = category.lower()
    distance_km = round(max(distance_km, MIN_DISTANCE_KM), 1)
    distance = Decimal(str(distance_km))

    if is_van(category):
        if trip_kind == TRIP_LOCAL:
            raise UnsupportedCategory(f"{category} is only available for outstation trips")
        tariff = VAN_TARIFFS.get(category)
        if tariff is None:
            raise UnsupportedCategory(f"Unknown vehicle category {category}")
        fare = tariff.fixed
        if distance_km > tariff.allowance_km:
            fare += (distance - Decimal(str(tariff.allowance_km))) * tariff.extra_per_km
        return to_money(fare)

    if trip_kind == TRIP_LOCAL:
        tariff = LOCAL_TARIFFS.get(category, DEFAULT_LOCAL_TARIFF)
    else:
        tariff = OUTSTATION_TARIFFS.get(category, DEFAULT_OUTSTATION_TARIFF)

    per_km = distance * tariff.rate_for(distance_km)
    if trip_kind == TRIP_ROUND:
        per_km *= 2
    fare = tariff.base + per_km + Decimal(str(round(duration_min, 1))) * tariff.per_minute
    return to_money(fare)


# ---------------------------------------------------------------------------
# Regional surcharges
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Surcharges:
    state_tax: Decimal = Decimal("0")
    entry_toll: Decimal = Decimal("0")
    airport_fee: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.state_tax + self.entry_toll + self.airport_fee


def near_airport(place: Place, radius_km: float | None = None) -> bool:
    if not place.has_coordinates:
        return False
    radius_km = settings.airport_radius_km if radius_km is None else radius_km
    return any(
        haversine_km(place.lat, place.lng, lat, lng) <= radius_km for lat, lng in MAJOR_AIRPORTS.values()
    )


def apply_regional_surcharges(
    pickup: Place,
    drop: Place,
    category: str,
    pickup_region: str | None = None,
    drop_region: str | None = None,
) -> Surcharges:
    category = category.lower()
    state_tax = STATE_TAX.get((pickup_region, drop_region), {}).get(category)

    entry_toll = Decimal("0")
    if state_tax is None:
        state_tax = Decimal("0")
        home = settings.home_region
        if pickup_region and pickup_region != home and drop_region == home:
            entry_toll = Decimal(settings.entry_toll)

    airport_fee = Decimal("0")
    # Charged once: a trip between two airports pays no parking fee
    if near_airport(pickup) != near_airport(drop):
        airport_fee = Decimal(settings.airport_fee)

    return Surcharges(state_tax=state_tax, entry_toll=entry_toll, airport_fee=airport_fee)


@dataclass(frozen=True)
class Quote:
    category: str
    base_fare: Decimal
    surcharges: Surcharges

    @property
    def total_fare(self) -> Decimal:
        return to_money(self.base_fare + self.surcharges.total)


def quote(
    distance_km: float,
    duration_min: float,
    category: str,
    trip_kind: str,
    pickup: Place,
    drop: Place,
    pickup_region: str | None = None,
    drop_region: str | None = None,
) -> Quote:
    return Quote(
        category=category,
        base_fare=estimate_fare(distance_km, duration_min, category, trip_kind),
        surcharges=apply_regional_surcharges(pickup, drop, category, pickup_region, drop_region),
    )


def estimate_all(
    distance_km: float,
    duration_min: float,
    trip_kind: str,
    pickup: Place,
    drop: Place,
    pickup_region: str | None = None,
    drop_region: str | None = None,
) -> list[Quote]:
    """Quotes for every car category offered for ``trip_kind``."""
    return [
        quote(distance_km, duration_min, category, trip_kind, pickup, drop, pickup_region, drop_region)
        for category in ESTIMATE_CATEGORIES[trip_kind]
    ]


# ---------------------------------------------------------------------------
# Ride-time charges
# ---------------------------------------------------------------------------

def wait_charge(
    wait_started_at: datetime | None,
    now: datetime,
    free_minutes: int,
    per_minute: int,
) -> tuple[int, Decimal]:
    """(whole minutes waited, charge for the minutes beyond the free allowance)."""
    if wait_started_at is None:
        return 0, Decimal("0")
    elapsed = (as_utc(now) - as_utc(wait_started_at)).total_seconds()
    minutes = max(math.floor(elapsed / 60), 0)
    chargeable = max(minutes - free_minutes, 0)
    return minutes, to_money(chargeable * per_minute)


def finalize_amount(ride) -> Decimal:
    """Amount due at completion; never below the running fare or the estimate."""
    estimated = Decimal(ride.estimated_fare) + Decimal(ride.extra_charges or 0)
    return to_money(max(Decimal(ride.fare), estimated))


def platform_commission(amount: Decimal, rate: float | None = None) -> Decimal:
    rate = settings.platform_commission_rate if rate is None else rate
    return to_money(Decimal(amount) * Decimal(str(rate)))


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CancellationPolicy:
    grace_minutes: int
    rider_fee: Decimal
    driver_fee: Decimal
    percent: float = 0.0

    @classmethod
    def from_settings(cls) -> "CancellationPolicy":
        return cls(
            grace_minutes=settings.cancellation_grace_minutes,
            rider_fee=Decimal(settings.rider_cancellation_fee),
            driver_fee=Decimal(settings.driver_cancellation_fee),
            percent=settings.cancellation_fee_percent,
        )

    def fee(
        self,
        cancelled_by: str,
        accepted_at: datetime | None,
        now: datetime,
        amount: Decimal,
    ) -> Decimal:
        if cancelled_by not in ("rider", "driver") or accepted_at is None:
            return Decimal("0")
        elapsed = (as_utc(now) - as_utc(accepted_at)).total_seconds()
        if elapsed <= self.grace_minutes * 60:
            return Decimal("0")
        flat = self.rider_fee if cancelled_by == "rider" else self.driver_fee
        return to_money(flat + Decimal(amount) * Decimal(str(self.percent)) / 100)


def cancellation_fee(
    cancelled_by: str,
    accepted_at: datetime | None,
    now: datetime,
    amount: Decimal,
    policy: CancellationPolicy | None = None,
) -> Decimal:
    return (policy or CancellationPolicy.from_settings()).fee(cancelled_by, accepted_at, now, amount)
