"""
Unit tests for the fare engine: tariffs, surcharges, waiting time and cancellation fees.
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

from app.services.geo import Place
from app.services.pricing import (
    CancellationPolicy,
    UnsupportedCategory,
    apply_regional_surcharges,
    cancellation_fee,
    estimate_all,
    estimate_fare,
    finalize_amount,
    platform_commission,
    quote,
    wait_charge,
)

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
CONNAUGHT_PLACE = Place("Connaught Place", 28.6315, 77.2167)
CYBER_CITY = Place("Cyber City", 28.4950, 77.0895)
IGI_T3 = Place("IGI Terminal 3", 28.5562, 77.1000)
HINDON = Place("Hindon Airport", 28.7075, 77.3586)


class TestEstimateFare:
    def test_outstation_sedan_short_haul(self):
        # 28 km at the <=150 km sedan rate of 19/km
        assert estimate_fare(28, 56, "sedan", "outstation") == Decimal("532")

    def test_outstation_long_haul_rate(self):
        assert estimate_fare(200, 240, "sedan", "outstation") == Decimal("2800")

    def test_round_trip_doubles_per_km(self):
        assert estimate_fare(28, 56, "sedan", "round_trip") == Decimal("1064")

    def test_local_below_breakpoint(self):
        # base 50 + 5 * 23
        assert estimate_fare(5, 15, "sedan", "local") == Decimal("165")

    def test_local_above_breakpoint(self):
        # base 50 + 10 * 17
        assert estimate_fare(10, 30, "sedan", "local") == Decimal("220")

    def test_unknown_category_uses_default_rates(self):
        assert estimate_fare(5, 15, "hatchback", "local") == Decimal("150")

    def test_category_is_case_insensitive(self):
        assert estimate_fare(5, 15, "SUV", "local") == estimate_fare(5, 15, "suv", "local")

    def test_minimum_distance_floor(self):
        # 50 + 0.1 * 17 = 51.7 -> 52
        assert estimate_fare(0, 0, "mini", "local") == Decimal("52")

    def test_van_flat_rate_within_allowance(self):
        assert estimate_fare(200, 240, "tempo_12", "round_trip") == Decimal("14000")

    def test_van_overage_beyond_allowance(self):
        # 14000 + 50 * 23
        assert estimate_fare(300, 360, "tempo_12", "outstation") == Decimal("15150")

    def test_van_rejected_for_local(self):
        with pytest.raises(UnsupportedCategory):
            estimate_fare(10, 20, "tempo_16", "local")

    def test_amounts_are_whole_units(self):
        fare = estimate_fare(12.345, 30, "mini", "outstation")
        assert fare == fare.to_integral_value()


class TestRegionalSurcharges:
    def test_state_crossing_tax(self):
        s = apply_regional_surcharges(CONNAUGHT_PLACE, CYBER_CITY, "sedan", "Delhi", "Haryana")
        assert s.state_tax == Decimal("100")
        assert s.entry_toll == Decimal("0")

    def test_state_tax_depends_on_category(self):
        s = apply_regional_surcharges(CONNAUGHT_PLACE, CYBER_CITY, "suv", "Delhi", "Uttar Pradesh")
        assert s.state_tax == Decimal("200")

    def test_entry_toll_when_arriving_in_home_region(self):
        s = apply_regional_surcharges(CYBER_CITY, CONNAUGHT_PLACE, "sedan", "Haryana", "Delhi")
        assert s.entry_toll == Decimal("100")
        assert s.state_tax == Decimal("0")

    def test_no_surcharge_within_region(self):
        s = apply_regional_surcharges(CONNAUGHT_PLACE, CONNAUGHT_PLACE, "sedan", "Delhi", "Delhi")
        assert s.total == Decimal("0")

    def test_untaxed_category(self):
        s = apply_regional_surcharges(CONNAUGHT_PLACE, CYBER_CITY, "innova", "Delhi", "Haryana")
        assert s.state_tax == Decimal("0")

    def test_unknown_regions(self):
        s = apply_regional_surcharges(CONNAUGHT_PLACE, CYBER_CITY, "sedan", None, None)
        assert s.total == Decimal("0")

    def test_airport_fee_for_one_endpoint(self):
        s = apply_regional_surcharges(IGI_T3, CONNAUGHT_PLACE, "sedan", "Delhi", "Delhi")
        assert s.airport_fee == Decimal("290")

    def test_no_airport_fee_between_airports(self):
        s = apply_regional_surcharges(IGI_T3, HINDON, "sedan")
        assert s.airport_fee == Decimal("0")

    def test_quote_total_includes_surcharges(self):
        q = quote(28, 56, "sedan", "outstation", CONNAUGHT_PLACE, CYBER_CITY, "Delhi", "Haryana")
        assert q.base_fare == Decimal("532")
        assert q.total_fare == Decimal("632")

    def test_estimate_all_covers_car_categories(self):
        quotes = estimate_all(5, 15, "local", CONNAUGHT_PLACE, CONNAUGHT_PLACE)
        assert [q.category for q in quotes] == ["mini", "sedan", "suv"]


class TestWaitCharge:
    def test_overage_is_charged_per_minute(self):
        assert wait_charge(T0, T0 + timedelta(minutes=8), 5, 2) == (8, Decimal("6"))

    def test_within_free_window(self):
        assert wait_charge(T0, T0 + timedelta(minutes=4, seconds=59), 5, 2) == (4, Decimal("0"))

    def test_partial_minutes_are_not_charged(self):
        assert wait_charge(T0, T0 + timedelta(minutes=6, seconds=59), 5, 2) == (6, Decimal("2"))

    def test_naive_start_is_treated_as_utc(self):
        naive = T0.replace(tzinfo=None)
        assert wait_charge(naive, T0 + timedelta(minutes=10), 3, 3) == (10, Decimal("21"))

    def test_no_wait_recorded(self):
        assert wait_charge(None, T0, 3, 3) == (0, Decimal("0"))


class TestFinalizeAmount:
    def test_includes_extra_charges(self):
        ride = SimpleNamespace(estimated_fare=Decimal("532"), extra_charges=Decimal("6"), fare=Decimal("538"))
        assert finalize_amount(ride) == Decimal("538")

    def test_never_below_estimate(self):
        ride = SimpleNamespace(estimated_fare=Decimal("532"), extra_charges=Decimal("0"), fare=Decimal("500"))
        assert finalize_amount(ride) == Decimal("532")

    def test_commission(self):
        assert platform_commission(Decimal("500"), 0.12) == Decimal("60")


class TestCancellationPolicy:
    policy = CancellationPolicy(grace_minutes=3, rider_fee=Decimal("25"), driver_fee=Decimal("50"))

    def test_rider_fee_after_grace(self):
        assert self.policy.fee("rider", T0, T0 + timedelta(minutes=4), Decimal("532")) == Decimal("25")

    def test_driver_fee_after_grace(self):
        assert self.policy.fee("driver", T0, T0 + timedelta(minutes=4), Decimal("532")) == Decimal("50")

    def test_free_within_grace(self):
        assert self.policy.fee("rider", T0, T0 + timedelta(minutes=2), Decimal("532")) == Decimal("0")

    def test_free_before_acceptance(self):
        assert self.policy.fee("rider", None, T0, Decimal("532")) == Decimal("0")

    def test_system_never_pays(self):
        assert self.policy.fee("system", T0, T0 + timedelta(hours=1), Decimal("532")) == Decimal("0")

    def test_percentage_component(self):
        policy = CancellationPolicy(3, Decimal("25"), Decimal("25"), percent=10)
        assert policy.fee("rider", T0, T0 + timedelta(minutes=5), Decimal("200")) == Decimal("45")

    def test_module_helper_uses_given_policy(self):
        fee = cancellation_fee("driver", T0, T0 + timedelta(minutes=10), Decimal("532"), policy=self.policy)
        assert fee == Decimal("50")
