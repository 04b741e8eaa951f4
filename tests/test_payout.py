"""
Tests for the payout calculator.

The calculator is a pure function, so these build PayoutInput directly and
never touch the database.
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.core.config import EconomySettings
from app.models.enums import PayoutStatus, ShipperStanding, TempCompliance
from app.services.payout import (
    PayoutInput,
    compute_payout,
    is_night,
    stop_premium,
    time_modifier,
    weight_multiplier,
)

ACCEPTED = datetime(2026, 3, 10, 11, 0, 0)
WINDOW = timedelta(minutes=100)


@pytest.fixture
def economy():
    """Tier 1 at $30/mi with a $150 floor; everything else at defaults."""
    return EconomySettings(
        BASE_RATES={1: Decimal("30")},
        PAYOUT_FLOORS={1: 150},
    )


def make_input(**overrides):
    values = dict(
        tier=1,
        cargo_type="general_freight_full",
        distance_miles=Decimal("10"),
        weight_lbs=8000,
        accepted_at=ACCEPTED,
        window_expires_at=ACCEPTED + WINDOW,
        stop_count=1,
        owner_operated=True,
        integrity=100,
    )
    values.update(overrides)
    return PayoutInput(**values)


def delivered_at(fraction_of_window: float) -> datetime:
    return ACCEPTED + timedelta(seconds=WINDOW.total_seconds() * fraction_of_window)


class TestReferenceCalculation:
    """The worked example: tier 1, 10 mi, owner-operated, 70% of window."""

    def test_reference_payout_is_414(self, economy):
        result = compute_payout(make_input(), delivered_at(0.70), economy)

        assert result.status == PayoutStatus.SUCCESS
        assert result.amount == 414
        assert result.floor_applied is False

    def test_reference_breakdown_steps(self, economy):
        result = compute_payout(make_input(), delivered_at(0.70), economy)

        assert result.step(1).running_total == Decimal("300")
        assert result.step(2) is None  # single stop
        assert result.step(3).value == Decimal("0")
        assert result.step(4).value == Decimal("60")
        assert result.step(4).running_total == Decimal("360")
        assert result.step(5).value == Decimal("54")
        assert result.step(5).running_total == Decimal("414")
        assert result.step(6).value == Decimal("0")
        assert result.step(7) is None  # no temperature requirement
        assert result.step(8) is None  # no welfare rating
        assert result.step(9).value == Decimal("0")
        assert result.step(10) is None  # noon is not night
        assert result.step(12).running_total == Decimal("414")

    def test_same_inputs_same_output(self, economy):
        """INVARIANT: The calculation is deterministic."""
        first = compute_payout(make_input(), delivered_at(0.70), economy)
        second = compute_payout(make_input(), delivered_at(0.70), economy)

        assert first.amount == second.amount
        assert first.breakdown_json() == second.breakdown_json()


class TestIntegrityGate:

    def test_integrity_below_threshold_rejects(self, economy):
        result = compute_payout(make_input(integrity=35), delivered_at(0.70), economy)

        assert result.status == PayoutStatus.REJECTED
        assert result.rejected
        assert result.amount == 0

    def test_rejected_breakdown_stops_at_step_6(self, economy):
        result = compute_payout(make_input(integrity=35), delivered_at(0.70), economy)

        assert result.steps[-1].step == 6
        assert all(entry.step <= 6 for entry in result.steps)
        assert result.breakdown_json()["status"] == "rejected"

    def test_integrity_at_threshold_is_not_rejected(self, economy):
        result = compute_payout(make_input(integrity=40), delivered_at(0.70), economy)

        assert result.status == PayoutStatus.SUCCESS
        # 40% falls in the lowest bracket: -100%, so the floor takes over
        assert result.amount == 150
        assert result.floor_applied

    def test_integrity_bracket_penalty(self, economy):
        result = compute_payout(make_input(integrity=75), delivered_at(0.70), economy)

        # 414 - 10%
        assert result.step(6).value == Decimal("-41.4")
        assert result.amount == 372


class TestFloor:

    def test_penalties_never_push_below_floor(self, economy):
        """INVARIANT: Final payout is never below the tier floor."""
        inputs = make_input(
            distance_miles=Decimal("1"),
            owner_operated=False,
            integrity=55,
            temp_compliance=TempCompliance.SIGNIFICANT,
            welfare_rating=1,
        )
        result = compute_payout(inputs, delivered_at(3.0), economy)

        assert result.amount == 150
        assert result.floor_applied
        assert result.step(12).running_total == Decimal("150")

    def test_unknown_tier_uses_default_rate_and_floor(self):
        economy = EconomySettings()
        result = compute_payout(make_input(tier=9, owner_operated=False), delivered_at(0.9), economy)

        # 25/mi x 10 = 250, above the fallback floor of 150
        assert result.amount == 250


class TestModifiers:

    def test_late_delivery_takes_worst_bracket(self, economy):
        result = compute_payout(make_input(owner_operated=False), delivered_at(1.5), economy)

        assert result.step(5).inputs["modifier"] == "-0.25"
        assert result.amount == 225

    def test_multi_stop_premium_and_flat_fee(self, economy):
        result = compute_payout(make_input(stop_count=3, owner_operated=False), delivered_at(0.9), economy)

        # 300 x 25% + 3 x $150
        assert result.step(2).value == Decimal("525")
        assert result.step(2).running_total == Decimal("825")

    def test_heavy_load_multiplier(self, economy):
        result = compute_payout(make_input(weight_lbs=30000, owner_operated=False), delivered_at(0.9), economy)

        assert result.step(3).running_total == Decimal("390")

    def test_temperature_excursion_penalty(self, economy):
        result = compute_payout(
            make_input(owner_operated=False, temp_compliance=TempCompliance.MINOR), delivered_at(0.9), economy,
        )

        assert result.step(7).value == Decimal("-45")
        assert result.amount == 255

    def test_clean_cold_chain_earns_bonus(self, economy):
        result = compute_payout(
            make_input(owner_operated=False, temp_compliance=TempCompliance.CLEAN), delivered_at(0.9), economy,
        )

        assert result.step(7).value == Decimal("0")
        assert "cold_chain_clean" in result.bonuses

    def test_welfare_rating_modifier(self, economy):
        result = compute_payout(make_input(owner_operated=False, welfare_rating=4), delivered_at(0.9), economy)

        assert result.step(8).value == Decimal("30")

    def test_compliance_stack_is_capped(self, economy):
        inputs = make_input(
            owner_operated=False,
            weigh_station_stamped=True,
            seal_intact=True,
            license_matched=True,
            pre_trip_completed=True,
            manifest_verified=True,
            shipper_standing=ShipperStanding.PREFERRED,
        )
        result = compute_payout(inputs, delivered_at(0.9), economy)

        assert result.step(9).inputs["uncapped"] == "0.36"
        assert result.step(9).inputs["capped"] == "0.25"
        assert result.step(9).value == Decimal("75")

    def test_convoy_bonus(self, economy):
        result = compute_payout(make_input(owner_operated=False, convoy_size=3), delivered_at(0.9), economy)

        assert result.bonuses == ["convoy_3"]

    def test_night_premium(self, economy):
        night = datetime(2026, 3, 10, 23, 0, 0)
        inputs = make_input(
            owner_operated=False,
            accepted_at=night - timedelta(minutes=90),
            window_expires_at=night + timedelta(minutes=10),
        )
        result = compute_payout(inputs, night, economy)

        assert result.step(10).value == Decimal("21")
        assert result.amount == 321

    def test_economy_multiplier_records_its_own_delta(self):
        """Step 11 shows what the multiplier added, not a back-computed figure."""
        economy = EconomySettings(
            BASE_RATES={1: Decimal("30")},
            PAYOUT_FLOORS={1: 150},
            GLOBAL_MULTIPLIER=Decimal("2"),
        )
        result = compute_payout(make_input(owner_operated=False), delivered_at(0.9), economy)

        step9 = result.step(9)
        step11 = result.step(11)
        assert step11.value == step9.running_total
        assert step11.running_total == step9.running_total * 2
        assert result.amount == 600


class TestLookups:

    def test_weight_brackets(self):
        economy = EconomySettings()
        assert weight_multiplier(10000, economy) == Decimal("1.00")
        assert weight_multiplier(26000, economy) == Decimal("1.15")
        assert weight_multiplier(95000, economy) == Decimal("1.50")

    def test_time_brackets(self):
        economy = EconomySettings()
        assert time_modifier(Decimal("0.5"), economy) == Decimal("0.15")
        assert time_modifier(Decimal("1.0"), economy) == Decimal("0.00")
        assert time_modifier(Decimal("1.1"), economy) == Decimal("-0.10")
        assert time_modifier(Decimal("5000"), economy) == Decimal("-0.25")

    def test_stop_premium_caps_at_largest_entry(self):
        economy = EconomySettings()
        assert stop_premium(2, economy) == Decimal("0.15")
        assert stop_premium(9, economy) == Decimal("0.55")

    def test_night_window_wraps_midnight(self):
        economy = EconomySettings()
        assert is_night(datetime(2026, 1, 1, 23, 30), economy)
        assert is_night(datetime(2026, 1, 1, 5, 59), economy)
        assert not is_night(datetime(2026, 1, 1, 6, 0), economy)
        assert not is_night(datetime(2026, 1, 1, 12, 0), economy)
