"""
Payout calculator - turns a finished mission into an amount, a status and a
receipt.

The twelve steps run strictly in order against a running `base`; moving a
step changes the result. The calculation is pure: it reads only its inputs,
the economy tables and the explicit delivery timestamp (which also decides
the night premium). Decimal arithmetic keeps it reproducible to the cent.

    1.  base = tier base rate x cargo modifier x distance
    2.  multi-stop premium + flat per-stop fee
    3.  x weight bracket multiplier
    4.  owner-operator bonus
    5.  time performance (elapsed / window)
    6.  integrity gate: below threshold -> (0, rejected)
    7.  temperature excursion penalty
    8.  livestock welfare modifier
    9.  compliance bonus stack, capped
    10. night premium
    11. x global economy multiplier
    12. floor: max(floor(base), tier floor)
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from app.core.config import EconomySettings
from app.models.domain import BillOfLading, Mission
from app.models.enums import (
    OwnershipMode,
    PayoutStatus,
    SealStatus,
    ShipperStanding,
    TempCompliance,
)

CENT = Decimal("0.01")

WELFARE_LABELS = {1: "Critical", 2: "Poor", 3: "Fair", 4: "Good", 5: "Excellent"}


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _pct(value: Decimal) -> str:
    return f"{'+' if value >= 0 else ''}{(value * 100).normalize():f}%"


@dataclass(frozen=True)
class PayoutInput:
    """Everything the calculator may look at, captured from a mission and its BOL."""
    tier: int
    cargo_type: str
    distance_miles: Decimal
    weight_lbs: int
    accepted_at: datetime
    window_expires_at: datetime
    stop_count: int = 1
    owner_operated: bool = False
    integrity: int = 100
    temp_compliance: TempCompliance = TempCompliance.NOT_REQUIRED
    welfare_rating: Optional[int] = None
    weigh_station_stamped: bool = False
    seal_intact: bool = False
    license_matched: bool = False
    pre_trip_completed: bool = False
    manifest_verified: bool = False
    shipper_standing: ShipperStanding = ShipperStanding.UNKNOWN
    convoy_size: int = 0

    @classmethod
    def from_records(
        cls,
        mission: Mission,
        bol: BillOfLading,
        shipper_standing: ShipperStanding = ShipperStanding.UNKNOWN,
    ) -> "PayoutInput":
        return cls(
            tier=bol.tier,
            cargo_type=bol.cargo_type,
            distance_miles=_to_decimal(bol.distance_miles or 1),
            weight_lbs=bol.weight_lbs or 0,
            accepted_at=mission.accepted_at,
            window_expires_at=mission.window_expires_at,
            stop_count=bol.stop_count or 1,
            owner_operated=mission.ownership == OwnershipMode.OWNER_OPERATOR,
            integrity=mission.cargo_integrity,
            temp_compliance=bol.temp_compliance or TempCompliance.NOT_REQUIRED,
            welfare_rating=mission.welfare_rating,
            weigh_station_stamped=bool(mission.weigh_station_stamped),
            seal_intact=mission.seal_status == SealStatus.SEALED,
            license_matched=bool(bol.license_matched),
            pre_trip_completed=bool(mission.pre_trip_completed),
            manifest_verified=bool(mission.manifest_verified),
            shipper_standing=shipper_standing,
            convoy_size=mission.convoy_size or 0,
        )


@dataclass
class PayoutStep:
    step: int
    label: str
    detail: str
    value: Decimal
    running_total: Decimal
    inputs: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "label": self.label,
            "detail": self.detail,
            "value": str(_money(self.value)),
            "running_total": str(_money(self.running_total)),
            "inputs": self.inputs,
        }


@dataclass
class PayoutResult:
    amount: int
    status: PayoutStatus
    steps: List[PayoutStep]
    bonuses: List[str] = field(default_factory=list)
    floor_applied: bool = False

    @property
    def rejected(self) -> bool:
        return self.status == PayoutStatus.REJECTED

    def step(self, number: int) -> Optional[PayoutStep]:
        for entry in self.steps:
            if entry.step == number:
                return entry
        return None

    def breakdown_json(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "final_amount": self.amount,
            "floor_applied": self.floor_applied,
            "bonuses": list(self.bonuses),
            "steps": [entry.to_json() for entry in self.steps],
        }


def weight_multiplier(weight_lbs: int, economy: EconomySettings) -> Decimal:
    """First bracket whose max covers the weight; the heaviest bracket above the table."""
    brackets = economy.WEIGHT_BRACKETS
    if not brackets:
        return Decimal("1.00")
    for max_lbs, multiplier in brackets:
        if weight_lbs <= max_lbs:
            return multiplier
    return brackets[-1][1]


def time_modifier(ratio: Decimal, economy: EconomySettings) -> Decimal:
    """Faster is a bonus, slower a penalty; beyond the table the worst bracket applies."""
    brackets = economy.TIME_BRACKETS
    if not brackets:
        return Decimal("0")
    for max_ratio, modifier in brackets:
        if ratio <= max_ratio:
            return modifier
    return brackets[-1][1]


def integrity_modifier(integrity: int, economy: EconomySettings) -> Decimal:
    for min_pct, modifier in economy.INTEGRITY_BRACKETS:
        if integrity >= min_pct:
            return modifier
    return Decimal("-1.00")


def stop_premium(stop_count: int, economy: EconomySettings) -> Decimal:
    table = economy.MULTI_STOP_PREMIUM
    if not table:
        return Decimal("0")
    capped = min(stop_count, max(table))
    if capped in table:
        return table[capped]
    return table[max(table)]


def is_night(delivered_at: datetime, economy: EconomySettings) -> bool:
    hour = delivered_at.hour
    start, end = economy.NIGHT_START_HOUR, economy.NIGHT_END_HOUR
    if start == end:
        return False
    if start > end:
        # Window wraps midnight, e.g. 22:00-06:00
        return hour >= start or hour < end
    return start <= hour < end


def compliance_bonuses(inputs: PayoutInput, economy: EconomySettings) -> List[str]:
    """Names of every compliance bonus earned, in a fixed order."""
    earned = []
    if inputs.weigh_station_stamped:
        earned.append("weigh_station")
    if inputs.seal_intact:
        earned.append("seal_intact")
    if inputs.license_matched:
        earned.append("clean_bol")
    if inputs.pre_trip_completed:
        earned.append("pre_trip")
    if inputs.manifest_verified:
        earned.append("manifest_verified")
    if inputs.shipper_standing in (
        ShipperStanding.ESTABLISHED,
        ShipperStanding.TRUSTED,
        ShipperStanding.PREFERRED,
    ):
        earned.append(f"shipper_{inputs.shipper_standing.value}")
    if inputs.temp_compliance == TempCompliance.CLEAN:
        earned.append("cold_chain_clean")
    if inputs.welfare_rating == 5:
        earned.append("livestock_excellent")
    if inputs.convoy_size >= 4:
        earned.append("convoy_4plus")
    elif inputs.convoy_size == 3:
        earned.append("convoy_3")
    elif inputs.convoy_size == 2:
        earned.append("convoy_2")
    return [name for name in earned if name in economy.COMPLIANCE_BONUSES]


def compute_payout(
    inputs: PayoutInput,
    delivered_at: datetime,
    economy: EconomySettings,
) -> PayoutResult:
    """Run the twelve payout steps. See the module docstring for the order."""
    steps: List[PayoutStep] = []
    tier = inputs.tier

    def record(number, label, detail, value, base, **step_inputs):
        steps.append(PayoutStep(number, label, detail, value, base, step_inputs))

    # Step 1: base rate
    base_rate = economy.BASE_RATES.get(tier, economy.DEFAULT_BASE_RATE)
    cargo_modifier = economy.CARGO_RATE_MODIFIERS.get(inputs.cargo_type, Decimal("1.0"))
    rate_per_mile = base_rate * cargo_modifier
    base = rate_per_mile * inputs.distance_miles
    record(
        1, "Base Rate", f"${_money(rate_per_mile)}/mi x {inputs.distance_miles} mi", base, base,
        base_rate=str(base_rate), cargo_modifier=str(cargo_modifier), distance=str(inputs.distance_miles),
    )

    # Step 2: multi-stop premium
    if inputs.stop_count > 1:
        premium_pct = stop_premium(inputs.stop_count, economy)
        flat = economy.LTL_FLAT_PER_STOP * inputs.stop_count
        delta = base * premium_pct + flat
        base = base + delta
        record(
            2, "Multi-Stop Premium", f"{inputs.stop_count} stops: {_pct(premium_pct)} + ${flat} flat",
            delta, base, stop_count=inputs.stop_count, premium=str(premium_pct),
        )

    # Step 3: weight bracket
    multiplier = weight_multiplier(inputs.weight_lbs, economy)
    delta = base * (multiplier - 1)
    base = base * multiplier
    record(
        3, "Weight Multiplier", f"{inputs.weight_lbs} lbs: x{multiplier}", delta, base,
        weight_lbs=inputs.weight_lbs, multiplier=str(multiplier),
    )

    # Step 4: owner-operator bonus
    if inputs.owner_operated:
        bonus_pct = economy.OWNER_OP_BONUS.get(tier, Decimal("0.20"))
        delta = base * bonus_pct
        base = base + delta
        record(4, "Owner-Operator Bonus", _pct(bonus_pct), delta, base, bonus=str(bonus_pct))

    # Step 5: time performance
    window_seconds = max(int((inputs.window_expires_at - inputs.accepted_at).total_seconds()), 1)
    elapsed_seconds = max(int((delivered_at - inputs.accepted_at).total_seconds()), 0)
    ratio = Decimal(elapsed_seconds) / Decimal(window_seconds)
    modifier = time_modifier(ratio, economy)
    delta = base * modifier
    base = base + delta
    record(
        5, "Time Performance", f"{_money(ratio * 100)}% of window: {_pct(modifier)}", delta, base,
        elapsed_seconds=elapsed_seconds, window_seconds=window_seconds, modifier=str(modifier),
    )

    # Step 6: integrity gate
    threshold = economy.INTEGRITY_REJECTION_THRESHOLD
    if inputs.integrity < threshold:
        record(
            6, "Integrity Check", f"{inputs.integrity}% - REJECTED (below {threshold}%)",
            Decimal("0"), Decimal("0"), integrity=inputs.integrity, threshold=threshold,
        )
        return PayoutResult(amount=0, status=PayoutStatus.REJECTED, steps=steps)

    modifier = integrity_modifier(inputs.integrity, economy)
    delta = base * modifier
    base = base + delta
    record(
        6, "Cargo Integrity", f"{inputs.integrity}%: {_pct(modifier)}", delta, base,
        integrity=inputs.integrity, modifier=str(modifier),
    )

    # Step 7: temperature excursion
    if inputs.temp_compliance != TempCompliance.NOT_REQUIRED:
        modifier = economy.EXCURSION_PENALTIES.get(inputs.temp_compliance.value, Decimal("0"))
        delta = base * modifier
        base = base + delta
        record(
            7, "Temperature Excursion", f"{inputs.temp_compliance.value}: {_pct(modifier)}", delta, base,
            temp_compliance=inputs.temp_compliance.value,
        )

    # Step 8: livestock welfare
    if inputs.welfare_rating:
        modifier = economy.WELFARE_MODIFIERS.get(inputs.welfare_rating, Decimal("0"))
        delta = base * modifier
        base = base + delta
        label = WELFARE_LABELS.get(inputs.welfare_rating, "?")
        record(
            8, "Livestock Welfare", f"{label} ({inputs.welfare_rating}/5): {_pct(modifier)}", delta, base,
            welfare_rating=inputs.welfare_rating,
        )

    # Step 9: compliance stack, capped
    bonuses = compliance_bonuses(inputs, economy)
    uncapped = sum((economy.COMPLIANCE_BONUSES[name] for name in bonuses), Decimal("0"))
    capped = min(uncapped, economy.MAX_COMPLIANCE_STACK)
    delta = base * capped
    base = base + delta
    record(
        9, "Compliance Bonuses", f"{len(bonuses)} bonuses: {_pct(capped)} (cap {_pct(economy.MAX_COMPLIANCE_STACK)})",
        delta, base, bonuses=bonuses, uncapped=str(uncapped), capped=str(capped),
    )

    # Step 10: night premium
    if is_night(delivered_at, economy):
        delta = base * economy.NIGHT_PREMIUM
        base = base + delta
        record(
            10, "Night Haul Premium", f"{_pct(economy.NIGHT_PREMIUM)} (hour {delivered_at.hour:02d}:00)",
            delta, base, hour=delivered_at.hour,
        )

    # Step 11: global economy multiplier
    multiplier = economy.GLOBAL_MULTIPLIER
    before = base
    base = base * multiplier
    record(11, "Economy Multiplier", f"x{multiplier}", base - before, base, multiplier=str(multiplier))

    # Step 12: tier floor
    floor_amount = economy.PAYOUT_FLOORS.get(tier, 150)
    computed = int(base.to_integral_value(rounding=ROUND_FLOOR))
    final_amount = max(computed, floor_amount)
    floor_applied = computed < floor_amount
    record(
        12, "Floor Check",
        f"Floor applied: ${floor_amount} (calculated ${computed})" if floor_applied
        else f"${final_amount} (above ${floor_amount} floor)",
        Decimal(final_amount - computed) if floor_applied else Decimal("0"),
        Decimal(final_amount), floor=floor_amount, computed=computed,
    )

    return PayoutResult(
        amount=final_amount,
        status=PayoutStatus.SUCCESS,
        steps=steps,
        bonuses=bonuses,
        floor_applied=floor_applied,
    )


def calculate_payout(
    mission: Mission,
    bol: BillOfLading,
    delivered_at: datetime,
    economy: EconomySettings,
    shipper_standing: ShipperStanding = ShipperStanding.UNKNOWN,
) -> PayoutResult:
    return compute_payout(PayoutInput.from_records(mission, bol, shipper_standing), delivered_at, economy)
