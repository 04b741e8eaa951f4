"""
Driver and shipper reputation.

There is exactly one point table. Gains and losses are keyed by change type
and load tier; the score is clamped to [0, MAX_SCORE] and mapped onto the
reputation tier that decides which load tiers a driver may accept.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.models.domain import Driver, Mission, ShipperReputation
from app.models.enums import ReputationTier, SealStatus, ShipperStanding
from app.services.context import ServiceContext

logger = logging.getLogger(__name__)

MAX_SCORE = 1100

POINTS = {
    "delivery": {0: 8, 1: 15, 2: 25, 3: 40},
    "robbery": {0: -30, 1: -60, 2: -100, 3: -180},
    "integrity_fail": {0: -20, 1: -40, 2: -70, 3: -120},
    "abandonment": {0: -25, 1: -50, 2: -90, 3: -160},
    "window_expired": {0: -10, 1: -20, 2: -35, 3: -60},
    "seal_break": {0: 0, 1: -15, 2: -30, 3: -55},
}

# Highest load tier each reputation tier may accept
TIER_ACCESS = {
    ReputationTier.SUSPENDED: -1,
    ReputationTier.RESTRICTED: 0,
    ReputationTier.PROBATIONARY: 1,
    ReputationTier.DEVELOPING: 2,
    ReputationTier.ESTABLISHED: 3,
    ReputationTier.PROFESSIONAL: 3,
    ReputationTier.ELITE: 3,
}

SHIPPER_THRESHOLDS = [
    (700, ShipperStanding.PREFERRED),
    (350, ShipperStanding.TRUSTED),
    (150, ShipperStanding.ESTABLISHED),
    (50, ShipperStanding.FAMILIAR),
    (0, ShipperStanding.UNKNOWN),
]

SHIPPER_POINTS_PER_TIER = {0: 5, 1: 10, 2: 18, 3: 30}


def score_to_tier(score: int) -> ReputationTier:
    if score <= 0:
        return ReputationTier.SUSPENDED
    if score < 200:
        return ReputationTier.RESTRICTED
    if score < 400:
        return ReputationTier.PROBATIONARY
    if score < 600:
        return ReputationTier.DEVELOPING
    if score < 800:
        return ReputationTier.ESTABLISHED
    if score < 1000:
        return ReputationTier.PROFESSIONAL
    return ReputationTier.ELITE


def max_load_tier(tier: ReputationTier) -> int:
    return TIER_ACCESS.get(tier, 0)


def shipper_points_to_standing(points: int) -> ShipperStanding:
    for minimum, standing in SHIPPER_THRESHOLDS:
        if points >= minimum:
            return standing
    return ShipperStanding.UNKNOWN


def ensure_driver(db: Session, driver_id: str) -> Driver:
    """Fetch the driver record, creating it on first contact (not committed)."""
    driver = db.get(Driver, driver_id)
    if driver is None:
        driver = Driver(
            id=driver_id,
            reputation_score=500,
            reputation_tier=score_to_tier(500),
            reservation_releases=0,
        )
        db.add(driver)
        db.flush()
    return driver


class ReputationService:
    def __init__(self, db: Session, ctx: ServiceContext):
        self.db = db
        self.ctx = ctx

    def apply(self, driver_id: str, change_type: str, load_tier: int) -> Optional[int]:
        """
        Apply a point change for a driver. Returns the change applied, or None
        if the change type carries no points for this tier.

        Does not commit; the caller's transaction owns the write.
        """
        change = POINTS.get(change_type, {}).get(load_tier, 0)
        if change == 0:
            return None

        driver = ensure_driver(self.db, driver_id)
        before_score = driver.reputation_score
        before_tier = driver.reputation_tier
        after_score = max(0, min(MAX_SCORE, before_score + change))
        after_tier = score_to_tier(after_score)

        driver.reputation_score = after_score
        driver.reputation_tier = after_tier
        if after_tier == ReputationTier.SUSPENDED and before_tier != ReputationTier.SUSPENDED:
            driver.suspended_until = self.ctx.now() + timedelta(hours=self.ctx.mission_settings.SUSPENSION_HOURS)

        logger.info(
            "reputation %s: %s %+d (%d -> %d, %s -> %s)",
            driver_id, change_type, change, before_score, after_score,
            before_tier.value, after_tier.value,
        )
        if before_tier != after_tier and driver.disconnected_at is None:
            direction = "Promoted" if change > 0 else "Demoted"
            self.ctx.notify(driver_id, "Reputation", f"{direction} to {after_tier.value} ({after_score} pts)")
        return change

    def lift_expired_suspension(self, driver: Driver, now: datetime) -> None:
        if driver.suspended_until is not None and driver.suspended_until <= now:
            driver.suspended_until = None
            if driver.reputation_tier == ReputationTier.SUSPENDED:
                driver.reputation_tier = score_to_tier(max(driver.reputation_score, 1))

    def shipper_standing(self, driver_id: str, shipper_id: str) -> ShipperStanding:
        row = self._shipper_row(driver_id, shipper_id)
        return row.standing if row else ShipperStanding.UNKNOWN

    def record_delivery(self, mission: Mission, shipper_id: str, load_tier: int) -> ShipperReputation:
        row = self._shipper_row(mission.driver_id, shipper_id)
        if row is None:
            row = ShipperReputation(
                driver_id=mission.driver_id,
                shipper_id=shipper_id,
                points=0,
                standing=ShipperStanding.UNKNOWN,
                deliveries_completed=0,
                clean_streak=0,
            )
            self.db.add(row)

        gained = SHIPPER_POINTS_PER_TIER.get(load_tier, 5)
        if mission.cargo_integrity >= 95:
            gained += 3
        if mission.seal_status == SealStatus.SEALED:
            gained += 2

        row.points = (row.points or 0) + gained
        row.standing = shipper_points_to_standing(row.points)
        row.deliveries_completed = (row.deliveries_completed or 0) + 1
        row.clean_streak = (row.clean_streak or 0) + 1 if mission.cargo_integrity >= 90 else 0
        row.last_delivery_at = self.ctx.now()
        return row

    def penalize_shipper(self, driver_id: str, shipper_id: str, points: int) -> None:
        row = self._shipper_row(driver_id, shipper_id)
        if row is None:
            return
        row.points = max(0, row.points - points)
        row.standing = shipper_points_to_standing(row.points)
        row.clean_streak = 0

    def _shipper_row(self, driver_id: str, shipper_id: str) -> Optional[ShipperReputation]:
        return self.db.query(ShipperReputation).filter(
            ShipperReputation.driver_id == driver_id,
            ShipperReputation.shipper_id == shipper_id,
        ).first()
