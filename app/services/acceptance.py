"""
Load acceptance - the gate between the board and a live mission.

Validation runs in a fixed order and refuses with a specific reason before
anything is written. Only then is the deposit debited and the BOL, mission
and deposit created together. If any write after the debit fails, the
deposit is refunded explicitly: the wallet has no rollback of its own.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.audit import BolEventType
from app.models.domain import BillOfLading, Deposit, Driver, Load, Mission
from app.models.enums import (
    BolStatus,
    DepositStatus,
    LoadStatus,
    MissionStatus,
    OwnershipMode,
    RefusalReason,
    ReputationTier,
    SealStatus,
    TempCompliance,
)
from app.services.context import ServiceContext
from app.services.errors import RefusalError
from app.services.ledger import BolLedger
from app.services.presence import mark_active
from app.services.reputation import ensure_driver, max_load_tier, score_to_tier

logger = logging.getLogger(__name__)

INSURANCE_CREDENTIAL = "insurance"


@dataclass
class Equipment:
    """The vehicle a driver brings to a load."""
    vehicle_plate: Optional[str] = None
    vehicle_model: Optional[str] = None
    ownership: OwnershipMode = OwnershipMode.RENTAL
    convoy_size: Optional[int] = None


def delivery_window_minutes(load: Load, economy) -> int:
    """Tier-scaled minutes per mile, plus a fixed allowance per stop on multi-stop loads."""
    per_mile = economy.WINDOW_MINUTES_PER_MILE.get(load.tier, Decimal("6"))
    minutes = per_mile * Decimal(str(load.distance_miles))
    if load.is_multi_stop:
        minutes += load.stop_count * economy.WINDOW_MINUTES_PER_STOP
    return max(int(minutes), 1)


def bol_artifact(bol_number: str) -> str:
    return f"bol:{bol_number}"


class _LostRace(Exception):
    pass


class AcceptanceService:
    def __init__(self, db: Session, ctx: ServiceContext):
        self.db = db
        self.ctx = ctx
        self.ledger = BolLedger(db)

    def validate(self, load: Load, driver_id: str) -> None:
        """
        Check every acceptance rule in order. Raises RefusalError on the first failure.

        1. No live mission for this driver
        2. Load reserved by this driver, or still available
        3. Required license, endorsement and certification are active
        4. Tier 1 and above requires active insurance
        5. Reputation tier can access the load tier
        """
        credentials = self.ctx.credentials

        if self.db.query(Mission.id).filter(Mission.driver_id == driver_id).first() is not None:
            raise RefusalError(RefusalReason.ALREADY_ON_MISSION, "You already have an active load")

        reserved_by_me = load.status == LoadStatus.RESERVED and load.reserved_by == driver_id
        if not (reserved_by_me or load.status == LoadStatus.AVAILABLE):
            raise RefusalError(RefusalReason.UNAVAILABLE, "This load is no longer available")

        if load.required_license and not credentials.is_active(driver_id, load.required_license):
            raise RefusalError(
                RefusalReason.LICENSE_REQUIRED,
                f"Requires an active {load.required_license} license",
            )
        if load.required_endorsement and not credentials.is_active(driver_id, load.required_endorsement):
            raise RefusalError(
                RefusalReason.ENDORSEMENT_REQUIRED,
                f"Requires the {load.required_endorsement} endorsement",
            )
        if load.required_certification and not credentials.is_active(driver_id, load.required_certification):
            raise RefusalError(
                RefusalReason.CERTIFICATION_REQUIRED,
                f"Requires the {load.required_certification} certification",
            )

        if load.tier >= 1 and not credentials.is_active(driver_id, INSURANCE_CREDENTIAL):
            raise RefusalError(RefusalReason.INSURANCE_REQUIRED, f"Tier {load.tier} loads require active cargo insurance")

        tier = self._reputation_tier(driver_id)
        if max_load_tier(tier) < load.tier:
            raise RefusalError(
                RefusalReason.REPUTATION_TOO_LOW,
                f"Reputation tier {tier.value} cannot access tier {load.tier} loads",
            )

    def accept(self, load_id: int, driver_id: str, equipment: Optional[Equipment] = None) -> Mission:
        """
        Turn a reserved or available load into a live mission.

        The BOL, mission and deposit are created in one transaction; a mission
        is not live until all three exist. The load flips to ACCEPTED through
        a conditional write so a concurrent acceptance cannot also win.
        """
        equipment = equipment or Equipment()
        self.ctx.rate_limiter.check(driver_id, "accept")
        mark_active(self.db, driver_id, self.ctx.now())

        load = self.db.get(Load, load_id)
        if load is None:
            raise RefusalError(RefusalReason.LOAD_NOT_FOUND, f"Load {load_id} does not exist")

        try:
            self.validate(load, driver_id)
        except RefusalError as e:
            logger.debug("accept refused for %s on load %s: %s", driver_id, load_id, e.reason.value)
            raise

        deposit_amount = load.deposit_amount or 0
        memo = f"Deposit for {load.bol_number}"
        if deposit_amount > 0 and not self.ctx.wallet.debit(driver_id, deposit_amount, memo):
            raise RefusalError(
                RefusalReason.INSUFFICIENT_FUNDS,
                f"A ${deposit_amount} deposit is required to accept this load",
            )

        now = self.ctx.now()
        try:
            mission = self._create_records(load, driver_id, equipment, deposit_amount, now)
            self.db.commit()
        except _LostRace:
            self._undo(driver_id, deposit_amount, load.bol_number)
            raise RefusalError(RefusalReason.UNAVAILABLE, "This load is no longer available")
        except IntegrityError:
            self._undo(driver_id, deposit_amount, load.bol_number)
            raise RefusalError(RefusalReason.ALREADY_ON_MISSION, "You already have an active load")
        except SQLAlchemyError:
            logger.exception("accept failed to persist load %s for %s", load_id, driver_id)
            self._undo(driver_id, deposit_amount, load.bol_number)
            raise RefusalError(RefusalReason.PERSISTENCE_FAILED, "The load could not be recorded; deposit refunded")

        self.db.refresh(mission)
        self.ctx.index.put(mission)

        bol = mission.bol
        try:
            self.ctx.inventory.grant(driver_id, bol_artifact(bol.bol_number), {
                "bol_id": bol.id,
                "shipper": bol.shipper_name,
                "origin": bol.origin_label,
                "destination": bol.destination_label,
                "cargo_type": bol.cargo_type,
                "weight_lbs": bol.weight_lbs,
            })
        except Exception:
            logger.warning("could not hand %s the paper BOL %s", driver_id, bol.bol_number, exc_info=True)

        logger.info(
            "load %s accepted by %s as BOL %s (window %s, deposit %d)",
            load.id, driver_id, bol.bol_number, mission.window_expires_at, deposit_amount,
        )
        self.ctx.notify(
            driver_id, "Load Accepted",
            f"BOL {bol.bol_number}: {bol.origin_label} to {bol.destination_label}",
        )
        return mission

    def _create_records(
        self,
        load: Load,
        driver_id: str,
        equipment: Equipment,
        deposit_amount: int,
        now,
    ) -> Mission:
        flipped = self.db.execute(
            update(Load)
            .where(
                Load.id == load.id,
                or_(
                    and_(Load.status == LoadStatus.RESERVED, Load.reserved_by == driver_id),
                    Load.status == LoadStatus.AVAILABLE,
                ),
            )
            .values(status=LoadStatus.ACCEPTED, reserved_by=driver_id, reserved_until=None)
            .execution_options(synchronize_session="fetch")
        )
        if flipped.rowcount != 1:
            raise _LostRace()

        window = timedelta(minutes=delivery_window_minutes(load, self.ctx.economy))
        license_matched = not load.required_license or self.ctx.credentials.is_active(
            driver_id, load.required_license
        )

        bol = BillOfLading(
            bol_number=load.bol_number,
            load_id=load.id,
            driver_id=driver_id,
            shipper_id=load.shipper_id,
            shipper_name=load.shipper_name,
            origin_label=load.origin_label,
            destination_label=load.destination_label,
            distance_miles=load.distance_miles,
            cargo_type=load.cargo_type,
            weight_lbs=load.weight_lbs,
            tier=load.tier,
            stop_count=load.stop_count or 1,
            ownership=equipment.ownership,
            license_class=load.required_license,
            license_matched=license_matched,
            temp_compliance=TempCompliance.CLEAN if load.temp_controlled else TempCompliance.NOT_REQUIRED,
            status=BolStatus.ACTIVE,
            issued_at=now,
        )
        self.db.add(bol)
        self.db.flush()

        mission = Mission(
            load_id=load.id,
            bol_id=bol.id,
            driver_id=driver_id,
            vehicle_plate=equipment.vehicle_plate,
            vehicle_model=equipment.vehicle_model,
            ownership=equipment.ownership,
            status=MissionStatus.AT_ORIGIN,
            current_stop=1,
            cargo_integrity=100,
            seal_status=SealStatus.NOT_APPLIED,
            temp_monitoring=bool(load.temp_controlled),
            convoy_size=equipment.convoy_size,
            accepted_at=now,
            window_expires_at=now + window,
            window_extension_seconds=0,
            deposit_amount=deposit_amount,
        )
        self.db.add(mission)
        self.db.add(Deposit(
            bol_id=bol.id,
            driver_id=driver_id,
            amount=deposit_amount,
            status=DepositStatus.HELD,
            created_at=now,
        ))
        self.db.flush()

        self.ledger.append(bol, BolEventType.LOAD_ACCEPTED, {
            "load_id": load.id,
            "tier": load.tier,
            "cargo_type": load.cargo_type,
            "ownership": equipment.ownership.value,
            "vehicle_plate": equipment.vehicle_plate,
            "deposit": deposit_amount,
            "window_minutes": int(window.total_seconds() // 60),
        }, occurred_at=now)

        driver = ensure_driver(self.db, driver_id)
        driver.reservation_releases = 0
        driver.last_seen_at = now
        return mission

    def _undo(self, driver_id: str, deposit_amount: int, bol_number: str) -> None:
        self.db.rollback()
        if deposit_amount > 0:
            refunded = self.ctx.wallet.credit(driver_id, deposit_amount, f"Deposit refund for {bol_number}")
            if not refunded:
                logger.error("deposit refund of %d to %s for %s failed", deposit_amount, driver_id, bol_number)

    def _reputation_tier(self, driver_id: str) -> ReputationTier:
        driver = self.db.get(Driver, driver_id)
        if driver is None:
            return score_to_tier(500)
        now = self.ctx.now()
        if driver.suspended_until is not None and driver.suspended_until > now:
            return ReputationTier.SUSPENDED
        if driver.reputation_tier == ReputationTier.SUSPENDED and driver.suspended_until is not None:
            # Suspension served; the score decides again
            return score_to_tier(max(driver.reputation_score, 1))
        return driver.reputation_tier
