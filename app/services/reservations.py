"""
Board reservations.

A reservation is a short exclusive hold on a posted load. Two drivers racing
for the same load both issue the same conditional write; the store lets
exactly one of them through and the other is told the load is unavailable.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.models.domain import Driver, Load, Mission
from app.models.enums import LoadStatus, RefusalReason
from app.services.context import ServiceContext
from app.services.errors import RefusalError
from app.services.presence import mark_active
from app.services.reputation import ensure_driver

logger = logging.getLogger(__name__)


@dataclass
class ReleaseResult:
    load_id: int
    releases: int
    cooldown_until: Optional[datetime] = None


class ReservationService:
    """Reserve and release board loads through conditional writes."""

    def __init__(self, db: Session, ctx: ServiceContext):
        self.db = db
        self.ctx = ctx

    def reserve(self, load_id: int, driver_id: str) -> Load:
        """
        Hold an available load for this driver.

        Refusal invariants:
        - Drivers already on a mission cannot reserve
        - Drivers in a release cooldown cannot reserve cooldown-tier loads
        - Exactly one of several simultaneous reservations succeeds
        """
        settings = self.ctx.mission_settings
        self.ctx.rate_limiter.check(driver_id, "reserve")
        now = self.ctx.now()
        mark_active(self.db, driver_id, now)

        load = self.db.get(Load, load_id)
        if load is None:
            raise RefusalError(RefusalReason.LOAD_NOT_FOUND, f"Load {load_id} does not exist")

        if self._has_live_mission(driver_id):
            raise RefusalError(RefusalReason.ALREADY_ON_MISSION, "Finish your current load before reserving another")

        driver = self.db.get(Driver, driver_id)
        if (
            driver is not None
            and driver.reservation_cooldown_until is not None
            and driver.reservation_cooldown_until > now
            and load.tier >= settings.RESERVATION_COOLDOWN_MIN_TIER
        ):
            remaining = int((driver.reservation_cooldown_until - now).total_seconds())
            raise RefusalError(
                RefusalReason.RESERVATION_COOLDOWN,
                f"Too many released reservations; tier {settings.RESERVATION_COOLDOWN_MIN_TIER}+ "
                f"loads are locked for another {remaining}s",
            )

        result = self.db.execute(
            update(Load)
            .where(Load.id == load_id, Load.status == LoadStatus.AVAILABLE)
            .values(
                status=LoadStatus.RESERVED,
                reserved_by=driver_id,
                reserved_until=now + timedelta(seconds=settings.RESERVATION_HOLD_SECONDS),
            )
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            self.db.rollback()
            logger.debug("reserve refused: load %s unavailable for %s", load_id, driver_id)
            raise RefusalError(RefusalReason.UNAVAILABLE, "This load is no longer available")

        self.db.commit()
        self.db.refresh(load)
        logger.info("load %s reserved by %s until %s", load_id, driver_id, load.reserved_until)
        return load

    def cancel_reservation(self, load_id: int, driver_id: str) -> ReleaseResult:
        """
        Release this driver's hold and count the release.

        Consecutive releases warn at the warning threshold and, at the
        maximum, start a cooldown and reset the counter.
        """
        settings = self.ctx.mission_settings
        self.ctx.rate_limiter.check(driver_id, "cancel_reservation")
        now = self.ctx.now()
        mark_active(self.db, driver_id, now)

        load = self.db.get(Load, load_id)
        if load is None:
            raise RefusalError(RefusalReason.LOAD_NOT_FOUND, f"Load {load_id} does not exist")
        if load.status != LoadStatus.RESERVED or load.reserved_by != driver_id:
            raise RefusalError(RefusalReason.NOT_RESERVATION_HOLDER, "You do not hold a reservation on this load")

        result = self.db.execute(
            update(Load)
            .where(
                Load.id == load_id,
                Load.status == LoadStatus.RESERVED,
                Load.reserved_by == driver_id,
            )
            .values(status=LoadStatus.AVAILABLE, reserved_by=None, reserved_until=None)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            # The reconciler or an acceptance got there first
            self.db.rollback()
            raise RefusalError(RefusalReason.UNAVAILABLE, "This reservation has already ended")

        driver = ensure_driver(self.db, driver_id)
        driver.reservation_releases = (driver.reservation_releases or 0) + 1
        releases = driver.reservation_releases
        cooldown_until = None

        if releases >= settings.RESERVATION_MAX_RELEASES:
            cooldown_until = now + timedelta(seconds=settings.RESERVATION_COOLDOWN_SECONDS)
            driver.reservation_cooldown_until = cooldown_until
            driver.reservation_releases = 0
        self.db.commit()

        logger.info("load %s released by %s (%d consecutive)", load_id, driver_id, releases)
        if cooldown_until is not None:
            self.ctx.notify(
                driver_id, "Reservation Cooldown",
                f"{releases} releases in a row. Tier {settings.RESERVATION_COOLDOWN_MIN_TIER}+ "
                f"loads are locked for {settings.RESERVATION_COOLDOWN_SECONDS // 60} minutes.",
            )
        elif releases >= settings.RESERVATION_WARNING_RELEASES:
            self.ctx.notify(
                driver_id, "Reservation Warning",
                f"{releases} releases in a row. At {settings.RESERVATION_MAX_RELEASES} "
                f"you will be locked out of tier {settings.RESERVATION_COOLDOWN_MIN_TIER}+ loads.",
            )
        return ReleaseResult(load_id=load_id, releases=releases, cooldown_until=cooldown_until)

    def _has_live_mission(self, driver_id: str) -> bool:
        return self.db.query(Mission.id).filter(Mission.driver_id == driver_id).first() is not None
