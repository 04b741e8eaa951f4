"""
Mission state machine - the single authoritative in-progress job per driver.

All lifecycle changes to a live mission MUST go through here.

    at_origin -> in_transit -> (at_stop <-> in_transit)* -> at_destination
              -> delivered | rejected | abandoned | expired | stolen | partial

Terminal outcomes are recorded on the BOL; the mission row is deleted and
dropped from the index in the same step.

Rules every transition follows:
- The caller is checked against the mission's driver before anything changes
- Status changes go through a conditional write on the current status, so a
  repeated signal for the same event matches nothing and is refused as a
  duplicate with no side effects
- The index is updated only after the commit
- Money moves only after the terminal status has been committed, so the
  once-only finalize also makes payouts and refunds once-only
"""
import logging
import math
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.models.audit import BolEventType
from app.models.domain import BillOfLading, Driver, Load, Mission
from app.models.enums import (
    BolStatus,
    LoadStatus,
    MissionStatus,
    RefusalReason,
    SealStatus,
    TempCompliance,
)
from app.services.acceptance import bol_artifact
from app.services.context import ServiceContext
from app.services.errors import BolAlreadyFinalizedError, RefusalError
from app.services.ledger import BolLedger
from app.services.payout import PayoutResult, calculate_payout
from app.services.presence import mark_active
from app.services.reputation import ReputationService, ensure_driver

logger = logging.getLogger(__name__)

MOVING_STATUSES = (MissionStatus.IN_TRANSIT, MissionStatus.AT_STOP, MissionStatus.AT_DESTINATION)

# Outcomes that a repeat of the same command would have produced
REPEATED_OUTCOMES = {
    "deliver": (BolStatus.DELIVERED, BolStatus.REJECTED),
    "abandon": (BolStatus.ABANDONED,),
}


def distance_between(x1, y1, x2, y2) -> float:
    return math.hypot(float(x1) - float(x2), float(y1) - float(y2))


def seal_number_for(bol: BillOfLading, now: datetime) -> str:
    return f"SEAL-{now:%y%m}-{bol.id:05d}"


def excursion_class(total_minutes: int, settings) -> TempCompliance:
    if total_minutes < settings.EXCURSION_MINOR_MINUTES:
        return TempCompliance.CLEAN
    if total_minutes < settings.EXCURSION_SIGNIFICANT_MINUTES:
        return TempCompliance.MINOR
    return TempCompliance.SIGNIFICANT


class MissionStateMachine:
    """Enforces mission transitions, compliance signals and reconnect recovery."""

    def __init__(self, db: Session, ctx: ServiceContext):
        self.db = db
        self.ctx = ctx
        self.ledger = BolLedger(db)
        self.reputation = ReputationService(db, ctx)

    # ------------------------------------------------------------------
    # Route transitions
    # ------------------------------------------------------------------

    def depart(self, bol_id: int, driver_id: str) -> Mission:
        """
        Leave the origin.

        Requires secured cargo when the load demands it and applies the seal
        if one is required and not yet on. The delivery window keeps running
        from acceptance; departing does not restart it.
        """
        mission = self._live_mission(bol_id, driver_id, "depart")
        if mission.status != MissionStatus.AT_ORIGIN:
            raise RefusalError(RefusalReason.DUPLICATE_SIGNAL, "Already departed")

        load = mission.load
        if load.requires_securing and not mission.cargo_secured:
            raise RefusalError(RefusalReason.CARGO_NOT_SECURED, "Cargo must be secured before departure")

        now = self.ctx.now()
        if not self._transition(mission, [MissionStatus.AT_ORIGIN], status=MissionStatus.IN_TRANSIT, departed_at=now):
            raise self._duplicate("Already departed")

        bol = mission.bol
        if load.requires_seal and mission.seal_status == SealStatus.NOT_APPLIED:
            seal_number = seal_number_for(bol, now)
            mission.seal_status = bol.seal_status = SealStatus.SEALED
            mission.seal_number = bol.seal_number = seal_number
            self.ledger.append(bol, BolEventType.SEAL_APPLIED, {"seal_number": seal_number}, occurred_at=now)

        bol.departed_at = now
        self.ledger.append(bol, BolEventType.DEPARTED_ORIGIN, {
            "origin": bol.origin_label,
            "seal_number": mission.seal_number,
            "pre_trip_completed": mission.pre_trip_completed,
        }, occurred_at=now)
        return self._commit(mission)

    def arrive(self, bol_id: int, driver_id: str, x: float, y: float) -> Mission:
        """
        Report arrival. With intermediate stops outstanding this marks the
        current stop; otherwise it must be within the tier radius of the
        destination.
        """
        mission = self._live_mission(bol_id, driver_id, "arrive")
        if mission.status == MissionStatus.AT_ORIGIN:
            raise RefusalError(RefusalReason.INVALID_TRANSITION, "Depart before reporting arrival")
        if mission.status in (MissionStatus.AT_STOP, MissionStatus.AT_DESTINATION):
            raise RefusalError(RefusalReason.DUPLICATE_SIGNAL, "Arrival already recorded")

        load = mission.load
        now = self.ctx.now()
        if mission.current_stop < (load.stop_count or 1):
            if not self._transition(mission, [MissionStatus.IN_TRANSIT], status=MissionStatus.AT_STOP):
                raise self._duplicate("Arrival already recorded")
            self.ledger.append(mission.bol, BolEventType.ARRIVED_AT_STOP, {
                "stop": mission.current_stop,
            }, occurred_at=now)
            return self._commit(mission)

        self._require_at_destination(mission, x, y)
        if not self._transition(
            mission, [MissionStatus.IN_TRANSIT], status=MissionStatus.AT_DESTINATION, arrived_at=now,
        ):
            raise self._duplicate("Arrival already recorded")
        self.ledger.append(mission.bol, BolEventType.ARRIVED_AT_DESTINATION, {
            "destination": load.destination_label,
        }, occurred_at=now)
        return self._commit(mission)

    def complete_stop(self, bol_id: int, driver_id: str, stop: int) -> Mission:
        """
        Complete intermediate stop `stop` (1-based). Stops go strictly in
        order and only once the driver has arrived at the stop; the final
        destination is delivered, not completed.
        """
        mission = self._live_mission(bol_id, driver_id, "complete_stop")
        load = mission.load
        stop_count = load.stop_count or 1

        if mission.status == MissionStatus.AT_ORIGIN:
            raise RefusalError(RefusalReason.INVALID_TRANSITION, "Depart before completing stops")
        if stop < 1 or stop >= stop_count:
            raise RefusalError(RefusalReason.WRONG_STOP, f"Stop {stop} is not an intermediate stop on this load")
        if stop < mission.current_stop:
            raise RefusalError(RefusalReason.DUPLICATE_SIGNAL, f"Stop {stop} is already complete")
        if stop > mission.current_stop:
            raise RefusalError(RefusalReason.WRONG_STOP, f"Stop {mission.current_stop} comes first")
        if mission.status != MissionStatus.AT_STOP:
            raise RefusalError(RefusalReason.INVALID_TRANSITION, f"Arrive at stop {stop} before completing it")

        result = self.db.execute(
            update(Mission)
            .where(
                Mission.id == mission.id,
                Mission.current_stop == stop,
                Mission.status == MissionStatus.AT_STOP,
            )
            .values(current_stop=stop + 1, status=MissionStatus.IN_TRANSIT)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            raise self._duplicate(f"Stop {stop} is already complete")

        self.ledger.append(mission.bol, BolEventType.STOP_COMPLETED, {
            "stop": stop,
            "remaining": stop_count - (stop + 1),
        }, occurred_at=self.ctx.now())
        return self._commit(mission)

    def deliver(self, bol_id: int, driver_id: str, x: float, y: float) -> BillOfLading:
        """
        Deliver at the destination and settle.

        A rejected payout (integrity below threshold) ends as REJECTED with no
        payout and a forfeited deposit. Otherwise the payout is credited and
        the deposit refunded.
        """
        mission = self._live_mission(bol_id, driver_id, "deliver")
        if mission.status == MissionStatus.AT_ORIGIN:
            raise RefusalError(RefusalReason.INVALID_TRANSITION, "Depart before delivering")
        if mission.current_stop < (mission.load.stop_count or 1):
            raise RefusalError(
                RefusalReason.STOPS_PENDING,
                f"Stop {mission.current_stop} of {mission.load.stop_count - 1} is still outstanding",
            )
        self._require_at_destination(mission, x, y)

        now = self.ctx.now()
        bol = mission.bol
        standing = self.reputation.shipper_standing(driver_id, bol.shipper_id)
        payout = calculate_payout(mission, bol, now, self.ctx.economy, standing)

        self._sync_compliance(mission, bol)
        if payout.rejected:
            return self._close(
                mission, BolStatus.REJECTED, now,
                payout=payout,
                load_status=LoadStatus.COMPLETED,
                reputation_change="integrity_fail",
                event_data={"integrity": mission.cargo_integrity},
            )
        return self._close(
            mission, BolStatus.DELIVERED, now,
            payout=payout,
            amount=payout.amount,
            load_status=LoadStatus.COMPLETED,
            reputation_change="delivery",
            event_data={"integrity": mission.cargo_integrity, "bonuses": payout.bonuses},
        )

    def abandon(self, bol_id: int, driver_id: str, reason: Optional[str] = None) -> BillOfLading:
        """Driver walks away from the load. The deposit is forfeited."""
        mission = self._live_mission(bol_id, driver_id, "abandon")
        return self._close(
            mission, BolStatus.ABANDONED, self.ctx.now(),
            load_status=LoadStatus.ORPHANED,
            reputation_change="abandonment",
            event_data={"reason": reason or "driver_abandoned"},
        )

    # ------------------------------------------------------------------
    # System-driven terminal transitions (no caller identity)
    # ------------------------------------------------------------------

    def expire(self, bol_id: int) -> BillOfLading:
        """Delivery window elapsed. Raised by the reconciler only."""
        mission = self._system_mission(bol_id)
        now = self.ctx.now()
        bol = self._close(
            mission, BolStatus.EXPIRED, now,
            load_status=LoadStatus.EXPIRED,
            reputation_change="window_expired",
            event_data={"window_expires_at": mission.window_expires_at.isoformat()},
        )
        if self._connected(bol.driver_id):
            self.ctx.notify(
                bol.driver_id, "Load Expired",
                f"BOL {bol.bol_number}: the delivery window closed. Deposit forfeited.",
            )
        return bol

    def resolve_orphan(self, bol_id: int) -> BillOfLading:
        """Driver stayed disconnected past the orphan timeout."""
        mission = self._system_mission(bol_id)
        return self._close(
            mission, BolStatus.ABANDONED, self.ctx.now(),
            load_status=LoadStatus.ORPHANED,
            reputation_change="abandonment",
            event_data={"reason": "driver_disconnected"},
        )

    def mark_stolen(self, bol_id: int, robbed_by: Optional[str] = None) -> BillOfLading:
        """Cargo taken in a robbery. The paper BOL stays with the driver for the claim."""
        mission = self._system_mission(bol_id)
        return self._close(
            mission, BolStatus.STOLEN, self.ctx.now(),
            load_status=LoadStatus.ORPHANED,
            reputation_change="robbery",
            event_data={"robbed_by": robbed_by},
        )

    def settle_partial(self, bol_id: int, fraction: Decimal) -> BillOfLading:
        """
        Pay for the share of the cargo that arrived. The payout is the full
        calculation scaled by `fraction`; the deposit is forfeited.
        """
        fraction = Decimal(str(fraction))
        if not (Decimal("0") < fraction < Decimal("1")):
            raise RefusalError(RefusalReason.INVALID_SIGNAL, "A partial delivery must be strictly between 0 and 1")

        mission = self._system_mission(bol_id)
        now = self.ctx.now()
        bol = mission.bol
        standing = self.reputation.shipper_standing(mission.driver_id, bol.shipper_id)
        payout = calculate_payout(mission, bol, now, self.ctx.economy, standing)
        amount = 0 if payout.rejected else int(
            (Decimal(payout.amount) * fraction).to_integral_value(rounding=ROUND_FLOOR)
        )

        self._sync_compliance(mission, bol)
        return self._close(
            mission, BolStatus.PARTIAL, now,
            payout=payout,
            amount=amount,
            load_status=LoadStatus.COMPLETED,
            event_data={"fraction": str(fraction), "full_amount": payout.amount},
        )

    # ------------------------------------------------------------------
    # Compliance signals
    # ------------------------------------------------------------------

    def pre_trip_completed(self, bol_id: int, driver_id: str) -> Mission:
        mission = self._live_mission(bol_id, driver_id, "pre_trip")
        if mission.pre_trip_completed:
            raise RefusalError(RefusalReason.DUPLICATE_SIGNAL, "Pre-trip inspection already recorded")
        if mission.status != MissionStatus.AT_ORIGIN:
            raise RefusalError(RefusalReason.INVALID_TRANSITION, "Pre-trip inspection happens before departure")
        mission.pre_trip_completed = mission.bol.pre_trip_completed = True
        self.ledger.append(mission.bol, BolEventType.PRE_TRIP_COMPLETED, {}, occurred_at=self.ctx.now())
        return self._commit(mission)

    def manifest_verified(self, bol_id: int, driver_id: str) -> Mission:
        mission = self._live_mission(bol_id, driver_id, "manifest")
        if mission.manifest_verified:
            raise RefusalError(RefusalReason.DUPLICATE_SIGNAL, "Manifest already verified")
        mission.manifest_verified = mission.bol.manifest_verified = True
        self.ledger.append(mission.bol, BolEventType.MANIFEST_VERIFIED, {}, occurred_at=self.ctx.now())
        return self._commit(mission)

    def weigh_station_stamped(self, bol_id: int, driver_id: str, station: Optional[str] = None) -> Mission:
        mission = self._live_mission(bol_id, driver_id, "weigh_station")
        if mission.weigh_station_stamped:
            raise RefusalError(RefusalReason.DUPLICATE_SIGNAL, "BOL already stamped")
        if mission.status not in MOVING_STATUSES:
            raise RefusalError(RefusalReason.INVALID_TRANSITION, "Weigh stations are on the road, not at the origin")
        mission.weigh_station_stamped = mission.bol.weigh_station_stamped = True
        self.ledger.append(mission.bol, BolEventType.WEIGH_STATION_STAMPED, {"station": station}, occurred_at=self.ctx.now())
        return self._commit(mission)

    def cargo_secured(self, bol_id: int, driver_id: str) -> Mission:
        mission = self._live_mission(bol_id, driver_id, "cargo_secured")
        if mission.cargo_secured:
            raise RefusalError(RefusalReason.DUPLICATE_SIGNAL, "Cargo already secured")
        mission.cargo_secured = True
        self.ledger.append(mission.bol, BolEventType.CARGO_SECURED, {}, occurred_at=self.ctx.now())
        return self._commit(mission)

    def seal_break(self, bol_id: int, driver_id: str, reason: Optional[str] = None) -> Mission:
        """Break the seal. Costs reputation with the service and with the shipper."""
        mission = self._live_mission(bol_id, driver_id, "seal_break")
        if mission.seal_status == SealStatus.BROKEN:
            raise RefusalError(RefusalReason.DUPLICATE_SIGNAL, "Seal is already broken")
        if mission.seal_status != SealStatus.SEALED:
            raise RefusalError(RefusalReason.INVALID_SIGNAL, "There is no seal to break")

        now = self.ctx.now()
        bol = mission.bol
        mission.seal_status = bol.seal_status = SealStatus.BROKEN
        mission.seal_broken_at = now
        self.ledger.append(bol, BolEventType.SEAL_BROKEN, {
            "seal_number": mission.seal_number,
            "reason": reason,
        }, occurred_at=now)
        self.reputation.apply(driver_id, "seal_break", bol.tier)
        self.reputation.penalize_shipper(
            driver_id, bol.shipper_id, self.ctx.mission_settings.SHIPPER_SEAL_BREAK_PENALTY,
        )
        return self._commit(mission)

    def integrity_event(self, bol_id: int, driver_id: str, cause: str, loss: int) -> Mission:
        """Cargo damage. A single event costs at most the per-event cap; integrity stops at 0."""
        mission = self._live_mission(bol_id, driver_id, "integrity_event")
        if loss is None or loss <= 0:
            raise RefusalError(RefusalReason.INVALID_SIGNAL, "Integrity loss must be positive")

        applied = min(int(loss), self.ctx.mission_settings.MAX_INTEGRITY_LOSS_PER_EVENT)
        before = mission.cargo_integrity
        mission.cargo_integrity = max(0, before - applied)
        self.ledger.append(mission.bol, BolEventType.INTEGRITY_EVENT, {
            "cause": cause,
            "reported_loss": loss,
            "applied_loss": before - mission.cargo_integrity,
            "integrity": mission.cargo_integrity,
        }, occurred_at=self.ctx.now())
        return self._commit(mission)

    def repair(self, bol_id: int, driver_id: str, points: int) -> Mission:
        """The only way integrity goes back up. Capped at 100."""
        mission = self._live_mission(bol_id, driver_id, "repair")
        if points is None or points <= 0:
            raise RefusalError(RefusalReason.INVALID_SIGNAL, "Repair points must be positive")
        if mission.cargo_integrity >= 100:
            raise RefusalError(RefusalReason.INVALID_SIGNAL, "Cargo is not damaged")

        before = mission.cargo_integrity
        mission.cargo_integrity = min(100, before + int(points))
        self.ledger.append(mission.bol, BolEventType.INTEGRITY_REPAIRED, {
            "from": before,
            "to": mission.cargo_integrity,
        }, occurred_at=self.ctx.now())
        return self._commit(mission)

    def temperature_excursion(self, bol_id: int, driver_id: str, minutes: int) -> Mission:
        """Accumulate time out of range; the class is taken from the running total."""
        mission = self._live_mission(bol_id, driver_id, "temperature_excursion")
        if not mission.temp_monitoring:
            raise RefusalError(RefusalReason.INVALID_SIGNAL, "This load is not temperature controlled")
        if minutes is None or minutes <= 0:
            raise RefusalError(RefusalReason.INVALID_SIGNAL, "Excursion minutes must be positive")

        mission.excursion_minutes = (mission.excursion_minutes or 0) + int(minutes)
        compliance = excursion_class(mission.excursion_minutes, self.ctx.mission_settings)
        mission.bol.temp_compliance = compliance
        self.ledger.append(mission.bol, BolEventType.TEMP_EXCURSION, {
            "minutes": minutes,
            "total_minutes": mission.excursion_minutes,
            "class": compliance.value,
        }, occurred_at=self.ctx.now())
        return self._commit(mission)

    def welfare_report(self, bol_id: int, driver_id: str, rating: int) -> Mission:
        mission = self._live_mission(bol_id, driver_id, "welfare_report")
        if not mission.load.livestock:
            raise RefusalError(RefusalReason.INVALID_SIGNAL, "Welfare ratings apply to livestock only")
        if rating not in (1, 2, 3, 4, 5):
            raise RefusalError(RefusalReason.INVALID_SIGNAL, "Welfare rating must be 1-5")

        previous = mission.welfare_rating
        mission.welfare_rating = mission.bol.welfare_rating = rating
        self.ledger.append(mission.bol, BolEventType.WELFARE_EVENT, {
            "rating": rating,
            "previous": previous,
        }, occurred_at=self.ctx.now())
        return self._commit(mission)

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    def driver_disconnected(self, driver_id: str) -> bool:
        """
        Stamp the start of an outage. A second disconnect before reconnecting
        keeps the first stamp. Returns True if this call stamped it.
        """
        now = self.ctx.now()
        ensure_driver(self.db, driver_id)
        result = self.db.execute(
            update(Driver)
            .where(Driver.id == driver_id, Driver.disconnected_at.is_(None))
            .values(disconnected_at=now)
            .execution_options(synchronize_session="fetch")
        )
        self.db.commit()
        self.ctx.rate_limiter.forget(driver_id)
        if result.rowcount == 1:
            logger.info("driver %s disconnected at %s", driver_id, now)
        return result.rowcount == 1

    def driver_reconnected(self, driver_id: str) -> int:
        """
        End the outage and extend the live mission's window by its length.

        The outage stamp is cleared with a conditional write on its exact
        value, so one outage extends the window at most once. Returns the
        seconds added.
        """
        driver = self.db.get(Driver, driver_id)
        if driver is None or driver.disconnected_at is None:
            return 0

        now = self.ctx.now()
        stamped = driver.disconnected_at
        result = self.db.execute(
            update(Driver)
            .where(Driver.id == driver_id, Driver.disconnected_at == stamped)
            .values(disconnected_at=None, last_seen_at=now)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            self.db.rollback()
            return 0

        mission = self.db.query(Mission).filter(Mission.driver_id == driver_id).first()
        outage = max(now - stamped, timedelta(0))
        seconds = int(outage.total_seconds())
        if mission is None or seconds == 0:
            self.db.commit()
            return 0

        mission.window_expires_at = mission.window_expires_at + outage
        mission.window_extension_seconds = (mission.window_extension_seconds or 0) + seconds
        self.ledger.append(mission.bol, BolEventType.WINDOW_EXTENDED, {
            "seconds": seconds,
            "disconnected_at": stamped.isoformat(),
            "window_expires_at": mission.window_expires_at.isoformat(),
        }, occurred_at=now)
        self._commit(mission)

        logger.info("driver %s reconnected after %ds; BOL %s window extended", driver_id, seconds, mission.bol_id)
        self.ctx.notify(driver_id, "Welcome Back", f"Delivery window extended by {seconds // 60} min")
        return seconds

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _live_mission(self, bol_id: int, driver_id: str, action: str) -> Mission:
        """
        Look up the mission and authorize the caller, then debounce. A command
        from the driver ends any open outage without extending the window;
        only the platform's reconnect event extends it.
        """
        mission = self.db.query(Mission).filter(Mission.bol_id == bol_id).first()
        if mission is None:
            bol = self.db.get(BillOfLading, bol_id)
            if bol is None:
                raise RefusalError(RefusalReason.MISSION_NOT_FOUND, f"No load with BOL id {bol_id}")
            if bol.driver_id != driver_id:
                raise RefusalError(RefusalReason.NOT_MISSION_OWNER, "This is not your load")
            if bol.status in REPEATED_OUTCOMES.get(action, ()):
                raise RefusalError(RefusalReason.DUPLICATE_SIGNAL, f"BOL {bol.bol_number} is already {bol.status.value}")
            raise RefusalError(RefusalReason.INVALID_TRANSITION, f"BOL {bol.bol_number} is {bol.status.value}")

        if mission.driver_id != driver_id:
            logger.debug("%s refused: %s is not the driver of BOL %s", action, driver_id, bol_id)
            raise RefusalError(RefusalReason.NOT_MISSION_OWNER, "This is not your load")

        mark_active(self.db, driver_id, self.ctx.now())

        self.ctx.rate_limiter.check(driver_id, action)
        return mission

    def _system_mission(self, bol_id: int) -> Mission:
        mission = self.db.query(Mission).filter(Mission.bol_id == bol_id).first()
        if mission is None:
            raise RefusalError(RefusalReason.MISSION_NOT_FOUND, f"No live mission for BOL id {bol_id}")
        return mission

    def _transition(self, mission: Mission, from_statuses: Iterable[MissionStatus], **values) -> bool:
        result = self.db.execute(
            update(Mission)
            .where(Mission.id == mission.id, Mission.status.in_(list(from_statuses)))
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    def _duplicate(self, message: str) -> RefusalError:
        self.db.rollback()
        return RefusalError(RefusalReason.DUPLICATE_SIGNAL, message)

    def _commit(self, mission: Mission) -> Mission:
        self.db.commit()
        self.db.refresh(mission)
        self.ctx.index.put(mission)
        return mission

    def _require_at_destination(self, mission: Mission, x: float, y: float) -> None:
        load = mission.load
        radius = self.ctx.economy.DELIVERY_RADIUS.get(load.tier, 8.0)
        distance = distance_between(x, y, load.destination_x, load.destination_y)
        if distance > radius:
            raise RefusalError(
                RefusalReason.WRONG_LOCATION,
                f"{distance:.1f} from {load.destination_label}; deliver within {radius:g}",
            )

    def _sync_compliance(self, mission: Mission, bol: BillOfLading) -> None:
        bol.seal_status = mission.seal_status
        bol.seal_number = mission.seal_number
        bol.weigh_station_stamped = mission.weigh_station_stamped
        bol.manifest_verified = mission.manifest_verified
        bol.pre_trip_completed = mission.pre_trip_completed
        bol.welfare_rating = mission.welfare_rating

    def _connected(self, driver_id: str) -> bool:
        driver = self.db.get(Driver, driver_id)
        return driver is not None and driver.disconnected_at is None

    def _close(
        self,
        mission: Mission,
        status: BolStatus,
        now: datetime,
        payout: Optional[PayoutResult] = None,
        amount: int = 0,
        load_status: LoadStatus = LoadStatus.COMPLETED,
        reputation_change: Optional[str] = None,
        event_data: Optional[Dict[str, Any]] = None,
    ) -> BillOfLading:
        """
        Finalize the BOL, resolve the deposit, free the load and tear down the
        mission in one commit. Then pay out and refund.
        """
        bol = mission.bol
        driver_id = mission.driver_id
        deposit = bol.deposit
        delivered = status == BolStatus.DELIVERED

        try:
            self.ledger.finalize(
                bol, status, now,
                final_payout=amount,
                breakdown=payout.breakdown_json() if payout is not None else None,
                event_data=event_data,
            )
        except BolAlreadyFinalizedError:
            raise self._duplicate(f"BOL {bol.bol_number} is already closed")

        if deposit is not None:
            if delivered:
                self.ledger.return_deposit(deposit, now)
            else:
                self.ledger.forfeit_deposit(deposit, now)

        self.db.execute(
            update(Load)
            .where(Load.id == mission.load_id, Load.status == LoadStatus.ACCEPTED)
            .values(status=load_status, reserved_by=None, reserved_until=None)
            .execution_options(synchronize_session="fetch")
        )

        driver = ensure_driver(self.db, driver_id)
        if status in (BolStatus.DELIVERED, BolStatus.PARTIAL):
            driver.total_loads_completed = (driver.total_loads_completed or 0) + 1
            driver.total_distance_miles = (driver.total_distance_miles or 0) + int(bol.distance_miles or 0)
            driver.total_earnings = (driver.total_earnings or 0) + amount
        elif status == BolStatus.STOLEN:
            driver.total_loads_stolen = (driver.total_loads_stolen or 0) + 1
        else:
            driver.total_loads_failed = (driver.total_loads_failed or 0) + 1

        if reputation_change:
            self.reputation.apply(driver_id, reputation_change, bol.tier)
        if delivered:
            self.reputation.record_delivery(mission, bol.shipper_id, bol.tier)

        bol_id = bol.id
        self.db.delete(mission)
        self.db.commit()
        self.ctx.index.discard(bol_id)
        self.db.refresh(bol)

        if amount > 0:
            if not self.ctx.wallet.credit(driver_id, amount, f"Payout for {bol.bol_number}"):
                logger.error("payout of %d to %s for %s failed", amount, driver_id, bol.bol_number)
        if delivered and deposit is not None and deposit.amount > 0:
            if not self.ctx.wallet.credit(driver_id, deposit.amount, f"Deposit refund for {bol.bol_number}"):
                logger.error("deposit refund of %d to %s for %s failed", deposit.amount, driver_id, bol.bol_number)
        if delivered:
            try:
                self.ctx.inventory.revoke(driver_id, bol_artifact(bol.bol_number))
            except Exception:
                logger.warning("could not collect paper BOL %s from %s", bol.bol_number, driver_id, exc_info=True)
            self.ctx.notify(driver_id, "Load Delivered", f"BOL {bol.bol_number}: ${amount} paid, deposit returned")

        logger.info("BOL %s closed as %s for %s (payout %d)", bol.bol_number, status.value, driver_id, amount)
        return bol
