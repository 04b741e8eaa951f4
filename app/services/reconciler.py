"""
Maintenance reconciler.

Sweeps the store for state that time has made stale: reservation holds past
their expiry, board postings past their deadline, missions whose driver never
came back, missions past their delivery window, and suspensions already
served. Each sweep reads the store fresh and only touches rows that still
qualify, so a tick can be re-run after a crash without doing anything twice.

Scheduled jobs run in worker threads; the event loop never waits on a sweep.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Callable, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.models.domain import Driver, Load, Mission
from app.models.enums import LoadStatus
from app.services.context import ServiceContext
from app.services.errors import RefusalError
from app.services.reputation import ReputationService
from app.services.state_machine import MissionStateMachine

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    reservations_released: int = 0
    postings_expired: int = 0
    orphans_resolved: int = 0
    windows_expired: int = 0
    suspensions_lifted: int = 0
    missions_indexed: Optional[int] = None

    def total(self) -> int:
        return (
            self.reservations_released
            + self.postings_expired
            + self.orphans_resolved
            + self.windows_expired
            + self.suspensions_lifted
        )


class MaintenanceReconciler:
    def __init__(self, db: Session, ctx: ServiceContext):
        self.db = db
        self.ctx = ctx
        self.machine = MissionStateMachine(db, ctx)
        self.reputation = ReputationService(db, ctx)

    def expire_reservations(self) -> int:
        """Return reservations past their hold to the board."""
        result = self.db.execute(
            update(Load)
            .where(Load.status == LoadStatus.RESERVED, Load.reserved_until <= self.ctx.now())
            .values(status=LoadStatus.AVAILABLE, reserved_by=None, reserved_until=None)
            .execution_options(synchronize_session="fetch")
        )
        self.db.commit()
        return result.rowcount

    def expire_board_postings(self) -> int:
        """Take unclaimed postings past their deadline off the board."""
        result = self.db.execute(
            update(Load)
            .where(
                Load.status == LoadStatus.AVAILABLE,
                Load.expires_at.isnot(None),
                Load.expires_at <= self.ctx.now(),
            )
            .values(status=LoadStatus.EXPIRED)
            .execution_options(synchronize_session="fetch")
        )
        self.db.commit()
        return result.rowcount

    def resolve_orphans(self) -> int:
        """Abandon missions whose driver has been gone longer than the orphan timeout."""
        cutoff = self.ctx.now() - timedelta(seconds=self.ctx.mission_settings.ORPHAN_TIMEOUT_SECONDS)
        bol_ids = [
            bol_id for (bol_id,) in self.db.query(Mission.bol_id)
            .join(Driver, Driver.id == Mission.driver_id)
            .filter(Driver.disconnected_at.isnot(None), Driver.disconnected_at <= cutoff)
            .all()
        ]
        return self._resolve_each(bol_ids, self.machine.resolve_orphan, "orphan")

    def expire_windows(self) -> int:
        """Expire missions whose delivery window has closed."""
        bol_ids = [
            bol_id for (bol_id,) in self.db.query(Mission.bol_id)
            .filter(Mission.window_expires_at <= self.ctx.now())
            .all()
        ]
        return self._resolve_each(bol_ids, self.machine.expire, "window")

    def lift_suspensions(self) -> int:
        """Restore drivers whose suspension has been served to the tier their score earns."""
        now = self.ctx.now()
        drivers = (
            self.db.query(Driver)
            .filter(Driver.suspended_until.isnot(None), Driver.suspended_until <= now)
            .all()
        )
        for driver in drivers:
            self.reputation.lift_expired_suspension(driver, now)
            logger.info("suspension lifted for %s; tier now %s", driver.id, driver.reputation_tier.value)
        self.db.commit()
        return len(drivers)

    def rehydrate(self) -> int:
        """Rebuild the mission index from active_missions."""
        count = self.ctx.index.rebuild(self.db)
        logger.info("mission index rebuilt with %d live missions", count)
        return count

    def run_fast(self) -> ReconcileReport:
        """The frequent tick: reservation holds and delivery windows."""
        return ReconcileReport(
            reservations_released=self.expire_reservations(),
            windows_expired=self.expire_windows(),
        )

    def run_all(self, rehydrate: bool = False) -> ReconcileReport:
        report = ReconcileReport()
        if rehydrate:
            report.missions_indexed = self.rehydrate()
        report.reservations_released = self.expire_reservations()
        report.postings_expired = self.expire_board_postings()
        report.orphans_resolved = self.resolve_orphans()
        report.windows_expired = self.expire_windows()
        report.suspensions_lifted = self.lift_suspensions()
        if report.total():
            logger.info("reconcile: %s", asdict(report))
        return report

    def _resolve_each(self, bol_ids: List[int], resolve: Callable[[int], object], kind: str) -> int:
        resolved = 0
        for bol_id in bol_ids:
            try:
                resolve(bol_id)
                resolved += 1
            except RefusalError as e:
                # Closed by the driver or another tick since the query
                logger.debug("%s sweep skipped BOL %s: %s", kind, bol_id, e.reason.value)
        return resolved


def run_reconcile(session_factory: Callable[[], Session], ctx: ServiceContext, full: bool = True) -> ReconcileReport:
    """One tick in its own session."""
    db = session_factory()
    try:
        reconciler = MaintenanceReconciler(db, ctx)
        return reconciler.run_all() if full else reconciler.run_fast()
    finally:
        db.close()


class Scheduler:
    """
    Runs named jobs on fixed intervals as asyncio tasks.

    Each job first runs one `interval` after start, then every `interval`
    seconds; the startup pass is run explicitly by the caller. A failing
    tick is logged and the job keeps its schedule.
    """

    def __init__(self):
        self._jobs = []
        self._tasks: List[asyncio.Task] = []

    def every(self, interval: float, name: str, job: Callable[[], object]) -> None:
        self._jobs.append((interval, name, job))

    def start(self) -> None:
        for interval, name, job in self._jobs:
            self._tasks.append(asyncio.create_task(self._loop(interval, name, job), name=name))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def _loop(self, interval: float, name: str, job: Callable[[], object]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(job)
            except Exception:
                logger.exception("scheduled job %s failed", name)
