"""
BOL and deposit ledger.

Terminal BOL status and deposit resolution are both written with conditional
updates, so a second attempt affects zero rows and is reported instead of
overwriting history. The audit trail only grows.

Nothing here moves money. Callers credit or refund through the wallet and use
the ledger to record what happened.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.models.audit import BolEvent, BolEventType
from app.models.domain import BillOfLading, Deposit
from app.models.enums import BolStatus, DepositStatus, TERMINAL_BOL_STATUSES
from app.services.errors import (
    BolAlreadyFinalizedError,
    DepositAlreadyResolvedError,
    UnknownEventTypeError,
)

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = {
    BolStatus.DELIVERED: BolEventType.LOAD_DELIVERED,
    BolStatus.REJECTED: BolEventType.LOAD_REJECTED,
    BolStatus.STOLEN: BolEventType.LOAD_STOLEN,
    BolStatus.ABANDONED: BolEventType.LOAD_ABANDONED,
    BolStatus.EXPIRED: BolEventType.WINDOW_EXPIRED,
    BolStatus.PARTIAL: BolEventType.LOAD_PARTIAL,
}


class BolLedger:
    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        bol: BillOfLading,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        occurred_at: Optional[datetime] = None,
        driver_id: Optional[str] = None,
    ) -> BolEvent:
        """Write one immutable audit row. Does not commit."""
        if event_type not in BolEventType.ALL:
            raise UnknownEventTypeError(f"'{event_type}' is not a BOL event type")
        row = BolEvent(
            bol_id=bol.id,
            bol_number=bol.bol_number,
            driver_id=driver_id or bol.driver_id,
            event_type=event_type,
            data_json=data or {},
            occurred_at=occurred_at or datetime.utcnow(),
        )
        self.db.add(row)
        self.db.flush()
        return row

    def finalize(
        self,
        bol: BillOfLading,
        status: BolStatus,
        now: datetime,
        final_payout: int = 0,
        breakdown: Optional[Dict[str, Any]] = None,
        event_data: Optional[Dict[str, Any]] = None,
    ) -> BolEvent:
        """
        Move an ACTIVE BOL to its terminal status, exactly once.

        Records the payout and breakdown, stamps the delivery time for
        delivered/rejected/partial outcomes, records whether the deposit
        comes back, and appends the terminal audit event. Does not commit.
        """
        if status not in TERMINAL_BOL_STATUSES:
            raise ValueError(f"{status} is not a terminal BOL status")

        values = {
            "status": status,
            "final_payout": final_payout,
            "payout_breakdown": breakdown,
            "deposit_returned": status == BolStatus.DELIVERED,
            "finalized_at": now,
        }
        if status in (BolStatus.DELIVERED, BolStatus.REJECTED, BolStatus.PARTIAL):
            values["delivered_at"] = now

        result = self.db.execute(
            update(BillOfLading)
            .where(BillOfLading.id == bol.id, BillOfLading.status == BolStatus.ACTIVE)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            raise BolAlreadyFinalizedError(f"BOL {bol.bol_number} is already {bol.status.value}")

        payload = {"final_status": status.value, "final_payout": final_payout}
        payload.update(event_data or {})
        event = self.append(bol, TERMINAL_EVENTS[status], payload, occurred_at=now)
        logger.info("BOL %s finalized as %s (payout %d)", bol.bol_number, status.value, final_payout)
        return event

    def return_deposit(self, deposit: Deposit, now: datetime) -> None:
        self._resolve_deposit(deposit, DepositStatus.RETURNED, now)

    def forfeit_deposit(self, deposit: Deposit, now: datetime) -> None:
        self._resolve_deposit(deposit, DepositStatus.FORFEITED, now)

    def _resolve_deposit(self, deposit: Deposit, status: DepositStatus, now: datetime) -> None:
        result = self.db.execute(
            update(Deposit)
            .where(Deposit.id == deposit.id, Deposit.status == DepositStatus.HELD)
            .values(status=status, resolved_at=now)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            raise DepositAlreadyResolvedError(f"deposit {deposit.id} is already {deposit.status.value}")

    def audit_trail(self, bol_id: int) -> List[BolEvent]:
        return self.db.query(BolEvent).filter(
            BolEvent.bol_id == bol_id
        ).order_by(BolEvent.occurred_at.asc(), BolEvent.id.asc()).all()
