"""
Driver presence.

Outages are opened and closed by the platform's connection events, never by
the driver. A command from the driver proves they are connected, so it closes
any open outage on the spot and extends nothing.
"""
import logging
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.models.domain import Driver

logger = logging.getLogger(__name__)


def mark_active(db: Session, driver_id: str, now: datetime) -> bool:
    """Close an open outage without a window extension. Returns True if one was open."""
    result = db.execute(
        update(Driver)
        .where(Driver.id == driver_id, Driver.disconnected_at.isnot(None))
        .values(disconnected_at=None, last_seen_at=now)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        return False
    db.commit()
    logger.info("driver %s sent a command during an outage; outage closed with no extension", driver_id)
    return True
