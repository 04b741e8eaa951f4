"""
BOL audit trail - the permanent, append-only history of every mission.

Rows are written through the ledger only. The ORM refuses to update or
delete them.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, JSON, event
from app.database import Base


class BolEvent(Base):
    """
    Immutable audit event for one BOL.

    Invariants:
    - Once written, never edited or deleted
    - Append-only
    - event_type is one of BolEventType.ALL
    """
    __tablename__ = "bol_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    bol_id = Column(Integer, nullable=False, index=True)
    bol_number = Column(String, nullable=True)
    driver_id = Column(String, nullable=True)  # Nullable for system events
    event_type = Column(String, nullable=False, index=True)
    data_json = Column(JSON, nullable=True)
    occurred_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)


class BolEventType:
    """Closed vocabulary of BOL event types."""
    # Acceptance and departure
    LOAD_ACCEPTED = "load_accepted"
    PRE_TRIP_COMPLETED = "pre_trip_completed"
    MANIFEST_VERIFIED = "manifest_verified"
    DEPARTED_ORIGIN = "departed_origin"

    # Cargo condition
    SEAL_APPLIED = "seal_applied"
    SEAL_BROKEN = "seal_broken"
    CARGO_SECURED = "cargo_secured"
    INTEGRITY_EVENT = "integrity_event"
    INTEGRITY_REPAIRED = "integrity_repaired"
    TEMP_EXCURSION = "temp_excursion"
    WELFARE_EVENT = "welfare_event"

    # Route
    WEIGH_STATION_STAMPED = "weigh_station_stamped"
    STOP_COMPLETED = "stop_completed"
    ARRIVED_AT_STOP = "arrived_at_stop"
    ARRIVED_AT_DESTINATION = "arrived_at_destination"
    WINDOW_EXTENDED = "window_extended"

    # Terminal outcomes
    LOAD_DELIVERED = "load_delivered"
    LOAD_REJECTED = "load_rejected"
    LOAD_ABANDONED = "load_abandoned"
    LOAD_STOLEN = "load_stolen"
    LOAD_PARTIAL = "load_partial"
    WINDOW_EXPIRED = "window_expired"

    ALL = frozenset({
        LOAD_ACCEPTED, PRE_TRIP_COMPLETED, MANIFEST_VERIFIED, DEPARTED_ORIGIN,
        SEAL_APPLIED, SEAL_BROKEN, CARGO_SECURED, INTEGRITY_EVENT,
        INTEGRITY_REPAIRED, TEMP_EXCURSION, WELFARE_EVENT,
        WEIGH_STATION_STAMPED, STOP_COMPLETED, ARRIVED_AT_STOP,
        ARRIVED_AT_DESTINATION, WINDOW_EXTENDED,
        LOAD_DELIVERED, LOAD_REJECTED, LOAD_ABANDONED, LOAD_STOLEN,
        LOAD_PARTIAL, WINDOW_EXPIRED,
    })


@event.listens_for(BolEvent, "before_update")
def _refuse_update(mapper, connection, target):
    raise ValueError(f"IMMUTABILITY VIOLATION: bol_events row {target.id} cannot be updated")


@event.listens_for(BolEvent, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise ValueError(f"IMMUTABILITY VIOLATION: bol_events row {target.id} cannot be deleted")
