"""Domain models - loads, drivers, active missions, bills of lading and deposits."""
from datetime import datetime
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from app.database import Base
from app.models.enums import (
    BolStatus,
    DepositStatus,
    LoadStatus,
    MissionStatus,
    OwnershipMode,
    ReputationTier,
    SealStatus,
    ShipperStanding,
    TempCompliance,
)


class Driver(Base):
    """
    A driver's standing with the freight service.

    Created on first contact. Holds reputation, the consecutive reservation
    release counter and the disconnect stamp used for reconnect recovery.
    """
    __tablename__ = "drivers"

    id = Column(String, primary_key=True)  # Resolved identity
    reputation_score = Column(Integer, nullable=False, default=500)
    reputation_tier = Column(SQLEnum(ReputationTier), nullable=False, default=ReputationTier.DEVELOPING)
    suspended_until = Column(DateTime, nullable=True)

    reservation_releases = Column(Integer, nullable=False, default=0)
    reservation_cooldown_until = Column(DateTime, nullable=True)

    # Set while the driver's session is gone; cleared on reconnect
    disconnected_at = Column(DateTime, nullable=True, index=True)
    last_seen_at = Column(DateTime, nullable=True)

    total_loads_completed = Column(Integer, nullable=False, default=0)
    total_loads_failed = Column(Integer, nullable=False, default=0)
    total_loads_stolen = Column(Integer, nullable=False, default=0)
    total_distance_miles = Column(Integer, nullable=False, default=0)
    total_earnings = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Load(Base):
    """
    A job posted on the board.

    Posted by board generation (external); this core only moves it through
    status transitions, and only with conditional writes.

    Invariants:
    - At most one reservation holder at a time (reserved_by set only while RESERVED)
    """
    __tablename__ = "loads"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    bol_number = Column(String, nullable=False, unique=True)
    tier = Column(Integer, nullable=False)

    # Cargo descriptor
    cargo_type = Column(String, nullable=False)
    cargo_description = Column(String, nullable=True)
    weight_lbs = Column(Integer, nullable=False, default=0)
    requires_seal = Column(Boolean, nullable=False, default=True)
    requires_securing = Column(Boolean, nullable=False, default=False)
    temp_controlled = Column(Boolean, nullable=False, default=False)
    livestock = Column(Boolean, nullable=False, default=False)

    shipper_id = Column(String, nullable=False)
    shipper_name = Column(String, nullable=True)

    origin_label = Column(String, nullable=False)
    origin_x = Column(Numeric(10, 2), nullable=False, default=0)
    origin_y = Column(Numeric(10, 2), nullable=False, default=0)
    destination_label = Column(String, nullable=False)
    destination_x = Column(Numeric(10, 2), nullable=False, default=0)
    destination_y = Column(Numeric(10, 2), nullable=False, default=0)
    distance_miles = Column(Numeric(8, 2), nullable=False)
    stop_count = Column(Integer, nullable=False, default=1)  # Includes the final destination

    # Requirement set
    required_license = Column(String, nullable=True)
    required_endorsement = Column(String, nullable=True)
    required_certification = Column(String, nullable=True)

    deposit_amount = Column(Integer, nullable=False, default=300)
    surge_percentage = Column(Integer, nullable=False, default=0)

    status = Column(SQLEnum(LoadStatus), nullable=False, default=LoadStatus.AVAILABLE, index=True)
    reserved_by = Column(String, nullable=True, index=True)
    reserved_until = Column(DateTime, nullable=True)

    posted_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=True, index=True)

    @property
    def is_multi_stop(self) -> bool:
        return (self.stop_count or 1) > 1


class Mission(Base):
    """
    One driver's single in-progress job (table: active_missions).

    Invariants:
    - At most one row per driver (unique driver_id; the store enforces it)
    - Only live while BOL, Mission and Deposit all exist
    - cargo_integrity never rises except through repair
    - Deleted at any terminal outcome; the BOL keeps the permanent record
    """
    __tablename__ = "active_missions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    load_id = Column(Integer, ForeignKey("loads.id"), nullable=False, index=True)
    bol_id = Column(Integer, ForeignKey("bols.id"), nullable=False, unique=True)
    driver_id = Column(String, nullable=False, unique=True)

    vehicle_plate = Column(String, nullable=True)
    vehicle_model = Column(String, nullable=True)
    ownership = Column(SQLEnum(OwnershipMode), nullable=False, default=OwnershipMode.RENTAL)

    status = Column(SQLEnum(MissionStatus), nullable=False, default=MissionStatus.AT_ORIGIN)
    current_stop = Column(Integer, nullable=False, default=1)

    cargo_integrity = Column(Integer, nullable=False, default=100)
    cargo_secured = Column(Boolean, nullable=False, default=False)
    seal_status = Column(SQLEnum(SealStatus), nullable=False, default=SealStatus.NOT_APPLIED)
    seal_number = Column(String, nullable=True)
    seal_broken_at = Column(DateTime, nullable=True)

    temp_monitoring = Column(Boolean, nullable=False, default=False)
    excursion_minutes = Column(Integer, nullable=False, default=0)
    welfare_rating = Column(Integer, nullable=True)

    pre_trip_completed = Column(Boolean, nullable=False, default=False)
    manifest_verified = Column(Boolean, nullable=False, default=False)
    weigh_station_stamped = Column(Boolean, nullable=False, default=False)
    convoy_size = Column(Integer, nullable=True)

    accepted_at = Column(DateTime, nullable=False)
    departed_at = Column(DateTime, nullable=True)
    arrived_at = Column(DateTime, nullable=True)
    window_expires_at = Column(DateTime, nullable=False, index=True)
    window_extension_seconds = Column(Integer, nullable=False, default=0)

    deposit_amount = Column(Integer, nullable=False, default=0)

    load = relationship("Load")
    bol = relationship("BillOfLading")


class BillOfLading(Base):
    """
    Permanent record of one delivery attempt (table: bols).

    Invariants:
    - status leaves ACTIVE exactly once and never reverts
    - payout_breakdown is written once, by finalization
    """
    __tablename__ = "bols"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    bol_number = Column(String, nullable=False, unique=True)
    load_id = Column(Integer, ForeignKey("loads.id"), nullable=False)
    driver_id = Column(String, nullable=False, index=True)

    shipper_id = Column(String, nullable=False)
    shipper_name = Column(String, nullable=True)
    origin_label = Column(String, nullable=False)
    destination_label = Column(String, nullable=False)
    distance_miles = Column(Numeric(8, 2), nullable=False)
    cargo_type = Column(String, nullable=False)
    weight_lbs = Column(Integer, nullable=False, default=0)
    tier = Column(Integer, nullable=False)
    stop_count = Column(Integer, nullable=False, default=1)
    ownership = Column(SQLEnum(OwnershipMode), nullable=False, default=OwnershipMode.RENTAL)

    # Compliance flags
    license_class = Column(String, nullable=True)
    license_matched = Column(Boolean, nullable=False, default=True)
    seal_number = Column(String, nullable=True)
    seal_status = Column(SQLEnum(SealStatus), nullable=False, default=SealStatus.NOT_APPLIED)
    weigh_station_stamped = Column(Boolean, nullable=False, default=False)
    manifest_verified = Column(Boolean, nullable=False, default=False)
    pre_trip_completed = Column(Boolean, nullable=False, default=False)
    temp_compliance = Column(SQLEnum(TempCompliance), nullable=False, default=TempCompliance.NOT_REQUIRED)
    welfare_rating = Column(Integer, nullable=True)

    # Terminal fields
    status = Column(SQLEnum(BolStatus), nullable=False, default=BolStatus.ACTIVE, index=True)
    final_payout = Column(Integer, nullable=True)
    payout_breakdown = Column(JSON, nullable=True)
    deposit_returned = Column(Boolean, nullable=True)

    issued_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    departed_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    finalized_at = Column(DateTime, nullable=True)

    deposit = relationship("Deposit", back_populates="bol", uselist=False)


class Deposit(Base):
    """
    Collateral held against one accepted mission.

    Invariants:
    - Exactly one per BOL
    - HELD moves to RETURNED or FORFEITED once, irreversibly
    """
    __tablename__ = "deposits"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    bol_id = Column(Integer, ForeignKey("bols.id"), nullable=False, unique=True)
    driver_id = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    status = Column(SQLEnum(DepositStatus), nullable=False, default=DepositStatus.HELD)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    resolved_at = Column(DateTime, nullable=True)

    bol = relationship("BillOfLading", back_populates="deposit")


class ShipperReputation(Base):
    """A driver's accumulated standing with a single shipper."""
    __tablename__ = "shipper_reputation"
    __table_args__ = (UniqueConstraint("driver_id", "shipper_id", name="uq_shipper_rep_driver_shipper"),)

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    driver_id = Column(String, nullable=False, index=True)
    shipper_id = Column(String, nullable=False)
    points = Column(Integer, nullable=False, default=0)
    standing = Column(SQLEnum(ShipperStanding), nullable=False, default=ShipperStanding.UNKNOWN)
    deliveries_completed = Column(Integer, nullable=False, default=0)
    clean_streak = Column(Integer, nullable=False, default=0)
    last_delivery_at = Column(DateTime, nullable=True)
