"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field
from app.models.enums import (
    BolStatus,
    LoadStatus,
    MissionStatus,
    OwnershipMode,
    ReputationTier,
    SealStatus,
    TempCompliance,
)


# Load schemas
class LoadResponse(BaseModel):
    id: int
    bol_number: str
    tier: int
    cargo_type: str
    origin_label: str
    destination_label: str
    stop_count: int
    deposit_amount: int
    status: LoadStatus
    reserved_by: Optional[str]
    reserved_until: Optional[datetime]

    class Config:
        from_attributes = True


class ReleaseResponse(BaseModel):
    load_id: int
    releases: int
    cooldown_until: Optional[datetime] = None


class EquipmentIn(BaseModel):
    vehicle_plate: Optional[str] = None
    vehicle_model: Optional[str] = None
    ownership: OwnershipMode = OwnershipMode.RENTAL
    convoy_size: Optional[int] = Field(default=None, ge=1)


# Mission schemas
class MissionResponse(BaseModel):
    id: int
    bol_id: int
    load_id: int
    driver_id: str
    status: MissionStatus
    current_stop: int
    cargo_integrity: int
    cargo_secured: bool
    seal_status: SealStatus
    seal_number: Optional[str]
    excursion_minutes: int
    welfare_rating: Optional[int]
    pre_trip_completed: bool
    manifest_verified: bool
    weigh_station_stamped: bool
    accepted_at: datetime
    departed_at: Optional[datetime]
    window_expires_at: datetime
    window_extension_seconds: int
    deposit_amount: int

    class Config:
        from_attributes = True


class PositionIn(BaseModel):
    x: float
    y: float


class AbandonIn(BaseModel):
    reason: Optional[str] = None


# Compliance signal schemas
class WeighStationIn(BaseModel):
    station: Optional[str] = None


class SealBreakIn(BaseModel):
    reason: Optional[str] = None


class IntegrityEventIn(BaseModel):
    cause: str = Field(..., min_length=1)
    loss: int


class TemperatureExcursionIn(BaseModel):
    minutes: int


class WelfareReportIn(BaseModel):
    rating: int


class RepairIn(BaseModel):
    points: int


# BOL schemas
class BolResponse(BaseModel):
    id: int
    bol_number: str
    load_id: int
    driver_id: str
    shipper_name: Optional[str]
    origin_label: str
    destination_label: str
    cargo_type: str
    tier: int
    status: BolStatus
    seal_status: SealStatus
    temp_compliance: TempCompliance
    license_matched: bool
    final_payout: Optional[int]
    payout_breakdown: Optional[dict]
    deposit_returned: Optional[bool]
    issued_at: datetime
    delivered_at: Optional[datetime]

    class Config:
        from_attributes = True


class BolEventResponse(BaseModel):
    id: int
    bol_id: int
    event_type: str
    driver_id: Optional[str]
    data_json: Optional[dict]
    occurred_at: datetime

    class Config:
        from_attributes = True


# Driver schemas
class DriverResponse(BaseModel):
    id: str
    reputation_score: int
    reputation_tier: ReputationTier
    suspended_until: Optional[datetime]
    reservation_releases: int
    reservation_cooldown_until: Optional[datetime]
    total_loads_completed: int
    total_loads_failed: int
    total_loads_stolen: int
    total_distance_miles: int
    total_earnings: int

    class Config:
        from_attributes = True


class ReconnectResponse(BaseModel):
    driver_id: str
    extended_seconds: int


# Refusal response
class RefusalResponse(BaseModel):
    reason: str
    message: str
