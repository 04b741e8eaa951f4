"""API routes for the freight mission workflow."""
from contextlib import contextmanager
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.api.dependencies import current_driver, get_context, require_platform_key
from app.api.schemas import (
    AbandonIn,
    BolEventResponse,
    BolResponse,
    DriverResponse,
    EquipmentIn,
    IntegrityEventIn,
    LoadResponse,
    MissionResponse,
    PositionIn,
    ReconnectResponse,
    RefusalResponse,
    ReleaseResponse,
    RepairIn,
    SealBreakIn,
    TemperatureExcursionIn,
    WeighStationIn,
    WelfareReportIn,
)
from app.database import get_db
from app.models.domain import BillOfLading
from app.models.enums import RefusalReason
from app.services.acceptance import AcceptanceService, Equipment
from app.services.context import ServiceContext
from app.services.errors import RefusalError
from app.services.ledger import BolLedger
from app.services.reputation import ensure_driver
from app.services.reservations import ReservationService
from app.services.state_machine import MissionStateMachine

router = APIRouter()

REFUSAL_STATUS = {
    RefusalReason.UNAVAILABLE: status.HTTP_409_CONFLICT,
    RefusalReason.DUPLICATE_SIGNAL: status.HTTP_409_CONFLICT,
    RefusalReason.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    RefusalReason.LOAD_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    RefusalReason.MISSION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
}

REFUSALS = {
    403: {"model": RefusalResponse, "description": "Refusal - the command is not allowed"},
    404: {"model": RefusalResponse, "description": "Load or mission not found"},
    409: {"model": RefusalResponse, "description": "Lost a race or duplicate signal"},
    429: {"model": RefusalResponse, "description": "Sent too quickly"},
}


@contextmanager
def refusals():
    """Turn a RefusalError into an HTTP error carrying its reason code."""
    try:
        yield
    except RefusalError as e:
        raise HTTPException(
            status_code=REFUSAL_STATUS.get(e.reason, status.HTTP_403_FORBIDDEN),
            detail={"reason": e.reason.value, "message": e.message},
        )


# Board endpoints
@router.post("/loads/{load_id}/reserve", response_model=LoadResponse, responses=REFUSALS)
def reserve_load(
    load_id: int,
    driver_id: str = Depends(current_driver),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    """
    Place a short exclusive hold on an available load.

    WILL REFUSE if the load is already held, the driver is on a mission, or
    the driver is in a release cooldown for this tier.
    """
    with refusals():
        return ReservationService(db, ctx).reserve(load_id, driver_id)


@router.delete("/loads/{load_id}/reserve", response_model=ReleaseResponse, responses=REFUSALS)
def cancel_reservation(
    load_id: int,
    driver_id: str = Depends(current_driver),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    """Release the driver's hold. Repeated releases lead to a cooldown."""
    with refusals():
        result = ReservationService(db, ctx).cancel_reservation(load_id, driver_id)
    return ReleaseResponse(
        load_id=result.load_id,
        releases=result.releases,
        cooldown_until=result.cooldown_until,
    )


@router.post("/loads/{load_id}/accept", response_model=MissionResponse, status_code=status.HTTP_201_CREATED, responses=REFUSALS)
def accept_load(
    load_id: int,
    equipment: EquipmentIn,
    driver_id: str = Depends(current_driver),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    """
    Accept a reserved (or still available) load and start the mission.

    Debits the deposit and creates the BOL, mission and deposit together.
    """
    with refusals():
        return AcceptanceService(db, ctx).accept(load_id, driver_id, Equipment(
            vehicle_plate=equipment.vehicle_plate,
            vehicle_model=equipment.vehicle_model,
            ownership=equipment.ownership,
            convoy_size=equipment.convoy_size,
        ))


# Mission transitions
@router.post("/bols/{bol_id}/depart", response_model=MissionResponse, responses=REFUSALS)
def depart(
    bol_id: int,
    driver_id: str = Depends(current_driver),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    with refusals():
        return MissionStateMachine(db, ctx).depart(bol_id, driver_id)


@router.post("/bols/{bol_id}/stops/{stop}", response_model=MissionResponse, responses=REFUSALS)
def complete_stop(
    bol_id: int,
    stop: int,
    driver_id: str = Depends(current_driver),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    with refusals():
        return MissionStateMachine(db, ctx).complete_stop(bol_id, driver_id, stop)


@router.post("/bols/{bol_id}/arrive", response_model=MissionResponse, responses=REFUSALS)
def arrive(
    bol_id: int,
    position: PositionIn,
    driver_id: str = Depends(current_driver),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    with refusals():
        return MissionStateMachine(db, ctx).arrive(bol_id, driver_id, position.x, position.y)


@router.post("/bols/{bol_id}/deliver", response_model=BolResponse, responses=REFUSALS)
def deliver(
    bol_id: int,
    position: PositionIn,
    driver_id: str = Depends(current_driver),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    """
    Deliver at the destination. The response is the finalized BOL with the
    payout breakdown; a rejected load comes back with status "rejected".
    """
    with refusals():
        return MissionStateMachine(db, ctx).deliver(bol_id, driver_id, position.x, position.y)


@router.post("/bols/{bol_id}/abandon", response_model=BolResponse, responses=REFUSALS)
def abandon(
    bol_id: int,
    body: AbandonIn,
    driver_id: str = Depends(current_driver),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    with refusals():
        return MissionStateMachine(db, ctx).abandon(bol_id, driver_id, body.reason)


# Compliance signals
@router.post("/bols/{bol_id}/signals/pre-trip", response_model=MissionResponse, responses=REFUSALS)
def pre_trip(
    bol_id: int,
    driver_id: str = Depends(current_driver),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    with refusals():
        return MissionStateMachine(db, ctx).pre_trip_completed(bol_id, driver_id)


@router.post("/bols/{bol_id}/signals/manifest", response_model=MissionResponse, responses=REFUSALS)
def manifest_verified(
    bol_id: int,
    driver_id: str = Depends(current_driver),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    with refusals():
        return MissionStateMachine(db, ctx).manifest_verified(bol_id, driver_id)


@router.post("/bols/{bol_id}/signals/weigh-station", response_model=MissionResponse, responses=REFUSALS)
def weigh_station(
    bol_id: int,
    body: WeighStationIn,
    driver_id: str = Depends(current_driver),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    with refusals():
        return MissionStateMachine(db, ctx).weigh_station_stamped(bol_id, driver_id, body.station)


@router.post("/bols/{bol_id}/signals/cargo-secured", response_model=MissionResponse, responses=REFUSALS)
def cargo_secured(
    bol_id: int,
    driver_id: str = Depends(current_driver),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    with refusals():
        return MissionStateMachine(db, ctx).cargo_secured(bol_id, driver_id)


@router.post("/bols/{bol_id}/signals/seal-break", response_model=MissionResponse, responses=REFUSALS)
def seal_break(
    bol_id: int,
    body: SealBreakIn,
    driver_id: str = Depends(current_driver),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    with refusals():
        return MissionStateMachine(db, ctx).seal_break(bol_id, driver_id, body.reason)


@router.post("/bols/{bol_id}/signals/integrity", response_model=MissionResponse, responses=REFUSALS)
def integrity_event(
    bol_id: int,
    body: IntegrityEventIn,
    driver_id: str = Depends(current_driver),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    with refusals():
        return MissionStateMachine(db, ctx).integrity_event(bol_id, driver_id, body.cause, body.loss)


@router.post("/bols/{bol_id}/signals/temperature", response_model=MissionResponse, responses=REFUSALS)
def temperature_excursion(
    bol_id: int,
    body: TemperatureExcursionIn,
    driver_id: str = Depends(current_driver),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    with refusals():
        return MissionStateMachine(db, ctx).temperature_excursion(bol_id, driver_id, body.minutes)


@router.post("/bols/{bol_id}/signals/welfare", response_model=MissionResponse, responses=REFUSALS)
def welfare_report(
    bol_id: int,
    body: WelfareReportIn,
    driver_id: str = Depends(current_driver),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    with refusals():
        return MissionStateMachine(db, ctx).welfare_report(bol_id, driver_id, body.rating)


@router.post("/bols/{bol_id}/signals/repair", response_model=MissionResponse, responses=REFUSALS)
def repair(
    bol_id: int,
    body: RepairIn,
    driver_id: str = Depends(current_driver),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    with refusals():
        return MissionStateMachine(db, ctx).repair(bol_id, driver_id, body.points)


# BOL records
def _own_bol(db: Session, bol_id: int, driver_id: str) -> BillOfLading:
    bol = db.get(BillOfLading, bol_id)
    if not bol:
        raise HTTPException(status_code=404, detail="BOL not found")
    if bol.driver_id != driver_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"reason": RefusalReason.NOT_MISSION_OWNER.value, "message": "This is not your BOL"},
        )
    return bol


@router.get("/bols/{bol_id}", response_model=BolResponse)
def get_bol(bol_id: int, driver_id: str = Depends(current_driver), db: Session = Depends(get_db)):
    return _own_bol(db, bol_id, driver_id)


@router.get("/bols/{bol_id}/events", response_model=List[BolEventResponse])
def get_bol_events(bol_id: int, driver_id: str = Depends(current_driver), db: Session = Depends(get_db)):
    """The BOL's audit trail, oldest first."""
    bol = _own_bol(db, bol_id, driver_id)
    return BolLedger(db).audit_trail(bol.id)


# Driver record
@router.get("/drivers/me", response_model=DriverResponse)
def get_me(driver_id: str = Depends(current_driver), db: Session = Depends(get_db)):
    driver = ensure_driver(db, driver_id)
    db.commit()
    return driver


# Connection events, sent by the platform rather than the driver
@router.post(
    "/platform/drivers/{driver_id}/disconnect",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_platform_key)],
)
def driver_disconnected(
    driver_id: str,
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    MissionStateMachine(db, ctx).driver_disconnected(driver_id)


@router.post(
    "/platform/drivers/{driver_id}/reconnect",
    response_model=ReconnectResponse,
    dependencies=[Depends(require_platform_key)],
)
def driver_reconnected(
    driver_id: str,
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    """End an outage. A live mission's window is extended by the time away, once."""
    extended = MissionStateMachine(db, ctx).driver_reconnected(driver_id)
    return ReconnectResponse(driver_id=driver_id, extended_seconds=extended)
