"""Pytest configuration and shared fixtures."""
import itertools
import sqlite3
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import EconomySettings, MissionSettings
from app.database import Base
from app.models.domain import Driver, Load
from app.models.enums import LoadStatus
from app.models import audit  # noqa: F401  registers bol_events
from app.services.acceptance import AcceptanceService, Equipment
from app.services.context import ServiceContext
from app.services.gateways import (
    InMemoryInventory,
    InMemoryWallet,
    RecordingNotificationSink,
    StaticCredentialService,
)
from app.services.mission_index import MissionIndex
from app.services.rate_limit import RateLimiter
from app.services.state_machine import MissionStateMachine

sqlite3.register_adapter(Decimal, float)

START = datetime(2026, 3, 10, 12, 0, 0)
STARTING_BALANCE = 10000


class FakeClock:
    """A clock the tests move by hand."""

    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def engine():
    # One shared in-memory database, usable from the TestClient's worker thread
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    """Create a fresh in-memory database for each test."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def wallet():
    return InMemoryWallet({"driver_1": STARTING_BALANCE, "driver_2": STARTING_BALANCE, "broke": 50})


@pytest.fixture
def credentials():
    service = StaticCredentialService()
    service.grant("driver_1", "insurance", "class_a")
    service.grant("driver_2", "insurance", "class_a")
    return service


@pytest.fixture
def notifications():
    return RecordingNotificationSink()


@pytest.fixture
def inventory():
    return InMemoryInventory()


@pytest.fixture
def ctx(wallet, credentials, notifications, inventory, clock):
    """Service context with fakes, a hand-moved clock and no debounce."""
    return ServiceContext(
        wallet=wallet,
        credentials=credentials,
        notifications=notifications,
        inventory=inventory,
        mission_settings=MissionSettings(),
        economy=EconomySettings(),
        index=MissionIndex(),
        rate_limiter=RateLimiter(0),
        clock=clock,
    )


@pytest.fixture
def make_load(db_session):
    """Factory for board loads. Defaults: tier 1 general freight, 10 miles, sealed."""
    numbers = itertools.count(1)

    def _make(**overrides):
        n = next(numbers)
        values = dict(
            bol_number=f"BOL-2026-{n:05d}",
            tier=1,
            cargo_type="general_freight_full",
            weight_lbs=8000,
            requires_seal=True,
            requires_securing=False,
            temp_controlled=False,
            livestock=False,
            shipper_id="shp_harbor",
            shipper_name="Harbor Freight Co",
            origin_label="Port Terminal",
            origin_x=Decimal("0"),
            origin_y=Decimal("0"),
            destination_label="Sandy Depot",
            destination_x=Decimal("100"),
            destination_y=Decimal("0"),
            distance_miles=Decimal("10"),
            stop_count=1,
            deposit_amount=300,
            status=LoadStatus.AVAILABLE,
        )
        values.update(overrides)
        load = Load(**values)
        db_session.add(load)
        db_session.commit()
        db_session.refresh(load)
        return load

    return _make


@pytest.fixture
def make_driver(db_session):
    def _make(driver_id: str, **overrides):
        values = dict(id=driver_id, reputation_score=500)
        values.update(overrides)
        driver = Driver(**values)
        db_session.add(driver)
        db_session.commit()
        return driver

    return _make


@pytest.fixture
def machine(db_session, ctx):
    return MissionStateMachine(db_session, ctx)


@pytest.fixture
def accept(db_session, ctx):
    """Accept a load for a driver through the real acceptance path."""
    def _accept(load, driver_id="driver_1", **equipment):
        return AcceptanceService(db_session, ctx).accept(load.id, driver_id, Equipment(**equipment))

    return _accept


@pytest.fixture
def mission(make_load, accept):
    """A live mission for driver_1 on a default load."""
    return accept(make_load())