"""Runtime settings: database, gateways, mission timing and the payout economy tables.

Every value can be overridden from the environment (or a .env file). The
services take these objects as constructor arguments so tests can swap in
their own tables.
"""
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    database_url: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def resolved_database_url(self) -> str:
        url = self.database_url or "sqlite:///./freight.db"
        # Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql://", 1)
        return url


class MissionSettings(BaseSettings):
    """Timing and limits for reservations, missions and the reconciler."""

    RESERVATION_HOLD_SECONDS: int = 180
    RESERVATION_WARNING_RELEASES: int = 3
    RESERVATION_MAX_RELEASES: int = 5
    RESERVATION_COOLDOWN_SECONDS: int = 600
    RESERVATION_COOLDOWN_MIN_TIER: int = 2

    ORPHAN_TIMEOUT_SECONDS: int = 600
    RECONCILE_INTERVAL_SECONDS: int = 900
    RECONCILE_FAST_INTERVAL_SECONDS: int = 60

    RATE_LIMIT_SECONDS: float = 2.0

    MAX_INTEGRITY_LOSS_PER_EVENT: int = 25
    EXCURSION_MINOR_MINUTES: int = 5
    EXCURSION_SIGNIFICANT_MINUTES: int = 15

    SUSPENSION_HOURS: int = 24
    SHIPPER_SEAL_BREAK_PENALTY: int = 20

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


class EconomySettings(BaseSettings):
    """All payout rates, brackets and tier tables.

    Brackets are ordered lists; the first matching row wins.
    """

    BASE_RATES: Dict[int, Decimal] = {
        0: Decimal("25"),
        1: Decimal("42"),
        2: Decimal("65"),
        3: Decimal("95"),
    }
    DEFAULT_BASE_RATE: Decimal = Decimal("25")

    CARGO_RATE_MODIFIERS: Dict[str, Decimal] = {
        "light_general_freight": Decimal("1.00"),
        "food_beverage_small": Decimal("1.00"),
        "retail_small": Decimal("1.00"),
        "courier": Decimal("1.10"),
        "general_freight_full": Decimal("1.00"),
        "building_materials": Decimal("1.05"),
        "food_beverage_full": Decimal("1.00"),
        "food_beverage_reefer": Decimal("1.10"),
        "retail_full": Decimal("1.00"),
        "cold_chain": Decimal("1.10"),
        "pharmaceutical": Decimal("1.55"),
        "pharmaceutical_biologic": Decimal("1.70"),
        "fuel_tanker": Decimal("1.12"),
        "liquid_bulk_food": Decimal("1.08"),
        "liquid_bulk_industrial": Decimal("1.05"),
        "livestock": Decimal("1.10"),
        "oversized": Decimal("1.18"),
        "oversized_heavy": Decimal("1.30"),
        "hazmat": Decimal("1.20"),
        "hazmat_class7": Decimal("1.40"),
        "high_value": Decimal("1.25"),
    }

    # (max lbs, multiplier); above the last bracket the last multiplier applies
    WEIGHT_BRACKETS: List[Tuple[int, Decimal]] = [
        (10000, Decimal("1.00")),
        (26000, Decimal("1.15")),
        (40000, Decimal("1.30")),
        (80001, Decimal("1.50")),
    ]

    OWNER_OP_BONUS: Dict[int, Decimal] = {
        0: Decimal("0.20"),
        1: Decimal("0.20"),
        2: Decimal("0.25"),
        3: Decimal("0.30"),
    }

    # (max elapsed/window ratio, modifier); beyond the last row the last modifier applies
    TIME_BRACKETS: List[Tuple[Decimal, Decimal]] = [
        (Decimal("0.80"), Decimal("0.15")),
        (Decimal("1.00"), Decimal("0.00")),
        (Decimal("1.20"), Decimal("-0.10")),
        (Decimal("999"), Decimal("-0.25")),
    ]

    # (min integrity %, modifier)
    INTEGRITY_BRACKETS: List[Tuple[int, Decimal]] = [
        (90, Decimal("0.00")),
        (70, Decimal("-0.10")),
        (50, Decimal("-0.25")),
        (0, Decimal("-1.00")),
    ]
    INTEGRITY_REJECTION_THRESHOLD: int = 40

    EXCURSION_PENALTIES: Dict[str, Decimal] = {
        "clean": Decimal("0.00"),
        "minor": Decimal("-0.15"),
        "significant": Decimal("-0.35"),
    }

    WELFARE_MODIFIERS: Dict[int, Decimal] = {
        5: Decimal("0.20"),
        4: Decimal("0.10"),
        3: Decimal("0.00"),
        2: Decimal("-0.15"),
        1: Decimal("-0.40"),
    }

    COMPLIANCE_BONUSES: Dict[str, Decimal] = {
        "weigh_station": Decimal("0.05"),
        "seal_intact": Decimal("0.05"),
        "clean_bol": Decimal("0.05"),
        "pre_trip": Decimal("0.03"),
        "manifest_verified": Decimal("0.03"),
        "shipper_established": Decimal("0.05"),
        "shipper_trusted": Decimal("0.10"),
        "shipper_preferred": Decimal("0.15"),
        "cold_chain_clean": Decimal("0.05"),
        "livestock_excellent": Decimal("0.10"),
        "convoy_2": Decimal("0.08"),
        "convoy_3": Decimal("0.12"),
        "convoy_4plus": Decimal("0.15"),
    }
    MAX_COMPLIANCE_STACK: Decimal = Decimal("0.25")

    MULTI_STOP_PREMIUM: Dict[int, Decimal] = {
        2: Decimal("0.15"),
        3: Decimal("0.25"),
        4: Decimal("0.35"),
        5: Decimal("0.45"),
        6: Decimal("0.55"),
    }
    LTL_FLAT_PER_STOP: Decimal = Decimal("150")

    NIGHT_PREMIUM: Decimal = Decimal("0.07")
    NIGHT_START_HOUR: int = 22
    NIGHT_END_HOUR: int = 6

    GLOBAL_MULTIPLIER: Decimal = Decimal("1.0")

    PAYOUT_FLOORS: Dict[int, int] = {0: 150, 1: 250, 2: 400, 3: 600}

    # Acceptance-time tables
    WINDOW_MINUTES_PER_MILE: Dict[int, Decimal] = {
        0: Decimal("6"),
        1: Decimal("5"),
        2: Decimal("4.5"),
        3: Decimal("4"),
    }
    WINDOW_MINUTES_PER_STOP: int = 5
    DELIVERY_RADIUS: Dict[int, float] = {0: 12.0, 1: 8.0, 2: 5.0, 3: 4.0}

    model_config = SettingsConfigDict(env_prefix="ECONOMY_", env_file=".env", extra="ignore")


class GatewaySettings(BaseSettings):
    """Sessions, wallets and credentials for the built-in gateways.

    Outside dev mode only tokens listed in SESSION_TOKENS resolve and wallets
    hold only what WALLET_BALANCES seeds. Dev mode lets any token stand for
    itself and opens each new wallet with DEV_OPENING_BALANCE.
    """

    DEV_MODE: bool = False
    SESSION_TOKENS: Dict[str, str] = {}
    WALLET_BALANCES: Dict[str, int] = {}
    DEV_OPENING_BALANCE: int = 10000
    CREDENTIALS: Dict[str, List[str]] = {}
    # Shared key for the platform's connection events; unset disables them
    PLATFORM_API_KEY: str = ""

    model_config = SettingsConfigDict(env_prefix="GATEWAY_", env_file=".env", extra="ignore")


db_settings = DatabaseSettings()
gateway_settings = GatewaySettings()
