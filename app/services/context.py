"""Everything the mission services share beyond the database session."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from app.core.config import EconomySettings, MissionSettings
from app.services.gateways import (
    CredentialService,
    InventoryService,
    NotificationSink,
    WalletService,
)
from app.services.mission_index import MissionIndex
from app.services.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    wallet: WalletService
    credentials: CredentialService
    notifications: NotificationSink
    inventory: InventoryService
    mission_settings: MissionSettings = field(default_factory=MissionSettings)
    economy: EconomySettings = field(default_factory=EconomySettings)
    index: MissionIndex = field(default_factory=MissionIndex)
    rate_limiter: Optional[RateLimiter] = None
    clock: Callable[[], datetime] = datetime.utcnow

    def __post_init__(self):
        if self.rate_limiter is None:
            self.rate_limiter = RateLimiter(self.mission_settings.RATE_LIMIT_SECONDS)

    def now(self) -> datetime:
        return self.clock()

    def notify(self, identity: str, title: str, message: str) -> None:
        """Best-effort push; a failing sink never affects the calling transition."""
        try:
            self.notifications.notify(identity, title, message)
        except Exception:
            logger.warning("notification to %s failed (%s)", identity, title, exc_info=True)
