"""FastAPI dependencies: the shared service context, the calling driver and the platform key."""
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from app.core.config import GatewaySettings, gateway_settings
from app.services.context import ServiceContext
from app.services.gateways import (
    IdentityService,
    InMemoryInventory,
    InMemoryWallet,
    LoggingNotificationSink,
    StaticCredentialService,
    TokenIdentityService,
)

logger = logging.getLogger(__name__)

_context: Optional[ServiceContext] = None
_identity: Optional[IdentityService] = None


def get_gateway_settings() -> GatewaySettings:
    return gateway_settings


def build_context(settings: GatewaySettings) -> ServiceContext:
    """Service context over the built-in gateways, seeded from settings."""
    opening_balance = settings.DEV_OPENING_BALANCE if settings.DEV_MODE else 0
    return ServiceContext(
        wallet=InMemoryWallet(settings.WALLET_BALANCES, opening_balance=opening_balance),
        credentials=StaticCredentialService(settings.CREDENTIALS),
        notifications=LoggingNotificationSink(),
        inventory=InMemoryInventory(),
    )


def build_identity_service(settings: GatewaySettings) -> IdentityService:
    """Only configured sessions resolve, unless dev mode lets any token through."""
    return TokenIdentityService(settings.SESSION_TOKENS, passthrough=settings.DEV_MODE)


def configure(context: Optional[ServiceContext] = None, identity: Optional[IdentityService] = None) -> None:
    """Install the host platform's gateways in place of the built-in ones."""
    global _context, _identity
    if context is not None:
        _context = context
    if identity is not None:
        _identity = identity


def get_context() -> ServiceContext:
    """
    Process-wide service context. The mission index inside it must outlive
    requests, so it is built once.
    """
    global _context
    if _context is None:
        _context = build_context(gateway_settings)
    return _context


def get_identity_service() -> IdentityService:
    global _identity
    if _identity is None:
        if gateway_settings.DEV_MODE:
            logger.warning("GATEWAY_DEV_MODE is on: any session token is accepted as a driver id")
        _identity = build_identity_service(gateway_settings)
    return _identity


def current_driver(
    x_session_token: Optional[str] = Header(default=None),
    identity: IdentityService = Depends(get_identity_service),
) -> str:
    """Resolve the session header to a driver identity, or 401."""
    driver_id = identity.resolve(x_session_token) if x_session_token else None
    if not driver_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown or missing session")
    return driver_id


def require_platform_key(
    x_api_key: Optional[str] = Header(default=None),
    settings: GatewaySettings = Depends(get_gateway_settings),
) -> None:
    """Connection events come from the platform, never from a driver session."""
    if not settings.PLATFORM_API_KEY:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="platform_api_key_not_configured")
    if x_api_key != settings.PLATFORM_API_KEY:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_api_key")
