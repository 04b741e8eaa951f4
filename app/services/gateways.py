"""
Narrow interfaces to the services this core consumes but does not own:
identity and wallet, credentials, notifications and inventory.

The in-memory implementations back local development and the test suite.
"""
import logging
from typing import Dict, List, Optional, Protocol, Set, Tuple

logger = logging.getLogger(__name__)


class IdentityService(Protocol):
    def resolve(self, session: str) -> Optional[str]:
        ...


class WalletService(Protocol):
    def debit(self, identity: str, amount: int, memo: str) -> bool:
        ...

    def credit(self, identity: str, amount: int, memo: str) -> bool:
        ...


class CredentialService(Protocol):
    def is_active(self, identity: str, credential_type: str) -> bool:
        ...


class NotificationSink(Protocol):
    def notify(self, identity: str, title: str, message: str) -> None:
        ...


class InventoryService(Protocol):
    def grant(self, identity: str, artifact: str, metadata: Optional[dict] = None) -> bool:
        ...

    def revoke(self, identity: str, artifact: str) -> bool:
        ...


class TokenIdentityService:
    """Resolves a session token through a fixed table; unknown tokens resolve to None."""

    def __init__(self, sessions: Optional[Dict[str, str]] = None, passthrough: bool = False):
        self.sessions = dict(sessions or {})
        self.passthrough = passthrough

    def resolve(self, session: str) -> Optional[str]:
        if not session:
            return None
        if session in self.sessions:
            return self.sessions[session]
        return session if self.passthrough else None


class InMemoryWallet:
    """Integer balances per identity, with a journal of every movement.

    Identities with no balance yet start at `opening_balance`.
    """

    def __init__(self, balances: Optional[Dict[str, int]] = None, opening_balance: int = 0):
        self.balances: Dict[str, int] = dict(balances or {})
        self.opening_balance = opening_balance
        self.journal: List[Tuple[str, str, int, str]] = []

    def _balance(self, identity: str) -> int:
        return self.balances.setdefault(identity, self.opening_balance)

    def debit(self, identity: str, amount: int, memo: str) -> bool:
        if self._balance(identity) < amount:
            return False
        self.balances[identity] -= amount
        self.journal.append(("debit", identity, amount, memo))
        return True

    def credit(self, identity: str, amount: int, memo: str) -> bool:
        self.balances[identity] = self._balance(identity) + amount
        self.journal.append(("credit", identity, amount, memo))
        return True


class StaticCredentialService:
    def __init__(self, grants: Optional[Dict[str, Set[str]]] = None):
        self.grants: Dict[str, Set[str]] = {k: set(v) for k, v in (grants or {}).items()}

    def is_active(self, identity: str, credential_type: str) -> bool:
        return credential_type in self.grants.get(identity, set())

    def grant(self, identity: str, *credential_types: str) -> None:
        self.grants.setdefault(identity, set()).update(credential_types)


class LoggingNotificationSink:
    def notify(self, identity: str, title: str, message: str) -> None:
        logger.info("notify %s: %s - %s", identity, title, message)


class RecordingNotificationSink:
    def __init__(self):
        self.sent: List[Tuple[str, str, str]] = []

    def notify(self, identity: str, title: str, message: str) -> None:
        self.sent.append((identity, title, message))

    def titles_for(self, identity: str) -> List[str]:
        return [title for who, title, _ in self.sent if who == identity]


class InMemoryInventory:
    def __init__(self):
        self.items: Dict[str, List[Tuple[str, dict]]] = {}

    def grant(self, identity: str, artifact: str, metadata: Optional[dict] = None) -> bool:
        self.items.setdefault(identity, []).append((artifact, dict(metadata or {})))
        return True

    def revoke(self, identity: str, artifact: str) -> bool:
        held = self.items.get(identity, [])
        for index, (name, _) in enumerate(held):
            if name == artifact:
                del held[index]
                return True
        return False

    def holds(self, identity: str, artifact: str) -> bool:
        return any(name == artifact for name, _ in self.items.get(identity, []))
