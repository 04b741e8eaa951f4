"""Per-driver, per-action debounce for inbound commands.

This only filters out bursts of duplicate signals. Correctness never depends
on it: races are resolved by conditional writes in the store.
"""
import time
from typing import Callable, Dict, Tuple

from app.models.enums import RefusalReason
from app.services.errors import RefusalError


class RateLimiter:
    def __init__(self, interval_seconds: float, monotonic: Callable[[], float] = time.monotonic):
        self.interval_seconds = interval_seconds
        self._monotonic = monotonic
        self._last_seen: Dict[Tuple[str, str], float] = {}

    def check(self, driver_id: str, action: str) -> None:
        """Record the call, or raise RATE_LIMITED if the same action came too recently."""
        if self.interval_seconds <= 0:
            return
        key = (driver_id, action)
        now = self._monotonic()
        last = self._last_seen.get(key)
        if last is not None and (now - last) < self.interval_seconds:
            raise RefusalError(
                RefusalReason.RATE_LIMITED,
                f"'{action}' was sent too quickly; wait {self.interval_seconds:g}s between attempts",
            )
        self._last_seen[key] = now

    def forget(self, driver_id: str) -> None:
        """Drop every entry for a driver (used when the session goes away)."""
        for key in [k for k in self._last_seen if k[0] == driver_id]:
            del self._last_seen[key]
