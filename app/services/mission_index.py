"""
Write-through cache of live missions, keyed by BOL id.

Never authoritative: every entry mirrors a committed active_missions row,
it is updated after each committed mutation, and it is rebuilt from the
store when the service starts.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session

from app.models.domain import Mission
from app.models.enums import MissionStatus


@dataclass(frozen=True)
class MissionSnapshot:
    mission_id: int
    bol_id: int
    load_id: int
    driver_id: str
    status: MissionStatus
    current_stop: int
    cargo_integrity: int
    window_expires_at: datetime

    @classmethod
    def from_row(cls, mission: Mission) -> "MissionSnapshot":
        return cls(
            mission_id=mission.id,
            bol_id=mission.bol_id,
            load_id=mission.load_id,
            driver_id=mission.driver_id,
            status=mission.status,
            current_stop=mission.current_stop,
            cargo_integrity=mission.cargo_integrity,
            window_expires_at=mission.window_expires_at,
        )


class MissionIndex:
    def __init__(self):
        self._by_bol: Dict[int, MissionSnapshot] = {}

    def __len__(self) -> int:
        return len(self._by_bol)

    def put(self, mission: Mission) -> MissionSnapshot:
        snapshot = MissionSnapshot.from_row(mission)
        self._by_bol[snapshot.bol_id] = snapshot
        return snapshot

    def discard(self, bol_id: int) -> None:
        self._by_bol.pop(bol_id, None)

    def get(self, bol_id: int) -> Optional[MissionSnapshot]:
        return self._by_bol.get(bol_id)

    def rebuild(self, db: Session) -> int:
        """Replace the cache with the current contents of active_missions."""
        self._by_bol.clear()
        for mission in db.query(Mission).all():
            self.put(mission)
        return len(self._by_bol)
