from typing import Dict, Any, Optional
import asyncio
from datetime import datetime, timezone
from enum import Enum

from companion.domain.errors import TurnInProgressError


class TurnStatus(str, Enum):
    """Conversation status as shown to the user"""
    IDLE = "idle"
    SCANNING = "scanning"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    ERROR = "error"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateManager:
    """Tracks the single in-flight turn of a conversation"""

    def __init__(self):
        self.state: Dict[str, Any] = {
            "status": TurnStatus.IDLE.value,
            "in_flight": False,
            "turn_id": None,
            "turns_started": 0,
            "created_at": _now(),
            "last_updated": _now(),
        }
        self._lock = asyncio.Lock()

    async def get_current_state(self) -> Dict[str, Any]:
        async with self._lock:
            return self.state.copy()

    async def begin_turn(self, turn_id: str):
        """Claim the conversation for one turn

        Raises:
            TurnInProgressError: if another turn has not finished yet
        """

        async with self._lock:
            if self.state["in_flight"]:
                raise TurnInProgressError(
                    f"Turn {self.state['turn_id']} is still in progress"
                )
            self.state.update({
                "in_flight": True,
                "turn_id": turn_id,
                "status": TurnStatus.PROCESSING.value,
                "turns_started": self.state["turns_started"] + 1,
                "last_updated": _now(),
            })

    async def update_status(self, status: TurnStatus):
        async with self._lock:
            self.state["status"] = status.value
            self.state["last_updated"] = _now()

    async def end_turn(self, status: Optional[TurnStatus] = None):
        async with self._lock:
            self.state.update({
                "in_flight": False,
                "status": (status or TurnStatus.IDLE).value,
                "last_updated": _now(),
            })
