from typing import Dict, Any, Optional
import structlog

from companion.application.websocket.connection_manager import ConnectionManager
from companion.application.websocket.schema.events import (
    ReplyData, ReplyEvent, StatusData, StatusEvent
)
from companion.domain.context.state.state_manager import StateManager, TurnStatus
from companion.domain.models.conversation import TurnOutcome, TurnResult
from companion.domain.response.speech import VOICE_SETTINGS

logger = structlog.get_logger(__name__)

TOTAL_STEPS = 3


class TurnStatusHandler:
    """Streams turn progress and the final reply to one WebSocket client"""

    def __init__(
        self,
        connection_manager: ConnectionManager,
        connection_id: str,
        state_manager: Optional[StateManager] = None,
    ):
        self.connection_manager = connection_manager
        self.connection_id = connection_id
        self.state_manager = state_manager

    async def handle_update(self, node_id: str, update: Dict[str, Any]):
        """Handle pipeline node updates"""

        logger.debug("Processing node update", connection_id=self.connection_id, node_id=node_id)

        if node_id == "detect_triggers" and update.get("wants_context"):
            await self._set_status(TurnStatus.SCANNING)
            await self.send_status("Scanning...", step_index=1)
        elif node_id == "assemble_prompt":
            await self._set_status(TurnStatus.PROCESSING)
            await self.send_status("Processing", step_index=2)
        elif node_id in ("process_response", "recover"):
            result = update.get("result")
            if isinstance(result, TurnResult) and result.outcome == TurnOutcome.COMPLETED:
                await self._set_status(TurnStatus.SPEAKING)
                await self.send_status("Speaking...", step_index=3)
            else:
                await self._set_status(TurnStatus.ERROR)
                await self.send_status("Error", step_index=3)

    async def _set_status(self, status: TurnStatus):
        if self.state_manager is not None:
            await self.state_manager.update_status(status)

    async def send_status(self, status: str, step_index: Optional[int] = None):
        """Send progress update to client"""

        await self.connection_manager.send_event(
            self.connection_id,
            StatusEvent(
                payload=StatusData(status=status, step_index=step_index, total_steps=TOTAL_STEPS),
                connection_id=self.connection_id
            )
        )

    async def send_reply(self, result: TurnResult):
        """Send the reply the renderer should speak"""

        await self.connection_manager.send_event(
            self.connection_id,
            ReplyEvent(
                payload=ReplyData(
                    text=result.text,
                    speakable=result.speakable,
                    emotion=result.emotion,
                    outcome=result.outcome,
                    voice=VOICE_SETTINGS,
                ),
                connection_id=self.connection_id
            )
        )
