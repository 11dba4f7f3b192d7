from typing import Dict, Optional
from fastapi import WebSocket
import asyncio
from datetime import datetime, timezone
import structlog

from .schema.events import BaseEvent, ConnectionEvent, ErrorEvent

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionManager:
    """Manages WebSocket connections to the conversation"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.connection_metadata: Dict[str, Dict] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, connection_id: str):
        """Accept a new WebSocket connection"""
        await websocket.accept()

        async with self._lock:
            self.active_connections[connection_id] = websocket
            self.connection_metadata[connection_id] = {
                "connected_at": _utcnow(),
                "last_activity": _utcnow()
            }

        await self.send_event(
            connection_id,
            ConnectionEvent(
                status="connected",
                connection_id=connection_id
            )
        )

        logger.info("WebSocket connected", connection_id=connection_id)

    async def disconnect(self, connection_id: str):
        """Disconnect a WebSocket connection"""
        async with self._lock:
            if connection_id in self.active_connections:
                ws = self.active_connections.pop(connection_id)
                self.connection_metadata.pop(connection_id, None)

                try:
                    await ws.close()
                except Exception as e:
                    logger.debug("WebSocket already closed", connection_id=connection_id, error=str(e))

        logger.info("WebSocket disconnected", connection_id=connection_id)

    async def send_event(self, connection_id: str, event: BaseEvent) -> bool:
        """Send an event to a specific connection"""
        if connection_id not in self.active_connections:
            logger.warning("Attempted to send to disconnected client", connection_id=connection_id)
            return False

        websocket = self.active_connections[connection_id]

        try:
            await websocket.send_json(event.model_dump(mode="json"))

            if connection_id in self.connection_metadata:
                self.connection_metadata[connection_id]["last_activity"] = _utcnow()

            return True

        except Exception as e:
            logger.error("Failed to send event", connection_id=connection_id, error=str(e))
            await self.disconnect(connection_id)
            return False

    async def send_error(self, connection_id: str, error_message: str, error_code: Optional[str] = None):
        """Send an error event to a connection"""
        error_event = ErrorEvent(
            payload={"message": error_message},
            error_code=error_code,
            connection_id=connection_id
        )
        await self.send_event(connection_id, error_event)
