from typing import Dict, Any, Optional, Literal
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum

from companion.domain.models.conversation import Emotion, TurnOutcome


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventType(str, Enum):
    """WebSocket event types"""
    STATUS = "status"
    REPLY = "reply"
    ERROR = "error"
    CONNECTION = "connection"
    USER_MESSAGE = "user_message"
    RESET_MEMORY = "reset_memory"


class BaseEvent(BaseModel):
    """Base event model for all WebSocket messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=_utcnow)
    connection_id: Optional[str] = None


class StatusData(BaseModel):
    """Progress shown while a turn runs"""
    status: str
    step_index: Optional[int] = None
    total_steps: Optional[int] = None


class StatusEvent(BaseEvent):
    """Turn progress event"""
    type: Literal[EventType.STATUS] = EventType.STATUS
    payload: StatusData


class ReplyData(BaseModel):
    """Reply ready for the renderer"""
    text: str
    speakable: str
    emotion: Emotion
    outcome: TurnOutcome
    voice: Dict[str, Any] = Field(default_factory=dict)


class ReplyEvent(BaseEvent):
    """Assistant reply or spoken apology"""
    type: Literal[EventType.REPLY] = EventType.REPLY
    payload: ReplyData


class ErrorEvent(BaseEvent):
    """Error event"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    payload: Dict[str, Any]
    error_code: Optional[str] = None


class ConnectionEvent(BaseEvent):
    """Connection status event"""
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    status: Literal["connected", "disconnected"]


class PageData(BaseModel):
    """Foreground page as seen by the client"""
    url: Optional[str] = None
    text: Optional[str] = None
    html: Optional[str] = None
    fetch: bool = Field(default=False, description="Fetch the URL server-side when no text or html is sent")


class UserMessage(BaseEvent):
    """User utterance event"""
    type: Literal[EventType.USER_MESSAGE] = EventType.USER_MESSAGE
    content: str = Field(min_length=1)
    page: Optional[PageData] = None
