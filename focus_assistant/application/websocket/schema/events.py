from typing import Dict, Any, Optional, Literal
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum

from focus_assistant.domain.models.chat import ChatMessage


class EventType(str, Enum):
    """WebSocket event types"""
    FRAGMENT = "fragment"
    MESSAGE = "message"
    ERROR = "error"
    CONNECTION = "connection"
    USER_MESSAGE = "user_message"
    CANCEL = "cancel"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BaseEvent(BaseModel):
    """Base event model for all WebSocket messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=_utc_now)
    session_id: Optional[str] = None


class FragmentEvent(BaseEvent):
    """Streamed piece of the assistant reply"""
    type: Literal[EventType.FRAGMENT] = EventType.FRAGMENT
    payload: str


class MessageEvent(BaseEvent):
    """Recorded turn sent once the reply is complete"""
    type: Literal[EventType.MESSAGE] = EventType.MESSAGE
    payload: ChatMessage


class ErrorEvent(BaseEvent):
    """Error event"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    payload: Dict[str, Any]
    error_code: Optional[str] = None


class ConnectionEvent(BaseEvent):
    """Connection status event"""
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    status: Literal["connected", "disconnected"]


class UserMessage(BaseEvent):
    """User message event"""
    type: Literal[EventType.USER_MESSAGE] = EventType.USER_MESSAGE
    content: str = Field(min_length=1)
