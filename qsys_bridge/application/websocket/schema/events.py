from typing import Dict, Any, Optional, Literal
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum


class EventType(str, Enum):
    """WebSocket message types"""
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    ERROR = "error"
    CONNECTION = "connection"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseEvent(BaseModel):
    """Base model for all WebSocket messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=_utcnow)
    client_id: Optional[str] = None


class ToolCallMessage(BaseEvent):
    """Tool invocation sent by a client"""
    type: Literal[EventType.TOOL_CALL] = EventType.TOOL_CALL
    id: str = Field(description="Client-chosen correlation id, echoed on the result")
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolResultMessage(BaseEvent):
    """Result of one tool call, in MCP content form"""
    type: Literal[EventType.TOOL_RESULT] = EventType.TOOL_RESULT
    id: str
    result: Dict[str, Any]


class ErrorEvent(BaseEvent):
    """Protocol-level error (malformed message, unknown type)"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    payload: Dict[str, Any]
    error_code: Optional[str] = None


class ConnectionEvent(BaseEvent):
    """Client connection status event"""
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    status: Literal["connected", "disconnected"]
    engine_connected: bool = False
