from typing import Dict, Any, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, timezone
from enum import Enum


MIN_POLLING_INTERVAL_MS = 34
DEFAULT_PORT = 443
DEFAULT_POLLING_INTERVAL_MS = 350


class ConnectionPhase(str, Enum):
    """Engine session lifecycle phase"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class ConnectionParams(BaseModel):
    """Parameters of a connection attempt"""
    model_config = ConfigDict(frozen=True)

    host: str = Field(description="Engine host name or address")
    port: int = Field(default=DEFAULT_PORT)
    secure: bool = Field(default=True, description="Use an encrypted transport socket")
    polling_interval: int = Field(default=DEFAULT_POLLING_INTERVAL_MS, description="Change polling interval in ms")
    component_filter: Optional[str] = Field(None, description="Restricts which components the engine loads")

    @property
    def effective_polling_interval(self) -> int:
        """Polling interval clamped to the fastest supported rate"""
        return max(MIN_POLLING_INTERVAL_MS, self.polling_interval)

    def to_record(self) -> Dict[str, Any]:
        """Key/value form used for the last-connection file"""
        record = {
            "host": self.host,
            "port": self.port,
            "secure": self.secure,
            "pollingInterval": self.polling_interval,
        }
        if self.component_filter:
            record["filter"] = self.component_filter
        return record


class ConnectionState(BaseModel):
    """Process-wide connection state, mutated only by the connection manager"""
    phase: ConnectionPhase = Field(default=ConnectionPhase.DISCONNECTED)
    host: Optional[str] = None
    port: Optional[int] = None
    secure: Optional[bool] = None
    polling_interval: Optional[int] = None
    component_filter: Optional[str] = None
    reconnect_attempt: int = 0
    connected_at: Optional[datetime] = None

    def begin_connect(self, params: ConnectionParams, reset_attempts: bool):
        """Enter the connecting phase for the given parameters"""
        self.phase = ConnectionPhase.CONNECTING
        self.host = params.host
        self.port = params.port
        self.secure = params.secure
        self.polling_interval = params.effective_polling_interval
        self.component_filter = params.component_filter
        self.connected_at = None
        if reset_attempts:
            self.reconnect_attempt = 0

    def mark_connected(self):
        self.phase = ConnectionPhase.CONNECTED
        self.connected_at = datetime.now(timezone.utc)

    def mark_failed(self):
        """A connect attempt failed: back to disconnected, target forgotten"""
        self.phase = ConnectionPhase.DISCONNECTED
        self.host = None
        self.connected_at = None

    def mark_disconnected(self):
        self.phase = ConnectionPhase.DISCONNECTED
        self.connected_at = None

    def matches(self, params: ConnectionParams) -> bool:
        """True when connected with exactly these parameters"""
        return (
            self.phase == ConnectionPhase.CONNECTED
            and self.host == params.host
            and self.port == params.port
            and self.secure == params.secure
            and self.polling_interval == params.effective_polling_interval
            and (self.component_filter or None) == (params.component_filter or None)
        )

    def uptime_ms(self) -> Optional[int]:
        if self.connected_at is None:
            return None
        delta = datetime.now(timezone.utc) - self.connected_at
        return int(delta.total_seconds() * 1000)

    def get_state_summary(self) -> Dict[str, Any]:
        """Get a summary of the current state"""
        return {
            "phase": self.phase.value,
            "host": self.host,
            "port": self.port,
            "reconnect_attempt": self.reconnect_attempt,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None
        }
