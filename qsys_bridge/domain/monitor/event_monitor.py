from typing import Dict, List, Any, Optional, TYPE_CHECKING
from datetime import datetime, timezone
from collections import deque

import structlog

from qsys_bridge.domain.engine.engine_client import Subscription
from qsys_bridge.domain.errors import BridgeError, InvalidArgumentError, NotFoundError
from qsys_bridge.domain.models.control_state import ControlState
from qsys_bridge.infrastructure.observability.logging import bridge_logger

if TYPE_CHECKING:
    from qsys_bridge.domain.control.control_access import ControlAccess

logger = structlog.get_logger(__name__)

MONITOR_BUFFER_SIZE = 100


class MonitorSession:
    """Lossy most-recent-wins buffer of control updates for one monitor id"""

    def __init__(self, monitor_id: str, capacity: int = MONITOR_BUFFER_SIZE):
        self.id = monitor_id
        self.events: deque = deque(maxlen=capacity)
        self.subscriptions: Dict[str, Subscription] = {}
        self.dropped = 0
        self.active = True
        self.created_at = datetime.now(timezone.utc)

    def record(self, path: str, state: ControlState):
        if len(self.events) == self.events.maxlen:
            self.dropped += 1
        self.events.append({
            "path": path,
            **state.to_dict(),
            "time": datetime.now(timezone.utc).isoformat()
        })

    def drain(self) -> List[Dict[str, Any]]:
        events = list(self.events)
        self.events.clear()
        return events

    def detach(self):
        for subscription in self.subscriptions.values():
            subscription.cancel()
        self.active = False


class EventMonitor:
    """Per-id subscriptions to control updates with drain-on-read buffers"""

    def __init__(self, controls: "ControlAccess", capacity: int = MONITOR_BUFFER_SIZE):
        self.controls = controls
        self.capacity = capacity
        self.sessions: Dict[str, MonitorSession] = {}

    async def start(self, monitor_id: str, paths: Optional[List[str]]) -> Dict[str, Any]:
        """Subscribe to each resolvable path; unresolvable ones are skipped"""

        if not paths:
            raise InvalidArgumentError("controls are required to start a monitor")

        await self.controls.connection.ensure_connected()
        engine = self.controls.connection.require_engine()

        existing = self.sessions.pop(monitor_id, None)
        if existing is not None:
            existing.detach()
            logger.info("Replacing existing monitor", monitor_id=monitor_id)

        session = MonitorSession(monitor_id, self.capacity)
        skipped = []

        for path in paths:
            if path in session.subscriptions:
                continue
            try:
                control = self.controls.resolve(path, engine)
            except BridgeError:
                skipped.append(path)
                continue
            session.subscriptions[path] = control.on_update(
                lambda state, path=path: session.record(path, state)
            )

        self.sessions[monitor_id] = session
        bridge_logger.log_stream_event("monitor", "start", monitor_id=monitor_id,
                                       controls=len(session.subscriptions), skipped=len(skipped))

        return {
            "id": monitor_id,
            "monitoring": list(session.subscriptions),
            "skipped": skipped,
            "bufferSize": self.capacity
        }

    def read(self, monitor_id: str) -> Dict[str, Any]:
        """Drain all buffered events; each event is delivered exactly once"""

        session = self._get(monitor_id)
        events = session.drain()
        dropped, session.dropped = session.dropped, 0

        return {
            "id": monitor_id,
            "events": events,
            "count": len(events),
            "dropped": dropped,
            "active": session.active
        }

    def stop(self, monitor_id: str) -> Dict[str, Any]:
        """Detach every listener owned by the monitor and discard it"""

        session = self._get(monitor_id)
        session.detach()
        del self.sessions[monitor_id]
        bridge_logger.log_stream_event("monitor", "stop", monitor_id=monitor_id)

        return {"id": monitor_id, "stopped": True, "unreadEvents": len(session.events)}

    def handle_disconnect(self):
        """Listeners on a lost session are dead; buffers stay readable"""

        for session in self.sessions.values():
            if session.active:
                session.detach()

    def stop_all(self):
        for session in self.sessions.values():
            session.detach()
        self.sessions.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "count": len(self.sessions),
            "active": sum(1 for s in self.sessions.values() if s.active)
        }

    def _get(self, monitor_id: str) -> MonitorSession:
        session = self.sessions.get(monitor_id)
        if session is None:
            raise NotFoundError(f'Monitor "{monitor_id}" not found', available=list(self.sessions)[:5])
        return session
