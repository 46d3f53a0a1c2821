from typing import Dict, Any, Optional, List, Pattern, Callable, IO, TYPE_CHECKING
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
import asyncio
import time

import structlog

from qsys_bridge.domain.engine.engine_client import Component, Control, Subscription
from qsys_bridge.domain.errors import InvalidArgumentError
from qsys_bridge.domain.models.control_state import ControlState
from qsys_bridge.domain.patterns import compile_pattern
from qsys_bridge.infrastructure.observability.logging import bridge_logger

if TYPE_CHECKING:
    from qsys_bridge.domain.connection.connection_manager import ConnectionManager

logger = structlog.get_logger(__name__)

MIN_DURATION = 1
MAX_DURATION = 300
RECORDING_MAX_BYTES = 600_000
CSV_HEADER = "timestamp,elapsed_ms,component,control,value,string,position,bool,min,max\n"


class StopReason(str, Enum):
    """Why a recording ended"""
    DURATION = "duration"
    MANUAL = "manual"
    SIZE_LIMIT = "size_limit"
    DISCONNECT = "disconnect"
    SUPERSEDED = "superseded"
    SHUTDOWN = "shutdown"


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def format_row(
    timestamp: str,
    elapsed_ms: int,
    component: str,
    control: str,
    state: ControlState
) -> str:
    """One CSV row; the display string is always quoted with embedded quotes doubled"""

    string = (state.string or "").replace('"', '""')
    return ",".join([
        timestamp,
        str(elapsed_ms),
        component,
        control,
        _cell(state.value),
        f'"{string}"',
        _cell(state.position),
        _cell(state.bool_value),
        _cell(state.value_min),
        _cell(state.value_max),
    ]) + "\n"


class RecordingSession:
    """State of the single active recording"""

    def __init__(
        self,
        path: Path,
        sink: IO[str],
        duration: float,
        pattern: Optional[Pattern[str]],
        max_bytes: int,
        clock: Callable[[], float]
    ):
        self.path = path
        self.sink = sink
        self.duration = duration
        self.pattern = pattern
        self.max_bytes = max_bytes
        self._clock = clock
        self.started = clock()
        self.started_at = datetime.now(timezone.utc)
        self.event_count = 0
        self.byte_count = 0
        self.rows: List[str] = []
        self.subscription: Optional[Subscription] = None
        self.stopping = False
        self.auto_stopped = False
        self.closed = False
        self.stop_reason: Optional[StopReason] = None
        self.summary: Optional[Dict[str, Any]] = None
        self.size_limit_reached = asyncio.Event()
        self.terminated = asyncio.Event()

    def elapsed(self) -> float:
        return self._clock() - self.started

    def write(self, text: str):
        self.sink.write(text)
        self.rows.append(text)
        self.byte_count += len(text.encode("utf-8"))

    @property
    def body(self) -> str:
        return "".join(self.rows)


class Recorder:
    """Records every matching control update to a size-capped CSV file"""

    def __init__(
        self,
        connection: "ConnectionManager",
        output_dir: Path,
        max_bytes: int = RECORDING_MAX_BYTES,
        clock: Callable[[], float] = time.monotonic
    ):
        self.connection = connection
        self.output_dir = Path(output_dir)
        self.max_bytes = max_bytes
        self._clock = clock
        self.session: Optional[RecordingSession] = None

    @property
    def is_recording(self) -> bool:
        return self.session is not None and not self.session.closed

    async def record(
        self,
        duration: float,
        filename: Optional[str] = None,
        filter_regex: Optional[str] = None
    ) -> Dict[str, Any]:
        """Record for ``duration`` seconds, or until the byte cap or a disconnect ends it"""

        if not MIN_DURATION <= duration <= MAX_DURATION:
            raise InvalidArgumentError(f"duration must be between {MIN_DURATION} and {MAX_DURATION} seconds")
        pattern = compile_pattern(filter_regex)

        await self.connection.ensure_connected()
        engine = self.connection.require_engine()

        path = self._resolve_path(filename)
        if self.session is not None:
            self.stop(StopReason.SUPERSEDED)

        self.output_dir.mkdir(parents=True, exist_ok=True)
        sink = open(path, "w", encoding="utf-8", newline="")

        session = RecordingSession(path, sink, duration, pattern, self.max_bytes, self._clock)
        session.write(CSV_HEADER)
        session.subscription = engine.on(
            "update",
            lambda component, control, state: self._on_update(session, component, control, state)
        )
        self.session = session
        bridge_logger.log_stream_event("recorder", "start", file=str(path), duration=duration, filter=filter_regex)

        try:
            reason = await self._wait_for_completion(session)
        except asyncio.CancelledError:
            self._stop_session(session, StopReason.SHUTDOWN)
            raise
        summary = self._stop_session(session, reason)

        return {
            **summary,
            "csv": session.body
        }

    async def _wait_for_completion(self, session: RecordingSession) -> StopReason:
        """Race the duration timer, the byte-cap trigger and external termination"""

        timer = asyncio.ensure_future(asyncio.sleep(session.duration))
        size_limit = asyncio.ensure_future(session.size_limit_reached.wait())
        terminated = asyncio.ensure_future(session.terminated.wait())
        triggers = [timer, size_limit, terminated]

        try:
            await asyncio.wait(triggers, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for trigger in triggers:
                if not trigger.done():
                    trigger.cancel()

        if session.stop_reason is not None:
            return session.stop_reason
        if size_limit.done() and not size_limit.cancelled():
            return StopReason.SIZE_LIMIT
        return StopReason.DURATION

    def _on_update(self, session: RecordingSession, component: Component, control: Control, state: ControlState):
        if session.stopping or session.closed:
            return

        path = f"{component.name}.{control.name}"
        if session.pattern is not None and not session.pattern.search(path):
            return

        row = format_row(
            datetime.now(timezone.utc).isoformat(),
            int(session.elapsed() * 1000),
            component.name,
            control.name,
            state
        )

        if session.byte_count + len(row.encode("utf-8")) > session.max_bytes:
            session.stopping = True
            session.auto_stopped = True
            session.size_limit_reached.set()
            # Deferred so concurrent events cannot stop the session twice
            asyncio.get_running_loop().call_soon(self._stop_session, session, StopReason.SIZE_LIMIT)
            return

        session.write(row)
        session.event_count += 1

    def stop(self, reason: StopReason = StopReason.MANUAL) -> Optional[Dict[str, Any]]:
        """Stop the active recording, if any"""

        if self.session is None:
            return None
        return self._stop_session(self.session, reason)

    def handle_disconnect(self):
        self.stop(StopReason.DISCONNECT)

    def _stop_session(self, session: RecordingSession, reason: StopReason) -> Dict[str, Any]:
        if session.closed:
            return session.summary

        session.closed = True
        session.stop_reason = reason
        if session.subscription is not None:
            session.subscription.cancel()
        try:
            session.sink.close()
        except OSError as e:
            logger.warning("Error closing recording file", file=str(session.path), error=str(e))

        elapsed = session.elapsed()
        session.summary = {
            "eventsRecorded": session.event_count,
            "duration": round(elapsed, 3),
            "bytes": session.byte_count,
            "file": str(session.path),
            "autoStopped": session.auto_stopped,
            "stopReason": reason.value,
            "eventsPerSecond": round(session.event_count / elapsed, 2) if elapsed > 0 else 0.0
        }
        session.terminated.set()

        if self.session is session:
            self.session = None

        bridge_logger.log_stream_event("recorder", "stop", **session.summary)
        return session.summary

    def _resolve_path(self, filename: Optional[str]) -> Path:
        if filename:
            name = Path(filename).name
            if not name:
                raise InvalidArgumentError(f"Invalid recording filename: {filename!r}")
        else:
            name = datetime.now().strftime("recording-%Y%m%d-%H%M%S")
        if not name.lower().endswith(".csv"):
            name += ".csv"
        return self.output_dir / name
