from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio
import inspect
import time

import structlog

from qsys_bridge.domain.discovery.discovery_cache import DiscoveryCache
from qsys_bridge.domain.engine.engine_client import EngineClient, EngineClientFactory, Subscription
from qsys_bridge.domain.errors import (
    BridgeError, ConnectionFailedError, EmptyDesignError, FilterNoMatchError, InvalidArgumentError
)
from qsys_bridge.domain.models.connection_state import (
    ConnectionParams, ConnectionPhase, ConnectionState
)
from qsys_bridge.infrastructure.config.settings import BridgeConfig, ConnectionStore
from qsys_bridge.infrastructure.observability.logging import bridge_logger
from qsys_bridge.infrastructure.transport.socket_opener import HANDSHAKE_TIMEOUT, open_control_socket

logger = structlog.get_logger(__name__)

RECONNECT_DELAYS = (1.0, 2.0, 4.0, 8.0, 16.0)
EMPTY_DESIGN_SETTLE = 0.1

SocketOpener = Callable[..., Awaitable[Any]]


async def _close_socket_quietly(socket: Any):
    close = getattr(socket, "close", None)
    if close is None:
        return
    try:
        result = close()
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.debug("Ignoring socket close error", error=str(e))


class ConnectionManager:
    """Owns the single live engine session and its reconnection policy"""

    def __init__(
        self,
        config: BridgeConfig,
        engine_factory: EngineClientFactory,
        discovery_cache: DiscoveryCache,
        socket_opener: SocketOpener = open_control_socket,
        store: Optional[ConnectionStore] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
    ):
        self.config = config
        self.state = ConnectionState()
        self.engine: Optional[EngineClient] = None
        self.discovery_cache = discovery_cache
        self._engine_factory = engine_factory
        self._socket_opener = socket_opener
        self._store = store or ConnectionStore(config.config_dir)
        self._sleep = sleep
        self._handshake_timeout = handshake_timeout
        self._connect_task: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._reconnect_task: Optional[asyncio.Task] = None
        self._last_params: Optional[ConnectionParams] = None
        self._engine_subscriptions: List[Subscription] = []
        self._disconnect_listeners: List[Callable[[], Any]] = []
        self.connect_attempts = 0

    @property
    def is_connected(self) -> bool:
        return self.state.phase == ConnectionPhase.CONNECTED and self.engine is not None

    @property
    def reconnect_task(self) -> Optional[asyncio.Task]:
        return self._reconnect_task

    def require_engine(self) -> EngineClient:
        if self.engine is None:
            raise ConnectionFailedError("Not connected to the engine")
        return self.engine

    def add_disconnect_listener(self, listener: Callable[[], Any]):
        """Listeners run synchronously, in registration order, before any other disconnect handling"""
        self._disconnect_listeners.append(listener)

    async def connect(self, params: ConnectionParams) -> Dict[str, Any]:
        """Manual connect: resets the reconnect counter and cancels pending retries"""

        if not params.host:
            raise InvalidArgumentError("Host parameter is required")

        self._cancel_reconnect()
        return await self._start_connect(params, manual=True)

    async def ensure_connected(self, host_override: Optional[str] = None):
        """Guarantee a live session, sharing any connect already in flight"""

        if self.is_connected:
            return

        if self._connect_task is not None and not self._connect_task.done():
            await asyncio.shield(self._connect_task)
            return

        params = self.config.connection_params(host_override)
        await self.connect(params)

    async def _start_connect(self, params: ConnectionParams, manual: bool) -> Dict[str, Any]:
        """One connect sequence at a time; queued requests run in arrival order"""

        async with self._connect_lock:
            while self._connect_task is not None and not self._connect_task.done():
                await asyncio.wait([self._connect_task])
            task = asyncio.get_running_loop().create_task(self._open_session(params, manual))
            self._connect_task = task
            task.add_done_callback(self._clear_connect_task)
        return await asyncio.shield(task)

    def _clear_connect_task(self, task: asyncio.Task):
        if self._connect_task is task:
            self._connect_task = None
        if not task.cancelled():
            # Marks the outcome retrieved for attempts nobody awaited
            task.exception()

    async def _open_session(self, params: ConnectionParams, manual: bool) -> Dict[str, Any]:
        start_time = time.monotonic()
        self.connect_attempts += 1

        await self._discard_engine()

        previous = self.state.phase
        self.state.begin_connect(params, reset_attempts=manual)
        self.discovery_cache.invalidate()
        bridge_logger.log_connection_transition(previous.value, ConnectionPhase.CONNECTING.value, host=params.host)

        try:
            socket = await self._socket_opener(
                params.host, params.port, params.secure, timeout=self._handshake_timeout
            )

            try:
                engine = await self._engine_factory(
                    socket=socket,
                    polling_interval=params.effective_polling_interval,
                    component_filter=params.component_filter
                )
            except BaseException:
                await _close_socket_quietly(socket)
                raise

            components_loaded = len(engine.components or {})

            if components_loaded == 0:
                # Give the engine client time to settle before closing
                await asyncio.sleep(EMPTY_DESIGN_SETTLE)
                await self._close_quietly(engine)
                if params.component_filter:
                    raise FilterNoMatchError(
                        f"No components match filter {params.component_filter!r}",
                        details={"filter": params.component_filter}
                    )
                raise EmptyDesignError("No components found in design. Verify Core is running and has a design loaded")

            self.engine = engine
            self._engine_subscriptions = [
                engine.on("disconnected", self._on_engine_disconnected),
                engine.on("error", self._on_engine_error),
            ]
            self.state.mark_connected()
            self._last_params = params
            self._store.save(params)

        except BaseException as e:
            self.state.mark_failed()
            bridge_logger.log_connection_transition(
                ConnectionPhase.CONNECTING.value, ConnectionPhase.DISCONNECTED.value,
                host=params.host, error=str(e) or type(e).__name__
            )
            if isinstance(e, Exception) and not isinstance(e, BridgeError):
                raise ConnectionFailedError(f"Connection to {params.host} failed: {e}") from e
            raise

        connection_time = int((time.monotonic() - start_time) * 1000)
        bridge_logger.log_connection_transition(
            ConnectionPhase.CONNECTING.value, ConnectionPhase.CONNECTED.value,
            host=params.host, components=components_loaded, connection_time_ms=connection_time
        )

        return {
            "connected": True,
            "host": params.host,
            "port": params.port,
            "secure": params.secure,
            "pollingInterval": params.effective_polling_interval,
            "componentsLoaded": components_loaded,
            "filterApplied": params.component_filter or None,
            "connectionTime": connection_time
        }

    def handle_disconnect(self):
        """React to a lost session: stop dependants, then schedule a backoff retry"""

        if self.state.phase == ConnectionPhase.RECONNECTING:
            return

        for listener in list(self._disconnect_listeners):
            try:
                listener()
            except Exception as e:
                logger.error("Disconnect listener failed", error=str(e))

        self._detach_engine()
        self.discovery_cache.invalidate()
        previous = self.state.phase
        self.state.mark_disconnected()

        params = self._last_params
        if params is None or self.state.reconnect_attempt >= len(RECONNECT_DELAYS):
            bridge_logger.log_connection_transition(
                previous.value, ConnectionPhase.DISCONNECTED.value,
                reconnect_attempt=self.state.reconnect_attempt, retrying=False
            )
            return

        delay = RECONNECT_DELAYS[self.state.reconnect_attempt]
        self.state.reconnect_attempt += 1
        self.state.phase = ConnectionPhase.RECONNECTING
        bridge_logger.log_connection_transition(
            previous.value, ConnectionPhase.RECONNECTING.value,
            host=params.host, delay=delay, reconnect_attempt=self.state.reconnect_attempt
        )

        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_after(delay, params))

    async def _reconnect_after(self, delay: float, params: ConnectionParams):
        await self._sleep(delay)
        try:
            await self._start_connect(params, manual=False)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Reconnection failed", host=params.host, attempt=self.state.reconnect_attempt, error=str(e))
            self.handle_disconnect()
        else:
            self.state.reconnect_attempt = 0

    def _on_engine_disconnected(self, *args: Any):
        logger.warning("Engine session disconnected", host=self.state.host)
        self.handle_disconnect()

    def _on_engine_error(self, error: Any = None):
        logger.error("Engine session error", host=self.state.host, error=str(error))
        self.handle_disconnect()

    def _cancel_reconnect(self):
        task = self._reconnect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._reconnect_task = None

    def _detach_engine(self) -> Optional[EngineClient]:
        for subscription in self._engine_subscriptions:
            subscription.cancel()
        self._engine_subscriptions = []
        engine, self.engine = self.engine, None
        return engine

    async def _discard_engine(self):
        engine = self._detach_engine()
        if engine is not None:
            await self._close_quietly(engine)

    async def _close_quietly(self, engine: EngineClient):
        try:
            await engine.close()
        except Exception as e:
            logger.debug("Ignoring engine close error", error=str(e))

    async def close(self):
        """Shut the session down without triggering reconnection"""

        self._cancel_reconnect()
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        await self._discard_engine()
        self.discovery_cache.invalidate()
        self.state.mark_disconnected()

    def get_status(self) -> Dict[str, Any]:
        """Connection status without triggering a connect"""

        status: Dict[str, Any] = {
            "connected": self.is_connected,
            "connectionState": self.state.phase.value,
            "host": self.state.host
        }

        if self.engine is not None:
            components = self.engine.components
            status["componentCount"] = len(components)
            status["controlCount"] = sum(len(c.controls) for c in components.values())
            status["pollingInterval"] = self.state.polling_interval
            if self.state.component_filter:
                status["filter"] = self.state.component_filter
            uptime = self.state.uptime_ms()
            if uptime is not None:
                status["uptime"] = uptime

        if self.state.reconnect_attempt > 0:
            status["reconnectAttempt"] = self.state.reconnect_attempt

        return status
