from typing import Any, Callable, Awaitable, Dict, List, Optional
import asyncio

import structlog

from qsys_bridge.domain.connection.connection_manager import ConnectionManager, SocketOpener
from qsys_bridge.domain.control.control_access import ControlAccess
from qsys_bridge.domain.discovery.discovery_cache import DiscoveryCache, DiscoveryService
from qsys_bridge.domain.engine.engine_client import EngineClient, EngineClientFactory
from qsys_bridge.domain.monitor.event_monitor import EventMonitor
from qsys_bridge.domain.recording.recorder import Recorder, StopReason
from qsys_bridge.domain.response.response_envelope import ResponseEnvelope, ToolResponse
from qsys_bridge.domain.tool.tool_arguments import (
    ConnectArguments, DiscoverArguments, GetArguments, MonitorArguments,
    RecordArguments, SetArguments, StatusArguments
)
from qsys_bridge.domain.tool.tool_executor import ToolExecutor
from qsys_bridge.domain.tool.tool_registry import ToolRegistry
from qsys_bridge.infrastructure.config.settings import BridgeConfig
from qsys_bridge.infrastructure.engine.factory_loader import load_engine_factory
from qsys_bridge.infrastructure.observability.logging import metrics
from qsys_bridge.infrastructure.transport.socket_opener import open_control_socket

logger = structlog.get_logger(__name__)

AUTO_CONNECT_NOTE = "Auto-connects if needed using QSYS_HOST env var."


class BridgeOrchestrator:
    """Wires the bridge components together and serves the tool surface"""

    def __init__(
        self,
        config: BridgeConfig,
        engine_factory: Optional[EngineClientFactory] = None,
        socket_opener: SocketOpener = open_control_socket,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        envelope: Optional[ResponseEnvelope] = None
    ):
        self.config = config
        self._engine_factory = engine_factory

        self.discovery_cache = DiscoveryCache()
        self.connection = ConnectionManager(
            config,
            self._create_engine,
            self.discovery_cache,
            socket_opener=socket_opener,
            sleep=sleep
        )
        self.controls = ControlAccess(self.connection)
        self.discovery = DiscoveryService(self.connection, self.discovery_cache)
        self.monitor = EventMonitor(self.controls)
        self.recorder = Recorder(self.connection, config.effective_recordings_dir)
        self.envelope = envelope or ResponseEnvelope(config.spill_dir, config.max_response_bytes)

        # Recording must halt before anything else reacts to a lost session
        self.connection.add_disconnect_listener(self.recorder.handle_disconnect)
        self.connection.add_disconnect_listener(self.monitor.handle_disconnect)

        self.registry = ToolRegistry()
        self._register_tools()
        self.executor = ToolExecutor(self.registry, self.envelope)

        self._background_tasks: List[asyncio.Task] = []

    async def _create_engine(self, **kwargs: Any) -> EngineClient:
        if self._engine_factory is None:
            self._engine_factory = load_engine_factory(self.config.engine_client)
        return await self._engine_factory(**kwargs)

    def _register_tools(self):
        register = self.registry.register_tool

        register(
            "qsys_connect",
            "Connect to a Q-SYS Core. Host defaults to the saved configuration; "
            "an identical live connection is reused.",
            ConnectArguments, self.tool_connect, category="connection"
        )
        register(
            "qsys_status",
            "Get connection status and system information. Shows current connection state without auto-connecting.",
            StatusArguments, self.tool_status, category="connection"
        )
        register(
            "qsys_discover",
            f"Discover available components and their controls. {AUTO_CONNECT_NOTE}",
            DiscoverArguments, self.tool_discover, category="discovery"
        )
        register(
            "qsys_get",
            f"Get current values from controls. {AUTO_CONNECT_NOTE}",
            GetArguments, self.tool_get, category="control"
        )
        register(
            "qsys_set",
            f"Set control values. {AUTO_CONNECT_NOTE}",
            SetArguments, self.tool_set, category="control"
        )
        register(
            "qsys_monitor",
            "Start, read or stop a buffered monitor of control changes. Reads drain the buffer.",
            MonitorArguments, self.tool_monitor, category="monitoring"
        )
        register(
            "qsys_record_controls",
            "Record every control change to a CSV file for a fixed duration and return the rows.",
            RecordArguments, self.tool_record_controls, category="monitoring"
        )

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResponse:
        return await self.executor.execute_tool(name, arguments)

    # Tool handlers

    async def tool_connect(self, args: ConnectArguments) -> ToolResponse:
        params = self.config.connection_params(args.host)
        overrides: Dict[str, Any] = {}
        if args.filter is not None:
            overrides["component_filter"] = args.filter
        if args.port is not None:
            overrides["port"] = args.port
        if args.secure is not None:
            overrides["secure"] = args.secure
        if args.polling_interval is not None:
            overrides["polling_interval"] = args.polling_interval
        params = params.model_copy(update=overrides)

        if self.connection.is_connected and self.connection.state.matches(params):
            engine = self.connection.require_engine()
            return self.envelope.success({
                "connected": True,
                "alreadyConnected": True,
                "host": params.host,
                "port": params.port,
                "secure": params.secure,
                "pollingInterval": params.effective_polling_interval,
                "componentsLoaded": len(engine.components),
                "filterApplied": params.component_filter or None
            })

        result = await self.connection.connect(params)
        return self.envelope.success(result)

    async def tool_status(self, args: StatusArguments) -> ToolResponse:
        status = self.connection.get_status()

        session = self.recorder.session
        status["recording"] = {
            "active": self.recorder.is_recording,
            "file": str(session.path) if session is not None else None
        }
        status["monitors"] = self.monitor.get_stats()
        status["discoveryCache"] = self.discovery_cache.get_stats()

        if args.detailed:
            engine = self.connection.engine
            if engine is not None:
                status["components"] = [
                    {"name": name, "type": component.type or "unknown", "controlCount": len(component.controls)}
                    for name, component in engine.components.items()
                ]
            status["metrics"] = metrics.get_metrics_summary()

        return self.envelope.success(status)

    async def tool_discover(self, args: DiscoverArguments) -> ToolResponse:
        components = await self.discovery.discover(args.component, args.include_controls)
        return self.envelope.success(components)

    async def tool_get(self, args: GetArguments) -> ToolResponse:
        return self.envelope.success(await self.controls.get(args.controls))

    async def tool_set(self, args: SetArguments) -> ToolResponse:
        return self.envelope.success(await self.controls.set(args.controls))

    async def tool_monitor(self, args: MonitorArguments) -> ToolResponse:
        if args.action == "start":
            result = await self.monitor.start(args.id, args.controls)
        elif args.action == "read":
            result = self.monitor.read(args.id)
        else:
            result = self.monitor.stop(args.id)
        return self.envelope.success(result)

    async def tool_record_controls(self, args: RecordArguments) -> ToolResponse:
        result = await self.recorder.record(args.duration, args.filename, args.filter_regex)
        return self.envelope.success(result)

    # Lifecycle

    async def start(self):
        """Start background work: the spill sweeper and an optional auto-connect"""

        loop = asyncio.get_running_loop()
        self._background_tasks.append(loop.create_task(self.envelope.run_sweeper()))

        if self.config.host and self.config.auto_connect:
            self._background_tasks.append(loop.create_task(self._auto_connect()))

        logger.info("Bridge started", host=self.config.host, auto_connect=self.config.auto_connect)

    async def _auto_connect(self):
        try:
            await self.connection.connect(self.config.connection_params())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Auto-connect failed", host=self.config.host, error=str(e))

    async def shutdown(self):
        """Stop recording and monitors, close the engine session, remove spill files"""

        self.recorder.stop(StopReason.SHUTDOWN)
        self.monitor.stop_all()
        await self.connection.close()

        for task in self._background_tasks:
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks = []

        removed = self.envelope.cleanup()
        logger.info("Bridge shut down", spill_files_removed=removed)
