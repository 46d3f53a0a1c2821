"""
MCP stdio surface.

Each tool is a thin FastMCP wrapper that forwards its arguments to the shared
tool executor, so validation, logging and response shaping stay in one place.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Union
import atexit

import structlog
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError

from qsys_bridge.domain.control.control_access import ControlUpdate
from qsys_bridge.domain.orchestration.bridge_orchestrator import BridgeOrchestrator

logger = structlog.get_logger(__name__)

SERVER_NAME = "qsys-bridge"


def _without_none(arguments: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in arguments.items() if value is not None}


def create_mcp_server(orchestrator: BridgeOrchestrator) -> FastMCP:
    """Build the FastMCP server bound to an orchestrator"""

    @asynccontextmanager
    async def lifespan(server: FastMCP) -> AsyncIterator[Dict[str, Any]]:
        await orchestrator.start()
        try:
            yield {}
        finally:
            await orchestrator.shutdown()

    mcp = FastMCP(SERVER_NAME, lifespan=lifespan)
    describe = {tool_id: tool["description"] for tool_id, tool in orchestrator.registry.tools.items()}

    # Spill files are removed even when the stdio loop dies without a clean shutdown
    atexit.register(orchestrator.envelope.cleanup)

    async def call(name: str, arguments: Dict[str, Any]) -> str:
        response = await orchestrator.call_tool(name, _without_none(arguments))
        if response.is_error:
            raise ToolError(response.text)
        return response.text

    @mcp.tool(name="qsys_connect", description=describe["qsys_connect"])
    async def qsys_connect(
        host: Optional[str] = None,
        port: Optional[int] = None,
        secure: Optional[bool] = None,
        pollingInterval: Optional[int] = None,
        filter: Optional[str] = None
    ) -> str:
        return await call("qsys_connect", {
            "host": host,
            "port": port,
            "secure": secure,
            "pollingInterval": pollingInterval,
            "filter": filter
        })

    @mcp.tool(name="qsys_status", description=describe["qsys_status"])
    async def qsys_status(detailed: bool = False) -> str:
        return await call("qsys_status", {"detailed": detailed})

    @mcp.tool(name="qsys_discover", description=describe["qsys_discover"])
    async def qsys_discover(component: Optional[str] = None, includeControls: bool = False) -> str:
        return await call("qsys_discover", {"component": component, "includeControls": includeControls})

    @mcp.tool(name="qsys_get", description=describe["qsys_get"])
    async def qsys_get(controls: List[str]) -> str:
        return await call("qsys_get", {"controls": controls})

    @mcp.tool(name="qsys_set", description=describe["qsys_set"])
    async def qsys_set(controls: List[ControlUpdate]) -> str:
        return await call("qsys_set", {"controls": [update.model_dump() for update in controls]})

    @mcp.tool(name="qsys_monitor", description=describe["qsys_monitor"])
    async def qsys_monitor(
        action: Literal["start", "read", "stop"],
        id: str,
        controls: Optional[List[str]] = None
    ) -> str:
        return await call("qsys_monitor", {"action": action, "id": id, "controls": controls})

    @mcp.tool(name="qsys_record_controls", description=describe["qsys_record_controls"])
    async def qsys_record_controls(
        duration: Union[int, float],
        filename: Optional[str] = None,
        filterRegex: Optional[str] = None
    ) -> str:
        return await call("qsys_record_controls", {
            "duration": duration,
            "filename": filename,
            "filterRegex": filterRegex
        })

    logger.debug("MCP tools registered", tools=list(describe))
    return mcp


def run_stdio(orchestrator: BridgeOrchestrator):
    """Serve tools over stdio until the client goes away"""
    create_mcp_server(orchestrator).run(transport="stdio")
