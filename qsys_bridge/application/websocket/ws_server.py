from contextlib import asynccontextmanager
from typing import Dict, Any, Set
from datetime import datetime, timezone
import asyncio

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
import structlog

from qsys_bridge.application.api.route.tools import router as tools_router
from qsys_bridge.domain.orchestration.bridge_orchestrator import BridgeOrchestrator
from .schema.events import (
    BaseEvent, ConnectionEvent, ErrorEvent, EventType, ToolCallMessage, ToolResultMessage
)

logger = structlog.get_logger(__name__)


class ClientRegistry:
    """Tracks connected WebSocket clients and serializes sends per client"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self._send_locks: Dict[str, asyncio.Lock] = {}

    async def connect(self, websocket: WebSocket, client_id: str):
        await websocket.accept()
        self.active_connections[client_id] = websocket
        self._send_locks[client_id] = asyncio.Lock()
        logger.info("WebSocket client connected", client_id=client_id)

    def disconnect(self, client_id: str):
        self.active_connections.pop(client_id, None)
        self._send_locks.pop(client_id, None)
        logger.info("WebSocket client disconnected", client_id=client_id)

    async def send_event(self, client_id: str, event: BaseEvent):
        websocket = self.active_connections.get(client_id)
        lock = self._send_locks.get(client_id)
        if websocket is None or lock is None:
            return
        event.client_id = client_id
        async with lock:
            await websocket.send_json(event.model_dump(mode="json"))

    async def send_error(self, client_id: str, message: str, error_code: str = "bad_message"):
        await self.send_event(client_id, ErrorEvent(payload={"error": message}, error_code=error_code))


def create_app(orchestrator: BridgeOrchestrator) -> FastAPI:
    """HTTP and WebSocket surface over the shared tool executor"""

    clients = ClientRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await orchestrator.start()
        logger.info("HTTP server started")
        try:
            yield
        finally:
            for client_id in list(clients.active_connections):
                clients.disconnect(client_id)
            await orchestrator.shutdown()
            logger.info("HTTP server shutdown")

    app = FastAPI(title="Q-SYS Bridge", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.clients = clients

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(tools_router)

    @app.websocket("/ws/tools/{client_id}")
    async def tools_websocket(websocket: WebSocket, client_id: str):
        """Tool calls over a WebSocket; results are correlated by call id"""

        await clients.connect(websocket, client_id)
        pending: Set[asyncio.Task] = set()

        try:
            await clients.send_event(
                client_id,
                ConnectionEvent(status="connected", engine_connected=orchestrator.connection.is_connected)
            )

            while True:
                data = await websocket.receive_json()

                if not isinstance(data, dict) or data.get("type") != EventType.TOOL_CALL.value:
                    kind = data.get("type") if isinstance(data, dict) else type(data).__name__
                    await clients.send_error(client_id, f"Unsupported message type: {kind}")
                    continue

                try:
                    message = ToolCallMessage.model_validate(data)
                except ValidationError as e:
                    await clients.send_error(client_id, f"Invalid tool call: {e.error_count()} problem(s)")
                    continue

                # Calls run concurrently so a long recording does not block the socket
                task = asyncio.create_task(run_tool_call(client_id, message))
                pending.add(task)
                task.add_done_callback(pending.discard)

        except WebSocketDisconnect:
            logger.info("Client disconnected", client_id=client_id)
        except Exception as e:
            logger.error("WebSocket error", error=str(e), client_id=client_id)
        finally:
            clients.disconnect(client_id)
            for task in pending:
                task.cancel()

    async def run_tool_call(client_id: str, message: ToolCallMessage):
        response = await orchestrator.call_tool(message.name, message.arguments)
        try:
            await clients.send_event(client_id, ToolResultMessage(id=message.id, result=response.to_mcp()))
        except Exception as e:
            logger.warning("Could not deliver tool result", client_id=client_id, call_id=message.id, error=str(e))

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "engine": orchestrator.connection.get_status(),
            "active_connections": len(clients.active_connections),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    return app
