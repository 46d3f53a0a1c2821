"""HTTP, WebSocket, MCP and CLI surfaces over the shared orchestrator."""

import json

import pytest
from fastapi.testclient import TestClient
from mcp.server.fastmcp.exceptions import ToolError

from qsys_bridge.__main__ import build_parser
from qsys_bridge.application.mcp.mcp_server import create_mcp_server
from qsys_bridge.application.websocket.ws_server import create_app
from qsys_bridge.domain.orchestration.bridge_orchestrator import BridgeOrchestrator

from conftest import FakeEngineFactory, FakeSocketOpener, RecordingSleep


@pytest.fixture
def bridge(config):
    return BridgeOrchestrator(
        config,
        engine_factory=FakeEngineFactory(),
        socket_opener=FakeSocketOpener(),
        sleep=RecordingSleep()
    )


@pytest.fixture
def client(bridge):
    with TestClient(create_app(bridge)) as test_client:
        yield test_client


class TestHttp:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["engine"]["connected"] is False

    def test_list_tools(self, client):
        data = client.get("/api/v1/tools").json()

        assert data["count"] == 7
        assert all("inputSchema" in tool for tool in data["tools"])

    def test_list_tools_by_category(self, client):
        data = client.get("/api/v1/tools", params={"category": "monitoring"}).json()

        assert [tool["name"] for tool in data["tools"]] == ["qsys_monitor", "qsys_record_controls"]

    def test_call_tool(self, client):
        response = client.post("/api/v1/tools/qsys_get", json={"controls": ["Mixer.gain", "Mixer.missing"]})

        assert response.status_code == 200
        result = response.json()
        assert "isError" not in result
        items = json.loads(result["content"][0]["text"])
        assert items[0]["value"] == 0.0
        assert items[1]["code"] == "not_found"

    def test_call_tool_without_body(self, client):
        result = client.post("/api/v1/tools/qsys_status").json()

        assert json.loads(result["content"][0]["text"])["connected"] is False

    def test_tool_error_envelope(self, client):
        result = client.post("/api/v1/tools/qsys_set", json={"controls": []}).json()

        assert result["isError"] is True
        assert json.loads(result["content"][0]["text"])["code"] == "invalid_argument"

    def test_unknown_tool_is_404(self, client):
        assert client.post("/api/v1/tools/qsys_reboot", json={}).status_code == 404


class TestWebSocket:

    def test_tool_call_round_trip(self, client):
        with client.websocket_connect("/ws/tools/console-1") as websocket:
            hello = websocket.receive_json()
            websocket.send_json({"type": "tool_call", "id": "42", "name": "qsys_status", "arguments": {}})
            reply = websocket.receive_json()

        assert hello["type"] == "connection"
        assert hello["status"] == "connected"
        assert reply["type"] == "tool_result"
        assert reply["id"] == "42"
        assert reply["client_id"] == "console-1"
        assert json.loads(reply["result"]["content"][0]["text"])["connectionState"] == "disconnected"

    def test_unsupported_message(self, client):
        with client.websocket_connect("/ws/tools/console-2") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "subscribe"})
            reply = websocket.receive_json()

        assert reply["type"] == "error"
        assert reply["payload"]["error"] == "Unsupported message type: subscribe"

    def test_malformed_tool_call(self, client):
        with client.websocket_connect("/ws/tools/console-3") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "tool_call", "arguments": {}})
            reply = websocket.receive_json()

        assert reply["type"] == "error"
        assert reply["error_code"] == "bad_message"


class TestMcp:

    @pytest.mark.asyncio
    async def test_lists_tools(self, bridge):
        server = create_mcp_server(bridge)

        tools = await server.list_tools()

        assert {tool.name for tool in tools} == set(bridge.registry.tools)
        discover = next(tool for tool in tools if tool.name == "qsys_discover")
        assert "includeControls" in discover.inputSchema["properties"]
        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_error_responses_raise_tool_error(self, bridge):
        bridge.config.host = None
        server = create_mcp_server(bridge)

        with pytest.raises(ToolError, match="QSYS_HOST"):
            await server.call_tool("qsys_get", {"controls": ["Mixer.gain"]})
        await bridge.shutdown()


class TestCli:

    def test_default_command(self):
        assert build_parser().parse_args([]).command is None

    def test_serve_options(self):
        args = build_parser().parse_args(["serve", "--bind", "0.0.0.0", "--listen-port", "9000"])

        assert args.command == "serve"
        assert args.bind == "0.0.0.0"
        assert args.listen_port == 9000
