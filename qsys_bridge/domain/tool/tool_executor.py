from typing import Any, Dict, Optional
import time
import uuid

import structlog

from qsys_bridge.domain.errors import BridgeError
from qsys_bridge.domain.response.response_envelope import ResponseEnvelope, ToolResponse
from qsys_bridge.domain.tool.tool_registry import ToolRegistry
from qsys_bridge.domain.tool.tool_validator import ToolParameterValidator
from qsys_bridge.infrastructure.observability.logging import bridge_logger, metrics

logger = structlog.get_logger(__name__)


# Dispatch boundary: every outcome becomes a ToolResponse
class ToolExecutor:
    def __init__(self, registry: ToolRegistry, envelope: ResponseEnvelope):
        self.registry = registry
        self.envelope = envelope

    async def execute_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResponse:
        tool = await self.registry.get_tool_info(name)
        if tool is None:
            return self.envelope.error(f"Unknown tool: {name}", f"Available tools: {', '.join(self.registry.tools)}")

        arguments = arguments or {}
        start = time.monotonic()
        error: Optional[str] = None

        with structlog.contextvars.bound_contextvars(call_id=uuid.uuid4().hex[:8]):
            try:
                parsed = ToolParameterValidator.validate_tool_call(tool, arguments)
                response = await tool["handler"](parsed)

                if not isinstance(response, ToolResponse) or not response.content:
                    error = "invalid response"
                    response = self.envelope.error(
                        "Tool returned invalid response",
                        f"Tool {name} failed to return proper content"
                    )

            except BridgeError as e:
                error = e.message
                response = self.envelope.error(e)

            except Exception as e:
                logger.exception("Tool execution failed", tool_name=name)
                error = str(e)
                response = self.envelope.error(f"Tool execution failed: {e}", f"Check parameters for {name}")

            duration_ms = round((time.monotonic() - start) * 1000, 2)
            bridge_logger.log_tool_execution(
                tool_name=name,
                input_data=arguments,
                duration_ms=duration_ms,
                success=not response.is_error,
                error=error
            )
            metrics.record_latency(f"tool.{name}", duration_ms)
            metrics.increment_counter(f"tool.{name}.calls")
            if response.is_error:
                metrics.increment_counter(f"tool.{name}.errors")

        return response
