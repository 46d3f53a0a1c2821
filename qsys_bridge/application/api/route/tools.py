from typing import Annotated, Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request

from qsys_bridge.domain.orchestration.bridge_orchestrator import BridgeOrchestrator

router = APIRouter(prefix="/api/v1/tools", tags=["tools"])


def get_orchestrator(request: Request) -> BridgeOrchestrator:
    return request.app.state.orchestrator


# Tool catalogue, optionally narrowed to one category
@router.get("")
async def list_tools(
    orchestrator: Annotated[BridgeOrchestrator, Depends(get_orchestrator)],
    category: Optional[str] = None
):
    registry = orchestrator.registry
    if category:
        tools = await registry.get_tools_by_category(category)
    else:
        tools = await registry.get_available_tools()
    return {"tools": tools, "count": len(tools)}


# One synchronous tool call; the body is the tool's argument object
@router.post("/{name}")
async def call_tool(
    name: str,
    orchestrator: Annotated[BridgeOrchestrator, Depends(get_orchestrator)],
    arguments: Annotated[Optional[Dict[str, Any]], Body()] = None
):
    if await orchestrator.registry.get_tool_info(name) is None:
        raise HTTPException(status_code=404, detail=f"Unknown tool: {name}")

    response = await orchestrator.call_tool(name, arguments or {})
    return response.to_mcp()
