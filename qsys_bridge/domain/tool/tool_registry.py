from typing import Dict, List, Any, Optional, Awaitable, Callable, Type
from pydantic import BaseModel


ToolHandler = Callable[[BaseModel], Awaitable[Any]]


class ToolRegistry:
    """Registry for the tools exposed to the calling client"""

    def __init__(self):
        self.tools: Dict[str, Dict[str, Any]] = {}
        self.tool_categories: Dict[str, List[str]] = {}

    def register_tool(
        self,
        tool_id: str,
        description: str,
        arguments: Type[BaseModel],
        handler: ToolHandler,
        category: str = "general"
    ):
        """Register a new tool"""

        self.tools[tool_id] = {
            "id": tool_id,
            "description": description,
            "category": category,
            "arguments": arguments,
            "handler": handler
        }

        if category not in self.tool_categories:
            self.tool_categories[category] = []
        self.tool_categories[category].append(tool_id)

    async def get_available_tools(self) -> List[Dict[str, Any]]:
        """Get the public declaration of every tool"""

        return [self.describe(tool) for tool in self.tools.values()]

    async def get_tool_info(self, tool_id: str) -> Optional[Dict[str, Any]]:
        """Get information about a specific tool"""

        return self.tools.get(tool_id)

    async def get_tools_by_category(self, category: str) -> List[Dict[str, Any]]:
        """Get tools by category"""

        tool_ids = self.tool_categories.get(category, [])
        return [self.describe(self.tools[tool_id]) for tool_id in tool_ids if tool_id in self.tools]

    @staticmethod
    def describe(tool: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "name": tool["id"],
            "description": tool["description"],
            "category": tool["category"],
            "inputSchema": tool["arguments"].model_json_schema(by_alias=True)
        }
