"""
Tool registry for managing available tools.
"""

import json
from typing import Any

import structlog

from ..llm.base import ToolDefinition
from .base import Tool, ToolContext, ToolResult, ToolServerState

logger = structlog.get_logger()


class ToolRegistry:
    """In-process tool executor.

    Each agent owns its registry. Handlers that raise are reported as failed
    results rather than propagating into the turn loop.
    """

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        self._servers: dict[str, ToolServerState] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Register a tool, replacing any tool with the same name."""
        self._tools[tool.name] = tool
        logger.debug("Tool registered", tool_name=tool.name)

    def unregister(self, name: str) -> None:
        """Unregister a tool."""
        if name in self._tools:
            del self._tools[name]
            logger.debug("Tool unregistered", tool_name=name)

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools.keys())

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def list_tools(self, ctx: ToolContext | None = None) -> list[ToolDefinition]:
        """Tool definitions handed to the LLM."""
        return [tool.to_definition() for tool in self._tools.values()]

    def set_server_state(self, state: ToolServerState) -> None:
        self._servers[state.id] = state

    def server_states(self) -> list[ToolServerState]:
        return list(self._servers.values())

    async def execute(self, name: str, args_json: str, ctx: ToolContext) -> ToolResult:
        """Execute a tool by name with raw JSON arguments."""
        tool = self.get(name)
        if tool is None:
            return ToolResult(success=False, output=f"Tool '{name}' not found")

        arguments = _decode_arguments(args_json)
        if arguments is None:
            return ToolResult(success=False, output=f"Invalid JSON arguments for '{name}'")

        try:
            logger.info("Executing tool", tool_name=name, session_id=ctx.session_id)
            result = await tool.execute(ctx, **arguments)
            logger.info("Tool executed", tool_name=name, success=result.success)
            return result
        except Exception as e:
            logger.error("Tool execution error", tool_name=name, error=str(e))
            return ToolResult(success=False, output=str(e))


def _decode_arguments(args_json: str) -> dict[str, Any] | None:
    if not args_json or not args_json.strip():
        return {}
    try:
        value = json.loads(args_json)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None
