"""
Tools module for agent capabilities.
"""

from .base import (
    Tool,
    ToolContext,
    ToolExecutor,
    ToolParameter,
    ToolResult,
    ToolServerState,
)
from .builtin import create_memory_tools, create_system_tools
from .registry import ToolRegistry

__all__ = [
    "Tool",
    "ToolContext",
    "ToolExecutor",
    "ToolParameter",
    "ToolResult",
    "ToolServerState",
    "ToolRegistry",
    "create_memory_tools",
    "create_system_tools",
]
