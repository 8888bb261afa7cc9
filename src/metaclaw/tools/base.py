"""
Base classes for tools.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Coroutine, Protocol

from ..llm.base import ToolDefinition


@dataclass
class ToolResult:
    """Result from a tool execution.

    ``image`` carries a data URL (or ``image_url`` a remote URL) that is
    attached to the tool message as an image part. ``restart`` asks the
    agent to end the turn and reboot.
    """

    success: bool
    output: str = ""
    image: str | None = None
    image_url: str | None = None
    restart: bool = False

    @property
    def attached_image(self) -> str | None:
        return self.image or self.image_url

    def render(self) -> str:
        return self.output if self.success else f"Error: {self.output}"


@dataclass
class ToolContext:
    """Per-session facts a tool may need while running."""

    session_id: str
    workspace_dir: Path
    restrict_to_workspace: bool = True
    allow_self_modify: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolServerState:
    """Connection state of an external tool server."""

    id: str
    name: str
    status: str  # connected, connecting, error, stopped
    tools: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def connected(self) -> bool:
        return self.status == "connected"


class ToolExecutor(Protocol):
    """What the agent needs from a tool backend."""

    def list_tools(self, ctx: ToolContext) -> list[ToolDefinition]: ...

    async def execute(self, name: str, args_json: str, ctx: ToolContext) -> ToolResult: ...

    def server_states(self) -> list[ToolServerState]: ...


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    param_type: str  # string, integer, number, boolean, array, object
    description: str
    required: bool = True
    default: Any = None
    enum: list[str] | None = None


@dataclass
class Tool:
    """
    Simple tool wrapper that can be created from a function.

    The handler receives the decoded arguments as keyword arguments, plus
    ``ctx`` when ``wants_context`` is set.
    """

    name: str
    description: str
    parameters: list[ToolParameter]
    handler: Callable[..., Coroutine[Any, Any, ToolResult]]
    wants_context: bool = False

    def get_parameters_schema(self) -> dict[str, Any]:
        """Convert parameters to JSON Schema format."""
        properties = {}
        required = []

        for param in self.parameters:
            prop = {
                "type": param.param_type,
                "description": param.description,
            }
            if param.enum:
                prop["enum"] = param.enum
            if param.default is not None:
                prop["default"] = param.default

            properties[param.name] = prop

            if param.required:
                required.append(param.name)

        return {
            "type": "object",
            "properties": properties,
            "required": required,
        }

    def to_definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.get_parameters_schema(),
        )

    async def execute(self, ctx: ToolContext, **kwargs: Any) -> ToolResult:
        """Execute the tool handler."""
        if self.wants_context:
            return await self.handler(ctx=ctx, **kwargs)
        return await self.handler(**kwargs)
