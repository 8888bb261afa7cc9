"""
Built-in tools every session gets: long-term memory access, the quick and
temporary memory notes, and (when self-modification is allowed) a restart
request.
"""

import structlog

from ..memory.vector import VectorMemory
from ..memory.workspace import QuickMemory
from .base import Tool, ToolContext, ToolParameter, ToolResult

logger = structlog.get_logger()

DEFAULT_SEARCH_LIMIT = 5
RESTART_OUTPUT = "Server restarting... The system will reboot and you will resume this task."


def create_memory_tools(
    vector_memory: VectorMemory,
    quick_memory: QuickMemory,
    tmp_memory: QuickMemory,
) -> list[Tool]:
    """Tools over the session's vector memory and markdown notes."""

    async def memory_save(text: str, category: str | None = None) -> ToolResult:
        if not text or not text.strip():
            return ToolResult(success=False, output="Nothing to save")
        metadata = {"type": "manual", "salience": 0.8}
        if category:
            metadata["category"] = category
        entry_id = await vector_memory.add(text, metadata)
        return ToolResult(success=True, output=f"Saved to memory (id: {entry_id})")

    async def memory_search(query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> ToolResult:
        hits = await vector_memory.search(query, limit=int(limit))
        if not hits:
            return ToolResult(success=True, output="No memories found.")
        lines = [
            f"- [{hit.similarity:.2f}] ({hit.entry.metadata.timestamp[:10]}) {hit.entry.text}"
            for hit in hits
        ]
        return ToolResult(success=True, output="Found in memory:\n" + "\n".join(lines))

    async def memory_update_quick(content: str) -> ToolResult:
        quick_memory.write(content)
        return ToolResult(success=True, output=f"{quick_memory.filename} updated")

    async def memory_update_tmp(content: str) -> ToolResult:
        tmp_memory.write(content)
        return ToolResult(success=True, output=f"{tmp_memory.filename} updated")

    async def memory_clear_tmp() -> ToolResult:
        tmp_memory.clear()
        return ToolResult(success=True, output=f"{tmp_memory.filename} cleared")

    return [
        Tool(
            name="memory_save",
            description="Save a memory to long-term vector memory for future retrieval.",
            parameters=[
                ToolParameter(
                    name="text",
                    param_type="string",
                    description="The memory to save.",
                ),
                ToolParameter(
                    name="category",
                    param_type="string",
                    description='Optional category (e.g. "fact", "preference", "task").',
                    required=False,
                ),
            ],
            handler=memory_save,
        ),
        Tool(
            name="memory_search",
            description="Search long-term memory using semantic similarity.",
            parameters=[
                ToolParameter(
                    name="query",
                    param_type="string",
                    description="What to search for.",
                ),
                ToolParameter(
                    name="limit",
                    param_type="number",
                    description="Max results to return (default 5).",
                    required=False,
                ),
            ],
            handler=memory_search,
        ),
        Tool(
            name="memory_update_quick",
            description=(
                f"Replace {quick_memory.filename}, the quick-reference memory "
                "loaded into every conversation."
            ),
            parameters=[
                ToolParameter(
                    name="content",
                    param_type="string",
                    description=f"Full new content of {quick_memory.filename}.",
                ),
            ],
            handler=memory_update_quick,
        ),
        Tool(
            name="memory_update_tmp",
            description=(
                f"Replace {tmp_memory.filename}, short-term context that "
                "persists across quick restarts."
            ),
            parameters=[
                ToolParameter(
                    name="content",
                    param_type="string",
                    description=f"Full new content of {tmp_memory.filename}.",
                ),
            ],
            handler=memory_update_tmp,
        ),
        Tool(
            name="memory_clear_tmp",
            description=f"Clear {tmp_memory.filename} once the task is done.",
            parameters=[],
            handler=memory_clear_tmp,
        ),
    ]


def create_system_tools() -> list[Tool]:
    """Tools that act on the running agent process."""

    async def self_restart(ctx: ToolContext, reason: str = "") -> ToolResult:
        if not ctx.allow_self_modify:
            return ToolResult(success=False, output="Self-modification is disabled")
        logger.warning("Restart requested", session_id=ctx.session_id, reason=reason)
        return ToolResult(success=True, output=RESTART_OUTPUT, restart=True)

    return [
        Tool(
            name="self_restart",
            description=(
                "Restart the agent process to apply changes. The current task "
                "resumes after the reboot."
            ),
            parameters=[
                ToolParameter(
                    name="reason",
                    param_type="string",
                    description="Reason for the restart.",
                    required=False,
                ),
            ],
            handler=self_restart,
            wants_context=True,
        ),
    ]
