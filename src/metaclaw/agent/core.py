"""
Core agent implementation - one long-lived agent per session.

For every incoming message the agent:
1. Fits the history into the context window (compression, then pruning)
2. Recalls related long-term memories and builds the system prompt from
   IDENTITY.md, USER.md, MEMORY.md, TMP_MEMORY.md, recalled memory and skills
3. Iterates with the LLM, executing requested tools until a final answer,
   a cancellation, a restart request or the iteration limit
4. Persists every message to the turn log and feeds it to vector memory

Lifecycle events go to the session's ``EventBus``.
"""

import asyncio
import base64
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from ..cancellation import CancellationToken
from ..config import Settings, get_settings
from ..llm.base import (
    BaseLLM,
    ChatMessage,
    ImagePart,
    TextPart,
    ToolCall,
    VisionNotSupportedError,
    strip_images,
)
from ..memory.recall import (
    build_autonomous_cue,
    build_cues,
    compress_recalled,
    recall_budgets,
    render_recalled,
)
from ..memory.vector import RecallOptions, VectorMemory
from ..memory.workspace import QuickMemory, WorkspaceStore
from ..skills import build_skills_prompt
from ..tokens import TokenCounter, get_token_counter
from ..tools.base import ToolContext, ToolExecutor, ToolResult
from ..tools.builtin import create_memory_tools, create_system_tools
from ..tools.registry import ToolRegistry
from .background import BackgroundQueue
from .compaction import CompactionConfig, CompactionResult, ContextWindowManager
from .events import Event, EventBus, EventType

logger = structlog.get_logger()

CANCELLED_MARKER = "[cancelled]"
REBOOT_RESPONSE = "Rebooting system... Please wait."
MAX_ITERATIONS_RESPONSE = "I reached the maximum number of tool iterations. Please try again."
PROVIDER_ERROR_RESPONSE = "I encountered an error processing your message: {error}"
SKIPPED_TOOL_OUTPUT = "Error: not executed, the turn ended first"


@dataclass
class TurnOptions:
    """Per-call overrides for ``Agent.process_message``."""

    recall: bool = True
    max_iterations: int | None = None


def cancelled_text(partial: str) -> str:
    partial = partial.rstrip()
    return f"{partial}\n\n{CANCELLED_MARKER}" if partial else CANCELLED_MARKER


class Agent:
    """Turn loop of a single session.

    Several ``process_message`` calls may overlap; each gets its own
    cancellation token, and the busy counter stays up until the last one
    returns. History changes and turn-log writes happen under a per-session
    lock, while LLM and embedding calls run outside it. An assistant message
    with tool calls and its tool results are written as one group: the
    exchange lock is held from the assistant append to the last result, so
    another turn never lands inside an open tool exchange.
    """

    def __init__(
        self,
        session_id: str,
        llm: BaseLLM,
        workspace_dir: str | Path,
        settings: Settings | None = None,
        tools: ToolExecutor | None = None,
        memory: VectorMemory | None = None,
        events: EventBus | None = None,
        compaction_config: CompactionConfig | None = None,
        recall_options: RecallOptions | None = None,
        skill_dirs: list[Path] | None = None,
        counter: TokenCounter | None = None,
    ):
        self.session_id = session_id
        self.llm = llm
        self.settings = settings or get_settings()
        self.workspace_dir = Path(workspace_dir).expanduser()
        self.counter = counter or get_token_counter()
        self.events = events or EventBus()

        self.store = WorkspaceStore(self.workspace_dir)
        self.store.ensure_defaults()
        self.quick_memory = QuickMemory(self.store, "MEMORY.md")
        self.tmp_memory = QuickMemory(self.store, "TMP_MEMORY.md")
        self.memory = memory or VectorMemory(self.workspace_dir, llm, session_id=session_id)

        self.tools: ToolExecutor = tools if tools is not None else ToolRegistry()
        if isinstance(self.tools, ToolRegistry):
            self._register_builtin_tools(self.tools)

        self.context_manager = ContextWindowManager(
            llm,
            compaction_config or self.settings.to_compaction_config(),
            self.counter,
        )
        self.recall_options = recall_options or self.settings.to_recall_options()
        self.skill_dirs = skill_dirs if skill_dirs is not None else [Path.cwd(), self.workspace_dir]
        self.background = BackgroundQueue(name=f"memory:{session_id}")

        self.history: list[ChatMessage] = self.store.load_all_turns()
        self._history_lock = asyncio.Lock()
        self._exchange_lock = asyncio.Lock()
        self._estimate_reported = False
        self._notifications: asyncio.Queue[str] = asyncio.Queue()
        self._active_tokens: set[CancellationToken] = set()
        self._busy = 0
        self._idle = asyncio.Event()
        self._idle.set()

        logger.info(
            "Agent initialized",
            session_id=session_id,
            workspace=str(self.workspace_dir),
            history_messages=len(self.history),
        )

    def _register_builtin_tools(self, registry: ToolRegistry) -> None:
        for tool in create_memory_tools(self.memory, self.quick_memory, self.tmp_memory):
            registry.register(tool)
        for tool in create_system_tools():
            registry.register(tool)

    @property
    def tool_context(self) -> ToolContext:
        return ToolContext(
            session_id=self.session_id,
            workspace_dir=self.workspace_dir,
            restrict_to_workspace=self.settings.restrict_to_workspace,
            allow_self_modify=self.settings.allow_self_modify,
        )

    def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        self.events.emit(Event(type=event_type, session_id=self.session_id, data=data))

    # Busy tracking

    def _enter_busy(self) -> None:
        self._busy += 1
        if self._busy == 1:
            self._idle.clear()
            self._emit(EventType.BUSY_CHANGE, {"busy": True})

    def _leave_busy(self) -> None:
        self._busy -= 1
        if self._busy == 0:
            self._idle.set()
            self._emit(EventType.BUSY_CHANGE, {"busy": False})

    def is_processing(self) -> bool:
        return self._busy > 0

    async def wait_for_idle(self) -> None:
        """Return once no ``process_message`` call is running."""
        if self._busy == 0:
            return
        await self._idle.wait()

    def cancel_processing(self, reason: str = "cancelled by user") -> bool:
        """Cancel every in-flight turn. Returns False when idle."""
        if not self._active_tokens:
            return False
        for token in list(self._active_tokens):
            token.cancel(reason)
        logger.info("Processing cancelled", session_id=self.session_id, turns=len(self._active_tokens))
        return True

    def inject_notification(self, text: str) -> None:
        """Queue text delivered as a user turn at the next tool iteration."""
        self._notifications.put_nowait(text)

    # History

    def get_history(self) -> list[ChatMessage]:
        return list(self.history)

    def clear_history(self) -> None:
        self.history = []
        self.store.clear_turns()
        self._emit(EventType.SYSTEM, {"message": "History cleared"})

    async def clear_memory(self) -> None:
        await self.memory.clear()
        self._emit(EventType.MEMORY_UPDATE, {"cleared": True})

    async def _write(self, message: ChatMessage, messages: list[ChatMessage] | None = None) -> None:
        async with self._history_lock:
            self.history.append(message)
            self.store.append_turn(message)
        if messages is not None:
            messages.append(message)

    async def _append(self, message: ChatMessage, messages: list[ChatMessage] | None = None) -> None:
        """Append outside any tool exchange, waiting for an open one to close."""
        async with self._exchange_lock:
            await self._write(message, messages)

    async def _snapshot(self) -> list[ChatMessage]:
        async with self._exchange_lock:
            return list(self.history)

    def _remember(self, message: ChatMessage) -> None:
        self.background.submit(lambda: self.memory.auto_add(message))

    async def _compact(self) -> CompactionResult:
        before = await self._snapshot()
        working = list(before)
        result = await self.context_manager.apply(working)
        if not result.changed:
            return result

        async with self._exchange_lock, self._history_lock:
            current = self.history
            unchanged = len(current) >= len(before) and all(
                a is b for a, b in zip(current, before)
            )
            if not unchanged:
                logger.warning("History changed during compaction, skipping", session_id=self.session_id)
                return result
            self.history = working + current[len(before):]
            self.store.rewrite_all_turns(self.history)

        self._emit(EventType.SYSTEM, {
            "message": "Context compressed" if result.compressed else "Context pruned",
            "compressed": result.compressed,
            "pruned": result.pruned,
            "tokens_before": result.tokens_before,
            "tokens_after": result.tokens_after,
            "estimated": self.counter.estimated,
        })
        return result

    # Prompt

    def build_system_prompt(self, recalled: str = "") -> str:
        parts = [
            "You are an AI personal agent running in the metaclaw system.",
            f"Session ID: {self.session_id}",
            "",
        ]

        sections = [
            ("Your Identity", self.store.read("IDENTITY.md")),
            ("About the User", self.store.read("USER.md")),
            ("Quick Memory (MEMORY.md)", self.quick_memory.read()),
            ("Temporary Memory (TMP_MEMORY.md)", self.tmp_memory.read()),
            ("Recalled Memory", recalled),
        ]
        for title, body in sections:
            if body and body.strip():
                parts.append(f"## {title}\n{body.strip()}")

        skills = build_skills_prompt(self.skill_dirs)
        if skills:
            parts.append(skills)

        restricted = self.settings.restrict_to_workspace
        parts += [
            "",
            "## Workspace",
            f"Your workspace is: {self.workspace_dir}",
            "Workspace restriction: "
            + ("ENABLED (files/exec limited to workspace)" if restricted else "DISABLED"),
            f"Self-modification: {'ENABLED' if self.settings.allow_self_modify else 'DISABLED'}",
        ]

        connected = [s for s in self.tools.server_states() if s.connected]
        if connected:
            parts += ["", "## Connected Tool Servers"]
            parts.append(
                "You have access to tools from the following external servers. "
                "Use them when relevant:"
            )
            for server in connected:
                parts.append(f"- **{server.name}** ({len(server.tools)} tools available)")

        parts += [
            "",
            "Use the provided tools to help the user. When you learn important facts, save them to memory.",
        ]
        return "\n".join(parts)

    # Recall

    async def _recall(self, cues: list[str]) -> str:
        if not self.settings.recall.enabled:
            return ""
        cues = [c for c in cues if c and c.strip()]
        if not cues:
            return ""

        try:
            hits = await self.memory.human_like_recall(cues, self.recall_options)
        except Exception as e:
            logger.warning("Memory recall failed", session_id=self.session_id, error=str(e))
            return ""
        if not hits:
            return ""

        budget = recall_budgets(self.context_manager.config.context_limit)
        rendered = render_recalled(
            hits,
            budget.raw_tokens,
            critical_count=self.settings.recall.critical_count,
            per_entry_chars=self.settings.recall.per_entry_chars,
            counter=self.counter,
        )
        section = await compress_recalled(
            self.llm,
            rendered,
            budget.compressed_tokens,
            model=self.settings.recall.summary_model,
            counter=self.counter,
        )
        self._emit(EventType.MEMORY_UPDATE, {
            "recalled": len(hits),
            "cues": len(cues),
            "tokens": self.counter.count_tokens(section),
        })
        return section

    # Images

    def resolve_image_url(self, url: str) -> str:
        """Inline workspace files as data URLs; remote and data URLs pass through."""
        if url.startswith(("data:", "http://", "https://")):
            return url
        path = Path(url)
        if not path.is_absolute():
            path = self.workspace_dir / path
        if not path.is_file():
            logger.warning("Could not resolve image", session_id=self.session_id, url=url)
            return url
        mime = mimetypes.guess_type(path.name)[0] or "image/png"
        encoded = base64.b64encode(path.read_bytes()).decode("ascii")
        return f"data:{mime};base64,{encoded}"

    def _user_message(self, text: str, images: list[str] | None) -> ChatMessage:
        if not images:
            return ChatMessage(role="user", content=text)
        parts: list[TextPart | ImagePart] = [TextPart(text=text)]
        parts += [ImagePart(url=self.resolve_image_url(url)) for url in images]
        return ChatMessage(role="user", content=parts)

    # Turn loop

    async def process_message(
        self,
        user_text: str,
        channel_id: str | None = None,
        images: list[str] | None = None,
        options: TurnOptions | None = None,
    ) -> str:
        """Run one turn and return the final response text."""
        self._enter_busy()
        token = CancellationToken()
        self._active_tokens.add(token)
        try:
            return await self._run_turn(user_text, channel_id, images, options or TurnOptions(), token)
        finally:
            self._active_tokens.discard(token)
            self._leave_busy()

    async def _chat(
        self,
        messages: list[ChatMessage],
        tools: list,
        on_chunk,
        token: CancellationToken,
    ) -> tuple[ChatMessage, list[ChatMessage]]:
        """Call the LLM; on a vision capability error retry once without images."""
        try:
            response = await self.llm.chat(messages, tools or None, on_chunk, token)
            return response, messages
        except VisionNotSupportedError as e:
            logger.warning("Model rejected images, retrying without them", error=str(e))
            stripped = strip_images(messages)
            response = await self.llm.chat(stripped, tools or None, on_chunk, token)
            return response, stripped

    async def _run_turn(
        self,
        user_text: str,
        channel_id: str | None,
        images: list[str] | None,
        options: TurnOptions,
        token: CancellationToken,
    ) -> str:
        logger.info(
            "Processing message",
            session_id=self.session_id,
            channel_id=channel_id or "unknown",
            preview=user_text[:80],
        )

        if self.counter.estimated and not self._estimate_reported:
            self._estimate_reported = True
            self._emit(EventType.SYSTEM, {
                "message": "Token counts are estimated from text length, tiktoken encoding unavailable",
                "estimated": True,
            })

        await self._compact()

        user_msg = self._user_message(user_text, images)
        await self._append(user_msg)
        self._emit(EventType.MESSAGE, {
            "role": "user",
            "content": user_text,
            "channel_id": channel_id,
            "images": images or [],
        })

        recalled = ""
        if options.recall:
            recalled = await self._recall(build_cues(user_text, self.history))
        # Queued after recall so the turn's own message is not recalled into it
        self._remember(user_msg)

        messages = [ChatMessage(role="system", content=self.build_system_prompt(recalled))]
        messages += await self._snapshot()
        ctx = self.tool_context
        tool_defs = self.tools.list_tools(ctx)
        max_iterations = options.max_iterations or self.settings.context.max_iterations

        final = ""
        final_persisted = False
        last_stream = ""

        for iteration in range(max_iterations):
            if token.cancelled:
                final = cancelled_text(last_stream)
                break

            await self._drain_notifications(messages)

            stream: list[str] = []

            def on_chunk(chunk: str, kind: str = "content") -> None:
                if kind == "content":
                    stream.append(chunk)
                self._emit(EventType.STREAM, {"chunk": chunk, "kind": kind})

            try:
                response, messages = await self._chat(messages, tool_defs, on_chunk, token)
            except Exception as e:
                logger.error("LLM generation error", session_id=self.session_id, error=str(e))
                final = PROVIDER_ERROR_RESPONSE.format(error=e)
                break

            if token.cancelled:
                final = cancelled_text("".join(stream) or response.text)
                break

            last_stream = "".join(stream)

            if not response.tool_calls:
                await self._append(response, messages)
                final = response.text
                final_persisted = True
                self._remember(response)
                break

            logger.info(
                "Tool calls",
                session_id=self.session_id,
                iteration=iteration + 1,
                tools=[tc.name for tc in response.tool_calls],
            )
            async with self._exchange_lock:
                await self._write(response, messages)
                self._emit(EventType.TOOL_CALL, {
                    "tools": [{"name": tc.name, "args": tc.arguments} for tc in response.tool_calls],
                })
                restart = await self._execute_tools(response.tool_calls, messages, ctx, token)

            if restart:
                self.store.write_resume_marker()
                final = REBOOT_RESPONSE
                break
            if token.cancelled:
                final = CANCELLED_MARKER
                break

            if self.settings.recall.autonomous_recall and options.recall:
                autonomous = await self._recall([build_autonomous_cue(self.history)])
                if autonomous:
                    messages.append(ChatMessage(
                        role="system",
                        content=f"[Recalled memory]\n{autonomous}",
                    ))
        else:
            final = MAX_ITERATIONS_RESPONSE

        if not final_persisted:
            await self._append(ChatMessage(role="assistant", content=final))
        if token.cancelled and not final.startswith(REBOOT_RESPONSE):
            self._emit(EventType.CANCELLED, {"reason": token.reason, "partial": final != CANCELLED_MARKER})

        self._emit(EventType.MESSAGE, {"role": "assistant", "content": final})
        return final

    async def _drain_notifications(self, messages: list[ChatMessage]) -> None:
        while not self._notifications.empty():
            text = self._notifications.get_nowait()
            await self._append(ChatMessage(role="user", content=text), messages)
            self._emit(EventType.MESSAGE, {"role": "user", "content": text, "notification": True})

    async def _execute_tools(
        self,
        tool_calls: list[ToolCall],
        messages: list[ChatMessage],
        ctx: ToolContext,
        token: CancellationToken,
    ) -> bool:
        """Run tool calls in order. Returns True when a tool asked for a restart.

        Called with the exchange lock held.
        """
        answered = 0
        restart = False

        for tc in tool_calls:
            if token.cancelled:
                break

            result = await self.tools.execute(tc.name, tc.arguments, ctx)
            logger.debug(
                "Tool finished",
                session_id=self.session_id,
                tool=tc.name,
                success=result.success,
                output=result.output[:100],
            )
            self._emit(EventType.TOOL_RESULT, {
                "tool": tc.name,
                "success": result.success,
                "output": result.output[:500],
            })

            tool_msg = self._tool_message(tc, result)
            await self._write(tool_msg, messages)
            answered += 1

            if result.restart:
                restart = True
                break
            self._remember(tool_msg)

        # Every issued call needs a result for the history to stay valid
        for tc in tool_calls[answered:]:
            await self._write(
                ChatMessage(role="tool", content=SKIPPED_TOOL_OUTPUT, tool_call_id=tc.id, name=tc.name),
                messages,
            )
        return restart

    @staticmethod
    def _tool_message(tc: ToolCall, result: ToolResult) -> ChatMessage:
        text = result.render()
        image = result.attached_image
        content: Any = [TextPart(text=text), ImagePart(url=image)] if image else text
        return ChatMessage(role="tool", content=content, tool_call_id=tc.id, name=tc.name)

    async def close(self) -> None:
        """Cancel running turns and finish pending memory writes."""
        self.cancel_processing("session stopped")
        await self.wait_for_idle()
        await self.background.close(drain=True)
