"""
Shared fixtures: a deterministic embedder, a scripted LLM and agent factories.
"""

import re
from pathlib import Path
from typing import Any, Awaitable, Callable

import pytest

from metaclaw.agent.core import Agent
from metaclaw.agent.events import Event, EventBus
from metaclaw.config import Settings
from metaclaw.llm.base import BaseLLM, ChatMessage, ToolCall


class KeywordEmbedder:
    """Embeds text as keyword-family hits plus a length component."""

    FAMILIES = (
        re.compile(r"deploy|pipeline|release"),
        re.compile(r"error|fail|failed|timeout|exception"),
        re.compile(r"remember|todo|important|budget"),
        re.compile(r"coffee|tea|breakfast"),
    )

    def __init__(self) -> None:
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        lowered = text.lower()
        vector = [1.0 if family.search(lowered) else 0.0 for family in self.FAMILIES]
        vector.append(min(1.0, len(lowered) / 2000))
        return vector


Responder = Callable[..., Awaitable[ChatMessage]]


class ScriptedLLM(BaseLLM):
    """Provider double answering from a script.

    Each script item is a ChatMessage (streamed as one chunk and returned),
    an exception (raised) or an async callable receiving
    ``(messages, tools, on_chunk, cancel_token)``. The last item repeats once
    the script runs out.
    """

    def __init__(self, script: list[Any] | None = None, summary: str = "summary of earlier turns"):
        super().__init__(
            api_key="test",
            model="scripted",
            context_window=128_000,
            embedder=KeywordEmbedder(),
        )
        self.script = list(script or [ChatMessage(role="assistant", content="ok")])
        self.summary = summary
        self.calls: list[list[ChatMessage]] = []
        self.summarize_calls: list[str] = []

    @property
    def provider_name(self) -> str:
        return "scripted"

    async def chat(self, messages, tools=None, on_chunk=None, cancel_token=None) -> ChatMessage:
        self.calls.append(list(messages))
        index = min(len(self.calls) - 1, len(self.script) - 1)
        item = self.script[index]

        if isinstance(item, Exception):
            raise item
        if callable(item):
            return await item(messages, tools, on_chunk, cancel_token)
        if on_chunk and item.text:
            on_chunk(item.text, "content")
        return item

    async def summarize_memory(self, text, model=None, system_prompt=None) -> str:
        self.summarize_calls.append(text)
        if isinstance(self.summary, Exception):
            raise self.summary
        return self.summary


def tool_call_message(*calls: tuple[str, str], content: str = "") -> ChatMessage:
    """Assistant message requesting ``(name, arguments_json)`` tool calls."""
    return ChatMessage(
        role="assistant",
        content=content,
        tool_calls=[
            ToolCall(id=f"call_{i}", name=name, arguments=args)
            for i, (name, args) in enumerate(calls)
        ],
    )


def drain_events(queue) -> list[Event]:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


@pytest.fixture
def embedder() -> KeywordEmbedder:
    return KeywordEmbedder()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        workspace_root=tmp_path / "workspaces",
        openai_api_key="sk-test",
        sessions="alpha",
    )


@pytest.fixture
def make_agent(tmp_path: Path, settings: Settings):
    """Factory building an agent on a fresh workspace around a scripted LLM."""

    def _make(llm: ScriptedLLM | None = None, session_id: str = "alpha", **kwargs) -> Agent:
        return Agent(
            session_id=session_id,
            llm=llm or ScriptedLLM(),
            workspace_dir=kwargs.pop("workspace_dir", tmp_path / session_id),
            settings=kwargs.pop("settings", settings),
            events=kwargs.pop("events", EventBus()),
            skill_dirs=kwargs.pop("skill_dirs", []),
            **kwargs,
        )

    return _make
