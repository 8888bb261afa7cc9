"""
Base classes for LLM providers.

Defines the message model shared by the whole agent (``ChatMessage`` and its
content parts), the provider contract (``BaseLLM``) and the error taxonomy
providers raise.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Protocol

from ..cancellation import CancellationToken

Role = Literal["user", "assistant", "system", "tool"]

# (chunk, kind) where kind is "content" or "reasoning"
ChunkCallback = Callable[[str, str], None]

SUMMARIZE_MEMORY_PROMPT = (
    "Summarize the following content concisely, preserving key facts, "
    "decisions, and context."
)
SUMMARIZE_HISTORY_PROMPT = (
    "Summarize the following conversation history concisely, preserving key "
    "facts, decisions, and context that would be needed to continue the "
    "conversation."
)


class LLMError(Exception):
    """Error raised by an LLM provider."""


class VisionNotSupportedError(LLMError):
    """The provider or model cannot accept image content."""


@dataclass
class TextPart:
    """Plain text segment of a multi-part message."""

    text: str
    type: Literal["text"] = "text"


@dataclass
class ImagePart:
    """Reference to an image (data URL or http(s) URL)."""

    url: str
    detail: str = "high"
    type: Literal["image_url"] = "image_url"


ContentPart = TextPart | ImagePart
MessageContent = str | list[ContentPart] | None


@dataclass
class ToolDefinition:
    """Definition of a tool that the LLM can use."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class ToolCall:
    """A tool call made by the LLM. ``arguments`` is the raw JSON string."""

    id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode the argument JSON; malformed or non-object input yields ``{}``."""
        try:
            value = json.loads(self.arguments) if self.arguments else {}
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}


def content_text(content: MessageContent) -> str:
    """Extract text from potentially multi-part content."""
    if not content:
        return ""
    if isinstance(content, str):
        return content
    return "\n".join(p.text for p in content if isinstance(p, TextPart))


@dataclass
class ChatMessage:
    """A message in the conversation."""

    role: Role
    content: MessageContent = ""
    reasoning: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None

    @property
    def text(self) -> str:
        return content_text(self.content)

    @property
    def has_images(self) -> bool:
        return isinstance(self.content, list) and any(
            isinstance(p, ImagePart) for p in self.content
        )

    def without_images(self) -> "ChatMessage":
        """Copy of this message with image parts flattened away."""
        if not self.has_images:
            return self
        return ChatMessage(
            role=self.role,
            content=self.text,
            reasoning=self.reasoning,
            tool_calls=self.tool_calls,
            tool_call_id=self.tool_call_id,
            name=self.name,
        )

    def to_record(self, timestamp: datetime | None = None) -> dict[str, Any]:
        """Serialize to the append-only turn log record shape."""
        record: dict[str, Any] = {"role": self.role}
        if isinstance(self.content, list):
            record["content"] = [_part_to_dict(p) for p in self.content]
        else:
            record["content"] = self.content
        if self.reasoning:
            record["reasoning"] = self.reasoning
        if self.name:
            record["name"] = self.name
        if self.tool_call_id:
            record["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            record["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": tc.arguments},
                }
                for tc in self.tool_calls
            ]
        ts = timestamp or datetime.now(timezone.utc)
        record["timestamp"] = ts.isoformat()
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "ChatMessage":
        """Inverse of ``to_record``; the timestamp is dropped.

        Logs written with camelCase ``toolCalls``/``toolCallId`` keys load too.
        """
        content = record.get("content")
        if isinstance(content, list):
            content = [_part_from_dict(p) for p in content]

        tool_calls = None
        raw_calls = record.get("tool_calls") or record.get("toolCalls")
        if raw_calls:
            tool_calls = []
            for tc in raw_calls:
                fn = tc.get("function", {})
                tool_calls.append(ToolCall(
                    id=tc.get("id", ""),
                    name=fn.get("name", tc.get("name", "")),
                    arguments=fn.get("arguments", tc.get("arguments", "{}")),
                ))

        return cls(
            role=record["role"],
            content=content,
            reasoning=record.get("reasoning"),
            tool_calls=tool_calls,
            tool_call_id=record.get("tool_call_id") or record.get("toolCallId"),
            name=record.get("name"),
        )


def _part_to_dict(part: ContentPart) -> dict[str, Any]:
    if isinstance(part, ImagePart):
        return {"type": "image_url", "image_url": {"url": part.url, "detail": part.detail}}
    return {"type": "text", "text": part.text}


def _part_from_dict(data: dict[str, Any]) -> ContentPart:
    if data.get("type") == "image_url":
        image = data.get("image_url", {})
        return ImagePart(url=image.get("url", ""), detail=image.get("detail", "high"))
    return TextPart(text=data.get("text", ""))


def strip_images(messages: list[ChatMessage]) -> list[ChatMessage]:
    """Return the messages with every image part removed."""
    return [m.without_images() for m in messages]


def render_transcript(messages: list[ChatMessage]) -> str:
    """Flatten messages into ``role: text`` lines for summarization."""
    lines = []
    for m in messages:
        if m.role == "system":
            continue
        text = m.text
        if not text and not m.tool_calls:
            continue
        if m.tool_calls:
            calls = ", ".join(f"{tc.name}({tc.arguments[:200]})" for tc in m.tool_calls)
            text = f"{text} [calls: {calls}]".strip()
        lines.append(f"{m.role}: {text}")
    return "\n".join(lines)


class Embedder(Protocol):
    """Anything that turns text into an embedding vector."""

    async def embed(self, text: str) -> list[float]: ...


class BaseLLM(ABC):
    """Base class for LLM providers."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        context_window: int = 128_000,
        embedder: Embedder | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.context_window = context_window
        self.embedder = embedder

    @abstractmethod
    async def chat(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition] | None = None,
        on_chunk: ChunkCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ChatMessage:
        """Run one completion, streaming chunks to ``on_chunk`` when given.

        Returns the full assistant message including any tool calls. When
        ``cancel_token`` fires mid-stream the partial message is returned.
        """
        pass

    @abstractmethod
    async def summarize_memory(
        self,
        text: str,
        model: str | None = None,
        system_prompt: str | None = None,
    ) -> str:
        """Summarize free text under a system prompt."""
        pass

    async def summarize(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        system_prompt: str | None = None,
    ) -> str:
        """Summarize a slice of conversation history."""
        return await self.summarize_memory(
            render_transcript(messages),
            model=model,
            system_prompt=system_prompt or SUMMARIZE_HISTORY_PROMPT,
        )

    async def embed(self, text: str) -> list[float]:
        """Embed text with the attached embedder."""
        if self.embedder is None:
            raise LLMError(f"Provider '{self.provider_name}' has no embedder configured")
        return await self.embedder.embed(text)

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name."""
        pass
