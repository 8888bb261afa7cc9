"""
OpenAI GPT LLM provider (also works with OpenRouter and compatible APIs).
"""

from typing import Any

import openai
import structlog

from ..cancellation import CancellationToken
from .base import (
    SUMMARIZE_MEMORY_PROMPT,
    BaseLLM,
    ChatMessage,
    ChunkCallback,
    Embedder,
    ImagePart,
    LLMError,
    TextPart,
    ToolCall,
    ToolDefinition,
    VisionNotSupportedError,
)

logger = structlog.get_logger()

_VISION_MARKERS = ("image", "vision", "image_url", "multimodal")
_UNSUPPORTED_MARKERS = ("support", "not allowed", "invalid content type", "cannot")


def is_vision_unsupported(error: Exception) -> bool:
    """Heuristic for 'this model cannot take images' style rejections."""
    message = str(error).lower()
    return any(m in message for m in _VISION_MARKERS) and any(
        m in message for m in _UNSUPPORTED_MARKERS
    )


class OpenAIEmbedder:
    """Embeddings over any OpenAI-compatible endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str | None = None,
    ):
        self.model = model
        self.client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def embed(self, text: str) -> list[float]:
        try:
            response = await self.client.embeddings.create(model=self.model, input=text)
        except openai.APIError as e:
            logger.error("OpenAI embedding error", error=str(e), model=self.model)
            raise

        if not response.data or not response.data[0].embedding:
            raise LLMError(f"Invalid embedding response from model '{self.model}'")
        return list(response.data[0].embedding)


class OpenAILLM(BaseLLM):
    """OpenAI GPT LLM provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        context_window: int = 128_000,
        embedder: Embedder | None = None,
    ):
        super().__init__(
            api_key, model, base_url, max_tokens, temperature, context_window, embedder
        )
        self.client = openai.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
        )

    @property
    def provider_name(self) -> str:
        return "openai"

    def _convert_content(self, msg: ChatMessage) -> Any:
        if not isinstance(msg.content, list):
            return msg.content or ""
        if not msg.has_images:
            return msg.text

        parts: list[dict[str, Any]] = []
        for part in msg.content:
            if isinstance(part, ImagePart):
                parts.append({
                    "type": "image_url",
                    "image_url": {"url": part.url, "detail": part.detail},
                })
            elif isinstance(part, TextPart):
                parts.append({"type": "text", "text": part.text})
        return parts

    def _convert_messages(self, messages: list[ChatMessage]) -> list[dict[str, Any]]:
        """Convert ChatMessages to OpenAI format."""
        converted = []

        for msg in messages:
            if msg.role == "tool":
                # Tool outputs must be plain strings
                converted.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id,
                    "content": msg.text,
                })
            elif msg.role == "assistant" and msg.tool_calls:
                tool_calls = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": tc.arguments or "{}",
                        },
                    }
                    for tc in msg.tool_calls
                ]
                converted.append({
                    "role": "assistant",
                    "content": msg.text or None,
                    "tool_calls": tool_calls,
                })
            else:
                converted.append({
                    "role": msg.role,
                    "content": self._convert_content(msg),
                })

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to OpenAI format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in tools
        ]

    async def chat(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition] | None = None,
        on_chunk: ChunkCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ChatMessage:
        """Stream a completion from GPT and assemble the final message."""
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": self._convert_messages(messages),
            "stream": True,
        }

        if tools:
            kwargs["tools"] = self._convert_tools(tools)

        content = ""
        reasoning = ""
        # index -> {"id", "name", "arguments"}
        pending_calls: dict[int, dict[str, str]] = {}

        try:
            stream = await self.client.chat.completions.create(**kwargs)

            # Closed on exit, including an early break on cancel
            async with stream:  # type: ignore
                async for chunk in stream:  # type: ignore
                    if cancel_token is not None and cancel_token.cancelled:
                        break
                    if not chunk.choices:
                        continue
                    delta = chunk.choices[0].delta

                    if delta.content:
                        content += delta.content
                        if on_chunk:
                            on_chunk(delta.content, "content")

                    # OpenAI-compatible servers expose reasoning under this name
                    reasoning_delta = getattr(delta, "reasoning_content", None)
                    if reasoning_delta:
                        reasoning += reasoning_delta
                        if on_chunk:
                            on_chunk(reasoning_delta, "reasoning")

                    for tc in delta.tool_calls or []:
                        slot = pending_calls.setdefault(
                            tc.index, {"id": "", "name": "", "arguments": ""}
                        )
                        if tc.id:
                            slot["id"] = tc.id
                        if tc.function is not None:
                            if tc.function.name:
                                slot["name"] += tc.function.name
                            if tc.function.arguments:
                                slot["arguments"] += tc.function.arguments

        except openai.BadRequestError as e:
            if is_vision_unsupported(e):
                raise VisionNotSupportedError(str(e)) from e
            logger.error("OpenAI API error", error=str(e))
            raise
        except openai.APIError as e:
            logger.error("OpenAI API error", error=str(e))
            raise

        tool_calls = [
            ToolCall(id=slot["id"], name=slot["name"], arguments=slot["arguments"] or "{}")
            for _, slot in sorted(pending_calls.items())
            if slot["id"] and slot["name"]
        ]

        return ChatMessage(
            role="assistant",
            content=content,
            reasoning=reasoning or None,
            tool_calls=tool_calls or None,
        )

    async def summarize_memory(
        self,
        text: str,
        model: str | None = None,
        system_prompt: str | None = None,
    ) -> str:
        """Summarize text with a single non-streaming completion."""
        try:
            response = await self.client.chat.completions.create(
                model=model or self.model,
                max_tokens=self.max_tokens,
                temperature=0.2,
                messages=[
                    {"role": "system", "content": system_prompt or SUMMARIZE_MEMORY_PROMPT},
                    {"role": "user", "content": text},
                ],
            )
        except openai.APIError as e:
            logger.error("OpenAI summarization error", error=str(e))
            raise

        return (response.choices[0].message.content or "").strip()
