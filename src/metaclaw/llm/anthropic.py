"""
Anthropic Claude LLM provider.

Claude has no embedding endpoint, so embeddings come from the attached
embedder (normally ``OpenAIEmbedder``).
"""

import json
from typing import Any

import anthropic
import structlog

from ..cancellation import CancellationToken
from .base import (
    SUMMARIZE_MEMORY_PROMPT,
    BaseLLM,
    ChatMessage,
    ChunkCallback,
    Embedder,
    ImagePart,
    TextPart,
    ToolCall,
    ToolDefinition,
    VisionNotSupportedError,
)
from .openai import is_vision_unsupported

logger = structlog.get_logger()


def _image_block(part: ImagePart) -> dict[str, Any]:
    if part.url.startswith("data:"):
        header, _, data = part.url.partition(",")
        media_type = header[len("data:"):].split(";")[0] or "image/png"
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": media_type, "data": data},
        }
    return {"type": "image", "source": {"type": "url", "url": part.url}}


class AnthropicLLM(BaseLLM):
    """Anthropic Claude LLM provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        context_window: int = 200_000,
        embedder: Embedder | None = None,
    ):
        super().__init__(
            api_key, model, base_url, max_tokens, temperature, context_window, embedder
        )
        self.client = anthropic.AsyncAnthropic(
            api_key=api_key,
            base_url=base_url,
        )

    @property
    def provider_name(self) -> str:
        return "anthropic"

    def _convert_content(self, msg: ChatMessage) -> Any:
        if not isinstance(msg.content, list):
            return msg.content or ""
        blocks: list[dict[str, Any]] = []
        for part in msg.content:
            if isinstance(part, ImagePart):
                blocks.append(_image_block(part))
            elif isinstance(part, TextPart) and part.text:
                blocks.append({"type": "text", "text": part.text})
        return blocks

    def _convert_messages(self, messages: list[ChatMessage]) -> list[dict[str, Any]]:
        """Convert ChatMessages to Anthropic format."""
        converted = []

        for msg in messages:
            if msg.role == "system":
                continue

            if msg.role == "tool":
                converted.append({
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": msg.tool_call_id,
                            "content": msg.text,
                        }
                    ],
                })
            elif msg.role == "assistant" and msg.tool_calls:
                content: list[dict[str, Any]] = []
                if msg.text:
                    content.append({"type": "text", "text": msg.text})
                for tc in msg.tool_calls:
                    content.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.name,
                        "input": tc.parsed_arguments(),
                    })
                converted.append({"role": "assistant", "content": content})
            else:
                converted.append({
                    "role": msg.role,
                    "content": self._convert_content(msg),
                })

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to Anthropic format."""
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.parameters,
            }
            for tool in tools
        ]

    def _extract_system_prompt(self, messages: list[ChatMessage]) -> str | None:
        """Join every system message; Claude only takes one system prompt."""
        parts = [msg.text for msg in messages if msg.role == "system" and msg.text]
        return "\n\n".join(parts) if parts else None

    async def chat(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition] | None = None,
        on_chunk: ChunkCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ChatMessage:
        """Stream a response from Claude."""
        system = self._extract_system_prompt(messages)

        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": self._convert_messages(messages),
        }

        if system:
            kwargs["system"] = system

        if tools:
            kwargs["tools"] = self._convert_tools(tools)

        content = ""
        reasoning = ""
        tool_calls: list[ToolCall] = []
        cancelled = False

        try:
            async with self.client.messages.stream(**kwargs) as stream:
                async for event in stream:
                    if cancel_token is not None and cancel_token.cancelled:
                        cancelled = True
                        break
                    if event.type != "content_block_delta":
                        continue
                    delta = event.delta
                    if delta.type == "text_delta":
                        content += delta.text
                        if on_chunk:
                            on_chunk(delta.text, "content")
                    elif delta.type == "thinking_delta":
                        reasoning += delta.thinking
                        if on_chunk:
                            on_chunk(delta.thinking, "reasoning")

                if not cancelled:
                    final = await stream.get_final_message()
                    for block in final.content:
                        if block.type == "tool_use":
                            tool_calls.append(ToolCall(
                                id=block.id,
                                name=block.name,
                                arguments=json.dumps(block.input if isinstance(block.input, dict) else {}),
                            ))

        except anthropic.BadRequestError as e:
            if is_vision_unsupported(e):
                raise VisionNotSupportedError(str(e)) from e
            logger.error("Anthropic API error", error=str(e))
            raise
        except anthropic.APIError as e:
            logger.error("Anthropic API error", error=str(e))
            raise

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
        """Summarize text with a single non-streaming request."""
        try:
            response = await self.client.messages.create(
                model=model or self.model,
                max_tokens=self.max_tokens,
                system=system_prompt or SUMMARIZE_MEMORY_PROMPT,
                messages=[{"role": "user", "content": text}],
            )
        except anthropic.APIError as e:
            logger.error("Anthropic summarization error", error=str(e))
            raise

        return "".join(
            block.text for block in response.content if block.type == "text"
        ).strip()
