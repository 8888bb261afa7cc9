"""
Tests for the message model, provider conversion and the LLM factory.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from metaclaw.cancellation import CancellationToken
from metaclaw.config import LLMConfig
from metaclaw.llm.anthropic import AnthropicLLM
from metaclaw.llm.base import (
    ChatMessage,
    ImagePart,
    LLMError,
    TextPart,
    ToolCall,
    ToolDefinition,
    render_transcript,
    strip_images,
)
from metaclaw.llm.factory import create_llm
from metaclaw.llm.openai import OpenAIEmbedder, OpenAILLM, is_vision_unsupported

from conftest import ScriptedLLM


def image_message() -> ChatMessage:
    return ChatMessage(
        role="user",
        content=[TextPart(text="what is this?"), ImagePart(url="data:image/jpeg;base64,QUJD")],
    )


def test_tool_call_parsed_arguments():
    """Test lenient argument decoding."""
    assert ToolCall(id="a", name="x", arguments='{"q": 1}').parsed_arguments() == {"q": 1}
    assert ToolCall(id="a", name="x", arguments="{bad").parsed_arguments() == {}
    assert ToolCall(id="a", name="x", arguments="[1]").parsed_arguments() == {}
    assert ToolCall(id="a", name="x", arguments="").parsed_arguments() == {}


def test_strip_images():
    """Test flattening image content."""
    plain = ChatMessage(role="assistant", content="hi")

    stripped = strip_images([image_message(), plain])

    assert stripped[0].content == "what is this?"
    assert not stripped[0].has_images
    assert stripped[1] is plain


def test_render_transcript():
    """Test the summarization transcript."""
    messages = [
        ChatMessage(role="system", content="rules"),
        ChatMessage(role="user", content="find it"),
        ChatMessage(role="assistant", content="", tool_calls=[ToolCall(id="a", name="search", arguments="{}")]),
        ChatMessage(role="tool", content="found", tool_call_id="a", name="search"),
        ChatMessage(role="assistant", content=""),
    ]

    assert render_transcript(messages) == (
        "user: find it\nassistant: [calls: search({})]\ntool: found"
    )


@pytest.mark.asyncio
async def test_embed_without_embedder():
    """Test that a provider without an embedder refuses to embed."""
    llm = ScriptedLLM()
    llm.embedder = None

    with pytest.raises(LLMError):
        await llm.embed("text")


@pytest.mark.asyncio
async def test_summarize_uses_transcript():
    """Test that history summarization goes through summarize_memory."""
    llm = ScriptedLLM(summary="short")

    result = await llm.summarize([ChatMessage(role="user", content="hello")])

    assert result == "short"
    assert llm.summarize_calls == ["user: hello"]


def test_openai_message_conversion():
    """Test OpenAI wire format."""
    llm = OpenAILLM(api_key="sk-test")
    messages = [
        ChatMessage(role="system", content="rules"),
        image_message(),
        ChatMessage(role="assistant", content="", tool_calls=[ToolCall(id="a", name="search", arguments="")]),
        ChatMessage(role="tool", content=[TextPart(text="found")], tool_call_id="a", name="search"),
    ]

    converted = llm._convert_messages(messages)

    assert converted[0] == {"role": "system", "content": "rules"}
    assert converted[1]["content"][1] == {
        "type": "image_url",
        "image_url": {"url": "data:image/jpeg;base64,QUJD", "detail": "high"},
    }
    assert converted[2]["content"] is None
    assert converted[2]["tool_calls"][0]["function"]["arguments"] == "{}"
    assert converted[3] == {"role": "tool", "tool_call_id": "a", "content": "found"}


def test_openai_tool_conversion():
    """Test OpenAI tool schema format."""
    llm = OpenAILLM(api_key="sk-test")
    tools = [ToolDefinition(name="search", description="Search.", parameters={"type": "object"})]

    assert llm._convert_tools(tools) == [
        {
            "type": "function",
            "function": {"name": "search", "description": "Search.", "parameters": {"type": "object"}},
        }
    ]


def test_anthropic_message_conversion():
    """Test Anthropic wire format."""
    llm = AnthropicLLM(api_key="sk-ant-test")
    messages = [
        ChatMessage(role="system", content="rules"),
        ChatMessage(role="system", content="[Recalled memory]\nfacts"),
        image_message(),
        ChatMessage(
            role="assistant",
            content="Looking",
            tool_calls=[ToolCall(id="a", name="search", arguments='{"q": "x"}')],
        ),
        ChatMessage(role="tool", content="found", tool_call_id="a", name="search"),
    ]

    converted = llm._convert_messages(messages)

    assert llm._extract_system_prompt(messages) == "rules\n\n[Recalled memory]\nfacts"
    assert converted[0]["content"][1] == {
        "type": "image",
        "source": {"type": "base64", "media_type": "image/jpeg", "data": "QUJD"},
    }
    assert converted[1]["content"] == [
        {"type": "text", "text": "Looking"},
        {"type": "tool_use", "id": "a", "name": "search", "input": {"q": "x"}},
    ]
    assert converted[2] == {
        "role": "user",
        "content": [{"type": "tool_result", "tool_use_id": "a", "content": "found"}],
    }


def test_is_vision_unsupported():
    """Test the vision rejection heuristic."""
    assert is_vision_unsupported(Exception("This model does not support image inputs"))
    assert not is_vision_unsupported(Exception("rate limit exceeded"))


def test_create_llm_routes_providers():
    """Test provider selection in the factory."""
    anthropic_llm = create_llm(LLMConfig(provider="anthropic", api_key="k", model="claude-x"))
    openai_llm = create_llm(LLMConfig(provider="openai", api_key="k"))
    router_llm = create_llm(LLMConfig(provider="openrouter", api_key="k", model="a/b"))

    assert isinstance(anthropic_llm, AnthropicLLM)
    assert isinstance(openai_llm, OpenAILLM)
    assert isinstance(router_llm, OpenAILLM)
    assert router_llm.base_url == "https://openrouter.ai/api/v1"
    assert isinstance(openai_llm.embedder, OpenAIEmbedder)


def test_cancellation_token():
    """Test the per-turn cancellation token."""
    token = CancellationToken()
    assert not token.cancelled
    assert token.reason is None

    token.cancel("stop")
    token.cancel("ignored")

    assert token.cancelled
    assert token.reason == "stop"
    assert repr(token) == "<CancellationToken cancelled>"


class FakeStream:
    """Async chunk stream that records whether it was closed."""

    def __init__(self, texts):
        self.chunks = [
            SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=t, tool_calls=None))])
            for t in texts
        ]
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self.chunks:
            yield chunk


@pytest.mark.asyncio
async def test_openai_chat_streams_content():
    """Test assembling a streamed OpenAI completion."""
    llm = OpenAILLM(api_key="sk-test")
    stream = FakeStream(["Hel", "lo"])
    llm.client = MagicMock()
    llm.client.chat.completions.create = AsyncMock(return_value=stream)
    chunks = []

    response = await llm.chat([ChatMessage(role="user", content="hi")], on_chunk=lambda c, k: chunks.append(c))

    assert response.content == "Hello"
    assert response.tool_calls is None
    assert chunks == ["Hel", "lo"]
    assert stream.closed


@pytest.mark.asyncio
async def test_openai_chat_closes_stream_on_cancel():
    """Test that a cancelled stream is closed and the partial text returned."""
    llm = OpenAILLM(api_key="sk-test")
    stream = FakeStream(["one ", "two ", "three"])
    llm.client = MagicMock()
    llm.client.chat.completions.create = AsyncMock(return_value=stream)
    token = CancellationToken()

    def on_chunk(chunk, kind):
        token.cancel("stop")

    response = await llm.chat([ChatMessage(role="user", content="hi")], on_chunk=on_chunk, cancel_token=token)

    assert response.content == "one "
    assert stream.closed
