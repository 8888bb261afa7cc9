"""
LLM module for multi-provider AI model support.

Providers:
- Anthropic Claude (native SDK)
- OpenAI GPT (native SDK)
- OpenRouter (via OpenAI-compatible endpoint)
"""

from .base import (
    BaseLLM,
    ChatMessage,
    Embedder,
    ImagePart,
    LLMError,
    TextPart,
    ToolCall,
    ToolDefinition,
    VisionNotSupportedError,
)
from .anthropic import AnthropicLLM
from .openai import OpenAIEmbedder, OpenAILLM
from .factory import create_embedder, create_llm

__all__ = [
    "BaseLLM",
    "ChatMessage",
    "Embedder",
    "ImagePart",
    "LLMError",
    "TextPart",
    "ToolCall",
    "ToolDefinition",
    "VisionNotSupportedError",
    "AnthropicLLM",
    "OpenAIEmbedder",
    "OpenAILLM",
    "create_embedder",
    "create_llm",
]
