"""
LLM factory for creating provider instances.

Supports: Anthropic Claude, OpenAI GPT, OpenRouter.
"""

from ..config import LLMConfig, Settings
from .base import BaseLLM, Embedder
from .anthropic import AnthropicLLM
from .openai import OpenAIEmbedder, OpenAILLM


def create_embedder(config: LLMConfig) -> Embedder:
    """Create the embedder used by semantic memory.

    Embeddings always use an OpenAI-compatible endpoint; for OpenAI itself
    this is the chat key, for other providers the dedicated embedding key.
    """
    api_key = config.embedding_api_key
    base_url = config.embedding_base_url
    if config.provider == "openai":
        api_key = api_key or config.api_key
        base_url = base_url or config.base_url
    return OpenAIEmbedder(
        api_key=api_key,
        model=config.embedding_model,
        base_url=base_url,
    )


def create_llm(config: LLMConfig | None = None, settings: Settings | None = None) -> BaseLLM:
    """Create an LLM instance based on configuration.

    Provider routing:
    - anthropic -> AnthropicLLM (native Anthropic SDK)
    - openai -> OpenAILLM (native OpenAI SDK)
    - openrouter -> OpenAILLM (OpenAI-compatible endpoint)
    """
    if config is None:
        if settings is None:
            from ..config import get_settings
            settings = get_settings()
        config = settings.get_llm_config()

    provider = config.provider
    embedder = create_embedder(config)

    if provider == "anthropic":
        return AnthropicLLM(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            context_window=config.context_window,
            embedder=embedder,
        )
    elif provider == "openai":
        return OpenAILLM(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            context_window=config.context_window,
            embedder=embedder,
        )
    elif provider == "openrouter":
        return OpenAILLM(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url or "https://openrouter.ai/api/v1",
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            context_window=config.context_window,
            embedder=embedder,
        )
    else:
        raise ValueError(f"Unknown LLM provider: {provider}")
