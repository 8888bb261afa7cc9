"""
Configuration management for metaclaw.

Uses pydantic-settings for environment variable parsing and validation.
Nested groups are read with the ``__`` delimiter, e.g. ``CONTEXT__CAP=32000``.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMConfig(BaseSettings):
    """Configuration for a single LLM provider."""

    model_config = SettingsConfigDict(extra="ignore")

    provider: Literal["anthropic", "openai", "openrouter"] = "openai"
    model: str = "gpt-4o"
    api_key: str = ""
    base_url: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.7
    context_window: int = 128_000
    embedding_model: str = "text-embedding-3-small"
    embedding_api_key: str = ""
    embedding_base_url: str | None = None


class ContextSettings(BaseModel):
    """Context window budget for a session."""

    compression_threshold: float = Field(default=0.8, gt=0, le=1)
    keep_recent_messages: int = Field(default=20, ge=1)
    cap: int | None = Field(default=None, description="Optional cap below the provider window")
    prune_target: float = Field(default=0.85, gt=0, le=1)
    min_retained_messages: int = Field(default=4, ge=1)
    max_iterations: int = Field(default=100, ge=1)


class RecallSettings(BaseModel):
    """Tuning for semantic memory recall. None of these values are load-bearing."""

    enabled: bool = True
    limit: int = 6
    min_similarity: float = 0.55
    decay_rate: float = 0.05
    dedupe_threshold: float = 0.90
    salience_weight: float = 0.25
    recall_weight: float = 0.08
    recency_floor: float = 0.5
    recent_recall_penalty: float = Field(default=0.85, gt=0, le=1)
    recent_recall_window: float = Field(default=30.0, ge=0)  # seconds
    critical_count: int = 3
    per_entry_chars: int = 600
    summary_model: str | None = None
    autonomous_recall: bool = True


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "metaclaw"
    debug: bool = False
    log_level: str = "INFO"

    # Workspaces
    workspace_root: Path = Field(
        default=Path("~/.metaclaw/workspaces"),
        description="Directory holding one workspace per session",
    )
    restrict_to_workspace: bool = True
    allow_self_modify: bool = False

    # LLM Providers (API Keys)
    openai_api_key: str = Field(default="", description="OpenAI API key")
    anthropic_api_key: str = Field(default="", description="Anthropic API key for Claude")
    openrouter_api_key: str = Field(default="", description="OpenRouter API key")

    # Default model settings
    default_provider: Literal["anthropic", "openai", "openrouter"] = "openai"
    default_model: str = ""
    base_url: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.7
    context_window: int = Field(default=128_000, description="Provider-advertised context size")

    # Embeddings always go through an OpenAI-compatible endpoint
    embedding_model: str = "text-embedding-3-small"
    embedding_base_url: str | None = None

    # Runtime budgets
    context: ContextSettings = Field(default_factory=ContextSettings)
    recall: RecallSettings = Field(default_factory=RecallSettings)

    # Sessions started by default
    sessions: str = Field(default="default", description="Comma-separated session ids")

    @field_validator("sessions", mode="before")
    @classmethod
    def parse_sessions(cls, v: str) -> str:
        return v.strip() if v else ""

    @property
    def session_ids(self) -> list[str]:
        """Get list of configured session ids."""
        if not self.sessions:
            return []
        return [s.strip() for s in self.sessions.split(",") if s.strip()]

    def workspace_for(self, session_id: str) -> Path:
        """Resolve the workspace directory of a session."""
        return (self.workspace_root.expanduser() / session_id).resolve()

    def get_llm_config(self, provider: str | None = None) -> LLMConfig:
        """Get LLM configuration for a provider."""
        provider = provider or self.default_provider

        api_key_map = {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "openrouter": self.openrouter_api_key,
        }

        model_map = {
            "anthropic": "claude-sonnet-4-20250514",
            "openai": "gpt-4o",
            "openrouter": "anthropic/claude-sonnet-4",
        }

        base_url_map = {
            "anthropic": None,
            "openai": None,
            "openrouter": "https://openrouter.ai/api/v1",
        }

        return LLMConfig(
            provider=provider,  # type: ignore
            model=self.default_model or model_map.get(provider, "gpt-4o"),
            api_key=api_key_map.get(provider, ""),
            base_url=self.base_url or base_url_map.get(provider),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            context_window=self.context_window,
            embedding_model=self.embedding_model,
            embedding_api_key=self.openai_api_key,
            embedding_base_url=self.embedding_base_url,
        )

    def to_compaction_config(self):
        """Build the runtime context-window config."""
        from .agent.compaction import CompactionConfig

        return CompactionConfig(
            context_window=self.context_window,
            cap=self.context.cap,
            compression_threshold=self.context.compression_threshold,
            keep_recent_messages=self.context.keep_recent_messages,
            prune_target=self.context.prune_target,
            min_retained_messages=self.context.min_retained_messages,
        )

    def to_recall_options(self):
        """Build the runtime recall options."""
        from .memory.vector import RecallOptions

        return RecallOptions(
            limit=self.recall.limit,
            min_similarity=self.recall.min_similarity,
            decay_rate=self.recall.decay_rate,
            dedupe_threshold=self.recall.dedupe_threshold,
            salience_weight=self.recall.salience_weight,
            recall_weight=self.recall.recall_weight,
            recency_floor=self.recall.recency_floor,
            recent_recall_penalty=self.recall.recent_recall_penalty,
            recent_recall_window=self.recall.recent_recall_window,
        )

    def validate_provider(self) -> list[str]:
        """Return human-readable configuration problems (empty when valid)."""
        problems = []
        config = self.get_llm_config()
        if not config.api_key:
            problems.append(f"No API key configured for provider '{config.provider}'")
        if not self.openai_api_key and not self.embedding_base_url:
            problems.append("Embeddings need OPENAI_API_KEY or EMBEDDING_BASE_URL")
        if not self.session_ids:
            problems.append("SESSIONS must name at least one session")
        return problems


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
