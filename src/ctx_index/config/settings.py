"""Runtime settings for ctx-index.

Settings load from environment variables and an optional ``.env`` file. Each
section owns its own prefix so they can be overridden independently:

- ``CTX_EMBEDDING_*``  embedding provider, model, batching, fallback
- ``CTX_SEARCH_*``     retrieval mode, fusion, reranking
- ``CTX_INDEX_*``      memory cap, log level, index location
- ``LANGFUSE_*``       tracing credentials
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .defaults import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_EMBEDDING_MODELS,
    DEFAULT_EMBEDDING_TIMEOUT,
    DEFAULT_RERANK_CANDIDATES,
    DEFAULT_RERANK_MODEL,
    DEFAULT_TOP_K,
    get_model_dimensions,
)
from ..core.exceptions import ConfigError

ProviderName = Literal["sentence-transformers", "ollama", "openai"]


class EmbeddingSettings(BaseSettings):
    """Embedding provider configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CTX_EMBEDDING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    provider: ProviderName = Field(
        default="sentence-transformers",
        description="Primary embedding provider",
    )
    model: str = Field(
        default=DEFAULT_EMBEDDING_MODELS["sentence-transformers"],
        description="Primary embedding model",
    )
    dimensions: int | None = Field(
        default=None,
        description="Explicit dimensionality for models missing from the built-in table",
    )
    base_url: str | None = Field(
        default=None,
        description="Base URL for HTTP providers (ollama, openai)",
    )
    api_key: str | None = Field(
        default=None,
        description="API key for the openai provider",
    )
    fallback_provider: ProviderName | None = Field(
        default=None,
        description="Provider used when the primary fails or times out",
    )
    fallback_model: str | None = Field(
        default=None,
        description="Model for the fallback provider",
    )
    fallback_base_url: str | None = Field(
        default=None,
        description="Base URL for the fallback provider",
    )
    batch_size: int = Field(
        default=DEFAULT_BATCH_SIZE,
        ge=1,
        description="Chunks per provider call",
    )
    timeout: float = Field(
        default=DEFAULT_EMBEDDING_TIMEOUT,
        gt=0,
        description="Seconds allowed for a single provider call",
    )
    cache_dir: Path | None = Field(
        default=None,
        description="Directory for the on-disk embedding cache (disabled when unset)",
    )
    cache_size: int = Field(
        default=1000,
        ge=0,
        description="In-memory embedding cache entries",
    )

    def resolved_dimensions(self) -> int:
        """Dimensionality of the primary model."""
        if self.dimensions is not None:
            return self.dimensions
        try:
            return get_model_dimensions(self.model)
        except ValueError as e:
            raise ConfigError(str(e), {"model": self.model}) from e

    @model_validator(mode="after")
    def _check_fallback(self) -> "EmbeddingSettings":
        if self.fallback_provider is None:
            return self
        if not self.fallback_model:
            self.fallback_model = DEFAULT_EMBEDDING_MODELS[self.fallback_provider]
        primary_dims = self.resolved_dimensions()
        try:
            fallback_dims = get_model_dimensions(self.fallback_model)
        except ValueError as e:
            raise ConfigError(str(e), {"model": self.fallback_model}) from e
        if fallback_dims != primary_dims:
            raise ConfigError(
                f"Fallback model {self.fallback_model} produces {fallback_dims} "
                f"dimensions but primary model {self.model} produces {primary_dims}",
                {
                    "primary_model": self.model,
                    "fallback_model": self.fallback_model,
                    "primary_dimensions": primary_dims,
                    "fallback_dimensions": fallback_dims,
                },
            )
        return self


class SearchSettings(BaseSettings):
    """Search service configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CTX_SEARCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    top_k: int = Field(default=DEFAULT_TOP_K, ge=1, description="Results returned")
    mode: Literal["vector", "bm25", "hybrid"] = Field(
        default="hybrid", description="Retrieval paths to run"
    )
    fusion: Literal["max", "rrf"] = Field(
        default="max", description="How dense and keyword results are merged"
    )
    dense_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    bm25_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    rerank: bool = Field(default=False, description="Enable cross-encoder reranking")
    rerank_model: str = Field(default=DEFAULT_RERANK_MODEL)
    rerank_candidates: int = Field(default=DEFAULT_RERANK_CANDIDATES, ge=1)


class IndexSettings(BaseSettings):
    """Indexing runtime configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CTX_INDEX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    index_path: Path | None = Field(
        default=None, description="LanceDB directory (in-memory store when unset)"
    )
    max_memory_gb: float | None = Field(
        default=None, gt=0, description="Process memory cap used to shrink batches"
    )
    log_level: str = Field(default="WARNING", description="loguru sink level")

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()


class ObservabilitySettings(BaseSettings):
    """Langfuse tracing configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LANGFUSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    public_key: str | None = Field(default=None, description="Langfuse public key")
    secret_key: str | None = Field(default=None, description="Langfuse secret key")
    host: str = Field(
        default="https://cloud.langfuse.com", description="Langfuse server URL"
    )
    enabled: bool = Field(default=True, description="Allow remote tracing")

    @property
    def has_credentials(self) -> bool:
        return bool(self.public_key and self.secret_key)


class Settings(BaseSettings):
    """Aggregate settings for an engine context."""

    model_config = SettingsConfigDict(extra="ignore")

    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    index: IndexSettings = Field(default_factory=IndexSettings)
    observability: ObservabilitySettings = Field(
        default_factory=ObservabilitySettings
    )


def load_settings() -> Settings:
    """Load settings from the environment and ``.env``."""
    return Settings()
