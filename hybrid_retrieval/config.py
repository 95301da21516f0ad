"""
Configuration management for the hybrid retrieval engine.

Uses pydantic-settings for type-safe configuration with environment variable support.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ChunkingSettings(BaseSettings):
    """Sentence-aware chunking configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CHUNK_",
        env_file=".env",
        extra="ignore",
    )

    # Sizes are measured in tokens, not characters
    size: int = Field(default=200, ge=1)
    overlap: int = Field(default=50, ge=0)

    token_counter: Literal["whitespace", "tiktoken"] = "whitespace"
    encoding: str = "cl100k_base"
    splitter: Literal["default", "smart"] = "default"


class BM25Settings(BaseSettings):
    """BM25 sparse index configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BM25_",
        env_file=".env",
        extra="ignore",
    )

    k1: float = Field(default=1.5, ge=0.0)
    b: float = Field(default=0.75, ge=0.0, le=1.0)
    remove_stopwords: bool = False


class VectorStoreSettings(BaseSettings):
    """Vector store backend configuration."""

    model_config = SettingsConfigDict(
        env_prefix="VECTOR_STORE_",
        env_file=".env",
        extra="ignore",
    )

    # Backend identifier resolved through the backend registry
    backend: str = "memory"

    url: str = "http://localhost:6333"
    api_key: SecretStr | None = None
    timeout: int = Field(default=30, ge=1)

    collection_name: str = "documents"
    dimension: int = Field(default=1536, ge=1)
    metric: Literal["L2", "IP"] = "L2"

    @field_validator("url")
    @classmethod
    def normalize_url(cls, v: str) -> str:
        """Ensure URL doesn't have trailing slash."""
        return v.rstrip("/")


class RetrievalSettings(BaseSettings):
    """Hybrid retrieval configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # Fusion weights, normalized to sum to 1.0 at rerank time
    dense_weight: float = Field(default=0.5, ge=0.0, alias="DENSE_WEIGHT")
    sparse_weight: float = Field(default=0.5, ge=0.0, alias="SPARSE_WEIGHT")

    # RRF parameter
    rrf_k: float = Field(default=60.0, alias="RRF_K")

    # Search settings
    default_top_k: int = Field(default=10, ge=1, alias="DEFAULT_TOP_K")
    candidate_multiplier: int = Field(default=3, ge=1, alias="CANDIDATE_MULTIPLIER")

    # Fused RRF scores below this are dropped (0 keeps everything)
    min_score: float = Field(default=0.0, ge=0.0, alias="MIN_SCORE")


class MonitoringSettings(BaseSettings):
    """Logging and metrics configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: Literal["json", "text"] = Field(default="json", alias="LOG_FORMAT")


class Settings(BaseSettings):
    """Main settings aggregating all configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    chunking: ChunkingSettings = Field(default_factory=ChunkingSettings)
    bm25: BM25Settings = Field(default_factory=BM25Settings)
    vector_store: VectorStoreSettings = Field(default_factory=VectorStoreSettings)
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()


# Convenience accessors
def get_chunking_settings() -> ChunkingSettings:
    return get_settings().chunking


def get_bm25_settings() -> BM25Settings:
    return get_settings().bm25


def get_vector_store_settings() -> VectorStoreSettings:
    return get_settings().vector_store


def get_retrieval_settings() -> RetrievalSettings:
    return get_settings().retrieval
