"""Application settings for the career chat retrieval core."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Tunables for retrieval, read from ``CAREER_CHAT_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CAREER_CHAT_",
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Core application settings
    app_env: Literal["development", "staging", "production", "test"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = True

    # Vector store
    pinecone_namespace: str = "default"
    vector_search_timeout: float = Field(default=30.0, gt=0)
    embedding_dimensions: int = Field(default=1024, ge=1)

    # Hybrid search thresholds
    semantic_min_score: float = Field(default=0.5, ge=0.0, le=1.0)
    lexical_min_score: float = Field(default=0.3, ge=0.0, le=1.0)
    fallback_min_score: float = Field(default=0.5, ge=0.0, le=1.0)

    # Multi-stage retrieval
    multi_stage_early_stop: bool = False
    early_stop_relevance: float = Field(default=0.85, ge=0.0, le=1.0)

    # Credentials for third-party services are read from the environment
    # directly since they don't use the CAREER_CHAT_ prefix:
    # - PINECONE_API_KEY
    # - PINECONE_INDEX_HOST
    # - OPENAI_API_KEY
    # - OPENAI_EMBEDDING_MODEL

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
