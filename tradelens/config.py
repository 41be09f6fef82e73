"""Application and retrieval configuration loaded from environment variables.

Uses pydantic-settings for validation and type-safe loading from .env.
Retrieval tunables are read with the RAG_ prefix (e.g. RAG_TOP_K,
RAG_SIMILARITY_THRESHOLD, RAG_BATCH_SIZE) and frozen after load.
"""

from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RetrievalConfig(BaseSettings):
    """Immutable retrieval tunables shared by the embedder, index and retriever.

    Resolved once at startup. An invalid value raises pydantic.ValidationError,
    which the host treats as a fatal startup error.
    """

    model_config = SettingsConfigDict(
        env_prefix="RAG_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # Embedding
    dimension: int = Field(default=384, gt=0)
    batch_size: int = Field(default=100, ge=1, le=1000)
    embedding_max_retries: int = Field(default=3, ge=1)
    embedding_retry_delay_seconds: float = Field(default=2.0, ge=0.0)
    embedding_timeout_seconds: float = Field(default=30.0, gt=0.0)
    embedding_max_concurrency: int = Field(default=4, ge=1)
    max_failure_ratio: float = Field(default=0.1, ge=0.0, le=1.0)
    query_cache_size: int = Field(default=256, ge=0)
    max_query_length: int = Field(default=2000, ge=1)

    # Retrieval
    top_k: int = Field(default=50, ge=0)
    max_top_k: int = Field(default=500, ge=1)
    similarity_threshold: float = Field(default=0.7, ge=-1.0, le=1.0)

    # Index lifecycle
    max_index_records: int = Field(default=1_000_000, ge=1)
    index_ttl_seconds: float = Field(default=30 * 60, gt=0.0)
    record_id_field: str = "id"

    @field_validator("record_id_field")
    @classmethod
    def validate_record_id_field(cls, v: str) -> str:
        """Record id field must be a non-empty name."""
        if not v or not v.strip():
            raise ValueError("record_id_field must be a non-empty field name")
        return v.strip()

    @model_validator(mode="after")
    def validate_top_k_bounds(self) -> "RetrievalConfig":
        if self.top_k > self.max_top_k:
            raise ValueError(
                f"top_k ({self.top_k}) must not exceed max_top_k ({self.max_top_k})"
            )
        return self


class Settings(BaseSettings):
    """Host application settings loaded from environment variables.

    All fields have defaults and can be overridden via .env.
    OPENAI_API_KEY is only required when EMBEDDING_PROVIDER=openai.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Embedding backend
    embedding_provider: Literal["local", "openai"] = "local"
    embedding_model_name: str = "intfloat/multilingual-e5-small"
    openai_api_key: Optional[str] = None

    # Record text representation
    record_format: Literal["transaction", "fields"] = "transaction"

    # Session store
    session_ttl_seconds: float = 30 * 60
    cleanup_interval_seconds: float = 5 * 60
    max_records_per_session: int = 10_000

    # Application metadata
    app_name: str = "TradeLens Retrieval"
    log_level: str = "INFO"
    log_dir: str = "logs"

    @field_validator("openai_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        """Reject placeholder API keys copied from .env.example."""
        if v is not None and (not v.strip() or v.strip().startswith("your_")):
            raise ValueError("API key must be set to a valid value (not placeholder)")
        return v

    @model_validator(mode="after")
    def validate_provider_key(self) -> "Settings":
        if self.embedding_provider == "openai" and not self.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required when embedding_provider=openai")
        return self


settings = Settings()
retrieval_config = RetrievalConfig()
