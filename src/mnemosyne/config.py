"""
Configuration management using Pydantic Settings.

All configuration is loaded from environment variables with sensible defaults.
Use a .env file for local development.

Environment Variables:
    HF_API_KEY: HuggingFace API key (optional, for API-based embeddings)
    EMBEDDING_PROVIDER: "local" (sentence-transformers) or "huggingface"
    EMBEDDING_MODEL: Sentence transformer model for embeddings
    VECTOR_STORE_BACKEND: "faiss" (flat index files) or "sql" (relational table)
    INDEX_PATH: Base path of the FAISS index files
    DATABASE_URL: SQLAlchemy URL for the relational vector store
    SETTINGS_PATH: JSON file holding provider and agent configurations
    VAULT_PATH: Root folder of the note corpus
    LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Embedding Configuration
    # ==========================================================================
    hf_api_key: Optional[SecretStr] = Field(
        default=None,
        description="HuggingFace API key (optional, for API-based embeddings)",
    )
    embedding_provider: Literal["local", "huggingface"] = Field(
        default="local",
        description="Use local sentence-transformers or the HF Inference API",
    )
    embedding_model: str = Field(
        default="sentence-transformers/all-MiniLM-L6-v2",
        description="Sentence transformer model for document/query embeddings",
    )
    embedding_dimension: int = Field(
        default=384,
        ge=1,
        description="Dimension of embedding vectors (must match model)",
    )
    embedding_batch_size: int = Field(
        default=32,
        ge=1,
        le=256,
        description="Number of texts per embedding request",
    )

    # ==========================================================================
    # Chunking Configuration
    # ==========================================================================
    chunk_min_size: int = Field(
        default=200,
        ge=1,
        le=8000,
        description="Minimum chunk length (except the final remainder)",
    )
    chunk_target_size: int = Field(
        default=800,
        ge=50,
        le=8000,
        description="Preferred chunk length in characters",
    )
    chunk_max_size: int = Field(
        default=1000,
        ge=50,
        le=16000,
        description="Hard upper bound on chunk length",
    )
    chunk_overlap: int = Field(
        default=100,
        ge=0,
        le=2000,
        description="Characters of the previous chunk prepended to the next one",
    )
    chunk_respect_boundaries: bool = Field(
        default=True,
        description="Split at headings, paragraphs and sentences where possible",
    )
    chunk_quality_filter: bool = Field(
        default=False,
        description="Drop chunks scoring below chunk_quality_threshold",
    )
    chunk_quality_threshold: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Minimum quality score kept by the quality filter",
    )

    # ==========================================================================
    # Vector Store Configuration
    # ==========================================================================
    vector_store_backend: Literal["faiss", "sql"] = Field(
        default="faiss",
        description="Persistence backend for the vector store",
    )
    index_path: Path = Field(
        default=Path("data/index/vectors"),
        description="Base path for FAISS index files (.index and .json)",
    )
    database_url: str = Field(
        default="sqlite:///data/index/vectors.db",
        description="SQLAlchemy URL for the relational vector store",
    )
    hybrid_semantic_weight: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Weight of the semantic score in hybrid retrieval",
    )

    # ==========================================================================
    # Retrieval Configuration
    # ==========================================================================
    retrieval_top_k: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Number of chunks to retrieve",
    )
    similarity_threshold: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Minimum relevance score for retrieved chunks",
    )
    retrieval_strategy: Literal["semantic", "keyword", "hybrid"] = Field(
        default="semantic",
        description="Default scoring strategy",
    )

    # ==========================================================================
    # LLM Configuration
    # ==========================================================================
    llm_temperature: float = Field(
        default=0.7,
        ge=0.0,
        le=2.0,
        description="Default sampling temperature",
    )
    llm_max_tokens: int = Field(
        default=2048,
        ge=1,
        le=32768,
        description="Default maximum tokens for a response",
    )
    llm_timeout: float = Field(
        default=120.0,
        gt=0.0,
        description="HTTP timeout for provider requests in seconds",
    )
    llm_max_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Retries on rate limits and connection failures",
    )
    llm_retry_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Initial backoff delay in seconds (doubles per attempt)",
    )

    # ==========================================================================
    # Agent Configuration
    # ==========================================================================
    max_tool_iterations: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Maximum model/tool round trips per execution",
    )
    memory_max_messages: int = Field(
        default=15,
        ge=2,
        le=200,
        description="Conversation length that triggers compaction",
    )

    # ==========================================================================
    # Security Configuration
    # ==========================================================================
    kdf_iterations: int = Field(
        default=480000,
        ge=1000,
        description="PBKDF2 iterations for master password key derivation",
    )

    # ==========================================================================
    # Storage Configuration
    # ==========================================================================
    settings_path: Path = Field(
        default=Path("data/settings.json"),
        description="JSON settings record (providers, agents, key salt)",
    )
    vault_path: Path = Field(
        default=Path("vault"),
        description="Root folder of the markdown note corpus",
    )

    # ==========================================================================
    # API Configuration
    # ==========================================================================
    api_host: str = Field(
        default="0.0.0.0",
        description="Host to bind API server",
    )
    api_port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="Port for API server",
    )

    # ==========================================================================
    # Observability Configuration
    # ==========================================================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    phoenix_endpoint: str = Field(
        default="http://localhost:6006",
        description="Arize Phoenix collector endpoint",
    )
    enable_tracing: bool = Field(
        default=False,
        description="Enable OpenTelemetry tracing to Phoenix",
    )

    # ==========================================================================
    # Validators
    # ==========================================================================
    @field_validator("chunk_target_size")
    @classmethod
    def validate_target_size(cls, v: int, info) -> int:
        """Ensure the target size is not below the minimum size."""
        min_size = info.data.get("chunk_min_size", 200)
        if v < min_size:
            raise ValueError(f"chunk_target_size ({v}) must be >= chunk_min_size ({min_size})")
        return v

    @field_validator("chunk_max_size")
    @classmethod
    def validate_max_size(cls, v: int, info) -> int:
        """Ensure the maximum size is not below the target size."""
        target = info.data.get("chunk_target_size", 800)
        if v < target:
            raise ValueError(f"chunk_max_size ({v}) must be >= chunk_target_size ({target})")
        return v

    @field_validator("chunk_overlap")
    @classmethod
    def validate_chunk_overlap(cls, v: int, info) -> int:
        """Ensure overlap is less than the minimum chunk size."""
        min_size = info.data.get("chunk_min_size", 200)
        if v >= min_size:
            raise ValueError(f"chunk_overlap ({v}) must be less than chunk_min_size ({min_size})")
        return v

    @field_validator("index_path", "settings_path", "vault_path")
    @classmethod
    def resolve_path(cls, v: Path) -> Path:
        """Resolve paths to absolute paths."""
        return v.resolve()

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @property
    def hf_api_key_value(self) -> Optional[str]:
        """Get the actual API key value (use sparingly)."""
        if self.hf_api_key:
            return self.hf_api_key.get_secret_value()
        return None


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to ensure settings are only loaded once.
    Call `get_settings.cache_clear()` to reload settings.

    Returns:
        Settings: Application settings instance
    """
    return Settings()


# Convenience alias
settings = get_settings()
