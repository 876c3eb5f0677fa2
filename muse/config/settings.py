"""
Muse - Centralized Configuration
=================================
Uses ``pydantic-settings`` (``BaseSettings``) to load *all* configuration
from environment variables and the project-level ``.env`` file.

Security
--------
- ``GOOGLE_API_KEY`` is typed as ``SecretStr`` and has **no default value**.
  If the key is missing at startup, Pydantic will raise a ``ValidationError``
  with a clear error message.  The raw value is never exposed in repr,
  logs, or tracebacks.
- ``MONGO_URI`` is also ``SecretStr``.  It is only required when the
  Atlas backend is selected, and that requirement is checked at startup
  as well, never mid-request.

Timeouts
--------
Per-call timeouts bound each external round trip (embedding, search,
every stream pull).  ``PIPELINE_TIMEOUT_SECONDS`` bounds the whole
request independently of them.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings.

    Every field is loaded from environment variables (or ``.env``).
    Fields *without* a default are **required** — the app will refuse
    to start until they are provided.

    Attributes
    ----------
    GOOGLE_API_KEY : SecretStr
        API key for Google AI Studio (Gemini embeddings + chat).  **Required.**
    VECTOR_BACKEND : Literal["lancedb", "atlas"]
        Which ``VectorIndex`` adapter is opened at startup.
    MONGO_URI : SecretStr | None
        Atlas connection string.  Required when ``VECTOR_BACKEND="atlas"``.
    MONGO_NAMESPACE : str
        ``"<database>.<collection>"`` holding the passages.
    ATLAS_INDEX_NAME : str
        Name of the Atlas Vector Search index.
    SIMILARITY_METRIC : Literal["cosine", "dot"]
        Metric the index was populated with.  Must not change after ingestion.
    EMBEDDING_DIMENSIONS : int
        Dimensionality the index was built for.  Query vectors of any
        other length are a configuration error.
    RETRIEVAL_K : int
        Number of passages retrieved per query.
    CONTEXT_MAX_CHARS : int | None
        Optional character budget for the context bundle.
    NO_CONTEXT_POLICY : Literal["generate", "canned"]
        Whether an empty context still calls the model.
    """

    # ── Resolved Absolute Paths ────────────────────────────────────────
    BASE_DIR: Path = Path(__file__).resolve().parent.parent
    LANCEDB_PATH: Path = BASE_DIR / "data" / "lancedb"

    # ── Environment Mode ───────────────────────────────────────────────
    ENV: Literal["dev", "prod"] = "dev"
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None

    # ── API Keys (REQUIRED — no default) ───────────────────────────────
    GOOGLE_API_KEY: SecretStr

    # ── Vector Index ───────────────────────────────────────────────────
    VECTOR_BACKEND: Literal["lancedb", "atlas"] = "lancedb"
    LANCEDB_TABLE_NAME: str = "muse_docs"
    MONGO_URI: SecretStr | None = None
    MONGO_NAMESPACE: str = "openmuse.nba"
    ATLAS_INDEX_NAME: str = "vector_index"
    ATLAS_CANDIDATE_MULTIPLIER: int = 10
    TEXT_KEY: str = "text"
    EMBEDDING_KEY: str = "embedding"
    SIMILARITY_METRIC: Literal["cosine", "dot"] = "cosine"

    # ── Model Configuration ────────────────────────────────────────────
    EMBEDDING_MODEL: str = "gemini-embedding-001"
    EMBEDDING_DIMENSIONS: int = 768
    LLM_MODEL: str = "gemini-2.0-flash"
    LLM_TEMPERATURE: float = 0.7
    LLM_MAX_OUTPUT_TOKENS: int = 1024
    PROVIDER_MAX_RETRIES: int = 2

    # ── Retrieval & Prompt ─────────────────────────────────────────────
    RETRIEVAL_K: int = 4
    CONTEXT_MAX_CHARS: int | None = None
    NO_CONTEXT_POLICY: Literal["generate", "canned"] = "generate"

    # ── Timeouts (seconds) ─────────────────────────────────────────────
    EMBED_TIMEOUT_SECONDS: float = 10.0
    SEARCH_TIMEOUT_SECONDS: float = 10.0
    GENERATION_TIMEOUT_SECONDS: float = 30.0
    PIPELINE_TIMEOUT_SECONDS: float = 60.0

    # ── Validators ─────────────────────────────────────────────────────

    @field_validator("LLM_TEMPERATURE")
    @classmethod
    def _temperature_range(cls, v: float) -> float:
        if not 0.0 <= v <= 2.0:
            raise ValueError(f"LLM_TEMPERATURE must be 0–2, got {v}")
        return v


    @field_validator("EMBEDDING_DIMENSIONS", "LLM_MAX_OUTPUT_TOKENS", "RETRIEVAL_K", "ATLAS_CANDIDATE_MULTIPLIER")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be ≥ 1, got {v}")
        return v


    @field_validator("CONTEXT_MAX_CHARS")
    @classmethod
    def _budget_non_negative(cls, v: int | None) -> int | None:
        if v is not None and v < 0:
            raise ValueError(f"CONTEXT_MAX_CHARS must be ≥ 0, got {v}")
        return v


    @field_validator("EMBED_TIMEOUT_SECONDS", "SEARCH_TIMEOUT_SECONDS", "GENERATION_TIMEOUT_SECONDS", "PIPELINE_TIMEOUT_SECONDS")
    @classmethod
    def _timeout_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"timeouts must be > 0, got {v}")
        return v


    @field_validator("MONGO_NAMESPACE")
    @classmethod
    def _namespace_shape(cls, v: str) -> str:
        db_name, _, collection = v.partition(".")
        if not db_name or not collection or "." in collection:
            raise ValueError(f"MONGO_NAMESPACE must look like '<db>.<collection>', got {v!r}")
        return v


    @field_validator("LLM_MODEL", "EMBEDDING_MODEL")
    @classmethod
    def _model_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("model identifiers must not be blank")
        return v.strip()


    @model_validator(mode="after")
    def _backend_credentials(self) -> Settings:
        if self.VECTOR_BACKEND == "atlas" and (self.MONGO_URI is None or not self.MONGO_URI.get_secret_value()):
            raise ValueError("MONGO_URI is required when VECTOR_BACKEND='atlas'")
        return self

    # ── Pydantic Settings Configuration ────────────────────────────────
    model_config = SettingsConfigDict(env_file=Path(__file__).resolve().parent.parent / ".env", env_file_encoding="utf-8", extra="ignore")


# ── Singleton Instance ─────────────────────────────────────────────────
# Import this throughout the project:
#     from muse.config.settings import settings
settings = Settings()
