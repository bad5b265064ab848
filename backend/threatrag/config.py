"""threatrag application configuration.

Loads settings from two YAML files:
  * threatrag.settings.yaml  — non-secret configuration
  * threatrag.secrets.yaml   — secrets (never committed)

Secrets that are absent from the secrets file fall back to the usual
environment variables (``OPENAI_API_KEY``, ``GEMINI_API_KEY``,
``OLLAMA_BASE_URL``, ``AWS_*``) so a container can be configured without
a secrets file at all.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("threatrag.settings.yaml")
SECRETS_FILE  = Path("threatrag.secrets.yaml")

KNOWN_PROVIDERS = ("gemini", "openai", "ollama", "bedrock")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class AwsSecrets(BaseModel):
    access_key_id:     Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token:     Optional[str] = None
    region:            Optional[str] = "us-east-1"


class OpenAISecrets(BaseModel):
    api_key:      Optional[str] = None
    organization: Optional[str] = None
    base_url:     Optional[str] = None


class GeminiSecrets(BaseModel):
    api_key: Optional[str] = None


class OllamaSecrets(BaseModel):
    base_url: Optional[str] = None


class Secrets(BaseModel):
    aws:    AwsSecrets    = Field(default_factory=AwsSecrets)
    openai: OpenAISecrets = Field(default_factory=OpenAISecrets)
    gemini: GeminiSecrets = Field(default_factory=GeminiSecrets)
    ollama: OllamaSecrets = Field(default_factory=OllamaSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:      str = "0.0.0.0"
    port:      int = 8000
    log_level: str = "info"


class OllamaEmbeddingSettings(BaseModel):
    enabled: bool = True
    model:   str  = "nomic-embed-text:latest"


class OpenAIEmbeddingSettings(BaseModel):
    enabled: bool = True
    model:   str  = "text-embedding-3-small"
    # Ask text-embedding-3-* for embedding.dim-sized vectors
    match_dim: bool = True


class GeminiEmbeddingSettings(BaseModel):
    enabled:  bool = True
    model:    str  = "text-embedding-004"
    base_url: str  = "https://generativelanguage.googleapis.com/v1beta"


class BedrockEmbeddingSettings(BaseModel):
    enabled:  bool = False
    model_id: str  = "cohere.embed-multilingual-v3"


class EmbeddingSettings(BaseModel):
    """Provider chain configuration.

    ``priority`` is the default fallback order; providers without
    credentials/endpoints are left out of the chain at build time.
    """
    priority:                List[str] = Field(default_factory=lambda: list(KNOWN_PROVIDERS))
    dim:                     int       = 768
    probe_timeout_seconds:   float     = 1.0
    request_timeout_seconds: float     = 30.0
    cooldown_seconds:        float     = 300.0
    cache_capacity:          int       = 100
    ollama:  OllamaEmbeddingSettings  = Field(default_factory=OllamaEmbeddingSettings)
    openai:  OpenAIEmbeddingSettings  = Field(default_factory=OpenAIEmbeddingSettings)
    gemini:  GeminiEmbeddingSettings  = Field(default_factory=GeminiEmbeddingSettings)
    bedrock: BedrockEmbeddingSettings = Field(default_factory=BedrockEmbeddingSettings)

    @field_validator("priority")
    @classmethod
    def _known_providers(cls, value: List[str]) -> List[str]:
        unknown = [name for name in value if name not in KNOWN_PROVIDERS]
        if unknown:
            raise ValueError(f"Unknown embedding providers in priority: {unknown}")
        return value

    @field_validator("dim", "cache_capacity")
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("probe_timeout_seconds", "request_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value


class ChunkingSettings(BaseModel):
    generic_chunk_size:       int = 4000
    generic_chunk_overlap:    int = 800
    structured_chunk_size:    int = 8000
    structured_chunk_overlap: int = 1000

    @model_validator(mode="after")
    def _overlap_smaller_than_size(self) -> "ChunkingSettings":
        for size, overlap in (
            (self.generic_chunk_size, self.generic_chunk_overlap),
            (self.structured_chunk_size, self.structured_chunk_overlap),
        ):
            if size <= 0:
                raise ValueError("chunk size must be positive")
            if overlap < 0 or overlap >= size:
                raise ValueError("chunk overlap must be >= 0 and smaller than chunk size")
        return self


class RagSettings(BaseModel):
    """Store and search configuration.

    ``fallback_candidate_limit`` bounds the brute-force scan used when the
    native vector index is unavailable: only that many chunks are scored,
    so recall drops on corpora larger than the window.
    """
    enabled:                    bool      = True
    db_path:                    str       = "threatrag.duckdb"
    vector_index:               bool      = True
    fallback_candidate_limit:   int       = 100
    query_timeout_seconds:      float     = 10.0
    default_search_limit:       int       = 8
    default_context_limit:      int       = 5
    reference_keywords:         List[str] = Field(default_factory=lambda: ["stride", "capec", "mapping"])
    reference_content_keywords: List[str] = Field(default_factory=lambda: ["stride", "capec"])

    @field_validator("fallback_candidate_limit", "default_search_limit", "default_context_limit")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value


class AppSettings(BaseModel):
    server:    ServerSettings    = Field(default_factory=ServerSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    chunking:  ChunkingSettings  = Field(default_factory=ChunkingSettings)
    rag:       RagSettings       = Field(default_factory=RagSettings)
    secrets:   Secrets           = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Environment fallbacks for secrets
# ---------------------------------------------------------------------------


def _apply_env_fallbacks(secrets: Secrets) -> None:
    """Fill secrets left empty in the YAML from conventional env vars."""
    env = os.environ
    secrets.openai.api_key = secrets.openai.api_key or env.get("OPENAI_API_KEY")
    secrets.gemini.api_key = secrets.gemini.api_key or env.get("GEMINI_API_KEY")
    secrets.ollama.base_url = secrets.ollama.base_url or env.get("OLLAMA_BASE_URL")
    secrets.aws.access_key_id = secrets.aws.access_key_id or env.get("AWS_ACCESS_KEY_ID")
    secrets.aws.secret_access_key = (
        secrets.aws.secret_access_key or env.get("AWS_SECRET_ACCESS_KEY")
    )
    secrets.aws.session_token = secrets.aws.session_token or env.get("AWS_SESSION_TOKEN")
    if env.get("AWS_DEFAULT_REGION") and secrets.aws.region == "us-east-1":
        secrets.aws.region = env["AWS_DEFAULT_REGION"]


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object.

    A relative ``rag.db_path`` is resolved against the directory holding the
    settings file, so the database lands next to its configuration.
    """
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    if secrets_path is None:
        secrets_path = settings_path.parent / SECRETS_FILE.name

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(Path(secrets_path))

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    _apply_env_fallbacks(app_settings.secrets)

    db_path = Path(app_settings.rag.db_path)
    if app_settings.rag.db_path != ":memory:" and not db_path.is_absolute():
        app_settings.rag.db_path = str(settings_path.parent.resolve() / db_path)

    logger.info(
        "Settings loaded (server=%s:%s, embedding.priority=%s, dim=%d, rag.db_path=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.embedding.priority,
        app_settings.embedding.dim,
        app_settings.rag.db_path,
    )
    return app_settings
