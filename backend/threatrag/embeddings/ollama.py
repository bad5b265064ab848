"""Ollama embedding provider.

Talks to a local (or LAN) Ollama server over its HTTP API:

    POST {base_url}/api/embeddings   {"model": ..., "prompt": ...}
      → {"embedding": [...]}

    GET  {base_url}/api/tags          (liveness probe)
"""
import logging
from typing import Optional

import httpx

from threatrag.errors import ConfigurationError

from .provider import EmbeddingProvider

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "nomic-embed-text:latest"


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Embedding provider backed by an Ollama server.

    Args:
        base_url:  Ollama endpoint, e.g. ``http://localhost:11434``.
        model:     Embedding model tag.
        timeout:   Default per-request timeout in seconds.
        transport: Optional httpx transport (tests inject a MockTransport).
    """

    def __init__(
        self,
        base_url: Optional[str],
        model: str = DEFAULT_MODEL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not base_url:
            raise ConfigurationError("Ollama base_url is required (set OLLAMA_BASE_URL)")
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "ollama"

    @property
    def model_id(self) -> str:
        return self._model

    async def embed(self, text: str) -> list[float]:
        resp = await self._client.post(
            "/api/embeddings",
            json={"model": self._model, "prompt": text},
        )
        resp.raise_for_status()
        embedding = resp.json().get("embedding")
        if not embedding:
            raise ValueError("Unexpected Ollama response — 'embedding' missing or empty")
        return [float(v) for v in embedding]

    async def is_available(self, timeout: float) -> bool:
        try:
            resp = await self._client.get("/api/tags", timeout=timeout)
            return resp.status_code == 200
        except Exception as exc:
            logger.warning("[embeddings/ollama] not reachable at %s: %s", self._base_url, exc)
            return False

    async def aclose(self) -> None:
        await self._client.aclose()
