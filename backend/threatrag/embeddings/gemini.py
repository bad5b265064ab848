"""Google Gemini embedding provider (Generative Language REST API).

    POST {base_url}/models/{model}:embedContent?key=...
      {"model": "models/{model}", "content": {"parts": [{"text": ...}]}}
      → {"embedding": {"values": [...]}}

    GET  {base_url}/models/{model}?key=...   (liveness probe)
"""
import logging
from typing import Optional

import httpx

from threatrag.errors import ConfigurationError

from .provider import EmbeddingProvider

logger = logging.getLogger(__name__)

DEFAULT_MODEL    = "text-embedding-004"
DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


class GeminiEmbeddingProvider(EmbeddingProvider):
    """Embedding provider backed by the Gemini embedContent endpoint.

    Args:
        api_key:   Gemini API key.
        model:     Embedding model name (without the ``models/`` prefix).
        base_url:  API root.
        timeout:   Default per-request timeout in seconds.
        transport: Optional httpx transport (tests inject a MockTransport).
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not api_key:
            raise ConfigurationError("Gemini api_key is required (set GEMINI_API_KEY)")
        self._api_key = api_key
        self._model = model.removeprefix("models/")
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "gemini"

    @property
    def model_id(self) -> str:
        return self._model

    async def embed(self, text: str) -> list[float]:
        resp = await self._client.post(
            f"/models/{self._model}:embedContent",
            params={"key": self._api_key},
            json={
                "model": f"models/{self._model}",
                "content": {"parts": [{"text": text}]},
            },
        )
        resp.raise_for_status()
        values = (resp.json().get("embedding") or {}).get("values")
        if not values:
            raise ValueError("Unexpected Gemini response — 'embedding.values' missing or empty")
        return [float(v) for v in values]

    async def is_available(self, timeout: float) -> bool:
        try:
            resp = await self._client.get(
                f"/models/{self._model}",
                params={"key": self._api_key},
                timeout=timeout,
            )
            return resp.status_code == 200
        except Exception as exc:
            logger.warning("[embeddings/gemini] probe failed: %s", exc)
            return False

    async def aclose(self) -> None:
        await self._client.aclose()
