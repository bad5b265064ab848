"""OpenAI embedding provider.

Uses the official ``openai`` SDK (``AsyncOpenAI``).  Also covers any
OpenAI-compatible endpoint via ``base_url``.

Usage:
    provider = OpenAIEmbeddingProvider(api_key="sk-...")
    if await provider.is_available(timeout=1.0):
        vector = await provider.embed("SQL injection in login form")
"""
import logging
from typing import Optional

from threatrag.errors import ConfigurationError

from .provider import EmbeddingProvider

logger = logging.getLogger(__name__)


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """EmbeddingProvider implementation using OpenAI's embeddings API.

    Attributes:
        api_key: OpenAI API key for authentication.
        model: Embedding model to use (default: text-embedding-3-small).
        organization: Optional organization ID.
        base_url: Optional OpenAI-compatible endpoint.
        timeout: Default per-request timeout in seconds.
        dimensions: Optional output size (text-embedding-3-* only).
    """

    DEFAULT_MODEL = "text-embedding-3-small"

    def __init__(
        self,
        api_key: Optional[str],
        model: Optional[str] = None,
        organization: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        dimensions: Optional[int] = None,
    ) -> None:
        if not api_key:
            raise ConfigurationError("OpenAI api_key is required (set OPENAI_API_KEY)")
        self.api_key = api_key
        self.model = model or self.DEFAULT_MODEL
        self.organization = organization
        self.base_url = base_url
        self.timeout = timeout
        self.dimensions = dimensions
        self._client: Optional[object] = None

    @property
    def name(self) -> str:
        return "openai"

    @property
    def model_id(self) -> str:
        return self.model

    def _get_client(self) -> object:
        """Get or create the AsyncOpenAI client."""
        if self._client is None:
            import openai

            kwargs = {"api_key": self.api_key, "timeout": self.timeout, "max_retries": 0}
            if self.organization:
                kwargs["organization"] = self.organization
            if self.base_url:
                kwargs["base_url"] = self.base_url
            self._client = openai.AsyncOpenAI(**kwargs)
        return self._client

    async def embed(self, text: str) -> list[float]:
        client = self._get_client()
        kwargs = {"model": self.model, "input": text}
        if self.dimensions:
            kwargs["dimensions"] = self.dimensions
        response = await client.embeddings.create(**kwargs)
        if not response.data:
            raise ValueError("Unexpected OpenAI response — no embedding data")
        return [float(v) for v in response.data[0].embedding]

    async def is_available(self, timeout: float) -> bool:
        """Check the API is reachable by retrieving the model's metadata."""
        try:
            client = self._get_client()
            await client.with_options(timeout=timeout).models.retrieve(self.model)
            return True
        except Exception as e:
            logger.warning("[embeddings/openai] probe failed: %s", e)
            return False

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
