"""Abstract EmbeddingProvider interface.

Every embedding back-end (Ollama, OpenAI, Gemini, Bedrock, …) implements
this interface so the provider chain stays backend-agnostic and never
dispatches on provider-name strings.
"""
from abc import ABC, abstractmethod


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers.

    Implementations must be safe to call from several in-flight requests
    at once; the chain issues concurrent ``embed()`` calls from different
    ingestions and searches.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Stable provider identifier (used for priority lists and cache keys)."""

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Provider-internal model identifier (used for logging and chunk metadata)."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Generate the embedding vector for a single text.

        Args:
            text: Non-empty string to embed.

        Returns:
            A list of floats.

        Raises:
            Exception: On provider error (network, auth, quota, malformed
                       response, …).  The chain treats every exception as a
                       provider failure.
        """

    @abstractmethod
    async def is_available(self, timeout: float) -> bool:
        """Cheap liveness probe, bounded by *timeout* seconds.

        Must return ``False`` instead of raising.
        """

    async def aclose(self) -> None:
        """Release network resources.  Override if needed."""
