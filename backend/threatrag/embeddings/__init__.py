"""Embedding providers and the fallback chain that composes them.

Every backend (Gemini, OpenAI, Ollama, Bedrock) implements
:class:`EmbeddingProvider`; :class:`EmbeddingProviderChain` adds priority
ordering, liveness probing, circuit breaking and a bounded LRU cache.
"""
from .provider import EmbeddingProvider
from .bedrock import BedrockEmbeddingProvider
from .chain import CacheStats, EmbeddingProviderChain, ProviderStatus
from .factory import build_provider_chain, build_providers
from .gemini import GeminiEmbeddingProvider
from .ollama import OllamaEmbeddingProvider
from .openai_provider import OpenAIEmbeddingProvider

__all__ = [
    "EmbeddingProvider",
    "BedrockEmbeddingProvider",
    "GeminiEmbeddingProvider",
    "OllamaEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "EmbeddingProviderChain",
    "ProviderStatus",
    "CacheStats",
    "build_provider_chain",
    "build_providers",
]
