"""Build an :class:`EmbeddingProviderChain` from application settings.

Only providers that are enabled *and* have credentials/endpoints configured
are constructed; the remaining ones keep the order given by
``embedding.priority``.
"""
import logging
from typing import Callable, Dict, List, Optional

from threatrag.config import AppSettings
from threatrag.errors import ConfigurationError

from .bedrock import BedrockEmbeddingProvider
from .chain import EmbeddingProviderChain
from .gemini import GeminiEmbeddingProvider
from .ollama import OllamaEmbeddingProvider
from .openai_provider import OpenAIEmbeddingProvider
from .provider import EmbeddingProvider

logger = logging.getLogger(__name__)


def _build_gemini(settings: AppSettings) -> Optional[EmbeddingProvider]:
    cfg = settings.embedding.gemini
    if not cfg.enabled or not settings.secrets.gemini.api_key:
        return None
    return GeminiEmbeddingProvider(
        api_key=settings.secrets.gemini.api_key,
        model=cfg.model,
        base_url=cfg.base_url,
        timeout=settings.embedding.request_timeout_seconds,
    )


def _build_openai(settings: AppSettings) -> Optional[EmbeddingProvider]:
    cfg = settings.embedding.openai
    secrets = settings.secrets.openai
    if not cfg.enabled or not secrets.api_key:
        return None
    return OpenAIEmbeddingProvider(
        api_key=secrets.api_key,
        model=cfg.model,
        organization=secrets.organization or None,
        base_url=secrets.base_url or None,
        timeout=settings.embedding.request_timeout_seconds,
        dimensions=settings.embedding.dim if cfg.match_dim else None,
    )


def _build_ollama(settings: AppSettings) -> Optional[EmbeddingProvider]:
    cfg = settings.embedding.ollama
    if not cfg.enabled or not settings.secrets.ollama.base_url:
        return None
    return OllamaEmbeddingProvider(
        base_url=settings.secrets.ollama.base_url,
        model=cfg.model,
        timeout=settings.embedding.request_timeout_seconds,
    )


def _build_bedrock(settings: AppSettings) -> Optional[EmbeddingProvider]:
    cfg = settings.embedding.bedrock
    aws = settings.secrets.aws
    if not cfg.enabled or not (aws.access_key_id and aws.secret_access_key):
        return None
    return BedrockEmbeddingProvider(
        aws_access_key_id=aws.access_key_id,
        aws_secret_access_key=aws.secret_access_key,
        aws_session_token=aws.session_token or None,
        region_name=aws.region,
        model_id=cfg.model_id,
        timeout=settings.embedding.request_timeout_seconds,
    )


_BUILDERS: Dict[str, Callable[[AppSettings], Optional[EmbeddingProvider]]] = {
    "gemini":  _build_gemini,
    "openai":  _build_openai,
    "ollama":  _build_ollama,
    "bedrock": _build_bedrock,
}


def build_providers(settings: AppSettings) -> List[EmbeddingProvider]:
    """Construct the configured providers in priority order."""
    providers: List[EmbeddingProvider] = []
    for name in settings.embedding.priority:
        provider = _BUILDERS[name](settings)
        if provider is None:
            logger.info("[embeddings] Provider %s not enabled or not configured; skipping", name)
            continue
        logger.info("[embeddings] Provider %s configured (model=%s)", name, provider.model_id)
        providers.append(provider)
    return providers


def build_provider_chain(settings: AppSettings) -> EmbeddingProviderChain:
    """Build the provider chain described by *settings*.

    Raises:
        ConfigurationError: No provider is configured.
    """
    providers = build_providers(settings)
    if not providers:
        raise ConfigurationError(
            "No embedding provider configured; set credentials or an endpoint for one of "
            f"{settings.embedding.priority}"
        )
    emb = settings.embedding
    return EmbeddingProviderChain(
        providers,
        probe_timeout=emb.probe_timeout_seconds,
        request_timeout=emb.request_timeout_seconds,
        cooldown_seconds=emb.cooldown_seconds,
        cache_capacity=emb.cache_capacity,
    )
