"""Ordered embedding-provider fallback chain.

Wraps N :class:`EmbeddingProvider` instances behind one ``embed()`` call:

* an explicit provider hint is honoured only after a short liveness probe;
* otherwise providers are tried in priority order until one succeeds;
* a provider whose call fails is put on cooldown (circuit breaker) and is
  skipped without probing until the cooldown elapses or it succeeds again;
* vectors are cached per ``(provider, text)`` in a bounded LRU.

Every provider call and probe is bounded by a timeout; a timeout is handled
exactly like any other provider failure.

Usage:
    chain = EmbeddingProviderChain([gemini, ollama], cooldown_seconds=300)
    vector = await chain.embed("Spoofing of the auth token")
    provider, vector = await chain.embed_with_provider(text, provider_hint="ollama")
"""
import asyncio
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from threatrag.errors import ConfigurationError, ProviderUnavailableError

from .provider import EmbeddingProvider

logger = logging.getLogger(__name__)


@dataclass
class ProviderStatus:
    """Status of a single provider in the chain."""
    name: str
    model: str
    priority: int
    cooling_down: bool
    retry_in_seconds: Optional[float]  # None when not cooling down


@dataclass
class CacheStats:
    size: int
    capacity: int
    hits: int
    misses: int


class EmbeddingProviderChain:
    """Priority-ordered embedding providers with circuit breaking and caching.

    Args:
        providers:        Providers in default priority order.  Names must be unique.
        probe_timeout:    Liveness-probe timeout for a hinted provider (seconds).
        request_timeout:  Timeout for a single ``embed()`` call (seconds).
        cooldown_seconds: How long a failed provider is skipped.
        cache_capacity:   Maximum number of cached vectors.
        clock:            Monotonic clock; injectable for tests.
    """

    def __init__(
        self,
        providers: Sequence[EmbeddingProvider],
        probe_timeout: float = 1.0,
        request_timeout: float = 30.0,
        cooldown_seconds: float = 300.0,
        cache_capacity: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not providers:
            raise ConfigurationError("No embedding providers configured")
        if cache_capacity <= 0:
            raise ConfigurationError("Embedding cache capacity must be positive")

        self._providers: "OrderedDict[str, EmbeddingProvider]" = OrderedDict()
        for provider in providers:
            if provider.name in self._providers:
                raise ConfigurationError(f"Duplicate embedding provider: {provider.name}")
            self._providers[provider.name] = provider

        self._probe_timeout = probe_timeout
        self._request_timeout = request_timeout
        self._cooldown = cooldown_seconds
        self._clock = clock

        # Circuit breaker: provider name -> clock() value when it may be retried
        self._unavailable_until: Dict[str, float] = {}

        self._cache: "OrderedDict[Tuple[str, str], List[float]]" = OrderedDict()
        self._cache_capacity = cache_capacity
        self._cache_hits = 0
        self._cache_misses = 0

        # Guards the breaker map and the cache
        self._lock = threading.Lock()

        logger.info(
            "[EmbeddingChain] Initialised with providers=%s cooldown=%.0fs cache_capacity=%d",
            list(self._providers), cooldown_seconds, cache_capacity,
        )

    @property
    def provider_names(self) -> List[str]:
        return list(self._providers)

    def model_for(self, name: str) -> str:
        """Model identifier of the provider called *name*."""
        return self._providers[name].model_id

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def embed(self, text: str, provider_hint: Optional[str] = None) -> List[float]:
        """Embed *text* with the first provider that succeeds."""
        _, vector = await self.embed_with_provider(text, provider_hint)
        return vector

    async def embed_with_provider(
        self,
        text: str,
        provider_hint: Optional[str] = None,
    ) -> Tuple[str, List[float]]:
        """Embed *text* and also return the name of the provider that served it.

        Raises:
            ValueError: *text* is empty.
            ProviderUnavailableError: every provider failed or is cooling down.
        """
        if not text:
            raise ValueError("Cannot embed empty text")

        failures: Dict[str, str] = {}
        order = list(self._providers)

        if provider_hint:
            if provider_hint not in self._providers:
                logger.warning(
                    "[EmbeddingChain] Hinted provider %r is not configured; using priority order",
                    provider_hint,
                )
            else:
                order.remove(provider_hint)
                result = await self._try_hinted(self._providers[provider_hint], text, failures)
                if result is not None:
                    return provider_hint, self._served(result)

        for name in order:
            result = await self._try_provider(self._providers[name], text, failures)
            if result is not None:
                return name, self._served(result)

        self._count_lookup(hit=False)
        logger.error("[EmbeddingChain] All embedding providers exhausted: %s", failures)
        raise ProviderUnavailableError("All embedding providers failed", failures)

    async def embed_with(self, name: str, text: str) -> List[float]:
        """Embed *text* with the provider called *name* and no fallback.

        Used to keep every chunk of one document in the same embedding space
        once its first chunk has picked a provider.

        Raises:
            ValueError: *text* is empty or *name* is not configured.
            ProviderUnavailableError: the provider failed or is cooling down.
        """
        if not text:
            raise ValueError("Cannot embed empty text")
        provider = self._providers.get(name)
        if provider is None:
            raise ValueError(f"Embedding provider {name!r} is not configured")

        failures: Dict[str, str] = {}
        result = await self._try_provider(provider, text, failures)
        if result is None:
            self._count_lookup(hit=False)
            raise ProviderUnavailableError(f"Embedding provider {name} failed", failures)
        return self._served(result)

    def status(self) -> List[ProviderStatus]:
        now = self._clock()
        statuses = []
        with self._lock:
            for priority, (name, provider) in enumerate(self._providers.items()):
                until = self._unavailable_until.get(name)
                cooling = until is not None and until > now
                statuses.append(
                    ProviderStatus(
                        name=name,
                        model=provider.model_id,
                        priority=priority,
                        cooling_down=cooling,
                        retry_in_seconds=(until - now) if cooling else None,
                    )
                )
        return statuses

    def cache_stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                size=len(self._cache),
                capacity=self._cache_capacity,
                hits=self._cache_hits,
                misses=self._cache_misses,
            )

    def clear_cache(self) -> None:
        with self._lock:
            dropped = len(self._cache)
            self._cache.clear()
            self._cache_hits = 0
            self._cache_misses = 0
        logger.info("[EmbeddingChain] Cache cleared (%d entries dropped)", dropped)

    async def aclose(self) -> None:
        for provider in self._providers.values():
            try:
                await provider.aclose()
            except Exception as exc:
                logger.warning("[EmbeddingChain] Error closing provider %s: %s", provider.name, exc)

    # -----------------------------------------------------------------------
    # Provider attempts
    # -----------------------------------------------------------------------

    async def _try_hinted(
        self,
        provider: EmbeddingProvider,
        text: str,
        failures: Dict[str, str],
    ) -> Optional[Tuple[List[float], bool]]:
        """Use the hinted provider only if it is cached, not cooling down and alive."""
        cached = self._cache_get(provider.name, text)
        if cached is not None:
            return cached, True

        if self._is_cooling_down(provider.name):
            failures[provider.name] = "cooling down"
            logger.info("[EmbeddingChain] Hinted provider %s is cooling down", provider.name)
            return None

        if not await self._probe(provider):
            # Probe failures drop the hint for this call without tripping the breaker.
            failures[provider.name] = "liveness probe failed"
            logger.warning(
                "[EmbeddingChain] Hinted provider %s failed its liveness probe; falling back",
                provider.name,
            )
            return None

        vector = await self._call(provider, text, failures)
        return None if vector is None else (vector, False)

    async def _try_provider(
        self,
        provider: EmbeddingProvider,
        text: str,
        failures: Dict[str, str],
    ) -> Optional[Tuple[List[float], bool]]:
        cached = self._cache_get(provider.name, text)
        if cached is not None:
            return cached, True

        if self._is_cooling_down(provider.name):
            failures[provider.name] = "cooling down"
            logger.debug("[EmbeddingChain] Skipping %s (cooling down)", provider.name)
            return None

        vector = await self._call(provider, text, failures)
        return None if vector is None else (vector, False)

    async def _probe(self, provider: EmbeddingProvider) -> bool:
        try:
            return await asyncio.wait_for(
                provider.is_available(self._probe_timeout), self._probe_timeout
            )
        except asyncio.TimeoutError:
            return False
        except Exception as exc:
            logger.warning("[EmbeddingChain] Probe of %s raised: %s", provider.name, exc)
            return False

    async def _call(
        self,
        provider: EmbeddingProvider,
        text: str,
        failures: Dict[str, str],
    ) -> Optional[List[float]]:
        try:
            vector = await asyncio.wait_for(provider.embed(text), self._request_timeout)
        except asyncio.TimeoutError:
            reason = f"timed out after {self._request_timeout:.1f}s"
            self._mark_unavailable(provider.name, reason)
            failures[provider.name] = reason
            return None
        except Exception as exc:
            reason = f"{type(exc).__name__}: {exc}"
            self._mark_unavailable(provider.name, reason)
            failures[provider.name] = reason
            return None

        vector = [float(v) for v in vector]
        self._mark_available(provider.name)
        self._cache_put(provider.name, text, vector)
        return vector

    # -----------------------------------------------------------------------
    # Circuit breaker
    # -----------------------------------------------------------------------

    def _is_cooling_down(self, name: str) -> bool:
        now = self._clock()
        with self._lock:
            until = self._unavailable_until.get(name)
            if until is None:
                return False
            if until <= now:
                del self._unavailable_until[name]
                logger.info("[EmbeddingChain] Cooldown for %s elapsed", name)
                return False
            return True

    def _mark_unavailable(self, name: str, reason: str) -> None:
        until = self._clock() + self._cooldown
        with self._lock:
            self._unavailable_until[name] = until
        logger.warning(
            "[EmbeddingChain] Provider %s failed (%s); cooling down for %.0fs",
            name, reason, self._cooldown,
        )

    def _mark_available(self, name: str) -> None:
        with self._lock:
            cleared = self._unavailable_until.pop(name, None)
        if cleared is not None:
            logger.info("[EmbeddingChain] Provider %s recovered", name)

    # -----------------------------------------------------------------------
    # LRU cache
    # -----------------------------------------------------------------------

    def _cache_get(self, name: str, text: str) -> Optional[List[float]]:
        key = (name, text)
        with self._lock:
            vector = self._cache.get(key)
            if vector is None:
                return None
            self._cache.move_to_end(key)
            return list(vector)

    def _served(self, result: Tuple[List[float], bool]) -> List[float]:
        vector, from_cache = result
        self._count_lookup(hit=from_cache)
        return vector

    def _count_lookup(self, hit: bool) -> None:
        # One hit or miss per embed request, however many providers were tried
        with self._lock:
            if hit:
                self._cache_hits += 1
            else:
                self._cache_misses += 1

    def _cache_put(self, name: str, text: str, vector: List[float]) -> None:
        key = (name, text)
        with self._lock:
            self._cache[key] = list(vector)
            self._cache.move_to_end(key)
            while len(self._cache) > self._cache_capacity:
                self._cache.popitem(last=False)
