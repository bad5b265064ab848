"""FastAPI router for embedding-chain introspection.

Endpoints:
    GET    /embeddings/status  — providers, cooldowns and cache stats
    DELETE /embeddings/cache   — drop every cached vector

Returns 503 when the RAG service (which owns the chain) is not initialised.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/embeddings", tags=["embeddings"])


class ProviderStatusItem(BaseModel):
    name: str
    model: str
    priority: int
    cooling_down: bool
    retry_in_seconds: Optional[float] = None


class CacheStatsItem(BaseModel):
    size: int
    capacity: int
    hits: int
    misses: int


class EmbeddingStatusResponse(BaseModel):
    """Current state of the embedding provider chain."""
    providers: List[ProviderStatusItem]
    cache: CacheStatsItem


class CacheClearedResponse(BaseModel):
    status: str


def _service_unavailable() -> JSONResponse:
    return JSONResponse({"error": "RAG service not configured"}, status_code=503)


@router.get("/status", response_model=EmbeddingStatusResponse)
async def embedding_status(request: Request) -> EmbeddingStatusResponse | JSONResponse:
    """Report provider priority, circuit-breaker state and cache usage.

    Example::

        GET /embeddings/status

        200 OK
        {
            "providers": [
                {"name": "gemini", "model": "text-embedding-004", "priority": 0,
                 "cooling_down": true, "retry_in_seconds": 212.4},
                {"name": "ollama", "model": "nomic-embed-text:latest", "priority": 1,
                 "cooling_down": false, "retry_in_seconds": null}
            ],
            "cache": {"size": 12, "capacity": 100, "hits": 4, "misses": 15}
        }
    """
    service = getattr(request.app.state, "rag_service", None)
    if service is None:
        return _service_unavailable()

    providers, cache = service.embedding_status()
    return EmbeddingStatusResponse(
        providers=[ProviderStatusItem(**vars(p)) for p in providers],
        cache=CacheStatsItem(**vars(cache)),
    )


@router.delete("/cache", response_model=CacheClearedResponse)
async def clear_embedding_cache(request: Request) -> CacheClearedResponse | JSONResponse:
    """Empty the embedding cache.  Stored documents are left untouched."""
    service = getattr(request.app.state, "rag_service", None)
    if service is None:
        return _service_unavailable()

    service.clear_embedding_cache()
    logger.info("[embeddings] Cache cleared via API")
    return CacheClearedResponse(status="ok")
