"""RAG router — document ingestion and retrieval endpoints.

Endpoints:
    POST   /rag/documents                — Ingest (create / update / skip) a document
    GET    /rag/documents                — List stored documents
    DELETE /rag/documents/{document_id}  — Delete one document and its chunks
    POST   /rag/search                   — Similarity search
    POST   /rag/search/context           — Assembled context bundle
    GET    /rag/statistics               — Document/chunk totals
    DELETE /rag/cache                    — Delete every document and chunk

The service lives on ``app.state.rag_service``; every endpoint answers 503
while it is not initialised.  Errors from the RAG core carry their own
HTTP status code.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from threatrag.errors import RagError

from .schemas import (
    ClearResponse,
    ContextRequest,
    ContextResponse,
    ContextSourceItem,
    DeleteResponse,
    DocumentSummary,
    IngestRequest,
    IngestResponse,
    SearchRequest,
    SearchResponse,
    SearchResultItem,
    StatisticsResponse,
)
from .service import RagService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rag", tags=["rag"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def get_rag_service(request: Request) -> Optional[RagService]:
    """Return the RagService attached to the app, or None if not configured."""
    return getattr(request.app.state, "rag_service", None)


def _not_configured(endpoint: str) -> JSONResponse:
    logger.warning("[rag/%s] RAG service not configured — returning 503", endpoint)
    return JSONResponse({"error": "RAG service not configured"}, status_code=503)


def _error_response(endpoint: str, exc: Exception) -> JSONResponse:
    if isinstance(exc, RagError):
        logger.warning("[rag/%s] %s (status=%d)", endpoint, exc.message, exc.status_code)
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)
    logger.exception("[rag/%s] Failed: %s", endpoint, exc)
    return JSONResponse({"error": f"{endpoint} failed: {exc}"}, status_code=500)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

@router.post("/documents", response_model=IngestResponse)
async def ingest_document(body: IngestRequest, request: Request) -> IngestResponse | JSONResponse:
    """Ingest a document; re-ingesting unchanged content is a no-op."""
    logger.info("[rag/documents] Received: name=%s size=%d", body.name, len(body.content))
    service = get_rag_service(request)
    if service is None:
        return _not_configured("documents")

    try:
        result = await service.ingest(
            body.name,
            body.content,
            body.metadata,
            content_type=body.content_type,
            provider_hint=body.provider_hint,
        )
    except Exception as exc:
        return _error_response("documents", exc)

    return IngestResponse(
        outcome=result.outcome.value,
        document_id=result.document_id,
        chunk_count=result.chunk_count,
        provider=result.provider,
    )


@router.get("/documents", response_model=List[DocumentSummary])
async def list_documents(request: Request) -> List[DocumentSummary] | JSONResponse:
    service = get_rag_service(request)
    if service is None:
        return _not_configured("documents")

    try:
        documents = await service.list_documents()
    except Exception as exc:
        return _error_response("documents", exc)

    return [
        DocumentSummary(
            id=d.id,
            name=d.name,
            content_hash=d.content_hash,
            size=d.size,
            uploaded_at=d.uploaded_at,
            metadata=d.metadata,
        )
        for d in documents
    ]


@router.delete("/documents/{document_id}", response_model=DeleteResponse)
async def delete_document(document_id: str, request: Request) -> DeleteResponse | JSONResponse:
    service = get_rag_service(request)
    if service is None:
        return _not_configured("documents")

    try:
        deleted = await service.delete_document(document_id)
    except Exception as exc:
        return _error_response("documents", exc)

    if not deleted:
        return JSONResponse({"error": f"Document {document_id} not found"}, status_code=404)
    return DeleteResponse(status="deleted", document_id=document_id)


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

@router.post("/search", response_model=SearchResponse)
async def search(body: SearchRequest, request: Request) -> SearchResponse | JSONResponse:
    """Return the chunks most similar to the query."""
    service = get_rag_service(request)
    if service is None:
        return _not_configured("search")

    try:
        results = await service.search(body.query, body.limit, provider_hint=body.provider_hint)
    except Exception as exc:
        return _error_response("search", exc)

    return SearchResponse(
        query=body.query,
        results=[
            SearchResultItem(
                document_id=r.document.id,
                document_name=r.document.name,
                chunk_id=r.chunk.id,
                chunk_index=r.chunk.index,
                content=r.chunk.content,
                score=r.score,
                metadata=r.chunk.metadata,
            )
            for r in results
        ],
    )


@router.post("/search/context", response_model=ContextResponse)
async def search_context(body: ContextRequest, request: Request) -> ContextResponse | JSONResponse:
    """Return an attributed context bundle for report generation."""
    service = get_rag_service(request)
    if service is None:
        return _not_configured("search/context")

    try:
        bundle = await service.search_context(
            body.query,
            body.limit,
            system_context_hint=body.system_context_hint,
            provider_hint=body.provider_hint,
        )
    except Exception as exc:
        return _error_response("search/context", exc)

    return ContextResponse(
        context=bundle.context,
        sources=[ContextSourceItem(**vars(s)) for s in bundle.sources],
        total_documents=bundle.total_documents,
        confidence=bundle.confidence,
    )


# ---------------------------------------------------------------------------
# Statistics / administration
# ---------------------------------------------------------------------------

@router.get("/statistics", response_model=StatisticsResponse)
async def statistics(request: Request) -> StatisticsResponse | JSONResponse:
    service = get_rag_service(request)
    if service is None:
        return _not_configured("statistics")

    try:
        stats = await service.get_statistics()
    except Exception as exc:
        return _error_response("statistics", exc)

    return StatisticsResponse(
        total_documents=stats.total_documents,
        total_chunks=stats.total_chunks,
        cache_valid=stats.total_documents > 0,
        index_ready=service.database.index_ready,
    )


@router.delete("/cache", response_model=ClearResponse)
async def clear_cache(request: Request) -> ClearResponse | JSONResponse:
    """Delete every document and chunk (idempotent)."""
    service = get_rag_service(request)
    if service is None:
        return _not_configured("cache")

    try:
        await service.clear_cache()
    except Exception as exc:
        return _error_response("cache", exc)

    logger.info("[rag/cache] Store cleared via API")
    return ClearResponse(status="cleared")
