"""Pydantic schemas for the RAG document and search API."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class IngestRequest(BaseModel):
    """Request body for POST /rag/documents."""

    name: str = Field(..., min_length=1, description="Document name (its id is derived from it)")
    content: str = Field(..., description="Full document text")
    metadata: Dict[str, Any] = Field(
        default_factory=dict, description="Opaque key/value metadata copied onto every chunk"
    )
    content_type: Optional[str] = Field(
        default=None,
        description="MIME type hint; 'text/markdown' selects header-aware chunking",
    )
    provider_hint: Optional[str] = Field(
        default=None, description="Preferred embedding provider (gemini, openai, ollama, bedrock)"
    )


class IngestResponse(BaseModel):
    outcome: str = Field(..., description="'created', 'updated' or 'skipped'")
    document_id: str
    chunk_count: int
    provider: Optional[str] = None


class SearchRequest(BaseModel):
    """Request body for POST /rag/search."""

    query: str = Field(..., min_length=1, description="Natural language query")
    limit: Optional[int] = Field(
        default=None, ge=1, le=50, description="Max results (server default when omitted)"
    )
    provider_hint: Optional[str] = Field(default=None, description="Preferred embedding provider")


class SearchResultItem(BaseModel):
    """A single search result."""

    document_id: str
    document_name: str
    chunk_id: str
    chunk_index: int
    content: str
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SearchResponse(BaseModel):
    results: List[SearchResultItem]
    query: str


class ContextRequest(BaseModel):
    """Request body for POST /rag/search/context."""

    query: str = Field(..., min_length=1, description="Natural language query")
    limit: Optional[int] = Field(
        default=None, ge=1, le=50, description="Max sources (server default when omitted)"
    )
    system_context_hint: Optional[str] = Field(
        default=None, description="System name used to prefer sources that mention it"
    )
    provider_hint: Optional[str] = Field(default=None, description="Preferred embedding provider")


class ContextSourceItem(BaseModel):
    rank: int
    document_id: str
    document_name: str
    chunk_index: int
    score: float


class ContextResponse(BaseModel):
    context: str
    sources: List[ContextSourceItem]
    total_documents: int
    confidence: float = Field(..., ge=0, le=100)


class DocumentSummary(BaseModel):
    """A stored document without its content."""

    id: str
    name: str
    content_hash: str
    size: int
    uploaded_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StatisticsResponse(BaseModel):
    total_documents: int
    total_chunks: int
    cache_valid: bool = Field(..., description="True when at least one document is stored")
    index_ready: bool = Field(..., description="True when the native vector index is in use")


class DeleteResponse(BaseModel):
    status: str = Field(..., description="'deleted'")
    document_id: str


class ClearResponse(BaseModel):
    status: str = Field(..., description="'cleared'")
