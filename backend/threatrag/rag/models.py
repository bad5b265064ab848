"""Domain records for stored documents, chunks and search results."""
import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class IngestOutcome(str, Enum):
    """Result of a single ingest call."""
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


def document_id_for(name: str) -> str:
    """Deterministic document id: MD5 hex digest of the document name."""
    return hashlib.md5(name.encode("utf-8")).hexdigest()


def content_hash_for(content: str) -> str:
    """SHA-256 hex digest of the full document content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def chunk_id_for(document_id: str, index: int) -> str:
    return f"{document_id}_chunk_{index}"


@dataclass
class Document:
    """A stored reference document."""

    id: str
    name: str
    content_hash: str
    content: str
    size: int
    uploaded_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Chunk:
    """A bounded slice of a document, the unit of embedding and retrieval."""

    id: str
    document_id: str
    index: int
    content: str
    size: int
    embedding: List[float] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IngestResult:
    outcome: IngestOutcome
    document_id: str
    chunk_count: int = 0
    provider: Optional[str] = None  # provider that embedded the chunks


@dataclass
class SearchResult:
    chunk: Chunk
    document: Document
    score: float


@dataclass
class ContextSource:
    """Attribution for one entry of an assembled context."""

    rank: int
    document_id: str
    document_name: str
    chunk_index: int
    score: float


@dataclass
class ContextBundle:
    context: str
    sources: List[ContextSource]
    total_documents: int
    confidence: float  # 0..100


@dataclass
class StoreStatistics:
    total_documents: int
    total_chunks: int
