"""RagService — the in-process contract consumed by upload and report layers.

Owns one instance of each collaborator and wires them together explicitly:

    Database ──┬── DocumentStore ──┐
               └── HybridSearchEngine ── RAGContextAssembler
    EmbeddingProviderChain ─────────┘

Usage:
    service = RagService.from_settings(load_settings())
    result = await service.ingest("stride-capec-mapping.md", text)
    bundle = await service.search_context("token replay", 5, system_context_hint="Payments API")
    await service.aclose()
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from threatrag.config import AppSettings
from threatrag.embeddings.chain import CacheStats, EmbeddingProviderChain, ProviderStatus
from threatrag.embeddings.factory import build_provider_chain

from .chunker import ChunkingEngine
from .context import RAGContextAssembler
from .database import Database
from .document_store import DocumentStore
from .models import ContextBundle, Document, IngestResult, SearchResult, StoreStatistics
from .search import HybridSearchEngine

logger = logging.getLogger(__name__)


class RagService:
    """Facade over ingestion, search and context assembly."""

    def __init__(
        self,
        database: Database,
        chain: EmbeddingProviderChain,
        store: DocumentStore,
        engine: HybridSearchEngine,
        assembler: RAGContextAssembler,
        default_search_limit: int = 8,
        default_context_limit: int = 5,
    ) -> None:
        self.database = database
        self.chain = chain
        self.store = store
        self.engine = engine
        self.assembler = assembler
        self.default_search_limit = default_search_limit
        self.default_context_limit = default_context_limit

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        chain: Optional[EmbeddingProviderChain] = None,
    ) -> "RagService":
        """Build every collaborator from *settings*.

        Args:
            settings: Application settings.
            chain:    Pre-built provider chain (tests); built from settings if omitted.

        Raises:
            ConfigurationError: No embedding provider is configured, or the
                stored embedding dimension differs from ``embedding.dim``.
        """
        database = Database.open(
            settings.rag.db_path,
            dim=settings.embedding.dim,
            vector_index=settings.rag.vector_index,
        )
        try:
            chain = chain or build_provider_chain(settings)
        except Exception:
            database.close()
            raise

        store = DocumentStore(database, chain, ChunkingEngine(settings.chunking))
        engine = HybridSearchEngine(
            database,
            fallback_candidate_limit=settings.rag.fallback_candidate_limit,
            query_timeout=settings.rag.query_timeout_seconds,
        )
        assembler = RAGContextAssembler(
            chain,
            engine,
            store,
            reference_keywords=settings.rag.reference_keywords,
            reference_content_keywords=settings.rag.reference_content_keywords,
        )
        logger.info(
            "[RagService] Ready (db=%s, dim=%d, index_ready=%s, providers=%s)",
            database.path, database.dim, database.index_ready, chain.provider_names,
        )
        return cls(
            database,
            chain,
            store,
            engine,
            assembler,
            default_search_limit=settings.rag.default_search_limit,
            default_context_limit=settings.rag.default_context_limit,
        )

    # -----------------------------------------------------------------------
    # Ingestion
    # -----------------------------------------------------------------------

    async def ingest(
        self,
        name: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        content_type: Optional[str] = None,
        provider_hint: Optional[str] = None,
    ) -> IngestResult:
        return await self.store.ingest(
            name, content, metadata, content_type=content_type, provider_hint=provider_hint
        )

    # -----------------------------------------------------------------------
    # Retrieval
    # -----------------------------------------------------------------------

    async def search(
        self,
        query: str,
        limit: Optional[int] = None,
        provider_hint: Optional[str] = None,
    ) -> List[SearchResult]:
        limit = self.default_search_limit if limit is None else limit
        return await self.assembler.search(query, limit, provider_hint)

    async def search_context(
        self,
        query: str,
        limit: Optional[int] = None,
        system_context_hint: Optional[str] = None,
        provider_hint: Optional[str] = None,
    ) -> ContextBundle:
        return await self.assembler.search_context(
            query,
            self.default_context_limit if limit is None else limit,
            system_context_hint=system_context_hint,
            provider_hint=provider_hint,
        )

    # -----------------------------------------------------------------------
    # Inspection / administration
    # -----------------------------------------------------------------------

    async def get_statistics(self) -> StoreStatistics:
        return await self.store.get_statistics()

    async def verify_cache(self) -> bool:
        """True when the store holds at least one document."""
        return await self.store.has_documents()

    async def list_documents(self) -> List[Document]:
        return await self.store.list_documents()

    async def delete_document(self, document_id: str) -> bool:
        return await self.store.delete_document(document_id)

    async def clear_cache(self) -> None:
        """Delete every document and chunk and empty the embedding cache."""
        await self.store.clear()
        self.chain.clear_cache()
        logger.info("[RagService] Cache cleared")

    def embedding_status(self) -> Tuple[List[ProviderStatus], CacheStats]:
        return self.chain.status(), self.chain.cache_stats()

    def clear_embedding_cache(self) -> None:
        self.chain.clear_cache()

    async def aclose(self) -> None:
        await self.chain.aclose()
        self.database.close()
        logger.info("[RagService] Closed")
