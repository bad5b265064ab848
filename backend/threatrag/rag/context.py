"""Assemble scored, attributed context bundles from search results."""
import logging
from collections import OrderedDict
from typing import List, Optional, Sequence

from threatrag.embeddings.chain import EmbeddingProviderChain

from .document_store import DocumentStore
from .models import ContextBundle, ContextSource, SearchResult
from .search import HybridSearchEngine

logger = logging.getLogger(__name__)

SOURCE_SEPARATOR = "\n\n---\n\n"
HINT_OVERFETCH = 3


class RAGContextAssembler:
    """Turns a query into a context string plus source attributions.

    When a system-context hint is given, ``HINT_OVERFETCH * k`` results are
    fetched and filtered to those that mention the hint or are
    always-relevant reference material (STRIDE/CAPEC mappings by default).
    If the filter keeps nothing, the unfiltered top-k is used instead.

    Args:
        chain:                      Embeds the query.
        engine:                     Runs the similarity search.
        store:                      Supplies the document total.
        reference_keywords:         A document whose name contains any of these is always relevant.
        reference_content_keywords: A chunk whose content contains all of these is always relevant.
    """

    def __init__(
        self,
        chain: EmbeddingProviderChain,
        engine: HybridSearchEngine,
        store: DocumentStore,
        reference_keywords: Sequence[str] = ("stride", "capec", "mapping"),
        reference_content_keywords: Sequence[str] = ("stride", "capec"),
    ) -> None:
        self._chain = chain
        self._engine = engine
        self._store = store
        self._reference_keywords = [k.lower() for k in reference_keywords if k]
        self._reference_content_keywords = [k.lower() for k in reference_content_keywords if k]

    async def search(
        self,
        query: str,
        k: int,
        provider_hint: Optional[str] = None,
    ) -> List[SearchResult]:
        vector = await self._chain.embed(query, provider_hint)
        return await self._engine.search(vector, k)

    async def search_context(
        self,
        query: str,
        k: int,
        system_context_hint: Optional[str] = None,
        provider_hint: Optional[str] = None,
    ) -> ContextBundle:
        hint = (system_context_hint or "").strip().lower() or None

        results = await self.search(query, k * HINT_OVERFETCH if hint else k, provider_hint)
        if hint:
            filtered = [r for r in results if self._is_relevant(r, hint)]
            logger.info(
                "[RAGContext] System filter %r: %d -> %d results",
                system_context_hint, len(results), len(filtered),
            )
            if filtered:
                results = filtered[:k]
            else:
                logger.warning(
                    "[RAGContext] No results mention %r; using unfiltered top-%d",
                    system_context_hint, k,
                )
                results = results[:k]

        confidence = 0.0
        if results:
            mean = sum(r.score for r in results) / len(results)
            # Cosine similarity can be negative; confidence stays within 0..100
            confidence = max(0.0, min(mean * 100.0, 100.0))

        context = SOURCE_SEPARATOR.join(
            f"[Source {rank}: {r.document.name}]\n{r.chunk.content}"
            for rank, r in enumerate(results, start=1)
        )
        sources = [
            ContextSource(
                rank=rank,
                document_id=r.document.id,
                document_name=r.document.name,
                chunk_index=r.chunk.index,
                score=r.score,
            )
            for rank, r in enumerate(results, start=1)
        ]
        stats = await self._store.get_statistics()

        self._log_usage(results, confidence, system_context_hint)
        return ContextBundle(
            context=context,
            sources=sources,
            total_documents=stats.total_documents,
            confidence=confidence,
        )

    def _is_relevant(self, result: SearchResult, hint: str) -> bool:
        name = result.document.name.lower()
        content = result.chunk.content.lower()
        if hint in name or hint in content:
            return True
        if any(keyword in name for keyword in self._reference_keywords):
            return True
        return bool(self._reference_content_keywords) and all(
            keyword in content for keyword in self._reference_content_keywords
        )

    @staticmethod
    def _log_usage(results: List[SearchResult], confidence: float, hint: Optional[str]) -> None:
        per_document: "OrderedDict[str, List]" = OrderedDict()
        for r in results:
            entry = per_document.setdefault(r.document.id, [r.document.name, 0])
            entry[1] += 1
        logger.info(
            "[RAGContext] %d chunks from %d documents (confidence=%.1f%%%s)",
            len(results), len(per_document), confidence,
            f", system={hint!r}" if hint else "",
        )
        for name, count in per_document.values():
            logger.info("[RAGContext]   - %s: %d chunks", name, count)
