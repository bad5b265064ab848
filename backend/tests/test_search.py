"""Tests for HybridSearchEngine: native top-k, brute-force fallback, tie order."""
import time
from unittest.mock import AsyncMock, patch

import pytest

from conftest import DIM, FakeProvider, PipeChunker
from threatrag.embeddings.chain import EmbeddingProviderChain
from threatrag.errors import (
    EmbeddingDimensionMismatchError,
    IndexUnavailableError,
    StoreUnavailableError,
)
from threatrag.rag.search import HybridSearchEngine

V1 = [1.0, 0.0, 0.0, 0.0]
V2 = [0.0, 1.0, 0.0, 0.0]
V3 = [0.0, 0.0, 1.0, 0.0]


@pytest.fixture()
def axis_store(make_store):
    """Store whose provider maps first/second/third onto the unit axes."""
    chain = EmbeddingProviderChain(
        [FakeProvider("p", vectors={"first": V1, "second": V2, "third": V3})]
    )
    return make_store(chain, PipeChunker())


async def _three_chunk_doc(store):
    return await store.ingest("threats.md", "first|second|third")


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------

class TestRanking:
    @pytest.mark.asyncio
    async def test_nearest_chunk_ranks_first(self, axis_store, engine):
        await _three_chunk_doc(axis_store)

        results = await engine.search([0.1, 0.9, 0.0, 0.0], 3)

        assert results[0].chunk.content == "second"
        assert results[0].chunk.index == 1
        assert results[0].document.name == "threats.md"
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.asyncio
    async def test_nearest_to_third_vector(self, axis_store, engine):
        await _three_chunk_doc(axis_store)

        results = await engine.search([0.0, 0.1, 0.95, 0.0], 1)

        assert len(results) == 1
        assert results[0].chunk.index == 2
        assert results[0].score == pytest.approx(0.995, abs=0.01)

    @pytest.mark.asyncio
    async def test_k_larger_than_corpus(self, axis_store, engine):
        await _three_chunk_doc(axis_store)
        assert len(await engine.search(V1, 10)) == 3

    @pytest.mark.asyncio
    async def test_empty_store(self, engine):
        assert await engine.search(V1, 5) == []

    @pytest.mark.asyncio
    async def test_non_positive_k(self, axis_store, engine):
        await _three_chunk_doc(axis_store)
        assert await engine.search(V1, 0) == []
        assert await engine.search(V1, -3) == []

    @pytest.mark.asyncio
    async def test_query_dimension_checked(self, engine):
        with pytest.raises(EmbeddingDimensionMismatchError) as exc_info:
            await engine.search([1.0] * (DIM + 1), 0)
        assert exc_info.value.status_code == 422

    @pytest.mark.asyncio
    async def test_equal_scores_ordered_by_document_and_index(self, make_store, engine):
        same = [0.5, 0.5, 0.0, 0.0]
        chain = EmbeddingProviderChain(
            [FakeProvider("p", vectors={"a0": same, "a1": same, "b0": same})]
        )
        store = make_store(chain, PipeChunker())
        await store.ingest("doc-a", "a0|a1")
        await store.ingest("doc-b", "b0")

        results = await engine.search(same, 3)

        keys = [(r.chunk.document_id, r.chunk.index) for r in results]
        assert keys == sorted(keys)

    @pytest.mark.asyncio
    async def test_zero_vector_scores_zero(self, make_store, engine):
        chain = EmbeddingProviderChain(
            [FakeProvider("p", vectors={"blank": [0.0] * DIM, "axis": V1})]
        )
        store = make_store(chain, PipeChunker())
        await store.ingest("doc", "blank|axis")

        results = await engine.brute_force_search(V1, 2)

        assert [r.chunk.content for r in results] == ["axis", "blank"]
        assert results[1].score == 0.0


# ---------------------------------------------------------------------------
# Native path and fallback
# ---------------------------------------------------------------------------

class TestNativeAndFallback:
    @pytest.mark.asyncio
    async def test_native_matches_brute_force(self, make_store, engine):
        vectors = {
            "a": [0.9, 0.1, 0.0, 0.0],
            "b": [0.2, 0.8, 0.1, 0.0],
            "c": [0.0, 0.3, 0.9, 0.1],
            "d": [0.1, 0.1, 0.1, 0.9],
        }
        store = make_store(EmbeddingProviderChain([FakeProvider("p", vectors=vectors)]), PipeChunker())
        await store.ingest("one", "a|b")
        await store.ingest("two", "c|d")
        query = [0.4, 0.6, 0.2, 0.1]

        native = await engine.native_search(query, 3)
        brute = await engine.brute_force_search(query, 3)

        assert [r.chunk.id for r in native] == [r.chunk.id for r in brute]
        for n, b in zip(native, brute):
            assert n.score == pytest.approx(b.score, abs=1e-5)
            assert n.document.name == b.document.name

    @pytest.mark.asyncio
    async def test_native_ties_ordered_by_document_and_index(self, make_store, engine):
        same = [0.5, 0.5, 0.0, 0.0]
        vectors = {"a0": same, "a1": same, "b0": same, "far": V3}
        store = make_store(EmbeddingProviderChain([FakeProvider("p", vectors=vectors)]), PipeChunker())
        await store.ingest("doc-b", "b0")
        await store.ingest("doc-a", "a0|a1")
        await store.ingest("doc-c", "far")

        native = await engine.native_search(same, 3)
        brute = await engine.brute_force_search(same, 3)

        keys = [(r.chunk.document_id, r.chunk.index) for r in native]
        assert keys == sorted(keys)
        assert [r.chunk.id for r in native] == [r.chunk.id for r in brute]
        assert "far" not in {r.chunk.content for r in native}

        # Cutting inside the tie keeps some tied chunks, still in key order
        cut = await engine.native_search(same, 2)
        cut_keys = [(r.chunk.document_id, r.chunk.index) for r in cut]
        assert len(cut_keys) == 2
        assert cut_keys == sorted(cut_keys)
        assert set(cut_keys) <= set(keys)

    @pytest.mark.asyncio
    async def test_index_ready_uses_native(self, axis_store, engine, database):
        await _three_chunk_doc(axis_store)
        database.index_ready = True

        with patch.object(engine, "brute_force_search", new=AsyncMock()) as brute:
            results = await engine.search(V2, 1)

        brute.assert_not_awaited()
        assert results[0].chunk.content == "second"

    @pytest.mark.asyncio
    async def test_index_not_ready_uses_brute_force(self, axis_store, engine):
        await _three_chunk_doc(axis_store)

        with patch.object(engine, "native_search", new=AsyncMock()) as native:
            results = await engine.search(V2, 1)

        native.assert_not_awaited()
        assert results[0].chunk.content == "second"

    @pytest.mark.asyncio
    async def test_native_failure_falls_back(self, axis_store, engine, database):
        await _three_chunk_doc(axis_store)
        database.index_ready = True

        failing = AsyncMock(side_effect=IndexUnavailableError("index corrupt"))
        with patch.object(engine, "native_search", new=failing):
            results = await engine.search(V3, 1)

        failing.assert_awaited_once()
        assert results[0].chunk.content == "third"

    @pytest.mark.asyncio
    async def test_native_timeout_raises_index_unavailable(self, database):
        engine = HybridSearchEngine(database, query_timeout=0.05)

        def slow_query(cur, query_vector, k):
            time.sleep(0.3)
            return []

        with patch.object(engine, "_native_query", side_effect=slow_query):
            with pytest.raises(IndexUnavailableError):
                await engine.native_search(V1, 1)

    @pytest.mark.asyncio
    async def test_candidate_window_bounds_brute_force(self, axis_store, database):
        await _three_chunk_doc(axis_store)
        engine = HybridSearchEngine(database, fallback_candidate_limit=2)

        results = await engine.search(V3, 3)

        # Only chunks 0 and 1 fall inside the window
        assert [r.chunk.index for r in results] == [0, 1]
        assert engine.fallback_candidate_limit == 2

    def test_candidate_limit_must_be_positive(self, database):
        with pytest.raises(ValueError):
            HybridSearchEngine(database, fallback_candidate_limit=0)

    @pytest.mark.asyncio
    async def test_closed_store_is_unavailable(self, database, engine):
        database.close()

        with pytest.raises(StoreUnavailableError) as exc_info:
            await engine.search(V1, 3)
        assert exc_info.value.status_code == 503
