"""Hybrid similarity search over stored chunks.

Primary path: DuckDB ``array_cosine_distance`` top-k over ``chunks``,
served by the HNSW index when the vss extension loaded at startup.

Degraded path: when the index is missing, or the native query fails or
times out, the first ``fallback_candidate_limit`` chunks in
``(document_id, idx)`` order are scored in-process with numpy.  Only that
candidate window is scanned, so recall drops on corpora larger than the
window; raise the limit to trade latency for recall.

Both paths order equal scores by ``(document_id, idx)`` within the results
they return.  The native query picks its top k by distance alone (a
secondary sort key there disables the HNSW index scan), so when several
chunks tie at the k-th distance the native path may keep a different
subset of them than the brute-force path.  Away from such a tie both
paths return the same ranked list.
"""
import asyncio
import logging
from functools import partial
from typing import List, Sequence

import duckdb
import numpy as np

from threatrag.errors import (
    EmbeddingDimensionMismatchError,
    IndexUnavailableError,
    StoreUnavailableError,
)

from .database import Database
from .document_store import CHUNK_COLUMNS, DOCUMENT_COLUMNS, chunk_from_row, document_from_row
from .models import SearchResult

logger = logging.getLogger(__name__)

_CHUNK_WIDTH = 7  # number of columns in CHUNK_COLUMNS


class HybridSearchEngine:
    """Cosine-similarity search with a bounded brute-force fallback.

    Args:
        database:                 Open database handle.
        fallback_candidate_limit: Max chunks scanned by the brute-force path.
        query_timeout:            Timeout for one store query (seconds).
    """

    def __init__(
        self,
        database: Database,
        fallback_candidate_limit: int = 100,
        query_timeout: float = 10.0,
    ) -> None:
        if fallback_candidate_limit <= 0:
            raise ValueError("fallback_candidate_limit must be positive")
        self._db = database
        self._candidate_limit = fallback_candidate_limit
        self._query_timeout = query_timeout

    @property
    def fallback_candidate_limit(self) -> int:
        return self._candidate_limit

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def search(self, query_vector: Sequence[float], k: int) -> List[SearchResult]:
        """Return up to *k* results by descending cosine similarity.

        Raises:
            EmbeddingDimensionMismatchError: *query_vector* has the wrong length.
            StoreUnavailableError: Neither path could query the store.
        """
        if len(query_vector) != self._db.dim:
            raise EmbeddingDimensionMismatchError(self._db.dim, len(query_vector), "query vector")
        if k <= 0:
            return []

        if self._db.index_ready:
            try:
                return await self.native_search(query_vector, k)
            except IndexUnavailableError as exc:
                logger.warning("[HybridSearch] %s; falling back to brute-force scan", exc)
        else:
            logger.debug("[HybridSearch] Vector index not ready; using brute-force scan")

        try:
            return await self.brute_force_search(query_vector, k)
        except (duckdb.Error, asyncio.TimeoutError) as exc:
            logger.error("[HybridSearch] Brute-force scan failed: %s", exc)
            raise StoreUnavailableError(f"Document store unavailable: {exc}") from exc

    async def native_search(self, query_vector: Sequence[float], k: int) -> List[SearchResult]:
        """Top-k through DuckDB's cosine distance (HNSW-accelerated when indexed).

        Raises:
            IndexUnavailableError: The query failed or timed out.
        """
        try:
            cur = self._db.cursor()
        except duckdb.Error as exc:
            raise IndexUnavailableError(f"Native vector query failed: {exc}") from exc

        loop = asyncio.get_event_loop()
        future = loop.run_in_executor(None, partial(self._native_query, cur, list(query_vector), k))
        try:
            rows = await asyncio.wait_for(future, self._query_timeout)
        except asyncio.TimeoutError:
            cur.interrupt()
            raise IndexUnavailableError(
                f"Native vector query timed out after {self._query_timeout:.1f}s"
            )
        except duckdb.Error as exc:
            raise IndexUnavailableError(f"Native vector query failed: {exc}") from exc

        results = [
            SearchResult(
                chunk=chunk_from_row(row[:_CHUNK_WIDTH]),
                document=document_from_row(row[_CHUNK_WIDTH:-1]),
                score=1.0 - float(row[-1]),
            )
            for row in rows
        ]
        logger.debug("[HybridSearch] Native search returned %d results", len(results))
        return results

    async def brute_force_search(self, query_vector: Sequence[float], k: int) -> List[SearchResult]:
        """Score the bounded candidate window in-process and keep the top *k*."""
        loop = asyncio.get_event_loop()
        rows = await asyncio.wait_for(
            loop.run_in_executor(None, self._fetch_candidates),
            self._query_timeout,
        )
        if not rows:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        matrix = np.asarray([row[5] for row in rows], dtype=np.float32)
        scores = _cosine_scores(matrix, query)
        # Stable sort keeps (document_id, idx) order among equal scores
        order = np.argsort(-scores, kind="stable")[:k]

        results = [
            SearchResult(
                chunk=chunk_from_row(rows[i][:_CHUNK_WIDTH]),
                document=document_from_row(rows[i][_CHUNK_WIDTH:]),
                score=float(scores[i]),
            )
            for i in order
        ]
        logger.info(
            "[HybridSearch] Brute-force scan scored %d candidates (limit=%d), returning %d",
            len(rows), self._candidate_limit, len(results),
        )
        return results

    # -----------------------------------------------------------------------
    # Synchronous DuckDB queries (run in the executor)
    # -----------------------------------------------------------------------

    def _native_query(self, cur: duckdb.DuckDBPyConnection, query_vector: List[float], k: int) -> list:
        try:
            return cur.execute(
                f"""
                SELECT {CHUNK_COLUMNS}, {DOCUMENT_COLUMNS}, top.distance
                FROM (
                    SELECT id, array_cosine_distance(embedding, ?::FLOAT[{self._db.dim}]) AS distance
                    FROM chunks
                    ORDER BY distance
                    LIMIT ?
                ) AS top
                JOIN chunks c ON c.id = top.id
                JOIN documents d ON d.id = c.document_id
                ORDER BY top.distance, c.document_id, c.idx
                """,
                [query_vector, k],
            ).fetchall()
        finally:
            cur.close()

    def _fetch_candidates(self) -> list:
        cur = self._db.cursor()
        try:
            return cur.execute(
                f"""
                SELECT {CHUNK_COLUMNS}, {DOCUMENT_COLUMNS}
                FROM chunks c
                JOIN documents d ON d.id = c.document_id
                ORDER BY c.document_id, c.idx
                LIMIT ?
                """,
                [self._candidate_limit],
            ).fetchall()
        finally:
            cur.close()


def _cosine_scores(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of every row of *matrix* with *query* (0 for zero vectors)."""
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    return np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)
