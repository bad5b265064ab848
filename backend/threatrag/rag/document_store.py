"""Document store: idempotent ingestion and atomic replace.

Ingest pipeline for one document:

1. Deduplicate by content hash (same content under another name → skipped).
2. Classify as created / updated / skipped by the deterministic document id.
3. Chunk (generic or markdown strategy).
4. Embed every chunk, in index order.  Chunk 0 goes through the provider
   chain; the provider that served it embeds every later chunk, with no
   fallback, so one document never mixes embedding spaces.
5. Replace the document and all its chunks in one DuckDB transaction.

Steps 1-4 touch nothing in the database, so any failure or cancellation
before step 5 leaves the stored state exactly as it was.  In-process locks
keyed by document id and by content hash serialise concurrent ingests of
the same name or the same content; unrelated documents ingest concurrently.
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import partial
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import duckdb

from threatrag.embeddings.chain import EmbeddingProviderChain
from threatrag.errors import (
    EmbeddingDimensionMismatchError,
    IngestionIntegrityError,
    ProviderUnavailableError,
    RagError,
)

from .chunker import ChunkingEngine, detect_structured
from .database import Database
from .models import (
    Chunk,
    Document,
    IngestOutcome,
    IngestResult,
    StoreStatistics,
    chunk_id_for,
    content_hash_for,
    document_id_for,
)

logger = logging.getLogger(__name__)

DOCUMENT_COLUMNS = "d.id, d.name, d.content_hash, d.content, d.size, d.uploaded_at, d.metadata"
CHUNK_COLUMNS = "c.id, c.document_id, c.idx, c.content, c.size, c.embedding, c.metadata"


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------

def document_from_row(row: Sequence[Any]) -> Document:
    uploaded_at = row[5]
    if uploaded_at.tzinfo is None:
        uploaded_at = uploaded_at.replace(tzinfo=timezone.utc)
    return Document(
        id=row[0],
        name=row[1],
        content_hash=row[2],
        content=row[3],
        size=row[4],
        uploaded_at=uploaded_at,
        metadata=json.loads(row[6]) if row[6] else {},
    )


def chunk_from_row(row: Sequence[Any]) -> Chunk:
    return Chunk(
        id=row[0],
        document_id=row[1],
        index=row[2],
        content=row[3],
        size=row[4],
        embedding=[float(v) for v in row[5]],
        metadata=json.loads(row[6]) if row[6] else {},
    )


class DocumentStore:
    """Persists documents and their embedded chunks.

    Args:
        database: Open database handle (schema already bootstrapped).
        chain:    Embedding provider chain used for every chunk.
        chunker:  Chunking engine.
    """

    def __init__(
        self,
        database: Database,
        chain: EmbeddingProviderChain,
        chunker: Optional[ChunkingEngine] = None,
    ) -> None:
        self._db = database
        self._chain = chain
        self._chunker = chunker or ChunkingEngine()
        # key -> [lock, number of holders and waiters]
        self._locks: Dict[str, list] = {}

    @property
    def dim(self) -> int:
        return self._db.dim

    async def _run(self, fn, *args):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, partial(fn, *args))

    @asynccontextmanager
    async def _locked(self, key: str) -> AsyncIterator[None]:
        """Hold the in-process lock for *key*; the entry is dropped when unused."""
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    # -----------------------------------------------------------------------
    # Ingestion
    # -----------------------------------------------------------------------

    async def ingest(
        self,
        name: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        content_type: Optional[str] = None,
        provider_hint: Optional[str] = None,
    ) -> IngestResult:
        """Ingest one document.

        Returns:
            IngestResult with outcome ``created``, ``updated`` or ``skipped``.

        Raises:
            ValueError: Empty document name.
            IngestionIntegrityError: Zero chunks, or the atomic write failed.
            EmbeddingDimensionMismatchError: A chunk vector has the wrong length.
            ProviderUnavailableError: No provider could serve chunk 0, or the
                provider that served it failed on a later chunk.
        """
        if not name:
            raise ValueError("Document name must not be empty")

        document_id = document_id_for(name)
        content_hash = content_hash_for(content)
        # Always document lock first, then content lock
        async with self._locked(f"doc:{document_id}"), self._locked(f"hash:{content_hash}"):
            try:
                return await self._ingest_locked(
                    document_id,
                    name,
                    content,
                    content_hash,
                    dict(metadata or {}),
                    content_type,
                    provider_hint,
                )
            except RagError as exc:
                logger.error("[DocumentStore] Ingest of '%s' failed: %s", name, exc)
                raise

    async def _ingest_locked(
        self,
        document_id: str,
        name: str,
        content: str,
        content_hash: str,
        metadata: Dict[str, Any],
        content_type: Optional[str],
        provider_hint: Optional[str],
    ) -> IngestResult:
        holder = await self._run(self._find_id_by_hash, content_hash)
        if holder is not None:
            chunk_count = await self._run(self._count_chunks, holder)
            if holder != document_id:
                logger.info(
                    "[DocumentStore] '%s' has the same content as document %s; skipping",
                    name, holder,
                )
            else:
                logger.info("[DocumentStore] '%s' unchanged; skipping", name)
            return IngestResult(IngestOutcome.SKIPPED, holder, chunk_count)

        existing = await self.get_document(document_id)
        outcome = IngestOutcome.CREATED if existing is None else IngestOutcome.UPDATED

        structured = detect_structured(name, content_type)
        texts = self._chunker.split(content, structured)
        if not texts:
            raise IngestionIntegrityError(f"Chunking produced no chunks for '{name}'")

        logger.info(
            "[DocumentStore] Ingesting '%s' (%s, %d chars, %d chunks, strategy=%s)",
            name, outcome.value, len(content), len(texts), "markdown" if structured else "generic",
        )

        chunks: List[Chunk] = []
        provider: Optional[str] = None
        for index, text in enumerate(texts):
            if provider is None:
                provider, vector = await self._chain.embed_with_provider(text, provider_hint)
            else:
                vector = await self._embed_pinned(provider, text, index, name)
            if len(vector) != self.dim:
                raise EmbeddingDimensionMismatchError(
                    self.dim, len(vector), f"chunk {index} of '{name}' ({provider})"
                )
            chunks.append(
                Chunk(
                    id=chunk_id_for(document_id, index),
                    document_id=document_id,
                    index=index,
                    content=text,
                    size=len(text),
                    embedding=vector,
                    metadata={
                        **metadata,
                        "chunk_index": index,
                        "embedding_provider": provider,
                        "embedding_model": self._chain.model_for(provider),
                    },
                )
            )

        document = Document(
            id=document_id,
            name=name,
            content_hash=content_hash,
            content=content,
            size=len(content),
            uploaded_at=datetime.now(timezone.utc),
            metadata=metadata,
        )

        try:
            await self._run(self._write_generation, document, chunks)
        except duckdb.Error as exc:
            # Same content committed under another name by another process
            holder = await self._run(self._find_id_by_hash, content_hash)
            if holder is not None and holder != document_id:
                logger.info(
                    "[DocumentStore] '%s' lost a race to document %s with the same content; skipping",
                    name, holder,
                )
                chunk_count = await self._run(self._count_chunks, holder)
                return IngestResult(IngestOutcome.SKIPPED, holder, chunk_count)
            logger.exception("[DocumentStore] Atomic write of '%s' failed", name)
            raise IngestionIntegrityError(f"Failed to write '{name}': {exc}") from exc

        logger.info(
            "[DocumentStore] '%s' %s: %d chunks (provider=%s)",
            name, outcome.value, len(chunks), provider,
        )
        return IngestResult(outcome, document_id, len(chunks), provider)

    async def _embed_pinned(self, provider: str, text: str, index: int, name: str) -> List[float]:
        """Embed a later chunk with the provider that served chunk 0."""
        try:
            return await self._chain.embed_with(provider, text)
        except ProviderUnavailableError as exc:
            raise ProviderUnavailableError(
                f"Provider {provider} failed at chunk {index} of '{name}'; "
                "chunks of one document must share an embedding provider",
                exc.failures,
            ) from exc

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    async def get_document(self, document_id: str) -> Optional[Document]:
        return await self._run(self._get_document, document_id)

    async def list_documents(self) -> List[Document]:
        return await self._run(self._list_documents)

    async def get_chunks(self, document_id: str) -> List[Chunk]:
        """Return the document's chunks ordered by index."""
        return await self._run(self._get_chunks, document_id)

    async def get_statistics(self) -> StoreStatistics:
        return await self._run(self._statistics)

    async def has_documents(self) -> bool:
        stats = await self.get_statistics()
        return stats.total_documents > 0

    # -----------------------------------------------------------------------
    # Administrative
    # -----------------------------------------------------------------------

    async def delete_document(self, document_id: str) -> bool:
        """Delete one document and its chunks.  Returns False if it did not exist."""
        async with self._locked(f"doc:{document_id}"):
            deleted = await self._run(self._delete_document, document_id)
        if deleted:
            logger.info("[DocumentStore] Deleted document %s", document_id)
        return deleted

    async def clear(self) -> None:
        """Delete every document and chunk.  Idempotent."""
        await self._run(self._clear)
        logger.info("[DocumentStore] Store cleared")

    # -----------------------------------------------------------------------
    # Synchronous DuckDB operations (run in the executor)
    # -----------------------------------------------------------------------

    def _find_id_by_hash(self, content_hash: str) -> Optional[str]:
        cur = self._db.cursor()
        try:
            row = cur.execute(
                "SELECT id FROM documents WHERE content_hash = ?", [content_hash]
            ).fetchone()
            return row[0] if row else None
        finally:
            cur.close()

    def _count_chunks(self, document_id: str) -> int:
        cur = self._db.cursor()
        try:
            return cur.execute(
                "SELECT COUNT(*) FROM chunks WHERE document_id = ?", [document_id]
            ).fetchone()[0]
        finally:
            cur.close()

    def _get_document(self, document_id: str) -> Optional[Document]:
        cur = self._db.cursor()
        try:
            row = cur.execute(
                f"SELECT {DOCUMENT_COLUMNS} FROM documents d WHERE d.id = ?", [document_id]
            ).fetchone()
            return document_from_row(row) if row else None
        finally:
            cur.close()

    def _list_documents(self) -> List[Document]:
        cur = self._db.cursor()
        try:
            rows = cur.execute(
                f"SELECT {DOCUMENT_COLUMNS} FROM documents d ORDER BY d.name"
            ).fetchall()
            return [document_from_row(r) for r in rows]
        finally:
            cur.close()

    def _get_chunks(self, document_id: str) -> List[Chunk]:
        cur = self._db.cursor()
        try:
            rows = cur.execute(
                f"SELECT {CHUNK_COLUMNS} FROM chunks c WHERE c.document_id = ? ORDER BY c.idx",
                [document_id],
            ).fetchall()
            return [chunk_from_row(r) for r in rows]
        finally:
            cur.close()

    def _statistics(self) -> StoreStatistics:
        cur = self._db.cursor()
        try:
            row = cur.execute(
                "SELECT (SELECT COUNT(*) FROM documents), (SELECT COUNT(*) FROM chunks)"
            ).fetchone()
            return StoreStatistics(total_documents=row[0], total_chunks=row[1])
        finally:
            cur.close()

    def _write_generation(self, document: Document, chunks: List[Chunk]) -> None:
        """Replace *document* and all its chunks in one transaction."""
        cur = self._db.cursor()
        try:
            cur.begin()
            try:
                cur.execute("DELETE FROM chunks WHERE document_id = ?", [document.id])
                cur.execute("DELETE FROM documents WHERE id = ?", [document.id])
                cur.execute(
                    """
                    INSERT INTO documents (id, name, content_hash, content, size, uploaded_at, metadata)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        document.id,
                        document.name,
                        document.content_hash,
                        document.content,
                        document.size,
                        document.uploaded_at.astimezone(timezone.utc).replace(tzinfo=None),
                        json.dumps(document.metadata, default=str),
                    ],
                )
                self._insert_chunks(cur, chunks)
                cur.commit()
            except Exception:
                self._rollback(cur)
                raise
        finally:
            cur.close()

    def _insert_chunks(self, cur: duckdb.DuckDBPyConnection, chunks: List[Chunk]) -> None:
        cur.executemany(
            f"""
            INSERT INTO chunks (id, document_id, idx, content, size, embedding, metadata)
            VALUES (?, ?, ?, ?, ?, ?::FLOAT[{self.dim}], ?)
            """,
            [
                [
                    c.id,
                    c.document_id,
                    c.index,
                    c.content,
                    c.size,
                    c.embedding,
                    json.dumps(c.metadata, default=str),
                ]
                for c in chunks
            ],
        )

    def _delete_document(self, document_id: str) -> bool:
        cur = self._db.cursor()
        try:
            cur.begin()
            try:
                cur.execute("DELETE FROM chunks WHERE document_id = ?", [document_id])
                existed = cur.execute(
                    "DELETE FROM documents WHERE id = ? RETURNING id", [document_id]
                ).fetchall()
                cur.commit()
            except Exception:
                self._rollback(cur)
                raise
            return bool(existed)
        finally:
            cur.close()

    def _clear(self) -> None:
        cur = self._db.cursor()
        try:
            cur.begin()
            try:
                cur.execute("DELETE FROM chunks")
                cur.execute("DELETE FROM documents")
                cur.commit()
            except Exception:
                self._rollback(cur)
                raise
        finally:
            cur.close()

    @staticmethod
    def _rollback(cur: duckdb.DuckDBPyConnection) -> None:
        try:
            cur.rollback()
        except duckdb.Error as exc:
            # The transaction was already aborted by the failing statement
            logger.debug("[DocumentStore] Rollback after failure: %s", exc)
