"""DuckDB connection handle, schema bootstrap and vector-index setup.

One :class:`Database` is opened at process start and passed explicitly to
the document store and the search engine.  DuckDB connections are not
thread-safe, so every operation takes its own cursor (a child connection
to the same database) via :meth:`Database.cursor`.

Database Schema:
    documents table:
        - id: MD5 of the document name (primary key)
        - name: Document name
        - content_hash: SHA-256 of the content (unique)
        - content: Full document text
        - size: Character count
        - uploaded_at: UTC timestamp of the last create/update
        - metadata: JSON object (VARCHAR)

    chunks table:
        - id: ``{document_id}_chunk_{idx}`` (primary key)
        - document_id: Owning document (no FK; ownership enforced by the store)
        - idx: 0-based ordinal, unique per document
        - content, size, metadata
        - embedding: FLOAT[dim]

    chunks_embedding_hnsw: HNSW cosine index on chunks.embedding (vss)
"""
import logging
import re
from typing import Optional

import duckdb

from threatrag.errors import ConfigurationError

logger = logging.getLogger(__name__)

INDEX_NAME = "chunks_embedding_hnsw"


class Database:
    """Explicit DuckDB connection handle.

    Args:
        path:         Database file, or ``":memory:"``.
        dim:          Fixed embedding dimensionality of ``chunks.embedding``.
        vector_index: Try to create the HNSW index (requires the vss extension).

    Attributes:
        index_ready: True when the HNSW index exists and native search may be used.
    """

    def __init__(self, path: str = ":memory:", dim: int = 768, vector_index: bool = True) -> None:
        if dim <= 0:
            raise ConfigurationError("Embedding dimension must be positive")
        self.path = path
        self.dim = dim
        self.vector_index = vector_index
        self.index_ready = False
        self._connection: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(path)
        logger.info("[Database] Opened DuckDB at %s (dim=%d)", path, dim)

    @classmethod
    def open(cls, path: str = ":memory:", dim: int = 768, vector_index: bool = True) -> "Database":
        """Connect and bootstrap the schema in one step."""
        db = cls(path, dim=dim, vector_index=vector_index)
        try:
            db.ensure_schema()
        except Exception:
            db.close()
            raise
        return db

    @property
    def is_persistent(self) -> bool:
        return self.path != ":memory:"

    def cursor(self) -> duckdb.DuckDBPyConnection:
        """Return a new cursor for one operation.

        Raises:
            duckdb.ConnectionException: The handle has been closed.
        """
        if self._connection is None:
            raise duckdb.ConnectionException("Database handle is closed")
        return self._connection.cursor()

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None
            self.index_ready = False
            logger.info("[Database] Closed %s", self.path)

    # -----------------------------------------------------------------------
    # Schema
    # -----------------------------------------------------------------------

    def ensure_schema(self) -> None:
        """Create tables, constraints and the vector index if absent.

        Safe to call multiple times (idempotent).

        Raises:
            ConfigurationError: An existing ``chunks`` table was created
                with a different embedding dimension.
        """
        cur = self.cursor()
        try:
            cur.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    id VARCHAR PRIMARY KEY,
                    name VARCHAR NOT NULL,
                    content_hash VARCHAR NOT NULL UNIQUE,
                    content VARCHAR NOT NULL,
                    size INTEGER NOT NULL,
                    uploaded_at TIMESTAMP NOT NULL,
                    metadata VARCHAR NOT NULL DEFAULT '{}'
                )
            """)
            cur.execute(f"""
                CREATE TABLE IF NOT EXISTS chunks (
                    id VARCHAR PRIMARY KEY,
                    document_id VARCHAR NOT NULL,
                    idx INTEGER NOT NULL,
                    content VARCHAR NOT NULL,
                    size INTEGER NOT NULL,
                    embedding FLOAT[{self.dim}] NOT NULL,
                    metadata VARCHAR NOT NULL DEFAULT '{{}}',
                    UNIQUE (document_id, idx)
                )
            """)
            self._check_dimension(cur)
        finally:
            cur.close()

        self.index_ready = self._ensure_vector_index() if self.vector_index else False
        if not self.index_ready:
            logger.warning(
                "[Database] Vector index unavailable; searches use the brute-force fallback"
            )

    def _check_dimension(self, cur: duckdb.DuckDBPyConnection) -> None:
        row = cur.execute(
            """
            SELECT data_type FROM information_schema.columns
            WHERE table_name = 'chunks' AND column_name = 'embedding'
            """
        ).fetchone()
        if row is None:
            return
        match = re.search(r"\[(\d+)\]", row[0])
        if match and int(match.group(1)) != self.dim:
            raise ConfigurationError(
                f"Existing chunks table stores {match.group(1)}-dimensional embeddings, "
                f"but embedding.dim is {self.dim}"
            )

    @staticmethod
    def _load_vss(cur: duckdb.DuckDBPyConnection) -> None:
        # INSTALL downloads the extension on first use
        cur.execute("INSTALL vss")
        cur.execute("LOAD vss")

    def _ensure_vector_index(self) -> bool:
        cur = self.cursor()
        try:
            self._load_vss(cur)
            if self.is_persistent:
                cur.execute("SET hnsw_enable_experimental_persistence = true")
            cur.execute(
                f"CREATE INDEX IF NOT EXISTS {INDEX_NAME} "
                "ON chunks USING HNSW (embedding) WITH (metric = 'cosine')"
            )
            logger.info("[Database] HNSW cosine index %s ready", INDEX_NAME)
            return True
        except duckdb.Error as exc:
            logger.warning("[Database] Could not create HNSW index: %s", exc)
            return False
        finally:
            cur.close()
