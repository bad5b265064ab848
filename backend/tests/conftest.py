"""Shared test fixtures: fake embedding providers and an in-memory store."""
import asyncio
import hashlib
from typing import Callable, Dict, Generator, List, Optional

import pytest

from threatrag.config import ChunkingSettings
from threatrag.embeddings.chain import EmbeddingProviderChain
from threatrag.embeddings.provider import EmbeddingProvider
from threatrag.rag.chunker import ChunkingEngine
from threatrag.rag.database import Database
from threatrag.rag.document_store import DocumentStore
from threatrag.rag.search import HybridSearchEngine

DIM = 4


def hash_vector(text: str, dim: int = DIM) -> List[float]:
    """Deterministic, non-zero vector derived from *text*."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(b / 255.0) + 0.01 for b in digest[:dim]]


class FakeProvider(EmbeddingProvider):
    """In-memory provider with call counting and switchable failures.

    Args:
        name:      Provider name.
        vectors:   Explicit text → vector mapping; other texts are hashed.
        dim:       Length of hashed vectors.
        fail:      Raise on every ``embed()`` call.
        available: Result of the liveness probe.
        delay:     Seconds to sleep inside ``embed()``.
    """

    def __init__(
        self,
        name: str = "fake",
        vectors: Optional[Dict[str, List[float]]] = None,
        dim: int = DIM,
        fail: bool = False,
        available: bool = True,
        delay: float = 0.0,
    ) -> None:
        self._name = name
        self.vectors = dict(vectors or {})
        self.dim = dim
        self.fail = fail
        self.available = available
        self.delay = delay
        self.calls: List[str] = []
        self.probes = 0
        self.closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def model_id(self) -> str:
        return f"{self._name}-model"

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError(f"{self._name} is down")
        if text in self.vectors:
            return list(self.vectors[text])
        return hash_vector(text, self.dim)

    async def is_available(self, timeout: float) -> bool:
        self.probes += 1
        return self.available

    async def aclose(self) -> None:
        self.closed = True


class ManualClock:
    """Injectable monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class PipeChunker(ChunkingEngine):
    """Splits on ``|`` so tests control chunk boundaries exactly."""

    def split(self, content: str, is_structured: bool) -> List[str]:
        return [part for part in content.split("|") if part.strip()]


def small_chunking() -> ChunkingEngine:
    return ChunkingEngine(
        ChunkingSettings(
            generic_chunk_size=40,
            generic_chunk_overlap=10,
            structured_chunk_size=80,
            structured_chunk_overlap=10,
        )
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider("primary")


@pytest.fixture()
def chain(provider: FakeProvider) -> EmbeddingProviderChain:
    return EmbeddingProviderChain([provider], request_timeout=5.0)


@pytest.fixture()
def database() -> Generator[Database, None, None]:
    """In-memory DuckDB without the HNSW index (brute-force search)."""
    db = Database.open(":memory:", dim=DIM, vector_index=False)
    yield db
    db.close()


@pytest.fixture()
def make_store(database: Database) -> Callable[..., DocumentStore]:
    def _make(chain: EmbeddingProviderChain, chunker: Optional[ChunkingEngine] = None) -> DocumentStore:
        return DocumentStore(database, chain, chunker or small_chunking())
    return _make


@pytest.fixture()
def store(make_store, chain: EmbeddingProviderChain) -> DocumentStore:
    return make_store(chain)


@pytest.fixture()
def engine(database: Database) -> HybridSearchEngine:
    return HybridSearchEngine(database, fallback_candidate_limit=100, query_timeout=5.0)
