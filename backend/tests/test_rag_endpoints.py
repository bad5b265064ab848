"""Tests for the HTTP surface: /rag/*, /embeddings/* and /health.

The RagService is mocked so no database or embedding provider is needed.
"""
from datetime import datetime, timezone
from typing import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from threatrag.embeddings.chain import CacheStats, ProviderStatus
from threatrag.errors import (
    EmbeddingDimensionMismatchError,
    IngestionIntegrityError,
    ProviderUnavailableError,
)
from threatrag.main import app
from threatrag.rag.models import (
    Chunk,
    ContextBundle,
    ContextSource,
    Document,
    IngestOutcome,
    IngestResult,
    SearchResult,
    StoreStatistics,
)

DOC = Document(
    id="d41d8cd98f00b204e9800998ecf8427e",
    name="stride-capec-mapping.md",
    content_hash="abc123",
    content="# Spoofing\nCAPEC-151",
    size=21,
    uploaded_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    metadata={"source": "upload"},
)
CHUNK = Chunk(
    id=f"{DOC.id}_chunk_0",
    document_id=DOC.id,
    index=0,
    content="# Spoofing\nCAPEC-151",
    size=21,
    embedding=[0.1, 0.2],
    metadata={"chunk_index": 0, "embedding_provider": "gemini"},
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def client() -> Generator[TestClient, None, None]:
    yield TestClient(app)


@pytest.fixture(autouse=True)
def reset_service():
    """Ensure no service leaks between tests."""
    app.state.rag_service = None
    yield
    app.state.rag_service = None


@pytest.fixture()
def mock_service() -> MagicMock:
    """Install a mock RagService on the app."""
    service = MagicMock()
    service.database.index_ready = True
    service.ingest = AsyncMock(
        return_value=IngestResult(IngestOutcome.CREATED, DOC.id, 3, "gemini")
    )
    service.list_documents = AsyncMock(return_value=[DOC])
    service.delete_document = AsyncMock(return_value=True)
    service.search = AsyncMock(return_value=[SearchResult(CHUNK, DOC, 0.87)])
    service.search_context = AsyncMock(
        return_value=ContextBundle(
            context=f"[Source 1: {DOC.name}]\n{CHUNK.content}",
            sources=[ContextSource(1, DOC.id, DOC.name, 0, 0.87)],
            total_documents=4,
            confidence=87.0,
        )
    )
    service.get_statistics = AsyncMock(return_value=StoreStatistics(4, 19))
    service.clear_cache = AsyncMock()
    service.embedding_status.return_value = (
        [
            ProviderStatus("gemini", "text-embedding-004", 0, True, 212.5),
            ProviderStatus("ollama", "nomic-embed-text:latest", 1, False, None),
        ],
        CacheStats(size=12, capacity=100, hits=4, misses=15),
    )
    app.state.rag_service = service
    return service


# ---------------------------------------------------------------------------
# Service not configured
# ---------------------------------------------------------------------------

class TestNotConfigured:
    @pytest.mark.parametrize(
        "method,path,body",
        [
            ("post", "/rag/documents", {"name": "a", "content": "b"}),
            ("get", "/rag/documents", None),
            ("delete", "/rag/documents/abc", None),
            ("post", "/rag/search", {"query": "q"}),
            ("post", "/rag/search/context", {"query": "q"}),
            ("get", "/rag/statistics", None),
            ("delete", "/rag/cache", None),
            ("get", "/embeddings/status", None),
            ("delete", "/embeddings/cache", None),
        ],
    )
    def test_returns_503(self, client: TestClient, method: str, path: str, body):
        kwargs = {"json": body} if body is not None else {}
        resp = getattr(client, method)(path, **kwargs)
        assert resp.status_code == 503
        assert "not configured" in resp.json()["error"]


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class TestDocuments:
    def test_ingest(self, client: TestClient, mock_service: MagicMock):
        resp = client.post(
            "/rag/documents",
            json={
                "name": DOC.name,
                "content": DOC.content,
                "metadata": {"source": "upload"},
                "content_type": "text/markdown",
                "provider_hint": "ollama",
            },
        )

        assert resp.status_code == 200
        assert resp.json() == {
            "outcome": "created",
            "document_id": DOC.id,
            "chunk_count": 3,
            "provider": "gemini",
        }
        mock_service.ingest.assert_awaited_once_with(
            DOC.name,
            DOC.content,
            {"source": "upload"},
            content_type="text/markdown",
            provider_hint="ollama",
        )

    def test_ingest_rejects_empty_name(self, client: TestClient, mock_service: MagicMock):
        resp = client.post("/rag/documents", json={"name": "", "content": "x"})
        assert resp.status_code == 422
        mock_service.ingest.assert_not_awaited()

    @pytest.mark.parametrize(
        "exc,status",
        [
            (ProviderUnavailableError("All embedding providers failed", {"gemini": "down"}), 503),
            (EmbeddingDimensionMismatchError(768, 1536, "chunk 0"), 422),
            (IngestionIntegrityError("Chunking produced no chunks"), 422),
        ],
    )
    def test_ingest_error_status(self, client: TestClient, mock_service: MagicMock, exc, status):
        mock_service.ingest.side_effect = exc

        resp = client.post("/rag/documents", json={"name": "a.txt", "content": "x"})

        assert resp.status_code == status
        assert resp.json()["error"] == exc.message

    def test_unexpected_error_is_500(self, client: TestClient, mock_service: MagicMock):
        mock_service.ingest.side_effect = RuntimeError("boom")

        resp = client.post("/rag/documents", json={"name": "a.txt", "content": "x"})

        assert resp.status_code == 500
        assert "boom" in resp.json()["error"]

    def test_list(self, client: TestClient, mock_service: MagicMock):
        resp = client.get("/rag/documents")

        assert resp.status_code == 200
        data = resp.json()
        assert len(data) == 1
        assert data[0]["name"] == DOC.name
        assert data[0]["content_hash"] == "abc123"
        assert "content" not in data[0]

    def test_delete(self, client: TestClient, mock_service: MagicMock):
        resp = client.delete(f"/rag/documents/{DOC.id}")

        assert resp.status_code == 200
        assert resp.json() == {"status": "deleted", "document_id": DOC.id}

    def test_delete_missing_is_404(self, client: TestClient, mock_service: MagicMock):
        mock_service.delete_document.return_value = False

        resp = client.delete("/rag/documents/nope")

        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

class TestSearch:
    def test_search(self, client: TestClient, mock_service: MagicMock):
        resp = client.post("/rag/search", json={"query": "spoofing", "limit": 3})

        assert resp.status_code == 200
        data = resp.json()
        assert data["query"] == "spoofing"
        item = data["results"][0]
        assert item["document_name"] == DOC.name
        assert item["chunk_id"] == CHUNK.id
        assert item["chunk_index"] == 0
        assert item["score"] == pytest.approx(0.87)
        assert item["metadata"]["embedding_provider"] == "gemini"
        mock_service.search.assert_awaited_once_with("spoofing", 3, provider_hint=None)

    def test_search_validates_limit(self, client: TestClient, mock_service: MagicMock):
        assert client.post("/rag/search", json={"query": "q", "limit": 0}).status_code == 422
        assert client.post("/rag/search", json={"query": "q", "limit": 51}).status_code == 422
        assert client.post("/rag/search", json={"query": ""}).status_code == 422

    def test_search_dimension_mismatch(self, client: TestClient, mock_service: MagicMock):
        mock_service.search.side_effect = EmbeddingDimensionMismatchError(768, 1024, "query vector")

        resp = client.post("/rag/search", json={"query": "q"})

        assert resp.status_code == 422

    def test_context(self, client: TestClient, mock_service: MagicMock):
        resp = client.post(
            "/rag/search/context",
            json={"query": "spoofing", "limit": 5, "system_context_hint": "Payments API"},
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["context"].startswith(f"[Source 1: {DOC.name}]")
        assert data["sources"] == [
            {
                "rank": 1,
                "document_id": DOC.id,
                "document_name": DOC.name,
                "chunk_index": 0,
                "score": 0.87,
            }
        ]
        assert data["total_documents"] == 4
        assert data["confidence"] == 87.0
        mock_service.search_context.assert_awaited_once_with(
            "spoofing", 5, system_context_hint="Payments API", provider_hint=None
        )


# ---------------------------------------------------------------------------
# Statistics / administration
# ---------------------------------------------------------------------------

class TestAdministration:
    def test_statistics(self, client: TestClient, mock_service: MagicMock):
        resp = client.get("/rag/statistics")

        assert resp.status_code == 200
        assert resp.json() == {
            "total_documents": 4,
            "total_chunks": 19,
            "cache_valid": True,
            "index_ready": True,
        }

    def test_statistics_empty_store(self, client: TestClient, mock_service: MagicMock):
        mock_service.get_statistics.return_value = StoreStatistics(0, 0)
        mock_service.database.index_ready = False

        data = client.get("/rag/statistics").json()

        assert data["cache_valid"] is False
        assert data["index_ready"] is False

    def test_clear_cache(self, client: TestClient, mock_service: MagicMock):
        resp = client.delete("/rag/cache")

        assert resp.status_code == 200
        assert resp.json() == {"status": "cleared"}
        mock_service.clear_cache.assert_awaited_once()

    def test_embedding_status(self, client: TestClient, mock_service: MagicMock):
        resp = client.get("/embeddings/status")

        assert resp.status_code == 200
        data = resp.json()
        assert [p["name"] for p in data["providers"]] == ["gemini", "ollama"]
        assert data["providers"][0]["cooling_down"] is True
        assert data["providers"][0]["retry_in_seconds"] == 212.5
        assert data["providers"][1]["retry_in_seconds"] is None
        assert data["cache"] == {"size": 12, "capacity": 100, "hits": 4, "misses": 15}

    def test_clear_embedding_cache(self, client: TestClient, mock_service: MagicMock):
        resp = client.delete("/embeddings/cache")

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}
        mock_service.clear_embedding_cache.assert_called_once()


class TestHealth:
    def test_without_service(self, client: TestClient):
        assert client.get("/health").json() == {"status": "ok", "rag": False, "index_ready": False}

    def test_with_service(self, client: TestClient, mock_service: MagicMock):
        assert client.get("/health").json() == {"status": "ok", "rag": True, "index_ready": True}


class TestRouteTable:
    def test_api_routes_declare_response_models(self):
        routes = [
            r for r in app.routes
            if isinstance(r, APIRoute) and r.path.startswith(("/rag", "/embeddings"))
        ]
        assert len(routes) == 9
        for route in routes:
            assert route.response_model is not None, route.path

    def test_delete_and_clear_routes_registered(self):
        registered = {
            (method, r.path)
            for r in app.routes if isinstance(r, APIRoute)
            for method in r.methods
        }
        assert ("DELETE", "/rag/documents/{document_id}") in registered
        assert ("DELETE", "/rag/cache") in registered
        assert ("DELETE", "/embeddings/cache") in registered
