"""Error taxonomy for the RAG indexing and search core.

Provider- and index-level errors are recovered locally by the fallback
paths (provider chain, brute-force search) and only reach the caller when
every fallback has been exhausted.  Ingestion errors are always surfaced.

Each error carries an HTTP ``status_code`` so routers can map them
without a lookup table.
"""
from typing import Dict, Optional


class RagError(Exception):
    """Base exception for all RAG core errors."""
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ConfigurationError(RagError):
    """Raised when a provider is constructed without credentials or endpoint."""
    def __init__(self, message: str):
        super().__init__(message, status_code=500)


class ProviderUnavailableError(RagError):
    """Raised when every embedding provider failed or is cooling down.

    Attributes:
        failures: Provider name → reason it was skipped or failed.
    """
    def __init__(self, message: str, failures: Optional[Dict[str, str]] = None):
        self.failures = dict(failures or {})
        if self.failures:
            detail = "; ".join(f"{name}: {reason}" for name, reason in self.failures.items())
            message = f"{message} ({detail})"
        super().__init__(message, status_code=503)


class EmbeddingDimensionMismatchError(RagError):
    """Raised when a vector does not match the store's fixed dimensionality."""
    def __init__(self, expected: int, actual: int, context: str = ""):
        self.expected = expected
        self.actual = actual
        where = f" for {context}" if context else ""
        super().__init__(
            f"Embedding dimension mismatch{where}: expected {expected}, got {actual}",
            status_code=422,
        )


class IndexUnavailableError(RagError):
    """Raised when the native vector index is missing or its query failed."""
    def __init__(self, message: str = "Vector index unavailable"):
        super().__init__(message, status_code=503)


class IngestionIntegrityError(RagError):
    """Raised when an ingest cannot be committed atomically.

    Covers zero-chunk documents and failures inside the replace
    transaction.  The previously stored generation is left untouched.
    """
    def __init__(self, message: str):
        super().__init__(message, status_code=422)


class StoreUnavailableError(RagError):
    """Raised when the backing store cannot be queried at all."""
    def __init__(self, message: str = "Document store unavailable"):
        super().__init__(message, status_code=503)
