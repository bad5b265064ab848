"""threatrag backend application.

FastAPI service exposing the RAG indexing and search core used by the
threat-modeling report generator.

Modules:
    - embeddings: provider backends and the fallback chain
    - rag: chunking, DuckDB document store, hybrid search, context assembly

Run with:
    uvicorn threatrag.main:app
or:
    python -m threatrag.main
"""
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from threatrag import __version__
from threatrag.config import load_settings
from threatrag.embeddings.router import router as embeddings_router
from threatrag.rag.router import router as rag_router
from threatrag.rag.service import RagService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# botocore.auth logs the full SigV4 canonical request, including
# x-amz-security-token.  httpx/httpcore log every connection.
for _noisy in (
    "botocore",
    "boto3",
    "urllib3",
    "urllib3.connectionpool",
    "httpx",
    "httpcore",
    "openai",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

SETTINGS_ENV = "THREATRAG_SETTINGS"


def _settings_path() -> Path | None:
    value = os.environ.get(SETTINGS_ENV)
    return Path(value) if value else None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    settings = load_settings(_settings_path())

    configured_level = getattr(logging, settings.server.log_level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", settings.server.log_level.upper())

    app.state.rag_service = None
    if settings.rag.enabled:
        try:
            app.state.rag_service = RagService.from_settings(settings)
        except Exception as exc:
            logger.error("Failed to initialise RAG service: %s", exc)
    else:
        logger.info("RAG disabled in config.")

    yield  # Application runs here

    # Shutdown
    service = app.state.rag_service
    if service is not None:
        await service.aclose()
        app.state.rag_service = None
    logger.info("Application shutdown complete")


app = FastAPI(
    title="threatrag API",
    description="RAG indexing and search for AI-assisted threat modeling",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(rag_router)
app.include_router(embeddings_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    ``rag`` reports whether the RAG service finished initialising.
    """
    service = getattr(app.state, "rag_service", None)
    return {
        "status": "ok",
        "rag": service is not None,
        "index_ready": bool(service is not None and service.database.index_ready),
    }


if __name__ == "__main__":
    import uvicorn

    _settings = load_settings(_settings_path())
    uvicorn.run(
        "threatrag.main:app",
        host=_settings.server.host,
        port=_settings.server.port,
        log_level=_settings.server.log_level,
    )
