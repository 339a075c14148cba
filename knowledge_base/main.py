"""
knowledge_base/main.py

FastAPI application entry point.

Responsibilities:
  - Create the FastAPI app with metadata from config
  - Register all API routers
  - Load persisted API sessions on startup, release clients on shutdown
  - Add a global exception handler for uncaught AppBaseException
  - Expose a /health endpoint for liveness probes
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from knowledge_base.api.collections_controller import router as collections_router
from knowledge_base.api.documents_controller import router as documents_router
from knowledge_base.api.responses import error_response
from knowledge_base.api.search_controller import router as search_router
from knowledge_base.api.system_controller import router as system_router
from knowledge_base.core.config import settings
from knowledge_base.core.exceptions import AppBaseException
from knowledge_base.core.logger import get_logger
from knowledge_base.services.container import get_services

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = app.dependency_overrides.get(get_services, get_services)()
    await services.recorder.load()
    logger.info(
        "%s %s ready — storage=%s, embedder=%s",
        settings.app_name,
        settings.app_version,
        services.storage.name,
        services.embedder.model_name,
    )
    yield
    await services.embedder.aclose()


# ── App instance ───────────────────────────────────────────────────────────────

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=(
        "Ingests documents into knowledge collections, generates embeddings, "
        "and serves hybrid semantic + keyword search over them."
    ),
    lifespan=lifespan,
)

# ── Routers ────────────────────────────────────────────────────────────────────

app.include_router(collections_router)
app.include_router(documents_router)
app.include_router(search_router)
app.include_router(system_router)

# ── Global exception handler ───────────────────────────────────────────────────

@app.exception_handler(AppBaseException)
async def app_exception_handler(request: Request, exc: AppBaseException) -> JSONResponse:
    """
    Safety-net for any AppBaseException that escapes controller-level handling.
    Returns the standard error shape: { "error": "...", "kind": "..." }
    """
    logger.exception("Unhandled application error on %s: %s", request.url.path, exc)
    return error_response(exc)


# ── Health endpoint ────────────────────────────────────────────────────────────

@app.get("/health", tags=["Health"], summary="Liveness probe")
async def health() -> dict:
    """Returns 200 OK when the service is running."""
    return {"status": "ok", "version": settings.app_version}
