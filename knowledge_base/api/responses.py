"""
knowledge_base/api/responses.py

Maps the application exception hierarchy onto HTTP responses.

    ValidationError        → 400
    NotFoundError          → 404
    DimensionMismatchError → 409
    DependencyError        → 502   (kind: authentication / rate_limit / network / …)
    SearchTimeoutError     → 502   (kind: timeout)
    PartialFailure         → 207   (body carries the embedding report)
    StorageError / other   → 500

Every error body has the shape ``{"error": "...", "kind": "..."}``.
"""

from fastapi.responses import JSONResponse

from knowledge_base.core.exceptions import (
    AppBaseException,
    DependencyError,
    DimensionMismatchError,
    NotFoundError,
    PartialFailure,
    SearchTimeoutError,
    StorageError,
    ValidationError,
)
from knowledge_base.core.logger import get_logger

logger = get_logger(__name__)


def err(message: str, status: int = 400, kind: str = "validation") -> JSONResponse:
    """Return a JSON error response with the standard error shape."""
    return JSONResponse(status_code=status, content={"error": message, "kind": kind})


def error_response(exc: AppBaseException) -> JSONResponse:
    if isinstance(exc, PartialFailure):
        report = exc.report.model_dump() if hasattr(exc.report, "model_dump") else exc.report
        return JSONResponse(
            status_code=207,
            content={"error": str(exc), "kind": "partial", "report": report},
        )
    if isinstance(exc, ValidationError):
        return err(str(exc), 400, "validation")
    if isinstance(exc, NotFoundError):
        return err(str(exc), 404, "not_found")
    if isinstance(exc, DimensionMismatchError):
        return err(str(exc), 409, "dimension_mismatch")
    if isinstance(exc, (DependencyError, SearchTimeoutError)):
        logger.warning("Upstream failure (%s): %s", exc.kind, exc)
        return err(str(exc), 502, exc.kind)
    if isinstance(exc, StorageError):
        logger.error("Storage failure: %s", exc)
        return err("Storage operation failed.", 500, "storage")

    logger.error("Unhandled application error: %s", exc)
    return err("Internal error.", 500, "internal")
