"""
knowledge_base/core/exceptions.py

Custom exception hierarchy for the application.

Raising typed exceptions from services lets controllers catch specific
cases and return the correct HTTP status code without leaking internals.
"""

from __future__ import annotations

from typing import Any, Optional


class AppBaseException(Exception):
    """Root exception — catch-all for any application-level error."""


# ── Input exceptions ───────────────────────────────────────────────────────────

class ValidationError(AppBaseException):
    """Raised for unsupported input or oversized content."""


class InvalidFileTypeError(ValidationError):
    """Raised when an upload has a type the document reader cannot decode."""


class NotFoundError(AppBaseException):
    """Raised when a collection, document or setting does not exist."""


# ── Embedding provider exceptions ──────────────────────────────────────────────

class DependencyError(AppBaseException):
    """
    Raised when the embedding provider cannot serve a request.

    ``kind`` names the failure so callers can tell an expired key from a
    throttled one; ``retryable`` says whether repeating the same call may
    succeed without changing anything.
    """

    kind: str = "dependency"
    retryable: bool = True

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(DependencyError):
    """Missing, invalid or unauthorised credential."""

    kind = "authentication"
    retryable = False


class RateLimitError(DependencyError):
    """The provider throttled the request (HTTP 429)."""

    kind = "rate_limit"


class ProviderUnavailableError(DependencyError):
    """Network failure or a 5xx answer from the provider."""

    kind = "network"


class MalformedResponseError(DependencyError):
    """The provider answered, but not with the vectors we asked for."""

    kind = "malformed_response"
    retryable = False


class EmbeddingTimeoutError(DependencyError):
    """An embedding call exceeded its timeout."""

    kind = "timeout"


# ── Storage exceptions ─────────────────────────────────────────────────────────

class StorageError(AppBaseException):
    """Raised when a persistence backend fails to read or write."""


class VectorStoreError(StorageError):
    """Raised when an interaction with the vector database fails."""


class DimensionMismatchError(VectorStoreError):
    """Raised when a vector's length differs from its collection's dimensionality."""

    def __init__(self, expected: int, actual: int, vector_id: str = "") -> None:
        super().__init__(
            f"Vector '{vector_id}' has {actual} dimension(s); "
            f"collection expects {expected}."
        )
        self.expected = expected
        self.actual = actual
        self.vector_id = vector_id


# ── Search exceptions ──────────────────────────────────────────────────────────

class SearchTimeoutError(AppBaseException):
    """Raised when a vector search exceeds its timeout."""

    kind = "timeout"
    retryable = True


# ── Embedding generation exceptions ────────────────────────────────────────────

class PartialFailure(AppBaseException):
    """
    Raised when some chunks of a document were embedded and others failed.

    The document is left in an explicit ``partial`` state; ``report`` lists
    each failed chunk so it can be retried in isolation.
    """

    def __init__(self, message: str, report: Any) -> None:
        super().__init__(message)
        self.report = report
