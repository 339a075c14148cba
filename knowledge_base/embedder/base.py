"""
knowledge_base/embedder/base.py

Abstract interface for the embedding layer.

Design goals:
  - Services depend only on this interface, never on a provider SDK or
    HTTP client.
  - Document-side (embed_batch) and query-side (embed_query) encoding are
    separate calls, so models that expect a retrieval instruction on the
    query (bge-large-zh) get it without the caller knowing.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from knowledge_base.embedder.registry import get_model_spec


class Embedder(ABC):
    """
    Contract every embedding backend must fulfil.

    Batch encoding (embed_batch) is the primary path for ingestion.
    Query encoding (embed_query) is the primary path for search.
    Implementations raise a typed DependencyError on failure and never
    return placeholder vectors.
    """

    #: Provider name recorded in API sessions.
    provider: str = "unknown"

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Model used when a call does not name one."""

    @abstractmethod
    async def embed_batch(
        self,
        texts: List[str],
        model: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> List[List[float]]:
        """
        Encode a list of document-side texts into embedding vectors.

        Args:
            texts  : Strings to embed. May be empty, in which case [] is returned.
            model  : Model override; defaults to ``model_name``.
            api_key: Per-call credential for remote backends; ignored locally.

        Returns:
            One float vector per input text, in the same order.

        Raises:
            ValidationError: A text exceeds the model's token limit.
            DependencyError: The provider failed (see ``kind``).
        """

    async def embed_single(
        self, text: str, model: Optional[str] = None, api_key: Optional[str] = None
    ) -> List[float]:
        """Encode one text."""
        vectors = await self.embed_batch([text], model, api_key=api_key)
        return vectors[0]

    async def embed_query(
        self, text: str, model: Optional[str] = None, api_key: Optional[str] = None
    ) -> List[float]:
        """Encode a search query, prefixed with the model's retrieval instruction if any."""
        spec = get_model_spec(model or self.model_name)
        prefix = spec.query_prefix if spec else ""
        return await self.embed_single(prefix + text, model, api_key=api_key)

    @property
    def is_configured(self) -> bool:
        """False when the backend cannot possibly succeed (e.g. no credential)."""
        return True

    async def aclose(self) -> None:
        """Release network resources; a no-op for local backends."""
