"""
knowledge_base/vector_store/base.py

Abstract interface for the vector store layer.

Design goals:
  - Services depend only on this interface, never on a concrete backend.
  - TextChunk, VectorRecord and VectorHit are the shared vocabulary
    across the chunker, the ingest pipeline and search.

Similarity is cosine similarity reported as ``score = 1 - cosine_distance``,
so scores live in [-1, 1] for every collection and every backend, and a
search threshold is compared against that raw value.

A network-backed implementation maps onto the usual vector-database
wire calls:

    create_collection {name, vector_size, distance: "Cosine"}
    upsert_points     [{id, vector, payload}]
    search            {vector, limit, score_threshold} -> [{id, score, payload}]
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


# ── Shared data-transfer objects ──────────────────────────────────────────────

@dataclass
class TextChunk:
    """
    A slice of a document's normalized text, produced by TextChunker.

    Attributes:
        text         : The chunk content.
        chunk_index  : Position within the document (0-indexed, contiguous).
        start_offset : Offset of the first character in the normalized text.
        end_offset   : Offset one past the last character.
    """

    text: str
    chunk_index: int
    start_offset: int = 0
    end_offset: int = 0


@dataclass
class VectorRecord:
    """
    One (vector, payload) pair to upsert.

    Attributes:
        vector_id : Stable id; re-upserting the same id replaces the entry.
        embedding : The vector; its length must match the collection.
        payload   : Flat metadata. ``document_id``, ``chunk_index`` and
                    ``chunk_text`` are expected by search.
    """

    vector_id: str
    embedding: List[float]
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorHit:
    """A single result returned from a vector similarity search."""

    vector_id: str
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def document_id(self) -> str:
        return self.payload.get("document_id", "")

    @property
    def chunk_index(self) -> int:
        return int(self.payload.get("chunk_index", 0))

    @property
    def chunk_text(self) -> str:
        return self.payload.get("chunk_text", "")


# ── Abstract base ──────────────────────────────────────────────────────────────

class VectorStore(ABC):
    """
    Contract every vector-store backend must fulfil.

    All methods are coroutines: backends that block (local databases) hand
    the work to a thread so the event loop keeps serving other tasks.
    """

    @abstractmethod
    async def create_collection(self, collection_id: str, dimensions: int) -> None:
        """
        Create the index for a collection; a no-op when it already exists
        with the same dimensionality.

        Raises:
            DimensionMismatchError: It exists with a different dimensionality.
            VectorStoreError      : The backend operation failed.
        """

    @abstractmethod
    async def drop_collection(self, collection_id: str) -> None:
        """Remove the collection's index and every vector in it."""

    @abstractmethod
    async def upsert(self, collection_id: str, records: List[VectorRecord]) -> None:
        """
        Add or overwrite vectors.

        All records are validated before anything is written: one vector
        whose length differs from the collection's dimensionality rejects
        the whole batch. Re-upserting an id replaces the previous entry
        (idempotent).

        Raises:
            DimensionMismatchError: A vector has the wrong length.
            NotFoundError         : The collection index does not exist.
            VectorStoreError      : The backend operation failed.
        """

    @abstractmethod
    async def delete_by_document(self, document_id: str, collection_id: Optional[str] = None) -> int:
        """
        Remove every vector belonging to ``document_id`` in one backend call.

        Searches started after this returns never see those vectors.
        ``collection_id`` narrows the sweep; without it every collection is
        visited.

        Returns:
            Number of vectors removed.
        """

    @abstractmethod
    async def search(
        self,
        collection_id: str,
        query_vector: List[float],
        top_k: int = 5,
        score_threshold: float = 0.0,
    ) -> List[VectorHit]:
        """
        Return up to ``top_k`` hits with ``score >= score_threshold``,
        sorted by score descending; equal scores keep insertion order.

        Raises:
            DimensionMismatchError: The query vector has the wrong length.
            VectorStoreError      : The backend operation failed.
        """

    @abstractmethod
    async def count(self, collection_id: Optional[str] = None) -> int:
        """Number of vectors in one collection, or in all of them."""

    @abstractmethod
    async def get_vectors(self, document_id: str, collection_id: str) -> Dict[str, List[float]]:
        """Return ``{vector_id: embedding}`` for every vector of a document."""

    async def ping(self) -> bool:
        """Cheap health probe; backends override when they can do better."""
        try:
            await self.count()
            return True
        except Exception:
            return False
