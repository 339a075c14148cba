"""knowledge_base/vector_store/__init__.py — public API of the vector_store package."""

from knowledge_base.vector_store.base import TextChunk, VectorHit, VectorRecord, VectorStore
from knowledge_base.vector_store.chroma_store import ChromaVectorStore
from knowledge_base.vector_store.similarity import cosine_similarity

__all__ = [
    "VectorStore",
    "TextChunk",
    "VectorRecord",
    "VectorHit",
    "ChromaVectorStore",
    "cosine_similarity",
]
