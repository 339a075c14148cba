"""
knowledge_base/services/collection_manager.py

Owns collections, documents and chunk metadata.

Records live in the persistence adapter; vectors live in the vector
store. This service keeps the two consistent: a collection's index is
created with it, and deletions cascade from document to chunks to
vectors (vectors first, so a search never returns a hit whose chunk
metadata is already gone).
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from knowledge_base.core.config import settings
from knowledge_base.core.constants import NS_CHUNKS, NS_COLLECTIONS, NS_DOCUMENTS
from knowledge_base.core.exceptions import NotFoundError, ValidationError
from knowledge_base.core.logger import get_logger
from knowledge_base.embedder.registry import get_model_spec
from knowledge_base.models.entities import Chunk, Collection, Document, now_ms
from knowledge_base.storage.base import StorageBackend
from knowledge_base.vector_store.base import VectorStore

logger = get_logger(__name__)


def _model_dimensions(model: str) -> int:
    """Vector length of ``model``: configured for the default model, else from the registry."""
    spec = get_model_spec(model)
    if model == settings.embedding_model or spec is None:
        return settings.embedding_dimensions
    return spec.dimensions


class CollectionManager:
    """
    CRUD over collections and documents with cascading deletes.

    Design choices:
    - **Lazy default**: a request without a collection id resolves to the
      configured default collection, created on first use. Creation is
      serialised by a lock so concurrent first requests create it once.
    - **One model per collection**: the embedding model and dimensionality
      are fixed at creation time.
    - **Document locks**: deleting a document and writing its embedding
      results hold the same per-document lock, and writers re-check that the
      document still exists, so a delete is never undone by a running job.
    """

    def __init__(self, storage: StorageBackend, store: VectorStore) -> None:
        self._storage = storage
        self._store = store
        self._default_lock = asyncio.Lock()
        self._document_locks: Dict[str, asyncio.Lock] = {}

    # ── Collections ────────────────────────────────────────────────────────────

    async def create_collection(
        self,
        name: str,
        embedding_model: Optional[str] = None,
        vector_dimensions: Optional[int] = None,
        description: str = "",
        collection_id: Optional[str] = None,
    ) -> Collection:
        """
        Create a collection and its vector index.

        Args:
            name              : Display name; must not be blank.
            embedding_model   : Model bound to the collection.
                                Defaults to ``settings.embedding_model``.
            vector_dimensions : Vector length. Defaults to the registry size of a
                                known model, otherwise ``settings.embedding_dimensions``.
            description       : Free text.
            collection_id     : Explicit id (the default collection uses one).

        Raises:
            ValidationError: Blank name, non-positive dimensions or id already in use.
        """
        if not name or not name.strip():
            raise ValidationError("Collection name must not be empty.")
        model = embedding_model or settings.embedding_model
        dimensions = vector_dimensions or _model_dimensions(model)
        if dimensions <= 0:
            raise ValidationError("vector_dimensions must be positive.")

        fields: Dict[str, Any] = {
            "name": name.strip(),
            "description": description,
            "embedding_model": model,
            "vector_dimensions": dimensions,
        }
        if collection_id:
            if await self._storage.get(NS_COLLECTIONS, collection_id) is not None:
                raise ValidationError(f"Collection '{collection_id}' already exists.")
            fields["id"] = collection_id
        collection = Collection(**fields)

        await self._store.create_collection(collection.id, collection.vector_dimensions)
        await self._storage.save(NS_COLLECTIONS, collection.model_dump())
        logger.info(
            "Created collection '%s' (%s, %d dim).",
            collection.name,
            collection.embedding_model,
            collection.vector_dimensions,
        )
        return collection

    async def list_collections(self) -> List[Collection]:
        records = await self._storage.load(NS_COLLECTIONS)
        collections = [Collection(**r) for r in records]
        return sorted(collections, key=lambda c: c.created_at)

    async def get_collection(self, collection_id: str) -> Collection:
        record = await self._storage.get(NS_COLLECTIONS, collection_id)
        if record is None:
            raise NotFoundError(f"Collection '{collection_id}' not found.")
        return Collection(**record)

    async def resolve_collection(self, collection_id: Optional[str] = None) -> Collection:
        """
        Return the named collection, or the default one when no id is given.

        Raises:
            NotFoundError: An explicit id that does not exist.
        """
        if collection_id:
            return await self.get_collection(collection_id)

        default_id = settings.default_collection_id
        async with self._default_lock:
            record = await self._storage.get(NS_COLLECTIONS, default_id)
            if record is not None:
                return Collection(**record)
            logger.info("Default collection missing — creating '%s'.", default_id)
            return await self.create_collection(
                name=settings.default_collection_name,
                description="Default knowledge base collection",
                collection_id=default_id,
            )

    async def delete_collection(self, collection_id: str) -> int:
        """
        Delete a collection with its documents, chunks and vectors.

        Returns:
            Number of documents removed.

        Raises:
            NotFoundError: Unknown collection.
        """
        await self.get_collection(collection_id)

        await self._store.drop_collection(collection_id)
        await self._storage.delete_where(NS_CHUNKS, {"collection_id": collection_id})
        removed = await self._storage.delete_where(NS_DOCUMENTS, {"collection_id": collection_id})
        await self._storage.delete(NS_COLLECTIONS, collection_id)

        logger.info("Deleted collection '%s' with %d document(s).", collection_id, removed)
        return removed

    # ── Documents ──────────────────────────────────────────────────────────────

    async def get_documents(self, collection_id: str) -> List[Document]:
        await self.get_collection(collection_id)
        records = await self._storage.load(NS_DOCUMENTS, {"collection_id": collection_id})
        documents = [Document(**r) for r in records]
        return sorted(documents, key=lambda d: d.created_at, reverse=True)

    async def get_document(self, document_id: str) -> Document:
        record = await self._storage.get(NS_DOCUMENTS, document_id)
        if record is None:
            raise NotFoundError(f"Document '{document_id}' not found.")
        return Document(**record)

    async def save_document(self, document: Document) -> Document:
        document.updated_at = now_ms()
        await self._storage.save(NS_DOCUMENTS, document.model_dump())
        return document

    async def delete_document(self, document_id: str) -> None:
        """
        Delete a document: vectors, then chunk metadata, then the record.

        Raises:
            NotFoundError: Unknown document.
        """
        async with self.document_lock(document_id):
            document = await self.get_document(document_id)
            removed = await self._store.delete_by_document(document_id, document.collection_id)
            await self._storage.delete_where(NS_CHUNKS, {"document_id": document_id})
            await self._storage.delete(NS_DOCUMENTS, document_id)
        self._document_locks.pop(document_id, None)
        logger.info("Deleted document '%s' (%d vector(s)).", document_id, removed)

    def document_lock(self, document_id: str) -> asyncio.Lock:
        """Lock serialising deletes and embedding writes of one document."""
        return self._document_locks.setdefault(document_id, asyncio.Lock())

    async def document_exists(self, document_id: str) -> bool:
        return await self._storage.get(NS_DOCUMENTS, document_id) is not None

    # ── Chunks ─────────────────────────────────────────────────────────────────

    async def get_chunks(self, document_id: str) -> List[Chunk]:
        records = await self._storage.load(NS_CHUNKS, {"document_id": document_id})
        chunks = [Chunk(**{k: v for k, v in r.items() if k != "id"}) for r in records]
        return sorted(chunks, key=lambda c: c.chunk_index)

    async def get_collection_chunks(self, collection_id: str) -> List[Chunk]:
        records = await self._storage.load(NS_CHUNKS, {"collection_id": collection_id})
        return [Chunk(**{k: v for k, v in r.items() if k != "id"}) for r in records]

    async def replace_chunks(self, document_id: str, chunks: List[Chunk]) -> None:
        """Make ``chunks`` the complete chunk set of the document."""
        await self._storage.delete_where(NS_CHUNKS, {"document_id": document_id})
        await self._storage.save_many(NS_CHUNKS, [c.to_record() for c in chunks])

    async def update_chunks(self, chunks: List[Chunk]) -> None:
        stamp = now_ms()
        for chunk in chunks:
            chunk.updated_at = stamp
        await self._storage.save_many(NS_CHUNKS, [c.to_record() for c in chunks])

    # ── Statistics ─────────────────────────────────────────────────────────────

    async def get_collection_stats(self, collection_id: str) -> Dict[str, Any]:
        collection = await self.get_collection(collection_id)
        documents = await self._storage.load(NS_DOCUMENTS, {"collection_id": collection_id})
        chunks = await self._storage.load(NS_CHUNKS, {"collection_id": collection_id})
        return {
            "collection_id": collection.id,
            "name": collection.name,
            "embedding_model": collection.embedding_model,
            "vector_dimensions": collection.vector_dimensions,
            "document_count": len(documents),
            "chunk_count": len(chunks),
            "vector_count": await self._store.count(collection_id),
            "total_content_size": sum(len(d.get("content", "")) for d in documents),
        }

    async def get_system_status(self, embedder_configured: bool = True) -> Dict[str, Any]:
        """
        Totals across every collection plus health flags.

        Each probe is isolated: a failing backend flips its own flag
        instead of failing the whole status call.
        """
        collections: List[Collection] = []
        total_documents = 0
        storage_ok = True
        try:
            collections = await self.list_collections()
            total_documents = len(await self._storage.load(NS_DOCUMENTS))
        except Exception as exc:
            storage_ok = False
            logger.warning("Storage health check failed: %s", exc)

        total_vectors = 0
        vector_store_ok = await self._store.ping()
        if vector_store_ok:
            total_vectors = await self._store.count()

        return {
            "total_documents": total_documents,
            "total_vectors": total_vectors,
            "collections_count": len(collections),
            "health": {
                "storage": storage_ok,
                "vector_store": vector_store_ok,
                "embedder_configured": embedder_configured,
            },
        }
