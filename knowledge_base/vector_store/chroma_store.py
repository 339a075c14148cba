"""
knowledge_base/vector_store/chroma_store.py

ChromaDB implementation of the VectorStore interface.

Uses a persistent on-disk client so vectors survive restarts. Each
knowledge-base collection maps to one Chroma collection (cosine space)
whose metadata records the fixed dimensionality. All backend-specific
details are fully contained here — the rest of the application never
imports from `chromadb` directly.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
import time
from typing import Any, Callable, Dict, List, Optional, TypeVar

import chromadb
from chromadb.config import Settings as ChromaSettings

from knowledge_base.core.config import settings
from knowledge_base.core.exceptions import (
    AppBaseException,
    DimensionMismatchError,
    NotFoundError,
    VectorStoreError,
)
from knowledge_base.core.logger import get_logger
from knowledge_base.vector_store.base import VectorHit, VectorRecord, VectorStore

logger = get_logger(__name__)

T = TypeVar("T")

_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_MAX_NAME = 63

#: Candidates pulled from the index before threshold filtering and tie-breaking.
MIN_CANDIDATES = 64


def _first(raw: Dict[str, Any], key: str) -> List[Any]:
    """First (only) query row of a Chroma query result field."""
    value = raw.get(key)
    if value is None or len(value) == 0:
        return []
    return list(value[0])


class ChromaVectorStore(VectorStore):
    """
    VectorStore backed by a local ChromaDB persistent client.

    The client is initialised once on construction and reused for the
    lifetime of the object. Every blocking Chroma call runs in a worker
    thread.
    """

    def __init__(
        self,
        persist_dir: str | None = None,
        collection_prefix: str | None = None,
        client: Any = None,
    ) -> None:
        """
        Args:
            persist_dir       : Directory where ChromaDB writes its files.
                                Defaults to ``settings.chroma_persist_dir``.
            collection_prefix : Prefix of every Chroma collection name.
                                Defaults to ``settings.chroma_collection_prefix``.
            client            : Pre-built Chroma client (tests).
        """
        self._persist_dir = persist_dir or settings.chroma_persist_dir
        self._prefix = collection_prefix or settings.chroma_collection_prefix
        self._handles: Dict[str, Any] = {}

        logger.info(
            "Initialising ChromaVectorStore — persist_dir=%s  prefix=%s",
            self._persist_dir,
            self._prefix,
        )

        try:
            self._client = client or chromadb.PersistentClient(
                path=self._persist_dir,
                settings=ChromaSettings(anonymized_telemetry=False),
            )
        except Exception as exc:
            raise VectorStoreError(
                f"Failed to initialise ChromaDB at '{self._persist_dir}': {exc}"
            ) from exc

    # ── Helpers ────────────────────────────────────────────────────────────────

    def _name(self, collection_id: str) -> str:
        """
        Chroma collection name for a knowledge-base collection id.

        Ids that had to be rewritten, would run past the length limit or end
        in a character Chroma rejects get a hash of the original id appended,
        so distinct ids never share a collection.
        """
        safe = _INVALID_NAME_CHARS.sub("_", collection_id)
        name = self._prefix + safe
        if safe == collection_id and len(name) <= _MAX_NAME and name[-1:].isalnum():
            return name
        digest = hashlib.sha1(collection_id.encode("utf-8")).hexdigest()[:12]
        return f"{name[:_MAX_NAME - len(digest) - 1]}_{digest}"

    def _own_names(self) -> List[str]:
        names = [getattr(c, "name", c) for c in self._client.list_collections()]
        return [n for n in names if n.startswith(self._prefix)]

    def _collection(self, collection_id: str) -> Any:
        name = self._name(collection_id)
        handle = self._handles.get(name)
        if handle is None:
            if name not in self._own_names():
                raise NotFoundError(f"Vector collection '{collection_id}' does not exist.")
            handle = self._handle(name)
        return handle

    def _handle(self, name: str) -> Any:
        handle = self._handles.get(name)
        if handle is None:
            handle = self._client.get_collection(name=name)
            self._handles[name] = handle
        return handle

    @staticmethod
    def _dimensions(handle: Any) -> int:
        return int((handle.metadata or {}).get("dimensions", 0))

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except AppBaseException:
            raise
        except Exception as exc:
            raise VectorStoreError(f"{fn.__name__.lstrip('_')} failed: {exc}") from exc

    # ── VectorStore interface ──────────────────────────────────────────────────

    async def create_collection(self, collection_id: str, dimensions: int) -> None:
        await self._run(self._create_collection, collection_id, dimensions)

    def _create_collection(self, collection_id: str, dimensions: int) -> None:
        name = self._name(collection_id)
        if name in self._own_names():
            handle = self._handle(name)
            existing = self._dimensions(handle)
            if existing and existing != dimensions:
                raise DimensionMismatchError(expected=existing, actual=dimensions, vector_id=collection_id)
            return

        handle = self._client.create_collection(
            name=name,
            # cosine distance ∈ [0, 2]; scores are reported as 1 - distance.
            metadata={
                "hnsw:space": "cosine",
                "dimensions": int(dimensions),
                "collection_id": collection_id,
            },
        )
        self._handles[name] = handle
        logger.info(
            "Vector collection '%s' ready — %d dim, %d vector(s).",
            collection_id,
            dimensions,
            handle.count(),
        )

    async def drop_collection(self, collection_id: str) -> None:
        await self._run(self._drop_collection, collection_id)

    def _drop_collection(self, collection_id: str) -> None:
        name = self._name(collection_id)
        self._handles.pop(name, None)
        if name in self._own_names():
            self._client.delete_collection(name=name)
            logger.info("Dropped vector collection '%s'.", collection_id)
        else:
            logger.debug("drop_collection('%s') — nothing to drop.", collection_id)

    async def upsert(self, collection_id: str, records: List[VectorRecord]) -> None:
        if not records:
            return
        await self._run(self._upsert, collection_id, records)

    def _upsert(self, collection_id: str, records: List[VectorRecord]) -> None:
        handle = self._collection(collection_id)
        expected = self._dimensions(handle)

        # Validate the whole batch before hitting the backend.
        for record in records:
            if len(record.embedding) != expected:
                raise DimensionMismatchError(expected, len(record.embedding), record.vector_id)

        # seq records insertion order and breaks score ties in search.
        base_seq = time.time_ns()
        metadatas = []
        for offset, record in enumerate(records):
            meta = {k: v for k, v in record.payload.items() if k != "chunk_text" and v is not None}
            meta["seq"] = base_seq + offset
            metadatas.append(meta)

        handle.upsert(
            ids=[r.vector_id for r in records],
            embeddings=[list(map(float, r.embedding)) for r in records],
            documents=[r.payload.get("chunk_text", "") for r in records],
            metadatas=metadatas,
        )
        logger.debug("Upserted %d vector(s) into '%s'.", len(records), collection_id)

    async def delete_by_document(self, document_id: str, collection_id: Optional[str] = None) -> int:
        return await self._run(self._delete_by_document, document_id, collection_id)

    def _delete_by_document(self, document_id: str, collection_id: Optional[str]) -> int:
        if collection_id is not None:
            names = [self._name(collection_id)]
            names = [n for n in names if n in self._own_names()]
        else:
            names = self._own_names()

        removed = 0
        for name in names:
            handle = self._handle(name)
            before = handle.count()
            handle.delete(where={"document_id": document_id})
            removed += before - handle.count()

        logger.info("Deleted %d vector(s) of document '%s'.", removed, document_id)
        return removed

    async def search(
        self,
        collection_id: str,
        query_vector: List[float],
        top_k: int = 5,
        score_threshold: float = 0.0,
    ) -> List[VectorHit]:
        if not query_vector:
            raise VectorStoreError("Cannot search with an empty query vector.")
        if top_k <= 0:
            return []
        return await self._run(self._search, collection_id, query_vector, top_k, score_threshold)

    def _search(
        self,
        collection_id: str,
        query_vector: List[float],
        top_k: int,
        score_threshold: float,
    ) -> List[VectorHit]:
        handle = self._collection(collection_id)
        expected = self._dimensions(handle)
        if len(query_vector) != expected:
            raise DimensionMismatchError(expected, len(query_vector), "query")

        total = handle.count()
        if total == 0:
            return []

        # The candidate pool does not depend on the threshold, which keeps
        # lowering the threshold from ever dropping a hit.
        raw = handle.query(
            query_embeddings=[list(map(float, query_vector))],
            n_results=min(total, max(top_k * 4, MIN_CANDIDATES)),
            include=["documents", "metadatas", "distances"],
        )

        # ChromaDB returns lists-of-lists (one per query); we always send one.
        ids = _first(raw, "ids")
        docs = _first(raw, "documents")
        metas = _first(raw, "metadatas")
        distances = _first(raw, "distances")

        ranked = []
        for vector_id, doc, meta, dist in zip(ids, docs, metas, distances):
            score = 1.0 - float(dist)
            if score < score_threshold:
                continue
            payload = dict(meta or {})
            seq = payload.pop("seq", 0)
            payload["chunk_text"] = doc or ""
            ranked.append((score, seq, VectorHit(vector_id=vector_id, score=score, payload=payload)))

        ranked.sort(key=lambda item: (-item[0], item[1]))
        hits = [hit for _, _, hit in ranked[:top_k]]

        logger.debug(
            "Search in '%s' returned %d hit(s) (threshold=%.3f).",
            collection_id,
            len(hits),
            score_threshold,
        )
        return hits

    async def count(self, collection_id: Optional[str] = None) -> int:
        return await self._run(self._count, collection_id)

    def _count(self, collection_id: Optional[str]) -> int:
        if collection_id is not None:
            try:
                return self._collection(collection_id).count()
            except NotFoundError:
                return 0
        return sum(
            self._handle(n).count()
            for n in self._own_names()
        )

    async def get_vectors(self, document_id: str, collection_id: str) -> Dict[str, List[float]]:
        return await self._run(self._get_vectors, document_id, collection_id)

    def _get_vectors(self, document_id: str, collection_id: str) -> Dict[str, List[float]]:
        try:
            handle = self._collection(collection_id)
        except NotFoundError:
            return {}
        raw = handle.get(where={"document_id": document_id}, include=["embeddings"])
        embeddings = raw.get("embeddings")
        if embeddings is None:
            return {}
        return {vid: [float(x) for x in emb] for vid, emb in zip(raw["ids"], embeddings)}

    async def ping(self) -> bool:
        try:
            await self._run(self._client.heartbeat)
            return True
        except VectorStoreError as exc:
            logger.warning("Vector store health check failed: %s", exc)
            return False
