"""
knowledge_base/services/search_service.py

Orchestrates the hybrid search pipeline:

    query string
      └─ Embedder.embed_query()     → [float]   (once per query and model)
           └─ VectorStore.search()  → [VectorHit]      score ≥ threshold
                └─ keyword scan     → [keyword hits]   (optional, scored below vector hits)
                     └─ merge / dedupe / rank → SearchResponse

Same constructor-injection pattern as IngestService.
"""

from __future__ import annotations

import asyncio
import re
import time
from typing import Dict, List, Optional, Tuple

from knowledge_base.core.config import settings
from knowledge_base.core.constants import NS_SEARCH_HISTORY
from knowledge_base.core.exceptions import (
    AppBaseException,
    EmbeddingTimeoutError,
    SearchTimeoutError,
    StorageError,
    ValidationError,
)
from knowledge_base.core.logger import get_logger
from knowledge_base.core.retry import RetryPolicy
from knowledge_base.embedder.base import Embedder
from knowledge_base.models.entities import Chunk, Collection, Document, SearchHistoryEntry
from knowledge_base.models.search_models import SearchResponse, SearchResult
from knowledge_base.services.collection_manager import CollectionManager
from knowledge_base.services.session_recorder import SessionRecorder
from knowledge_base.storage.base import StorageBackend
from knowledge_base.vector_store.base import VectorHit, VectorStore

logger = get_logger(__name__)

_TERM_SPLIT = re.compile(r"\s+")

#: Key identifying one chunk across vector and keyword hits.
HitKey = Tuple[str, int]


class SearchService:
    """
    Hybrid semantic + keyword search over one collection (or all of them).

    Search steps:
        1. Validate the query and resolve the collection (default when omitted)
        2. Report ``empty`` / ``not_embedded`` collections without calling the embedder
        3. Embed the query once and run the vector search under a timeout
        4. Optionally retry with configured lower thresholds when nothing matched
        5. Optionally add keyword matches, always scored below the weakest vector hit
        6. Dedupe by (document_id, chunk_index), sort, cut to ``limit``, add previews

    The threshold is compared against raw cosine similarity.
    """

    def __init__(
        self,
        collections: CollectionManager,
        embedder: Embedder,
        store: VectorStore,
        history: StorageBackend | None = None,
        recorder: SessionRecorder | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout: float | None = None,
        preview_length: int | None = None,
    ) -> None:
        """
        Args:
            collections    : Collection / document lookups.
            embedder       : Query embedder.
            store          : Vector store.
            history        : Storage for search history entries; None disables it.
            recorder       : Optional usage recorder.
            retry_policy   : Applied to timed-out vector searches.
            timeout        : Seconds per embedding or search call.
                             Defaults to ``settings.search_timeout``.
            preview_length : Max characters of a result preview.
        """
        self._collections = collections
        self._embedder = embedder
        self._store = store
        self._history = history
        self._recorder = recorder
        self._retry = retry_policy or RetryPolicy.from_settings()
        self._timeout = timeout or settings.search_timeout
        self._preview_length = preview_length or settings.preview_length

    # ── Public API ─────────────────────────────────────────────────────────────

    async def search(
        self,
        query: str,
        collection_id: Optional[str] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        keyword_fallback: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> SearchResponse:
        """
        Search one collection.

        Args:
            query            : Natural-language query. Must not be blank.
            collection_id    : Target collection; the default one when omitted.
            limit            : Max results. Defaults to ``settings.search_limit``.
            threshold        : Minimum cosine similarity.
                               Defaults to ``settings.similarity_threshold``.
            keyword_fallback : ``off`` | ``low_recall`` | ``always``.
                               Defaults to ``settings.keyword_fallback``.
            api_key          : Credential for the embedding provider.

        Returns:
            SearchResponse whose ``status`` tells an empty collection, a
            collection without vectors and a query without matches apart.

        Raises:
            ValidationError    : Blank query or non-positive limit.
            NotFoundError      : Unknown ``collection_id``.
            DependencyError    : The query could not be embedded.
            SearchTimeoutError : The vector search timed out on every attempt.
        """
        clean, limit, threshold, mode = self._arguments(query, limit, threshold, keyword_fallback)
        started = time.monotonic()

        collection = await self._collections.resolve_collection(collection_id)
        response = await self._search_collection(collection, clean, limit, threshold, mode, api_key, {})
        response.query_time_ms = int((time.monotonic() - started) * 1000)

        await self._record_history(clean, collection.id, response)
        logger.info(
            "Search in '%s' — query: '%s', status=%s, %d result(s) in %d ms.",
            collection.id,
            clean[:80],
            response.status,
            response.total_count,
            response.query_time_ms,
        )
        return response

    async def search_all_collections(
        self,
        query: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        keyword_fallback: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> SearchResponse:
        """
        Search every collection and merge the results.

        A collection that fails is skipped and listed in
        ``skipped_collections``; the call only fails when every collection
        does. Scores come from different collections, so the merged order is
        a best effort.
        """
        clean, limit, threshold, mode = self._arguments(query, limit, threshold, keyword_fallback)
        started = time.monotonic()

        collections = await self._collections.list_collections()
        vector_cache: Dict[str, List[float]] = {}
        responses: List[SearchResponse] = []
        skipped: List[str] = []
        first_error: Optional[AppBaseException] = None

        for collection in collections:
            try:
                responses.append(
                    await self._search_collection(
                        collection, clean, limit, threshold, mode, api_key, vector_cache
                    )
                )
            except AppBaseException as exc:
                logger.warning("Skipping collection '%s' in global search: %s", collection.id, exc)
                skipped.append(collection.id)
                first_error = first_error or exc

        if collections and not responses and first_error is not None:
            raise first_error

        results = sorted(
            (r for response in responses for r in response.results),
            key=lambda r: (-r.score, r.match_type != "vector"),
        )[:limit]
        for rank, result in enumerate(results, start=1):
            result.rank = rank

        statuses = {response.status for response in responses}
        if results:
            status = "ok"
        elif "no_matches" in statuses or "ok" in statuses:
            status = "no_matches"
        elif "not_embedded" in statuses:
            status = "not_embedded"
        else:
            status = "empty"

        response = SearchResponse(
            status=status,
            results=results,
            total_count=len(results),
            query_time_ms=int((time.monotonic() - started) * 1000),
            threshold=threshold,
            skipped_collections=skipped,
        )
        await self._record_history(clean, "*", response)
        return response

    # ── Pipeline ───────────────────────────────────────────────────────────────

    @staticmethod
    def _arguments(
        query: str,
        limit: Optional[int],
        threshold: Optional[float],
        keyword_fallback: Optional[str],
    ) -> Tuple[str, int, float, str]:
        clean = (query or "").strip()
        if not clean:
            raise ValidationError("Query must not be empty.")
        limit = limit if limit is not None else settings.search_limit
        if limit <= 0:
            raise ValidationError("limit must be positive.")
        threshold = threshold if threshold is not None else settings.similarity_threshold
        mode = keyword_fallback or settings.keyword_fallback
        if mode not in ("off", "low_recall", "always"):
            raise ValidationError(f"Unknown keyword fallback mode '{mode}'.")
        return clean, limit, threshold, mode

    async def _search_collection(
        self,
        collection: Collection,
        query: str,
        limit: int,
        threshold: float,
        mode: str,
        api_key: Optional[str],
        vector_cache: Dict[str, List[float]],
    ) -> SearchResponse:
        base = {
            "collection_id": collection.id,
            "embedding_model": collection.embedding_model,
            "threshold": threshold,
        }

        documents = await self._collections.get_documents(collection.id)
        if not documents:
            return SearchResponse(status="empty", **base)
        if await self._store.count(collection.id) == 0:
            logger.info(
                "Collection '%s' has %d document(s) but no vectors.",
                collection.id,
                len(documents),
            )
            return SearchResponse(status="not_embedded", **base)

        query_vector = vector_cache.get(collection.embedding_model)
        if query_vector is None:
            query_vector = await self._embed_query(query, collection, api_key)
            vector_cache[collection.embedding_model] = query_vector

        hits = await self._vector_search(collection.id, query_vector, limit, threshold)

        used_threshold = threshold
        if not hits:
            for lower in settings.fallback_thresholds:
                if lower >= threshold:
                    continue
                hits = await self._vector_search(collection.id, query_vector, limit, lower)
                if hits:
                    used_threshold = lower
                    logger.info("No hits at %.2f — fell back to threshold %.2f.", threshold, lower)
                    break

        keyword_hits: List[Tuple[Chunk, float]] = []
        if mode == "always" or (mode == "low_recall" and len(hits) < limit):
            chunks = await self._collections.get_collection_chunks(collection.id)
            keyword_hits = self._keyword_search(query, chunks, hits, used_threshold, limit)

        results = self._merge(hits, keyword_hits, {d.id: d for d in documents}, collection.id, limit)
        base["threshold"] = used_threshold
        return SearchResponse(
            status="ok" if results else "no_matches",
            results=results,
            total_count=len(results),
            **base,
        )

    async def _embed_query(self, query: str, collection: Collection, api_key: Optional[str]) -> List[float]:
        session = None
        if self._recorder is not None:
            session = self._recorder.start_session(
                kind="search",
                model=collection.embedding_model,
                provider=self._embedder.provider,
                options={"collection_id": collection.id},
            )
            self._recorder.record_request(session, inputs=1)

        try:
            vector = await asyncio.wait_for(
                self._embedder.embed_query(query, collection.embedding_model, api_key=api_key),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            error = EmbeddingTimeoutError(f"Query embedding timed out after {self._timeout:.0f}s.")
            if self._recorder is not None:
                self._recorder.record_error(session, error)
                await self._recorder.end_session(session, status="failed")
            raise error from exc
        except AppBaseException as exc:
            if self._recorder is not None:
                self._recorder.record_error(session, exc)
                await self._recorder.end_session(session, status="failed")
            raise

        if self._recorder is not None:
            self._recorder.record_response(session, content=query)
            await self._recorder.end_session(session)
        return vector

    async def _vector_search(
        self, collection_id: str, query_vector: List[float], limit: int, threshold: float
    ) -> List[VectorHit]:
        async def attempt() -> List[VectorHit]:
            try:
                return await asyncio.wait_for(
                    self._store.search(collection_id, query_vector, top_k=limit, score_threshold=threshold),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError as exc:
                raise SearchTimeoutError(
                    f"Vector search in '{collection_id}' timed out after {self._timeout:.0f}s."
                ) from exc

        return await self._retry.call(attempt)

    @staticmethod
    def _keyword_search(
        query: str,
        chunks: List[Chunk],
        hits: List[VectorHit],
        threshold: float,
        limit: int,
    ) -> List[Tuple[Chunk, float]]:
        """
        Case-insensitive term scan over chunk text.

        Scores lie in ``[threshold, weakest vector hit)``: a chunk matching
        every term (or the whole phrase) lands halfway up that band, a
        partial match proportionally lower.
        """
        phrase = query.lower()
        terms = [t for t in _TERM_SPLIT.split(phrase) if t]
        if not terms:
            return []

        ceiling = min((h.score for h in hits), default=1.0)
        floor = max(threshold, -1.0)
        span = max(ceiling - floor, 0.0)

        matches: List[Tuple[Chunk, float]] = []
        for chunk in chunks:
            text = chunk.chunk_text.lower()
            if phrase in text:
                ratio = 1.0
            else:
                ratio = sum(1 for t in terms if t in text) / len(terms)
            if ratio <= 0:
                continue
            matches.append((chunk, floor + span * 0.5 * ratio))

        matches.sort(key=lambda item: -item[1])
        return matches[:limit]

    def _merge(
        self,
        hits: List[VectorHit],
        keyword_hits: List[Tuple[Chunk, float]],
        documents: Dict[str, Document],
        collection_id: str,
        limit: int,
    ) -> List[SearchResult]:
        merged: Dict[HitKey, SearchResult] = {}

        def add(document_id: str, chunk_index: int, text: str, score: float, match_type: str) -> None:
            document = documents.get(document_id)
            if document is None:
                return  # deleted after the vectors were read
            key = (document_id, chunk_index)
            current = merged.get(key)
            if current is not None and current.score >= score:
                return
            merged[key] = SearchResult(
                document_id=document_id,
                document_title=document.title,
                collection_id=collection_id,
                chunk_index=chunk_index,
                chunk_text=text,
                preview=self._preview(text),
                score=round(score, 6),
                match_type=match_type,
                file_name=document.file_name,
                source_type=document.source_type,
            )

        for hit in hits:
            add(hit.document_id, hit.chunk_index, hit.chunk_text, hit.score, "vector")
        for chunk, score in keyword_hits:
            add(chunk.document_id, chunk.chunk_index, chunk.chunk_text, score, "keyword")

        # dict order is insertion order, so equal scores keep vector-search order.
        results = sorted(merged.values(), key=lambda r: (-r.score, r.match_type != "vector"))[:limit]
        for rank, result in enumerate(results, start=1):
            result.rank = rank
        return results

    def _preview(self, text: str) -> str:
        text = " ".join(text.split())
        if len(text) <= self._preview_length:
            return text
        return text[: self._preview_length].rstrip() + "…"

    async def _record_history(self, query: str, collection_id: str, response: SearchResponse) -> None:
        if self._history is None or not settings.enable_search_history:
            return
        entry = SearchHistoryEntry(
            query=query,
            collection_id=collection_id,
            results_count=response.total_count,
            status=response.status,
            execution_ms=response.query_time_ms,
        )
        try:
            await self._history.save(NS_SEARCH_HISTORY, entry.model_dump())
        except StorageError as exc:
            logger.warning("Could not record search history: %s", exc)
