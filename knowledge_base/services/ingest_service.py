"""
knowledge_base/services/ingest_service.py

Orchestrates the document pipeline:

    bytes / text
      └─ DocumentReader.read()           bytes → text
           └─ TextChunker.chunk()        → [TextChunk]   (persisted as pending chunks)
                └─ Embedder.embed_batch() → [[float]]    (batched, optionally concurrent)
                     └─ VectorStore.upsert()            (in chunk order)

Adding a document and embedding it are separate steps, as in the desktop
app: a document can exist without vectors (search then reports it as
``not_embedded``), and a run that was cancelled or partially failed can
be resumed with ``retry_failed_chunks``.

All dependencies are constructor-injected so tests can swap them out
with mocks.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Awaitable, Dict, List, Optional, Tuple, TypeVar

from knowledge_base.chunker.document_reader import DocumentReader
from knowledge_base.chunker.text_chunker import TextChunker, normalize
from knowledge_base.core.config import settings
from knowledge_base.core.exceptions import (
    AppBaseException,
    AuthenticationError,
    EmbeddingTimeoutError,
    NotFoundError,
    PartialFailure,
    ValidationError,
)
from knowledge_base.core.logger import get_logger
from knowledge_base.embedder.base import Embedder
from knowledge_base.embedder.registry import estimate_tokens
from knowledge_base.models.entities import Chunk, Collection, Document
from knowledge_base.models.ingest_models import ChunkDrift, ChunkFailure, EmbeddingReport
from knowledge_base.services.collection_manager import CollectionManager
from knowledge_base.services.session_recorder import SessionHandle, SessionRecorder
from knowledge_base.vector_store.base import TextChunk, VectorRecord, VectorStore
from knowledge_base.vector_store.similarity import cosine_similarity

logger = get_logger(__name__)

T = TypeVar("T")

#: Outcome of one batch: (chunk, vector or None, failure or None) per chunk.
BatchResult = List[Tuple[Chunk, Optional[List[float]], Optional[ChunkFailure]]]


class IngestService:
    """
    Adds documents and generates their embeddings.

    Design choices:
    - **Per-chunk isolation**: a batch that fails is retried chunk by chunk,
      so one bad chunk costs only itself. Failed chunks are recorded and
      the document ends ``partial``.
    - **Fatal errors abort**: an authentication failure or a dimension
      mismatch would fail every remaining chunk the same way, so the run
      stops and the error propagates.
    - **Cancellation between batches**: ``cancel_event`` is checked before
      each window of batches; vectors already upserted stay, the rest of
      the chunks stay ``pending``.
    """

    def __init__(
        self,
        collections: CollectionManager,
        embedder: Embedder,
        store: VectorStore,
        chunker: TextChunker | None = None,
        reader: DocumentReader | None = None,
        recorder: SessionRecorder | None = None,
        batch_size: int | None = None,
        concurrency: int | None = None,
        batch_timeout: float | None = None,
        drift_floor: float | None = None,
    ) -> None:
        """
        Args:
            collections   : Collection / document / chunk bookkeeping.
            embedder      : Embedding backend.
            store         : Vector store.
            chunker       : Defaults to a TextChunker built from settings.
            reader        : Defaults to a DocumentReader built from settings.
            recorder      : Optional usage recorder.
            batch_size    : Chunks per embedding call. Defaults to ``settings.embedding_batch_size``.
            concurrency   : Batches embedded at once. Defaults to ``settings.embedding_concurrency``.
            batch_timeout : Seconds allowed per batch, retries included.
            drift_floor   : Minimum cosine between old and new vectors of unchanged chunks.
        """
        self._collections = collections
        self._embedder = embedder
        self._store = store
        self._chunker: TextChunker = chunker or TextChunker()
        self._reader: DocumentReader = reader or DocumentReader()
        self._recorder = recorder
        self._batch_size = max(1, batch_size or settings.embedding_batch_size)
        self._concurrency = max(1, concurrency or settings.embedding_concurrency)
        self._batch_timeout = batch_timeout or settings.embedding_timeout * max(1, settings.retry_max_attempts)
        self._drift_floor = drift_floor if drift_floor is not None else settings.drift_similarity_floor

    # ── Documents ──────────────────────────────────────────────────────────────

    async def add_document(
        self,
        title: str,
        content: str,
        collection_id: Optional[str] = None,
        source_type: str = "text",
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
        mime_type: Optional[str] = None,
    ) -> Document:
        """
        Store a document and its (pending) chunks.

        The content is normalized before storage so chunk offsets index
        straight into ``Document.content``.

        Raises:
            ValidationError: Blank title or content, or too many chunks.
            NotFoundError  : Unknown ``collection_id``.
        """
        if not title or not title.strip():
            raise ValidationError("Document title must not be empty.")
        text = normalize(content)
        if not text:
            raise ValidationError(f"Document '{title}' has no text content.")

        collection = await self._collections.resolve_collection(collection_id)
        text_chunks = self._chunker.chunk(text)

        document = Document(
            collection_id=collection.id,
            title=title.strip(),
            content=text,
            source_type=source_type,
            file_name=file_name,
            file_size=file_size if file_size is not None else len(text.encode("utf-8")),
            mime_type=mime_type,
            chunk_count=len(text_chunks),
        )
        chunks = self._make_chunks(document.id, collection.id, text_chunks)

        await self._collections.save_document(document)
        await self._collections.replace_chunks(document.id, chunks)

        logger.info(
            "Added document '%s' to '%s' — %d char(s), %d chunk(s).",
            document.title,
            collection.id,
            len(text),
            len(chunks),
        )
        return document

    async def add_file(
        self,
        file_bytes: bytes,
        filename: str,
        mime_type: Optional[str] = None,
        collection_id: Optional[str] = None,
    ) -> Document:
        """
        Decode an uploaded file and store it as a document.

        Raises:
            InvalidFileTypeError: Unsupported file type.
            ValidationError     : Empty, oversized or undecodable content.
        """
        text = self._reader.read(file_bytes, filename, mime_type)
        return await self.add_document(
            title=Path(filename).stem or filename,
            content=text,
            collection_id=collection_id,
            source_type="file",
            file_name=filename,
            file_size=len(file_bytes),
            mime_type=mime_type,
        )

    # ── Embeddings ─────────────────────────────────────────────────────────────

    async def generate_document_embeddings(
        self,
        document_id: str,
        api_key: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> EmbeddingReport:
        """
        (Re)chunk a document and embed every chunk.

        Previous vectors are removed first; their values are kept in memory
        to report drift for chunks whose text did not change.

        Returns:
            EmbeddingReport with status ``embedded``, or ``partial`` when
            the run was cancelled.

        Raises:
            PartialFailure       : Some chunks failed; ``exc.report`` lists them.
            AuthenticationError  : The provider rejected the credential.
            DimensionMismatchError: The model's vectors do not fit the collection.
            NotFoundError        : Unknown document, or the document was deleted
                                   while the job ran.
        """
        async with self._collections.document_lock(document_id):
            document = await self._collections.get_document(document_id)
            collection = await self._collections.get_collection(document.collection_id)

            old_texts = {c.vector_id: c.chunk_text for c in await self._collections.get_chunks(document_id)}
            old_vectors = await self._store.get_vectors(document_id, collection.id)

            chunks = self._make_chunks(document.id, collection.id, self._chunker.chunk(document.content))

            await self._store.delete_by_document(document_id, collection.id)
            await self._collections.replace_chunks(document_id, chunks)

            new_texts = {c.vector_id: c.chunk_text for c in chunks}
            previous = {
                vid: vector
                for vid, vector in old_vectors.items()
                if vid in new_texts and new_texts[vid] == old_texts.get(vid)
            }

            document.chunk_count = len(chunks)
            document.embedded_chunk_count = 0
            document.embedding_status = "pending"
            await self._collections.save_document(document)

        return await self._embed_chunks(document, collection, chunks, chunks, api_key, cancel_event, previous)

    async def retry_failed_chunks(
        self,
        document_id: str,
        api_key: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> EmbeddingReport:
        """
        Embed only the chunks that are not ``embedded`` yet (failed or pending).

        Raises the same errors as ``generate_document_embeddings``.
        """
        document = await self._collections.get_document(document_id)
        collection = await self._collections.get_collection(document.collection_id)
        chunks = await self._collections.get_chunks(document_id)
        targets = [c for c in chunks if c.status != "embedded"]

        logger.info(
            "Retrying %d of %d chunk(s) of document '%s'.",
            len(targets),
            len(chunks),
            document_id,
        )
        return await self._embed_chunks(document, collection, chunks, targets, api_key, cancel_event, {})

    # ── Internals ──────────────────────────────────────────────────────────────

    @staticmethod
    def _make_chunks(document_id: str, collection_id: str, text_chunks: List[TextChunk]) -> List[Chunk]:
        return [
            Chunk(
                document_id=document_id,
                collection_id=collection_id,
                chunk_index=tc.chunk_index,
                chunk_text=tc.text,
                start_offset=tc.start_offset,
                end_offset=tc.end_offset,
            )
            for tc in text_chunks
        ]

    async def _embed_chunks(
        self,
        document: Document,
        collection: Collection,
        chunks: List[Chunk],
        targets: List[Chunk],
        api_key: Optional[str],
        cancel_event: Optional[asyncio.Event],
        previous: Dict[str, List[float]],
    ) -> EmbeddingReport:
        started = time.monotonic()
        failures: List[ChunkFailure] = []
        drift: List[ChunkDrift] = []
        cancelled = False

        session = None
        if self._recorder is not None:
            session = self._recorder.start_session(
                kind="embedding",
                model=collection.embedding_model,
                provider=self._embedder.provider,
                options={"document_id": document.id, "collection_id": collection.id},
            )

        batches = [targets[i:i + self._batch_size] for i in range(0, len(targets), self._batch_size)]
        windows = [batches[i:i + self._concurrency] for i in range(0, len(batches), self._concurrency)]

        try:
            for window in windows:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    logger.info("Embedding of document '%s' cancelled.", document.id)
                    break

                results = await asyncio.gather(
                    *(self._embed_batch(batch, collection, api_key, session) for batch in window),
                    return_exceptions=True,
                )

                # Successful batches are stored in chunk order before any
                # fatal error of the same window is raised.
                fatal: Optional[BaseException] = None
                for result in results:
                    if isinstance(result, BaseException):
                        fatal = fatal or result
                        continue
                    await self._store_batch(result, document, collection, failures, drift, previous)
                if fatal is not None:
                    raise fatal

            report = await self._finish(document, collection, chunks, failures, aborted=False, cancelled=cancelled)

        except (AppBaseException, asyncio.CancelledError) as exc:
            if self._recorder is not None:
                self._recorder.record_error(session, exc, {"document_id": document.id})
                await self._recorder.end_session(session, status="failed")
            await self._finish(document, collection, chunks, failures, aborted=True)
            logger.error("Embedding of document '%s' aborted: %s", document.id, exc)
            raise

        report.drift = drift
        report.cancelled = cancelled
        report.duration_ms = int((time.monotonic() - started) * 1000)

        if self._recorder is not None:
            await self._recorder.end_session(session, status="failed" if failures else "completed")

        if drift:
            logger.warning(
                "Document '%s': %d re-embedded chunk(s) drifted below cosine %.3f.",
                document.id,
                len(drift),
                self._drift_floor,
            )
        logger.info(
            "Embedded document '%s' — %d/%d chunk(s), %d failed, status=%s.",
            document.id,
            report.embedded_chunks,
            report.total_chunks,
            len(failures),
            report.status,
        )

        if failures:
            raise PartialFailure(
                f"{len(failures)} of {report.total_chunks} chunk(s) of document "
                f"'{document.id}' could not be embedded.",
                report,
            )
        return report

    async def _embed_batch(
        self,
        batch: List[Chunk],
        collection: Collection,
        api_key: Optional[str],
        session: Optional[SessionHandle],
    ) -> BatchResult:
        texts = [c.chunk_text for c in batch]
        if self._recorder is not None:
            self._recorder.record_request(session, inputs=len(texts))

        try:
            vectors = await self._call(self._embedder.embed_batch(texts, collection.embedding_model, api_key=api_key))
        except AuthenticationError:
            raise
        except AppBaseException as exc:
            if len(batch) == 1:
                return [(batch[0], None, self._failure(batch[0], exc, session))]
            logger.warning("Batch of %d chunk(s) failed (%s) — retrying one by one.", len(batch), exc)
            return [await self._embed_one(chunk, collection, api_key, session) for chunk in batch]

        if self._recorder is not None:
            self._recorder.record_response(session, token_count=sum(estimate_tokens(t) for t in texts))
        return [(chunk, vector, None) for chunk, vector in zip(batch, vectors)]

    async def _embed_one(
        self,
        chunk: Chunk,
        collection: Collection,
        api_key: Optional[str],
        session: Optional[SessionHandle],
    ) -> Tuple[Chunk, Optional[List[float]], Optional[ChunkFailure]]:
        try:
            vector = await self._call(
                self._embedder.embed_single(chunk.chunk_text, collection.embedding_model, api_key=api_key)
            )
        except AuthenticationError:
            raise
        except AppBaseException as exc:
            return chunk, None, self._failure(chunk, exc, session)
        if self._recorder is not None:
            self._recorder.record_response(session, token_count=estimate_tokens(chunk.chunk_text))
        return chunk, vector, None

    async def _call(self, coro: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(coro, timeout=self._batch_timeout)
        except asyncio.TimeoutError as exc:
            raise EmbeddingTimeoutError(
                f"Embedding did not finish within {self._batch_timeout:.0f}s."
            ) from exc

    def _failure(
        self, chunk: Chunk, exc: BaseException, session: Optional[SessionHandle]
    ) -> ChunkFailure:
        if self._recorder is not None:
            self._recorder.record_error(session, exc, {"chunk_index": chunk.chunk_index})
        return ChunkFailure(
            chunk_index=chunk.chunk_index,
            vector_id=chunk.vector_id,
            error_kind=getattr(exc, "kind", type(exc).__name__),
            message=str(exc),
            retryable=bool(getattr(exc, "retryable", False)),
        )

    async def _store_batch(
        self,
        result: BatchResult,
        document: Document,
        collection: Collection,
        failures: List[ChunkFailure],
        drift: List[ChunkDrift],
        previous: Dict[str, List[float]],
    ) -> None:
        records: List[VectorRecord] = []
        embedded: List[Chunk] = []
        for chunk, vector, failure in result:
            if failure is not None:
                chunk.status = "failed"
                failures.append(failure)
                continue
            records.append(
                VectorRecord(
                    vector_id=chunk.vector_id,
                    embedding=vector,
                    payload={
                        "document_id": chunk.document_id,
                        "collection_id": chunk.collection_id,
                        "chunk_index": chunk.chunk_index,
                        "chunk_text": chunk.chunk_text,
                    },
                )
            )
            embedded.append(chunk)

        async with self._collections.document_lock(document.id):
            if not await self._collections.document_exists(document.id):
                raise NotFoundError(f"Document '{document.id}' was deleted while its embeddings were generated.")
            await self._store.upsert(collection.id, records)

            for chunk, record in zip(embedded, records):
                chunk.status = "embedded"
                old = previous.get(chunk.vector_id)
                if old is not None and len(old) == len(record.embedding):
                    similarity = cosine_similarity(old, record.embedding)
                    if similarity < self._drift_floor:
                        drift.append(ChunkDrift(chunk_index=chunk.chunk_index, similarity=round(similarity, 6)))

            await self._collections.update_chunks([chunk for chunk, _, _ in result])

    async def _finish(
        self,
        document: Document,
        collection: Collection,
        chunks: List[Chunk],
        failures: List[ChunkFailure],
        aborted: bool,
        cancelled: bool = False,
    ) -> EmbeddingReport:
        """
        Derive the document status from its chunks and persist it.

        A document deleted meanwhile is not written back: an aborted run
        skips the save, a finished one raises NotFoundError.
        """
        total = len(chunks)
        embedded = sum(1 for c in chunks if c.status == "embedded")
        pending = sum(1 for c in chunks if c.status == "pending")

        if embedded == total:
            status = "embedded"
        elif cancelled:
            status = "partial" if embedded else "pending"
        elif embedded == 0 and (aborted or not pending):
            status = "failed"
        else:
            status = "partial"

        document.embedded_chunk_count = embedded
        document.embedding_status = status
        async with self._collections.document_lock(document.id):
            if not await self._collections.document_exists(document.id):
                if aborted:
                    logger.info("Document '%s' was deleted; its status is not saved.", document.id)
                else:
                    raise NotFoundError(f"Document '{document.id}' was deleted while its embeddings were generated.")
            else:
                await self._collections.save_document(document)

        return EmbeddingReport(
            document_id=document.id,
            collection_id=document.collection_id,
            embedding_model=collection.embedding_model,
            status=status,
            total_chunks=total,
            embedded_chunks=embedded,
            pending_chunks=pending,
            failed=list(failures),
        )
