"""
tests/services/test_ingest_service.py

Tests for IngestService: adding documents and generating embeddings,
including partial failures, cancellation, fatal errors and drift.
"""

import asyncio

import pytest

from knowledge_base.core.constants import NS_SESSIONS
from knowledge_base.core.exceptions import (
    AuthenticationError,
    DimensionMismatchError,
    InvalidFileTypeError,
    NotFoundError,
    PartialFailure,
    ValidationError,
)
from knowledge_base.services.ingest_service import IngestService


# ── Helpers ────────────────────────────────────────────────────────────────────

def prose(length: int) -> str:
    text = " ".join(
        f"Sentence number {i:03d} talks about vector search." for i in range(length // 40 + 1)
    )
    return text[:length].rstrip()


async def three_chunk_document(stack):
    document = await stack.ingest.add_document("Intro", prose(2500))
    assert document.chunk_count == 3
    return document


# ── Adding documents ───────────────────────────────────────────────────────────

class TestAddDocument:

    @pytest.mark.asyncio
    async def test_document_and_pending_chunks_are_stored(self, stack) -> None:
        document = await stack.ingest.add_document("Intro", "  Hello\r\nworld.  ")

        stored = await stack.collections.get_document(document.id)
        chunks = await stack.collections.get_chunks(document.id)

        assert stored.content == "Hello\nworld."
        assert stored.collection_id == "default"
        assert stored.embedding_status == "pending"
        assert [(c.chunk_index, c.status) for c in chunks] == [(0, "pending")]

    @pytest.mark.asyncio
    async def test_chunk_offsets_index_into_stored_content(self, stack) -> None:
        document = await three_chunk_document(stack)

        for chunk in await stack.collections.get_chunks(document.id):
            assert document.content[chunk.start_offset:chunk.end_offset] == chunk.chunk_text

    @pytest.mark.asyncio
    @pytest.mark.parametrize("title, content", [("", "text"), ("   ", "text"), ("title", " \n\t ")])
    async def test_blank_title_or_content_is_rejected(self, stack, title, content) -> None:
        with pytest.raises(ValidationError):
            await stack.ingest.add_document(title, content)

    @pytest.mark.asyncio
    async def test_unknown_collection(self, stack) -> None:
        with pytest.raises(NotFoundError):
            await stack.ingest.add_document("t", "text", collection_id="nope")

    @pytest.mark.asyncio
    async def test_add_file_uses_the_file_stem_as_title(self, stack) -> None:
        document = await stack.ingest.add_file(b"Plain text body.", "notes.final.txt", "text/plain")

        assert document.title == "notes.final"
        assert document.source_type == "file"
        assert document.file_name == "notes.final.txt"
        assert document.file_size == 16

    @pytest.mark.asyncio
    async def test_add_file_rejects_unsupported_types(self, stack) -> None:
        with pytest.raises(InvalidFileTypeError):
            await stack.ingest.add_file(b"MZ\x90\x00", "tool.exe", "application/octet-stream")


# ── Generating embeddings ──────────────────────────────────────────────────────

class TestGenerateEmbeddings:

    @pytest.mark.asyncio
    async def test_intro_file_in_a_768_dimension_default_collection(
        self, stack, settings_dim, embedder_factory
    ) -> None:
        """A 2500-character file yields 3 chunks and 3 new vectors."""
        settings_dim.embedding_dimensions = 768
        embedder = embedder_factory(dimensions=768)
        ingest = IngestService(stack.collections, embedder, stack.store)

        before = (await stack.collections.get_system_status())["total_vectors"]
        document = await ingest.add_file(prose(2500).encode("utf-8"), "Intro.txt", "text/plain")
        report = await ingest.generate_document_embeddings(document.id)
        after = (await stack.collections.get_system_status())["total_vectors"]

        assert (await stack.collections.get_collection("default")).vector_dimensions == 768
        assert document.title == "Intro"
        assert report.status == "embedded"
        assert report.total_chunks == report.embedded_chunks == 3
        assert after - before == 3

    @pytest.mark.asyncio
    async def test_chunks_are_embedded_in_batches(self, stack, fake_embedder) -> None:
        document = await three_chunk_document(stack)

        await stack.ingest.generate_document_embeddings(document.id)

        assert [len(call) for call in fake_embedder.calls] == [2, 1]
        stored = await stack.collections.get_document(document.id)
        assert stored.embedding_status == "embedded"
        assert stored.embedded_chunk_count == 3
        assert {c.status for c in await stack.collections.get_chunks(document.id)} == {"embedded"}

    @pytest.mark.asyncio
    async def test_regenerating_replaces_vectors(self, stack) -> None:
        document = await three_chunk_document(stack)

        await stack.ingest.generate_document_embeddings(document.id)
        report = await stack.ingest.generate_document_embeddings(document.id)

        assert await stack.store.count("default") == 3
        assert report.drift == []

    @pytest.mark.asyncio
    async def test_drifted_model_is_reported(self, stack, fake_embedder) -> None:
        document = await three_chunk_document(stack)
        await stack.ingest.generate_document_embeddings(document.id)

        fake_embedder.skew = 100.0
        report = await stack.ingest.generate_document_embeddings(document.id)

        assert report.status == "embedded"
        assert [d.chunk_index for d in report.drift] == [0, 1, 2]
        assert all(d.similarity < 0.999 for d in report.drift)

    @pytest.mark.asyncio
    async def test_session_is_recorded(self, stack) -> None:
        document = await three_chunk_document(stack)
        await stack.ingest.generate_document_embeddings(document.id)

        sessions = await stack.recorder.get_sessions(kind="embedding")

        assert len(sessions) == 1
        assert sessions[0].status == "completed"
        assert sessions[0].request_count == 2
        assert len(await stack.storage.load(NS_SESSIONS)) == 1

    @pytest.mark.asyncio
    async def test_unknown_document(self, stack) -> None:
        with pytest.raises(NotFoundError):
            await stack.ingest.generate_document_embeddings("missing")


# ── Failures ───────────────────────────────────────────────────────────────────

class TestFailures:

    @pytest.mark.asyncio
    async def test_one_bad_chunk_leaves_the_document_partial(self, stack, fake_embedder) -> None:
        document = await three_chunk_document(stack)
        bad = (await stack.collections.get_chunks(document.id))[2]
        fake_embedder.poisoned.add(bad.chunk_text)

        with pytest.raises(PartialFailure) as info:
            await stack.ingest.generate_document_embeddings(document.id)

        report = info.value.report
        assert report.status == "partial"
        assert report.embedded_chunks == 2
        assert [(f.chunk_index, f.error_kind, f.retryable) for f in report.failed] == [(2, "network", True)]
        assert await stack.store.count("default") == 2
        assert (await stack.collections.get_document(document.id)).embedding_status == "partial"

    @pytest.mark.asyncio
    async def test_failed_batch_is_retried_chunk_by_chunk(self, stack, fake_embedder) -> None:
        document = await three_chunk_document(stack)
        bad = (await stack.collections.get_chunks(document.id))[0]
        fake_embedder.poisoned.add(bad.chunk_text)

        with pytest.raises(PartialFailure) as info:
            await stack.ingest.generate_document_embeddings(document.id)

        assert [f.chunk_index for f in info.value.report.failed] == [0]
        assert info.value.report.embedded_chunks == 2

    @pytest.mark.asyncio
    async def test_retry_failed_chunks_completes_the_document(self, stack, fake_embedder) -> None:
        document = await three_chunk_document(stack)
        bad = (await stack.collections.get_chunks(document.id))[1]
        fake_embedder.poisoned.add(bad.chunk_text)
        with pytest.raises(PartialFailure):
            await stack.ingest.generate_document_embeddings(document.id)

        fake_embedder.poisoned.clear()
        fake_embedder.calls.clear()
        report = await stack.ingest.retry_failed_chunks(document.id)

        assert report.status == "embedded"
        assert fake_embedder.calls == [[bad.chunk_text]]
        assert await stack.store.count("default") == 3

    @pytest.mark.asyncio
    async def test_every_chunk_failing_marks_the_document_failed(self, stack, fake_embedder) -> None:
        document = await stack.ingest.add_document("tiny", "Only one chunk.")
        fake_embedder.poisoned.add("Only one chunk.")

        with pytest.raises(PartialFailure) as info:
            await stack.ingest.generate_document_embeddings(document.id)

        assert info.value.report.status == "failed"
        assert (await stack.collections.get_document(document.id)).embedding_status == "failed"

    @pytest.mark.asyncio
    async def test_authentication_error_aborts_the_run(self, stack, fake_embedder) -> None:
        document = await three_chunk_document(stack)
        fake_embedder.error = AuthenticationError("invalid key", 401)

        with pytest.raises(AuthenticationError):
            await stack.ingest.generate_document_embeddings(document.id)

        assert len(fake_embedder.calls) == 1
        assert (await stack.collections.get_document(document.id)).embedding_status == "failed"
        sessions = await stack.recorder.get_sessions(kind="embedding")
        assert sessions[0].status == "failed"

    @pytest.mark.asyncio
    async def test_dimension_mismatch_aborts_the_run(self, stack, embedder_factory) -> None:
        ingest = IngestService(stack.collections, embedder_factory(dimensions=4), stack.store)
        document = await ingest.add_document("doc", "Some text to embed.")

        with pytest.raises(DimensionMismatchError):
            await ingest.generate_document_embeddings(document.id)

        assert await stack.store.count("default") == 0
        assert (await stack.collections.get_document(document.id)).embedding_status == "failed"

    @pytest.mark.asyncio
    async def test_slow_embedder_times_out_per_chunk(self, stack, embedder_factory) -> None:
        class Slow(embedder_factory):
            async def embed_batch(self, texts, model=None, api_key=None):
                await asyncio.sleep(1)
                return await super().embed_batch(texts, model, api_key)

        ingest = IngestService(stack.collections, Slow(), stack.store, batch_timeout=0.05)
        document = await ingest.add_document("doc", "Some text to embed.")

        with pytest.raises(PartialFailure) as info:
            await ingest.generate_document_embeddings(document.id)

        assert info.value.report.failed[0].error_kind == "timeout"


# ── Cancellation ───────────────────────────────────────────────────────────────

class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_before_start_leaves_the_document_pending(self, stack, fake_embedder) -> None:
        document = await three_chunk_document(stack)
        cancel = asyncio.Event()
        cancel.set()

        report = await stack.ingest.generate_document_embeddings(document.id, cancel_event=cancel)

        assert report.cancelled is True
        assert report.status == "pending"
        assert report.pending_chunks == 3
        assert fake_embedder.calls == []

    @pytest.mark.asyncio
    async def test_cancel_between_batches_keeps_finished_work(self, stack, fake_embedder) -> None:
        document = await three_chunk_document(stack)
        cancel = asyncio.Event()
        fake_embedder.on_call = lambda texts: cancel.set()

        report = await stack.ingest.generate_document_embeddings(document.id, cancel_event=cancel)

        assert report.cancelled is True
        assert report.status == "partial"
        assert (report.embedded_chunks, report.pending_chunks) == (2, 1)
        assert await stack.store.count("default") == 2

    @pytest.mark.asyncio
    async def test_cancelled_run_can_be_resumed(self, stack, fake_embedder) -> None:
        document = await three_chunk_document(stack)
        cancel = asyncio.Event()
        fake_embedder.on_call = lambda texts: cancel.set()
        await stack.ingest.generate_document_embeddings(document.id, cancel_event=cancel)

        fake_embedder.on_call = None
        report = await stack.ingest.retry_failed_chunks(document.id)

        assert report.status == "embedded"
        assert await stack.store.count("default") == 3


# ── Deletion during a run ──────────────────────────────────────────────────────

class TestDeleteDuringEmbedding:

    @pytest.mark.asyncio
    async def test_deleted_document_is_not_written_back(self, stack, embedder_factory) -> None:
        """A delete that lands while a batch is being embedded wins over the job."""

        class Gated(embedder_factory):
            def __init__(self) -> None:
                super().__init__()
                self.started = asyncio.Event()
                self.release = asyncio.Event()

            async def embed_batch(self, texts, model=None, api_key=None):
                self.started.set()
                await self.release.wait()
                return await super().embed_batch(texts, model, api_key)

        keeper = await stack.ingest.add_document("Other", "Vector search over other notes.")
        await stack.ingest.generate_document_embeddings(keeper.id)

        gated = Gated()
        ingest = IngestService(stack.collections, gated, stack.store, batch_size=2)
        document = await ingest.add_document("Intro", prose(2500))
        job = asyncio.create_task(ingest.generate_document_embeddings(document.id))

        await gated.started.wait()
        await stack.collections.delete_document(document.id)
        gated.release.set()

        with pytest.raises(NotFoundError):
            await job

        assert not await stack.collections.document_exists(document.id)
        assert await stack.collections.get_chunks(document.id) == []
        assert await stack.store.count("default") == 1

        response = await stack.search.search("vector search", threshold=0.0)
        assert response.status == "ok"
        assert {r.document_id for r in response.results} == {keeper.id}
