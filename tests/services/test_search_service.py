"""
tests/services/test_search_service.py

Tests for SearchService: result statuses, threshold and limit handling,
keyword fallback, dedupe, errors and search history.
"""

import asyncio

import pytest

from knowledge_base.core.constants import NS_SEARCH_HISTORY
from knowledge_base.core.exceptions import (
    NotFoundError,
    ProviderUnavailableError,
    SearchTimeoutError,
    ValidationError,
)
from knowledge_base.core.retry import NO_RETRY
from knowledge_base.services.search_service import SearchService
from knowledge_base.vector_store.base import VectorRecord

CORPUS = {
    "zebra": "zebra",
    "river": "the zebra crossed the river near the old mill",
    "cooking": "a recipe for bread needs flour water salt and yeast",
    "space": "rockets carry satellites into orbit around the planet",
    "music": "the orchestra tuned violins before the evening concert",
}


# ── Helpers ────────────────────────────────────────────────────────────────────

async def ingest_corpus(stack, collection_id=None) -> dict:
    ids = {}
    for title, text in CORPUS.items():
        document = await stack.ingest.add_document(title, text, collection_id)
        await stack.ingest.generate_document_embeddings(document.id)
        ids[title] = document.id
    return ids


# ── Statuses ───────────────────────────────────────────────────────────────────

class TestStatuses:

    @pytest.mark.asyncio
    async def test_empty_collection(self, stack, fake_embedder) -> None:
        response = await stack.search.search("anything")

        assert response.status == "empty"
        assert response.results == []
        assert response.collection_id == "default"
        assert fake_embedder.calls == []

    @pytest.mark.asyncio
    async def test_documents_without_vectors(self, stack, fake_embedder) -> None:
        await stack.ingest.add_document("doc", "never embedded")

        response = await stack.search.search("never embedded")

        assert response.status == "not_embedded"
        assert fake_embedder.calls == []

    @pytest.mark.asyncio
    async def test_nothing_above_threshold(self, stack) -> None:
        await ingest_corpus(stack)

        response = await stack.search.search("nebula", threshold=0.999, keyword_fallback="off")

        assert response.status == "no_matches"
        assert response.total_count == 0

    @pytest.mark.asyncio
    async def test_matching_query(self, stack) -> None:
        ids = await ingest_corpus(stack)

        response = await stack.search.search(CORPUS["space"], threshold=0.2, keyword_fallback="off")

        assert response.status == "ok"
        top = response.results[0]
        assert (top.document_id, top.document_title, top.rank) == (ids["space"], "space", 1)
        assert top.score == pytest.approx(1.0, abs=1e-4)
        assert top.match_type == "vector"
        scores = [r.score for r in response.results]
        assert scores == sorted(scores, reverse=True)
        assert all(s >= 0.2 for s in scores)
        assert response.embedding_model == "fake-model"


# ── Threshold and limit ────────────────────────────────────────────────────────

class TestRanking:

    @pytest.mark.asyncio
    async def test_limit_caps_the_results(self, stack) -> None:
        await ingest_corpus(stack)

        response = await stack.search.search("the zebra", limit=2, threshold=0.0, keyword_fallback="off")

        assert response.total_count == 2
        assert [r.rank for r in response.results] == [1, 2]

    @pytest.mark.asyncio
    async def test_lowering_the_threshold_never_drops_results(self, stack) -> None:
        await ingest_corpus(stack)
        seen = set()
        for threshold in (0.9, 0.6, 0.3, 0.0):
            response = await stack.search.search("zebra river", threshold=threshold, keyword_fallback="off")
            found = {r.document_id for r in response.results}
            assert seen <= found
            seen = found

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, stack) -> None:
        with pytest.raises(ValidationError):
            await stack.search.search("   ")
        with pytest.raises(ValidationError):
            await stack.search.search("q", limit=0)
        with pytest.raises(ValidationError):
            await stack.search.search("q", keyword_fallback="sometimes")

    @pytest.mark.asyncio
    async def test_unknown_collection(self, stack) -> None:
        with pytest.raises(NotFoundError):
            await stack.search.search("q", collection_id="nope")

    @pytest.mark.asyncio
    async def test_fallback_thresholds_are_tried_when_nothing_matches(
        self, stack, settings_dim, monkeypatch
    ) -> None:
        await ingest_corpus(stack)
        monkeypatch.setattr(settings_dim, "fallback_thresholds", [0.0])

        response = await stack.search.search("nebula", threshold=0.999, keyword_fallback="off")

        assert response.status == "ok"
        assert response.threshold == 0.0


# ── Keyword fallback ───────────────────────────────────────────────────────────

class TestKeywordFallback:

    @pytest.mark.asyncio
    async def test_keyword_hits_rank_below_vector_hits(self, stack) -> None:
        ids = await ingest_corpus(stack)

        response = await stack.search.search("zebra", threshold=0.99, keyword_fallback="always")

        by_doc = {r.document_id: r for r in response.results}
        assert by_doc[ids["zebra"]].match_type == "vector"
        assert by_doc[ids["river"]].match_type == "keyword"
        assert by_doc[ids["river"]].score < by_doc[ids["zebra"]].score
        assert by_doc[ids["river"]].score >= 0.99
        assert response.results[0].document_id == ids["zebra"]

    @pytest.mark.asyncio
    async def test_each_chunk_appears_once(self, stack) -> None:
        await ingest_corpus(stack)

        response = await stack.search.search("zebra", threshold=0.0, keyword_fallback="always")

        keys = [(r.document_id, r.chunk_index) for r in response.results]
        assert len(keys) == len(set(keys))

    @pytest.mark.asyncio
    async def test_low_recall_mode_fills_up_to_the_limit(self, stack) -> None:
        ids = await ingest_corpus(stack)

        response = await stack.search.search("orchestra", threshold=0.999, keyword_fallback="low_recall")

        assert [(r.document_id, r.match_type) for r in response.results] == [(ids["music"], "keyword")]

    @pytest.mark.asyncio
    async def test_off_mode_skips_the_scan(self, stack) -> None:
        await ingest_corpus(stack)

        response = await stack.search.search("orchestra", threshold=0.999, keyword_fallback="off")

        assert response.status == "no_matches"


# ── Failures ───────────────────────────────────────────────────────────────────

class TestFailures:

    @pytest.mark.asyncio
    async def test_embedder_failure_propagates(self, stack, fake_embedder) -> None:
        await ingest_corpus(stack)
        fake_embedder.error = ProviderUnavailableError("down")

        with pytest.raises(ProviderUnavailableError):
            await stack.search.search("zebra")

        sessions = await stack.recorder.get_sessions(kind="search")
        assert sessions[0].status == "failed"

    @pytest.mark.asyncio
    async def test_slow_vector_search_times_out(self, stack, fake_embedder) -> None:
        await ingest_corpus(stack)

        class SlowStore:
            def __init__(self, inner):
                self._inner = inner

            def __getattr__(self, name):
                return getattr(self._inner, name)

            async def search(self, *args, **kwargs):
                await asyncio.sleep(1)

        service = SearchService(
            stack.collections, fake_embedder, SlowStore(stack.store), retry_policy=NO_RETRY, timeout=0.05
        )
        with pytest.raises(SearchTimeoutError):
            await service.search("zebra")


# ── History and global search ──────────────────────────────────────────────────

class TestHistoryAndGlobalSearch:

    @pytest.mark.asyncio
    async def test_search_history_is_recorded(self, stack) -> None:
        await ingest_corpus(stack)

        await stack.search.search("zebra", keyword_fallback="off")

        entries = await stack.storage.load(NS_SEARCH_HISTORY)
        assert len(entries) == 1
        assert entries[0]["query"] == "zebra"
        assert entries[0]["collection_id"] == "default"
        assert entries[0]["status"] == "ok"

    @pytest.mark.asyncio
    async def test_search_all_merges_collections(self, stack, fake_embedder) -> None:
        other = await stack.collections.create_collection("other")
        await ingest_corpus(stack)
        document = await stack.ingest.add_document("zebra too", "zebra", other.id)
        await stack.ingest.generate_document_embeddings(document.id)
        fake_embedder.calls.clear()

        response = await stack.search.search_all_collections("zebra", threshold=0.99, keyword_fallback="off")

        assert response.status == "ok"
        assert {r.collection_id for r in response.results} == {"default", other.id}
        assert len(fake_embedder.calls) == 1
        assert response.skipped_collections == []

    @pytest.mark.asyncio
    async def test_search_all_skips_a_broken_collection(self, stack) -> None:
        await ingest_corpus(stack)
        broken = await stack.collections.create_collection("broken", vector_dimensions=4)
        await stack.ingest.add_document("doc", "text", broken.id)
        await stack.store.upsert(
            broken.id,
            [VectorRecord(vector_id="x:0", embedding=[1.0, 0.0, 0.0, 0.0], payload={"document_id": "x", "chunk_index": 0})],
        )

        response = await stack.search.search_all_collections("zebra", threshold=0.99, keyword_fallback="off")

        assert response.status == "ok"
        assert response.skipped_collections == [broken.id]

    @pytest.mark.asyncio
    async def test_search_all_with_nothing_indexed(self, stack) -> None:
        await stack.collections.create_collection("empty")

        response = await stack.search.search_all_collections("zebra")

        assert response.status == "empty"
