"""
tests/services/test_session_recorder.py

Tests for SessionRecorder: caller-owned handles, statistics and pruning.
"""

import asyncio

import pytest

from knowledge_base.core.constants import NS_SESSIONS, SESSIONS_ENABLED_SETTING_KEY
from knowledge_base.core.exceptions import RateLimitError
from knowledge_base.models.entities import now_ms
from knowledge_base.services.session_recorder import SessionRecorder

DAY_MS = 24 * 60 * 60 * 1000
JAN_1 = 1704067200000  # 2024-01-01T00:00:00Z
JAN_2 = JAN_1 + DAY_MS


@pytest.fixture
def recorder(json_storage) -> SessionRecorder:
    return SessionRecorder(json_storage, max_sessions=100, max_age_days=100_000, enabled=True)


async def finished(
    recorder, provider="siliconflow", model="bge-m3", start=None, requests=1, tokens=10, errors=0
):
    handle = recorder.start_session("chat", model, provider)
    if start is not None:
        handle.session.start_time = start
    for _ in range(requests):
        recorder.record_request(handle)
    recorder.record_response(handle, token_count=tokens)
    for _ in range(errors):
        recorder.record_error(handle, RateLimitError("slow down"), {"attempt": 1})
    return await recorder.end_session(handle)


# ── Recording ──────────────────────────────────────────────────────────────────

class TestRecording:

    @pytest.mark.asyncio
    async def test_session_lifecycle(self, recorder) -> None:
        handle = recorder.start_session("chat", "bge-m3", "siliconflow", conversation_id="c1")
        recorder.record_request(handle, prompt_length=12)
        recorder.record_response(handle, content="hello world")

        session = await recorder.end_session(handle)

        assert session.status == "completed"
        assert session.request_count == 1
        assert session.token_count == 3
        assert session.end_time >= session.start_time
        assert [e.type for e in session.events] == ["request", "response"]

    @pytest.mark.asyncio
    async def test_errors_mark_the_session_failed(self, recorder) -> None:
        session = await finished(recorder, errors=1)

        assert session.status == "failed"
        error = session.events[-1]
        assert error.error_kind == "rate_limit"
        assert error.context == {"attempt": 1}

    @pytest.mark.asyncio
    async def test_concurrent_sessions_do_not_mix(self, recorder) -> None:
        """Each caller owns its handle, so interleaved calls stay apart."""
        async def run(model: str, requests: int):
            handle = recorder.start_session("embedding", model, "p")
            for _ in range(requests):
                recorder.record_request(handle)
                await asyncio.sleep(0)
            return await recorder.end_session(handle)

        a, b = await asyncio.gather(run("model-a", 3), run("model-b", 5))

        assert (a.model, a.request_count) == ("model-a", 3)
        assert (b.model, b.request_count) == ("model-b", 5)
        assert len(await recorder.get_sessions()) == 2

    @pytest.mark.asyncio
    async def test_disabled_recorder_returns_no_handle(self, json_storage) -> None:
        recorder = SessionRecorder(json_storage, enabled=False)

        handle = recorder.start_session("chat", "m", "p")
        recorder.record_request(handle)

        assert handle is None
        assert await recorder.end_session(handle) is None
        assert await json_storage.load(NS_SESSIONS) == []

    @pytest.mark.asyncio
    async def test_set_enabled_is_persisted(self, json_storage) -> None:
        recorder = SessionRecorder(json_storage, enabled=True)
        await recorder.set_enabled(False)

        reloaded = SessionRecorder(json_storage, enabled=True)
        await reloaded.load()

        assert await json_storage.load_setting(SESSIONS_ENABLED_SETTING_KEY) is False
        assert reloaded.enabled is False


# ── Queries ────────────────────────────────────────────────────────────────────

class TestQueries:

    @pytest.mark.asyncio
    async def test_sessions_are_listed_newest_first_and_filterable(self, recorder) -> None:
        older = await finished(recorder, provider="a", start=JAN_1)
        newer = await finished(recorder, provider="b", start=JAN_2)

        assert [s.id for s in await recorder.get_sessions()] == [newer.id, older.id]
        assert [s.id for s in await recorder.get_sessions(provider="a")] == [older.id]
        assert [s.id for s in await recorder.get_sessions(start_date=JAN_2)] == [newer.id]
        assert [s.id for s in await recorder.get_sessions(end_date=JAN_1)] == [older.id]

    @pytest.mark.asyncio
    async def test_statistics_by_provider_model_and_day(self, recorder) -> None:
        await finished(recorder, provider="siliconflow", model="bge-m3", start=JAN_1, requests=2, tokens=100)
        await finished(recorder, provider="siliconflow", model="bge-large", start=JAN_1, requests=1, tokens=50, errors=1)
        await finished(recorder, provider="openai", model="bge-m3", start=JAN_2, requests=1, tokens=30)

        stats = await recorder.get_statistics()

        assert stats["total_sessions"] == 3
        assert stats["total_requests"] == 4
        assert stats["total_tokens"] == 180
        assert stats["error_count"] == 1
        assert stats["error_rate"] == 0.25
        assert stats["average_tokens_per_session"] == 60
        assert stats["by_provider"]["siliconflow"]["count"] == 2
        assert stats["by_provider"]["siliconflow"]["error_rate"] == pytest.approx(1 / 3, abs=1e-4)
        assert stats["by_model"]["bge-m3"]["tokens"] == 130
        assert stats["by_date"]["2024-01-01"]["count"] == 2
        assert stats["by_date"]["2024-01-02"]["requests"] == 1

    @pytest.mark.asyncio
    async def test_statistics_when_empty(self, recorder) -> None:
        stats = await recorder.get_statistics()
        assert stats["total_sessions"] == 0
        assert stats["average_duration_ms"] == 0
        assert stats["by_provider"] == {}


# ── Retention ──────────────────────────────────────────────────────────────────

class TestRetention:

    @pytest.mark.asyncio
    async def test_count_limit_keeps_the_newest(self, json_storage) -> None:
        recorder = SessionRecorder(json_storage, max_sessions=2, max_age_days=30, enabled=True)
        now = now_ms()
        for offset in (3, 2, 1):
            await finished(recorder, start=now - offset * 1000)

        sessions = await recorder.get_sessions()

        assert len(sessions) == 2
        assert len(await json_storage.load(NS_SESSIONS)) == 2
        assert sessions[0].start_time == now - 1000

    @pytest.mark.asyncio
    async def test_age_limit_drops_old_sessions(self, json_storage) -> None:
        recorder = SessionRecorder(json_storage, max_sessions=100, max_age_days=30, enabled=True)
        await finished(recorder, start=now_ms() - 31 * DAY_MS)
        recent = await finished(recorder)

        assert [s.id for s in await recorder.get_sessions()] == [recent.id]
        assert [r["id"] for r in await json_storage.load(NS_SESSIONS)] == [recent.id]

    @pytest.mark.asyncio
    async def test_load_prunes_persisted_sessions(self, json_storage) -> None:
        writer = SessionRecorder(json_storage, max_sessions=10, max_age_days=30, enabled=True)
        for _ in range(4):
            await finished(writer)

        reader = SessionRecorder(json_storage, max_sessions=2, max_age_days=30, enabled=True)

        assert await reader.load() == 2
        assert len(await json_storage.load(NS_SESSIONS)) == 2

    @pytest.mark.asyncio
    async def test_clear(self, recorder, json_storage) -> None:
        await finished(recorder)
        await recorder.clear()

        assert await recorder.get_sessions() == []
        assert await json_storage.load(NS_SESSIONS) == []
