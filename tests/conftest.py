"""
tests/conftest.py

Shared pytest fixtures available to all test modules.

Fixtures defined here are auto-discovered by pytest — no import needed.
Storage and vector-store fixtures live under tmp_path so tests never
touch ./data and are fully isolated from each other.
"""

from __future__ import annotations

import hashlib
import io
import math
import re
from typing import Callable, List, Optional, Set

import pytest
from fastapi.testclient import TestClient

from knowledge_base.core.exceptions import ProviderUnavailableError
from knowledge_base.core.retry import NO_RETRY
from knowledge_base.embedder.base import Embedder
from knowledge_base.main import app
from knowledge_base.services.collection_manager import CollectionManager
from knowledge_base.services.container import Services, build_services, get_services
from knowledge_base.services.ingest_service import IngestService
from knowledge_base.services.search_service import SearchService
from knowledge_base.services.session_recorder import SessionRecorder
from knowledge_base.storage.json_backend import JsonFileBackend
from knowledge_base.storage.sqlite_backend import SQLiteBackend
from knowledge_base.vector_store.chroma_store import ChromaVectorStore

DIM = 8  # tiny embedding dimension — fast for tests
_WORD = re.compile(r"\w+")


class FakeEmbedder(Embedder):
    """
    Deterministic bag-of-words embedder.

    Every word is hashed into one of ``dimensions`` buckets and the
    result is L2-normalised, so texts sharing words score high and the
    same text always yields the same vector.
    """

    provider = "fake"

    def __init__(self, dimensions: int = DIM, model: str = "fake-model") -> None:
        self.dimensions = dimensions
        self._model = model
        self.calls: List[List[str]] = []
        #: Raised for every call when set.
        self.error: Optional[Exception] = None
        #: Calls containing one of these texts raise ``poison_error``.
        self.poisoned: Set[str] = set()
        self.poison_error: Exception = ProviderUnavailableError("provider down")
        #: Invoked with the texts of every call before embedding.
        self.on_call: Optional[Callable[[List[str]], None]] = None
        #: Added to the first component, to simulate a model that drifted.
        self.skew: float = 0.0

    @property
    def model_name(self) -> str:
        return self._model

    def vector(self, text: str) -> List[float]:
        vec = [0.0] * self.dimensions
        for word in _WORD.findall(text.lower()):
            bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % self.dimensions
            vec[bucket] += 1.0
        if not any(vec):
            vec[0] = 1.0
        vec[0] += self.skew
        norm = math.sqrt(sum(x * x for x in vec))
        return [x / norm for x in vec]

    async def embed_batch(
        self, texts: List[str], model: Optional[str] = None, api_key: Optional[str] = None
    ) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.on_call is not None:
            self.on_call(texts)
        if self.error is not None:
            raise self.error
        if self.poisoned.intersection(texts):
            raise self.poison_error
        return [self.vector(t) for t in texts]


# ── Building blocks ────────────────────────────────────────────────────────────

@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def embedder_factory():
    """The FakeEmbedder class, for tests that need other dimensions or models."""
    return FakeEmbedder


@pytest.fixture
def json_storage(tmp_path) -> JsonFileBackend:
    return JsonFileBackend(str(tmp_path / "store.json"))


@pytest.fixture
def sqlite_storage(tmp_path) -> SQLiteBackend:
    return SQLiteBackend(str(tmp_path / "store.db"))


@pytest.fixture
def chroma(tmp_path) -> ChromaVectorStore:
    return ChromaVectorStore(persist_dir=str(tmp_path / "chroma"), collection_prefix="t_")


@pytest.fixture
def settings_dim(monkeypatch):
    """Make the default collection use the fake embedder's dimensionality."""
    from knowledge_base.core.config import settings

    monkeypatch.setattr(settings, "embedding_dimensions", DIM)
    monkeypatch.setattr(settings, "embedding_model", "fake-model")
    return settings


@pytest.fixture
def stack(json_storage, chroma, fake_embedder, settings_dim) -> Services:
    """
    A fully wired service graph on temporary storage with the fake embedder.
    Vector searches are never retried so timeouts surface immediately.
    """
    collections = CollectionManager(json_storage, chroma)
    recorder = SessionRecorder(json_storage, enabled=True)
    return Services(
        storage=json_storage,
        store=chroma,
        embedder=fake_embedder,
        collections=collections,
        recorder=recorder,
        ingest=IngestService(collections, fake_embedder, chroma, recorder=recorder, batch_size=2),
        search=SearchService(
            collections,
            fake_embedder,
            chroma,
            history=json_storage,
            recorder=recorder,
            retry_policy=NO_RETRY,
        ),
    )


# ── Core client fixture ────────────────────────────────────────────────────────

@pytest.fixture
def client(tmp_path, settings_dim) -> TestClient:
    """
    A synchronous TestClient wrapping the FastAPI app, with the service
    graph replaced by one on temporary storage.

    The lifespan context (startup/shutdown events) is entered automatically.
    """
    services = build_services(
        JsonFileBackend(str(tmp_path / "api_store.json")),
        ChromaVectorStore(persist_dir=str(tmp_path / "api_chroma"), collection_prefix="api_"),
        FakeEmbedder(),
    )
    app.dependency_overrides[get_services] = lambda: services
    with TestClient(app, raise_server_exceptions=False) as c:
        c.services = services
        yield c
    app.dependency_overrides.clear()


# ── Sample file fixtures ───────────────────────────────────────────────────────

@pytest.fixture
def sample_txt_file() -> tuple:
    """
    A (field_name, (filename, file_obj, content_type)) tuple ready for
    use with TestClient's `files=` parameter.
    """
    body = b"Vector embeddings represent text as points in space. Similar texts land close together."
    return ("file", ("notes.txt", io.BytesIO(body), "text/plain"))


@pytest.fixture
def sample_exe_file() -> tuple:
    """An unsupported upload tuple for negative-case tests."""
    return ("file", ("tool.exe", io.BytesIO(b"MZ\x90\x00"), "application/octet-stream"))
