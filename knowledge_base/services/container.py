"""
knowledge_base/services/container.py

Builds the production object graph once, from settings.

Controllers receive it through ``Depends(get_services)``; tests replace
it with ``app.dependency_overrides[get_services]``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict

from knowledge_base.core.config import settings
from knowledge_base.embedder.base import Embedder
from knowledge_base.embedder.factory import create_embedder
from knowledge_base.services.collection_manager import CollectionManager
from knowledge_base.services.ingest_service import IngestService
from knowledge_base.services.search_service import SearchService
from knowledge_base.services.session_recorder import SessionRecorder
from knowledge_base.storage.base import StorageBackend
from knowledge_base.storage.factory import create_backend
from knowledge_base.vector_store.base import VectorStore
from knowledge_base.vector_store.chroma_store import ChromaVectorStore


@dataclass
class Services:
    storage: StorageBackend
    store: VectorStore
    embedder: Embedder
    collections: CollectionManager
    recorder: SessionRecorder
    ingest: IngestService
    search: SearchService
    #: Cancellation flags of running embedding jobs, keyed by document id.
    jobs: Dict[str, asyncio.Event] = field(default_factory=dict)


def build_services(storage: StorageBackend, store: VectorStore, embedder: Embedder) -> Services:
    collections = CollectionManager(storage, store)
    recorder = SessionRecorder(storage)
    return Services(
        storage=storage,
        store=store,
        embedder=embedder,
        collections=collections,
        recorder=recorder,
        ingest=IngestService(collections, embedder, store, recorder=recorder),
        search=SearchService(
            collections,
            embedder,
            store,
            history=storage if settings.enable_search_history else None,
            recorder=recorder,
        ),
    )


@lru_cache(maxsize=1)
def get_services() -> Services:
    return build_services(create_backend(), ChromaVectorStore(), create_embedder())
