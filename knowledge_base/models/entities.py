"""
knowledge_base/models/entities.py

Persisted domain records.

Every entity is a pydantic model so it can be dumped to a plain dict for
the persistence adapter and validated back on load. Timestamps are
epoch milliseconds, copied verbatim by migrations.
"""

from __future__ import annotations

import time
import uuid
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from knowledge_base.core.constants import VECTOR_ID_SEPARATOR


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


SourceType = Literal["file", "url", "text", "conversation"]
EmbeddingStatus = Literal["pending", "partial", "embedded", "failed"]
ChunkStatus = Literal["pending", "embedded", "failed"]
SessionStatus = Literal["active", "completed", "failed"]


class Collection(BaseModel):
    """Named, model-bound grouping of documents and their vectors."""

    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    embedding_model: str
    vector_dimensions: int = Field(gt=0)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


class Document(BaseModel):
    id: str = Field(default_factory=new_id)
    collection_id: str
    title: str
    content: str
    source_type: SourceType = "text"
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    chunk_count: int = 0
    embedded_chunk_count: int = 0
    embedding_status: EmbeddingStatus = "pending"
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


def make_vector_id(document_id: str, chunk_index: int) -> str:
    return f"{document_id}{VECTOR_ID_SEPARATOR}{chunk_index}"


class Chunk(BaseModel):
    """
    Chunk metadata as persisted by the storage backend.

    The embedding itself lives in the vector store under ``vector_id``;
    the record id equals the vector id so re-chunking overwrites in place.
    """

    document_id: str
    collection_id: str
    chunk_index: int = Field(ge=0)
    chunk_text: str
    start_offset: int = 0
    end_offset: int = 0
    status: ChunkStatus = "pending"
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)

    @property
    def vector_id(self) -> str:
        return make_vector_id(self.document_id, self.chunk_index)

    @property
    def id(self) -> str:
        return self.vector_id

    def to_record(self) -> Dict[str, Any]:
        record = self.model_dump()
        record["id"] = self.id
        return record


class Setting(BaseModel):
    key: str
    value: Any = None
    updated_at: int = Field(default_factory=now_ms)

    def to_record(self) -> Dict[str, Any]:
        return {"id": self.key, **self.model_dump()}


class HistoryItem(BaseModel):
    """A conversation record; fields beyond the id are opaque to storage."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=new_id)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


class SearchHistoryEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    query: str
    collection_id: str
    results_count: int
    status: str
    execution_ms: int
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


class SessionEvent(BaseModel):
    """Request / Response / Error event nested in an ApiSession."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=new_id)
    type: Literal["request", "response", "error"]
    timestamp: int = Field(default_factory=now_ms)


class ApiSession(BaseModel):
    id: str = Field(default_factory=new_id)
    kind: str = "chat"
    model: str
    provider: str
    conversation_id: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)
    start_time: int = Field(default_factory=now_ms)
    end_time: Optional[int] = None
    duration_ms: int = 0
    request_count: int = 0
    token_count: int = 0
    status: SessionStatus = "active"
    events: List[SessionEvent] = Field(default_factory=list)
    updated_at: int = Field(default_factory=now_ms)

    @property
    def error_count(self) -> int:
        return sum(1 for e in self.events if e.type == "error")
