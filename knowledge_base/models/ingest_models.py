"""
knowledge_base/models/ingest_models.py

Pydantic DTOs for collections, documents and embedding generation.
File uploads have no request DTO — FastAPI handles multipart/form-data
natively in the controller.
"""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from knowledge_base.models.entities import Document, EmbeddingStatus, SourceType


class CreateCollectionRequest(BaseModel):
    """
    JSON body for POST /collections.

        { "name": "papers", "description": "ML papers" }
        { "name": "papers", "embedding_model": "BAAI/bge-large-en-v1.5", "vector_dimensions": 1024 }
    """

    name: str
    description: str = ""
    embedding_model: Optional[str] = None
    vector_dimensions: Optional[int] = Field(default=None, ge=1)

    @field_validator("name")
    @classmethod
    def name_must_not_be_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Collection name cannot be empty.")
        return v.strip()


class AddDocumentRequest(BaseModel):
    """
    JSON body for POST /documents.

        { "title": "Intro", "content": "...", "collection_id": "default" }
    """

    title: str
    content: str
    collection_id: Optional[str] = None
    source_type: SourceType = "text"
    generate_embeddings: bool = False
    api_key: Optional[str] = None


class GenerateEmbeddingsRequest(BaseModel):
    """Optional JSON body for POST /documents/{id}/embeddings."""

    api_key: Optional[str] = None


class DocumentSummary(BaseModel):
    """A document without its full content, as listed by the API."""

    id: str
    collection_id: str
    title: str
    source_type: SourceType
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    content_length: int
    chunk_count: int
    embedded_chunk_count: int
    embedding_status: EmbeddingStatus
    created_at: int
    updated_at: int

    @classmethod
    def from_document(cls, document: Document) -> "DocumentSummary":
        data = document.model_dump(exclude={"content"})
        return cls(content_length=len(document.content), **data)


class ChunkFailure(BaseModel):
    """One chunk that could not be embedded."""

    chunk_index: int
    vector_id: str
    error_kind: str
    message: str
    retryable: bool


class ChunkDrift(BaseModel):
    """A re-embedded chunk whose vector moved more than the tolerance allows."""

    chunk_index: int
    similarity: float


class EmbeddingReport(BaseModel):
    """
    Outcome of one embedding run over a document.

        {
            "document_id": "…", "status": "partial",
            "total_chunks": 3, "embedded_chunks": 2, "pending_chunks": 0,
            "failed": [{"chunk_index": 2, "error_kind": "rate_limit", …}]
        }
    """

    document_id: str
    collection_id: str
    embedding_model: str
    status: EmbeddingStatus
    total_chunks: int
    embedded_chunks: int = 0
    pending_chunks: int = 0
    failed: List[ChunkFailure] = Field(default_factory=list)
    drift: List[ChunkDrift] = Field(default_factory=list)
    cancelled: bool = False
    duration_ms: int = 0


class AddDocumentResponse(BaseModel):
    document: DocumentSummary
    embedding: Optional[EmbeddingReport] = None


class MessageResponse(BaseModel):
    message: str
