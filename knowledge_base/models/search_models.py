"""
knowledge_base/models/search_models.py

Pydantic DTOs for the search flow — request body and response.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

KeywordFallback = Literal["off", "low_recall", "always"]
SearchStatus = Literal["ok", "empty", "no_matches", "not_embedded"]


class SearchRequest(BaseModel):
    """
    JSON body for POST /search.

        { "query": "introduction" }
        { "query": "introduction", "collection_id": "default", "limit": 5, "threshold": 0.3 }
    """

    query: str
    collection_id: Optional[str] = None
    limit: Optional[int] = Field(
        default=None,
        ge=1,
        le=100,
        description="Max results to return. Defaults to the server-side SEARCH_LIMIT setting.",
    )
    threshold: Optional[float] = Field(
        default=None,
        ge=-1.0,
        le=1.0,
        description="Minimum cosine similarity. Defaults to SIMILARITY_THRESHOLD.",
    )
    keyword_fallback: Optional[KeywordFallback] = None
    all_collections: bool = False
    api_key: Optional[str] = None

    @field_validator("query")
    @classmethod
    def query_must_not_be_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Query cannot be empty.")
        return v.strip()


class SearchResult(BaseModel):
    """
    A single retrieved chunk.

        {
            "document_id": "…", "document_title": "Intro", "chunk_index": 0,
            "score": 0.82, "rank": 1, "match_type": "vector",
            "preview": "Vector embeddings represent text…"
        }
    """

    document_id: str
    document_title: str
    collection_id: str
    chunk_index: int
    chunk_text: str
    preview: str
    score: float
    rank: int = 0
    match_type: Literal["vector", "keyword"] = "vector"
    file_name: Optional[str] = None
    source_type: Optional[str] = None


class SearchResponse(BaseModel):
    """
    Response for POST /search.

    ``status`` keeps the non-error outcomes apart: ``empty`` (no documents),
    ``not_embedded`` (documents without vectors), ``no_matches`` (nothing
    above the threshold) and ``ok``.
    """

    status: SearchStatus
    results: List[SearchResult] = Field(default_factory=list)
    total_count: int = 0
    query_time_ms: int = 0
    collection_id: Optional[str] = None
    embedding_model: Optional[str] = None
    threshold: float = 0.0
    skipped_collections: List[str] = Field(default_factory=list)


class SystemStatus(BaseModel):
    total_documents: int
    total_vectors: int
    collections_count: int
    health: Dict[str, bool]
    storage: Dict[str, Any] = Field(default_factory=dict)
