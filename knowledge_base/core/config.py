"""
knowledge_base/core/config.py

Centralised configuration loaded from environment variables.
Use a .env file locally; the desktop shell injects these at launch.
"""

from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ── Application ────────────────────────────────────────────────────────────
    app_name: str = "Knowledge Base Service"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"
    log_file: str = ""              # empty: log to stdout only

    # ── Persistence adapter ────────────────────────────────────────────────────
    storage_backend: Literal["json", "sqlite"] = "sqlite"
    json_store_path: str = "./data/knowledge_store.json"
    sqlite_path: str = "./data/knowledge.db"

    # ── Vector store (ChromaDB) ────────────────────────────────────────────────
    chroma_persist_dir: str = "./data/chroma"
    chroma_collection_prefix: str = "kb_"

    # ── Collections ────────────────────────────────────────────────────────────
    default_collection_id: str = "default"
    default_collection_name: str = "default"

    # ── Embedder ───────────────────────────────────────────────────────────────
    embedding_backend: Literal["api", "local"] = "api"
    embedding_model: str = "BAAI/bge-m3"
    embedding_dimensions: int = 1024
    embedding_api_base: str = "https://api.siliconflow.cn/v1"
    embedding_api_key: str = ""
    embedding_provider: str = "siliconflow"
    embedding_batch_size: int = 32
    embedding_concurrency: int = 1          # batches embedded at once
    embedding_timeout: float = 60.0         # seconds per embedding call
    drift_similarity_floor: float = 0.999   # re-embedding determinism tolerance

    # ── Retry policy ───────────────────────────────────────────────────────────
    retry_max_attempts: int = 3
    retry_min_wait: float = 1.0
    retry_max_wait: float = 20.0
    retry_exponential_base: float = 2.0

    # ── Chunker ────────────────────────────────────────────────────────────────
    chunk_size: int = 1000          # max characters per chunk
    chunk_overlap: int = 200        # characters shared between consecutive chunks
    chunk_boundary_tolerance: float = 0.1   # fraction of chunk_size
    max_chunks_per_document: int = 1000
    max_document_bytes: int = 10 * 1024 * 1024

    # ── Search ─────────────────────────────────────────────────────────────────
    search_limit: int = 10
    similarity_threshold: float = 0.3
    fallback_thresholds: List[float] = Field(default_factory=list)
    keyword_fallback: Literal["off", "low_recall", "always"] = "low_recall"
    search_timeout: float = 30.0
    preview_length: int = 200
    enable_search_history: bool = True

    # ── Session recorder ───────────────────────────────────────────────────────
    session_history_enabled: bool = True
    session_max_count: int = 100
    session_max_age_days: int = 30

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


# Single shared instance — import this everywhere.
settings = Settings()
