"""
knowledge_base/embedder/factory.py

Picks the embedding backend named by ``settings.embedding_backend``.
"""

from __future__ import annotations

from knowledge_base.core.config import Settings, settings
from knowledge_base.core.exceptions import ValidationError
from knowledge_base.core.logger import get_logger
from knowledge_base.embedder.api_embedder import ApiEmbedder
from knowledge_base.embedder.base import Embedder
from knowledge_base.embedder.sentence_transformer_embedder import SentenceTransformerEmbedder

logger = get_logger(__name__)


def create_embedder(config: Settings | None = None) -> Embedder:
    config = config or settings
    kind = config.embedding_backend
    logger.info("Embedding backend: %s (model=%s)", kind, config.embedding_model)

    if kind == "api":
        return ApiEmbedder(
            api_key=config.embedding_api_key,
            model_name=config.embedding_model,
            api_base=config.embedding_api_base,
            provider=config.embedding_provider,
            batch_size=config.embedding_batch_size,
            timeout=config.embedding_timeout,
        )
    if kind == "local":
        return SentenceTransformerEmbedder(
            model_name=config.embedding_model,
            batch_size=config.embedding_batch_size,
        )
    raise ValidationError(f"Unknown embedding backend '{kind}'.")
