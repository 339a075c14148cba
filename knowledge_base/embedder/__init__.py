"""knowledge_base/embedder/__init__.py — public API of the embedder package."""

from knowledge_base.embedder.api_embedder import ApiEmbedder
from knowledge_base.embedder.base import Embedder
from knowledge_base.embedder.factory import create_embedder
from knowledge_base.embedder.registry import ModelSpec, estimate_tokens, get_model_spec
from knowledge_base.embedder.sentence_transformer_embedder import SentenceTransformerEmbedder

__all__ = [
    "Embedder",
    "ApiEmbedder",
    "SentenceTransformerEmbedder",
    "create_embedder",
    "ModelSpec",
    "get_model_spec",
    "estimate_tokens",
]
