"""
knowledge_base/embedder/sentence_transformer_embedder.py

Local embedding backend: a sentence-transformers model running in-process.

The model is loaded lazily on first use so the FastAPI startup event
stays fast, and encoding runs in a worker thread so the event loop keeps
serving requests while a document is being embedded.
"""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING, List, Optional

from knowledge_base.core.config import settings
from knowledge_base.core.exceptions import (
    MalformedResponseError,
    ProviderUnavailableError,
    ValidationError,
)
from knowledge_base.core.logger import get_logger
from knowledge_base.embedder.base import Embedder
from knowledge_base.embedder.registry import check_token_limit

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer as _ST

logger = get_logger(__name__)


class SentenceTransformerEmbedder(Embedder):
    """
    Embedder backed by a HuggingFace sentence-transformers model.

    Vectors are L2-normalised, so cosine scores from the vector store are
    plain dot products of unit vectors. Only the configured model can be
    served; a call naming another model is rejected.
    """

    provider = "local"

    def __init__(self, model_name: str | None = None, batch_size: int | None = None) -> None:
        """
        Args:
            model_name: HuggingFace model identifier.
                        Defaults to ``settings.embedding_model``.
            batch_size: Encoding batch size. Defaults to ``settings.embedding_batch_size``.
        """
        self._model_name: str = model_name or settings.embedding_model
        self._batch_size = batch_size or settings.embedding_batch_size
        self._model: Optional[_ST] = None  # loaded on first use
        self._load_lock = threading.Lock()

    @property
    def model_name(self) -> str:
        return self._model_name

    # ── Lazy loader ────────────────────────────────────────────────────────────

    def _get_model(self) -> _ST:
        """Return the loaded model, initialising it on first call."""
        with self._load_lock:
            if self._model is None:
                logger.info("Loading embedding model '%s' …", self._model_name)
                try:
                    from sentence_transformers import SentenceTransformer

                    self._model = SentenceTransformer(self._model_name)
                    logger.info(
                        "Model '%s' loaded — embedding dimension: %d",
                        self._model_name,
                        self._model.get_sentence_embedding_dimension(),
                    )
                except Exception as exc:
                    raise ProviderUnavailableError(
                        f"Failed to load embedding model '{self._model_name}': {exc}"
                    ) from exc
        return self._model

    def _encode(self, texts: List[str]) -> List[List[float]]:
        model = self._get_model()
        try:
            vectors = model.encode(
                texts,
                batch_size=self._batch_size,
                show_progress_bar=False,
                convert_to_numpy=True,
                normalize_embeddings=True,
            )
        except Exception as exc:
            raise ProviderUnavailableError(f"Local encoding failed: {exc}") from exc
        return [v.tolist() for v in vectors]

    # ── Embedder interface ─────────────────────────────────────────────────────

    async def embed_batch(
        self,
        texts: List[str],
        model: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> List[List[float]]:
        """Batch-encode document texts. Returns [] for empty input."""
        if not texts:
            return []
        if model and model != self._model_name:
            raise ValidationError(
                f"Local embedder serves '{self._model_name}', not '{model}'."
            )

        for text in texts:
            check_token_limit(text, self._model_name)

        vectors = await asyncio.to_thread(self._encode, texts)
        if len(vectors) != len(texts):
            raise MalformedResponseError(
                f"Model returned {len(vectors)} vector(s) for {len(texts)} input(s)."
            )
        return vectors
