"""
knowledge_base/embedder/api_embedder.py

Embedder backed by an OpenAI-compatible ``/embeddings`` HTTP endpoint
(SiliconFlow by default).

Request : POST {api_base}/embeddings
          {"model": ..., "input": [...], "encoding_format": "float"}
          Authorization: Bearer <credential>
Response: {"data": [{"index": i, "embedding": [...]}, ...], "usage": {...}}

Every sub-batch is one request, retried under the shared RetryPolicy and
bounded by ``embedding_timeout``.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import httpx

from knowledge_base.core.config import settings
from knowledge_base.core.exceptions import (
    AuthenticationError,
    DependencyError,
    EmbeddingTimeoutError,
    MalformedResponseError,
    ProviderUnavailableError,
    RateLimitError,
)
from knowledge_base.core.logger import get_logger
from knowledge_base.core.retry import RetryPolicy
from knowledge_base.embedder.base import Embedder
from knowledge_base.embedder.registry import check_token_limit

logger = get_logger(__name__)


class ApiEmbedder(Embedder):
    """
    Remote embedding client.

    The credential can be given per call (the desktop shell passes the
    user's key with each command) or once at construction.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model_name: str | None = None,
        api_base: str | None = None,
        provider: str | None = None,
        batch_size: int | None = None,
        timeout: float | None = None,
        retry_policy: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Args:
            api_key      : Bearer credential. Defaults to ``settings.embedding_api_key``.
            model_name   : Default model. Defaults to ``settings.embedding_model``.
            api_base     : Endpoint root. Defaults to ``settings.embedding_api_base``.
            provider     : Provider label for usage records.
            batch_size   : Texts per request. Defaults to ``settings.embedding_batch_size``.
            timeout      : Seconds per request. Defaults to ``settings.embedding_timeout``.
            retry_policy : Backoff policy. Defaults to ``RetryPolicy.from_settings()``.
            client       : Pre-built httpx client (tests inject a MockTransport).
        """
        self._api_key = api_key if api_key is not None else settings.embedding_api_key
        self._model_name = model_name or settings.embedding_model
        self._api_base = (api_base or settings.embedding_api_base).rstrip("/")
        self.provider = provider or settings.embedding_provider
        self._batch_size = max(1, batch_size or settings.embedding_batch_size)
        self._timeout = timeout or settings.embedding_timeout
        self._retry = retry_policy or RetryPolicy.from_settings()
        self._client = client or httpx.AsyncClient(timeout=self._timeout)

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Embedder interface ─────────────────────────────────────────────────────

    async def embed_batch(
        self,
        texts: List[str],
        model: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> List[List[float]]:
        """
        Embed ``texts`` in sub-batches of ``batch_size``.

        Args:
            texts   : Strings to embed.
            model   : Model override.
            api_key : Per-call credential; overrides the configured one.
        """
        if not texts:
            return []

        model = model or self._model_name
        key = api_key or self._api_key
        if not key:
            raise AuthenticationError("No API key configured for the embedding provider.")

        for text in texts:
            check_token_limit(text, model)

        vectors: List[List[float]] = []
        for start in range(0, len(texts), self._batch_size):
            batch = texts[start:start + self._batch_size]
            vectors.extend(
                await self._retry.call(lambda batch=batch: self._request(batch, model, key))
            )

        logger.debug("Embedded %d text(s) with '%s'.", len(texts), model)
        return vectors

    # ── HTTP ───────────────────────────────────────────────────────────────────

    async def _request(self, texts: List[str], model: str, api_key: str) -> List[List[float]]:
        try:
            response = await asyncio.wait_for(
                self._client.post(
                    f"{self._api_base}/embeddings",
                    json={"model": model, "input": texts, "encoding_format": "float"},
                    headers={"Authorization": f"Bearer {api_key}"},
                ),
                timeout=self._timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise EmbeddingTimeoutError(
                f"Embedding request timed out after {self._timeout:.0f}s."
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(f"Embedding provider unreachable: {exc}") from exc

        self._raise_for_status(response)

        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedResponseError("Embedding response is not valid JSON.") from exc

        return self._parse(body, expected=len(texts))

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        detail = response.text[:200]
        if status in (401, 403):
            raise AuthenticationError(f"Embedding provider rejected the credential: {detail}", status)
        if status == 429:
            raise RateLimitError(f"Embedding provider rate limit reached: {detail}", status)
        if status >= 500:
            raise ProviderUnavailableError(f"Embedding provider error {status}: {detail}", status)
        error = DependencyError(f"Embedding request failed ({status}): {detail}", status)
        error.retryable = False
        raise error

    @staticmethod
    def _parse(body: Any, expected: int) -> List[List[float]]:
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            raise MalformedResponseError("Embedding response has no 'data' list.")
        if len(data) != expected:
            raise MalformedResponseError(
                f"Embedding response has {len(data)} vector(s) for {expected} input(s)."
            )

        # Providers may answer out of order; 'index' maps back to the input.
        items: List[Dict[str, Any]] = sorted(data, key=lambda item: item.get("index", 0))
        vectors: List[List[float]] = []
        for item in items:
            embedding = item.get("embedding")
            if not embedding or not isinstance(embedding, list):
                raise MalformedResponseError("Embedding response contains an empty vector.")
            try:
                vector = [float(x) for x in embedding]
            except (TypeError, ValueError) as exc:
                raise MalformedResponseError("Embedding vector holds non-numeric values.") from exc
            if not any(vector):
                raise MalformedResponseError("Embedding response contains an all-zero vector.")
            vectors.append(vector)
        return vectors
