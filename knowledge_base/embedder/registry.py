"""
knowledge_base/embedder/registry.py

Known embedding models and the limits the embedder enforces before a
request leaves the process.

Token counts are estimated, not tokenized. Every CJK, kana or Hangul
character and every other word (any script, digits included) counts as
1.3 tokens, and the total is never below one token per four characters.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Optional

from knowledge_base.core.exceptions import ValidationError

_DENSE_RANGES = "\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af\uf900-\ufaff"
_DENSE = re.compile(f"[{_DENSE_RANGES}]")
_WORD = re.compile(f"[^\\W{_DENSE_RANGES}]+")

#: Fallback limit for models missing from the registry.
DEFAULT_MAX_TOKENS = 8192


@dataclass(frozen=True)
class ModelSpec:
    model_id: str
    dimensions: int
    max_tokens: int
    language: str = "multilingual"
    query_prefix: str = ""


MODELS: Dict[str, ModelSpec] = {
    spec.model_id: spec
    for spec in (
        ModelSpec("BAAI/bge-m3", 1024, 8192),
        ModelSpec(
            "BAAI/bge-large-zh-v1.5",
            1024,
            512,
            language="zh",
            query_prefix="为这个句子生成表示以用于检索相关文章：",
        ),
        ModelSpec("BAAI/bge-large-en-v1.5", 1024, 512, language="en"),
        ModelSpec("google/embeddinggemma-300m", 768, 2048),
        ModelSpec("all-MiniLM-L6-v2", 384, 256, language="en"),
    )
}


def get_model_spec(model_id: str) -> Optional[ModelSpec]:
    """Registry entry for ``model_id``; the ``sentence-transformers/`` prefix is ignored."""
    return MODELS.get(model_id) or MODELS.get(model_id.split("/", 1)[-1])


def estimate_tokens(text: str) -> int:
    dense = len(_DENSE.findall(text))
    words = len(_WORD.findall(text))
    return round(max((dense + words) * 1.3, len(text) / 4))


def check_token_limit(text: str, model_id: str) -> None:
    """
    Reject text the model would silently truncate.

    Raises:
        ValidationError: Estimated token count exceeds the model's limit.
    """
    spec = get_model_spec(model_id)
    limit = spec.max_tokens if spec else DEFAULT_MAX_TOKENS
    tokens = estimate_tokens(text)
    if tokens > limit:
        raise ValidationError(
            f"Text of ~{tokens} tokens exceeds the {limit}-token limit of '{model_id}'."
        )
