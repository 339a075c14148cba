"""
tests/embedder/test_registry.py

Tests for the model registry and the token estimate.
"""

import pytest

from knowledge_base.core.exceptions import ValidationError
from knowledge_base.embedder.registry import (
    check_token_limit,
    estimate_tokens,
    get_model_spec,
)


class TestModelRegistry:

    def test_known_model(self) -> None:
        spec = get_model_spec("BAAI/bge-m3")
        assert spec.dimensions == 1024
        assert spec.max_tokens == 8192

    def test_sentence_transformers_prefix_is_ignored(self) -> None:
        assert get_model_spec("sentence-transformers/all-MiniLM-L6-v2").dimensions == 384

    def test_unknown_model(self) -> None:
        assert get_model_spec("acme/unknown") is None

    def test_only_instructed_models_have_a_query_prefix(self) -> None:
        assert get_model_spec("BAAI/bge-large-zh-v1.5").query_prefix
        assert get_model_spec("BAAI/bge-m3").query_prefix == ""


class TestTokenEstimate:

    def test_latin_words(self) -> None:
        assert estimate_tokens("one two three four five six seven eight nine ten") == 13

    def test_cjk_characters(self) -> None:
        assert estimate_tokens("你好世界") == 5

    def test_digits_count_as_words(self) -> None:
        assert estimate_tokens("123 ... !!!") == 3

    def test_cyrillic_and_accented_words(self) -> None:
        assert estimate_tokens("поиск по базе") == 4
        assert estimate_tokens("naïve café") == 3

    def test_hangul_and_kana_count_per_character(self) -> None:
        assert estimate_tokens("검색") == 3
        assert estimate_tokens("カタカナ") == 5

    def test_long_unspaced_runs_are_counted_by_length(self) -> None:
        assert estimate_tokens("x" * 400) == 100

    def test_limit_enforced(self) -> None:
        check_token_limit("word " * 100, "all-MiniLM-L6-v2")
        with pytest.raises(ValidationError):
            check_token_limit("word " * 200, "all-MiniLM-L6-v2")

    @pytest.mark.parametrize(
        "text",
        ["Векторный поиск по базе знаний. " * 200, "벡터 검색 지식 기반 " * 300, "Ελληνικό κείμενο " * 300],
    )
    def test_non_latin_text_over_the_limit_is_rejected(self, text) -> None:
        with pytest.raises(ValidationError):
            check_token_limit(text, "all-MiniLM-L6-v2")

    def test_unknown_model_uses_default_limit(self) -> None:
        check_token_limit("word " * 1000, "acme/unknown")
        with pytest.raises(ValidationError):
            check_token_limit("word " * 7000, "acme/unknown")
