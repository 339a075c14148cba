"""
tests/core/test_logger.py

Tests for the credential-masking log filter.
"""

import logging

from knowledge_base.core.logger import RedactSecretsFilter, get_logger


def _record(msg: str, *args) -> logging.LogRecord:
    return logging.LogRecord("t", logging.INFO, __file__, 1, msg, args, None)


class TestRedactSecretsFilter:

    def test_bearer_token_is_masked(self) -> None:
        record = _record("headers: %s", {"Authorization": "Bearer abcdef123456"})

        assert RedactSecretsFilter().filter(record) is True
        assert "abcdef123456" not in record.getMessage()
        assert "Bearer ***" in record.getMessage()

    def test_sk_key_is_masked(self) -> None:
        record = _record("using key sk-live-0123456789")
        RedactSecretsFilter().filter(record)
        assert record.getMessage() == "using key sk-***"

    def test_plain_messages_are_untouched(self) -> None:
        record = _record("Embedded %d chunk(s).", 3)
        RedactSecretsFilter().filter(record)
        assert (record.msg, record.args) == ("Embedded %d chunk(s).", (3,))

    def test_get_logger_returns_named_logger(self) -> None:
        assert get_logger("knowledge_base.test").name == "knowledge_base.test"
