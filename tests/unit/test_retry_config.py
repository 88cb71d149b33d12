"""Tests for shardloader/lib/resilience.py - tenacity-backed retries."""

from unittest.mock import MagicMock, patch

import pytest

from shardloader.lib.resilience import RetryConfig, retry_operation


class TestRetryConfig:
    def test_defaults(self):
        config = RetryConfig()
        assert config.max_attempts == 3
        assert config.backoff_seconds == 1.0
        assert config.retry_if is None

    def test_fixed_wait_between_attempts(self):
        operation = MagicMock(side_effect=[IOError("1"), IOError("2"), "ok"])

        with patch("time.sleep") as sleep:
            retry_operation(operation, RetryConfig(backoff_seconds=1.0), "put_record")

        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 1.0]


class TestRetryOperation:
    def test_succeeds_after_transient_failures(self):
        operation = MagicMock(side_effect=[IOError("1"), IOError("2"), "ok"])

        result = retry_operation(operation, RetryConfig(backoff_seconds=0), "flaky")

        assert result == "ok"
        assert operation.call_count == 3

    def test_reraises_last_error_when_exhausted(self, caplog):
        operation = MagicMock(side_effect=[IOError("1"), IOError("2"), IOError("last")])

        with pytest.raises(IOError, match="last"):
            retry_operation(operation, RetryConfig(backoff_seconds=0), "put_record")

        assert operation.call_count == 3
        assert "put_record failed after 3 attempts" in caplog.text

    def test_non_matching_exception_not_retried(self):
        operation = MagicMock(side_effect=KeyError("x"))
        config = RetryConfig(backoff_seconds=0, retry_exceptions=(IOError,))

        with pytest.raises(KeyError):
            retry_operation(operation, config)

        assert operation.call_count == 1

    def test_retry_if_predicate(self):
        operation = MagicMock(side_effect=[IOError("fatal"), "ok"])
        config = RetryConfig(
            backoff_seconds=0, retry_if=lambda e: "transient" in str(e)
        )

        with pytest.raises(IOError, match="fatal"):
            retry_operation(operation, config)

        assert operation.call_count == 1
