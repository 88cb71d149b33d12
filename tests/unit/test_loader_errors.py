"""Tests for shardloader/lib/errors.py - structured exception hierarchy."""

import pytest

from shardloader.lib.errors import (
    BrokerError,
    ConfigurationError,
    LedgerError,
    LoadFailedError,
    LoaderError,
    RecordValidationError,
    ShardReadError,
    StageError,
    StageVerificationError,
    WarehouseError,
)
from shardloader.lib.models import LoadContext, LoadFailure, LoadOutcome, ShardFailure


class TestLoaderError:
    """Tests for base LoaderError class."""

    def test_basic_message(self):
        error = LoaderError("Something went wrong")
        assert str(error) == "Something went wrong"

    def test_with_table_and_stream(self):
        error = LoaderError("Load failed", table="page_views", stream="a.b.page_views")
        assert "[page_views <- a.b.page_views]" in str(error)
        assert "Load failed" in str(error)

    def test_with_details(self):
        error = LoaderError("Bad shard", details={"shard": "shardId-0", "records": 3})
        assert "shard: shardId-0" in str(error)
        assert "records: 3" in str(error)

    def test_with_suggestion(self):
        error = LoaderError("Missing bucket", suggestion="Set stage.s3_bucket")
        assert "Suggestion: Set stage.s3_bucket" in str(error)

    def test_to_dict(self):
        error = LoaderError(
            "Test error",
            table="t",
            stream="s",
            details={"key": "value"},
            suggestion="Fix it",
        )
        assert error.to_dict() == {
            "error_type": "LoaderError",
            "message": "Test error",
            "table": "t",
            "stream": "s",
            "details": {"key": "value"},
            "suggestion": "Fix it",
        }

    @pytest.mark.parametrize(
        "cls",
        [
            ConfigurationError,
            BrokerError,
            StageError,
            StageVerificationError,
            LedgerError,
            WarehouseError,
            RecordValidationError,
        ],
    )
    def test_subclasses_are_loader_errors(self, cls):
        assert issubclass(cls, LoaderError)


class TestConfigurationError:
    def test_field_and_value_in_details(self):
        error = ConfigurationError("Invalid kind", field="broker.kind", value="kafka")
        assert error.details == {"field": "broker.kind", "value": "kafka"}
        assert error.field == "broker.kind"

    def test_merges_explicit_details(self):
        error = ConfigurationError("Bad", field="x", details={"valid_keys": "a, b"})
        assert error.details["valid_keys"] == "a, b"
        assert error.details["field"] == "x"


class TestStageErrors:
    def test_stage_error_records_cause(self):
        cause = OSError("disk gone")
        error = StageError("Upload failed", url="s3://b/k", cause=cause)
        assert error.details["url"] == "s3://b/k"
        assert error.details["cause_type"] == "OSError"
        assert error.cause is cause

    def test_verification_error_sizes_and_default_suggestion(self):
        error = StageVerificationError("Mismatch", url="s3://b/k", expected=10, actual=7)
        assert error.details["expected_size"] == 10
        assert error.details["actual_size"] == 7
        assert "nothing was committed" in error.suggestion
        assert isinstance(error, StageError)


class TestShardReadError:
    def test_lists_each_failed_shard(self):
        failures = [
            ShardFailure("shardId-1", RuntimeError("boom")),
            ShardFailure("shardId-2", ValueError("bad")),
        ]
        error = ShardReadError("2 shards failed", failures=failures)
        assert error.details["shard shardId-1"] == "RuntimeError: boom"
        assert error.details["shard shardId-2"] == "ValueError: bad"
        assert error.failures == failures

    def test_takes_table_and_stream_from_context(self):
        context = LoadContext(table="page_views", stream="a.b.page_views")
        error = ShardReadError("failed", failures=[], context=context)
        assert error.table == "page_views"
        assert error.stream == "a.b.page_views"
        assert error.context is context

    def test_table_and_stream_without_context(self):
        error = ShardReadError("failed", failures=[], table="t", stream="s")
        assert error.table == "t"
        assert error.stream == "s"


class TestLoadFailedError:
    def test_carries_outcome(self):
        outcome = LoadOutcome.failed(LoadFailure.OVERLAP, shard_id="shardId-0")
        outcome.context = LoadContext(table="t", stream="s")

        with pytest.raises(LoadFailedError) as exc_info:
            outcome.raise_for_failure()

        error = exc_info.value
        assert error.outcome is outcome
        assert error.details["failure"] == "overlap"
        assert error.details["shard_id"] == "shardId-0"
        assert "[t <- s]" in str(error)

    def test_success_does_not_raise(self):
        outcome = LoadOutcome.loaded(12)
        assert outcome.raise_for_failure() is outcome


class TestRecordValidationError:
    def test_details(self):
        error = RecordValidationError(
            "Bad value", column="age", value="x", type_definition="integer"
        )
        assert error.details == {"column": "age", "value": "'x'", "type": "integer"}
