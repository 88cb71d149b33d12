"""Tests for shardloader/lib/stage.py with moto mocking."""

import logging
from datetime import date
from unittest.mock import MagicMock, patch

import pytest
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import ClientError, EndpointConnectionError

from shardloader.lib.errors import ConfigurationError, StageError, StageVerificationError
from shardloader.lib.settings import settings_from_dict
from shardloader.lib.stage import BlobStage, should_retry_s3

BUCKET = "test-loads"


def client_error(status, code="Error"):
    return ClientError(
        {"Error": {"Code": code, "Message": "x"}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "PutObject",
    )


@pytest.fixture
def blob(tmp_path):
    path = tmp_path / "shard.0.json.gz"
    path.write_bytes(b"0123456789")
    return path


class TestShouldRetry:
    @pytest.mark.parametrize(
        "exc,expected",
        [
            (client_error(500), True),
            (client_error(503), True),
            (client_error(429), True),
            (client_error(400, "SlowDown"), True),
            (client_error(403, "AccessDenied"), False),
            (client_error(404, "NoSuchBucket"), False),
            (EndpointConnectionError(endpoint_url="http://s3"), True),
            (S3UploadFailedError("failed"), True),
            (ValueError("x"), False),
        ],
    )
    def test_classification(self, exc, expected):
        assert should_retry_s3(exc) is expected


class TestPaths:
    def test_prefix(self, stage):
        assert (
            stage.prefix("page_views", date(2024, 1, 15), "abc123")
            == "loads/analytics/events/page_views/20240115/abc123/"
        )

    def test_url(self, stage):
        assert stage.url("a/b.gz") == f"s3://{BUCKET}/a/b.gz"

    def test_prefix_needs_cluster_and_db(self):
        stage = BlobStage(MagicMock(), "b", None, "events")
        with pytest.raises(ConfigurationError):
            stage.prefix("t", date(2024, 1, 15), "x")

    def test_from_settings_requires_bucket(self):
        with pytest.raises(ConfigurationError, match="S3 bucket is required"):
            BlobStage.from_settings(settings_from_dict({}), client=MagicMock())

    def test_from_settings(self, settings_dict):
        client = MagicMock()
        settings_dict["stage"]["strict_verification"] = True

        stage = BlobStage.from_settings(settings_from_dict(settings_dict), client=client)

        assert stage.client is client
        assert stage.bucket == BUCKET
        assert stage.strict_verification is True


class TestPut:
    def test_upload_and_verify(self, stage, s3_client, blob):
        url = stage.put(blob, "loads/x/shard.0.json.gz")

        assert url == f"s3://{BUCKET}/loads/x/shard.0.json.gz"
        stored = s3_client.get_object(Bucket=BUCKET, Key="loads/x/shard.0.json.gz")
        assert stored["Body"].read() == b"0123456789"

    def test_size_mismatch_warns_and_keeps_url(self, stage, blob, caplog):
        """A stale size read-back is logged; the blob still goes to the load."""
        with patch.object(stage.client, "head_object", return_value={"ContentLength": 3}) as head:
            with caplog.at_level(logging.WARNING):
                url = stage.put(blob, "k.gz")

        assert url == f"s3://{BUCKET}/k.gz"
        assert head.call_count == 3
        assert "S3 upload verification failed" in caplog.text

    def test_size_mismatch_strict_raises(self, stage, blob):
        stage.strict_verification = True
        with patch.object(stage.client, "head_object", return_value={"ContentLength": 3}):
            with pytest.raises(StageVerificationError) as exc_info:
                stage.put(blob, "k.gz")

        assert exc_info.value.expected == 10
        assert exc_info.value.actual == 3

    def test_connection_error_on_size_check_only_warns(self, stage, blob, caplog):
        error = EndpointConnectionError(endpoint_url="https://s3.amazonaws.com")
        with patch.object(stage.client, "head_object", side_effect=error) as head:
            with caplog.at_level(logging.WARNING):
                url = stage.put(blob, "k.gz")

        assert url == f"s3://{BUCKET}/k.gz"
        assert head.call_count == 3
        assert "S3 upload verification failed" in caplog.text

    def test_connection_error_on_size_check_strict_raises(self, stage, blob):
        stage.strict_verification = True
        error = EndpointConnectionError(endpoint_url="https://s3.amazonaws.com")
        with patch.object(stage.client, "head_object", side_effect=error):
            with pytest.raises(StageVerificationError) as exc_info:
                stage.put(blob, "k.gz")

        assert exc_info.value.actual is None

    def test_verification_recovers_on_later_attempt(self, stage, blob, caplog):
        responses = [{"ContentLength": 0}, {"ContentLength": 10}]
        with patch.object(stage.client, "head_object", side_effect=responses):
            with caplog.at_level(logging.WARNING):
                stage.put(blob, "k.gz")

        assert "verification failed" not in caplog.text

    def test_upload_retried_on_transient_error(self, blob):
        client = MagicMock()
        client.upload_file.side_effect = [client_error(503), None]
        client.head_object.return_value = {"ContentLength": 10}
        stage = BlobStage(client, "b", "c", "d", verify_delay_seconds=0)
        stage.upload_retry.backoff_seconds = 0

        assert stage.put(blob, "k") == "s3://b/k"
        assert client.upload_file.call_count == 2

    def test_upload_not_retried_on_access_denied(self, blob):
        client = MagicMock()
        client.upload_file.side_effect = client_error(403, "AccessDenied")
        stage = BlobStage(client, "b", "c", "d")

        with pytest.raises(StageError, match="Failed to upload"):
            stage.put(blob, "k")

        assert client.upload_file.call_count == 1


class TestBytesAndCleanup:
    def test_put_and_read_bytes(self, stage):
        url = stage.put_bytes(b'{"entries": []}', "loads/m.json", content_type="application/json")

        assert url == f"s3://{BUCKET}/loads/m.json"
        assert stage.read_bytes("loads/m.json") == b'{"entries": []}'

    def test_read_missing_key(self, stage):
        with pytest.raises(StageError, match="Failed to read"):
            stage.read_bytes("missing")

    def test_cleanup_deletes_one_day(self, stage, s3_client):
        day = date(2024, 1, 15)
        for load_id in ("a", "b"):
            stage.put_bytes(b"x", stage.prefix("page_views", day, load_id) + "blob.gz")
        keep = stage.prefix("page_views", date(2024, 1, 16), "c") + "blob.gz"
        stage.put_bytes(b"x", keep)

        assert stage.cleanup("page_views", day) == 2

        remaining = [o["Key"] for o in s3_client.list_objects_v2(Bucket=BUCKET)["Contents"]]
        assert remaining == [keep]

    def test_cleanup_nothing(self, stage):
        assert stage.cleanup("page_views", date(2024, 1, 15)) == 0
