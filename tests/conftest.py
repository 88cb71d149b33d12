"""Pytest configuration and fixtures."""

from __future__ import annotations

import gzip
import itertools
import json
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

import boto3
import pytest
from moto import mock_aws

from shardloader.lib.broker.kinesis import KinesisBroker
from shardloader.lib.checkpoint import CheckpointLedger
from shardloader.lib.resilience import RetryConfig
from shardloader.lib.stage import BlobStage
from shardloader.lib.warehouse import Warehouse

REGION = "us-east-1"
BUCKET = "test-loads"
CLUSTER = "analytics"
DBNAME = "events"
TABLE = "page_views"


class SqliteWarehouse(Warehouse):
    """In-memory stand-in for Redshift.

    ``bulk_load`` reads the manifest and its gzip blobs back from the stage
    and inserts one row per line into ``<table>(payload)``, inside whatever
    transaction is open, so a rollback undoes it.
    """

    current_timestamp_sql = "ledger_now()"

    def __init__(self, stage: Optional[BlobStage] = None) -> None:
        connection = sqlite3.connect(
            ":memory:", isolation_level=None, check_same_thread=False
        )
        start = datetime(2024, 1, 15, 10, 0, 0)
        ticks = itertools.count()
        connection.create_function(
            "ledger_now",
            0,
            lambda: (start + timedelta(seconds=next(ticks))).strftime(
                "%Y-%m-%d %H:%M:%S.%f"
            ),
        )
        super().__init__(connection, name="sqlite")
        self.stage = stage
        self.manifests: List[str] = []
        self.bulk_load_error: Optional[Exception] = None
        self.load_error_rows: List[Dict[str, Any]] = []
        self.load_errors_error: Optional[Exception] = None

    def _key(self, url: str) -> str:
        assert self.stage is not None
        return url.split(f"s3://{self.stage.bucket}/", 1)[1]

    def bulk_load(self, table: str, manifest_url: str) -> int:
        if self.bulk_load_error is not None:
            raise self.bulk_load_error
        self.manifests.append(manifest_url)
        manifest = json.loads(self.stage.read_bytes(self._key(manifest_url)))
        records = 0
        for entry in manifest["entries"]:
            blob = gzip.decompress(self.stage.read_bytes(self._key(entry["url"])))
            for line in blob.decode("utf-8").splitlines():
                self.execute(f"insert into {table} (payload) values (?)", (line,))
                records += 1
        return records

    def load_errors(self, table: str, urls: Sequence[str]) -> List[Dict[str, Any]]:
        if self.load_errors_error is not None:
            raise self.load_errors_error
        return self.load_error_rows

    def payloads(self, table: str = TABLE) -> List[str]:
        return [row["payload"] for row in self.query(f"select payload from {table}")]


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mock AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)


@pytest.fixture
def aws(aws_credentials):
    """Everything AWS is mocked for the duration of the test."""
    with mock_aws():
        yield


@pytest.fixture
def s3_client(aws):
    client = boto3.client("s3", region_name=REGION)
    client.create_bucket(Bucket=BUCKET)
    return client


@pytest.fixture
def kinesis_client(aws):
    return boto3.client("kinesis", region_name=REGION)


@pytest.fixture
def stage(s3_client):
    return BlobStage(
        s3_client,
        BUCKET,
        CLUSTER,
        DBNAME,
        root="loads",
        verify_delay_seconds=0,
    )


@pytest.fixture
def broker(kinesis_client):
    return KinesisBroker(
        kinesis_client,
        CLUSTER,
        DBNAME,
        write_retry=RetryConfig(max_attempts=3, backoff_seconds=0),
        poll_seconds=0,
    )


@pytest.fixture
def stream(broker, kinesis_client):
    """Single-shard stream feeding the test table."""
    name = broker.stream_name(TABLE)
    kinesis_client.create_stream(StreamName=name, ShardCount=1)
    return name


@pytest.fixture
def warehouse(stage):
    warehouse = SqliteWarehouse(stage)
    CheckpointLedger(warehouse).create_table()
    warehouse.execute(f"create table {TABLE} (payload text)")
    yield warehouse
    warehouse.close()


@pytest.fixture
def ledger(warehouse):
    return CheckpointLedger(warehouse)


@pytest.fixture
def settings_dict(tmp_path) -> Dict[str, Any]:
    return {
        "aws": {"region": REGION},
        "redshift": {
            "cluster_name": CLUSTER,
            "dbname": DBNAME,
            "host": "localhost",
            "user": "loader",
            "password": "secret",
            "slices": 2,
        },
        "broker": {"kind": "kinesis", "log_dir": str(tmp_path / "log")},
        "stage": {"s3_bucket": BUCKET, "root": "loads", "verify_delay_seconds": 0},
        "tables": {
            TABLE: {
                "columns": {
                    "url": {"type": "varchar(32)", "constraint": "not null"},
                    "viewed_at": {"type": "timestamp"},
                    "duration_ms": {"type": "integer"},
                },
                "sortkey": "viewed_at",
            }
        },
    }
