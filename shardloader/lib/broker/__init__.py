"""Stream brokers.

Provides a unified interface over the streaming source:
- Kinesis (production)
- Local log files (development, standalone)

Example:
    >>> from shardloader.lib.broker import get_broker
    >>> broker = get_broker(settings)
    >>> broker.write(broker.stream_name("page_views"), '{"url": "/"}')
"""

from __future__ import annotations

from typing import Any, Optional

import boto3

from shardloader.lib.broker.base import Broker, GzipFileSink, Sink
from shardloader.lib.broker.kinesis import KinesisBroker
from shardloader.lib.broker.local import LocalFileBroker
from shardloader.lib.resilience import RetryConfig
from shardloader.lib.settings import LoaderSettings

__all__ = [
    "Broker",
    "GzipFileSink",
    "KinesisBroker",
    "LocalFileBroker",
    "Sink",
    "get_broker",
]


def get_broker(settings: LoaderSettings, *, client: Optional[Any] = None) -> Broker:
    """Build the broker selected by ``broker.kind``.

    Args:
        settings: Loader settings
        client: Pre-built Kinesis client (tests, custom sessions)
    """
    write_retry = RetryConfig(
        max_attempts=settings.broker.write_attempts,
        backoff_seconds=settings.broker.write_backoff_seconds,
    )
    cluster_name = settings.warehouse.cluster_name
    dbname = settings.warehouse.dbname

    if settings.broker.kind == "local":
        return LocalFileBroker(
            cluster_name, dbname, settings.broker.log_dir, write_retry=write_retry
        )

    if client is None:
        client = boto3.client("kinesis", **settings.aws.client_kwargs())
    return KinesisBroker(client, cluster_name, dbname, write_retry=write_retry)
