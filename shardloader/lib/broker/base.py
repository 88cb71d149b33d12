"""Abstract base class for stream brokers.

Defines the interface that all brokers must implement, plus the sinks that
reads are fanned out into.
"""

from __future__ import annotations

import gzip
import logging
import random
from abc import ABC, abstractmethod
from pathlib import Path
from typing import IO, List, Optional, Sequence, Union

from shardloader.lib.errors import ConfigurationError
from shardloader.lib.models import ReadLimits, ShardDescriptor, ShardReadResult
from shardloader.lib.resilience import RetryConfig

logger = logging.getLogger(__name__)

__all__ = ["Broker", "Sink", "GzipFileSink", "SequenceTracker", "random_partition_key"]


def random_partition_key() -> str:
    """Partition key for writes that did not supply one.

    Only spreads writes evenly across shards; gives no ordering guarantee.
    """
    return str(random.randrange(100))


class Sink(ABC):
    """Destination for records read from a shard (one line per record)."""

    def __init__(self) -> None:
        self.records = 0

    def write_record(self, data: str) -> None:
        self._write(data.rstrip("\n") + "\n")
        self.records += 1

    @abstractmethod
    def _write(self, line: str) -> None:
        pass

    def close(self) -> None:
        pass

    @property
    def is_empty(self) -> bool:
        return self.records == 0


class GzipFileSink(Sink):
    """Sink writing gzip-compressed lines to a local file."""

    def __init__(self, path: Union[str, Path]) -> None:
        super().__init__()
        self.path = Path(path)
        self._handle: Optional[IO[str]] = gzip.open(self.path, "wt", encoding="utf-8")

    def _write(self, line: str) -> None:
        if self._handle is None:
            raise ValueError(f"Sink {self.path} is closed")
        self._handle.write(line)

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> "GzipFileSink":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"GzipFileSink({str(self.path)!r}, records={self.records})"


class SequenceTracker:
    """Tracks the minimum and maximum sequence number seen in a read.

    Backends may redeliver out of order on retry, so a non-increasing
    sequence number is logged rather than treated as an error.
    """

    def __init__(self) -> None:
        self.minimum: Optional[int] = None
        self.maximum: Optional[int] = None

    def observe(self, sequence_number: int) -> None:
        if self.maximum is not None and sequence_number <= self.maximum:
            logger.warning(
                "Out of order sequence number: %s (after %s)",
                sequence_number,
                self.maximum,
            )
        if self.minimum is None or sequence_number < self.minimum:
            self.minimum = sequence_number
        if self.maximum is None or sequence_number > self.maximum:
            self.maximum = sequence_number


class Broker(ABC):
    """Abstract base class for stream brokers.

    A broker maps warehouse tables to streams, describes the shards of a
    stream, hands out resumable shard iterators, reads bounded batches into
    sinks and writes single records.

    Subclasses must implement all abstract methods.
    """

    kind: str = ""

    def __init__(
        self,
        cluster_name: Optional[str],
        dbname: Optional[str],
        *,
        write_retry: Optional[RetryConfig] = None,
    ) -> None:
        self.cluster_name = cluster_name
        self.dbname = dbname
        self.write_retry = write_retry or RetryConfig()

    def stream_name(self, table: str) -> str:
        """Name of the stream feeding a warehouse table."""
        if not self.cluster_name or not self.dbname:
            raise ConfigurationError(
                "Need to specify cluster_name and dbname to derive stream names",
                field="redshift.cluster_name" if not self.cluster_name else "redshift.dbname",
                table=table,
            )
        return f"{self.cluster_name}.{self.dbname}.{table}"

    @abstractmethod
    def shard_descriptors(self, stream: str) -> List[ShardDescriptor]:
        """Current shard topology of a stream."""
        pass

    @abstractmethod
    def shard_iterator(
        self,
        stream: str,
        shard: ShardDescriptor,
        after_sequence_number: Optional[int] = None,
    ) -> str:
        """Iterator positioned right after a sequence number.

        With no sequence number the iterator starts at the beginning of the
        shard (first-ever load).
        """
        pass

    @abstractmethod
    def read(
        self,
        iterator: str,
        sinks: Sequence[Sink],
        limits: Optional[ReadLimits] = None,
    ) -> ShardReadResult:
        """Read bounded batches, distributing records round-robin over sinks."""
        pass

    @abstractmethod
    def write(
        self,
        stream: str,
        payload: str,
        partition_key: Optional[str] = None,
    ) -> bool:
        """Write one serialized record (at-least-once)."""
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(cluster={self.cluster_name!r}, db={self.dbname!r})"
