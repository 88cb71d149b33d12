"""Single-process broker backed by append-only local log files.

Meant for development and standalone installs without Kinesis. Each stream
is one file, ``<log_dir>/<stream_name>``, with one shard named after the
host.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
from pathlib import Path
from typing import List, Optional, Sequence, Union

from shardloader.lib.broker.base import Broker, SequenceTracker, Sink
from shardloader.lib.models import ReadLimits, ShardDescriptor, ShardReadResult
from shardloader.lib.resilience import RetryConfig, retry_operation

logger = logging.getLogger(__name__)

__all__ = ["LocalFileBroker"]


class LocalFileBroker(Broker):
    """Broker writing to and reading from local log files.

    A read renames the live log to ``<path>.<seq>`` before reading it, so
    writers keep appending to a fresh file and consumed data is never read
    twice. ``seq`` comes from a strictly increasing nanosecond clock and is
    both the start and end sequence number of the read.
    """

    kind = "local"

    def __init__(
        self,
        cluster_name: Optional[str],
        dbname: Optional[str],
        log_dir: Union[str, Path] = "log",
        *,
        write_retry: Optional[RetryConfig] = None,
    ) -> None:
        super().__init__(cluster_name, dbname, write_retry=write_retry)
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._last_sequence = 0
        self._lock = threading.Lock()

    def _log_path(self, stream: str) -> Path:
        return self.log_dir / stream

    def _next_sequence(self) -> int:
        with self._lock:
            self._last_sequence = max(time.time_ns(), self._last_sequence + 1)
            return self._last_sequence

    def shard_descriptors(self, stream: str) -> List[ShardDescriptor]:
        return [ShardDescriptor(shard_id=socket.gethostname())]

    def shard_iterator(
        self,
        stream: str,
        shard: ShardDescriptor,
        after_sequence_number: Optional[int] = None,
    ) -> str:
        # Consumed data was renamed away, so the live file is always the resume point
        return str(self._log_path(stream))

    def read(
        self,
        iterator: str,
        sinks: Sequence[Sink],
        limits: Optional[ReadLimits] = None,
    ) -> ShardReadResult:
        if not sinks:
            raise ValueError("read() needs at least one sink")
        path = Path(iterator)
        if not path.exists():
            logger.debug("No log file at %s", path)
            return ShardReadResult()

        sequence = self._next_sequence()
        consumed = path.with_name(f"{path.name}.{sequence}")
        os.rename(path, consumed)
        logger.info("Moved %s to %s for reading", path, consumed)

        tracker = SequenceTracker()
        records = 0
        with open(consumed, encoding="utf-8") as f:
            for line in f:
                line = line.rstrip("\n")
                if not line:
                    continue
                sinks[records % len(sinks)].write_record(line)
                records += 1

        if records:
            tracker.observe(sequence)
        return ShardReadResult(
            records=records,
            starting_sequence_number=tracker.minimum,
            ending_sequence_number=tracker.maximum,
        )

    def write(
        self,
        stream: str,
        payload: str,
        partition_key: Optional[str] = None,
    ) -> bool:
        path = self._log_path(stream)

        def append() -> None:
            with open(path, "a", encoding="utf-8") as f:
                f.write(payload + "\n")

        retry_operation(append, self.write_retry, f"append({path})")
        return True
