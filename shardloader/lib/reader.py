"""Parallel shard reading and staging.

Every shard is read by its own worker thread: acquire an iterator right
after the shard's last checkpoint, read into one gzip sink per warehouse
slice, then stage each non-empty sink to the blob stage. Workers share no
mutable state and never touch the warehouse connection; checkpoints are
resolved before fan-out.
"""

from __future__ import annotations

import logging
import tempfile
import traceback
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from shardloader.lib.broker.base import Broker, GzipFileSink
from shardloader.lib.models import (
    CheckpointRow,
    ReadLimits,
    ShardDescriptor,
    ShardFailure,
    ShardReadResult,
)
from shardloader.lib.stage import BlobStage

logger = logging.getLogger(__name__)

__all__ = ["ParallelShardReader"]


class ParallelShardReader:
    """Reads and stages all shards of a stream concurrently.

    Args:
        broker: Stream broker
        stage: Blob stage receiving the gzip sinks
        slices: Number of sinks (and staged blobs) per shard
        limits: Read limits per shard
        max_workers: Thread pool size (default: one thread per shard)
    """

    def __init__(
        self,
        broker: Broker,
        stage: BlobStage,
        *,
        slices: int = 1,
        limits: Optional[ReadLimits] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.broker = broker
        self.stage = stage
        self.slices = max(1, slices)
        self.limits = limits or ReadLimits()
        self.max_workers = max_workers

    def read_shard(
        self,
        stream: str,
        shard: ShardDescriptor,
        checkpoint: Optional[CheckpointRow],
        prefix: str,
    ) -> ShardReadResult:
        """Read one shard from its checkpoint and stage what was read."""
        after = checkpoint.ending_sequence_number if checkpoint else None
        iterator = self.broker.shard_iterator(stream, shard, after)

        with tempfile.TemporaryDirectory(prefix="shardloader-") as work_dir:
            sinks = [
                GzipFileSink(Path(work_dir) / f"{shard.shard_id}.{i}.json.gz")
                for i in range(self.slices)
            ]
            try:
                result = self.broker.read(iterator, sinks, self.limits)
            finally:
                for sink in sinks:
                    sink.close()

            result.shard_id = shard.shard_id
            if result.has_records:
                result.staged_blob_urls = [
                    self.stage.put(sink.path, prefix + sink.path.name)
                    for sink in sinks
                    if not sink.is_empty
                ]

        logger.info(
            "Shard %s: %d records (%s - %s), %d blobs staged",
            shard.shard_id,
            result.records,
            result.starting_sequence_number,
            result.ending_sequence_number,
            len(result.staged_blob_urls),
        )
        return result

    def _safe_read_shard(
        self,
        stream: str,
        shard: ShardDescriptor,
        checkpoint: Optional[CheckpointRow],
        prefix: str,
    ) -> Tuple[Optional[ShardReadResult], Optional[ShardFailure]]:
        """Wrapper for read_shard that captures the failure instead of raising."""
        try:
            return self.read_shard(stream, shard, checkpoint, prefix), None
        except Exception as e:
            logger.error("Read failed for shard %s: %s", shard.shard_id, e, exc_info=True)
            return None, ShardFailure(
                shard_id=shard.shard_id, error=e, traceback=traceback.format_exc()
            )

    def read(
        self,
        stream: str,
        shards: Sequence[ShardDescriptor],
        last_checkpoints: Dict[str, Optional[CheckpointRow]],
        prefix: str,
    ) -> Tuple[List[ShardReadResult], List[ShardFailure]]:
        """Read all shards and wait for every worker to finish.

        Returns:
            Tuple of (results, failures), each ordered like ``shards``
        """
        if not shards:
            return [], []

        max_workers = self.max_workers or len(shards)
        logger.info(
            "Reading %d shards of %s with %d workers", len(shards), stream, max_workers
        )

        outcomes: Dict[str, Tuple[Optional[ShardReadResult], Optional[ShardFailure]]] = {}
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_shard = {
                executor.submit(
                    self._safe_read_shard,
                    stream,
                    shard,
                    last_checkpoints.get(shard.shard_id),
                    prefix,
                ): shard.shard_id
                for shard in shards
            }
            for future in as_completed(future_to_shard):
                outcomes[future_to_shard[future]] = future.result()

        results: List[ShardReadResult] = []
        failures: List[ShardFailure] = []
        for shard in shards:
            result, failure = outcomes[shard.shard_id]
            if failure is not None:
                failures.append(failure)
            elif result is not None:
                results.append(result)

        logger.info(
            "Read complete for %s: %d succeeded, %d failed",
            stream,
            len(results),
            len(failures),
        )
        return results, failures
