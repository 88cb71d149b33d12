"""AWS Kinesis broker.

Records are written as a JSON envelope ``{"data": "<payload>"}`` and read
back one payload per line into the sinks.

Example:
    >>> broker = KinesisBroker(boto3.client("kinesis"), "analytics", "events")
    >>> stream = broker.stream_name("page_views")
    >>> shards = broker.shard_descriptors(stream)
    >>> iterator = broker.shard_iterator(stream, shards[0])
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, List, Optional, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from shardloader.lib.broker.base import Broker, SequenceTracker, Sink, random_partition_key
from shardloader.lib.errors import BrokerError
from shardloader.lib.models import ReadLimits, ShardDescriptor, ShardReadResult
from shardloader.lib.resilience import RetryConfig, retry_operation

logger = logging.getLogger(__name__)

__all__ = ["KinesisBroker"]

# Stream status polls while waiting for a split to finish
MAX_ACTIVE_POLLS = 6


class KinesisBroker(Broker):
    """Broker backed by AWS Kinesis streams."""

    kind = "kinesis"

    def __init__(
        self,
        client: Any,
        cluster_name: Optional[str],
        dbname: Optional[str],
        *,
        write_retry: Optional[RetryConfig] = None,
        poll_seconds: float = 5.0,
    ) -> None:
        super().__init__(cluster_name, dbname, write_retry=write_retry)
        self.client = client
        self.poll_seconds = poll_seconds

    def shard_descriptors(self, stream: str) -> List[ShardDescriptor]:
        shards: List[ShardDescriptor] = []
        kwargs: dict = {"StreamName": stream}
        try:
            while True:
                description = self.client.describe_stream(**kwargs)["StreamDescription"]
                shards.extend(
                    ShardDescriptor.from_kinesis(shard)
                    for shard in description.get("Shards", [])
                )
                if not description.get("HasMoreShards") or not shards:
                    break
                kwargs["ExclusiveStartShardId"] = shards[-1].shard_id
        except (BotoCoreError, ClientError) as e:
            raise BrokerError(f"Failed to describe stream: {e}", stream=stream) from e

        logger.debug("Stream %s has %d shards", stream, len(shards))
        return shards

    def shard_iterator(
        self,
        stream: str,
        shard: ShardDescriptor,
        after_sequence_number: Optional[int] = None,
    ) -> str:
        request = {"StreamName": stream, "ShardId": shard.shard_id}
        if after_sequence_number is not None:
            request["ShardIteratorType"] = "AFTER_SEQUENCE_NUMBER"
            request["StartingSequenceNumber"] = str(after_sequence_number)
        else:
            logger.warning(
                "No previous load for shard %s of %s; reading from TRIM_HORIZON",
                shard.shard_id,
                stream,
            )
            request["ShardIteratorType"] = "TRIM_HORIZON"

        try:
            response = self.client.get_shard_iterator(**request)
        except (BotoCoreError, ClientError) as e:
            raise BrokerError(
                f"Failed to get iterator for shard {shard.shard_id}: {e}", stream=stream
            ) from e
        return response["ShardIterator"]

    @staticmethod
    def _payload(data: Any) -> str:
        text = data.decode("utf-8") if isinstance(data, (bytes, bytearray)) else str(data)
        try:
            envelope = json.loads(text)
        except ValueError:
            return text
        if isinstance(envelope, dict) and "data" in envelope:
            return str(envelope["data"])
        return text

    def read(
        self,
        iterator: str,
        sinks: Sequence[Sink],
        limits: Optional[ReadLimits] = None,
    ) -> ShardReadResult:
        if not sinks:
            raise ValueError("read() needs at least one sink")
        limits = limits or ReadLimits()
        tracker = SequenceTracker()
        records = 0
        next_iterator: Optional[str] = iterator

        for _ in range(limits.max_requests):
            if next_iterator is None:
                break
            limit = limits.max_records_per_request
            if limits.max_records is not None:
                limit = min(limit, limits.max_records - records)
                if limit <= 0:
                    break

            try:
                response = self.client.get_records(ShardIterator=next_iterator, Limit=limit)
            except (BotoCoreError, ClientError) as e:
                raise BrokerError(f"get_records failed after {records} records: {e}") from e

            batch = response.get("Records", [])
            for record in batch:
                sinks[records % len(sinks)].write_record(self._payload(record["Data"]))
                tracker.observe(int(record["SequenceNumber"]))
                records += 1

            next_iterator = response.get("NextShardIterator")
            # caught up with the tip of the shard
            if not batch and response.get("MillisBehindLatest") == 0:
                break

        return ShardReadResult(
            records=records,
            starting_sequence_number=tracker.minimum,
            ending_sequence_number=tracker.maximum,
            next_iterator=next_iterator,
        )

    def write(
        self,
        stream: str,
        payload: str,
        partition_key: Optional[str] = None,
    ) -> bool:
        request = {
            "StreamName": stream,
            "Data": json.dumps({"data": payload}),
            "PartitionKey": partition_key or random_partition_key(),
        }
        retry_operation(
            lambda: self.client.put_record(**request),
            self.write_retry,
            f"put_record({stream})",
        )
        return True

    def create_stream(self, table: str, shard_count: int = 1) -> str:
        """Create the stream feeding a table."""
        stream = self.stream_name(table)
        try:
            self.client.create_stream(StreamName=stream, ShardCount=shard_count)
        except (BotoCoreError, ClientError) as e:
            raise BrokerError(f"Failed to create stream: {e}", table=table, stream=stream) from e
        logger.info("Created stream %s with %d shards", stream, shard_count)
        return stream

    def _wait_until_active(self, stream: str) -> None:
        for _ in range(MAX_ACTIVE_POLLS):
            summary = self.client.describe_stream_summary(StreamName=stream)
            if summary["StreamDescriptionSummary"]["StreamStatus"] == "ACTIVE":
                return
            time.sleep(self.poll_seconds)
        raise BrokerError(
            f"Stream did not become ACTIVE after {MAX_ACTIVE_POLLS} polls",
            stream=stream,
        )

    def split_shards(self, stream: str) -> List[str]:
        """Split every open shard at the midpoint of its hash key range.

        Returns the ids of the shards that were split.
        """
        split: List[str] = []
        for shard in self.shard_descriptors(stream):
            if not shard.is_open or shard.hash_key_range is None:
                continue
            start, end = shard.hash_key_range
            midpoint = (start + end) // 2
            logger.info("Splitting shard %s of %s at %d", shard.shard_id, stream, midpoint)
            try:
                self.client.split_shard(
                    StreamName=stream,
                    ShardToSplit=shard.shard_id,
                    NewStartingHashKey=str(midpoint),
                )
            except (BotoCoreError, ClientError) as e:
                raise BrokerError(
                    f"Failed to split shard {shard.shard_id}: {e}", stream=stream
                ) from e
            self._wait_until_active(stream)
            split.append(shard.shard_id)
        return split
