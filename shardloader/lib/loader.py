"""Load cycle orchestration and the exactly-once commit.

A load cycle for one table:

1. describe the stream's shards and the warehouse's slice count
2. resolve each shard's last checkpoint
3. read and stage every shard in parallel
4. build and upload a manifest of the staged blobs
5. commit in a single warehouse transaction: re-check for a racing loader,
   reject overlapping ranges, insert checkpoints, bulk load, commit

Example:
    >>> loader = Loader.from_settings(load_settings("loader.yaml"))
    >>> outcome = loader.load("page_views")
    >>> outcome.raise_for_failure().records_loaded
    1500
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Any, Callable, Dict, List, Optional

import boto3

from shardloader.lib.broker import get_broker
from shardloader.lib.broker.base import Broker
from shardloader.lib.checkpoint import CheckpointLedger, find_overlap
from shardloader.lib.errors import ConfigurationError, ShardReadError
from shardloader.lib.manifest import build_manifest, upload_manifest
from shardloader.lib.models import (
    CheckpointRow,
    LoadContext,
    LoadFailure,
    LoadOutcome,
    ReadLimits,
)
from shardloader.lib.observability import CycleProfiler
from shardloader.lib.reader import ParallelShardReader
from shardloader.lib.settings import LoaderSettings
from shardloader.lib.stage import BlobStage
from shardloader.lib.warehouse import Warehouse, connect_warehouse, slices_for_cluster

logger = logging.getLogger(__name__)

__all__ = ["Loader"]


def _row(row: Optional[CheckpointRow]) -> Optional[Dict[str, Any]]:
    return row.to_dict() if row else None


class Loader:
    """Moves new stream records into a warehouse table, once per range.

    Args:
        broker: Stream broker
        stage: Blob stage for sinks and manifests
        warehouse: Connection used for checkpoints and the commit transaction
        ledger: Checkpoint ledger (default: ``kinesis_loads`` on ``warehouse``)
        slices: Fixed slice count; when omitted it is read from the cluster
        redshift_client: boto3 Redshift client used to look up the slice count
        cluster_name: Cluster to look up
        limits: Read limits per shard
        max_workers: Reader thread pool size
    """

    def __init__(
        self,
        broker: Broker,
        stage: BlobStage,
        warehouse: Warehouse,
        ledger: Optional[CheckpointLedger] = None,
        *,
        slices: Optional[int] = None,
        redshift_client: Optional[Any] = None,
        cluster_name: Optional[str] = None,
        limits: Optional[ReadLimits] = None,
        max_workers: Optional[int] = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.broker = broker
        self.stage = stage
        self.warehouse = warehouse
        self.ledger = ledger or CheckpointLedger(warehouse)
        self._slices = slices
        self.redshift_client = redshift_client
        self.cluster_name = cluster_name
        self.limits = limits or ReadLimits()
        self.max_workers = max_workers
        self.today = today

    @classmethod
    def from_settings(
        cls,
        settings: LoaderSettings,
        *,
        broker: Optional[Broker] = None,
        stage: Optional[BlobStage] = None,
        warehouse: Optional[Warehouse] = None,
        redshift_client: Optional[Any] = None,
    ) -> "Loader":
        warehouse = warehouse or connect_warehouse(settings)
        if settings.warehouse.slices is None and redshift_client is None:
            redshift_client = boto3.client("redshift", **settings.aws.client_kwargs())
        return cls(
            broker or get_broker(settings),
            stage or BlobStage.from_settings(settings),
            warehouse,
            CheckpointLedger(warehouse, settings.warehouse.ledger_table),
            slices=settings.warehouse.slices,
            redshift_client=redshift_client,
            cluster_name=settings.warehouse.cluster_name,
            limits=settings.broker.read_limits,
            max_workers=settings.max_workers,
        )

    def slices(self) -> int:
        """Number of sinks per shard, one per warehouse slice."""
        if self._slices is not None:
            return self._slices
        if self.redshift_client is None or not self.cluster_name:
            raise ConfigurationError(
                "Cannot determine slice count without a cluster name",
                field="redshift.slices",
                suggestion="Set redshift.cluster_name, or redshift.slices explicitly.",
            )
        self._slices = slices_for_cluster(self.redshift_client, self.cluster_name)
        return self._slices

    def load(self, table: str) -> LoadOutcome:
        """Run one load cycle for a table.

        Returns:
            The outcome; race, overlap and bulk load errors are reported as
            failed outcomes, not raised.

        Raises:
            ShardReadError: A shard worker failed, nothing was committed
            ConfigurationError: Stream, stage or cluster settings are missing
        """
        stream = self.broker.stream_name(table)
        profiler = CycleProfiler(logger, f"[{table} <- {stream}]")
        context = LoadContext(table=table, stream=stream)

        with profiler.phase("describe"):
            context.shards = self.broker.shard_descriptors(stream)
            context.slices = self.slices()
            context.last_checkpoints = self.ledger.last_checkpoints(
                table, stream, context.shards
            )
        profiler.profile(
            "%d shards, %d slices", len(context.shards), context.slices
        )

        prefix = self.stage.prefix(table, self.today(), uuid.uuid4().hex)
        reader = ParallelShardReader(
            self.broker,
            self.stage,
            slices=context.slices,
            limits=self.limits,
            max_workers=self.max_workers,
        )
        with profiler.phase("read"):
            context.results, context.failures = reader.read(
                stream, context.shards, context.last_checkpoints, prefix
            )

        if context.failures:
            raise ShardReadError(
                f"{len(context.failures)} of {len(context.shards)} shards failed; "
                "load cycle aborted",
                failures=context.failures,
                context=context,
            )

        to_load = context.shards_to_load
        if not to_load:
            profiler.profile("No new records")
            outcome = LoadOutcome.loaded(0)
            outcome.context = context
            return outcome

        context.manifest = build_manifest(to_load)
        with profiler.phase("manifest"):
            context.manifest_url = upload_manifest(self.stage, context.manifest, prefix)

        with profiler.phase("commit"):
            outcome = self.commit(context)
        outcome.context = context

        if outcome.success:
            profiler.profile(
                "Loaded %s records from %d shards", outcome.records_loaded, len(to_load)
            )
        else:
            logger.error(
                "Load of %s failed (%s): %s",
                table,
                outcome.failure.value if outcome.failure else "unknown",
                outcome.detail,
            )
        logger.debug("Cycle timings for %s: %s", table, profiler.summary())
        return outcome

    def commit(self, context: LoadContext) -> LoadOutcome:
        """Commit checkpoints and bulk load in one transaction.

        Nothing is inserted unless every shard passes the race and overlap
        checks, and nothing is kept unless the bulk load succeeds.
        """
        table, stream = context.table, context.stream
        to_load = context.shards_to_load
        try:
            self.warehouse.begin()

            for result in to_load:
                expected = context.last_checkpoints.get(result.shard_id)
                found = self.ledger.last_checkpoint(table, stream, result.shard_id)
                if found != expected:
                    self.warehouse.rollback()
                    logger.warning(
                        "Another loader committed shard %s of %s since it was read",
                        result.shard_id,
                        stream,
                    )
                    return LoadOutcome.failed(
                        LoadFailure.RACE,
                        shard_id=result.shard_id,
                        expected=_row(expected),
                        found=_row(found),
                    )

            rows_by_shard: Dict[str, List[CheckpointRow]] = {}
            for row in self.ledger.checkpoints(
                table, stream, [result.shard_id for result in to_load]
            ):
                rows_by_shard.setdefault(row.shard_id, []).append(row)

            for result in to_load:
                overlap = find_overlap(
                    result.starting_sequence_number,
                    result.ending_sequence_number,
                    rows_by_shard.get(result.shard_id, []),
                )
                if overlap is not None:
                    self.warehouse.rollback()
                    logger.warning(
                        "Range %s - %s of shard %s was already loaded",
                        result.starting_sequence_number,
                        result.ending_sequence_number,
                        result.shard_id,
                    )
                    return LoadOutcome.failed(
                        LoadFailure.OVERLAP,
                        shard_id=result.shard_id,
                        candidate=result.to_dict(),
                        loaded=overlap.to_dict(),
                    )

            self.ledger.insert(table, stream, to_load)
            records = self.warehouse.bulk_load(table, context.manifest_url or "")
            self.warehouse.commit()
        except Exception as e:
            logger.error("Commit of %s failed: %s", table, e)
            self._rollback()
            return LoadOutcome.failed(
                LoadFailure.BULK_LOAD_ERROR,
                error=str(e),
                error_type=type(e).__name__,
                load_errors=self._load_errors(table, context),
            )

        return LoadOutcome.loaded(records)

    def _rollback(self) -> None:
        try:
            self.warehouse.rollback()
        except Exception as e:
            logger.error("Rollback failed: %s", e)

    def _load_errors(self, table: str, context: LoadContext) -> List[Dict[str, Any]]:
        urls = context.manifest.urls if context.manifest else []
        try:
            errors = self.warehouse.load_errors(table, urls)
        except Exception as e:
            logger.error("Unable to fetch load errors for %s: %s", table, e)
            return []
        for error in errors:
            logger.error("Load error: %s", error)
        return errors
