"""Checkpoint ledger: the audit table of loaded sequence ranges.

One row per (table, stream, shard) load. The ledger is append-only and is
the only state carried from one load cycle to the next: a shard resumes
right after the ending sequence number of its most recent row.

Example:
    >>> ledger = CheckpointLedger(warehouse)
    >>> row = ledger.last_checkpoint("page_views", stream, "shardId-000000000000")
    >>> row.ending_sequence_number
    49546986683135544286507457936321625675700192471156785154
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from shardloader.lib.errors import LedgerError
from shardloader.lib.models import CheckpointRow, ShardDescriptor, ShardReadResult
from shardloader.lib.schema import TableSchema, create_table_sql
from shardloader.lib.warehouse import Warehouse

logger = logging.getLogger(__name__)

__all__ = [
    "CheckpointLedger",
    "DEFAULT_LEDGER_TABLE",
    "find_overlap",
    "ledger_schema",
    "ranges_overlap",
]

DEFAULT_LEDGER_TABLE = "kinesis_loads"

_COLUMNS = (
    "stream_name",
    "shard_id",
    "table_name",
    "starting_sequence_number",
    "ending_sequence_number",
    "load_timestamp",
)


def ledger_schema(table_name: str = DEFAULT_LEDGER_TABLE) -> TableSchema:
    """Schema of the ledger table.

    Sequence numbers are stored as text; they exceed the warehouse's numeric
    precision.
    """
    columns = {name: {"type": "varchar(64)"} for name in _COLUMNS[:-1]}
    columns["load_timestamp"] = {"type": "timestamp", "constraint": "not null"}
    return TableSchema.from_dict(
        table_name, {"columns": columns, "sortkey": "load_timestamp"}
    )


def ranges_overlap(a: int, b: int, c: int, d: int) -> bool:
    """True when a candidate range [c, d] overlaps a loaded range [a, b].

    A candidate starting right at the end of a multi-record loaded range is
    not an overlap. A loaded single record [a, a] overlaps any candidate that
    contains it.
    """
    return a < c < b or a < d < b or (c <= a and b <= d)


def find_overlap(
    candidate_start: int,
    candidate_end: int,
    rows: Iterable[CheckpointRow],
) -> Optional[CheckpointRow]:
    """First loaded row whose range overlaps the candidate range."""
    for row in rows:
        if ranges_overlap(
            row.starting_sequence_number,
            row.ending_sequence_number,
            candidate_start,
            candidate_end,
        ):
            return row
    return None


class CheckpointLedger:
    """Reads and appends checkpoint rows through a warehouse connection.

    The ledger never opens or ends transactions itself; the loader decides
    which statements run inside the commit transaction.
    """

    def __init__(self, warehouse: Warehouse, table_name: str = DEFAULT_LEDGER_TABLE) -> None:
        self.warehouse = warehouse
        self.table_name = table_name

    def last_checkpoint(
        self, table: str, stream: str, shard_id: str
    ) -> Optional[CheckpointRow]:
        """Most recent checkpoint of a shard, or None if it was never loaded.

        Raises:
            LedgerError: The two most recent rows share a load timestamp, so
                the resume point is ambiguous.
        """
        rows = self.warehouse.query(
            f"select {', '.join(_COLUMNS)} from {self.table_name} "
            "where table_name = ? and stream_name = ? and shard_id = ? "
            "order by load_timestamp desc limit 2",
            (table, stream, shard_id),
        )
        if not rows:
            return None
        if len(rows) == 2 and rows[0]["load_timestamp"] == rows[1]["load_timestamp"]:
            raise LedgerError(
                f"Two checkpoints for shard {shard_id} share load timestamp "
                f"{rows[0]['load_timestamp']}",
                table=table,
                stream=stream,
                details={"rows": rows},
                suggestion=f"Inspect and repair {self.table_name} for this shard.",
            )
        return CheckpointRow.from_record(rows[0])

    def last_checkpoints(
        self,
        table: str,
        stream: str,
        shards: Sequence[ShardDescriptor],
    ) -> Dict[str, Optional[CheckpointRow]]:
        return {
            shard.shard_id: self.last_checkpoint(table, stream, shard.shard_id)
            for shard in shards
        }

    def checkpoints(
        self, table: str, stream: str, shard_ids: Sequence[str]
    ) -> List[CheckpointRow]:
        """All rows for the given shards, newest first within each shard."""
        if not shard_ids:
            return []
        placeholders = ", ".join("?" for _ in shard_ids)
        rows = self.warehouse.query(
            f"select {', '.join(_COLUMNS)} from {self.table_name} "
            f"where table_name = ? and stream_name = ? and shard_id in ({placeholders}) "
            "order by shard_id, load_timestamp desc",
            (table, stream, *shard_ids),
        )
        return [CheckpointRow.from_record(row) for row in rows]

    def insert(self, table: str, stream: str, results: Sequence[ShardReadResult]) -> None:
        """Append one row per shard result, stamped by the warehouse clock."""
        sql = (
            f"insert into {self.table_name} ({', '.join(_COLUMNS)}) "
            f"values (?, ?, ?, ?, ?, {self.warehouse.current_timestamp_sql})"
        )
        for result in results:
            if result.starting_sequence_number is None or result.ending_sequence_number is None:
                raise LedgerError(
                    f"Shard {result.shard_id} has no sequence range to record",
                    table=table,
                    stream=stream,
                )
            self.warehouse.execute(
                sql,
                (
                    stream,
                    result.shard_id,
                    table,
                    str(result.starting_sequence_number),
                    str(result.ending_sequence_number),
                ),
            )
        logger.debug("Inserted %d checkpoints into %s", len(results), self.table_name)

    def create_table(self) -> str:
        """Create the ledger table and return the DDL that was run."""
        sql = create_table_sql(
            ledger_schema(self.table_name),
            table_attributes=self.warehouse.supports_table_attributes,
        )
        self.warehouse.execute(sql)
        logger.info("Created checkpoint ledger %s", self.table_name)
        return sql
