"""Value types shared by the broker, ledger, reader and loader.

Sequence numbers are Python ints throughout. Kinesis sequence numbers run to
56 digits, beyond any fixed-width type and beyond the warehouse's numeric
precision, so they are parsed with ``int()`` on the way in and rendered with
``str()`` only at the storage boundary.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from shardloader.lib.errors import LoadFailedError

__all__ = [
    "parse_sequence_number",
    "ShardDescriptor",
    "CheckpointRow",
    "ReadLimits",
    "ShardReadResult",
    "ShardFailure",
    "ManifestEntry",
    "Manifest",
    "LoadFailure",
    "LoadContext",
    "LoadOutcome",
]


def parse_sequence_number(value: Any) -> Optional[int]:
    """Parse a sequence number into an int.

    Accepts ints, decimal strings and ``None``/empty string (no position).
    """
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    return int(text)


@dataclass(frozen=True)
class ShardDescriptor:
    """Snapshot of one shard as reported by the broker."""

    shard_id: str
    hash_key_range: Optional[Tuple[int, int]] = None
    sequence_number_range: Optional[Tuple[int, Optional[int]]] = None

    @property
    def is_open(self) -> bool:
        """True while the shard still accepts writes (no ending sequence)."""
        if self.sequence_number_range is None:
            return True
        return self.sequence_number_range[1] is None

    @classmethod
    def from_kinesis(cls, shard: Dict[str, Any]) -> "ShardDescriptor":
        """Build from a ``describe_stream`` shard entry."""
        hash_range = shard.get("HashKeyRange")
        seq_range = shard.get("SequenceNumberRange")
        return cls(
            shard_id=shard["ShardId"],
            hash_key_range=(
                (int(hash_range["StartingHashKey"]), int(hash_range["EndingHashKey"]))
                if hash_range
                else None
            ),
            sequence_number_range=(
                (
                    int(seq_range["StartingSequenceNumber"]),
                    parse_sequence_number(seq_range.get("EndingSequenceNumber")),
                )
                if seq_range
                else None
            ),
        )


@dataclass(frozen=True)
class CheckpointRow:
    """One row of the checkpoint ledger."""

    stream_name: str
    shard_id: str
    table_name: str
    starting_sequence_number: int
    ending_sequence_number: int
    load_timestamp: Any

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "CheckpointRow":
        return cls(
            stream_name=record["stream_name"],
            shard_id=record["shard_id"],
            table_name=record["table_name"],
            starting_sequence_number=int(record["starting_sequence_number"]),
            ending_sequence_number=int(record["ending_sequence_number"]),
            load_timestamp=record["load_timestamp"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stream_name": self.stream_name,
            "shard_id": self.shard_id,
            "table_name": self.table_name,
            "starting_sequence_number": str(self.starting_sequence_number),
            "ending_sequence_number": str(self.ending_sequence_number),
            "load_timestamp": str(self.load_timestamp),
        }


@dataclass(frozen=True)
class ReadLimits:
    """Limits for a single shard read."""

    max_requests: int = 100
    max_records_per_request: int = 10000
    max_records: Optional[int] = None


@dataclass
class ShardReadResult:
    """Outcome of reading (and staging) one shard.

    The broker fills in the read fields; the shard reader adds the shard
    identity and the staged blob URLs.
    """

    shard_id: str = ""
    records: int = 0
    starting_sequence_number: Optional[int] = None
    ending_sequence_number: Optional[int] = None
    next_iterator: Optional[str] = None
    staged_blob_urls: List[str] = field(default_factory=list)

    @property
    def has_records(self) -> bool:
        return self.records > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shard_id": self.shard_id,
            "records": self.records,
            "starting_sequence_number": (
                str(self.starting_sequence_number)
                if self.starting_sequence_number is not None
                else None
            ),
            "ending_sequence_number": (
                str(self.ending_sequence_number)
                if self.ending_sequence_number is not None
                else None
            ),
            "staged_blob_urls": list(self.staged_blob_urls),
        }


@dataclass
class ShardFailure:
    """A shard worker failure captured with its shard identity."""

    shard_id: str
    error: BaseException
    traceback: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shard_id": self.shard_id,
            "error_type": type(self.error).__name__,
            "error": str(self.error),
            "traceback": self.traceback,
        }


@dataclass(frozen=True)
class ManifestEntry:
    url: str
    mandatory: bool = True


@dataclass
class Manifest:
    """The set of staged blobs presented to the bulk load as one unit."""

    entries: List[ManifestEntry] = field(default_factory=list)

    def add(self, url: str, mandatory: bool = True) -> None:
        self.entries.append(ManifestEntry(url=url, mandatory=mandatory))

    @property
    def urls(self) -> List[str]:
        return [entry.url for entry in self.entries]

    def __len__(self) -> int:
        return len(self.entries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": [
                {"url": entry.url, "mandatory": entry.mandatory}
                for entry in self.entries
            ]
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str) -> "Manifest":
        data = json.loads(text)
        return cls(
            entries=[
                ManifestEntry(url=e["url"], mandatory=bool(e.get("mandatory", True)))
                for e in data.get("entries", [])
            ]
        )


class LoadFailure(Enum):
    """Why a commit attempt did not load anything."""

    OVERLAP = "overlap"
    RACE = "race"
    BULK_LOAD_ERROR = "bulk_load_error"


@dataclass
class LoadContext:
    """Everything observed during one load cycle.

    Attached to outcomes and errors so a failed cycle can be replayed or
    debugged without re-deriving state.
    """

    table: str
    stream: str
    shards: List[ShardDescriptor] = field(default_factory=list)
    last_checkpoints: Dict[str, Optional[CheckpointRow]] = field(default_factory=dict)
    results: List[ShardReadResult] = field(default_factory=list)
    failures: List[ShardFailure] = field(default_factory=list)
    manifest: Optional[Manifest] = None
    manifest_url: Optional[str] = None
    slices: int = 1

    @property
    def shards_to_load(self) -> List[ShardReadResult]:
        return [result for result in self.results if result.has_records]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "stream": self.stream,
            "shards": [shard.shard_id for shard in self.shards],
            "last_checkpoints": {
                shard_id: row.to_dict() if row else None
                for shard_id, row in self.last_checkpoints.items()
            },
            "results": [result.to_dict() for result in self.results],
            "failures": [failure.to_dict() for failure in self.failures],
            "manifest": self.manifest.to_dict() if self.manifest else None,
            "manifest_url": self.manifest_url,
            "slices": self.slices,
        }


@dataclass
class LoadOutcome:
    """Result of a load cycle.

    Race and overlap are expected outcomes, not exceptions: callers check
    ``success`` (or call ``raise_for_failure``).
    """

    success: bool
    records_loaded: Optional[int] = None
    failure: Optional[LoadFailure] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    context: Optional[LoadContext] = None

    @classmethod
    def loaded(cls, records: Optional[int], **detail: Any) -> "LoadOutcome":
        return cls(success=True, records_loaded=records, detail=detail)

    @classmethod
    def failed(cls, failure: LoadFailure, **detail: Any) -> "LoadOutcome":
        return cls(success=False, failure=failure, detail=detail)

    def raise_for_failure(self) -> "LoadOutcome":
        if not self.success:
            raise LoadFailedError(self)
        return self
