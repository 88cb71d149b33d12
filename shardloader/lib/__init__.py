"""Loader library modules.

This package contains the broker, stage, ledger and loader abstractions
used to move stream records into the warehouse.
"""

from shardloader.lib.broker import Broker, KinesisBroker, LocalFileBroker, get_broker
from shardloader.lib.checkpoint import CheckpointLedger, find_overlap, ranges_overlap
from shardloader.lib.client import Writer
from shardloader.lib.env import expand_env_vars, expand_options, load_env_file
from shardloader.lib.errors import (
    BrokerError,
    ConfigurationError,
    LedgerError,
    LoadFailedError,
    LoaderError,
    RecordValidationError,
    ShardReadError,
    StageError,
    StageVerificationError,
    WarehouseError,
)
from shardloader.lib.loader import Loader
from shardloader.lib.manifest import build_manifest, upload_manifest
from shardloader.lib.models import (
    CheckpointRow,
    LoadContext,
    LoadFailure,
    LoadOutcome,
    Manifest,
    ReadLimits,
    ShardDescriptor,
    ShardFailure,
    ShardReadResult,
)
from shardloader.lib.reader import ParallelShardReader
from shardloader.lib.resilience import RetryConfig, retry_operation
from shardloader.lib.schema import ColumnType, TableSchema, create_table_sql
from shardloader.lib.settings import LoaderSettings, load_settings, settings_from_dict
from shardloader.lib.stage import BlobStage
from shardloader.lib.warehouse import RedshiftWarehouse, Warehouse, connect_warehouse

__all__ = [
    # Brokers
    "Broker",
    "KinesisBroker",
    "LocalFileBroker",
    "get_broker",
    # Ledger
    "CheckpointLedger",
    "find_overlap",
    "ranges_overlap",
    # Loading
    "Loader",
    "ParallelShardReader",
    "build_manifest",
    "upload_manifest",
    "BlobStage",
    "Warehouse",
    "RedshiftWarehouse",
    "connect_warehouse",
    # Writing
    "Writer",
    "ColumnType",
    "TableSchema",
    "create_table_sql",
    # Models
    "CheckpointRow",
    "LoadContext",
    "LoadFailure",
    "LoadOutcome",
    "Manifest",
    "ReadLimits",
    "ShardDescriptor",
    "ShardFailure",
    "ShardReadResult",
    # Configuration
    "LoaderSettings",
    "load_settings",
    "settings_from_dict",
    "expand_env_vars",
    "expand_options",
    "load_env_file",
    # Resilience
    "RetryConfig",
    "retry_operation",
    # Errors
    "LoaderError",
    "ConfigurationError",
    "BrokerError",
    "StageError",
    "StageVerificationError",
    "LedgerError",
    "WarehouseError",
    "ShardReadError",
    "LoadFailedError",
    "RecordValidationError",
]
