"""CLI entry point.

Usage:
    python -m shardloader --config loader.yaml load page_views
    python -m shardloader --config loader.yaml create-ledger
    python -m shardloader --config loader.yaml create-table page_views
    python -m shardloader --config loader.yaml create-stream page_views --shards 2
    python -m shardloader --config loader.yaml split-shards page_views
    python -m shardloader --config loader.yaml write page_views '{"url": "/"}'
    python -m shardloader --config loader.yaml cleanup-stage page_views --date 2025-01-15
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date, datetime
from typing import List, Optional

from shardloader.lib.broker import KinesisBroker, get_broker
from shardloader.lib.checkpoint import CheckpointLedger
from shardloader.lib.client import Writer
from shardloader.lib.errors import LoaderError
from shardloader.lib.loader import Loader
from shardloader.lib.observability import setup_logging
from shardloader.lib.schema import create_table_sql
from shardloader.lib.settings import LoaderSettings, load_settings
from shardloader.lib.stage import BlobStage
from shardloader.lib.warehouse import connect_warehouse

logger = logging.getLogger(__name__)


def _kinesis_broker(settings: LoaderSettings) -> KinesisBroker:
    broker = get_broker(settings)
    if not isinstance(broker, KinesisBroker):
        print(f"Stream administration needs the kinesis broker (configured: {broker.kind})")
        sys.exit(1)
    return broker


def load_command(settings: LoaderSettings, args: argparse.Namespace) -> int:
    loader = Loader.from_settings(settings)
    exit_code = 0
    try:
        for table in args.tables:
            outcome = loader.load(table)
            summary = {
                "table": table,
                "success": outcome.success,
                "records_loaded": outcome.records_loaded,
                "failure": outcome.failure.value if outcome.failure else None,
            }
            print(json.dumps(summary))
            if not outcome.success:
                exit_code = 1
    finally:
        loader.warehouse.close()
    return exit_code


def create_ledger_command(settings: LoaderSettings, args: argparse.Namespace) -> int:
    with connect_warehouse(settings) as warehouse:
        ledger = CheckpointLedger(warehouse, settings.warehouse.ledger_table)
        ledger.create_table()
    print(f"Created ledger table {settings.warehouse.ledger_table}")
    return 0


def create_table_command(settings: LoaderSettings, args: argparse.Namespace) -> int:
    schema = settings.table_schema(args.table)
    with connect_warehouse(settings) as warehouse:
        warehouse.execute(
            create_table_sql(schema, table_attributes=warehouse.supports_table_attributes)
        )
    print(f"Created table {args.table}")
    return 0


def create_stream_command(settings: LoaderSettings, args: argparse.Namespace) -> int:
    stream = _kinesis_broker(settings).create_stream(args.table, args.shards)
    print(f"Created stream {stream}")
    return 0


def split_shards_command(settings: LoaderSettings, args: argparse.Namespace) -> int:
    broker = _kinesis_broker(settings)
    split = broker.split_shards(broker.stream_name(args.table))
    print(f"Split {len(split)} shards: {', '.join(split) or '-'}")
    return 0


def write_command(settings: LoaderSettings, args: argparse.Namespace) -> int:
    writer = Writer(get_broker(settings), settings.tables)
    lines = sys.stdin if args.record == "-" else [args.record]
    written = 0
    for line in lines:
        line = line.strip()
        if not line:
            continue
        writer.write(args.table, json.loads(line), args.partition_key)
        written += 1
    print(f"Wrote {written} records to {args.table}")
    return 0


def cleanup_stage_command(settings: LoaderSettings, args: argparse.Namespace) -> int:
    deleted = BlobStage.from_settings(settings).cleanup(args.table, args.date)
    print(f"Deleted {deleted} staged objects")
    return 0


def _parse_date(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shard-loader",
        description="Load Kinesis streams into Redshift, each range exactly once",
    )
    parser.add_argument(
        "--config",
        "-c",
        default="loader.yaml",
        help="Settings file (default: loader.yaml)",
    )
    parser.add_argument(
        "--env-file",
        help="Load environment variables from this .env file",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (includes issued SQL)",
    )
    parser.add_argument(
        "--json-log",
        action="store_true",
        help="Output logs in JSON format (for log aggregation systems)",
    )
    parser.add_argument(
        "--log-file",
        help="Write logs to a file in addition to console",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    load = commands.add_parser("load", help="Run one load cycle per table")
    load.add_argument("tables", nargs="+", help="Warehouse tables to load")
    load.set_defaults(handler=load_command)

    ledger = commands.add_parser("create-ledger", help="Create the checkpoint ledger table")
    ledger.set_defaults(handler=create_ledger_command)

    table = commands.add_parser("create-table", help="Create a table from its configured schema")
    table.add_argument("table")
    table.set_defaults(handler=create_table_command)

    stream = commands.add_parser("create-stream", help="Create the Kinesis stream of a table")
    stream.add_argument("table")
    stream.add_argument("--shards", type=int, default=1, help="Shard count (default: 1)")
    stream.set_defaults(handler=create_stream_command)

    split = commands.add_parser("split-shards", help="Split every open shard of a table's stream")
    split.add_argument("table")
    split.set_defaults(handler=split_shards_command)

    write = commands.add_parser("write", help="Validate and write records to a table's stream")
    write.add_argument("table")
    write.add_argument("record", help="JSON object, or - to read one object per line from stdin")
    write.add_argument("--partition-key", help="Partition key (default: random)")
    write.set_defaults(handler=write_command)

    cleanup = commands.add_parser("cleanup-stage", help="Delete a day's staged blobs of a table")
    cleanup.add_argument("table")
    cleanup.add_argument("--date", type=_parse_date, required=True, help="YYYY-MM-DD")
    cleanup.set_defaults(handler=cleanup_stage_command)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the CLI."""
    args = build_parser().parse_args(argv)
    setup_logging(verbose=args.verbose, json_format=args.json_log, log_file=args.log_file)

    try:
        settings = load_settings(args.config, env_file=args.env_file)
        exit_code = args.handler(settings, args)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        sys.exit(130)
    except LoaderError as e:
        logger.error("%s", e, extra={"error": e.to_dict()})
        sys.exit(1)
    except Exception as e:
        logger.exception("Command failed: %s", e)
        sys.exit(1)

    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
