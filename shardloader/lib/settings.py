"""YAML configuration for the loader.

Settings are explicit objects passed at construction; nothing reads global
state after load. String values may reference environment variables.

Example YAML (loader.yaml):
    aws:
      region: us-east-1
    redshift:
      cluster_name: analytics
      host: ${REDSHIFT_HOST}
      dbname: events
      user: loader
      password: ${REDSHIFT_PASSWORD}
    broker:
      kind: kinesis
    stage:
      s3_bucket: analytics-loads
    tables:
      page_views:
        columns:
          url: {type: "varchar(256)", constraint: not null}
          viewed_at: {type: timestamp}
        sortkey: viewed_at

Usage:
    from shardloader.lib.settings import load_settings
    settings = load_settings("./loader.yaml")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from shardloader.lib.env import expand_options, load_env_file
from shardloader.lib.errors import ConfigurationError
from shardloader.lib.models import ReadLimits
from shardloader.lib.schema import TableSchema

logger = logging.getLogger(__name__)

__all__ = [
    "AwsSettings",
    "WarehouseSettings",
    "BrokerSettings",
    "StageSettings",
    "LoaderSettings",
    "load_settings",
    "settings_from_dict",
]

BROKER_KINDS = ("kinesis", "local")


@dataclass
class AwsSettings:
    region: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    endpoint_url: Optional[str] = None

    def client_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``boto3.client``."""
        kwargs: Dict[str, Any] = {}
        if self.region:
            kwargs["region_name"] = self.region
        if self.access_key_id and self.secret_access_key:
            kwargs["aws_access_key_id"] = self.access_key_id
            kwargs["aws_secret_access_key"] = self.secret_access_key
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url
        return kwargs


@dataclass
class WarehouseSettings:
    cluster_name: Optional[str] = None
    dbname: Optional[str] = None
    host: Optional[str] = None
    port: int = 5439
    user: Optional[str] = None
    password: Optional[str] = None
    driver: str = "Amazon Redshift (x64)"
    ledger_table: str = "kinesis_loads"
    max_error: int = 2
    iam_role: Optional[str] = None
    # Overrides the slice count normally read from cluster metadata
    slices: Optional[int] = None


@dataclass
class BrokerSettings:
    kind: str = "kinesis"
    log_dir: str = "log"
    max_requests: int = 100
    max_records_per_request: int = 10000
    max_records: Optional[int] = None
    write_attempts: int = 3
    write_backoff_seconds: float = 1.0

    @property
    def read_limits(self) -> ReadLimits:
        return ReadLimits(
            max_requests=self.max_requests,
            max_records_per_request=self.max_records_per_request,
            max_records=self.max_records,
        )


@dataclass
class StageSettings:
    s3_bucket: Optional[str] = None
    root: str = "shardloader"
    strict_verification: bool = False
    verify_attempts: int = 3
    verify_delay_seconds: float = 5.0
    upload_attempts: int = 3


@dataclass
class LoaderSettings:
    aws: AwsSettings = field(default_factory=AwsSettings)
    warehouse: WarehouseSettings = field(default_factory=WarehouseSettings)
    broker: BrokerSettings = field(default_factory=BrokerSettings)
    stage: StageSettings = field(default_factory=StageSettings)
    tables: Dict[str, TableSchema] = field(default_factory=dict)
    max_workers: Optional[int] = None

    def table_schema(self, table: str) -> TableSchema:
        if table not in self.tables:
            raise ConfigurationError(
                f"No schema configured for table '{table}'",
                field="tables",
                value=table,
                suggestion=f"Add a 'tables.{table}' section to the settings file.",
            )
        return self.tables[table]


def _section(config: Dict[str, Any], name: str, cls: Any) -> Any:
    data = config.get(name) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"'{name}' must be a mapping", field=name)
    known = set(cls.__dataclass_fields__)
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in '{name}': {', '.join(unknown)}",
            field=name,
            details={"valid_keys": ", ".join(sorted(known))},
        )
    return cls(**data)


def settings_from_dict(config: Dict[str, Any]) -> LoaderSettings:
    """Build settings from an already-parsed mapping (env vars expanded here)."""
    config = expand_options(config or {})

    broker = _section(config, "broker", BrokerSettings)
    if broker.kind not in BROKER_KINDS:
        raise ConfigurationError(
            f"Invalid broker kind '{broker.kind}'. Valid options: {', '.join(BROKER_KINDS)}",
            field="broker.kind",
            value=broker.kind,
        )

    tables = {
        name: TableSchema.from_dict(name, table_config)
        for name, table_config in (config.get("tables") or {}).items()
    }

    return LoaderSettings(
        aws=_section(config, "aws", AwsSettings),
        warehouse=_section(config, "redshift", WarehouseSettings),
        broker=broker,
        stage=_section(config, "stage", StageSettings),
        tables=tables,
        max_workers=config.get("max_workers"),
    )


def load_settings(
    path: Union[str, Path],
    *,
    env_file: Optional[Union[str, Path]] = None,
) -> LoaderSettings:
    """Load settings from a YAML file.

    A .env file (explicit, or discovered from the working directory) is
    loaded first so ${VAR} references can resolve against it.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Settings file not found: {path}", field="path")

    load_env_file(env_file)

    with open(path, encoding="utf-8") as f:
        try:
            config = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(
                f"Invalid YAML in {path}: {exc}", field="path"
            ) from exc

    if not isinstance(config, dict):
        raise ConfigurationError(f"Settings file {path} must contain a mapping")

    logger.debug("Loaded settings from %s", path)
    return settings_from_dict(config)
