"""Warehouse connections.

``Warehouse`` is a thin wrapper over a DB-API connection running in
autocommit mode, with transactions driven by explicit ``BEGIN`` / ``COMMIT``
/ ``ROLLBACK`` statements. ``RedshiftWarehouse`` adds the bulk load (``COPY``
from a manifest) and the load error diagnostics.

Example:
    >>> warehouse = connect_warehouse(settings)
    >>> warehouse.query("select count(*) as n from kinesis_loads")
    [{'n': 42}]
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Sequence

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from shardloader.lib.errors import ConfigurationError, WarehouseError
from shardloader.lib.settings import LoaderSettings

logger = logging.getLogger(__name__)

__all__ = [
    "Warehouse",
    "RedshiftWarehouse",
    "build_copy_command",
    "connect_warehouse",
    "slices_for_cluster",
    "SLICES_PER_NODE",
]

# Slices per node by node type
SLICES_PER_NODE: Dict[str, int] = {
    "dw1.xlarge": 2,
    "dw1.8xlarge": 16,
    "dw2.large": 2,
    "dw2.8xlarge": 32,
    "dc1.large": 2,
    "dc1.8xlarge": 32,
    "dc2.large": 2,
    "dc2.8xlarge": 16,
    "ds2.xlarge": 2,
    "ds2.8xlarge": 16,
    "ra3.xlplus": 2,
    "ra3.4xlarge": 4,
    "ra3.16xlarge": 16,
}

# Server notice for COPY, e.g. "Load into table 'page_views' completed, 1500 record(s) loaded successfully."
_LOADED_RECORDS_PATTERN = re.compile(r".*,.(\d+).record.*")

_LOAD_ERRORS_QUERY = (
    "select sl.query, sl.tbl, trim(sp.name) as table_name, sl.starttime, "
    "trim(sl.filename) as filename, sl.line_number, trim(sl.raw_line) as raw_line, "
    "trim(sl.colname) as colname, trim(sl.raw_field_value) as raw_field_value, "
    "sl.err_code, trim(sl.err_reason) as err_reason "
    "from stl_load_errors sl, stv_tbl_perm sp "
    "where sl.tbl = sp.id and trim(sp.name) = ? and trim(sl.filename) in ({placeholders}) "
    "order by sl.starttime desc limit 20"
)


def _quote(value: str) -> str:
    return value.replace("'", "''")


def build_copy_command(
    table: str,
    manifest_url: str,
    *,
    credentials: Optional[str] = None,
    iam_role: Optional[str] = None,
    max_error: int = 2,
) -> str:
    """Render the ``COPY`` statement loading a manifest of gzip JSON blobs.

    Exactly one of ``credentials`` (an ``aws_access_key_id=...;
    aws_secret_access_key=...`` string) or ``iam_role`` must be given.
    """
    if bool(credentials) == bool(iam_role):
        raise ConfigurationError(
            "COPY needs exactly one of credentials or iam_role",
            field="redshift.iam_role",
            table=table,
        )
    authorization = (
        f"IAM_ROLE '{_quote(iam_role)}'"
        if iam_role
        else f"WITH CREDENTIALS '{_quote(credentials or '')}'"
    )
    return (
        f"COPY {table} FROM '{_quote(manifest_url)}' {authorization} "
        f"json 'auto' timeformat 'auto' GZIP MAXERROR {int(max_error)} manifest"
    )


def _redact(sql: str) -> str:
    return re.sub(r"(CREDENTIALS ')[^']*(')", r"\1***\2", sql)


class Warehouse:
    """DB-API connection wrapper.

    Parameters use the ``qmark`` style. Query results come back as a list of
    dicts keyed by column name.
    """

    # SQL expression for the current time, evaluated by the warehouse
    current_timestamp_sql = "CURRENT_TIMESTAMP"
    # Whether CREATE TABLE accepts distkey/sortkey
    supports_table_attributes = False

    def __init__(self, connection: Any, name: str = "warehouse") -> None:
        self.connection = connection
        self.name = name

    def _run(self, sql: str, params: Sequence[Any]) -> Any:
        logger.debug("[%s] %s %s", self.name, _redact(sql), list(params) if params else "")
        cursor = self.connection.cursor()
        try:
            if params:
                cursor.execute(sql, tuple(params))
            else:
                cursor.execute(sql)
        except Exception as e:
            cursor.close()
            raise WarehouseError(
                f"Statement failed on {self.name}: {e}",
                details={"sql": _redact(sql)[:500]},
            ) from e
        return cursor

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a statement and return its row count."""
        cursor = self._run(sql, params)
        try:
            return cursor.rowcount
        finally:
            cursor.close()

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        cursor = self._run(sql, params)
        try:
            columns = [column[0] for column in cursor.description or []]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def begin(self) -> None:
        self.execute("BEGIN")

    def commit(self) -> None:
        self.execute("COMMIT")

    def rollback(self) -> None:
        self.execute("ROLLBACK")

    def bulk_load(self, table: str, manifest_url: str) -> int:
        """Load a manifest into a table and return the loaded row count."""
        raise NotImplementedError(f"{type(self).__name__} does not support bulk loads")

    def load_errors(self, table: str, urls: Sequence[str]) -> List[Dict[str, Any]]:
        """Rows describing why the most recent bulk load of these URLs failed."""
        return []

    def close(self) -> None:
        self.connection.close()

    def __enter__(self) -> "Warehouse":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class RedshiftWarehouse(Warehouse):
    """Amazon Redshift over ODBC."""

    current_timestamp_sql = "GETDATE()"
    supports_table_attributes = True

    def __init__(
        self,
        connection: Any,
        *,
        credentials: Optional[str] = None,
        iam_role: Optional[str] = None,
        max_error: int = 2,
        name: str = "redshift",
    ) -> None:
        super().__init__(connection, name=name)
        self.credentials = credentials
        self.iam_role = iam_role
        self.max_error = max_error

    @staticmethod
    def _loaded_records(cursor: Any) -> Optional[int]:
        if cursor.rowcount is not None and cursor.rowcount >= 0:
            return cursor.rowcount
        for _, message in getattr(cursor, "messages", None) or []:
            match = _LOADED_RECORDS_PATTERN.match(str(message))
            if match:
                return int(match.group(1))
        return None

    def bulk_load(self, table: str, manifest_url: str) -> int:
        sql = build_copy_command(
            table,
            manifest_url,
            credentials=self.credentials,
            iam_role=self.iam_role,
            max_error=self.max_error,
        )
        cursor = self._run(sql, ())
        try:
            records = self._loaded_records(cursor)
        finally:
            cursor.close()
        if records is None:
            raise WarehouseError(
                "COPY did not report a loaded record count",
                table=table,
                details={"manifest_url": manifest_url},
            )
        return records

    def load_errors(self, table: str, urls: Sequence[str]) -> List[Dict[str, Any]]:
        if not urls:
            return []
        sql = _LOAD_ERRORS_QUERY.format(placeholders=", ".join("?" for _ in urls))
        rows = self.query(sql, [table, *urls])

        # The newest query id is taken to be the load that failed
        result: List[Dict[str, Any]] = []
        for row in rows:
            if result and row["query"] != result[0]["query"]:
                break
            result.append(row)
        return result


def slices_for_cluster(client: Any, cluster_name: str) -> int:
    """Number of slices of a Redshift cluster (nodes x slices per node)."""
    try:
        response = client.describe_clusters(ClusterIdentifier=cluster_name)
    except (BotoCoreError, ClientError) as e:
        raise ConfigurationError(
            f"Unable to describe cluster {cluster_name}: {e}",
            field="redshift.cluster_name",
            value=cluster_name,
        ) from e

    clusters = response.get("Clusters", [])
    if not clusters:
        raise ConfigurationError(
            f"Cluster {cluster_name} not found",
            field="redshift.cluster_name",
            value=cluster_name,
        )
    cluster = clusters[0]
    node_type = cluster["NodeType"]
    if node_type not in SLICES_PER_NODE:
        raise ConfigurationError(
            f"Unknown node type {node_type} for cluster {cluster_name}",
            field="redshift.slices",
            value=node_type,
            suggestion="Set redshift.slices explicitly in the settings file.",
        )
    return int(cluster["NumberOfNodes"]) * SLICES_PER_NODE[node_type]


def _session_credentials(settings: LoaderSettings) -> str:
    if settings.aws.access_key_id and settings.aws.secret_access_key:
        key, secret, token = settings.aws.access_key_id, settings.aws.secret_access_key, None
    else:
        found = boto3.Session(region_name=settings.aws.region).get_credentials()
        if found is None:
            raise ConfigurationError(
                "No AWS credentials available for COPY",
                field="redshift.iam_role",
                suggestion="Configure AWS credentials or set redshift.iam_role.",
            )
        frozen = found.get_frozen_credentials()
        key, secret, token = frozen.access_key, frozen.secret_key, frozen.token

    credentials = f"aws_access_key_id={key};aws_secret_access_key={secret}"
    if token:
        credentials += f";token={token}"
    return credentials


def connect_warehouse(settings: LoaderSettings) -> RedshiftWarehouse:
    """Open an autocommit ODBC connection to the configured Redshift cluster."""
    try:
        import pyodbc
    except ImportError:
        raise ImportError(
            "Redshift support requires pyodbc. Install with: pip install pyodbc"
        )

    warehouse = settings.warehouse
    missing = [name for name in ("host", "dbname", "user") if not getattr(warehouse, name)]
    if missing:
        raise ConfigurationError(
            f"Missing Redshift connection settings: {', '.join(missing)}",
            field=f"redshift.{missing[0]}",
        )

    conn_str = (
        f"DRIVER={{{warehouse.driver}}};"
        f"Server={warehouse.host};"
        f"Port={warehouse.port};"
        f"Database={warehouse.dbname};"
        f"UID={warehouse.user};"
        f"PWD={warehouse.password or ''};"
    )
    logger.info(
        "Connecting to Redshift %s:%s/%s", warehouse.host, warehouse.port, warehouse.dbname
    )
    try:
        connection = pyodbc.connect(conn_str, autocommit=True)
    except pyodbc.Error as e:
        raise WarehouseError(f"Unable to connect to Redshift: {e}") from e

    return RedshiftWarehouse(
        connection,
        credentials=None if warehouse.iam_role else _session_credentials(settings),
        iam_role=warehouse.iam_role,
        max_error=warehouse.max_error,
    )
