"""Table schemas and per-column value validation.

The set of supported warehouse column types is closed: ``ColumnType`` lists
them and ``_VALIDATORS`` maps each one to exactly one validator.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from shardloader.lib.errors import ConfigurationError, RecordValidationError

logger = logging.getLogger(__name__)

__all__ = [
    "ColumnType",
    "Column",
    "TableSchema",
    "validate_value",
    "create_table_sql",
]

_TYPE_PATTERN = re.compile(r"^\s*([A-Za-z ]+?)\s*(?:\((.*)\))?\s*$")
_TIMESTAMP_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$")
_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class ColumnType(Enum):
    SMALLINT = "smallint"
    INTEGER = "integer"
    BIGINT = "bigint"
    DECIMAL = "decimal"
    REAL = "real"
    DOUBLE_PRECISION = "double precision"
    BOOLEAN = "boolean"
    CHAR = "char"
    VARCHAR = "varchar"
    DATE = "date"
    TIMESTAMP = "timestamp"


@dataclass(frozen=True)
class Column:
    """One column definition, e.g. ``varchar(64) not null``."""

    name: str
    type_definition: str
    column_type: ColumnType
    length: Optional[int] = None
    constraint: Optional[str] = None

    @property
    def not_null(self) -> bool:
        return (self.constraint or "").strip().lower() == "not null"

    @classmethod
    def parse(cls, name: str, type_definition: str, constraint: Optional[str] = None) -> "Column":
        match = _TYPE_PATTERN.match(type_definition or "")
        if not match:
            raise ConfigurationError(
                f"Unparseable type '{type_definition}' for column {name}",
                field=name,
            )
        type_name = " ".join(match.group(1).lower().split())
        try:
            column_type = ColumnType(type_name)
        except ValueError:
            valid = ", ".join(t.value for t in ColumnType)
            raise ConfigurationError(
                f"Invalid data type '{type_name}' for column {name}. Valid types [{valid}]",
                field=name,
                value=type_definition,
            )

        length = None
        if column_type in (ColumnType.CHAR, ColumnType.VARCHAR):
            args = match.group(2)
            # bare CHAR is char(1) and bare VARCHAR is varchar(256)
            if args and args.strip().isdigit():
                length = int(args)
            else:
                length = 1 if column_type is ColumnType.CHAR else 256

        return cls(
            name=name,
            type_definition=type_definition,
            column_type=column_type,
            length=length,
            constraint=constraint,
        )


@dataclass
class TableSchema:
    name: str
    columns: Dict[str, Column] = field(default_factory=dict)
    distkey: Optional[str] = None
    sortkey: Optional[str] = None

    @classmethod
    def from_dict(cls, name: str, config: Mapping[str, Any]) -> "TableSchema":
        columns_config = config.get("columns") or {}
        if not columns_config:
            raise ConfigurationError(f"Table '{name}' defines no columns", field=name)
        columns = {
            column_name: Column.parse(
                column_name, column_config.get("type", ""), column_config.get("constraint")
            )
            for column_name, column_config in columns_config.items()
        }
        return cls(
            name=name,
            columns=columns,
            distkey=config.get("distkey"),
            sortkey=config.get("sortkey"),
        )

    def validate(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        """Validate a record and return its cleaned copy.

        Rejects non-string keys, keys outside the schema, missing ``not null``
        columns and values that do not conform to their column type.
        """
        for key in record:
            if not isinstance(key, str):
                raise RecordValidationError(
                    f"Data key {key!r} is not a string", table=self.name
                )
            if key not in self.columns:
                raise RecordValidationError(
                    f"Data key {key} is not in schema for {self.name} table",
                    table=self.name,
                    column=key,
                )

        for column in self.columns.values():
            if column.not_null and record.get(column.name) is None:
                raise RecordValidationError(
                    f"Column {column.name} is missing from passed data",
                    table=self.name,
                    column=column.name,
                )

        return {
            key: validate_value(self.columns[key], value) if value is not None else None
            for key, value in record.items()
        }


def _reject(column: Column, value: Any) -> RecordValidationError:
    return RecordValidationError(
        f"Value for column {column.name}, '{value}', does not conform to type "
        f"'{column.type_definition}'",
        column=column.name,
        value=value,
        type_definition=column.type_definition,
    )


def _integer_validator(bits: int) -> Callable[[Column, Any], Any]:
    low, high = -(2 ** (bits - 1)), 2 ** (bits - 1) - 1

    def check(column: Column, value: Any) -> Any:
        if isinstance(value, bool) or not isinstance(value, int):
            raise _reject(column, value)
        if not low <= value <= high:
            raise _reject(column, value)
        return value

    return check


def _check_decimal(column: Column, value: Any) -> Any:
    # floats would lose precision on the way to an exact numeric column
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, str):
        try:
            Decimal(value)
        except InvalidOperation:
            raise _reject(column, value)
        return value
    raise _reject(column, value)


def _check_float(column: Column, value: Any) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise _reject(column, value)
    return float(value)


def _check_boolean(column: Column, value: Any) -> Any:
    if not isinstance(value, bool):
        raise _reject(column, value)
    return value


def _check_string(column: Column, value: Any) -> Any:
    if not isinstance(value, str):
        raise _reject(column, value)
    if column.length is not None and len(value) > column.length:
        logger.warning(
            "Data for column %s is too long (%d characters) for column type and "
            "will be truncated to %d characters: '%s'",
            column.name,
            len(value),
            column.length,
            value,
        )
        return value[: column.length]
    return value


def _check_date(column: Column, value: Any) -> Any:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str) and _DATE_PATTERN.match(value):
        return value
    raise _reject(column, value)


def _check_timestamp(column: Column, value: Any) -> Any:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, str) and _TIMESTAMP_PATTERN.match(value):
        return value
    raise _reject(column, value)


_VALIDATORS: Dict[ColumnType, Callable[[Column, Any], Any]] = {
    ColumnType.SMALLINT: _integer_validator(16),
    ColumnType.INTEGER: _integer_validator(32),
    ColumnType.BIGINT: _integer_validator(64),
    ColumnType.DECIMAL: _check_decimal,
    ColumnType.REAL: _check_float,
    ColumnType.DOUBLE_PRECISION: _check_float,
    ColumnType.BOOLEAN: _check_boolean,
    ColumnType.CHAR: _check_string,
    ColumnType.VARCHAR: _check_string,
    ColumnType.DATE: _check_date,
    ColumnType.TIMESTAMP: _check_timestamp,
}


def validate_value(column: Column, value: Any) -> Any:
    """Validate one value against its column and return the cleaned value."""
    return _VALIDATORS[column.column_type](column, value)


def create_table_sql(schema: TableSchema, *, table_attributes: bool = True) -> str:
    """Render ``CREATE TABLE`` for a schema.

    ``table_attributes`` controls the Redshift-only ``distkey``/``sortkey``
    clauses.
    """
    lines: List[str] = []
    for column in schema.columns.values():
        line = f"{column.name} {column.type_definition}"
        if column.constraint:
            line += f" {column.constraint}"
        lines.append(line)

    query = f"create table {schema.name} (\n" + ",\n".join(lines) + "\n)"
    if table_attributes:
        if schema.distkey:
            query += f"\ndistkey({schema.distkey})"
        if schema.sortkey:
            query += f"\nsortkey({schema.sortkey})"
    return query + ";\n"
