"""Tests for shardloader/lib/schema.py - column types and record validation."""

import logging
from datetime import date, datetime
from decimal import Decimal

import pytest

from shardloader.lib.errors import ConfigurationError, RecordValidationError
from shardloader.lib.schema import (
    _VALIDATORS,
    Column,
    ColumnType,
    TableSchema,
    create_table_sql,
    validate_value,
)


def column(type_definition, constraint=None):
    return Column.parse("col", type_definition, constraint)


@pytest.fixture
def schema():
    return TableSchema.from_dict(
        "page_views",
        {
            "columns": {
                "url": {"type": "varchar(16)", "constraint": "not null"},
                "viewed_at": {"type": "timestamp"},
                "duration_ms": {"type": "integer"},
            },
            "distkey": "url",
            "sortkey": "viewed_at",
        },
    )


class TestColumnParse:
    @pytest.mark.parametrize(
        "definition,expected",
        [
            ("smallint", ColumnType.SMALLINT),
            ("INTEGER", ColumnType.INTEGER),
            ("bigint", ColumnType.BIGINT),
            ("decimal(12,2)", ColumnType.DECIMAL),
            ("real", ColumnType.REAL),
            ("double  precision", ColumnType.DOUBLE_PRECISION),
            ("boolean", ColumnType.BOOLEAN),
            ("char(3)", ColumnType.CHAR),
            ("varchar(64)", ColumnType.VARCHAR),
            ("date", ColumnType.DATE),
            ("timestamp", ColumnType.TIMESTAMP),
        ],
    )
    def test_supported_types(self, definition, expected):
        assert column(definition).column_type is expected

    def test_unknown_type_rejected(self):
        with pytest.raises(ConfigurationError, match="Invalid data type 'json'"):
            column("json")

    def test_string_lengths(self):
        assert column("varchar(64)").length == 64
        assert column("varchar").length == 256
        assert column("char").length == 1

    def test_not_null(self):
        assert column("integer", "not null").not_null
        assert not column("integer").not_null


class TestValidateValue:
    @pytest.mark.parametrize(
        "definition,value",
        [
            ("smallint", 32767),
            ("smallint", -32768),
            ("integer", 2**31 - 1),
            ("bigint", -(2**63)),
            ("real", 1.5),
            ("double precision", 3),
            ("boolean", False),
            ("varchar(8)", "hello"),
            ("date", "2024-01-15"),
            ("timestamp", "2024-01-15 10:30:00"),
        ],
    )
    def test_accepts(self, definition, value):
        assert validate_value(column(definition), value) == value

    @pytest.mark.parametrize(
        "definition,value",
        [
            ("smallint", 32768),
            ("integer", 2**31),
            ("bigint", 2**63),
            ("integer", "12"),
            ("integer", True),
            ("integer", 1.0),
            ("decimal(10,2)", 1.25),
            ("decimal(10,2)", "abc"),
            ("real", "1.5"),
            ("boolean", 1),
            ("varchar(8)", 8),
            ("date", "15/01/2024"),
            ("timestamp", "2024-01-15T10:30:00"),
        ],
    )
    def test_rejects(self, definition, value):
        with pytest.raises(RecordValidationError, match="does not conform"):
            validate_value(column(definition), value)

    def test_decimal_accepts_decimal_and_numeric_string(self):
        assert validate_value(column("decimal(10,2)"), Decimal("1.25")) == "1.25"
        assert validate_value(column("decimal(10,2)"), "3.50") == "3.50"

    def test_dates_and_datetimes_are_rendered(self):
        assert validate_value(column("date"), date(2024, 1, 15)) == "2024-01-15"
        assert (
            validate_value(column("timestamp"), datetime(2024, 1, 15, 10, 30))
            == "2024-01-15 10:30:00"
        )

    def test_long_string_truncated_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert validate_value(column("char(3)"), "abcdef") == "abc"
        assert "will be truncated to 3 characters" in caplog.text

    def test_every_type_has_a_validator(self):
        assert set(_VALIDATORS) == set(ColumnType)


class TestTableSchema:
    def test_validate_returns_cleaned_record(self, schema):
        record = schema.validate(
            {"url": "/home", "viewed_at": datetime(2024, 1, 15, 9, 0), "duration_ms": 120}
        )
        assert record == {
            "url": "/home",
            "viewed_at": "2024-01-15 09:00:00",
            "duration_ms": 120,
        }

    def test_null_allowed_for_nullable_column(self, schema):
        assert schema.validate({"url": "/", "duration_ms": None}) == {
            "url": "/",
            "duration_ms": None,
        }

    def test_unknown_key_rejected(self, schema):
        with pytest.raises(RecordValidationError, match="not in schema"):
            schema.validate({"url": "/", "referrer": "x"})

    def test_non_string_key_rejected(self, schema):
        with pytest.raises(RecordValidationError, match="is not a string"):
            schema.validate({"url": "/", 1: "x"})

    def test_missing_not_null_column_rejected(self, schema):
        with pytest.raises(RecordValidationError, match="url is missing"):
            schema.validate({"duration_ms": 1})

    def test_no_columns_is_configuration_error(self):
        with pytest.raises(ConfigurationError, match="defines no columns"):
            TableSchema.from_dict("empty", {"columns": {}})


class TestCreateTableSql:
    def test_with_table_attributes(self, schema):
        assert create_table_sql(schema) == (
            "create table page_views (\n"
            "url varchar(16) not null,\n"
            "viewed_at timestamp,\n"
            "duration_ms integer\n"
            ")\n"
            "distkey(url)\n"
            "sortkey(viewed_at);\n"
        )

    def test_without_table_attributes(self, schema):
        sql = create_table_sql(schema, table_attributes=False)
        assert "distkey" not in sql
        assert "sortkey" not in sql
        assert sql.endswith(");\n")
