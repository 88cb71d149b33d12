"""Write client: validate a record and put it on its table's stream.

Example:
    >>> writer = Writer(broker, settings.tables)
    >>> writer.write("page_views", {"url": "/", "viewed_at": "2024-01-15 10:00:00"})
    True
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Mapping, Optional

from shardloader.lib.broker.base import Broker
from shardloader.lib.errors import ConfigurationError
from shardloader.lib.schema import TableSchema

logger = logging.getLogger(__name__)

__all__ = ["Writer"]


class Writer:
    """Validates records against table schemas before writing them."""

    def __init__(self, broker: Broker, tables: Mapping[str, TableSchema]) -> None:
        self.broker = broker
        self.tables = dict(tables)

    def serialize(self, table: str, record: Mapping[str, Any]) -> str:
        """Validated JSON form of a record."""
        schema = self.tables.get(table)
        if schema is None:
            raise ConfigurationError(
                f"No schema configured for table '{table}'",
                field="tables",
                value=table,
            )
        cleaned: Dict[str, Any] = schema.validate(record)
        return json.dumps(cleaned)

    def write(
        self,
        table: str,
        record: Mapping[str, Any],
        partition_key: Optional[str] = None,
    ) -> bool:
        payload = self.serialize(table, record)
        stream = self.broker.stream_name(table)
        logger.debug("Writing to %s: %s", stream, payload)
        return self.broker.write(stream, payload, partition_key)
