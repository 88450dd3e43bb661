"""
Event to BigQuery row mapping.

Rows are built from the table schema: every schema field is looked up by name
on the event. Mapping happens for the whole batch before anything is sent, so
one bad event rejects the batch without touching BigQuery.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from google.cloud import bigquery

from .config import UUID_INSERT_ID
from .errors import MissingRequiredFieldError
from .events import MISSING, PropertyLookup, lookup_property


@dataclass
class Row:
    """One insertAll row: optional dedup token plus field values."""
    insert_id: Optional[str] = None
    fields: Dict[str, Any] = field(default_factory=dict)


def to_json_value(value: Any) -> Any:
    """Convert a property value into something insert_rows_json can send."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


class RowMapper:
    """Builds rows for a fixed table schema."""

    def __init__(
        self,
        schema: Sequence[bigquery.SchemaField],
        insert_id_field_name: Optional[str] = None,
        lookup: PropertyLookup = lookup_property,
    ):
        self.schema = tuple(schema)
        self.insert_id_field_name = insert_id_field_name
        self.lookup = lookup

    def map_row(self, record: Any) -> Row:
        """
        Map one event to a row.

        Raises:
            MissingRequiredFieldError: If a REQUIRED field or the insertId field has no value
        """
        values: Dict[str, Any] = {}
        for schema_field in self.schema:
            value = self.lookup(record, schema_field.name)
            if value is MISSING or value is None:
                if schema_field.mode == "REQUIRED":
                    raise MissingRequiredFieldError(schema_field.name)
                if value is MISSING:
                    continue
            values[schema_field.name] = to_json_value(value)

        return Row(insert_id=self._insert_id(record), fields=values)

    def map_rows(self, records: Iterable[Any]) -> List[Row]:
        return [self.map_row(record) for record in records]

    def _insert_id(self, record: Any) -> Optional[str]:
        if self.insert_id_field_name is None:
            return None

        # NOTE: a fresh uuid per mapping call means events that are mapped
        # again (re-sent by the pipeline) get new dedup tokens, so BigQuery
        # cannot deduplicate them across those sends.
        if self.insert_id_field_name == UUID_INSERT_ID:
            return str(uuid.uuid4())

        value = self.lookup(record, self.insert_id_field_name)
        if value is MISSING or value is None:
            raise MissingRequiredFieldError(self.insert_id_field_name)
        return str(to_json_value(value))
