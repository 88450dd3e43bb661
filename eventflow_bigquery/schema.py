"""
BigQuery Table Schema Loader

Reads the table schema from a JSON file in the format used by the bq CLI:

    [
        {"name": "timestamp", "type": "TIMESTAMP", "mode": "REQUIRED"},
        {"name": "message", "type": "STRING", "mode": "NULLABLE"},
        {"name": "user", "type": "RECORD", "fields": [
            {"name": "id", "type": "INTEGER"}
        ]}
    ]

An object with a "fields" list is accepted as well. Field order is kept.
"""

import json
import logging
from typing import Any, Dict, List, Tuple

from google.cloud import bigquery

from .errors import SchemaLoadError

logger = logging.getLogger(__name__)

VALID_MODES = ("REQUIRED", "NULLABLE", "REPEATED")

NESTED_TYPES = ("RECORD", "STRUCT")


def _normalize_field(raw_field: Dict[str, Any], position: int) -> Dict[str, Any]:
    """Validate one field (and its subfields) and return its API representation."""
    if not isinstance(raw_field, dict):
        raise SchemaLoadError(f"Schema field #{position} is not an object")

    name = raw_field.get("name")
    field_type = raw_field.get("type")
    if not name or not field_type:
        raise SchemaLoadError(f"Schema field #{position} needs both 'name' and 'type'")

    mode = str(raw_field.get("mode") or "NULLABLE").upper()
    if mode not in VALID_MODES:
        raise SchemaLoadError(f"Schema field '{name}' has invalid mode '{mode}'")

    field_type = str(field_type).upper()
    normalized = dict(raw_field, type=field_type, mode=mode)

    if field_type in NESTED_TYPES:
        subfields = raw_field.get("fields")
        if not isinstance(subfields, list) or not subfields:
            raise SchemaLoadError(f"Schema field '{name}' of type {field_type} needs a non-empty 'fields' list")
        normalized["fields"] = _normalize_fields(subfields)

    return normalized


def _normalize_fields(raw_fields: List[Any]) -> List[Dict[str, Any]]:
    normalized = [_normalize_field(raw_field, i) for i, raw_field in enumerate(raw_fields)]

    names = [f["name"] for f in normalized]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise SchemaLoadError(f"Duplicate schema fields: {duplicates}")

    return normalized


def parse_table_schema(raw_schema: Any) -> Tuple[bigquery.SchemaField, ...]:
    """
    Convert decoded schema JSON into an ordered tuple of SchemaField.

    Every key of a field (description, nested fields, policyTags ...) is kept.
    """
    if isinstance(raw_schema, dict):
        raw_schema = raw_schema.get("fields")

    if not isinstance(raw_schema, list) or not raw_schema:
        raise SchemaLoadError("Schema must be a non-empty list of fields")

    return tuple(bigquery.SchemaField.from_api_repr(f) for f in _normalize_fields(raw_schema))


def load_table_schema(schema_file: str) -> Tuple[bigquery.SchemaField, ...]:
    """
    Load the table schema file.

    Args:
        schema_file: Path of the JSON schema file

    Returns:
        Ordered tuple of SchemaField

    Raises:
        SchemaLoadError: If the file cannot be read or is not a valid schema
    """
    try:
        with open(schema_file, 'r') as f:
            raw_schema = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise SchemaLoadError(f"Could not load schema file {schema_file}: {e}") from e

    schema = parse_table_schema(raw_schema)
    logger.info(f"Loaded {len(schema)} schema fields from {schema_file}")
    return schema
