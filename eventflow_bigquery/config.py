"""
Configuration for the BigQuery event output.

Bound once when the output is built and never changed afterwards. Values come
either from the hosting pipeline's configuration section (``from_mapping``) or
from ``BQ_OUTPUT_*`` environment variables (``from_env``).
"""

import os
import re
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

UUID_INSERT_ID = "%uuid%"

ENV_PREFIX = "BQ_OUTPUT_"


def _normalize_key(key: str) -> str:
    """projectId / ProjectId / project_id -> projectid"""
    return re.sub(r"[_\-\s]", "", key).lower()


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class BigQueryOutputConfig:
    """Configuration for streaming events into a BigQuery table."""
    project_id: Optional[str] = None
    dataset_id: Optional[str] = None
    # The string enclosed in braces is expanded with the current UTC time,
    # e.g. "accesslog_{yyyyMMdd}" => accesslog_20150101
    table_id: Optional[str] = None
    auto_create_table: bool = False
    table_schema_file: Optional[str] = None
    # Field used as insertId, or "%uuid%" to generate one per row
    insert_id_field_name: Optional[str] = None

    # Retry settings
    max_attempts: int = 10
    initial_backoff_seconds: float = 0.25
    max_backoff_seconds: float = 32.0

    # Threads used to run the blocking BigQuery client
    max_workers: int = 1
    # Timeout of a single BigQuery request
    request_timeout_seconds: float = 30.0

    def validate(self) -> None:
        """
        Check required fields.

        Raises:
            ConfigurationError: If a required field is missing or a setting is out of range
        """
        for name in ("project_id", "dataset_id", "table_id", "table_schema_file"):
            if not getattr(self, name):
                raise ConfigurationError(f"Missing required configuration field: {name}")

        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.initial_backoff_seconds < 0 or self.max_backoff_seconds < 0:
            raise ConfigurationError("backoff delays cannot be negative")
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        if self.request_timeout_seconds <= 0:
            raise ConfigurationError("request_timeout_seconds must be positive")

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "BigQueryOutputConfig":
        """
        Bind a pipeline configuration section.

        Keys are matched case-insensitively and may be camelCase, PascalCase
        or snake_case ("projectId", "ProjectId", "project_id"). Unknown keys
        such as the pipeline's own "type" entry are ignored.

        Raises:
            ConfigurationError: If a value cannot be converted to the field type
        """
        by_key = {_normalize_key(f.name): f for f in fields(cls)}
        values: Dict[str, Any] = {}

        for key, raw_value in mapping.items():
            field_def = by_key.get(_normalize_key(str(key)))
            if field_def is None or raw_value is None:
                continue
            try:
                values[field_def.name] = cls._convert(field_def.name, raw_value)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid value for {key}: {raw_value!r}") from e

        return cls(**values)

    @classmethod
    def from_env(cls, env_file: Optional[str] = ".env.bigquery") -> "BigQueryOutputConfig":
        """Load configuration from BQ_OUTPUT_* environment variables."""
        if env_file:
            load_dotenv(env_file)

        mapping = {}
        for f in fields(cls):
            value = os.getenv(f"{ENV_PREFIX}{f.name.upper()}")
            if value is not None:
                mapping[f.name] = value
        return cls.from_mapping(mapping)

    @staticmethod
    def _convert(name: str, value: Any) -> Any:
        if name == "auto_create_table":
            return _to_bool(value)
        if name in ("max_attempts", "max_workers"):
            return int(value)
        if name in ("initial_backoff_seconds", "max_backoff_seconds", "request_timeout_seconds"):
            return float(value)
        return str(value)
