"""
Error taxonomy for the BigQuery event output.

Construction-time errors (configuration, schema) are raised to the caller.
Everything that can go wrong while writing a batch is described by an
``Outcome`` carrying an ``ErrorKind``; the insert loop branches on the kind
and reports through the health reporter instead of raising.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class BigQueryOutputError(Exception):
    """Base class for all errors raised by the BigQuery output"""
    pass


class ConfigurationError(BigQueryOutputError):
    """A required configuration field is missing or invalid"""
    pass


class SchemaLoadError(BigQueryOutputError):
    """The table schema file could not be read or parsed"""
    pass


class MissingRequiredFieldError(BigQueryOutputError):
    """An event has no value for a REQUIRED field or the insertId field"""

    def __init__(self, field_name: str):
        super().__init__(f"No value for the field({field_name})")
        self.field_name = field_name


class AuthenticationError(BigQueryOutputError):
    """Credentials were rejected by BigQuery (permanent until fixed by an operator)"""
    pass


class TableLifecycleError(BigQueryOutputError):
    """Checking for or creating the target table failed"""
    pass


class InvalidRequestError(BigQueryOutputError):
    """BigQuery refused the request itself (4xx other than 401 and 429)"""
    pass


class TransportError(BigQueryOutputError):
    """Network or client failure while talking to BigQuery"""
    pass


class ServiceError(BigQueryOutputError):
    """BigQuery answered an API call with an HTTP error"""
    pass


class PartialRowError(BigQueryOutputError):
    """insertAll rejected one or more rows"""

    def __init__(self, row_errors: List["RowError"]):
        super().__init__(f"{len(row_errors)} row(s) rejected by insertAll")
        self.row_errors = row_errors


class Cancelled(BigQueryOutputError):
    """The batch call was cancelled by the caller"""
    pass


class ErrorKind(Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    AUTH = "auth"
    INVALID_REQUEST = "invalid_request"
    TRANSPORT = "transport"
    SERVICE = "service"
    PARTIAL_ROWS = "partial_rows"


@dataclass
class RowError:
    """One entry of insertAll's ``insertErrors`` list, flattened per error."""
    index: int
    reason: Optional[str] = None
    message: Optional[str] = None
    location: Optional[str] = None
    debug_info: Optional[str] = None

    @classmethod
    def from_api_repr(cls, entry: Dict[str, Any]) -> List["RowError"]:
        index = entry.get("index", -1)
        return [
            cls(
                index=index,
                reason=error.get("reason"),
                message=error.get("message"),
                location=error.get("location"),
                debug_info=error.get("debugInfo"),
            )
            for error in entry.get("errors", [])
        ]


@dataclass
class Outcome:
    """Result of a single BigQuery call."""
    kind: ErrorKind = ErrorKind.OK
    error: Optional[BaseException] = None
    value: Any = None
    row_errors: List[RowError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.kind is ErrorKind.OK
