"""
BigQuery Event Output

Streams event batches from a pipeline into BigQuery tables using streaming
inserts (insertAll), with schema-driven rows, table id templates for table
rotation, automatic table creation and retry with backoff.
"""

from .config import BigQueryOutputConfig
from .errors import (
    AuthenticationError,
    BigQueryOutputError,
    Cancelled,
    ConfigurationError,
    InvalidRequestError,
    MissingRequiredFieldError,
    PartialRowError,
    SchemaLoadError,
    ServiceError,
    TableLifecycleError,
    TransportError,
)
from .events import MISSING, EventData
from .health import HealthReporter, LoggingHealthReporter
from .output import BigQueryOutput, InsertResult, create_output

__version__ = "1.0.0"
