"""
BigQuery Event Output

Streams batches of pipeline events into a BigQuery table with insertAll.

Per batch:
- Events are mapped to rows using the table schema (all before any request)
- The table id template is expanded and the table is created if needed
- Rows are sent in a single insertAll request
- Rejected rows and API errors are retried for the whole batch with
  exponential backoff; auth, malformed request and transport failures
  are not retried

Nothing that goes wrong while writing a batch is raised to the pipeline. All
outcomes go to the health reporter.

Concurrency: one batch at a time per output instance. The pipeline must not
call send_events/insert_rows concurrently on the same instance; the table
existence flag and the expanded table id are not locked.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Sequence

import google.auth.exceptions
from google.cloud import bigquery

from .backoff import ExponentialBackoff
from .client import AsyncBigQueryClient, wait_cancellable
from .config import BigQueryOutputConfig
from .errors import Cancelled, ConfigurationError, ErrorKind, MissingRequiredFieldError, Outcome, SchemaLoadError
from .health import CONTEXT_CONFIGURATION, CONTEXT_OUTPUT, HealthReporter
from .row_mapper import Row, RowMapper
from .schema import load_table_schema
from .table_id import TableIdExpander
from .tables import TableLifecycleManager

STOPPED_REASON = "stopped"


@dataclass
class InsertResult:
    """What happened to one batch insert."""
    success: bool
    attempts: int
    kind: ErrorKind = ErrorKind.OK
    error: Optional[BaseException] = None
    cancelled: bool = False


class BigQueryOutput:
    """Pipeline output writing events to a BigQuery table."""

    def __init__(
        self,
        config: BigQueryOutputConfig,
        health_reporter: HealthReporter,
        bq_client: Optional[bigquery.Client] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        backoff: Optional[ExponentialBackoff] = None,
    ):
        """
        Build the output. Fails if the configuration, the schema file or the
        credentials are unusable.

        Args:
            config: Output configuration
            health_reporter: Receives healthy/warning/problem reports
            bq_client: BigQuery client to use instead of one built from
                Application Default Credentials
            clock: Current time source for table id expansion (UTC)
            sleep: Coroutine used to wait between retries
            backoff: Retry delays, defaults to the configured settings

        Raises:
            ConfigurationError: If a required setting is missing
            SchemaLoadError: If the table schema cannot be loaded
        """
        if config is None:
            raise ValueError("config is required")
        if health_reporter is None:
            raise ValueError("health_reporter is required")

        self.logger = logging.getLogger(__name__)
        self.health_reporter = health_reporter
        self.sleep = sleep

        try:
            config.validate()
        except ConfigurationError:
            self.health_reporter.report_problem(
                f"Invalid BigQueryOutput configuration encountered: '{config}'", CONTEXT_CONFIGURATION
            )
            raise
        self.config = config

        # Load table schema file
        try:
            self.table_schema = load_table_schema(config.table_schema_file)
        except SchemaLoadError as e:
            self.health_reporter.report_problem(
                f"BigQueryOutput: Failed to load schema.\n{e}", CONTEXT_OUTPUT
            )
            raise

        self.row_mapper = RowMapper(self.table_schema, config.insert_id_field_name)
        self.backoff = backoff or ExponentialBackoff(
            initial_delay=config.initial_backoff_seconds,
            max_delay=config.max_backoff_seconds,
            max_attempts=config.max_attempts,
        )

        try:
            self.client = AsyncBigQueryClient(
                config.project_id, bq_client, config.max_workers, timeout=config.request_timeout_seconds
            )
        except google.auth.exceptions.DefaultCredentialsError as e:
            self.health_reporter.report_problem(
                f"BigQueryOutput: Failed to get credentials.\n{e}", CONTEXT_OUTPUT
            )
            raise

        self.tables = TableLifecycleManager(
            self.client, self.table_schema, health_reporter, auto_create=config.auto_create_table
        )

        expander_kwargs = {"clock": clock} if clock is not None else {}
        self.table_id = TableIdExpander(
            config.project_id,
            config.dataset_id,
            config.table_id,
            on_change=self.tables.invalidate,
            **expander_kwargs,
        )

        # Expand table id 1st time
        self.table_id.expand(force=True)
        self.health_reporter.report_healthy(f"TableId: {self.table_id_expanded}", CONTEXT_OUTPUT)

    @property
    def table_id_expanded(self) -> Optional[str]:
        return self.table_id.expanded_name

    async def send_events(
        self,
        events: Sequence[Any],
        transmission_sequence_number: int = 0,
        cancel_event: Optional[asyncio.Event] = None
    ) -> None:
        """Write a batch of events. Never raises for write failures."""
        if not events:
            return

        self.logger.debug(f"Sending batch #{transmission_sequence_number} ({len(events)} events)")

        try:
            rows = self.row_mapper.map_rows(events)
        except MissingRequiredFieldError as e:
            self.health_reporter.report_warning(
                f"BigQueryOutput: Failed to write events to Bq.\n{e}", CONTEXT_OUTPUT
            )
            return

        try:
            result = await self.insert_rows(rows, cancel_event)
        except Exception as e:
            self.logger.exception("Unexpected error while writing events")
            self.health_reporter.report_warning(
                f"BigQueryOutput: Failed to write events to Bq.\n{type(e).__name__}: {e}", CONTEXT_OUTPUT
            )
            return

        if result.success:
            self.health_reporter.report_healthy()

    async def insert_rows(
        self,
        rows: List[Row],
        cancel_event: Optional[asyncio.Event] = None
    ) -> InsertResult:
        """
        Insert already mapped rows, retrying the whole batch on rejected rows.

        Rows keep their insert ids across retries.
        """
        state = self.backoff.new_state()
        last: Outcome = Outcome()

        try:
            while True:
                self.table_id.expand()
                table_ref = self.table_id.table_ref

                lifecycle = await self.tables.ensure_table(table_ref, cancel_event)
                if not lifecycle.ok:
                    return InsertResult(False, state.attempt, lifecycle.kind, lifecycle.error)

                self.logger.info(
                    f"Inserting {len(rows)} rows into {self.table_id.full_table_id} "
                    f"(attempt {state.attempt}/{state.max_attempts})"
                )
                last = await self.client.insert_rows(table_ref, rows, cancel_event)

                if last.ok:
                    self.logger.info(f"✅ Inserted {len(rows)} rows into {self.table_id.full_table_id}")
                    return InsertResult(True, state.attempt)

                if last.kind in (ErrorKind.AUTH, ErrorKind.INVALID_REQUEST):
                    # Rejected credentials or a request BigQuery will never accept, no retry
                    self._report_insert_failure(last)
                    return InsertResult(False, state.attempt, last.kind, last.error)

                if last.kind is ErrorKind.TRANSPORT:
                    # FIXME: transport failures end the batch without retry while
                    # rejected rows and API errors go through backoff below.
                    self._report_insert_failure(last)
                    return InsertResult(False, state.attempt, last.kind, last.error)

                if last.kind is ErrorKind.PARTIAL_ROWS:
                    message = self.format_row_errors(last, rows)
                    if message:
                        self.health_reporter.report_warning(message, CONTEXT_OUTPUT)
                else:
                    self._report_insert_failure(last)

                if state.exhausted:
                    break

                delay = state.advance()
                self.logger.info(f"Retrying insert in {delay:.2f}s (attempt {state.attempt}/{state.max_attempts})")
                await wait_cancellable(self.sleep(delay), cancel_event)

        except Cancelled:
            self.logger.info("Insert cancelled")
            return InsertResult(False, state.attempt, cancelled=True)

        self.health_reporter.report_warning(
            f"BigQueryOutput: Retry over. Gave up after {state.attempt} attempts.", CONTEXT_OUTPUT
        )
        return InsertResult(False, state.attempt, last.kind, last.error)

    @staticmethod
    def format_row_errors(outcome: Outcome, rows: List[Row]) -> str:
        """Describe rejected rows, leaving out rows that were only stopped."""
        messages = []
        for row_error in outcome.row_errors:
            if row_error.reason == STOPPED_REASON:
                continue
            row_json = None
            if 0 <= row_error.index < len(rows):
                row_json = json.dumps(rows[row_error.index].fields, default=str)
            messages.append(
                f"Index:{row_error.index}\n"
                f"DebugInfo:{row_error.debug_info}\n"
                f"Location:{row_error.location}\n"
                f"Message:{row_error.message}\n"
                f"Reason:{row_error.reason}\n"
                f"PostRawJSON:{row_json}"
            )
        return "\n".join(messages)

    def _report_insert_failure(self, outcome: Outcome) -> None:
        self.health_reporter.report_warning(
            f"BigQueryOutput: insert has failed.\n{outcome.error}", CONTEXT_OUTPUT
        )

    def close(self) -> None:
        """Release the BigQuery client."""
        self.client.close()

    def __enter__(self) -> "BigQueryOutput":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def create_output(configuration: Mapping[str, Any], health_reporter: HealthReporter) -> BigQueryOutput:
    """
    Build an output from a pipeline configuration section.

    Raises:
        ConfigurationError: If the section cannot be bound or misses required settings
    """
    if configuration is None:
        raise ValueError("configuration is required")
    if health_reporter is None:
        raise ValueError("health_reporter is required")

    try:
        config = BigQueryOutputConfig.from_mapping(configuration)
        config.validate()
    except ConfigurationError:
        health_reporter.report_problem(
            f"Invalid BigQueryOutput configuration encountered: '{dict(configuration)}'",
            CONTEXT_CONFIGURATION
        )
        raise

    return BigQueryOutput(config, health_reporter)
