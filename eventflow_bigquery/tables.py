"""
Table existence checks and auto-creation.

The check runs at most once per table name: after the table is found or
created, further inserts go straight to insertAll until the table id rotates
and ``invalidate()`` is called.
"""

import asyncio
import logging
from typing import Optional, Sequence

from google.cloud import bigquery

from .client import AsyncBigQueryClient
from .errors import ErrorKind, Outcome, TableLifecycleError
from .health import CONTEXT_OUTPUT, HealthReporter


class TableLifecycleManager:
    """Makes sure the target table exists before rows are streamed into it."""

    def __init__(
        self,
        client: AsyncBigQueryClient,
        schema: Sequence[bigquery.SchemaField],
        health_reporter: HealthReporter,
        auto_create: bool = True,
    ):
        self.client = client
        self.schema = tuple(schema)
        self.health_reporter = health_reporter
        self.auto_create = auto_create
        self.logger = logging.getLogger(__name__)

        self.needs_check = True

    def invalidate(self, *_args) -> None:
        """Force a new existence check before the next insert."""
        self.needs_check = True

    async def ensure_table(
        self,
        table_ref: bigquery.TableReference,
        cancel_event: Optional[asyncio.Event] = None
    ) -> Outcome:
        """
        Check that the table exists, creating it when missing.

        Returns an OK outcome when the table is usable, otherwise an outcome
        carrying a TableLifecycleError. ``needs_check`` stays set on failure so
        the next batch repeats the whole check.
        """
        # Without auto-creation the table is assumed to exist
        if not self.auto_create or not self.needs_check:
            return Outcome()

        probe = await self.client.get_table(table_ref, cancel_event)
        if probe.ok:
            self.logger.info(f"Using existing table: {table_ref.table_id}")
            self.needs_check = False
            return Outcome(value=probe.value)

        if probe.kind is not ErrorKind.NOT_FOUND:
            return self._failed("Failed to check table existence", table_ref, probe)

        self.logger.info(f"Table doesn't exist: {table_ref.table_id}")
        created = await self.client.create_table(table_ref, self.schema, cancel_event)

        if created.ok:
            self.needs_check = False
            self.health_reporter.report_healthy(
                f"BigQueryOutput: Table({table_ref.table_id}) created.", CONTEXT_OUTPUT
            )
            return Outcome(value=created.value)

        # Another writer created it first
        if created.kind is ErrorKind.CONFLICT:
            self.logger.info(f"Table already exists: {table_ref.table_id}")
            self.needs_check = False
            return Outcome()

        return self._failed("Failed to create table", table_ref, created)

    def _failed(self, action: str, table_ref: bigquery.TableReference, outcome: Outcome) -> Outcome:
        error = TableLifecycleError(f"{action} {table_ref.table_id}: {outcome.error}")
        error.__cause__ = outcome.error
        self.health_reporter.report_problem(f"BigQueryOutput: {error}", CONTEXT_OUTPUT)
        return Outcome(kind=outcome.kind, error=error)
