"""
Async BigQuery Client

Wraps the synchronous google-cloud-bigquery client so the output can await
table metadata calls and streaming inserts without blocking the event loop.

Calls never raise for BigQuery failures. Each one returns an ``Outcome`` whose
``kind`` says what happened:

- NOT_FOUND / CONFLICT: the table is missing / already exists
- AUTH: credentials rejected (401 or token refresh failure)
- INVALID_REQUEST: any other 4xx the API answered (malformed request, access denied)
- SERVICE: 5xx, 429 or a quota/rate limit error
- TRANSPORT: the request never got an answer (connection, timeout, client bug)
- PARTIAL_ROWS: insertAll accepted the request but rejected some rows

The library's own retry is turned off (``retry=None``) on every call. Retries
belong to the output's insert loop, which decides per kind.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Callable, List, Optional, Sequence

import google.auth.exceptions
from google.api_core.exceptions import (
    ClientError,
    Conflict,
    GoogleAPICallError,
    NotFound,
    TooManyRequests,
    Unauthorized,
)
from google.cloud import bigquery

from .errors import (
    AuthenticationError,
    Cancelled,
    ErrorKind,
    InvalidRequestError,
    Outcome,
    PartialRowError,
    RowError,
    ServiceError,
    TransportError,
)
from .row_mapper import Row

# BigQuery reports quota and rate limits as 403 with one of these reasons
RETRYABLE_REASONS = frozenset({"quotaExceeded", "rateLimitExceeded", "backendError"})

DEFAULT_TIMEOUT = 30.0


async def wait_cancellable(awaitable: Awaitable[Any], cancel_event: Optional[asyncio.Event] = None) -> Any:
    """
    Await ``awaitable`` unless ``cancel_event`` is set first.

    Raises:
        Cancelled: If the event is set before the awaitable finishes
    """
    if cancel_event is None:
        return await awaitable
    if cancel_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        elif asyncio.isfuture(awaitable):
            awaitable.cancel()
        raise Cancelled()

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    raise Cancelled()


def _error_reasons(exc: GoogleAPICallError) -> set:
    return {e.get("reason") for e in (exc.errors or []) if isinstance(e, dict)}


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map a client exception to the kind of failure it represents."""
    if isinstance(exc, NotFound):
        return ErrorKind.NOT_FOUND
    if isinstance(exc, Conflict):
        return ErrorKind.CONFLICT
    if isinstance(exc, Unauthorized):
        return ErrorKind.AUTH
    if isinstance(exc, (google.auth.exceptions.RefreshError, google.auth.exceptions.DefaultCredentialsError)):
        return ErrorKind.AUTH
    if isinstance(exc, TooManyRequests):
        return ErrorKind.SERVICE
    if isinstance(exc, ClientError):
        if _error_reasons(exc) & RETRYABLE_REASONS:
            return ErrorKind.SERVICE
        return ErrorKind.INVALID_REQUEST
    if isinstance(exc, GoogleAPICallError):
        return ErrorKind.SERVICE
    return ErrorKind.TRANSPORT


def failure_outcome(exc: BaseException) -> Outcome:
    kind = classify_exception(exc)
    error_classes = {
        ErrorKind.AUTH: AuthenticationError,
        ErrorKind.INVALID_REQUEST: InvalidRequestError,
        ErrorKind.SERVICE: ServiceError,
        ErrorKind.TRANSPORT: TransportError,
    }
    error: BaseException = exc
    if kind in error_classes:
        error = error_classes[kind](f"{type(exc).__name__}: {exc}")
        error.__cause__ = exc
    return Outcome(kind=kind, error=error)


class AsyncBigQueryClient:
    """Runs BigQuery calls on a worker thread pool."""

    def __init__(
        self,
        project_id: str,
        bq_client: Optional[bigquery.Client] = None,
        max_workers: int = 1,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.logger = logging.getLogger(__name__)
        self.project_id = project_id
        # Seconds per HTTP request; no library retry on top of it
        self.timeout = timeout

        # Uses Application Default Credentials when no client is given
        self.bq_client = bq_client or bigquery.Client(project=project_id)
        self._executor: Optional[ThreadPoolExecutor] = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix='bq_output'
        )

    async def _call(self, func: Callable[[], Any], cancel_event: Optional[asyncio.Event]) -> Outcome:
        if self._executor is None:
            raise RuntimeError("AsyncBigQueryClient is closed")

        loop = asyncio.get_running_loop()
        try:
            value = await wait_cancellable(loop.run_in_executor(self._executor, func), cancel_event)
        except (Cancelled, asyncio.CancelledError):
            raise
        except Exception as e:
            self.logger.debug(f"BigQuery call failed: {type(e).__name__}: {e}")
            return failure_outcome(e)
        return Outcome(value=value)

    async def get_table(
        self,
        table_ref: bigquery.TableReference,
        cancel_event: Optional[asyncio.Event] = None
    ) -> Outcome:
        """Fetch table metadata."""
        return await self._call(
            lambda: self.bq_client.get_table(table_ref, retry=None, timeout=self.timeout),
            cancel_event
        )

    async def create_table(
        self,
        table_ref: bigquery.TableReference,
        schema: Sequence[bigquery.SchemaField],
        cancel_event: Optional[asyncio.Event] = None
    ) -> Outcome:
        """Create the table with the given schema."""
        table = bigquery.Table(table_ref, schema=list(schema))
        return await self._call(
            lambda: self.bq_client.create_table(table, retry=None, timeout=self.timeout),
            cancel_event
        )

    async def insert_rows(
        self,
        table_ref: bigquery.TableReference,
        rows: List[Row],
        cancel_event: Optional[asyncio.Event] = None
    ) -> Outcome:
        """
        Stream rows with a single insertAll request.

        Rows without an insert id are sent without one.
        """
        json_rows = [row.fields for row in rows]
        row_ids = [row.insert_id for row in rows]

        outcome = await self._call(
            lambda: self.bq_client.insert_rows_json(
                table_ref, json_rows, row_ids=row_ids, retry=None, timeout=self.timeout
            ),
            cancel_event
        )
        if not outcome.ok:
            return outcome

        insert_errors = outcome.value or []
        if not insert_errors:
            return Outcome(value=len(rows))

        row_errors: List[RowError] = []
        for entry in insert_errors:
            row_errors.extend(RowError.from_api_repr(entry))
        return Outcome(
            kind=ErrorKind.PARTIAL_ROWS,
            error=PartialRowError(row_errors),
            value=insert_errors,
            row_errors=row_errors,
        )

    def close(self) -> None:
        """Release the thread pool and the underlying client."""
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        if self.bq_client is not None:
            self.bq_client.close()
            self.bq_client = None
