# tests/integration/test_bigquery_output.py
"""
Integration tests for BigQueryOutput: event mapping, table lifecycle and the
insert retry loop against a mocked BigQuery client.
"""

import asyncio
import threading
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest
from google.api_core.exceptions import BadRequest, Forbidden, InternalServerError, NotFound, Unauthorized

from eventflow_bigquery.backoff import ExponentialBackoff
from eventflow_bigquery.errors import ConfigurationError, ErrorKind, SchemaLoadError
from eventflow_bigquery.health import CONTEXT_CONFIGURATION
from eventflow_bigquery.output import BigQueryOutput, create_output
from tests.fixtures.bq_sample_data import (
    FIXED_NOW,
    doubling_delays,
    health_reporter,
    insert_errors,
    make_config,
    mock_bq_client,
    sample_event,
    sample_events,
    schema_file,
)


class RecordingSleep:
    """Async sleep replacement that records requested delays"""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def build_output(schema_file, health_reporter, bq_client, sleep=None, clock=None, **overrides):
    config = make_config(schema_file, **overrides)
    return BigQueryOutput(
        config,
        health_reporter,
        bq_client=bq_client,
        clock=clock or (lambda: FIXED_NOW),
        sleep=sleep or RecordingSleep(),
        backoff=ExponentialBackoff(
            initial_delay=0.25, max_attempts=config.max_attempts, sleep_generator=doubling_delays
        ),
    )


def warning_messages(health_reporter):
    return [c.args[0] for c in health_reporter.report_warning.call_args_list]


class TestOutputConstruction:
    """Test building the output"""

    def test_reports_expanded_table_id(self, schema_file, health_reporter, mock_bq_client):
        output = build_output(schema_file, health_reporter, mock_bq_client)

        assert output.table_id_expanded == "events_20240115"
        health_reporter.report_healthy.assert_called_once()
        assert health_reporter.report_healthy.call_args[0][0] == "TableId: events_20240115"

    def test_missing_configuration(self, schema_file, health_reporter, mock_bq_client):
        """Test building directly reports bad configuration like the factory does"""
        with pytest.raises(ConfigurationError):
            build_output(schema_file, health_reporter, mock_bq_client, project_id=None)

        health_reporter.report_problem.assert_called_once()
        message, context = health_reporter.report_problem.call_args[0]
        assert "Invalid BigQueryOutput configuration" in message
        assert context == CONTEXT_CONFIGURATION
        mock_bq_client.get_table.assert_not_called()

    def test_bad_schema_file(self, tmp_path, health_reporter, mock_bq_client):
        """Test schema failures are reported and fatal"""
        with pytest.raises(SchemaLoadError):
            build_output(str(tmp_path / "missing.json"), health_reporter, mock_bq_client)

        health_reporter.report_problem.assert_called_once()
        assert "Failed to load schema" in health_reporter.report_problem.call_args[0][0]

    def test_factory_reports_invalid_configuration(self, health_reporter):
        with pytest.raises(ConfigurationError):
            create_output({"projectId": "p"}, health_reporter)

        assert health_reporter.report_problem.call_args[0][1] == CONTEXT_CONFIGURATION

    def test_factory_builds_output(self, schema_file, health_reporter):
        """Test the factory binds a pipeline section and creates the client"""
        with patch('eventflow_bigquery.client.bigquery.Client') as mock_bq:
            output = create_output({
                "type": "BigQuery",
                "projectId": "test-project",
                "datasetId": "test_dataset",
                "tableId": "events",
                "tableSchemaFile": schema_file,
                "insertIdFieldName": "%uuid%",
            }, health_reporter)

        mock_bq.assert_called_once_with(project="test-project")
        assert output.table_id_expanded == "events"
        assert output.config.auto_create_table is False
        assert output.row_mapper.insert_id_field_name == "%uuid%"

    def test_close(self, schema_file, health_reporter, mock_bq_client):
        with build_output(schema_file, health_reporter, mock_bq_client):
            pass
        mock_bq_client.close.assert_called_once()


class TestSendEvents:
    """Test the batch entry point"""

    def test_successful_batch(self, schema_file, health_reporter, mock_bq_client):
        """Test a batch is inserted in one request and reported healthy"""
        output = build_output(schema_file, health_reporter, mock_bq_client, insert_id_field_name="id")

        asyncio.run(output.send_events(sample_events(3)))

        mock_bq_client.insert_rows_json.assert_called_once()
        table, json_rows = mock_bq_client.insert_rows_json.call_args[0]
        assert table.table_id == "events_20240115"
        assert [r["id"] for r in json_rows] == ["evt_0", "evt_1", "evt_2"]
        assert mock_bq_client.insert_rows_json.call_args[1]["row_ids"] == ["evt_0", "evt_1", "evt_2"]
        health_reporter.report_healthy.assert_called_with()
        health_reporter.report_warning.assert_not_called()

    def test_empty_batch(self, schema_file, health_reporter, mock_bq_client):
        output = build_output(schema_file, health_reporter, mock_bq_client)

        asyncio.run(output.send_events([]))

        mock_bq_client.get_table.assert_not_called()
        mock_bq_client.insert_rows_json.assert_not_called()

    def test_invalid_event_aborts_batch(self, schema_file, health_reporter, mock_bq_client):
        """Test a missing REQUIRED field stops the batch before any request"""
        output = build_output(schema_file, health_reporter, mock_bq_client)
        events = [sample_event(id="evt_0"), sample_event(note="no id")]

        asyncio.run(output.send_events(events))

        mock_bq_client.get_table.assert_not_called()
        mock_bq_client.insert_rows_json.assert_not_called()
        assert "No value for the field(id)" in warning_messages(health_reporter)[0]

    def test_unexpected_error_not_raised(self, schema_file, health_reporter, mock_bq_client):
        output = build_output(schema_file, health_reporter, mock_bq_client)
        output.tables.ensure_table = Mock(side_effect=RuntimeError("boom"))

        asyncio.run(output.send_events(sample_events(1)))

        assert "boom" in warning_messages(health_reporter)[0]


class TestRetryLoop:
    """Test classification of insert failures"""

    def test_partial_errors_exhaust_retries(self, schema_file, health_reporter, mock_bq_client):
        """Test three attempts with growing delays, then a retries-exhausted warning"""
        mock_bq_client.insert_rows_json.return_value = insert_errors((0, "invalid", "no such field"))
        sleep = RecordingSleep()
        output = build_output(schema_file, health_reporter, mock_bq_client, sleep=sleep, max_attempts=3)

        result = asyncio.run(output.insert_rows(output.row_mapper.map_rows(sample_events(2))))

        assert result.success is False
        assert result.attempts == 3
        assert result.kind is ErrorKind.PARTIAL_ROWS
        assert mock_bq_client.insert_rows_json.call_count == 3
        assert sleep.delays == [0.25, 0.5]
        assert "Retry over" in warning_messages(health_reporter)[-1]

    def test_stopped_rows_left_out_of_warning(self, schema_file, health_reporter, mock_bq_client):
        mock_bq_client.insert_rows_json.side_effect = [
            insert_errors((0, "invalid", "bad value for amount"), (1, "stopped", "stopped row message")),
            [],
        ]
        output = build_output(schema_file, health_reporter, mock_bq_client)

        asyncio.run(output.send_events(sample_events(2)))

        warning = warning_messages(health_reporter)[0]
        assert "bad value for amount" in warning
        assert "Reason:invalid" in warning
        assert "PostRawJSON:" in warning
        assert "stopped row message" not in warning
        assert "Reason:stopped" not in warning
        assert mock_bq_client.insert_rows_json.call_count == 2
        health_reporter.report_healthy.assert_called_with()

    def test_retry_resends_whole_batch(self, schema_file, health_reporter, mock_bq_client):
        """Test the full batch with the same insert ids is sent again"""
        mock_bq_client.insert_rows_json.side_effect = [insert_errors((1, "invalid", "bad")), []]
        output = build_output(schema_file, health_reporter, mock_bq_client, insert_id_field_name="%uuid%")

        asyncio.run(output.send_events(sample_events(3)))

        first, second = mock_bq_client.insert_rows_json.call_args_list
        assert len(first[0][1]) == len(second[0][1]) == 3
        assert first[1]["row_ids"] == second[1]["row_ids"]

    def test_transport_error_not_retried(self, schema_file, health_reporter, mock_bq_client):
        mock_bq_client.insert_rows_json.side_effect = ConnectionError("connection reset by peer")
        sleep = RecordingSleep()
        output = build_output(schema_file, health_reporter, mock_bq_client, sleep=sleep)

        asyncio.run(output.send_events(sample_events(1)))

        assert mock_bq_client.insert_rows_json.call_count == 1
        assert sleep.delays == []
        assert "insert has failed" in warning_messages(health_reporter)[0]

    def test_auth_error_not_retried(self, schema_file, health_reporter, mock_bq_client):
        mock_bq_client.insert_rows_json.side_effect = Unauthorized("invalid credentials")
        output = build_output(schema_file, health_reporter, mock_bq_client)

        result = asyncio.run(output.insert_rows(output.row_mapper.map_rows(sample_events(1))))

        assert result.kind is ErrorKind.AUTH
        assert mock_bq_client.insert_rows_json.call_count == 1
        assert len(warning_messages(health_reporter)) == 1

    def test_bad_request_not_retried(self, schema_file, health_reporter, mock_bq_client):
        """Test a request BigQuery refuses is reported once and not sent again"""
        mock_bq_client.insert_rows_json.side_effect = BadRequest("No rows present in the request.")
        sleep = RecordingSleep()
        output = build_output(schema_file, health_reporter, mock_bq_client, sleep=sleep, max_attempts=3)

        result = asyncio.run(output.insert_rows(output.row_mapper.map_rows(sample_events(1))))

        assert result.success is False
        assert result.attempts == 1
        assert result.kind is ErrorKind.INVALID_REQUEST
        assert mock_bq_client.insert_rows_json.call_count == 1
        assert sleep.delays == []
        assert len(warning_messages(health_reporter)) == 1
        assert "insert has failed" in warning_messages(health_reporter)[0]

    def test_service_error_retried(self, schema_file, health_reporter, mock_bq_client):
        mock_bq_client.insert_rows_json.side_effect = [InternalServerError("backend error"), []]
        output = build_output(schema_file, health_reporter, mock_bq_client)

        result = asyncio.run(output.insert_rows(output.row_mapper.map_rows(sample_events(1))))

        assert result.success is True
        assert result.attempts == 2

    def test_table_failure_aborts_without_insert(self, schema_file, health_reporter, mock_bq_client):
        mock_bq_client.get_table.side_effect = NotFound("Not found: Table")
        mock_bq_client.create_table.side_effect = Forbidden("Access Denied")
        output = build_output(schema_file, health_reporter, mock_bq_client)

        asyncio.run(output.send_events(sample_events(1)))

        mock_bq_client.insert_rows_json.assert_not_called()
        health_reporter.report_problem.assert_called_once()
        assert output.tables.needs_check is True

    def test_cancel_during_backoff(self, schema_file, health_reporter, mock_bq_client):
        """Test cancelling while waiting to retry ends the call silently"""
        mock_bq_client.insert_rows_json.return_value = insert_errors((0, "invalid", "bad"))

        async def run():
            cancel_event = asyncio.Event()

            async def cancelling_sleep(delay):
                cancel_event.set()
                await asyncio.sleep(10)

            output = build_output(schema_file, health_reporter, mock_bq_client, sleep=cancelling_sleep)
            return await output.insert_rows(output.row_mapper.map_rows(sample_events(1)), cancel_event)

        result = asyncio.run(run())

        assert result.cancelled is True
        assert mock_bq_client.insert_rows_json.call_count == 1
        assert not any("Retry over" in m for m in warning_messages(health_reporter))
        health_reporter.report_problem.assert_not_called()

class TestCancellation:
    """Test cancelling while a BigQuery request is still running"""

    def run_cancelled_during(self, output, client_call):
        """Run one insert where ``client_call`` sets the cancel event and then blocks"""
        release = threading.Event()

        async def run():
            loop = asyncio.get_running_loop()
            cancel_event = asyncio.Event()

            def slow_request(*args, **kwargs):
                loop.call_soon_threadsafe(cancel_event.set)
                release.wait(5)
                return []

            client_call.side_effect = slow_request
            rows = output.row_mapper.map_rows(sample_events(1))
            return await output.insert_rows(rows, cancel_event)

        try:
            return asyncio.run(run())
        finally:
            release.set()
            output.close()

    def test_cancel_during_insert_request(self, schema_file, health_reporter, mock_bq_client):
        sleep = RecordingSleep()
        output = build_output(schema_file, health_reporter, mock_bq_client, sleep=sleep)

        result = self.run_cancelled_during(output, mock_bq_client.insert_rows_json)

        assert result.cancelled is True
        assert result.success is False
        assert mock_bq_client.insert_rows_json.call_count == 1
        assert sleep.delays == []
        health_reporter.report_warning.assert_not_called()
        health_reporter.report_problem.assert_not_called()

    def test_cancel_during_table_check(self, schema_file, health_reporter, mock_bq_client):
        output = build_output(schema_file, health_reporter, mock_bq_client)

        result = self.run_cancelled_during(output, mock_bq_client.get_table)

        assert result.cancelled is True
        assert mock_bq_client.get_table.call_count == 1
        mock_bq_client.create_table.assert_not_called()
        mock_bq_client.insert_rows_json.assert_not_called()
        assert output.tables.needs_check is True
        health_reporter.report_warning.assert_not_called()
        health_reporter.report_problem.assert_not_called()

    def test_cancelled_send_events_is_silent(self, schema_file, health_reporter, mock_bq_client):
        """Test send_events returns without a healthy or failure report"""
        release = threading.Event()
        output = build_output(schema_file, health_reporter, mock_bq_client)
        health_reporter.reset_mock()

        async def run():
            loop = asyncio.get_running_loop()
            cancel_event = asyncio.Event()

            def slow_insert(*args, **kwargs):
                loop.call_soon_threadsafe(cancel_event.set)
                release.wait(5)
                return []

            mock_bq_client.insert_rows_json.side_effect = slow_insert
            await output.send_events(sample_events(2), cancel_event=cancel_event)

        try:
            asyncio.run(run())
        finally:
            release.set()
            output.close()

        health_reporter.report_healthy.assert_not_called()
        health_reporter.report_warning.assert_not_called()
        health_reporter.report_problem.assert_not_called()



class TestTableRotation:
    """Test the existence check follows table id rotation"""

    def test_new_day_checks_new_table(self, schema_file, health_reporter, mock_bq_client):
        now = {"value": FIXED_NOW}
        output = build_output(schema_file, health_reporter, mock_bq_client, clock=lambda: now["value"])

        asyncio.run(output.send_events(sample_events(1)))
        now["value"] = FIXED_NOW + timedelta(hours=5)
        asyncio.run(output.send_events(sample_events(1)))
        assert mock_bq_client.get_table.call_count == 1

        now["value"] = FIXED_NOW + timedelta(days=1)
        asyncio.run(output.send_events(sample_events(1)))

        assert mock_bq_client.get_table.call_count == 2
        assert mock_bq_client.get_table.call_args[0][0].table_id == "events_20240116"
        assert mock_bq_client.insert_rows_json.call_args[0][0].table_id == "events_20240116"

    def test_fixed_table_without_auto_create(self, schema_file, health_reporter, mock_bq_client):
        output = build_output(schema_file, health_reporter, mock_bq_client,
                              table_id="events", auto_create_table=False)

        asyncio.run(output.send_events(sample_events(1)))
        asyncio.run(output.send_events(sample_events(1)))

        mock_bq_client.get_table.assert_not_called()
        assert mock_bq_client.insert_rows_json.call_count == 2
