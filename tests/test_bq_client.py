"""Tests for the google-cloud-bigquery backed service, with the client mocked out."""

from __future__ import annotations

import io
from unittest import mock

import pytest
import requests
from google.api_core import exceptions
from google.auth.exceptions import RefreshError, TransportError
from google.cloud import bigquery
from google.cloud.bigquery.enums import AutoRowIDs

from bq_writer import bq_client
from bq_writer.bq_client import ErrorProto, GoogleBigQueryService, InsertErrors
from bq_writer.errors import RemoteServiceError, RemoteTransportError
from bq_writer.schema import (
    InsertAllRequest,
    InsertRow,
    JobConfiguration,
    JobReference,
    LoadConfiguration,
    LoadJobConfiguration,
    TableDefinition,
    TableReference,
    TableSchema,
    parse_fields,
)


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch) -> mock.MagicMock:
    instance = mock.MagicMock(name="bigquery.Client()")
    factory = mock.MagicMock(name="bigquery.Client", return_value=instance)
    monkeypatch.setattr(bq_client.bigquery, "Client", factory)
    instance.factory = factory
    return instance


def test_one_client_per_project(client) -> None:
    credentials = object()
    service = GoogleBigQueryService(credentials)

    service.get_job("p1", "job")
    service.get_job("p1", "job")
    service.get_job("p2", "job")

    assert client.factory.call_args_list == [
        mock.call(project="p1", credentials=credentials),
        mock.call(project="p2", credentials=credentials),
    ]


def test_api_errors_become_remote_service_errors(client) -> None:
    client.get_table.side_effect = exceptions.NotFound(
        "Not found: Table p:d.t", errors=[{"reason": "notFound", "message": "Not found: Table p:d.t"}]
    )

    with pytest.raises(RemoteServiceError) as excinfo:
        GoogleBigQueryService(object()).get_table("p", "d", "t")

    assert excinfo.value.status_code == 404
    assert excinfo.value.reason == "notFound"
    assert excinfo.value.message == "Not found: Table p:d.t"


def test_auth_errors_become_remote_service_errors(client) -> None:
    client.get_job.side_effect = RefreshError("token expired")

    with pytest.raises(RemoteServiceError) as excinfo:
        GoogleBigQueryService(object()).get_job("p", "job")

    assert excinfo.value.status_code == 401
    assert excinfo.value.reason is None


@pytest.mark.parametrize(
    "error",
    [
        requests.exceptions.ReadTimeout("Read timed out. (read timeout=5)"),
        requests.exceptions.ConnectionError("Connection aborted."),
        exceptions.RetryError("Deadline of 600.0s exceeded", cause=None),
        TransportError("Failed to retrieve http://metadata.google.internal"),
    ],
)
def test_transport_failures_become_remote_transport_errors(client, error) -> None:
    client.insert_rows_json.side_effect = error
    body = InsertAllRequest(rows=[InsertRow(json_={"a": 1})])

    with pytest.raises(RemoteTransportError) as excinfo:
        GoogleBigQueryService(object(), timeout_sec=5).insert_all_table_data("p", "d", "t", body)

    assert excinfo.value.status_code is None
    assert excinfo.value.__cause__ is error


@pytest.mark.parametrize(
    ("kwargs", "expected"),
    [
        ({}, {}),
        ({"timeout_sec": 30}, {"timeout": 30}),
        ({"open_timeout_sec": 5, "timeout_sec": 30}, {"timeout": (5, 30)}),
    ],
)
def test_timeouts_are_applied_to_calls(client, kwargs, expected) -> None:
    GoogleBigQueryService(object(), **kwargs).get_job("p", "job")

    client.get_job.assert_called_once_with("job", project="p", location=None, **expected)


def test_insert_table_fills_in_project_and_dataset(client) -> None:
    definition = TableDefinition(
        table_reference=TableReference(table_id="t"),
        table_schema=TableSchema(fields=parse_fields([{"name": "message", "type": "STRING"}])),
    )

    GoogleBigQueryService(object()).insert_table("p", "d", definition)

    (table,), _ = client.create_table.call_args
    assert isinstance(table, bigquery.Table)
    assert (table.project, table.dataset_id, table.table_id) == ("p", "d", "t")
    assert [f.name for f in table.schema] == ["message"]


def test_get_table_returns_fields(client) -> None:
    client.get_table.return_value.schema = [bigquery.SchemaField("message", "STRING", mode="REQUIRED")]

    fields = GoogleBigQueryService(object()).get_table("p", "d", "t")

    client.get_table.assert_called_once_with("p.d.t")
    assert [(f.name, f.type, f.mode) for f in fields] == [("message", "STRING", "REQUIRED")]


class TestInsertAll:
    def body(self, *insert_ids) -> InsertAllRequest:
        return InsertAllRequest(
            rows=[InsertRow(json_={"n": i}, insert_id=insert_id) for i, insert_id in enumerate(insert_ids)],
            skip_invalid_rows=True,
            template_suffix="_x",
        )

    def test_maps_row_errors(self, client) -> None:
        client.insert_rows_json.return_value = [
            {"index": 1, "errors": [{"reason": "invalid", "location": "n", "message": "no such field"}]}
        ]

        errors = GoogleBigQueryService(object()).insert_all_table_data("p", "d", "t", self.body("a", "b"))

        assert errors == [InsertErrors(index=1, errors=(ErrorProto("invalid", "no such field", "n"),))]
        client.insert_rows_json.assert_called_once_with(
            "p.d.t",
            [{"n": 0}, {"n": 1}],
            row_ids=["a", "b"],
            skip_invalid_rows=True,
            ignore_unknown_values=False,
            template_suffix="_x",
        )

    def test_missing_insert_ids_disable_dedupe(self, client) -> None:
        client.insert_rows_json.return_value = []

        GoogleBigQueryService(object()).insert_all_table_data("p", "d", "t", self.body("a", None))

        assert client.insert_rows_json.call_args.kwargs["row_ids"] is AutoRowIDs.DISABLED


def test_insert_job_uploads_with_job_config(client) -> None:
    job = client.load_table_from_file.return_value
    job.project, job.job_id, job.location = "p", "fluentd_job_1", "US"
    configuration = LoadJobConfiguration(
        configuration=JobConfiguration(
            load=LoadConfiguration(
                destination_table=TableReference(project_id="p", dataset_id="d", table_id="t"),
                source_format="NEWLINE_DELIMITED_JSON",
                max_bad_records=2,
                create_disposition="CREATE_NEVER",
            )
        ),
        job_reference=JobReference(project_id="p", job_id="fluentd_job_1"),
    )
    source = io.BytesIO(b"{}\n")

    reference = GoogleBigQueryService(object()).insert_job("p", configuration, source)

    assert reference == JobReference(project_id="p", job_id="fluentd_job_1", location="US")
    (upload_source, destination), kwargs = client.load_table_from_file.call_args
    assert upload_source is source
    assert destination == bigquery.TableReference.from_string("p.d.t")
    assert kwargs["job_id"] == "fluentd_job_1"
    assert kwargs["project"] == "p"
    job_config = kwargs["job_config"]
    assert job_config.source_format == "NEWLINE_DELIMITED_JSON"
    assert job_config.write_disposition == "WRITE_APPEND"
    assert job_config.create_disposition == "CREATE_NEVER"
    assert job_config.max_bad_records == 2


def test_get_job_status(client) -> None:
    job = client.get_job.return_value
    job.job_id = "job-1"
    job.state = "DONE"
    job.errors = [{"reason": "invalid", "message": "bad row"}]
    job.error_result = {"reason": "invalid", "message": "too many errors"}

    status = GoogleBigQueryService(object()).get_job("p", "job-1")

    assert status.state == "DONE"
    assert status.errors == (ErrorProto(reason="invalid", message="bad row"),)
    assert status.error_result == ErrorProto(reason="invalid", message="too many errors")


def test_insert_job_and_get_job_pass_location(client) -> None:
    job = client.load_table_from_file.return_value
    job.project, job.job_id, job.location = "p", "job-1", "asia-northeast1"
    configuration = LoadJobConfiguration(
        configuration=JobConfiguration(
            load=LoadConfiguration(destination_table=TableReference(project_id="p", dataset_id="d", table_id="t"))
        ),
        job_reference=JobReference(project_id="p", location="asia-northeast1"),
    )
    service = GoogleBigQueryService(object())

    reference = service.insert_job("p", configuration, io.BytesIO(b"{}\n"))
    service.get_job("p", reference.job_id, reference.location)

    kwargs = client.load_table_from_file.call_args.kwargs
    assert kwargs["job_id"] is None
    assert kwargs["location"] == "asia-northeast1"
    client.get_job.assert_called_once_with("job-1", project="p", location="asia-northeast1")
