"""BigQuery client wrapper.

The writer only talks to BigQuery through the `BigQueryService` protocol:
- insert_table / get_table for table management.
- insert_all_table_data for streaming inserts.
- insert_job / get_job for load jobs.

`GoogleBigQueryService` implements it on top of `google-cloud-bigquery` and turns
every API failure into a `RemoteServiceError` carrying the HTTP status and the
BigQuery error reason. Timeouts and connection failures become a
`RemoteTransportError`, which has no status.
"""

from __future__ import annotations

import contextlib
from dataclasses import dataclass
from typing import Any, BinaryIO, Iterator, Mapping, Protocol

from google.api_core.exceptions import GoogleAPICallError, RetryError
from google.auth.credentials import Credentials
from google.auth.exceptions import GoogleAuthError
from google.auth.exceptions import TransportError as AuthTransportError
from google.cloud import bigquery
from google.cloud.bigquery.enums import AutoRowIDs
from requests.exceptions import RequestException

from bq_writer.errors import RemoteServiceError, RemoteTransportError
from bq_writer.schema import (
    FieldSchema,
    InsertAllRequest,
    JobReference,
    LoadJobConfiguration,
    TableDefinition,
    parse_fields,
)


@dataclass(frozen=True)
class ErrorProto:
    """One error entry as reported by BigQuery."""

    reason: str | None = None
    message: str | None = None
    location: str | None = None

    @classmethod
    def from_api(cls, resource: Mapping[str, Any]) -> ErrorProto:
        return cls(
            reason=resource.get("reason"),
            message=resource.get("message"),
            location=resource.get("location"),
        )


@dataclass(frozen=True)
class InsertErrors:
    """Errors for one rejected row of a streaming insert."""

    index: int
    errors: tuple[ErrorProto, ...] = ()


@dataclass(frozen=True)
class JobStatus:
    job_id: str
    state: str
    errors: tuple[ErrorProto, ...] = ()
    error_result: ErrorProto | None = None


class BigQueryService(Protocol):
    def insert_table(self, project: str, dataset: str, definition: TableDefinition) -> None: ...

    def get_table(self, project: str, dataset: str, table_id: str) -> list[FieldSchema]: ...

    def insert_all_table_data(
        self, project: str, dataset: str, table_id: str, body: InsertAllRequest
    ) -> list[InsertErrors]: ...

    def insert_job(
        self, project: str, configuration: LoadJobConfiguration, upload_source: BinaryIO
    ) -> JobReference: ...

    def get_job(self, project: str, job_id: str, location: str | None = None) -> JobStatus: ...


@contextlib.contextmanager
def remote_call() -> Iterator[None]:
    """Re-raise Google API, auth and transport failures as RemoteServiceError."""
    try:
        yield
    except (RequestException, RetryError, AuthTransportError) as exc:
        raise RemoteTransportError(str(exc) or type(exc).__name__) from exc
    except GoogleAPICallError as exc:
        reason = None
        if exc.errors:
            first = exc.errors[0]
            if isinstance(first, Mapping):
                reason = first.get("reason")
        raise RemoteServiceError(exc.message, status_code=exc.code, reason=reason) from exc
    except GoogleAuthError as exc:
        raise RemoteServiceError(str(exc), status_code=401) from exc


class GoogleBigQueryService:
    def __init__(
        self,
        credentials: Credentials,
        *,
        open_timeout_sec: float | None = None,
        timeout_sec: float | None = None,
    ) -> None:
        """Create a service bound to one set of credentials.

        Args:
            credentials: Authorized credentials from `bq_writer.auth`.
            open_timeout_sec: Connect timeout applied to every request.
            timeout_sec: Read/send timeout applied to every request.
        """
        self._credentials = credentials
        self._clients: dict[str, bigquery.Client] = {}
        self._call_kwargs: dict[str, Any] = {}
        if open_timeout_sec is not None:
            # requests accepts a (connect, read) pair
            self._call_kwargs["timeout"] = (open_timeout_sec, timeout_sec)
        elif timeout_sec is not None:
            self._call_kwargs["timeout"] = timeout_sec

    def _client(self, project: str) -> bigquery.Client:
        client = self._clients.get(project)
        if client is None:
            client = bigquery.Client(project=project, credentials=self._credentials)
            self._clients[project] = client
        return client

    def insert_table(self, project: str, dataset: str, definition: TableDefinition) -> None:
        resource = definition.to_api()
        resource["tableReference"].update(projectId=project, datasetId=dataset)
        with remote_call():
            self._client(project).create_table(bigquery.Table.from_api_repr(resource), **self._call_kwargs)

    def get_table(self, project: str, dataset: str, table_id: str) -> list[FieldSchema]:
        with remote_call():
            table = self._client(project).get_table(f"{project}.{dataset}.{table_id}", **self._call_kwargs)
        return parse_fields(schema_field.to_api_repr() for schema_field in table.schema)

    def insert_all_table_data(
        self, project: str, dataset: str, table_id: str, body: InsertAllRequest
    ) -> list[InsertErrors]:
        json_rows = [row.json_ for row in body.rows]
        insert_ids = [row.insert_id for row in body.rows]
        # Only send insertIds when every row has one; otherwise let BigQuery skip dedupe.
        row_ids: Any = insert_ids if all(insert_ids) else AutoRowIDs.DISABLED

        with remote_call():
            errors = self._client(project).insert_rows_json(
                f"{project}.{dataset}.{table_id}",
                json_rows,
                row_ids=row_ids,
                skip_invalid_rows=body.skip_invalid_rows,
                ignore_unknown_values=body.ignore_unknown_values,
                template_suffix=body.template_suffix,
                **self._call_kwargs,
            )

        return [
            InsertErrors(
                index=int(entry.get("index", 0)),
                errors=tuple(ErrorProto.from_api(e) for e in entry.get("errors", [])),
            )
            for entry in errors
        ]

    def insert_job(
        self, project: str, configuration: LoadJobConfiguration, upload_source: BinaryIO
    ) -> JobReference:
        load = configuration.to_api()["configuration"]["load"]
        destination = bigquery.TableReference.from_api_repr(load.pop("destinationTable"))
        job_config = bigquery.LoadJobConfig.from_api_repr({"load": load})
        reference = configuration.job_reference
        job_id = reference.job_id if reference else None
        location = reference.location if reference else None

        with remote_call():
            job = self._client(project).load_table_from_file(
                upload_source,
                destination,
                job_id=job_id,
                project=project,
                location=location,
                job_config=job_config,
                **self._call_kwargs,
            )
        return JobReference(project_id=job.project, job_id=job.job_id, location=job.location)

    def get_job(self, project: str, job_id: str, location: str | None = None) -> JobStatus:
        # jobs outside the US and EU multi-regions are only found with their location
        with remote_call():
            job = self._client(project).get_job(job_id, project=project, location=location, **self._call_kwargs)

        return JobStatus(
            job_id=job.job_id,
            state=job.state or "",
            errors=tuple(ErrorProto.from_api(e) for e in (job.errors or [])),
            error_result=ErrorProto.from_api(job.error_result) if job.error_result else None,
        )
