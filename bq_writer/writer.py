"""Resilient write path into BigQuery.

`BigQueryWriter` is shared by every worker delivering chunks:
- It caches one authorized service handle for 30 minutes and drops it after any
  remote failure.
- It creates tables idempotently, with a short bounded retry.
- It streams rows (`insert_rows`) or submits load jobs (`create_load_job`) and
  waits for them to finish.

Load jobs may get a deterministic job id (`prevent_duplicate_load`) so that a
chunk redelivered after an unobserved success is rejected by BigQuery as a
duplicate instead of being loaded twice.
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Iterable, Mapping, Sequence

from google.auth.credentials import Credentials

from bq_writer.auth import resolve_credentials
from bq_writer.bq_client import BigQueryService, GoogleBigQueryService
from bq_writer.config import AuthConfig, WriterConfig
from bq_writer.errors import (
    ConfigError,
    ErrorClassification,
    RemoteServiceError,
    RemoteTransportError,
    RetryableError,
    TableAutoCreatedError,
    UnretryableError,
    classify,
    classify_insert_error_reason,
    wrap,
)
from bq_writer.schema import (
    FieldSchema,
    InsertAllRequest,
    InsertRow,
    JobConfiguration,
    JobReference,
    LoadConfiguration,
    LoadJobConfiguration,
    TableDefinition,
    TableReference,
    TableSchema,
    TimePartitioningSpec,
    fields_text,
    parse_fields,
    safe_table_id,
)

logger = logging.getLogger(__name__)

CLIENT_TTL_SEC = 30 * 60
CREATE_TABLE_MAX_ATTEMPTS = 3
CREATE_TABLE_INITIAL_WAIT_SEC = 1.0
LOAD_JOB_POLL_INTERVAL_SEC = 10.0
JOB_ID_PREFIX = "fluentd_job_"

_ALREADY_EXISTS = re.compile(r"Already Exists:", re.IGNORECASE)
_TABLE_NOT_FOUND = re.compile(r"Not Found: Table", re.IGNORECASE)
_DUPLICATE_JOB = re.compile(r"Job")

ServiceFactory = Callable[[Credentials, WriterConfig], BigQueryService]
CredentialsResolver = Callable[[AuthConfig], Credentials]


def google_service_factory(credentials: Credentials, config: WriterConfig) -> BigQueryService:
    return GoogleBigQueryService(
        credentials,
        open_timeout_sec=config.open_timeout_sec,
        timeout_sec=config.timeout_sec,
    )


@dataclass(frozen=True)
class ClientHandle:
    """An authorized service plus the monotonic time it stops being reusable."""

    service: BigQueryService
    created_at: float
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


class ChunkErrorCounter:
    """Consecutive retryable load failures per chunk id. Absent means zero."""

    def __init__(self, lock: threading.Lock | None = None) -> None:
        self._lock = lock or threading.Lock()
        self._counts: dict[str, int] = {}

    def get(self, chunk_id: str) -> int:
        with self._lock:
            return self._counts.get(chunk_id, 0)

    def increment(self, chunk_id: str) -> int:
        with self._lock:
            count = self._counts.get(chunk_id, 0) + 1
            self._counts[chunk_id] = count
            return count

    def clear(self, chunk_id: str) -> None:
        with self._lock:
            self._counts.pop(chunk_id, None)

    def __contains__(self, chunk_id: object) -> bool:
        with self._lock:
            return chunk_id in self._counts


def derive_job_id(
    chunk_id: str,
    dataset: str,
    table_id: str,
    fields: Sequence[FieldSchema],
    *,
    max_bad_records: int,
    ignore_unknown_values: bool,
    error_count: int,
) -> str:
    """Deterministic load job id.

    Identical inputs always give the same id, so a resubmission of the same
    attempt is recognized by BigQuery as a duplicate. `error_count` changes
    after every retryable failure, which gives the next attempt a fresh id.
    """
    key = "".join(
        [
            chunk_id,
            dataset,
            table_id,
            fields_text(fields),
            str(max_bad_records),
            str(ignore_unknown_values).lower(),
            str(error_count),
        ]
    )
    logger.debug("job_id_key: %s", key)
    return JOB_ID_PREFIX + hashlib.sha1(key.encode("utf-8")).hexdigest()


def _error_context(exc: RemoteServiceError) -> dict[str, Any]:
    return {"code": exc.status_code, "reason": exc.reason, "error_message": exc.message}


class BigQueryWriter:
    def __init__(
        self,
        config: WriterConfig | Mapping[str, Any],
        *,
        service_factory: ServiceFactory = google_service_factory,
        credentials_resolver: CredentialsResolver = resolve_credentials,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Create a writer.

        Args:
            config: Writer options. A mapping is validated into a WriterConfig.
            service_factory: Builds a BigQueryService from resolved credentials.
            credentials_resolver: Resolves credentials for the configured auth method.
            clock: Monotonic clock used for the handle expiry.
            sleep: Used for table-creation backoff and load-job polling.

        Raises:
            ConfigError: The options are invalid (including an unknown auth method).
        """
        if not isinstance(config, WriterConfig):
            try:
                config = WriterConfig.model_validate(config)
            except ValueError as exc:
                raise ConfigError(f"invalid writer configuration: {exc}") from exc

        self._config = config
        self._service_factory = service_factory
        self._credentials_resolver = credentials_resolver
        self._clock = clock
        self._sleep = sleep

        # Guards the cached handle; the chunk counter shares it.
        self._lock = threading.Lock()
        self._handle: ClientHandle | None = None
        self._error_counter = ChunkErrorCounter(self._lock)

    @property
    def config(self) -> WriterConfig:
        return self._config

    @property
    def error_counter(self) -> ChunkErrorCounter:
        return self._error_counter

    def client(self) -> BigQueryService:
        """Return the cached service, resolving a new one if missing or expired."""
        with self._lock:
            now = self._clock()
            if self._handle is not None and self._handle.is_valid(now):
                return self._handle.service

            credentials = self._credentials_resolver(self._config.auth)
            service = self._service_factory(credentials, self._config)
            self._handle = ClientHandle(service=service, created_at=now, expires_at=now + CLIENT_TTL_SEC)
            logger.debug("created BigQuery client handle", extra={"auth_method": self._config.auth.method})
            return service

    def invalidate_client(self) -> None:
        with self._lock:
            self._handle = None

    def _table_definition(self, table_id: str, fields: Sequence[FieldSchema]) -> TableDefinition:
        partitioning = None
        if self._config.time_partitioning is not None:
            options = self._config.time_partitioning
            partitioning = TimePartitioningSpec(
                type=options.type.upper(),
                expiration_ms=options.expiration_sec * 1000 if options.expiration_sec is not None else None,
            )
        return TableDefinition(
            table_reference=TableReference(table_id=table_id),
            table_schema=TableSchema(fields=list(fields)),
            time_partitioning=partitioning,
        )

    def create_table(
        self,
        project: str,
        dataset: str,
        table_id: str,
        fields: Iterable[FieldSchema | Mapping[str, Any]],
    ) -> None:
        """Create a table; an already existing table counts as success.

        Failures with a retryable reason, and requests that got no answer, are
        retried in place: up to three attempts in total, waiting 1s then 2s
        between them. The HTTP status alone never triggers a retry here.

        Raises:
            UnretryableError: Creation failed and cannot or can no longer be retried.
        """
        table_id = safe_table_id(table_id)
        definition = self._table_definition(table_id, parse_fields(fields))
        context = {"project_id": project, "dataset": dataset, "table": table_id}

        wait = CREATE_TABLE_INITIAL_WAIT_SEC
        attempt = 1
        while True:
            try:
                self.client().insert_table(project, dataset, definition)
            except RemoteServiceError as exc:
                self.invalidate_client()

                if exc.status_code == 409 and _ALREADY_EXISTS.search(exc.message):
                    logger.debug("already created table", extra=context)
                    return

                logger.error("tables.insert API", extra={**context, **_error_context(exc)})
                retryable = (
                    isinstance(exc, RemoteTransportError)
                    or classify(None, exc.reason) is ErrorClassification.retryable
                )
                if retryable and attempt < CREATE_TABLE_MAX_ATTEMPTS:
                    self._sleep(wait)
                    wait *= 2
                    attempt += 1
                    continue
                raise UnretryableError("failed to create table in bigquery", exc) from exc

            logger.debug("create table", extra=context)
            # Refresh the handle so later calls see the new table.
            self.invalidate_client()
            return

    def fetch_schema(self, project: str, dataset: str, table_id: str) -> list[dict[str, Any]] | None:
        """Return the live table schema as API field dicts, or None if it cannot be read."""
        try:
            fields = self.client().get_table(project, dataset, table_id)
        except RemoteServiceError as exc:
            self.invalidate_client()
            logger.error(
                "tables.get API",
                extra={"project_id": project, "dataset": dataset, "table": table_id, **_error_context(exc)},
            )
            return None

        schema = [f.to_api() for f in fields]
        logger.debug("Load schema from BigQuery: %s:%s.%s %s", project, dataset, table_id, schema)
        return schema

    def insert_rows(
        self,
        project: str,
        dataset: str,
        table_id: str,
        rows: Sequence[Mapping[str, Any]],
        *,
        template_suffix: str | None = None,
        row_ids: Sequence[str | None] | None = None,
    ) -> None:
        """Stream rows into a table.

        Args:
            project: GCP project id.
            dataset: Dataset id.
            table_id: Table id.
            rows: JSON-serializable row mappings, in order.
            template_suffix: Optional suffix; BigQuery creates `<table><suffix>` from the template.
            row_ids: Optional insertId per row for best-effort de-duplication.

        Raises:
            RetryableError: Transient remote failure, or retryable per-row errors
                when `allow_retry_insert_errors` is set.
            UnretryableError: Permanent remote failure, or only non-retryable
                per-row errors when `allow_retry_insert_errors` is set.
        """
        if row_ids is None:
            row_ids = [None] * len(rows)
        body = InsertAllRequest(
            rows=[InsertRow(json_=dict(row), insert_id=row_id) for row, row_id in zip(rows, row_ids, strict=True)],
            skip_invalid_rows=self._config.skip_invalid_rows,
            ignore_unknown_values=self._config.ignore_unknown_values,
            template_suffix=template_suffix,
        )
        context = {"project_id": project, "dataset": dataset, "table": table_id}

        try:
            insert_errors = self.client().insert_all_table_data(project, dataset, table_id, body)
        except RemoteServiceError as exc:
            self.invalidate_client()
            wrapped = wrap(exc)
            if wrapped.retryable:
                logger.warning("tabledata.insertAll API", extra={**context, **_error_context(exc)})
            else:
                logger.error("tabledata.insertAll API", extra={**context, **_error_context(exc)})
            raise wrapped from exc

        logger.debug("insert rows", extra={**context, "count": len(rows)})
        if not insert_errors:
            return

        logger.warning("insert errors", extra={**context, "insert_errors": repr(insert_errors)})
        if not self._config.allow_retry_insert_errors:
            return

        any_retryable = any(
            classify_insert_error_reason(error.reason) is ErrorClassification.retryable
            for insert_error in insert_errors
            for error in insert_error.errors
        )
        if any_retryable:
            raise RetryableError("failed to insert into bigquery(insert errors), retry")
        raise UnretryableError("failed to insert into bigquery(insert errors), and cannot retry")

    def create_job_id(self, chunk_id: str, dataset: str, table_id: str, fields: Sequence[FieldSchema]) -> str:
        return derive_job_id(
            chunk_id,
            dataset,
            table_id,
            fields,
            max_bad_records=self._config.max_bad_records,
            ignore_unknown_values=self._config.ignore_unknown_values,
            error_count=self._error_counter.get(chunk_id),
        )

    def _load_configuration(
        self, project: str, dataset: str, table_id: str, fields: list[FieldSchema], job_id: str | None
    ) -> LoadJobConfiguration:
        load = LoadConfiguration(
            destination_table=TableReference(project_id=project, dataset_id=dataset, table_id=table_id),
            table_schema=TableSchema(fields=fields),
            source_format=self._config.source_format.api_value,
            ignore_unknown_values=self._config.ignore_unknown_values,
            max_bad_records=self._config.max_bad_records,
        )
        if self._config.time_partitioning is not None:
            # a load job must never create a partitioned table implicitly
            load.create_disposition = "CREATE_NEVER"

        location = self._config.location
        job_reference = None
        if job_id or location:
            job_reference = JobReference(project_id=project, job_id=job_id, location=location)
        return LoadJobConfiguration(configuration=JobConfiguration(load=load), job_reference=job_reference)

    def create_load_job(
        self,
        chunk_id: str,
        project: str,
        dataset: str,
        table_id: str,
        upload_source: BinaryIO,
        fields: Iterable[FieldSchema | Mapping[str, Any]],
    ) -> None:
        """Load a chunk through a load job and wait until BigQuery finishes it.

        Args:
            chunk_id: Identifier of the chunk being delivered.
            project: GCP project id.
            dataset: Dataset id.
            table_id: Destination table id.
            upload_source: Binary stream of NDJSON, Avro or CSV data.
            fields: Table schema, used when the table does not exist yet.

        Raises:
            TableAutoCreatedError: The table was missing and has just been created;
                deliver the chunk again.
            RetryableError: Transient failure; deliver the chunk again.
            UnretryableError: Permanent failure.
        """
        fields = parse_fields(fields)
        job_id = self.create_job_id(chunk_id, dataset, table_id, fields) if self._config.prevent_duplicate_load else None
        configuration = self._load_configuration(project, dataset, table_id, fields, job_id)
        context = {"project_id": project, "dataset": dataset, "table": table_id, "job_id": job_id}

        try:
            service = self.client()
            try:
                service.get_table(project, dataset, table_id)
            except RemoteServiceError:
                if not fields:
                    raise UnretryableError("Schema is empty")
            else:
                # Existing table: the schema would only risk a mismatch error.
                configuration.load.table_schema = None

            job = service.insert_job(project, configuration, upload_source)
        except RemoteServiceError as exc:
            self.invalidate_client()
            logger.error("job.load API", extra={**context, **_error_context(exc)})

            if self._config.auto_create_table and exc.status_code == 404 and _TABLE_NOT_FOUND.search(exc.message):
                self.create_table(project, dataset, table_id, fields)
                raise TableAutoCreatedError("table created. send rows next time.", exc) from exc

            if job_id and exc.status_code == 409 and _DUPLICATE_JOB.search(exc.message):
                # An earlier submission of this exact attempt reached BigQuery.
                logger.info("load job already submitted, waiting for it", extra=context)
                self.wait_load_job(chunk_id, project, dataset, job_id, table_id, location=self._config.location)
                self._error_counter.clear(chunk_id)
                return

            raise wrap(exc) from exc

        self.wait_load_job(
            chunk_id, project, dataset, job.job_id, table_id, location=job.location or self._config.location
        )
        self._error_counter.clear(chunk_id)

    def wait_load_job(
        self,
        chunk_id: str,
        project: str,
        dataset: str,
        job_id: str,
        table_id: str,
        *,
        location: str | None = None,
    ) -> None:
        """Block until the job is DONE, then turn its result into success or an error.

        There is no timeout: the job's own lifecycle bounds the wait. `location`
        is the job's region, passed on every jobs.get call.
        """
        context = {"project_id": project, "dataset": dataset, "table": table_id, "job_id": job_id}

        try:
            status = self.client().get_job(project, job_id, location)
            while status.state != "DONE":
                logger.debug("wait for load job finish", extra={"state": status.state, "job_id": status.job_id})
                self._sleep(LOAD_JOB_POLL_INTERVAL_SEC)
                status = self.client().get_job(project, status.job_id, location)
        except RemoteServiceError as exc:
            self.invalidate_client()
            logger.error("jobs.get API", extra={**context, **_error_context(exc)})
            raise wrap(exc) from exc

        for error in status.errors:
            logger.error(
                "job.insert API (rows)",
                extra={**context, "reason": error.reason, "error_message": error.message},
            )

        error_result = status.error_result
        if error_result is not None:
            logger.error(
                "job.insert API (result)",
                extra={**context, "reason": error_result.reason, "error_message": error_result.message},
            )
            if classify(None, error_result.reason) is ErrorClassification.retryable:
                self._error_counter.increment(chunk_id)
                raise RetryableError("failed to load into bigquery, retry")
            self._error_counter.clear(chunk_id)
            raise UnretryableError("failed to load into bigquery, and cannot retry")

        logger.debug("finish load job", extra={**context, "state": status.state})
