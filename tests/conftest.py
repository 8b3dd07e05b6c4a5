"""Shared fixtures: a scripted BigQuery service, a fake clock and a recording sleep."""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable

import pytest

from bq_writer.bq_client import JobStatus
from bq_writer.config import WriterConfig
from bq_writer.errors import RemoteServiceError
from bq_writer.schema import JobReference
from bq_writer.writer import BigQueryWriter


class FakeBigQueryService:
    """In-memory BigQueryService.

    Responses queued with `queue()` are consumed in order; an exception instance
    is raised instead of returned. Without a queued response a default is used.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self._responses: dict[str, list[Any]] = defaultdict(list)

    def queue(self, method: str, *responses: Any) -> None:
        self._responses[method].extend(responses)

    def calls_to(self, method: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == method]

    def _respond(self, method: str, default: Any, *args: Any) -> Any:
        self.calls.append((method, args))
        response = self._responses[method].pop(0) if self._responses[method] else default
        if isinstance(response, BaseException):
            raise response
        return response

    def insert_table(self, project, dataset, definition):
        return self._respond("insert_table", None, project, dataset, definition)

    def get_table(self, project, dataset, table_id):
        return self._respond("get_table", [], project, dataset, table_id)

    def insert_all_table_data(self, project, dataset, table_id, body):
        return self._respond("insert_all_table_data", [], project, dataset, table_id, body)

    def insert_job(self, project, configuration, upload_source):
        reference = configuration.job_reference or JobReference(project_id=project)
        default = JobReference(
            project_id=project, job_id=reference.job_id or "job_generated", location=reference.location
        )
        return self._respond("insert_job", default, project, configuration, upload_source)

    def get_job(self, project, job_id, location=None):
        return self._respond("get_job", JobStatus(job_id=job_id, state="DONE"), project, job_id, location)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self) -> None:
        self.durations: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.durations.append(seconds)


class CountingResolver:
    def __init__(self) -> None:
        self.calls = 0

    def __call__(self, auth: Any) -> object:
        self.calls += 1
        return object()


def remote_error(status_code: int, message: str, reason: str | None = None) -> RemoteServiceError:
    return RemoteServiceError(message, status_code=status_code, reason=reason)


@pytest.fixture
def service() -> FakeBigQueryService:
    return FakeBigQueryService()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def resolver() -> CountingResolver:
    return CountingResolver()


@pytest.fixture
def make_writer(service, clock, sleeps, resolver) -> Callable[..., BigQueryWriter]:
    def _make(**options: Any) -> BigQueryWriter:
        return BigQueryWriter(
            WriterConfig(**options),
            service_factory=lambda credentials, config: service,
            credentials_resolver=resolver,
            clock=clock,
            sleep=sleeps,
        )

    return _make


@pytest.fixture
def fields() -> list[dict[str, Any]]:
    return [
        {"name": "time", "type": "TIMESTAMP", "mode": "REQUIRED"},
        {"name": "message", "type": "STRING"},
        {
            "name": "request",
            "type": "RECORD",
            "mode": "NULLABLE",
            "fields": [{"name": "path", "type": "STRING"}],
        },
    ]
