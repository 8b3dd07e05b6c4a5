"""Request shapes sent to BigQuery: table definitions and load-job configurations.

Models use snake_case attributes and dump to the REST representation
(camelCase) with `to_api()`.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

_PARTITION_DECORATOR = re.compile(r"\$\d+$")


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_api(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class FieldSchema(ApiModel):
    """One column of a table schema. RECORD columns carry nested `fields`."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    name: str
    type: str
    mode: str | None = None
    description: str | None = None
    fields: list[FieldSchema] | None = None


_FIELDS_ADAPTER = TypeAdapter(list[FieldSchema])


def parse_fields(fields: Iterable[FieldSchema | Mapping[str, Any]] | None) -> list[FieldSchema]:
    """Accept field descriptors as models or plain dicts (API or snake_case keys)."""
    if not fields:
        return []
    return _FIELDS_ADAPTER.validate_python(
        [f.to_api() if isinstance(f, FieldSchema) else dict(f) for f in fields]
    )


def fields_text(fields: Iterable[FieldSchema]) -> str:
    """Stable textual form of a schema, used as part of load job ids."""
    return json.dumps([f.to_api() for f in fields], separators=(",", ":"))


class TableSchema(ApiModel):
    fields: list[FieldSchema] = Field(default_factory=list)


class TableReference(ApiModel):
    project_id: str | None = None
    dataset_id: str | None = None
    table_id: str


class TimePartitioningSpec(ApiModel):
    type: str
    expiration_ms: int | None = None


class TableDefinition(ApiModel):
    table_reference: TableReference
    table_schema: TableSchema = Field(alias="schema")
    time_partitioning: TimePartitioningSpec | None = None


class LoadConfiguration(ApiModel):
    destination_table: TableReference
    table_schema: TableSchema | None = Field(default=None, alias="schema")
    write_disposition: str = "WRITE_APPEND"
    source_format: str
    ignore_unknown_values: bool = False
    max_bad_records: int = 0
    create_disposition: str | None = None


class JobConfiguration(ApiModel):
    load: LoadConfiguration


class JobReference(ApiModel):
    """`job_id` unset lets BigQuery generate one; `location` is the dataset region."""

    project_id: str
    job_id: str | None = None
    location: str | None = None


class LoadJobConfiguration(ApiModel):
    configuration: JobConfiguration
    job_reference: JobReference | None = None

    @property
    def load(self) -> LoadConfiguration:
        return self.configuration.load


def safe_table_id(table_id: str) -> str:
    """Strip a trailing `$YYYYMMDD`-style partition decorator."""
    return _PARTITION_DECORATOR.sub("", table_id)


class InsertRow(ApiModel):
    json_: dict[str, Any] = Field(alias="json")
    insert_id: str | None = None


class InsertAllRequest(ApiModel):
    """Body of a tabledata.insertAll call."""

    rows: list[InsertRow]
    skip_invalid_rows: bool = False
    ignore_unknown_values: bool = False
    template_suffix: str | None = None
