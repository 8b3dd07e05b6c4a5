"""Writer configuration.

The options are fixed once the writer is built. `load_config()` reads them from
`BQ_*` environment variables, which is how the service is configured on Cloud Run.
"""

from __future__ import annotations

import json
import os
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from bq_writer.errors import ConfigError
from bq_writer.schema import FieldSchema, parse_fields


class SourceFormat(str, Enum):
    json = "json"
    avro = "avro"
    csv = "csv"

    @property
    def api_value(self) -> str:
        return {
            SourceFormat.json: "NEWLINE_DELIMITED_JSON",
            SourceFormat.avro: "AVRO",
            SourceFormat.csv: "CSV",
        }[self]


class WriteMode(str, Enum):
    insert = "insert"
    load = "load"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class PrivateKeyAuth(_Frozen):
    method: Literal["private_key"] = "private_key"
    email: str
    private_key_path: str
    private_key_passphrase: str = "notasecret"


class ComputeEngineAuth(_Frozen):
    method: Literal["compute_engine"] = "compute_engine"


class JsonKeyAuth(_Frozen):
    """`json_key` is either the key file contents or a path to the key file."""

    method: Literal["json_key"] = "json_key"
    json_key: str


class ApplicationDefaultAuth(_Frozen):
    method: Literal["application_default"] = "application_default"


AuthConfig = Annotated[
    Union[PrivateKeyAuth, ComputeEngineAuth, JsonKeyAuth, ApplicationDefaultAuth],
    Field(discriminator="method"),
]


class TimePartitioningConfig(_Frozen):
    type: str
    expiration_sec: int | None = None


class WriterConfig(_Frozen):
    """Options for BigQueryWriter. Never mutated after construction."""

    auth: AuthConfig = Field(default_factory=ApplicationDefaultAuth)
    open_timeout_sec: float | None = None
    timeout_sec: float | None = None

    # Streaming inserts
    skip_invalid_rows: bool = False
    ignore_unknown_values: bool = False
    allow_retry_insert_errors: bool = False

    time_partitioning: TimePartitioningConfig | None = None

    # Load jobs
    auto_create_table: bool = False
    max_bad_records: int = Field(default=0, ge=0)
    prevent_duplicate_load: bool = False
    source_format: SourceFormat = SourceFormat.json
    # dataset region; needed to look up jobs outside the US and EU multi-regions
    location: str | None = None


class DeliveryConfig(_Frozen):
    """Where pushed chunks go and how they are written."""

    project: str = Field(min_length=1)
    dataset: str = Field(min_length=1)
    table: str = Field(min_length=1)
    write_mode: WriteMode = WriteMode.insert
    fields: tuple[FieldSchema, ...] = ()
    template_suffix: str | None = None
    insert_id_field: str | None = None


class ServiceConfig(_Frozen):
    writer: WriterConfig
    delivery: DeliveryConfig


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _auth_from_env() -> dict[str, Any]:
    method = os.getenv("BQ_AUTH_METHOD", "application_default")
    auth: dict[str, Any] = {"method": method}
    if method == "private_key":
        auth.update(
            email=os.getenv("BQ_EMAIL"),
            private_key_path=os.getenv("BQ_PRIVATE_KEY_PATH"),
            private_key_passphrase=os.getenv("BQ_PRIVATE_KEY_PASSPHRASE", "notasecret"),
        )
    elif method == "json_key":
        auth.update(json_key=os.getenv("BQ_JSON_KEY"))
    return auth


def load_config() -> ServiceConfig:
    """Load config from environment variables with sensible defaults.

    Raises:
        ConfigError: An option is missing or invalid (including an unknown
            BQ_AUTH_METHOD).
    """
    partitioning = None
    if os.getenv("BQ_TIME_PARTITIONING_TYPE"):
        partitioning = {
            "type": os.getenv("BQ_TIME_PARTITIONING_TYPE"),
            "expiration_sec": os.getenv("BQ_TIME_PARTITIONING_EXPIRATION") or None,
        }

    try:
        schema_json = os.getenv("BQ_SCHEMA")
        fields = tuple(parse_fields(json.loads(schema_json))) if schema_json else ()

        writer = WriterConfig(
            auth=_auth_from_env(),
            open_timeout_sec=os.getenv("BQ_OPEN_TIMEOUT_SEC") or None,
            timeout_sec=os.getenv("BQ_TIMEOUT_SEC") or None,
            skip_invalid_rows=_env_bool("BQ_SKIP_INVALID_ROWS"),
            ignore_unknown_values=_env_bool("BQ_IGNORE_UNKNOWN_VALUES"),
            allow_retry_insert_errors=_env_bool("BQ_ALLOW_RETRY_INSERT_ERRORS"),
            time_partitioning=partitioning,
            auto_create_table=_env_bool("BQ_AUTO_CREATE_TABLE"),
            max_bad_records=os.getenv("BQ_MAX_BAD_RECORDS", "0"),
            prevent_duplicate_load=_env_bool("BQ_PREVENT_DUPLICATE_LOAD"),
            source_format=os.getenv("BQ_SOURCE_FORMAT", "json"),
            location=os.getenv("BQ_LOCATION") or None,
        )
        delivery = DeliveryConfig(
            project=os.getenv("BQ_PROJECT") or os.getenv("GOOGLE_CLOUD_PROJECT") or "",
            dataset=os.getenv("BQ_DATASET", "logs"),
            table=os.getenv("BQ_TABLE", "events"),
            write_mode=os.getenv("BQ_WRITE_MODE", "insert"),
            fields=fields,
            template_suffix=os.getenv("BQ_TEMPLATE_SUFFIX") or None,
            insert_id_field=os.getenv("BQ_INSERT_ID_FIELD") or None,
        )
    except (ValidationError, ValueError) as exc:
        raise ConfigError(f"invalid writer configuration: {exc}") from exc

    return ServiceConfig(writer=writer, delivery=delivery)
