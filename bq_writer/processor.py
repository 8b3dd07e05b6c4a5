"""Chunk processing logic.

This module turns a pushed chunk into a writer call:
- Decode the push envelope (base64 payload, messageId as chunk id).
- `insert` mode: parse NDJSON rows and stream them. A message attribute
  `insert_id_field` overrides the configured insert id field for that chunk.
- `load` mode: hand the raw payload to a load job as the upload source.

Design note:
The push system redelivers on non-2xx responses, so the caller maps
RetryableError/TableAutoCreatedError to 5xx and UnretryableError to an ack.
"""

from __future__ import annotations

import base64
import binascii
import io
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

from bq_writer.config import DeliveryConfig, WriteMode
from bq_writer.writer import BigQueryWriter

logger = logging.getLogger(__name__)


class InvalidChunkError(ValueError):
    """The pushed payload cannot be turned into rows."""


class PushMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data: str
    message_id: str = Field(alias="messageId", min_length=1)
    publish_time: str | None = Field(default=None, alias="publishTime")
    attributes: dict[str, str] = Field(default_factory=dict)


class PushEnvelope(BaseModel):
    """Standard push envelope: {"message": {...}, "subscription": "..."}."""

    message: PushMessage
    subscription: str | None = None


@dataclass(frozen=True)
class Chunk:
    chunk_id: str
    payload: bytes
    attributes: Mapping[str, str] = field(default_factory=dict)

    def rows(self) -> list[dict[str, Any]]:
        """Parse the payload as newline-delimited JSON objects."""
        try:
            text = self.payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidChunkError(f"payload is not UTF-8: {exc}") from exc

        rows: list[dict[str, Any]] = []
        for line_no, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                row = json.loads(line)
            except ValueError as exc:
                raise InvalidChunkError(f"line {line_no}: {exc}") from exc
            if not isinstance(row, dict):
                raise InvalidChunkError(f"line {line_no}: expected a JSON object")
            rows.append(row)
        return rows


def decode_chunk(envelope: PushEnvelope) -> Chunk:
    try:
        payload = base64.b64decode(envelope.message.data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidChunkError(f"invalid base64 payload: {exc}") from exc
    return Chunk(
        chunk_id=envelope.message.message_id,
        payload=payload,
        attributes=dict(envelope.message.attributes),
    )


def _row_ids(rows: list[Mapping[str, Any]], insert_id_field: str | None) -> list[str | None] | None:
    """insertId per row from the configured field; missing values stay None."""
    if not insert_id_field:
        return None
    return [str(row[insert_id_field]) if row.get(insert_id_field) is not None else None for row in rows]


def deliver_chunk(*, chunk: Chunk, writer: BigQueryWriter, config: DeliveryConfig) -> None:
    """Write a single chunk.

    Args:
        chunk: Decoded chunk.
        writer: Shared BigQuery writer.
        config: Destination and write mode.

    Raises:
        InvalidChunkError: `insert` mode and the payload is not NDJSON objects.
        BigQueryWriterError: Any writer failure, unchanged.
    """
    if config.write_mode is WriteMode.load:
        writer.create_load_job(
            chunk.chunk_id,
            config.project,
            config.dataset,
            config.table,
            io.BytesIO(chunk.payload),
            config.fields,
        )
        logger.info("loaded chunk", extra={"chunk_id": chunk.chunk_id, "bytes": len(chunk.payload)})
        return

    rows = chunk.rows()
    if not rows:
        logger.debug("empty chunk", extra={"chunk_id": chunk.chunk_id})
        return

    writer.insert_rows(
        config.project,
        config.dataset,
        config.table,
        rows,
        template_suffix=config.template_suffix,
        row_ids=_row_ids(rows, chunk.attributes.get("insert_id_field") or config.insert_id_field),
    )
    logger.info("inserted chunk", extra={"chunk_id": chunk.chunk_id, "count": len(rows)})
