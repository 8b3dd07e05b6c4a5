"""FastAPI service that receives pushed chunks and writes them to BigQuery.

Key behavior:
- One BigQueryWriter is shared by all requests (one cached client, one chunk counter).
- Retryable failures return 5xx so the push system redelivers the same chunk.
- Permanent failures are logged and acked with 2xx so a bad chunk is not retried forever.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from bq_writer.config import ServiceConfig, load_config
from bq_writer.errors import ConfigError, RetryableError, TableAutoCreatedError, UnretryableError
from bq_writer.processor import InvalidChunkError, PushEnvelope, decode_chunk, deliver_chunk
from bq_writer.writer import BigQueryWriter

_log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
_log_level = getattr(logging, _log_level_name, logging.INFO)
logging.basicConfig(
    level=_log_level,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    force=True,
)

logger = logging.getLogger("bq-writer")


@lru_cache(maxsize=1)
def get_config() -> ServiceConfig:
    return load_config()


@lru_cache(maxsize=1)
def get_writer() -> BigQueryWriter:
    return BigQueryWriter(get_config().writer)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Log the running revision at startup."""
    logger.info(
        "Starting service",
        extra={
            "k_revision": os.getenv("K_REVISION"),
            "k_service": os.getenv("K_SERVICE"),
        },
    )
    yield


app = FastAPI(title="BigQuery Chunk Writer", lifespan=lifespan)


@app.middleware("http")
async def _log_unhandled_exceptions(request: Request, call_next):
    """Log unhandled exceptions with stack traces."""
    try:
        return await call_next(request)
    except Exception:
        logger.exception("Unhandled exception", extra={"path": str(request.url.path)})
        raise


@app.get("/health")
def health() -> dict[str, str]:
    """Lightweight health check for Cloud Run / uptime probes."""
    return {
        "status": "ok",
        "revision": os.getenv("K_REVISION", ""),
    }


@app.post("/chunks/push")
async def push_chunk(
    request: Request,
    config: ServiceConfig = Depends(get_config),
    writer: BigQueryWriter = Depends(get_writer),
) -> dict[str, str]:
    """Push endpoint.

    Expects {"message": {"data": "<base64>", "messageId": "...", "attributes": {...}}}.

    Returns:
    - 200 "accepted" when the chunk was written
    - 200 "dropped" when writing failed permanently (ack, no redelivery)
    - 400 for a malformed envelope or payload
    - 503 when the chunk must be redelivered
    """
    try:
        body: Any = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid JSON body: {exc}")

    try:
        envelope = PushEnvelope.model_validate(body)
        chunk = decode_chunk(envelope)
    except (ValidationError, InvalidChunkError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid push envelope: {exc}")

    try:
        # the writer blocks (backoff, job polling); keep it off the event loop
        await run_in_threadpool(deliver_chunk, chunk=chunk, writer=writer, config=config.delivery)
    except InvalidChunkError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid payload: {exc}")
    except TableAutoCreatedError as exc:
        logger.info("Table created, chunk will be redelivered", extra={"chunk_id": chunk.chunk_id})
        raise HTTPException(status_code=503, detail=str(exc))
    except RetryableError as exc:
        logger.warning("Retryable failure, chunk will be redelivered", extra={"chunk_id": chunk.chunk_id})
        raise HTTPException(status_code=503, detail=str(exc))
    except UnretryableError:
        logger.exception("Dropping chunk after permanent failure", extra={"chunk_id": chunk.chunk_id})
        return {"status": "dropped"}
    except ConfigError as exc:
        logger.exception("Writer is misconfigured")
        raise HTTPException(status_code=500, detail=str(exc))

    return {"status": "accepted"}
