"""Credential resolution for the four supported auth methods."""

from __future__ import annotations

import json
import logging

import google.auth
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, pkcs12
from google.auth import compute_engine, crypt
from google.auth.credentials import Credentials
from google.auth.exceptions import DefaultCredentialsError
from google.oauth2 import service_account

from bq_writer.config import (
    ApplicationDefaultAuth,
    AuthConfig,
    ComputeEngineAuth,
    JsonKeyAuth,
    PrivateKeyAuth,
)
from bq_writer.errors import ConfigError

logger = logging.getLogger(__name__)

BIGQUERY_SCOPE = "https://www.googleapis.com/auth/bigquery"
TOKEN_URI = "https://oauth2.googleapis.com/token"


def resolve_credentials(auth: AuthConfig) -> Credentials:
    """Build credentials for the configured auth method.

    Raises:
        ConfigError: Unknown method, or the key material cannot be read.
    """
    match auth:
        case PrivateKeyAuth():
            return _from_private_key(auth)
        case ComputeEngineAuth():
            return compute_engine.Credentials()
        case JsonKeyAuth():
            return _from_json_key(auth.json_key)
        case ApplicationDefaultAuth():
            return _from_application_default()
    raise ConfigError(f"Unknown auth method: {getattr(auth, 'method', auth)!r}")


def _from_private_key(auth: PrivateKeyAuth) -> Credentials:
    """Signed-JWT service account credentials from a PKCS12 (.p12) key file."""
    try:
        with open(auth.private_key_path, "rb") as fh:
            data = fh.read()
        key, _cert, _extra = pkcs12.load_key_and_certificates(data, auth.private_key_passphrase.encode("utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"cannot load private key {auth.private_key_path}: {exc}") from exc
    if key is None:
        raise ConfigError(f"no private key found in {auth.private_key_path}")

    pem = key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption())
    return service_account.Credentials(
        crypt.RSASigner.from_string(pem),
        service_account_email=auth.email,
        token_uri=TOKEN_URI,
        scopes=[BIGQUERY_SCOPE],
    )


def _from_json_key(json_key: str) -> Credentials:
    """The value is tried as inline JSON first, then as a path to a key file."""
    try:
        info = json.loads(json_key)
    except json.JSONDecodeError:
        logger.debug("json_key is not inline JSON, reading it as a file path")
        try:
            return service_account.Credentials.from_service_account_file(json_key, scopes=[BIGQUERY_SCOPE])
        except (OSError, ValueError) as exc:
            raise ConfigError(f"cannot load json key file {json_key}: {exc}") from exc

    try:
        return service_account.Credentials.from_service_account_info(info, scopes=[BIGQUERY_SCOPE])
    except ValueError as exc:
        raise ConfigError(f"invalid json key: {exc}") from exc


def _from_application_default() -> Credentials:
    try:
        credentials, _project = google.auth.default(scopes=[BIGQUERY_SCOPE])
    except DefaultCredentialsError as exc:
        raise ConfigError(f"application default credentials are not available: {exc}") from exc
    return credentials
