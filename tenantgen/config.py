from __future__ import annotations
import logging
import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field

from tenantgen.errors import ConfigurationFailure

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_FILE = "/var/run/argo/token"
DEFAULT_ROOT_CERT = "/certs/sf-class2-root.crt"
DEFAULT_REGION = "us-east-1"
DEFAULT_PORT = 4355
DEFAULT_QUERY_TIMEOUT_S = 10.0
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class Settings(BaseModel):
    """
    Process configuration, read once from the environment at startup.

    Credentials are mandatory: a missing KEYSPACES_USERNAME or
    KEYSPACES_PASSWORD aborts startup with ConfigurationFailure.
    """

    token_file: str = DEFAULT_TOKEN_FILE
    root_cert_path: str = DEFAULT_ROOT_CERT
    region: str = DEFAULT_REGION
    username: str
    password: str = Field(repr=False)
    port: int = DEFAULT_PORT
    query_timeout_s: float = DEFAULT_QUERY_TIMEOUT_S
    log_level: str = "INFO"
    otlp_endpoint: str = ""

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        username = env.get("KEYSPACES_USERNAME")
        if not username:
            raise ConfigurationFailure("missing env KEYSPACES_USERNAME")
        password = env.get("KEYSPACES_PASSWORD")
        if not password:
            raise ConfigurationFailure("missing env KEYSPACES_PASSWORD")

        return cls(
            token_file=env.get("PLUGIN_TOKEN_FILE", DEFAULT_TOKEN_FILE),
            root_cert_path=env.get("KEYSPACES_ROOT_CERT", DEFAULT_ROOT_CERT),
            region=env.get("AWS_REGION", DEFAULT_REGION),
            username=username,
            password=password,
            port=_parse_port(env.get("PORT")),
            query_timeout_s=_parse_timeout(env.get("QUERY_TIMEOUT_S")),
            log_level=_parse_log_level(env.get("LOG_LEVEL")),
            otlp_endpoint=env.get("OTEL_EXPORTER_OTLP_ENDPOINT", ""),
        )


def load_token(path: str) -> str:
    """Read the plugin bearer token mounted from a Secret, stripped of whitespace."""
    try:
        token = Path(path).read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigurationFailure(f"failed to read plugin token: {exc}") from exc
    if not token:
        logger.warning("Plugin token file %s is empty", path)
    return token


def _parse_port(raw: Optional[str]) -> int:
    # Unparseable or out-of-range values fall back to the default port.
    try:
        port = int(raw) if raw is not None else DEFAULT_PORT
    except ValueError:
        return DEFAULT_PORT
    return port if 0 < port < 65536 else DEFAULT_PORT


def _parse_log_level(raw: Optional[str]) -> str:
    # Unknown level names fall back to INFO rather than failing startup.
    level = (raw or "INFO").strip().upper()
    return level if level in LOG_LEVELS else "INFO"


def _parse_timeout(raw: Optional[str]) -> float:
    try:
        timeout = float(raw) if raw is not None else DEFAULT_QUERY_TIMEOUT_S
    except ValueError:
        return DEFAULT_QUERY_TIMEOUT_S
    return timeout if timeout > 0 else DEFAULT_QUERY_TIMEOUT_S
