"""CLI entrypoint for running the modelferry daemon."""

from __future__ import annotations

import logging
import os

import uvicorn

from modelferry.core.config import ConfigFileError, load_config
from modelferry.core.storage import FerryPaths

logger = logging.getLogger(__name__)

DEFAULT_DAEMON_HOST = "127.0.0.1"
DEFAULT_DAEMON_PORT = 11436
APP_FACTORY = "modelferry.daemon.app:create_app"


def _parse_host_port(value: str, *, source: str = "MODELFERRY_HOST") -> tuple[str, int]:
    raw = value.strip()
    host, separator, port_value = raw.rpartition(":")
    host = host.strip()
    port_value = port_value.strip()
    if not separator or not host or not port_value:
        raise ValueError(f"invalid {source}: {value!r}")
    return host, _parse_port(port_value, env_name=source, raw_value=value)


def _parse_port(value: str, *, env_name: str, raw_value: str) -> int:
    try:
        port = int(value)
    except ValueError as exc:
        raise ValueError(f"invalid {env_name}: {raw_value!r}") from exc
    if not 1 <= port <= 65535:
        raise ValueError(f"invalid {env_name}: {raw_value!r}")
    return port


def _configured_host() -> str | None:
    try:
        config = load_config(FerryPaths.default())
    except ConfigFileError as exc:
        logger.warning("ignoring daemon.host: %s", exc)
        return None
    return config.daemon.host


def _resolve_bind() -> tuple[str, int]:
    host_port = os.environ.get("MODELFERRY_HOST")
    if host_port is not None:
        return _parse_host_port(host_port)

    port_value = os.environ.get("MODELFERRY_PORT")
    if port_value is not None:
        port = _parse_port(port_value, env_name="MODELFERRY_PORT", raw_value=port_value)
        return DEFAULT_DAEMON_HOST, port

    configured = _configured_host()
    if configured:
        return _parse_host_port(configured, source="daemon.host")
    return DEFAULT_DAEMON_HOST, DEFAULT_DAEMON_PORT


def main() -> int:
    """Run the HTTP daemon with uvicorn."""
    host, port = _resolve_bind()
    log_level = os.environ.get("MODELFERRY_LOG_LEVEL", "info")
    uvicorn.run(
        APP_FACTORY,
        factory=True,
        host=host,
        port=port,
        log_level=log_level,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
