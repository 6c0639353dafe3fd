"""
Environment-based configuration shared by the entry points.

Each getter takes the matching command-line value (None when the flag was
not given); command-line values win over environment variables, which win
over the defaults.

Environment Variables:
    WL_DB_PATH: Database path (default: workloads.db)
    WL_PORT_MIN / WL_PORT_MAX: Host port pool range (default: 3100-3200)
    WL_WORK_ROOT: Directory for workload checkouts (default: <tmpdir>/workloads)
    WL_DOCKER_SOCKET: Docker Engine API socket (default: /var/run/docker.sock)
    WL_PYTHON_BASE_IMAGE: Base image for service builds (default: python:3.12-slim)
    WL_SERVER_URL: Server URL used by the wl client (default: http://localhost:8000)
    WL_HOST / WL_PORT: Server bind address (default: 127.0.0.1:8000)
"""

import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "workloads.db"
DEFAULT_PORT_MIN = 3100
DEFAULT_PORT_MAX = 3200
DEFAULT_DOCKER_SOCKET = "/var/run/docker.sock"
DEFAULT_PYTHON_BASE_IMAGE = "python:3.12-slim"
DEFAULT_SERVER_URL = "http://localhost:8000"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _get_int(name: str, default: int, cli_value: int | None = None) -> int:
    """Positive integer from the CLI or the environment, else the default."""
    if cli_value is not None:
        if cli_value <= 0:
            logger.warning(f"Invalid value {cli_value} for {name}, using default {default}")
            return default
        return cli_value

    raw = os.environ.get(name)
    if raw is None:
        return default

    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw}, using default {default}")
        return default

    if value <= 0:
        logger.warning(f"Invalid {name}={value}, using default {default}")
        return default
    return value


def get_database_path(cli_value: str | None = None) -> str:
    if cli_value:
        return cli_value
    return os.environ.get("WL_DB_PATH", DEFAULT_DB_PATH)


def get_port_range(
    min_port: int | None = None, max_port: int | None = None
) -> tuple[int, int]:
    """Host port pool bounds; an inverted range falls back to the defaults."""
    low = _get_int("WL_PORT_MIN", DEFAULT_PORT_MIN, min_port)
    high = _get_int("WL_PORT_MAX", DEFAULT_PORT_MAX, max_port)
    if low > high:
        logger.warning(
            f"Invalid port range {low}-{high}, using default "
            f"{DEFAULT_PORT_MIN}-{DEFAULT_PORT_MAX}"
        )
        return DEFAULT_PORT_MIN, DEFAULT_PORT_MAX
    return low, high


def get_work_root(cli_value: str | None = None) -> Path:
    if cli_value:
        return Path(cli_value)
    env_value = os.environ.get("WL_WORK_ROOT")
    if env_value:
        return Path(env_value)
    return Path(tempfile.gettempdir()) / "workloads"


def get_docker_socket(cli_value: str | None = None) -> str:
    if cli_value:
        return cli_value
    return os.environ.get("WL_DOCKER_SOCKET", DEFAULT_DOCKER_SOCKET)


def get_python_base_image(cli_value: str | None = None) -> str:
    if cli_value:
        return cli_value
    return os.environ.get("WL_PYTHON_BASE_IMAGE", DEFAULT_PYTHON_BASE_IMAGE)


def get_server_url() -> str:
    """
    Get the server URL from environment variable or use default.

    Environment variables:
    - WL_SERVER_URL: Custom server URL (useful for testing with different ports)
    """
    return os.environ.get("WL_SERVER_URL", DEFAULT_SERVER_URL)


def get_host(cli_value: str | None = None) -> str:
    if cli_value:
        return cli_value
    return os.environ.get("WL_HOST", DEFAULT_HOST)


def get_port(cli_value: int | None = None) -> int:
    return _get_int("WL_PORT", DEFAULT_PORT, cli_value)
