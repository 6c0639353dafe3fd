"""
Standalone entrypoint for the workload server.

Usage:
    python -m wl_server [OPTIONS]
    wl-server [OPTIONS]  (after pip install)

Environment Variables:
    WL_HOST / WL_PORT: Bind address (default: 127.0.0.1:8000)
    WL_DB_PATH: Database path (default: workloads.db)
    WL_PORT_MIN / WL_PORT_MAX: Host port pool for workloads (default: 3100-3200)
    WL_WORK_ROOT: Directory for workload checkouts (default: <tmpdir>/workloads)
    WL_DOCKER_SOCKET: Docker Engine API socket (default: /var/run/docker.sock)
"""

import argparse
import logging
import sys

import uvicorn

from wl_common.config import (
    get_database_path,
    get_docker_socket,
    get_host,
    get_port,
    get_port_range,
    get_work_root,
)
from wl_persistence.sqlite_repository import SQLiteWorkloadRepository
from wl_runtime.docker_client import DockerClient
from wl_runtime.port_pool import PortPool

from .app import create_app

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="wl-server",
        description="Workload server - runs and supervises git-sourced workloads",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  WL_HOST / WL_PORT          Bind address (default: 127.0.0.1:8000)
  WL_DB_PATH                 Database path (default: workloads.db)
  WL_PORT_MIN / WL_PORT_MAX  Host port pool for workloads (default: 3100-3200)
  WL_WORK_ROOT               Directory for workload checkouts
  WL_DOCKER_SOCKET           Docker Engine API socket (default: /var/run/docker.sock)

Note: Command-line arguments override environment variables.

Examples:
  # Run with default settings
  wl-server

  # Listen on all interfaces with a custom database
  wl-server --host 0.0.0.0 --db-path /var/lib/wl/workloads.db

  # Hand out workload ports 4000-4099
  wl-server --port-min 4000 --port-max 4099
        """,
    )
    parser.add_argument("--host", type=str, default=None, help="Bind host")
    parser.add_argument("--port", type=int, default=None, help="Bind port")
    parser.add_argument("--db-path", type=str, default=None, help="Path to SQLite database file")
    parser.add_argument("--work-root", type=str, default=None, help="Directory for checkouts")
    parser.add_argument("--port-min", type=int, default=None, help="Lowest workload port")
    parser.add_argument("--port-max", type=int, default=None, help="Highest workload port")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Main entrypoint for the server.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    host = get_host(args.host)
    port = get_port(args.port)
    db_path = get_database_path(args.db_path)
    min_port, max_port = get_port_range(args.port_min, args.port_max)
    work_root = get_work_root(args.work_root)

    logger.info("Starting workload server")
    logger.info(f"  Listening on: {host}:{port}")
    logger.info(f"  Database: {db_path}")
    logger.info(f"  Workload ports: {min_port}-{max_port}")
    logger.info(f"  Work root: {work_root}")

    app = create_app(
        repository=SQLiteWorkloadRepository(db_path),
        docker=DockerClient(socket_path=get_docker_socket()),
        port_pool=PortPool(min_port, max_port),
        work_root=work_root,
    )

    try:
        uvicorn.run(app, host=host, port=port, log_level=args.log_level.lower())
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
