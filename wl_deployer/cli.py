"""
Command-line entry point for one-shot deployments.

Usage:
    deploy <module.json> [--port N]

Exits 0 when the workload deployed and passed its checks, 1 otherwise.
"""

import argparse
import asyncio
import json
import logging
import sys
import uuid
from pathlib import Path

from wl_common.config import get_docker_socket
from wl_common.events import (
    CheckCompleteEvent,
    CheckStartEvent,
    LogEvent,
    PipelineEvent,
    StageCompleteEvent,
    StageStartEvent,
    WorkloadCompleteEvent,
)
from wl_common.models import ModuleDefinition, WorkloadTarget
from wl_runtime.docker_client import DockerClient

from . import create_default_registry
from .deployer import Deployer

logger = logging.getLogger(__name__)

BANNER = "=" * 40


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="deploy",
        description="Deploy a module definition to the local Docker engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  WL_DOCKER_SOCKET   Docker Engine API socket (default: /var/run/docker.sock)

Examples:
  # Deploy on the module's own port
  deploy module.json

  # Publish the workload on host port 4000
  deploy module.json --port 4000
        """,
    )
    parser.add_argument("module_file", help="Path to the module definition (JSON)")
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Host port to publish the workload on (default: the module's port)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: WARNING)",
    )
    return parser.parse_args(argv)


def print_event(event: PipelineEvent) -> None:
    """Render one pipeline event to stdout."""
    if isinstance(event, StageStartEvent):
        print(f"\n[{event.stage.upper()}] Starting...")
    elif isinstance(event, LogEvent):
        print(f"  {event.message}")
    elif isinstance(event, StageCompleteEvent):
        result = event.result
        icon = "OK" if result and result.status == "success" else "FAIL"
        duration = f" ({result.duration}ms)" if result and result.duration else ""
        print(f"[{event.stage.upper()}] {icon}{duration}")
        if result and result.error:
            print(f"  Error: {result.error}")
    elif isinstance(event, CheckStartEvent):
        print(f"  Running: {event.test}")
    elif isinstance(event, CheckCompleteEvent):
        print(f"    {'PASS' if event.passed else 'FAIL'}: {event.test}")
    elif isinstance(event, WorkloadCompleteEvent):
        print(f"\n{BANNER}")
        print(f"  Workload {event.status.upper()}")
        print(f"{BANNER}\n")


def load_module(path: Path) -> ModuleDefinition:
    with open(path, encoding="utf-8") as f:
        return ModuleDefinition.from_dict(json.load(f))


async def run_deploy(args: argparse.Namespace) -> int:
    module = load_module(Path(args.module_file).resolve())
    host_port = args.port or module.runtime.port
    deployment_id = str(uuid.uuid4())

    print(f"\n{BANNER}")
    print(f"  Deploying workload: {module.name} v{module.version}")
    print(f"  Type: {module.type}")
    print(f"  Port: {host_port}")
    print(f"  Deployment: {deployment_id[:8]}")
    print(BANNER)

    deployer = Deployer(
        create_default_registry(),
        docker=DockerClient(socket_path=get_docker_socket()),
        on_event=print_event,
    )

    target_config = {"hostPort": host_port} if host_port else {}
    workload = await deployer.deploy_workload(
        module, WorkloadTarget(type="docker-local", config=target_config), deployment_id
    )

    if workload.status != "success":
        print("Workload deployment failed", file=sys.stderr)
        return 1

    print("Workload artifacts:")
    print(f"  Container: {workload.artifacts.container_name}")
    print(f"  URL: {workload.artifacts.url}")
    print("\nTo stop:")
    print(f"  docker stop {workload.artifacts.container_name}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the deploy CLI."""
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        return asyncio.run(run_deploy(args))
    except KeyboardInterrupt:
        print("\n\nDeployment cancelled by user.", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
