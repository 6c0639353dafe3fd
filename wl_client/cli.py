import argparse
import json
import sys
from datetime import datetime
from typing import Any

from wl_common.config import get_server_url

from .client import (
    get_logs,
    get_status,
    list_workloads,
    restart_workload,
    start_workload,
    stop_workload,
    watch_events,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="wl", description="Workload runner CLI")
    subparsers = parser.add_subparsers(dest="command")

    # wl start <id> [--repo-url URL]
    start_parser = subparsers.add_parser("start", help="Clone, build and run a workload")
    start_parser.add_argument("workload_id", help="Workload ID")
    start_parser.add_argument(
        "--repo-url",
        dest="repo_url",
        help="Repository to clone (default: the workload's recorded repository)",
    )

    for name, help_text in (
        ("stop", "Gracefully stop a running workload"),
        ("restart", "Stop a workload if running, then start it again"),
        ("status", "Show a workload's runtime status"),
        ("logs", "Show a workload's log"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("workload_id", help="Workload ID")

    # wl list [--json]
    list_parser = subparsers.add_parser("list", help="List all workloads")
    list_parser.add_argument(
        "--json", dest="json_mode", action="store_true", help="Output in JSON format"
    )

    # wl watch [--deployment-id ID]
    watch_parser = subparsers.add_parser("watch", help="Print live workload updates")
    watch_parser.add_argument(
        "--deployment-id", dest="deployment_id", help="Only show this deployment"
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the wl CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    server_url = get_server_url()

    if args.command is None:
        parser.print_help()
        return 1

    try:
        if args.command == "start":
            print(f"Starting workload {args.workload_id}...", file=sys.stderr)
            print_status(start_workload(args.workload_id, args.repo_url, server_url=server_url))
        elif args.command == "stop":
            print_status(stop_workload(args.workload_id, server_url=server_url))
        elif args.command == "restart":
            print(f"Restarting workload {args.workload_id}...", file=sys.stderr)
            print_status(restart_workload(args.workload_id, server_url=server_url))
        elif args.command == "status":
            print_status(get_status(args.workload_id, server_url=server_url))
        elif args.command == "logs":
            for entry in get_logs(args.workload_id, server_url=server_url):
                print(format_log_entry(entry))
        elif args.command == "list":
            workloads = list_workloads(server_url=server_url)
            if args.json_mode:
                print(json.dumps(workloads, indent=2))
            else:
                print_workload_table(workloads)
        elif args.command == "watch":
            try:
                for event in watch_events(server_url=server_url, deployment_id=args.deployment_id):
                    print(format_event(event), flush=True)
            except KeyboardInterrupt:
                print("\nStopped watching.", file=sys.stderr)
                return 130  # Standard exit code for SIGINT
    except RuntimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


def print_status(status: dict[str, Any]) -> None:
    print(f"Workload:  {status['workload_id']}")
    print(f"Stage:     {status['stage']}")
    print(f"Status:    {status['status']}")
    if status.get("port"):
        print(f"Port:      {status['port']}")
        print(f"URL:       http://localhost:{status['port']}")
    if status.get("container_id"):
        print(f"Container: {status['container_id'][:12]}")
    if status.get("error"):
        print(f"Error:     {status['error']}")


def print_workload_table(workloads: list[dict[str, Any]]) -> None:
    if not workloads:
        print("No workloads found.")
        return

    print(f"{'WORKLOAD ID':<38} {'STATUS':<10} {'STAGE':<20} {'PORT':<6} {'UPDATED':<20}")
    print("-" * 98)
    for workload in workloads:
        port = str(workload.get("port") or "-")
        print(
            f"{workload['id'][:36]:<38} {workload['status']:<10} "
            f"{workload['current_stage']:<20} {port:<6} "
            f"{format_time(workload.get('updated_at')):<20}"
        )


def format_log_entry(entry: dict[str, Any]) -> str:
    level = entry.get("level", "info").upper()
    return f"{format_time(entry.get('timestamp'))} [{entry['stage']}] {level}: {entry['message']}"


def format_event(event: dict[str, Any]) -> str:
    if event.get("type") == "deployment-deleted":
        return f"Deployment {event['deployment_id']} deleted"

    line = (
        f"{format_time(event.get('updated_at'))} {event['workload_id'][:8]} "
        f"{event['current_stage']} ({event['status']})"
    )
    for stage in event.get("stages", []):
        if stage.get("status") == "failed" and stage.get("error"):
            line += f"\n    {stage['stage']}: {stage['error']}"
    return line


def format_time(time_str: str | None) -> str:
    """Format ISO timestamp to human-readable format."""
    if not time_str:
        return "N/A"
    try:
        dt = datetime.fromisoformat(time_str.replace("Z", "+00:00"))
        return dt.strftime("%Y-%m-%d %H:%M:%S")
    except (ValueError, AttributeError):
        return time_str


if __name__ == "__main__":
    sys.exit(main())
