"""
Admin CLI for managing deployment and workload records.

Works directly on the SQLite database; it does not touch containers. Use the
server's DELETE /deployments/{id} to also clean up running workloads.
"""

import asyncio
import json
import sys
import uuid

import click

from wl_common.config import get_database_path
from wl_common.models import Deployment, Workload
from wl_persistence.sqlite_repository import SQLiteWorkloadRepository


def get_repository() -> SQLiteWorkloadRepository:
    """Get the repository instance."""
    return SQLiteWorkloadRepository(get_database_path())


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


@click.group()
def cli():
    """Workload Admin - Manage deployments and workloads."""
    pass


@cli.group()
def deployment():
    """Manage deployments."""
    pass


@cli.group()
def workload():
    """Manage workloads."""
    pass


# ============================================================================
# Deployment Commands
# ============================================================================


@deployment.command("create")
@click.option("--project-id", required=True, help="Project the deployment belongs to")
@click.option("--name", required=True, help="Deployment display name")
@click.option("--service-path", help="Default service directory inside workload repos")
def deployment_create(project_id: str, name: str, service_path: str | None):
    """Create a new deployment."""

    async def create():
        repo = get_repository()
        await repo.initialize()

        try:
            deployment_obj = Deployment(
                id=str(uuid.uuid4()),
                project_id=project_id,
                name=name,
                service_path=service_path,
            )
            await repo.create_deployment(deployment_obj)

            click.echo("✓ Deployment created successfully")
            click.echo(f"  ID:      {deployment_obj.id}")
            click.echo(f"  Name:    {deployment_obj.name}")
            click.echo(f"  Project: {deployment_obj.project_id}")

        finally:
            await repo.close()

    run_async(create())


@deployment.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def deployment_list(json_output: bool):
    """List all deployments."""

    async def list_deployments():
        repo = get_repository()
        await repo.initialize()

        try:
            deployments = await repo.list_deployments()

            if json_output:
                click.echo(json.dumps([d.to_dict() for d in deployments], indent=2))
                return

            if not deployments:
                click.echo("No deployments found.")
                return

            click.echo(f"\n{'ID':<38} {'Name':<25} {'Project':<25} {'Status':<10}")
            click.echo("-" * 100)
            for d in deployments:
                click.echo(f"{d.id:<38} {d.name:<25} {d.project_id:<25} {d.status:<10}")
            click.echo()

        finally:
            await repo.close()

    run_async(list_deployments())


@deployment.command("delete")
@click.argument("deployment_id")
def deployment_delete(deployment_id: str):
    """Delete a deployment and its workload records."""

    async def delete():
        repo = get_repository()
        await repo.initialize()

        try:
            deployment_obj = await repo.get_deployment(deployment_id)
            if not deployment_obj:
                click.echo(f"Error: Deployment not found: {deployment_id}", err=True)
                sys.exit(1)

            workloads = await repo.list_workloads(deployment_id)
            for w in workloads:
                await repo.delete_workload(w.id)
            await repo.delete_deployment(deployment_id)

            click.echo(
                f"✓ Deployment deleted: {deployment_obj.name} ({len(workloads)} workloads)"
            )

        finally:
            await repo.close()

    run_async(delete())


# ============================================================================
# Workload Commands
# ============================================================================


@workload.command("create")
@click.option("--deployment-id", required=True, help="Deployment ID (UUID)")
@click.option("--repo-url", required=True, help="Git repository to run")
@click.option("--service-path", help="Service directory inside the repository")
@click.option("--name", "module_name", help="Display name")
def workload_create(
    deployment_id: str, repo_url: str, service_path: str | None, module_name: str | None
):
    """Create a new workload record."""

    async def create():
        repo = get_repository()
        await repo.initialize()

        try:
            deployment_obj = await repo.get_deployment(deployment_id)
            if not deployment_obj:
                click.echo(f"Error: Deployment not found: {deployment_id}", err=True)
                sys.exit(1)

            workload_obj = Workload(
                id=str(uuid.uuid4()),
                deployment_id=deployment_id,
                module_name=module_name,
                service_path=service_path or deployment_obj.service_path,
                repo_url=repo_url,
            )
            await repo.create_workload(workload_obj)

            click.echo("✓ Workload created successfully")
            click.echo(f"  ID:           {workload_obj.id}")
            click.echo(f"  Deployment:   {deployment_obj.name}")
            click.echo(f"  Repository:   {workload_obj.repo_url}")
            click.echo(f"  Service path: {workload_obj.service_path or '(root)'}")

        finally:
            await repo.close()

    run_async(create())


@workload.command("list")
@click.option("--deployment-id", help="Filter by deployment ID")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def workload_list(deployment_id: str | None, json_output: bool):
    """List workloads (optionally for one deployment)."""

    async def list_workloads():
        repo = get_repository()
        await repo.initialize()

        try:
            workloads = await repo.list_workloads(deployment_id)

            if json_output:
                click.echo(json.dumps([w.to_summary_dict() for w in workloads], indent=2))
                return

            if not workloads:
                click.echo("No workloads found.")
                return

            click.echo(f"\n{'ID':<38} {'Status':<10} {'Stage':<20} {'Port':<6}")
            click.echo("-" * 76)
            for w in workloads:
                port = str(w.artifacts.port or "-")
                click.echo(f"{w.id:<38} {w.status:<10} {w.current_stage:<20} {port:<6}")
            click.echo()

        finally:
            await repo.close()

    run_async(list_workloads())


@workload.command("get")
@click.argument("workload_id")
@click.option("--logs", "log_count", default=10, show_default=True, help="Log lines to show")
def workload_get(workload_id: str, log_count: int):
    """Get workload details."""

    async def get_workload():
        repo = get_repository()
        await repo.initialize()

        try:
            workload_obj = await repo.get_workload(workload_id)
            if not workload_obj:
                click.echo(f"Error: Workload not found: {workload_id}", err=True)
                sys.exit(1)

            click.echo("\nWorkload Details:")
            click.echo(f"  ID:         {workload_obj.id}")
            click.echo(f"  Deployment: {workload_obj.deployment_id}")
            click.echo(f"  Repository: {workload_obj.repo_url or '-'}")
            click.echo(f"  Status:     {workload_obj.status}")
            click.echo(f"  Stage:      {workload_obj.current_stage}")
            click.echo(f"  Port:       {workload_obj.artifacts.port or '-'}")
            if workload_obj.error:
                click.echo(f"  Error:      {workload_obj.error}")
            click.echo(f"  Updated:    {workload_obj.updated_at.isoformat()}")

            if workload_obj.logs and log_count > 0:
                click.echo(f"\nLast {min(log_count, len(workload_obj.logs))} log entries:")
                for entry in workload_obj.logs[-log_count:]:
                    click.echo(f"  [{entry.stage}] {entry.level.upper()}: {entry.message}")
            click.echo()

        finally:
            await repo.close()

    run_async(get_workload())


@workload.command("delete")
@click.argument("workload_id")
def workload_delete(workload_id: str):
    """Delete a workload record and its logs."""

    async def delete():
        repo = get_repository()
        await repo.initialize()

        try:
            workload_obj = await repo.get_workload(workload_id)
            if not workload_obj:
                click.echo(f"Error: Workload not found: {workload_id}", err=True)
                sys.exit(1)

            await repo.delete_workload(workload_id)
            click.echo(f"✓ Workload deleted: {workload_id}")

        finally:
            await repo.close()

    run_async(delete())


if __name__ == "__main__":
    cli()
