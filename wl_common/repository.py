"""
Abstract repository interface for workload and deployment persistence.

This module defines the contract that any store implementation must follow,
allowing easy swapping between SQLite, PostgreSQL, MySQL, etc.
"""

from abc import ABC, abstractmethod
from typing import Any

from .models import Deployment, LogEntry, Workload

# Columns callers may change through update_workload()
UPDATABLE_WORKLOAD_FIELDS = frozenset(
    {
        "module_id",
        "module_name",
        "module_type",
        "service_path",
        "repo_url",
        "status",
        "current_stage",
        "stages",
        "target",
        "artifacts",
        "error",
        "completed_at",
    }
)


class WorkloadRepository(ABC):
    """
    Abstract base class for workload storage operations.

    Implementations must provide async-safe access to records and handle
    their own connection management.
    """

    # Deployment records

    @abstractmethod
    async def create_deployment(self, deployment: Deployment) -> None:
        """
        Create a new deployment.

        Raises:
            Exception: If a deployment with the same ID already exists
        """

    @abstractmethod
    async def get_deployment(self, deployment_id: str) -> Deployment | None:
        """Retrieve a deployment by ID, or None."""

    @abstractmethod
    async def list_deployments(self) -> list[Deployment]:
        """List all deployments."""

    @abstractmethod
    async def delete_deployment(self, deployment_id: str) -> None:
        """Delete a deployment. Deleting a missing deployment is a no-op."""

    # Workload records

    @abstractmethod
    async def create_workload(self, workload: Workload) -> None:
        """
        Create a new workload record.

        Raises:
            Exception: If a workload with the same ID already exists
        """

    @abstractmethod
    async def get_workload(self, workload_id: str) -> Workload | None:
        """
        Retrieve a workload with its persisted logs.

        Returns:
            Workload object if found, None otherwise
        """

    @abstractmethod
    async def list_workloads(self, deployment_id: str | None = None) -> list[Workload]:
        """
        List workloads (without logs), optionally for one deployment only.
        """

    @abstractmethod
    async def update_workload(self, workload_id: str, **fields: Any) -> None:
        """
        Update selected workload fields and bump ``updated_at``.

        Args:
            workload_id: ID of the workload to update
            **fields: Any of UPDATABLE_WORKLOAD_FIELDS

        Raises:
            ValueError: If an unknown field is given
            WorkloadNotFoundError: If the workload does not exist
        """

    @abstractmethod
    async def delete_workload(self, workload_id: str) -> None:
        """Delete a workload and its logs. Missing workloads are a no-op."""

    # Workload logs

    @abstractmethod
    async def add_logs(self, workload_id: str, entries: list[LogEntry]) -> None:
        """
        Append log entries to a workload in a single transaction.

        Appends never read the existing logs, so concurrent writers cannot
        lose each other's entries.
        """

    @abstractmethod
    async def get_logs(self, workload_id: str, from_index: int = 0) -> list[LogEntry]:
        """Get a workload's log entries from ``from_index`` onward."""

    # Lifecycle

    @abstractmethod
    async def initialize(self) -> None:
        """
        Initialize the database (create tables, etc.).

        Called once at application startup.
        """

    @abstractmethod
    async def close(self) -> None:
        """
        Close database connections and cleanup resources.

        Called at application shutdown.
        """
