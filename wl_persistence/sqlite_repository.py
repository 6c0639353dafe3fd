"""
SQLite implementation of the workload repository.

Uses aiosqlite for async operations. Structured fields (stages, target,
artifacts) are stored as JSON text columns; workload logs live in their own
table so that appends are plain INSERTs.
"""

import json
from datetime import datetime
from typing import Any

import aiosqlite

from wl_common.errors import WorkloadNotFoundError
from wl_common.models import (
    Deployment,
    LogEntry,
    StageResult,
    Workload,
    WorkloadArtifacts,
    WorkloadTarget,
    utcnow,
)
from wl_common.repository import UPDATABLE_WORKLOAD_FIELDS, WorkloadRepository

_WORKLOAD_COLUMNS = (
    "id, deployment_id, module_id, module_name, module_type, service_path, "
    "repo_url, status, current_stage, stages, target, artifacts, error, "
    "created_at, updated_at, completed_at"
)


class SQLiteWorkloadRepository(WorkloadRepository):
    """
    SQLite-based workload storage implementation.

    Uses a single database file with multiple tables:
    - deployments: Deployment records
    - workloads: Workload metadata, stage history and artifacts
    - workload_logs: Sequential log entries for each workload
    """

    def __init__(self, db_path: str = "workloads.db"):
        """
        Initialize the SQLite repository.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
            # Enable foreign key constraints
            await self._connection.execute("PRAGMA foreign_keys = ON")
        return self._connection

    async def initialize(self) -> None:
        """Create database tables if they don't exist."""
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS deployments (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                name TEXT NOT NULL,
                service_path TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                created_at TEXT NOT NULL
            )
        """)

        # deployment_id is not a foreign key: one-shot pipeline runs record
        # workloads for deployments that only exist in the caller's system
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS workloads (
                id TEXT PRIMARY KEY,
                deployment_id TEXT NOT NULL,
                module_id TEXT,
                module_name TEXT,
                module_type TEXT,
                service_path TEXT,
                repo_url TEXT,
                status TEXT NOT NULL,
                current_stage TEXT NOT NULL,
                stages TEXT NOT NULL DEFAULT '[]',
                target TEXT,
                artifacts TEXT NOT NULL DEFAULT '{}',
                error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                completed_at TEXT
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_workloads_deployment_id
            ON workloads(deployment_id)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS workload_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workload_id TEXT NOT NULL,
                stage TEXT NOT NULL,
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                FOREIGN KEY (workload_id) REFERENCES workloads(id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_workload_logs_workload_id
            ON workload_logs(workload_id)
        """)

        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    # ------------------------------------------------------------------
    # Deployments
    # ------------------------------------------------------------------

    async def create_deployment(self, deployment: Deployment) -> None:
        conn = await self._get_connection()

        await conn.execute(
            """
            INSERT INTO deployments (id, project_id, name, service_path, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                deployment.id,
                deployment.project_id,
                deployment.name,
                deployment.service_path,
                deployment.status,
                deployment.created_at.isoformat(),
            ),
        )
        await conn.commit()

    async def get_deployment(self, deployment_id: str) -> Deployment | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            "SELECT id, project_id, name, service_path, status, created_at FROM deployments WHERE id = ?",
            (deployment_id,),
        )
        row = await cursor.fetchone()

        if row is None:
            return None
        return self._row_to_deployment(row)

    async def list_deployments(self) -> list[Deployment]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            "SELECT id, project_id, name, service_path, status, created_at FROM deployments ORDER BY created_at"
        )
        rows = await cursor.fetchall()
        return [self._row_to_deployment(row) for row in rows]

    async def delete_deployment(self, deployment_id: str) -> None:
        conn = await self._get_connection()

        await conn.execute("DELETE FROM deployments WHERE id = ?", (deployment_id,))
        await conn.commit()

    @staticmethod
    def _row_to_deployment(row: Any) -> Deployment:
        deployment_id, project_id, name, service_path, status, created_at = row
        return Deployment(
            id=deployment_id,
            project_id=project_id,
            name=name,
            service_path=service_path,
            status=status,
            created_at=datetime.fromisoformat(created_at),
        )

    # ------------------------------------------------------------------
    # Workloads
    # ------------------------------------------------------------------

    async def create_workload(self, workload: Workload) -> None:
        conn = await self._get_connection()

        await conn.execute(
            f"""
            INSERT INTO workloads ({_WORKLOAD_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                workload.id,
                workload.deployment_id,
                workload.module_id,
                workload.module_name,
                workload.module_type,
                workload.service_path,
                workload.repo_url,
                workload.status,
                workload.current_stage,
                self._encode("stages", workload.stages),
                self._encode("target", workload.target),
                self._encode("artifacts", workload.artifacts),
                workload.error,
                workload.created_at.isoformat(),
                workload.updated_at.isoformat(),
                workload.completed_at.isoformat() if workload.completed_at else None,
            ),
        )

        if workload.logs:
            await self._insert_logs(conn, workload.id, workload.logs)

        await conn.commit()

    async def get_workload(self, workload_id: str) -> Workload | None:
        """
        Retrieve a workload with all its logs.

        Args:
            workload_id: ID of the workload to retrieve

        Returns:
            Workload object if found, None otherwise
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {_WORKLOAD_COLUMNS} FROM workloads WHERE id = ?",
            (workload_id,),
        )
        row = await cursor.fetchone()

        if row is None:
            return None

        workload = self._row_to_workload(row)
        workload.logs = await self.get_logs(workload_id)
        return workload

    async def list_workloads(self, deployment_id: str | None = None) -> list[Workload]:
        """
        List workloads (without logs for efficiency).

        Args:
            deployment_id: Only list workloads of this deployment

        Returns:
            List of Workload objects with empty logs
        """
        conn = await self._get_connection()

        if deployment_id is None:
            cursor = await conn.execute(
                f"SELECT {_WORKLOAD_COLUMNS} FROM workloads ORDER BY created_at DESC"
            )
        else:
            cursor = await conn.execute(
                f"SELECT {_WORKLOAD_COLUMNS} FROM workloads WHERE deployment_id = ? ORDER BY created_at DESC",
                (deployment_id,),
            )

        rows = await cursor.fetchall()
        return [self._row_to_workload(row) for row in rows]

    async def update_workload(self, workload_id: str, **fields: Any) -> None:
        """
        Update selected workload fields.

        Args:
            workload_id: ID of the workload to update
            **fields: Column values keyed by field name
        """
        unknown = set(fields) - UPDATABLE_WORKLOAD_FIELDS
        if unknown:
            raise ValueError(f"Cannot update workload fields: {', '.join(sorted(unknown))}")

        conn = await self._get_connection()

        # Build dynamic SQL based on what's being updated
        updates = ["updated_at = ?"]
        params: list[Any] = [utcnow().isoformat()]

        for name, value in fields.items():
            updates.append(f"{name} = ?")
            params.append(self._encode(name, value))

        params.append(workload_id)  # WHERE clause parameter

        sql = f"UPDATE workloads SET {', '.join(updates)} WHERE id = ?"
        cursor = await conn.execute(sql, params)
        await conn.commit()

        if cursor.rowcount == 0:
            raise WorkloadNotFoundError(workload_id)

    async def delete_workload(self, workload_id: str) -> None:
        conn = await self._get_connection()

        await conn.execute("DELETE FROM workloads WHERE id = ?", (workload_id,))
        await conn.commit()

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    async def add_logs(self, workload_id: str, entries: list[LogEntry]) -> None:
        if not entries:
            return

        conn = await self._get_connection()
        await self._insert_logs(conn, workload_id, entries)
        await conn.commit()

    async def get_logs(self, workload_id: str, from_index: int = 0) -> list[LogEntry]:
        """
        Get log entries for a workload, optionally from a specific index.

        Args:
            workload_id: ID of the workload
            from_index: Starting index (0-based) for log retrieval

        Returns:
            List of log entries from the specified index onward
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT stage, level, message, timestamp
            FROM workload_logs
            WHERE workload_id = ?
            ORDER BY id
            LIMIT -1 OFFSET ?
            """,
            (workload_id, from_index),
        )

        rows = await cursor.fetchall()

        return [
            LogEntry(
                stage=stage,
                level=level,
                message=message,
                timestamp=datetime.fromisoformat(timestamp),
            )
            for stage, level, message, timestamp in rows
        ]

    @staticmethod
    async def _insert_logs(
        conn: aiosqlite.Connection, workload_id: str, entries: list[LogEntry]
    ) -> None:
        await conn.executemany(
            """
            INSERT INTO workload_logs (workload_id, stage, level, message, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                (
                    workload_id,
                    entry.stage,
                    entry.level,
                    entry.message,
                    entry.timestamp.isoformat(),
                )
                for entry in entries
            ],
        )

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    @staticmethod
    def _encode(name: str, value: Any) -> Any:
        """Convert a workload field value to its column representation."""
        if name == "stages":
            return json.dumps([stage.to_dict() for stage in value or []])
        if name in ("target", "artifacts"):
            return json.dumps(value.to_dict()) if value is not None else None
        if isinstance(value, datetime):
            return value.isoformat()
        return value

    @staticmethod
    def _row_to_workload(row: Any) -> Workload:
        (
            workload_id,
            deployment_id,
            module_id,
            module_name,
            module_type,
            service_path,
            repo_url,
            status,
            current_stage,
            stages_json,
            target_json,
            artifacts_json,
            error,
            created_at,
            updated_at,
            completed_at,
        ) = row

        return Workload(
            id=workload_id,
            deployment_id=deployment_id,
            module_id=module_id,
            module_name=module_name,
            module_type=module_type,
            service_path=service_path,
            repo_url=repo_url,
            status=status,
            current_stage=current_stage,
            stages=[StageResult.from_dict(s) for s in json.loads(stages_json or "[]")],
            target=WorkloadTarget.from_dict(json.loads(target_json))
            if target_json
            else None,
            artifacts=WorkloadArtifacts.from_dict(json.loads(artifacts_json or "{}")),
            error=error,
            created_at=datetime.fromisoformat(created_at),
            updated_at=datetime.fromisoformat(updated_at),
            completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
        )
