"""
Unit tests for the repository layer.

Tests the SQLite implementation to ensure proper deployment, workload and
log persistence and retrieval.
"""

import os
import tempfile
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from wl_common.errors import WorkloadNotFoundError
from wl_common.models import (
    Deployment,
    LogEntry,
    StageResult,
    Workload,
    WorkloadArtifacts,
    WorkloadTarget,
)
from wl_persistence.sqlite_repository import SQLiteWorkloadRepository


@pytest_asyncio.fixture
async def temp_db():
    """Create a temporary database file for testing."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    repo = SQLiteWorkloadRepository(path)
    await repo.initialize()

    yield repo

    await repo.close()
    if os.path.exists(path):
        os.unlink(path)


def make_workload(workload_id: str = "wl-1", **overrides) -> Workload:
    data = {"id": workload_id, "deployment_id": "dep-1"}
    data.update(overrides)
    return Workload(**data)


@pytest.mark.asyncio
async def test_create_and_get_deployment(temp_db):
    """Test creating a deployment and retrieving it."""
    deployment = Deployment(
        id="dep-1", project_id="proj-1", name="catalog", service_path="services/catalog"
    )

    await temp_db.create_deployment(deployment)
    retrieved = await temp_db.get_deployment("dep-1")

    assert retrieved == deployment


@pytest.mark.asyncio
async def test_get_nonexistent_deployment(temp_db):
    assert await temp_db.get_deployment("nope") is None


@pytest.mark.asyncio
async def test_list_and_delete_deployments(temp_db):
    first = Deployment(id="dep-1", project_id="p", name="one")
    second = Deployment(
        id="dep-2",
        project_id="p",
        name="two",
        created_at=first.created_at + timedelta(seconds=1),
    )
    await temp_db.create_deployment(second)
    await temp_db.create_deployment(first)

    assert [d.id for d in await temp_db.list_deployments()] == ["dep-1", "dep-2"]

    await temp_db.delete_deployment("dep-1")

    assert [d.id for d in await temp_db.list_deployments()] == ["dep-2"]


@pytest.mark.asyncio
async def test_create_and_get_workload(temp_db):
    """Test creating a workload and retrieving it."""
    workload = make_workload(
        module_id="catalog",
        module_name="Catalog",
        module_type="api-resource",
        service_path="services/catalog",
        repo_url="https://git.example.com/acme/catalog.git",
        target=WorkloadTarget(type="docker-local", config={"hostPort": 4000}),
    )

    await temp_db.create_workload(workload)
    retrieved = await temp_db.get_workload("wl-1")

    assert retrieved is not None
    assert retrieved.status == "pending"
    assert retrieved.current_stage == "pending"
    assert retrieved.module_type == "api-resource"
    assert retrieved.repo_url == "https://git.example.com/acme/catalog.git"
    assert retrieved.target == WorkloadTarget(type="docker-local", config={"hostPort": 4000})
    assert retrieved.artifacts == WorkloadArtifacts()
    assert retrieved.stages == []
    assert retrieved.logs == []
    assert retrieved.created_at == workload.created_at
    assert retrieved.completed_at is None


@pytest.mark.asyncio
async def test_get_nonexistent_workload(temp_db):
    """Test retrieving a workload that doesn't exist."""
    assert await temp_db.get_workload("nonexistent") is None


@pytest.mark.asyncio
async def test_workload_created_with_logs(temp_db):
    workload = make_workload(logs=[LogEntry("validate", "Validating module")])

    await temp_db.create_workload(workload)

    logs = await temp_db.get_logs("wl-1")
    assert [entry.message for entry in logs] == ["Validating module"]


@pytest.mark.asyncio
async def test_update_workload_fields(temp_db):
    """Test updating status, stages, artifacts and completion time."""
    await temp_db.create_workload(make_workload())
    started = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
    stage = StageResult(
        stage="validate",
        status="success",
        started_at=started,
        completed_at=started + timedelta(milliseconds=40),
        duration=40,
        logs=["ok"],
    )

    await temp_db.update_workload(
        "wl-1",
        status="success",
        current_stage="complete",
        stages=[stage],
        artifacts=WorkloadArtifacts(container_id="abc", port=3100),
        completed_at=started,
    )

    retrieved = await temp_db.get_workload("wl-1")
    assert retrieved.status == "success"
    assert retrieved.current_stage == "complete"
    assert retrieved.stages == [stage]
    assert retrieved.artifacts.container_id == "abc"
    assert retrieved.artifacts.port == 3100
    assert retrieved.completed_at == started
    assert retrieved.updated_at >= retrieved.created_at


@pytest.mark.asyncio
async def test_update_can_clear_error(temp_db):
    await temp_db.create_workload(make_workload(error="boom"))

    await temp_db.update_workload("wl-1", error=None)

    assert (await temp_db.get_workload("wl-1")).error is None


@pytest.mark.asyncio
async def test_update_nonexistent_workload(temp_db):
    with pytest.raises(WorkloadNotFoundError):
        await temp_db.update_workload("nope", status="running")


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields(temp_db):
    await temp_db.create_workload(make_workload())

    with pytest.raises(ValueError, match="id"):
        await temp_db.update_workload("wl-1", id="other")


@pytest.mark.asyncio
async def test_list_workloads_by_deployment(temp_db):
    """Test listing workloads, newest first, optionally filtered."""
    base = datetime(2026, 1, 1, tzinfo=UTC)
    await temp_db.create_workload(make_workload("wl-1", created_at=base))
    await temp_db.create_workload(
        make_workload("wl-2", created_at=base + timedelta(minutes=1))
    )
    await temp_db.create_workload(
        make_workload("wl-3", deployment_id="dep-2", created_at=base + timedelta(minutes=2))
    )
    await temp_db.add_logs("wl-1", [LogEntry("running", "hello")])

    everything = await temp_db.list_workloads()
    assert [w.id for w in everything] == ["wl-3", "wl-2", "wl-1"]
    # Listings don't load logs
    assert all(w.logs == [] for w in everything)

    assert [w.id for w in await temp_db.list_workloads("dep-1")] == ["wl-2", "wl-1"]
    assert await temp_db.list_workloads("dep-unknown") == []


@pytest.mark.asyncio
async def test_add_and_get_logs(temp_db):
    """Test appending log batches keeps them in order."""
    await temp_db.create_workload(make_workload())

    await temp_db.add_logs(
        "wl-1",
        [
            LogEntry("starting-container", "Preparing container environment"),
            LogEntry("cloning-repo", "Cloning repository"),
        ],
    )
    await temp_db.add_logs("wl-1", [LogEntry("failed", "Clone failed", level="error")])
    await temp_db.add_logs("wl-1", [])

    logs = await temp_db.get_logs("wl-1")
    assert [entry.message for entry in logs] == [
        "Preparing container environment",
        "Cloning repository",
        "Clone failed",
    ]
    assert logs[2].stage == "failed"
    assert logs[2].level == "error"


@pytest.mark.asyncio
async def test_get_logs_from_index(temp_db):
    """Test retrieving logs from a specific index."""
    await temp_db.create_workload(make_workload())
    await temp_db.add_logs("wl-1", [LogEntry("running", f"line {i}") for i in range(5)])

    logs = await temp_db.get_logs("wl-1", from_index=3)

    assert [entry.message for entry in logs] == ["line 3", "line 4"]
    assert await temp_db.get_logs("wl-1", from_index=10) == []


@pytest.mark.asyncio
async def test_log_timestamps_round_trip(temp_db):
    await temp_db.create_workload(make_workload())
    timestamp = datetime(2026, 3, 4, 5, 6, 7, 890000, tzinfo=UTC)

    await temp_db.add_logs("wl-1", [LogEntry("running", "tick", timestamp=timestamp)])

    (entry,) = await temp_db.get_logs("wl-1")
    assert entry.timestamp == timestamp


@pytest.mark.asyncio
async def test_delete_workload_removes_logs(temp_db):
    await temp_db.create_workload(make_workload())
    await temp_db.add_logs("wl-1", [LogEntry("running", "hello")])

    await temp_db.delete_workload("wl-1")

    assert await temp_db.get_workload("wl-1") is None
    assert await temp_db.get_logs("wl-1") == []


@pytest.mark.asyncio
async def test_initialize_is_idempotent(temp_db):
    await temp_db.create_workload(make_workload())

    await temp_db.initialize()

    assert await temp_db.get_workload("wl-1") is not None
