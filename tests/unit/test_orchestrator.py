"""
Unit tests for WorkloadOrchestrator.

These tests use a real SQLite repository in a temp directory, a mocked
container runtime, a mocked image builder and a fake git clone that writes
the service layout straight into the work directory.
"""

import asyncio
import json
import logging
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from wl_common.errors import (
    ContainerRuntimeError,
    OperationInProgressError,
    ServiceLayoutError,
    WorkloadAlreadyRunningError,
    WorkloadNotFoundError,
    WorkloadNotRunningError,
)
from wl_common.events import EventBus, WorkloadUpdate
from wl_common.models import Deployment, LogEntry, Workload, WorkloadArtifacts, utcnow
from wl_orchestrator import WorkloadOrchestrator, group_logs_by_stage, status_for_stage
from wl_persistence.sqlite_repository import SQLiteWorkloadRepository
from wl_runtime.builders import ServiceBuilder
from wl_runtime.docker_client import ContainerState, DockerClient, PortMapping
from wl_runtime.port_pool import PortPool

CONTAINER_ID = "c0ffee" + "1" * 58
REPO_URL = "https://git.example.com/acme/catalog.git"


def write_service(dest: Path, service_path: str = "", manifest: dict | None = None) -> None:
    service_dir = dest / service_path
    service_dir.mkdir(parents=True, exist_ok=True)
    if manifest is not None:
        (service_dir / "service.json").write_text(json.dumps(manifest))
    (service_dir / "resource.py").write_text("resource = None\n")


class FakeClone:
    """Stands in for git clone; records calls and can block or fail."""

    def __init__(self, manifest: dict | None = None):
        self.manifest = {"entry": "resource.py"} if manifest is None else manifest
        self.calls: list[tuple[str, Path]] = []
        self.gate: asyncio.Event | None = None
        self.service_path = "services/catalog"

    async def __call__(self, url: str, dest: Path) -> None:
        self.calls.append((url, dest))
        if self.gate is not None:
            await self.gate.wait()
        write_service(dest, self.service_path, self.manifest)


@pytest_asyncio.fixture
async def repository(tmp_path):
    repo = SQLiteWorkloadRepository(str(tmp_path / "workloads.db"))
    await repo.initialize()
    await repo.create_deployment(Deployment(id="dep-1", project_id="proj-1", name="catalog"))
    await repo.create_workload(
        Workload(
            id="wl-1",
            deployment_id="dep-1",
            service_path="services/catalog",
            repo_url=REPO_URL,
        )
    )
    yield repo
    await repo.close()


@pytest.fixture
def docker():
    client = MagicMock(spec=DockerClient)
    client.create.return_value = CONTAINER_ID
    client.logs.return_value = "Server listening on port 8000\n"
    client.monitor.return_value = MagicMock()
    return client


@pytest.fixture
def builder():
    service_builder = MagicMock(spec=ServiceBuilder)
    service_builder.build = AsyncMock(return_value="sha256:image")
    return service_builder


@pytest.fixture
def clone():
    return FakeClone()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest_asyncio.fixture
async def orchestrator(repository, docker, builder, clone, event_bus, tmp_path):
    orch = WorkloadOrchestrator(
        repository,
        docker=docker,
        event_bus=event_bus,
        port_pool=PortPool(3100, 3105),
        work_root=tmp_path / "work",
        startup_grace=0,
        flush_interval=0.05,
        clone=clone,
        service_builder=builder,
    )
    yield orch
    await orch.close()


class TestStart:
    @pytest.mark.asyncio
    async def test_start_runs_workload(self, orchestrator, repository, docker, builder, clone, tmp_path):
        await orchestrator.start("wl-1")

        status = await orchestrator.get_status("wl-1")
        assert status.running is True
        assert status.stage == "running"
        assert status.status == "running"
        assert status.port == 3100
        assert status.container_id == CONTAINER_ID

        work_dir = tmp_path / "work" / "wl-1"
        assert clone.calls == [(REPO_URL, work_dir)]

        build_path, build_config = builder.build.call_args.args[:2]
        assert build_path == work_dir / "services/catalog"
        assert build_config.workload_id == "wl-1"
        assert build_config.entry_file == "resource.py"

        config = docker.create.call_args.args[0]
        assert config.name == "workload-wl-1"
        assert config.image == "workload-wl-1"
        assert config.ports == [PortMapping(internal=8000, external=3100)]
        docker.start.assert_awaited_once_with(CONTAINER_ID)

        record = await repository.get_workload("wl-1")
        assert record.status == "running"
        assert record.current_stage == "running"
        assert record.artifacts.port == 3100
        assert record.artifacts.container_id == CONTAINER_ID
        assert record.artifacts.image_name == "workload-wl-1"

    @pytest.mark.asyncio
    async def test_start_begins_supervision(self, orchestrator, docker):
        await orchestrator.start("wl-1")
        await asyncio.sleep(0.01)

        assert docker.monitor.call_args.args[0] == CONTAINER_ID
        assert docker.stream_logs.call_args.args[0] == CONTAINER_ID
        assert orchestrator.running_workloads == ["wl-1"]

    @pytest.mark.asyncio
    async def test_start_logs_each_stage(self, orchestrator, repository):
        await orchestrator.start("wl-1")

        logs = await orchestrator.get_logs("wl-1")
        stages = []
        for entry in logs:
            if entry.stage not in stages:
                stages.append(entry.stage)
        assert stages == ["starting-container", "cloning-repo", "starting-service", "running"]

        messages = [entry.message for entry in logs]
        assert f"Cloning repository from {REPO_URL}" in messages
        assert "Assigned port 3100" in messages
        assert "Container logs: Server listening on port 8000" in messages

        # Everything up to the running stage change has been flushed
        persisted = [e.message for e in await repository.get_logs("wl-1")]
        assert persisted == messages[: len(persisted)]
        assert "Assigned port 3100" in persisted

    @pytest.mark.asyncio
    async def test_start_persists_repo_url(self, orchestrator, repository, clone):
        other = "https://git.example.com/acme/other.git"

        await orchestrator.start("wl-1", repo_url=other)

        assert clone.calls[0][0] == other
        assert (await repository.get_workload("wl-1")).repo_url == other

    @pytest.mark.asyncio
    async def test_start_publishes_updates(self, orchestrator, event_bus):
        updates = []
        event_bus.subscribe(WorkloadUpdate, updates.append)

        await orchestrator.start("wl-1")

        assert [u.current_stage for u in updates] == [
            "starting-container",
            "cloning-repo",
            "starting-service",
            "running",
        ]
        last = updates[-1]
        assert last.status == "running"
        assert last.deployment_id == "dep-1"
        assert last.project_id == "proj-1"
        assert [s.stage for s in last.stages] == [
            "starting-container",
            "cloning-repo",
            "starting-service",
        ]
        assert all(s.status == "success" for s in last.stages)

    @pytest.mark.asyncio
    async def test_start_unknown_workload(self, orchestrator):
        with pytest.raises(WorkloadNotFoundError, match="Workload nope not found"):
            await orchestrator.start("nope")

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, orchestrator):
        await orchestrator.start("wl-1")

        with pytest.raises(WorkloadAlreadyRunningError):
            await orchestrator.start("wl-1")

    @pytest.mark.asyncio
    async def test_missing_manifest_fails_start(self, orchestrator, repository, clone, docker, tmp_path):
        clone.manifest = None

        with pytest.raises(ServiceLayoutError, match="service.json not found"):
            await orchestrator.start("wl-1")

        record = await repository.get_workload("wl-1")
        assert record.status == "failed"
        assert record.current_stage == "failed"
        assert "service.json not found" in record.error
        failed = [e for e in record.logs if e.stage == "failed"]
        assert failed[0].level == "error"
        assert failed[0].message.startswith("Failed to start workload:")

        assert not orchestrator.is_running("wl-1")
        assert orchestrator.port_pool.assigned_count == 0
        assert not (tmp_path / "work" / "wl-1").exists()
        docker.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_service_path_fails_start(self, orchestrator, repository, clone):
        clone.service_path = "elsewhere"

        with pytest.raises(ServiceLayoutError, match="Service path does not exist"):
            await orchestrator.start("wl-1")

        assert (await repository.get_workload("wl-1")).status == "failed"

    @pytest.mark.asyncio
    async def test_build_failure_releases_port(self, orchestrator, builder, repository):
        builder.build.side_effect = ContainerRuntimeError("build image", "workload-wl-1", "boom")

        with pytest.raises(ContainerRuntimeError):
            await orchestrator.start("wl-1")

        assert orchestrator.port_pool.assigned_count == 0
        assert (await repository.get_workload("wl-1")).status == "failed"

    @pytest.mark.asyncio
    async def test_port_conflict_retries_with_new_port(self, orchestrator, docker):
        docker.start.side_effect = [
            ContainerRuntimeError(
                "start container",
                CONTAINER_ID,
                "Bind for 0.0.0.0:3100 failed: port is already allocated",
            ),
            None,
        ]

        await orchestrator.start("wl-1")

        names = [c.args[0].name for c in docker.create.call_args_list]
        assert names == ["workload-wl-1", "workload-wl-1-retry1"]
        ports = [c.args[0].ports[0].external for c in docker.create.call_args_list]
        assert ports == [3100, 3101]

        status = await orchestrator.get_status("wl-1")
        assert status.port == 3101
        assert orchestrator.port_pool.is_available(3100)

    @pytest.mark.asyncio
    async def test_non_port_errors_are_not_retried(self, orchestrator, docker):
        docker.start.side_effect = ContainerRuntimeError("start container", CONTAINER_ID, "oom")

        with pytest.raises(ContainerRuntimeError, match="oom"):
            await orchestrator.start("wl-1")

        assert docker.create.await_count == 1

    @pytest.mark.asyncio
    async def test_port_conflict_gives_up_after_five_attempts(self, orchestrator, docker):
        docker.start.side_effect = ContainerRuntimeError(
            "start container", CONTAINER_ID, "address already in use"
        )

        with pytest.raises(ContainerRuntimeError):
            await orchestrator.start("wl-1")

        assert docker.create.await_count == 5
        assert orchestrator.port_pool.assigned_count == 0

    @pytest.mark.asyncio
    async def test_concurrent_operation_is_rejected(self, orchestrator, clone):
        clone.gate = asyncio.Event()
        first = asyncio.create_task(orchestrator.start("wl-1"))
        await asyncio.sleep(0.05)

        assert orchestrator.is_operation_in_progress("wl-1")
        with pytest.raises(OperationInProgressError):
            await orchestrator.start("wl-1")
        with pytest.raises(OperationInProgressError):
            await orchestrator.stop("wl-1")

        clone.gate.set()
        await first
        assert not orchestrator.is_operation_in_progress("wl-1")


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_untracked_workload(self, orchestrator):
        with pytest.raises(WorkloadNotRunningError, match="Workload wl-1 is not running"):
            await orchestrator.stop("wl-1")

    @pytest.mark.asyncio
    async def test_stop_cleans_up(self, orchestrator, repository, docker, tmp_path):
        await orchestrator.start("wl-1")
        cancel_monitor = docker.monitor.return_value

        await orchestrator.stop("wl-1")

        cancel_monitor.assert_called_once()
        docker.stop.assert_any_await(CONTAINER_ID, 10)
        docker.remove.assert_any_await(CONTAINER_ID, force=True)
        docker.remove_image.assert_awaited_once_with("workload-wl-1", force=True)
        assert not (tmp_path / "work" / "wl-1").exists()
        assert orchestrator.port_pool.is_available(3100)
        assert not orchestrator.is_running("wl-1")

        record = await repository.get_workload("wl-1")
        assert record.status == "stopped"
        assert record.current_stage == "stopped"
        assert record.completed_at is not None
        messages = [entry.message for entry in record.logs]
        assert "Initiating graceful shutdown" in messages
        assert "Service stopped" in messages

        status = await orchestrator.get_status("wl-1")
        assert status.running is False
        assert status.stage == "stopped"

    @pytest.mark.asyncio
    async def test_stop_twice_raises(self, orchestrator):
        await orchestrator.start("wl-1")
        await orchestrator.stop("wl-1")

        with pytest.raises(WorkloadNotRunningError):
            await orchestrator.stop("wl-1")

    @pytest.mark.asyncio
    async def test_cleanup_failure_is_logged_not_raised(self, orchestrator, repository, docker):
        await orchestrator.start("wl-1")
        docker.remove.side_effect = ContainerRuntimeError("remove container", CONTAINER_ID, "busy")

        await orchestrator.stop("wl-1")

        record = await repository.get_workload("wl-1")
        assert record.status == "stopped"
        warnings = [e for e in record.logs if e.level == "warn"]
        assert any("Failed to cleanup container" in e.message for e in warnings)

    @pytest.mark.asyncio
    async def test_restart(self, orchestrator, docker, clone):
        await orchestrator.start("wl-1")

        await orchestrator.restart("wl-1")

        assert len(clone.calls) == 2
        assert clone.calls[1][0] == REPO_URL
        assert docker.create.await_count == 2
        assert orchestrator.is_running("wl-1")

    @pytest.mark.asyncio
    async def test_restart_of_stopped_workload_starts_it(self, orchestrator):
        await orchestrator.restart("wl-1")

        assert orchestrator.is_running("wl-1")


class TestSupervision:
    @pytest.mark.asyncio
    async def test_clean_exit_marks_stopped(self, orchestrator, repository, docker):
        await orchestrator.start("wl-1")
        on_state = docker.monitor.call_args.args[1]

        await on_state(ContainerState(running=False, exit_code=0))

        record = await repository.get_workload("wl-1")
        assert record.status == "stopped"
        assert record.error is None
        assert not orchestrator.is_running("wl-1")
        assert orchestrator.port_pool.is_available(3100)
        docker.remove.assert_any_await(CONTAINER_ID, force=True)

    @pytest.mark.asyncio
    async def test_crash_marks_failed(self, orchestrator, repository, docker):
        await orchestrator.start("wl-1")
        on_state = docker.monitor.call_args.args[1]

        await on_state(ContainerState(running=False, exit_code=3))

        record = await repository.get_workload("wl-1")
        assert record.status == "failed"
        assert record.error == "Container exited with code 3"
        failed = [e for e in record.logs if e.stage == "failed"]
        assert failed[0].level == "error"

    @pytest.mark.asyncio
    async def test_inspect_failure_marks_failed(self, orchestrator, repository, docker):
        await orchestrator.start("wl-1")
        on_state = docker.monitor.call_args.args[1]

        await on_state(ContainerState(dead=True, error="No such container"))

        record = await repository.get_workload("wl-1")
        assert record.status == "failed"
        assert "No such container" in record.error

    @pytest.mark.asyncio
    async def test_running_state_is_ignored(self, orchestrator, docker):
        await orchestrator.start("wl-1")
        on_state = docker.monitor.call_args.args[1]

        await on_state(ContainerState(running=True))

        assert orchestrator.is_running("wl-1")

    @pytest.mark.asyncio
    async def test_exit_after_stop_is_ignored(self, orchestrator, repository, docker):
        await orchestrator.start("wl-1")
        on_state = docker.monitor.call_args.args[1]
        await orchestrator.stop("wl-1")
        remove_calls = docker.remove.await_count

        await on_state(ContainerState(running=False, exit_code=137))

        assert (await repository.get_workload("wl-1")).status == "stopped"
        assert docker.remove.await_count == remove_calls

    @pytest.mark.asyncio
    async def test_streamed_logs_are_flushed(self, orchestrator, repository, docker):
        streamed = asyncio.Event()

        async def stream_logs(container_id, on_line, cancel_event):
            on_line("GET /health 200")
            streamed.set()
            await cancel_event.wait()

        docker.stream_logs.side_effect = stream_logs

        await orchestrator.start("wl-1")
        await asyncio.wait_for(streamed.wait(), timeout=2)
        await asyncio.sleep(0.2)

        persisted = await repository.get_logs("wl-1")
        assert any(e.message == "GET /health 200" and e.stage == "running" for e in persisted)

    @pytest.mark.asyncio
    async def test_log_stream_errors_are_collected_on_stop(self, orchestrator, docker, caplog):
        async def stream_logs(container_id, on_line, cancel_event):
            await cancel_event.wait()
            raise ValueError("bad frame")

        docker.stream_logs.side_effect = stream_logs
        await orchestrator.start("wl-1")
        await asyncio.sleep(0.01)

        with caplog.at_level(logging.ERROR, logger="wl_orchestrator.orchestrator"):
            await orchestrator.stop("wl-1")

        assert "Unexpected log streaming error for workload wl-1: bad frame" in caplog.text


class TestForceCleanup:
    @pytest.mark.asyncio
    async def test_force_cleanup_of_tracked_workload(self, orchestrator, docker):
        await orchestrator.start("wl-1")

        await orchestrator.force_cleanup("wl-1")

        docker.kill.assert_awaited_once_with(CONTAINER_ID)
        assert not orchestrator.is_running("wl-1")
        assert orchestrator.port_pool.assigned_count == 0

    @pytest.mark.asyncio
    async def test_force_cleanup_from_persisted_record(self, orchestrator, repository, docker, tmp_path):
        await repository.update_workload(
            "wl-1", artifacts=WorkloadArtifacts(container_id="old-container", port=3102)
        )
        (tmp_path / "work" / "wl-1").mkdir(parents=True)

        await orchestrator.force_cleanup("wl-1")

        docker.remove.assert_awaited_once_with("old-container", force=True)
        docker.remove_image.assert_awaited_once_with("workload-wl-1", force=True)
        assert not (tmp_path / "work" / "wl-1").exists()

    @pytest.mark.asyncio
    async def test_force_cleanup_tolerates_missing_resources(self, orchestrator, repository, docker):
        await repository.update_workload(
            "wl-1", artifacts=WorkloadArtifacts(container_id="gone")
        )
        docker.remove.side_effect = ContainerRuntimeError("remove container", "gone", "dead")
        docker.remove_image.side_effect = ContainerRuntimeError("remove image", "x", "No such image")

        await orchestrator.force_cleanup("wl-1")

    @pytest.mark.asyncio
    async def test_force_cleanup_of_stopped_workload_keeps_reused_port(
        self, orchestrator, repository
    ):
        await repository.create_workload(
            Workload(
                id="wl-2",
                deployment_id="dep-1",
                service_path="services/catalog",
                repo_url=REPO_URL,
            )
        )
        await orchestrator.start("wl-1")
        await orchestrator.stop("wl-1")
        await repository.update_workload("wl-1", artifacts=WorkloadArtifacts(port=3100))
        await orchestrator.start("wl-2")
        assert (await orchestrator.get_status("wl-2")).port == 3100

        await orchestrator.force_cleanup("wl-1")

        assert orchestrator.is_running("wl-2")
        assert not orchestrator.port_pool.is_available(3100)
        assert orchestrator.port_pool.assigned_count == 1

    @pytest.mark.asyncio
    async def test_force_cleanup_during_start_is_rejected(self, orchestrator, clone):
        clone.gate = asyncio.Event()
        starting = asyncio.create_task(orchestrator.start("wl-1"))
        await asyncio.sleep(0.05)

        with pytest.raises(OperationInProgressError):
            await orchestrator.force_cleanup("wl-1")

        clone.gate.set()
        await starting
        status = await orchestrator.get_status("wl-1")
        assert status.running is True
        assert not orchestrator.port_pool.is_available(status.port)

    @pytest.mark.asyncio
    async def test_force_cleanup_of_unknown_workload(self, orchestrator):
        await orchestrator.force_cleanup("nope")


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_of_unknown_workload(self, orchestrator):
        with pytest.raises(WorkloadNotFoundError):
            await orchestrator.get_status("nope")

    @pytest.mark.asyncio
    async def test_status_from_persisted_record(self, orchestrator):
        status = await orchestrator.get_status("wl-1")

        assert status.running is False
        assert status.stage == "pending"
        assert status.status == "pending"
        assert status.to_dict()["workload_id"] == "wl-1"

    @pytest.mark.asyncio
    async def test_logs_of_unknown_workload(self, orchestrator):
        with pytest.raises(WorkloadNotFoundError):
            await orchestrator.get_logs("nope")

    def test_status_for_stage(self):
        assert status_for_stage("pending") == "pending"
        assert status_for_stage("cloning-repo") == "running"
        assert status_for_stage("graceful-shutdown") == "running"
        assert status_for_stage("stopped") == "stopped"
        assert status_for_stage("failed") == "failed"


class TestGroupLogsByStage:
    def test_groups_in_order_of_first_appearance(self):
        t0 = utcnow()
        entries = [
            LogEntry("cloning-repo", "Cloning", timestamp=t0),
            LogEntry("cloning-repo", "Cloned", timestamp=t0 + timedelta(milliseconds=250)),
            LogEntry("starting-service", "Building", timestamp=t0 + timedelta(seconds=1)),
        ]

        stages = group_logs_by_stage(entries)

        assert [s.stage for s in stages] == ["cloning-repo", "starting-service"]
        assert stages[0].logs == ["Cloning", "Cloned"]
        assert stages[0].status == "success"
        assert stages[0].duration == 250
        assert stages[1].duration == 0

    def test_error_entry_fails_stage(self):
        entries = [
            LogEntry("starting-service", "Building"),
            LogEntry("starting-service", "Build broke", level="error"),
            LogEntry("starting-service", "Second error", level="error"),
        ]

        (stage,) = group_logs_by_stage(entries)

        assert stage.status == "failed"
        assert stage.error == "Build broke"

    def test_warnings_do_not_fail_stage(self):
        (stage,) = group_logs_by_stage([LogEntry("stopped", "Cleanup slow", level="warn")])

        assert stage.status == "success"

    def test_empty(self):
        assert group_logs_by_stage([]) == []
