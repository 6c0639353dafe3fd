"""
Workload orchestrator for long-running, git-sourced workloads.

A workload moves through its own stage machine:

    pending -> starting-container -> cloning-repo -> starting-service -> running
    running -> graceful-shutdown -> stopped
    any stage -> failed

The orchestrator clones the workload's repository, builds an image for the
service, runs it on a port from the pool and supervises the container until
it exits or is stopped. Durable state lives in the repository; everything
about a live container lives in an in-memory RunningWorkload that is dropped
when the container goes away.
"""

import asyncio
import contextlib
import json
import logging
import shutil
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from wl_common.config import get_work_root
from wl_common.errors import (
    ContainerRuntimeError,
    OperationInProgressError,
    ServiceLayoutError,
    WorkloadAlreadyRunningError,
    WorkloadNotFoundError,
    WorkloadNotRunningError,
)
from wl_common.events import EventBus, WorkloadUpdate
from wl_common.models import LogEntry, LogLevel, StageResult, WorkloadArtifacts, utcnow
from wl_common.repository import WorkloadRepository
from wl_runtime.builders import SERVICE_INTERNAL_PORT, ServiceBuildConfig, ServiceBuilder
from wl_runtime.docker_client import ContainerConfig, ContainerState, DockerClient, PortMapping
from wl_runtime.git import clone_repository
from wl_runtime.lifecycle import ContainerLifecycle
from wl_runtime.port_pool import PortPool

logger = logging.getLogger(__name__)

SERVICE_MANIFEST = "service.json"
DEFAULT_ENTRY_FILE = "resource.py"

MAX_START_ATTEMPTS = 5
LOG_TASK_SHUTDOWN_TIMEOUT = 5
PORT_CONFLICT_MARKERS = ("port is already allocated", "address already in use", "Bind for")

# Stages during which another operation must not interfere
TRANSITIONING_STAGES = frozenset(
    {"starting-container", "cloning-repo", "starting-service", "graceful-shutdown"}
)

# Workload status reported for each stage; anything else is "running"
_STAGE_STATUS = {"pending": "pending", "stopped": "stopped", "failed": "failed"}


def status_for_stage(stage: str) -> str:
    return _STAGE_STATUS.get(stage, "running")


def group_logs_by_stage(entries: list[LogEntry]) -> list[StageResult]:
    """
    Derive a stage history from a flat log.

    One StageResult per stage, in order of first appearance. A stage with an
    error-level entry is failed and carries the first error message; any
    other stage with entries is successful.
    """
    stages: dict[str, StageResult] = {}

    for entry in entries:
        result = stages.get(entry.stage)
        if result is None:
            result = StageResult(
                stage=entry.stage, status="success", started_at=entry.timestamp
            )
            stages[entry.stage] = result

        result.logs.append(entry.message)
        if entry.level == "error":
            result.status = "failed"
            if result.error is None:
                result.error = entry.message

        if result.completed_at is None or entry.timestamp > result.completed_at:
            result.completed_at = entry.timestamp

    for result in stages.values():
        result.duration = int(
            (result.completed_at - result.started_at).total_seconds() * 1000
        )

    return list(stages.values())


@dataclass
class RunningWorkload:
    """In-memory bookkeeping for a workload the orchestrator is supervising."""

    workload_id: str
    work_dir: Path
    stage: str = "pending"
    container_id: str = ""
    port: int = 0
    image_name: str | None = None
    image_id: str | None = None
    logs: list[LogEntry] = field(default_factory=list)
    flushed: int = 0  # Entries already written to the repository
    cancel_monitor: Callable[[], None] | None = None
    log_cancel: asyncio.Event | None = None
    log_task: asyncio.Task | None = None
    flush_task: asyncio.Task | None = None

    def artifacts(self) -> WorkloadArtifacts:
        return WorkloadArtifacts(
            image_id=self.image_id,
            image_name=self.image_name,
            container_id=self.container_id or None,
            container_name=None,
            port=self.port or None,
            url=f"http://localhost:{self.port}" if self.port else None,
        )


@dataclass
class RuntimeStatus:
    workload_id: str
    running: bool
    stage: str
    status: str
    port: int | None = None
    container_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "workload_id": self.workload_id,
            "running": self.running,
            "stage": self.stage,
            "status": self.status,
            "port": self.port,
            "container_id": self.container_id,
            "error": self.error,
        }


class WorkloadOrchestrator:
    """
    Starts, supervises and stops git-sourced workloads.

    One instance owns its port pool and its in-memory workload table; create
    it once per process and share it with whatever needs it.

    Args:
        repository: Durable workload/deployment records
        docker: Container runtime
        event_bus: Receives a WorkloadUpdate on every stage change and log flush
        port_pool: Host ports for workloads (3100-3200 if omitted)
        work_root: Parent directory of the per-workload checkouts
        monitor_interval: Seconds between container liveness checks
        startup_grace: Seconds to wait after starting a container
        flush_interval: Seconds between log flushes while running
        clone: Coroutine cloning a repository URL into a directory
        service_builder: Builds the service image (default: ServiceBuilder)
    """

    def __init__(
        self,
        repository: WorkloadRepository,
        docker: DockerClient | None = None,
        event_bus: EventBus | None = None,
        port_pool: PortPool | None = None,
        work_root: Path | None = None,
        monitor_interval: float = 5.0,
        startup_grace: float = 2.0,
        flush_interval: float = 2.0,
        clone: Callable[[str, Path], Awaitable[None]] = clone_repository,
        service_builder: ServiceBuilder | None = None,
    ):
        self.repository = repository
        self.docker = docker or DockerClient()
        self.lifecycle = ContainerLifecycle(self.docker)
        self.event_bus = event_bus
        self.port_pool = port_pool or PortPool(3100, 3200)
        self.work_root = Path(work_root) if work_root else get_work_root()
        self.monitor_interval = monitor_interval
        self.startup_grace = startup_grace
        self.flush_interval = flush_interval
        self.clone = clone
        self.service_builder = service_builder or ServiceBuilder(self.docker)

        self._workloads: dict[str, RunningWorkload] = {}
        self._operations: set[str] = set()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start(self, workload_id: str, repo_url: str | None = None) -> None:
        """
        Clone, build and run a workload.

        Args:
            workload_id: ID of a persisted workload
            repo_url: Repository to clone (default: the workload's recorded URL)

        Raises:
            OperationInProgressError: Another operation on the workload is running
            WorkloadNotFoundError: No such workload
            WorkloadAlreadyRunningError: The workload is already running
            Exception: Whatever made the start fail, after the failure is recorded
        """
        with self._operation(workload_id):
            await self._start(workload_id, repo_url)

    async def stop(self, workload_id: str) -> None:
        """
        Gracefully stop a running workload and clean up after it.

        Raises:
            OperationInProgressError: Another operation on the workload is running
            WorkloadNotRunningError: The workload is not running
        """
        with self._operation(workload_id):
            await self._stop(workload_id)

    async def restart(self, workload_id: str) -> None:
        """Stop the workload if it is running, then start it from its recorded repository."""
        with self._operation(workload_id):
            workload = await self.repository.get_workload(workload_id)
            if workload is None:
                raise WorkloadNotFoundError(workload_id)

            if self._is_tracked_running(workload_id):
                logger.info(f"Stopping workload {workload_id} before restart")
                await self._stop(workload_id)

            await self._start(workload_id, workload.repo_url)
            logger.info(f"Workload {workload_id} restarted")

    async def force_cleanup(self, workload_id: str) -> None:
        """
        Remove everything known about a workload's runtime resources.

        Works for tracked workloads and for ones only known from their
        persisted record. Resources that are already gone are skipped.

        Raises:
            OperationInProgressError: If another operation is running for the workload
        """
        with self._operation(workload_id):
            await self._force_cleanup(workload_id)

    async def _force_cleanup(self, workload_id: str) -> None:
        logger.info(f"Force cleanup of workload {workload_id}")

        entry = self._workloads.pop(workload_id, None)
        if entry is not None:
            await self._stop_watchers(entry)
            if entry.container_id:
                try:
                    await self.lifecycle.stop(entry.container_id, graceful=False)
                except ContainerRuntimeError as e:
                    logger.info(f"Container already stopped or not found: {e}")
            await self._cleanup(entry)
            self._release_port(entry)
            await self._flush(entry)
            return

        workload = await self.repository.get_workload(workload_id)
        if workload is None:
            return

        # An untracked workload's port went back to the pool when it stopped
        # and may belong to another workload by now
        container_id = workload.artifacts.container_id
        if container_id:
            try:
                await self.lifecycle.cleanup(container_id)
            except ContainerRuntimeError as e:
                logger.info(f"Container {container_id} already removed: {e}")

        image_name = ServiceBuilder.image_name(workload_id)
        try:
            await self.docker.remove_image(image_name, force=True)
        except ContainerRuntimeError:
            logger.info(f"Image {image_name} already removed")

        shutil.rmtree(self.work_root / workload_id, ignore_errors=True)

    async def get_status(self, workload_id: str) -> RuntimeStatus:
        """
        Current runtime status, from memory for tracked workloads and from the
        persisted record otherwise.

        Raises:
            WorkloadNotFoundError: If the workload is neither tracked nor persisted
        """
        entry = self._workloads.get(workload_id)
        if entry is not None:
            return RuntimeStatus(
                workload_id=workload_id,
                running=bool(entry.container_id),
                stage=entry.stage,
                status=status_for_stage(entry.stage),
                port=entry.port or None,
                container_id=entry.container_id or None,
            )

        workload = await self.repository.get_workload(workload_id)
        if workload is None:
            raise WorkloadNotFoundError(workload_id)

        return RuntimeStatus(
            workload_id=workload_id,
            running=False,
            stage=workload.current_stage,
            status=workload.status,
            port=workload.artifacts.port,
            container_id=workload.artifacts.container_id,
            error=workload.error,
        )

    async def get_logs(self, workload_id: str) -> list[LogEntry]:
        """
        Log entries of the current run for tracked workloads, otherwise the
        persisted log.
        """
        entry = self._workloads.get(workload_id)
        if entry is not None:
            return list(entry.logs)

        workload = await self.repository.get_workload(workload_id)
        if workload is None:
            raise WorkloadNotFoundError(workload_id)
        return workload.logs

    def is_running(self, workload_id: str) -> bool:
        return self._is_tracked_running(workload_id)

    def is_operation_in_progress(self, workload_id: str) -> bool:
        return workload_id in self._operations

    @property
    def running_workloads(self) -> list[str]:
        return [wid for wid, entry in self._workloads.items() if entry.container_id]

    async def close(self) -> None:
        """Stop every running workload."""
        for workload_id in self.running_workloads:
            try:
                await self.stop(workload_id)
            except Exception as e:
                logger.error(f"Failed to stop workload {workload_id}: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def _start(self, workload_id: str, repo_url: str | None) -> None:
        workload = await self.repository.get_workload(workload_id)
        if workload is None:
            raise WorkloadNotFoundError(workload_id)

        if workload_id in self._workloads:
            raise WorkloadAlreadyRunningError(workload_id)

        repo_url = repo_url or workload.repo_url
        if not repo_url:
            raise ValueError(f"No repository URL for workload {workload_id}")

        logger.info(f"Starting workload {workload_id} from {repo_url}")

        entry = RunningWorkload(workload_id, work_dir=self.work_root / workload_id)
        self._workloads[workload_id] = entry

        try:
            await self.repository.update_workload(workload_id, repo_url=repo_url, error=None)

            # Stage 1: prepare the work directory
            await self._set_stage(entry, "starting-container")
            self._log(entry, "Preparing container environment")
            if entry.work_dir.exists():
                shutil.rmtree(entry.work_dir)
            entry.work_dir.parent.mkdir(parents=True, exist_ok=True)
            self._log(entry, f"Preparing work directory: {entry.work_dir}")

            # Stage 2: clone and check the service layout
            await self._set_stage(entry, "cloning-repo")
            self._log(entry, f"Cloning repository from {repo_url}")
            await self.clone(repo_url, entry.work_dir)
            self._log(entry, "Repository cloned successfully")

            service_path = entry.work_dir / (workload.service_path or "")
            if not service_path.is_dir():
                raise ServiceLayoutError(f"Service path does not exist: {service_path}")
            manifest = service_path / SERVICE_MANIFEST
            if not manifest.is_file():
                raise ServiceLayoutError(f"{SERVICE_MANIFEST} not found at: {manifest}")
            self._log(entry, "Service configuration validated")

            # Stage 3: build and run the service
            await self._set_stage(entry, "starting-service")
            self._log(entry, "Preparing runtime environment")
            entry.port = self.port_pool.assign()
            self._log(entry, f"Assigned port {entry.port}")
            await self.repository.update_workload(workload_id, artifacts=entry.artifacts())

            entry_file = self._read_entry_file(manifest)
            logger.info(f"Service entry file for {workload_id}: {entry_file}")

            self._log(entry, "Building Docker image")
            entry.image_name = ServiceBuilder.image_name(workload_id)
            entry.image_id = await self.service_builder.build(
                service_path,
                ServiceBuildConfig(workload_id=workload_id, entry_file=entry_file),
                on_progress=lambda line: logger.debug(f"[build {workload_id[:8]}] {line}"),
            )
            self._log(entry, "Docker image built successfully")

            self._log(entry, "Starting Docker container")
            entry.container_id = await self._run_container(entry)

            await self._capture_initial_output(entry)
            await asyncio.sleep(self.startup_grace)

            # Stage 4: running
            await self._set_stage(entry, "running")
            self._log(
                entry,
                f"Service running on port {entry.port} (Container: {entry.container_id[:12]})",
            )
            await self.repository.update_workload(workload_id, artifacts=entry.artifacts())
            self._watch(entry)

        except Exception as e:
            await self._fail_start(entry, e)
            raise

        logger.info(f"Workload {workload_id} is running on port {entry.port}")

    async def _run_container(self, entry: RunningWorkload) -> str:
        """
        Create and start the service container, moving to a fresh port when
        the current one turns out to be taken on the host.
        """
        base_name = f"workload-{entry.workload_id}"

        for attempt in range(MAX_START_ATTEMPTS):
            name = base_name if attempt == 0 else f"{base_name}-retry{attempt}"
            container_id = None

            try:
                # Left over from an earlier run that was never cleaned up
                await self.docker.remove(name, force=True)

                container_id = await self.lifecycle.create(
                    ContainerConfig(
                        name=name,
                        image=entry.image_name or base_name,
                        ports=[PortMapping(internal=SERVICE_INTERNAL_PORT, external=entry.port)],
                    )
                )
                self._log(entry, f"Container created: {container_id[:12]}")

                await self.lifecycle.start(container_id)
                self._log(entry, f"Container started on port {entry.port}")
                return container_id

            except ContainerRuntimeError as e:
                logger.error(f"Container start attempt {attempt + 1} failed: {e}")

                if container_id:
                    try:
                        await self.lifecycle.cleanup(container_id)
                    except ContainerRuntimeError as cleanup_error:
                        logger.error(f"Failed to clean up container: {cleanup_error}")

                if not _is_port_conflict(e) or attempt == MAX_START_ATTEMPTS - 1:
                    raise

                self._log(
                    entry,
                    f"Port {entry.port} unavailable, retrying with new port "
                    f"(attempt {attempt + 2}/{MAX_START_ATTEMPTS})",
                    "warn",
                )
                # Take the new port before returning the old one so it is
                # not handed straight back
                old_port = entry.port
                entry.port = self.port_pool.assign()
                self.port_pool.release(old_port)
                await self.repository.update_workload(
                    entry.workload_id, artifacts=entry.artifacts()
                )

        raise AssertionError("unreachable")

    async def _capture_initial_output(self, entry: RunningWorkload) -> None:
        try:
            output = (await self.docker.logs(entry.container_id)).strip()
        except ContainerRuntimeError as e:
            logger.warning(f"Failed to get container logs: {e}")
            return
        if output:
            self._log(entry, f"Container logs: {output}")

    async def _fail_start(self, entry: RunningWorkload, error: Exception) -> None:
        message = str(error) or type(error).__name__
        logger.error(f"Failed to start workload {entry.workload_id}: {message}")

        self._workloads.pop(entry.workload_id, None)
        await self._stop_watchers(entry)
        self._log(entry, f"Failed to start workload: {message}", "error", stage="failed")

        if entry.container_id:
            await self._cleanup(entry)
        else:
            self._remove_work_dir(entry)
        self._release_port(entry)

        await self._set_stage(entry, "failed", error=message)

    @staticmethod
    def _read_entry_file(manifest: Path) -> str:
        try:
            data = json.loads(manifest.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ServiceLayoutError(f"Invalid {SERVICE_MANIFEST}: {e}") from e
        return data.get("entry") or DEFAULT_ENTRY_FILE

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    def _watch(self, entry: RunningWorkload) -> None:
        """Start the liveness monitor, the log stream and the periodic flush."""
        entry.cancel_monitor = self.docker.monitor(
            entry.container_id,
            lambda state: self._on_container_state(entry, state),
            interval=self.monitor_interval,
        )
        entry.log_cancel = asyncio.Event()
        entry.log_task = asyncio.create_task(self._stream_logs(entry))
        entry.flush_task = asyncio.create_task(self._flush_loop(entry))

    async def _on_container_state(self, entry: RunningWorkload, state: ContainerState) -> None:
        if state.running:
            return

        # Whoever removes the entry owns the cleanup; stop() may have got here first
        if self._workloads.get(entry.workload_id) is not entry:
            return
        del self._workloads[entry.workload_id]

        exit_code = state.exit_code if state.exit_code is not None else 0
        if state.error:
            failed = True
            message = f"Container monitoring failed: {state.error}"
        else:
            failed = state.dead or exit_code != 0
            message = f"Container exited with code {exit_code}"

        logger.info(f"Workload {entry.workload_id}: {message}")

        final_stage = "failed" if failed else "stopped"
        self._log(entry, message, "error" if failed else "info", stage=final_stage)
        await self._set_stage(entry, final_stage, error=message if failed else None)

        await self._stop_watchers(entry)
        self._release_port(entry)
        await self._cleanup(entry)
        await self._flush(entry)

    async def _stream_logs(self, entry: RunningWorkload) -> None:
        def on_line(line: str) -> None:
            logger.debug(f"[container {entry.container_id[:12]}] {line}")
            self._log(entry, line, stage="running")

        try:
            await self.docker.stream_logs(entry.container_id, on_line, entry.log_cancel)
        except ContainerRuntimeError as e:
            logger.error(f"Log streaming failed for workload {entry.workload_id}: {e}")
        except Exception as e:
            logger.error(
                f"Unexpected log streaming error for workload {entry.workload_id}: {e}",
                exc_info=True,
            )

    async def _flush_loop(self, entry: RunningWorkload) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            try:
                await self._flush(entry, publish_empty=False)
            except Exception as e:
                logger.error(
                    f"Failed to flush logs for workload {entry.workload_id}: {e}",
                    exc_info=True,
                )

    async def _stop_watchers(self, entry: RunningWorkload) -> None:
        if entry.cancel_monitor is not None:
            entry.cancel_monitor()
            entry.cancel_monitor = None
        if entry.log_cancel is not None:
            entry.log_cancel.set()

        current = asyncio.current_task()
        if entry.flush_task is not None and entry.flush_task is not current:
            entry.flush_task.cancel()
            entry.flush_task = None

        if entry.log_task is not None and entry.log_task is not current:
            log_task, entry.log_task = entry.log_task, None
            try:
                await asyncio.wait_for(log_task, timeout=LOG_TASK_SHUTDOWN_TIMEOUT)
            except TimeoutError:
                logger.warning(f"Log stream for workload {entry.workload_id} did not stop in time")

    # ------------------------------------------------------------------
    # Stop and cleanup
    # ------------------------------------------------------------------

    async def _stop(self, workload_id: str) -> None:
        if not self._is_tracked_running(workload_id):
            raise WorkloadNotRunningError(workload_id)

        # Claim the entry so the monitor callback leaves it alone
        entry = self._workloads.pop(workload_id)
        logger.info(f"Stopping workload {workload_id}")

        await self._set_stage(entry, "graceful-shutdown")
        self._log(entry, "Initiating graceful shutdown")
        await self._stop_watchers(entry)

        await self.lifecycle.stop(entry.container_id, graceful=True)
        self._log(entry, "Container stopped")

        await self._cleanup(entry)
        self._release_port(entry)

        self._log(entry, "Service stopped", stage="stopped")
        await self._set_stage(entry, "stopped")
        logger.info(f"Workload {workload_id} stopped")

    async def _cleanup(self, entry: RunningWorkload) -> None:
        """Remove the container, its image and the work directory. Never raises."""
        if entry.container_id:
            self._log(entry, "Removing container", stage="stopped")
            try:
                report = await self.lifecycle.cleanup(entry.container_id)
                for warning in report.warnings:
                    logger.debug(f"Cleanup of {entry.container_id[:12]}: {warning}")
                self._log(entry, "Container removed", stage="stopped")
            except ContainerRuntimeError as e:
                logger.error(f"Failed to clean up container: {e}")
                self._log(entry, f"Failed to cleanup container: {e}", "warn", stage="stopped")

        if entry.image_name:
            try:
                await self.docker.remove_image(entry.image_name, force=True)
            except ContainerRuntimeError:
                logger.info(f"Image {entry.image_name} not found or already removed")

        self._remove_work_dir(entry)

    def _remove_work_dir(self, entry: RunningWorkload) -> None:
        if not entry.work_dir.exists():
            return

        self._log(entry, f"Cleaning up work directory: {entry.work_dir}", stage="stopped")
        try:
            shutil.rmtree(entry.work_dir)
        except OSError as e:
            logger.error(f"Failed to clean up work directory: {e}")
            self._log(entry, f"Failed to cleanup work directory: {e}", "warn", stage="stopped")
            return
        self._log(entry, "Work directory cleaned up", stage="stopped")

    def _release_port(self, entry: RunningWorkload) -> None:
        if entry.port and self.port_pool.release(entry.port):
            logger.info(f"Released port {entry.port}")

    # ------------------------------------------------------------------
    # Logs, state and events
    # ------------------------------------------------------------------

    def _log(
        self,
        entry: RunningWorkload,
        message: str,
        level: LogLevel = "info",
        stage: str | None = None,
    ) -> None:
        entry.logs.append(LogEntry(stage=stage or entry.stage, message=message, level=level))

    async def _set_stage(
        self, entry: RunningWorkload, stage: str, error: str | None = None
    ) -> None:
        """Record a stage change and flush the buffered log with it."""
        logger.info(f"Workload {entry.workload_id} stage: {stage}")
        entry.stage = stage

        fields: dict[str, Any] = {
            "current_stage": stage,
            "status": status_for_stage(stage),
        }
        if error is not None:
            fields["error"] = error
        if stage in ("stopped", "failed"):
            fields["completed_at"] = utcnow()

        try:
            await self.repository.update_workload(entry.workload_id, **fields)
        except Exception as e:
            logger.error(
                f"Failed to update workload {entry.workload_id} stage: {e}", exc_info=True
            )

        await self._flush(entry)

    async def _flush(self, entry: RunningWorkload, publish_empty: bool = True) -> None:
        """Write unflushed log entries to the repository and publish an update."""
        pending = entry.logs[entry.flushed :]
        if not pending and not publish_empty:
            return

        if pending:
            # Claimed before the await so concurrent flushes don't duplicate entries
            entry.flushed = len(entry.logs)
            try:
                await self.repository.add_logs(entry.workload_id, pending)
                logger.debug(f"Flushed {len(pending)} logs for workload {entry.workload_id}")
            except Exception as e:
                logger.error(
                    f"Failed to flush logs for workload {entry.workload_id}: {e}",
                    exc_info=True,
                )

        await self._publish(entry.workload_id)

    async def _publish(self, workload_id: str) -> None:
        if self.event_bus is None:
            return

        try:
            workload = await self.repository.get_workload(workload_id)
            if workload is None:
                logger.error(f"Workload {workload_id} not found when publishing update")
                return

            project_id = ""
            deployment = await self.repository.get_deployment(workload.deployment_id)
            if deployment is not None:
                project_id = deployment.project_id

            self.event_bus.publish(
                WorkloadUpdate(
                    workload_id=workload.id,
                    deployment_id=workload.deployment_id,
                    project_id=project_id,
                    current_stage=workload.current_stage,
                    status=workload.status,
                    stages=group_logs_by_stage(workload.logs),
                    updated_at=utcnow().isoformat(),
                )
            )
        except Exception as e:
            logger.error(
                f"Failed to publish update for workload {workload_id}: {e}", exc_info=True
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def _operation(self, workload_id: str) -> Iterator[None]:
        """Serialize start/stop/restart per workload."""
        if workload_id in self._operations:
            raise OperationInProgressError(workload_id)
        self._operations.add(workload_id)
        try:
            yield
        finally:
            self._operations.discard(workload_id)

    def _is_tracked_running(self, workload_id: str) -> bool:
        entry = self._workloads.get(workload_id)
        return entry is not None and bool(entry.container_id)


def _is_port_conflict(error: Exception) -> bool:
    message = str(error)
    return any(marker in message for marker in PORT_CONFLICT_MARKERS)
