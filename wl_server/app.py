import asyncio
import json
import logging
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from wl_common.config import (
    get_database_path,
    get_docker_socket,
    get_port_range,
    get_python_base_image,
    get_work_root,
)
from wl_common.errors import (
    DeploymentNotFoundError,
    OperationInProgressError,
    WorkloadAlreadyRunningError,
    WorkloadNotFoundError,
    WorkloadNotRunningError,
)
from wl_common.events import DeploymentDeleted, EventBus, WorkloadUpdate
from wl_common.models import ModuleDefinition, WorkloadTarget
from wl_common.repository import WorkloadRepository
from wl_deployer import Deployer, ModuleTypeRegistry, create_default_registry
from wl_orchestrator import WorkloadOrchestrator
from wl_persistence.sqlite_repository import SQLiteWorkloadRepository
from wl_runtime.builders import ServiceBuilder
from wl_runtime.docker_client import DockerClient
from wl_runtime.port_pool import PortPool

logger = logging.getLogger(__name__)

# Seconds between SSE comments on an idle event stream
KEEPALIVE_INTERVAL = 15.0

_NOT_FOUND = (WorkloadNotFoundError, DeploymentNotFoundError)
_CONFLICT = (WorkloadNotRunningError, WorkloadAlreadyRunningError, OperationInProgressError)


class StartRequest(BaseModel):
    repo_url: str | None = None


class DeployRequest(BaseModel):
    module: dict[str, Any]
    target: dict[str, Any] = {"type": "docker-local", "config": {}}
    deployment_id: str | None = None


def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "message": str(exc)},
    )


def sse_event(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def stream_bus_events(
    bus: EventBus,
    deployment_id: str | None = None,
    request: Request | None = None,
    keepalive: float = KEEPALIVE_INTERVAL,
) -> AsyncGenerator[str, None]:
    """
    Relay bus events as Server-Sent Events until the client goes away.

    Args:
        bus: Event bus to subscribe to
        deployment_id: Only relay events for this deployment
        request: Checked for client disconnection between events
        keepalive: Seconds of silence before a keepalive comment is sent

    Yields:
        SSE-formatted event strings
    """
    queue: asyncio.Queue = asyncio.Queue()

    def enqueue(event: WorkloadUpdate | DeploymentDeleted) -> None:
        if deployment_id and event.deployment_id != deployment_id:
            return
        queue.put_nowait(event)

    bus.subscribe(WorkloadUpdate, enqueue)
    bus.subscribe(DeploymentDeleted, enqueue)
    try:
        yield ": connected\n\n"
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=keepalive)
            except TimeoutError:
                yield ": keepalive\n\n"
            else:
                yield sse_event(event.to_dict())

            if request and await request.is_disconnected():
                return
    finally:
        bus.unsubscribe(WorkloadUpdate, enqueue)
        bus.unsubscribe(DeploymentDeleted, enqueue)


def create_app(
    repository: WorkloadRepository | None = None,
    docker: DockerClient | None = None,
    event_bus: EventBus | None = None,
    registry: ModuleTypeRegistry | None = None,
    orchestrator: WorkloadOrchestrator | None = None,
    port_pool: PortPool | None = None,
    work_root: Path | None = None,
) -> FastAPI:
    """
    Build the workload API.

    Anything not injected is constructed from the environment when the
    application starts (see wl_common.config). The repository is initialized
    at startup and closed at shutdown; running workloads are stopped at
    shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state = app.state
        state.repository = repository or SQLiteWorkloadRepository(get_database_path())
        state.docker = docker or DockerClient(socket_path=get_docker_socket())
        state.event_bus = event_bus or EventBus()
        state.registry = registry or create_default_registry()
        state.orchestrator = orchestrator or WorkloadOrchestrator(
            state.repository,
            docker=state.docker,
            event_bus=state.event_bus,
            port_pool=port_pool or PortPool(*get_port_range()),
            work_root=work_root or get_work_root(),
            service_builder=ServiceBuilder(state.docker, get_python_base_image()),
        )

        await state.repository.initialize()
        logger.info("Workload server started")

        yield

        logger.info("Stopping running workloads...")
        await state.orchestrator.close()
        await state.repository.close()

    app = FastAPI(title="Workload Runner", lifespan=lifespan)

    @app.exception_handler(WorkloadNotFoundError)
    @app.exception_handler(DeploymentNotFoundError)
    async def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
        return _error_response(404, exc)

    @app.exception_handler(WorkloadNotRunningError)
    @app.exception_handler(WorkloadAlreadyRunningError)
    @app.exception_handler(OperationInProgressError)
    async def conflict_handler(request: Request, exc: Exception) -> JSONResponse:
        return _error_response(409, exc)

    @app.exception_handler(Exception)
    async def error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Request {request.method} {request.url.path} failed: {exc}", exc_info=exc)
        return _error_response(500, exc)

    _register_routes(app)
    return app


# ----------------------------------------------------------------------
# Dependencies
# ----------------------------------------------------------------------


def get_repository(request: Request) -> WorkloadRepository:
    return request.app.state.repository


def get_orchestrator(request: Request) -> WorkloadOrchestrator:
    return request.app.state.orchestrator


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.event_bus


# ----------------------------------------------------------------------
# Routes
# ----------------------------------------------------------------------


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/workloads")
    async def list_workloads(
        deployment_id: str | None = None,
        repo: WorkloadRepository = Depends(get_repository),
    ) -> list[dict[str, Any]]:
        workloads = await repo.list_workloads(deployment_id)
        return [workload.to_summary_dict() for workload in workloads]

    @app.get("/workloads/{workload_id}")
    async def get_workload(
        workload_id: str, repo: WorkloadRepository = Depends(get_repository)
    ) -> dict[str, Any]:
        workload = await repo.get_workload(workload_id)
        if workload is None:
            raise WorkloadNotFoundError(workload_id)
        return workload.to_dict()

    @app.post("/workloads/{workload_id}/start")
    async def start_workload(
        workload_id: str,
        body: StartRequest | None = None,
        orchestrator: WorkloadOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        """
        Clone, build and run a workload. Returns once it is running.

        Without a ``repo_url`` the workload's recorded repository is used.
        """
        await orchestrator.start(workload_id, body.repo_url if body else None)
        return (await orchestrator.get_status(workload_id)).to_dict()

    @app.post("/workloads/{workload_id}/stop")
    async def stop_workload(
        workload_id: str, orchestrator: WorkloadOrchestrator = Depends(get_orchestrator)
    ) -> dict[str, Any]:
        await orchestrator.stop(workload_id)
        return (await orchestrator.get_status(workload_id)).to_dict()

    @app.post("/workloads/{workload_id}/restart")
    async def restart_workload(
        workload_id: str, orchestrator: WorkloadOrchestrator = Depends(get_orchestrator)
    ) -> dict[str, Any]:
        await orchestrator.restart(workload_id)
        return (await orchestrator.get_status(workload_id)).to_dict()

    @app.get("/workloads/{workload_id}/status")
    async def workload_status(
        workload_id: str, orchestrator: WorkloadOrchestrator = Depends(get_orchestrator)
    ) -> dict[str, Any]:
        return (await orchestrator.get_status(workload_id)).to_dict()

    @app.get("/workloads/{workload_id}/logs")
    async def workload_logs(
        workload_id: str, orchestrator: WorkloadOrchestrator = Depends(get_orchestrator)
    ) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in await orchestrator.get_logs(workload_id)]

    @app.post("/deploy")
    async def deploy(
        body: DeployRequest,
        request: Request,
        repo: WorkloadRepository = Depends(get_repository),
    ) -> dict[str, Any]:
        """
        Run a module through the deployment pipeline.

        The response is the resulting workload record; a failed pipeline is
        still a 200 with status "failed".
        """
        try:
            module = ModuleDefinition.from_dict(body.module)
            target = WorkloadTarget.from_dict(body.target)
        except (KeyError, TypeError, ValueError) as e:
            raise HTTPException(status_code=400, detail=f"Invalid deploy request: {e}")

        deployment_id = body.deployment_id or str(uuid.uuid4())
        deployment = await repo.get_deployment(deployment_id)

        state = request.app.state
        deployer = Deployer(
            state.registry,
            docker=state.docker,
            repository=repo,
            event_bus=state.event_bus,
            project_id=deployment.project_id if deployment else "",
        )
        workload = await deployer.deploy_workload(module, target, deployment_id)
        return workload.to_dict()

    @app.delete("/deployments/{deployment_id}")
    async def delete_deployment(
        deployment_id: str,
        repo: WorkloadRepository = Depends(get_repository),
        orchestrator: WorkloadOrchestrator = Depends(get_orchestrator),
        bus: EventBus = Depends(get_event_bus),
    ) -> dict[str, Any]:
        """Force-clean and delete a deployment's workloads, then the deployment."""
        deployment = await repo.get_deployment(deployment_id)
        if deployment is None:
            raise DeploymentNotFoundError(deployment_id)

        workloads = await repo.list_workloads(deployment_id)
        for workload in workloads:
            try:
                await orchestrator.force_cleanup(workload.id)
            except Exception as e:
                logger.error(f"Failed to clean up workload {workload.id}: {e}", exc_info=True)
            await repo.delete_workload(workload.id)

        await repo.delete_deployment(deployment_id)
        logger.info(f"Deleted deployment {deployment_id} ({len(workloads)} workloads)")

        bus.publish(DeploymentDeleted(deployment_id=deployment_id, project_id=deployment.project_id))
        return {"deployment_id": deployment_id, "deleted_workloads": len(workloads)}

    @app.get("/events")
    async def events(
        request: Request,
        deployment_id: str | None = None,
        bus: EventBus = Depends(get_event_bus),
    ) -> StreamingResponse:
        """
        Stream every workload update and deployment deletion via Server-Sent
        Events, optionally for one deployment only.
        """
        return StreamingResponse(
            stream_bus_events(bus, deployment_id, request),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )


app = create_app()
