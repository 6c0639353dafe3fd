"""
Unit tests for the workload HTTP API.

The repository and orchestrator are mocks injected through create_app, so
these tests cover routing, status codes and payload shapes only.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from wl_common.errors import (
    OperationInProgressError,
    WorkloadAlreadyRunningError,
    WorkloadNotFoundError,
    WorkloadNotRunningError,
)
from wl_common.events import DeploymentDeleted, EventBus, WorkloadUpdate
from wl_common.models import Deployment, LogEntry, Workload, WorkloadArtifacts
from wl_common.repository import WorkloadRepository
from wl_orchestrator import RuntimeStatus, WorkloadOrchestrator
from wl_runtime.docker_client import DockerClient
from wl_server.app import create_app, sse_event, stream_bus_events


def running_status(workload_id: str = "wl-1") -> RuntimeStatus:
    return RuntimeStatus(
        workload_id=workload_id,
        running=True,
        stage="running",
        status="running",
        port=3100,
        container_id="abc123",
    )


@pytest.fixture
def repo():
    return AsyncMock(spec=WorkloadRepository)


@pytest.fixture
def orchestrator():
    orch = MagicMock(spec=WorkloadOrchestrator)
    orch.get_status.return_value = running_status()
    return orch


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def client(repo, orchestrator, bus):
    app = create_app(
        repository=repo,
        docker=MagicMock(spec=DockerClient),
        event_bus=bus,
        orchestrator=orchestrator,
    )
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


class TestLifespan:
    def test_repository_is_initialized_and_closed(self, repo, orchestrator, bus):
        app = create_app(repository=repo, event_bus=bus, orchestrator=orchestrator)

        with TestClient(app):
            repo.initialize.assert_awaited_once()

        orchestrator.close.assert_awaited_once()
        repo.close.assert_awaited_once()


class TestWorkloadRoutes:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_list_workloads(self, client, repo):
        repo.list_workloads.return_value = [
            Workload(id="wl-1", deployment_id="dep-1", artifacts=WorkloadArtifacts(port=3100))
        ]

        response = client.get("/workloads", params={"deployment_id": "dep-1"})

        assert response.status_code == 200
        (summary,) = response.json()
        assert summary["id"] == "wl-1"
        assert summary["port"] == 3100
        repo.list_workloads.assert_awaited_once_with("dep-1")

    def test_get_workload(self, client, repo):
        repo.get_workload.return_value = Workload(id="wl-1", deployment_id="dep-1")

        response = client.get("/workloads/wl-1")

        assert response.status_code == 200
        assert response.json()["deployment_id"] == "dep-1"

    def test_get_unknown_workload(self, client, repo):
        repo.get_workload.return_value = None

        response = client.get("/workloads/nope")

        assert response.status_code == 404
        assert response.json() == {
            "error": "WorkloadNotFoundError",
            "message": "Workload nope not found",
        }

    def test_start_with_repo_url(self, client, orchestrator):
        response = client.post(
            "/workloads/wl-1/start", json={"repo_url": "https://git.example.com/a.git"}
        )

        assert response.status_code == 200
        assert response.json()["port"] == 3100
        orchestrator.start.assert_awaited_once_with("wl-1", "https://git.example.com/a.git")

    def test_start_without_body(self, client, orchestrator):
        response = client.post("/workloads/wl-1/start")

        assert response.status_code == 200
        orchestrator.start.assert_awaited_once_with("wl-1", None)

    @pytest.mark.parametrize(
        "error",
        [
            WorkloadAlreadyRunningError("wl-1"),
            OperationInProgressError("wl-1"),
        ],
    )
    def test_start_conflicts(self, client, orchestrator, error):
        orchestrator.start.side_effect = error

        response = client.post("/workloads/wl-1/start")

        assert response.status_code == 409
        assert response.json()["error"] == type(error).__name__

    def test_start_unknown_workload(self, client, orchestrator):
        orchestrator.start.side_effect = WorkloadNotFoundError("nope")

        assert client.post("/workloads/nope/start").status_code == 404

    def test_start_failure_is_500(self, client, orchestrator):
        orchestrator.start.side_effect = RuntimeError("clone failed")

        response = client.post("/workloads/wl-1/start")

        assert response.status_code == 500
        assert response.json() == {"error": "RuntimeError", "message": "clone failed"}

    def test_stop(self, client, orchestrator):
        orchestrator.get_status.return_value = RuntimeStatus(
            workload_id="wl-1", running=False, stage="stopped", status="stopped"
        )

        response = client.post("/workloads/wl-1/stop")

        assert response.status_code == 200
        assert response.json()["status"] == "stopped"
        orchestrator.stop.assert_awaited_once_with("wl-1")

    def test_stop_not_running(self, client, orchestrator):
        orchestrator.stop.side_effect = WorkloadNotRunningError("wl-1")

        response = client.post("/workloads/wl-1/stop")

        assert response.status_code == 409
        assert response.json()["message"] == "Workload wl-1 is not running"

    def test_restart(self, client, orchestrator):
        response = client.post("/workloads/wl-1/restart")

        assert response.status_code == 200
        orchestrator.restart.assert_awaited_once_with("wl-1")

    def test_status(self, client):
        response = client.get("/workloads/wl-1/status")

        assert response.json() == running_status().to_dict()

    def test_logs(self, client, orchestrator):
        orchestrator.get_logs.return_value = [LogEntry("running", "hello")]

        response = client.get("/workloads/wl-1/logs")

        (entry,) = response.json()
        assert entry["stage"] == "running"
        assert entry["message"] == "hello"
        assert entry["level"] == "info"


class TestDeploy:
    MODULE = {"id": "catalog", "name": "catalog", "version": "1", "type": "api-resource"}

    def test_invalid_module_is_400(self, client):
        response = client.post("/deploy", json={"module": {"id": "x"}})

        assert response.status_code == 400
        assert "Invalid deploy request" in response.json()["detail"]

    def test_deploy_runs_pipeline(self, client, repo):
        repo.get_deployment.return_value = Deployment(id="dep-1", project_id="proj-1", name="c")
        result = Workload(id="wl-9", deployment_id="dep-1", status="success")

        with patch("wl_server.app.Deployer") as deployer_cls:
            deployer_cls.return_value.deploy_workload = AsyncMock(return_value=result)
            response = client.post(
                "/deploy", json={"module": self.MODULE, "deployment_id": "dep-1"}
            )

        assert response.status_code == 200
        assert response.json()["id"] == "wl-9"
        assert deployer_cls.call_args.kwargs["project_id"] == "proj-1"
        module, target, deployment_id = deployer_cls.return_value.deploy_workload.call_args.args
        assert module.id == "catalog"
        assert target.type == "docker-local"
        assert deployment_id == "dep-1"


class TestDeleteDeployment:
    def test_unknown_deployment(self, client, repo):
        repo.get_deployment.return_value = None

        response = client.delete("/deployments/nope")

        assert response.status_code == 404
        assert response.json()["error"] == "DeploymentNotFoundError"

    def test_deletes_workloads_then_deployment(self, client, repo, orchestrator, bus):
        repo.get_deployment.return_value = Deployment(id="dep-1", project_id="proj-1", name="c")
        repo.list_workloads.return_value = [
            Workload(id="wl-1", deployment_id="dep-1"),
            Workload(id="wl-2", deployment_id="dep-1"),
        ]
        orchestrator.force_cleanup.side_effect = [RuntimeError("docker gone"), None]
        deleted = []
        bus.subscribe(DeploymentDeleted, deleted.append)

        response = client.delete("/deployments/dep-1")

        assert response.status_code == 200
        assert response.json() == {"deployment_id": "dep-1", "deleted_workloads": 2}
        assert [c.args[0] for c in repo.delete_workload.await_args_list] == ["wl-1", "wl-2"]
        repo.delete_deployment.assert_awaited_once_with("dep-1")
        assert deleted == [DeploymentDeleted(deployment_id="dep-1", project_id="proj-1")]


def update(deployment_id: str = "dep-1") -> WorkloadUpdate:
    return WorkloadUpdate(
        workload_id="wl-1",
        deployment_id=deployment_id,
        project_id="proj-1",
        current_stage="running",
        status="running",
    )


class TestEventStream:
    def test_sse_event(self):
        assert sse_event({"a": 1}) == 'data: {"a": 1}\n\n'

    @pytest.mark.asyncio
    async def test_relays_bus_events(self):
        bus = EventBus()
        stream = stream_bus_events(bus)

        assert await anext(stream) == ": connected\n\n"
        bus.publish(update())
        bus.publish(DeploymentDeleted(deployment_id="dep-1", project_id="proj-1"))

        first = json.loads((await anext(stream)).removeprefix("data: "))
        second = json.loads((await anext(stream)).removeprefix("data: "))
        assert first["type"] == "workload-update"
        assert second["type"] == "deployment-deleted"

        await stream.aclose()
        assert bus.subscriber_count(WorkloadUpdate) == 0
        assert bus.subscriber_count(DeploymentDeleted) == 0

    @pytest.mark.asyncio
    async def test_filters_by_deployment(self):
        bus = EventBus()
        stream = stream_bus_events(bus, deployment_id="dep-2")
        await anext(stream)

        bus.publish(update("dep-1"))
        bus.publish(update("dep-2"))

        payload = json.loads((await anext(stream)).removeprefix("data: "))
        assert payload["deployment_id"] == "dep-2"
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_keepalive_when_idle(self):
        stream = stream_bus_events(EventBus(), keepalive=0.01)
        await anext(stream)

        assert await asyncio.wait_for(anext(stream), timeout=1) == ": keepalive\n\n"
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_stops_when_client_disconnects(self):
        bus = EventBus()
        request = MagicMock()
        request.is_disconnected = AsyncMock(return_value=True)
        stream = stream_bus_events(bus, request=request)
        await anext(stream)

        bus.publish(update())
        await anext(stream)

        with pytest.raises(StopAsyncIteration):
            await anext(stream)
        assert bus.subscriber_count(WorkloadUpdate) == 0
