"""
One-shot deployment pipeline.

A Deployer takes a module definition and a target through a fixed sequence
of stages (validate, build, deploy, healthcheck, test, complete), recording
one StageResult per executed stage and emitting events as it goes. It never
raises out of ``deploy_workload``: every failure ends up in the returned
Workload's stage history and status.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Callable

import httpx

from wl_common.errors import (
    FailedTestsError,
    HealthcheckExhaustedError,
    StageExecutionError,
    UnknownModuleTypeError,
    UnsupportedTargetError,
    ValidationFailedError,
)
from wl_common.events import (
    ArtifactEvent,
    CheckCompleteEvent,
    CheckStartEvent,
    EventBus,
    LogEvent,
    PipelineEvent,
    StageCompleteEvent,
    StageStartEvent,
    WorkloadCompleteEvent,
    WorkloadUpdate,
)
from wl_common.models import (
    HealthcheckConfig,
    LogEntry,
    ModuleDefinition,
    StageResult,
    TestDefinition,
    Workload,
    WorkloadTarget,
    utcnow,
)
from wl_common.repository import WorkloadRepository
from wl_runtime.docker_client import ContainerConfig, DockerClient, PortMapping

from .module_types import BuildResult, DeployResult, ModuleTypeHandler, ModuleTypeRegistry

logger = logging.getLogger(__name__)

STAGES = ("validate", "build", "deploy", "healthcheck", "test", "complete")

DEFAULT_CONTAINER_PORT = 3000
SUPPORTED_TARGET = "docker-local"

StageLog = Callable[[str], None]


class Deployer:
    """
    Runs modules through the deployment pipeline.

    Args:
        registry: Module type handlers
        docker: Container runtime (a default DockerClient if omitted)
        on_event: Receives every PipelineEvent
        repository: When given, the workload record is created up front and
            updated after every stage
        event_bus: When given, a WorkloadUpdate is published after every stage
        project_id: Project reported in published WorkloadUpdates
        transport: httpx transport for healthcheck and test requests
    """

    def __init__(
        self,
        registry: ModuleTypeRegistry,
        docker: DockerClient | None = None,
        on_event: Callable[[PipelineEvent], None] | None = None,
        repository: WorkloadRepository | None = None,
        event_bus: EventBus | None = None,
        project_id: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.registry = registry
        self.docker = docker or DockerClient()
        self.on_event = on_event
        self.repository = repository
        self.event_bus = event_bus
        self.project_id = project_id
        self._transport = transport

    async def deploy_workload(
        self, module: ModuleDefinition, target: WorkloadTarget, deployment_id: str
    ) -> Workload:
        """
        Deploy a module and return the resulting workload record.

        Args:
            module: The module to deploy
            target: Where to deploy it
            deployment_id: Deployment the workload belongs to

        Returns:
            Workload with status "success" or "failed" and its stage history
        """
        workload = Workload(
            id=str(uuid.uuid4()),
            deployment_id=deployment_id,
            module_id=module.id,
            module_name=module.name,
            module_type=module.type,
            status="running",
            current_stage="pending",
            target=target,
        )
        await self._record(workload, create=True)

        logger.info(
            f"Deploying {module.name} v{module.version} as workload {workload.id}"
        )

        handler = self.registry.get(module.type)
        if handler is None:
            return await self._fail(
                workload, "validate", str(UnknownModuleTypeError(module.type))
            )

        for stage in STAGES:
            workload.current_stage = stage
            self._emit(StageStartEvent(workload.id, stage=stage))

            result = await self._run_stage(stage, module, target, workload, handler)
            workload.stages.append(result)
            workload.updated_at = utcnow()

            self._emit(StageCompleteEvent(workload.id, stage=stage, result=result))
            await self._record(workload, logs=result)

            if result.status == "failed":
                return await self._fail(workload, stage, result.error or "Stage failed")

        workload.status = "success"
        workload.completed_at = utcnow()
        await self._record(workload)

        logger.info(f"Workload {workload.id} deployed successfully")
        self._emit(WorkloadCompleteEvent(workload.id, status="success"))
        return workload

    async def _run_stage(
        self,
        stage: str,
        module: ModuleDefinition,
        target: WorkloadTarget,
        workload: Workload,
        handler: ModuleTypeHandler,
    ) -> StageResult:
        started_at = utcnow()
        started = time.monotonic()
        logs: list[str] = []

        def log(message: str) -> None:
            logs.append(message)
            self._emit(LogEvent(workload.id, stage=stage, message=message))

        def result(error: str | None = None) -> StageResult:
            return StageResult(
                stage=stage,
                status="failed" if error is not None else "success",
                started_at=started_at,
                completed_at=utcnow(),
                duration=int((time.monotonic() - started) * 1000),
                logs=logs,
                error=error,
            )

        runner = getattr(self, f"_stage_{stage}")
        try:
            await runner(module, target, workload, handler, log)
        except StageExecutionError as e:
            logger.warning(f"Stage {stage} failed for workload {workload.id}: {e}")
            return result(str(e))
        except Exception as e:
            logger.error(
                f"Stage {stage} raised for workload {workload.id}: {e}", exc_info=True
            )
            log(f"Error: {e}")
            return result(str(e) or type(e).__name__)

        return result()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _stage_validate(self, module, target, workload, handler, log: StageLog) -> None:
        log(f"Validating {module.type} module: {module.name}")

        validation = await handler.validate(module)

        for warning in validation.warnings:
            log(f"Warning: {warning}")

        if not validation.valid:
            for error in validation.errors:
                log(f"Error: {error}")
            raise ValidationFailedError(validation.errors)

        log("Validation passed")

    async def _stage_build(self, module, target, workload, handler, log: StageLog) -> None:
        custom = await handler.build(module, target)
        if custom is not None:
            self._apply_handler_result("build", custom, workload, log)
            return

        # The image is expected to exist already; custom builds go through
        # the handler hook above
        image_name = f"{module.name}:{module.version}"
        log(f"Using Docker image: {image_name}")
        self._set_artifacts(workload, image_name=image_name)
        log(f"Image ready: {image_name}")

    async def _stage_deploy(self, module, target, workload, handler, log: StageLog) -> None:
        custom = await handler.deploy(module, target, workload.artifacts)
        if custom is not None:
            self._apply_handler_result("deploy", custom, workload, log)
            return

        if target.type != SUPPORTED_TARGET:
            raise UnsupportedTargetError(target.type)

        container_name = f"{module.name}-{workload.id[:8]}"
        port = module.runtime.port or DEFAULT_CONTAINER_PORT
        host_port = int(target.config.get("hostPort") or port)

        log(f"Creating container: {container_name}")
        log(f"Port mapping: {host_port}:{port}")

        # A leftover container with the same name would block creation
        try:
            await self.docker.remove(container_name, force=True)
        except Exception as e:
            logger.debug(f"Could not remove existing container {container_name}: {e}")

        container_id = await self.docker.create(
            ContainerConfig(
                name=container_name,
                image=workload.artifacts.image_name or f"{module.name}:{module.version}",
                env=dict(module.runtime.env),
                ports=[PortMapping(internal=port, external=host_port)],
                memory=module.runtime.resources.get("memory"),
                cpus=module.runtime.resources.get("cpu"),
            )
        )
        await self.docker.start(container_id)

        self._set_artifacts(
            workload,
            container_id=container_id,
            container_name=container_name,
            port=host_port,
            url=f"http://localhost:{host_port}",
        )
        log(f"Container started: {container_name}")

    async def _stage_healthcheck(self, module, target, workload, handler, log: StageLog) -> None:
        healthcheck = module.runtime.healthcheck or HealthcheckConfig()
        url = f"{workload.artifacts.url}{healthcheck.path}"
        log(f"Running healthcheck: {url}")

        async with httpx.AsyncClient(transport=self._transport, timeout=None) as client:
            for attempt in range(1, healthcheck.retries + 1):
                log(f"Attempt {attempt}/{healthcheck.retries}")

                try:
                    response = await asyncio.wait_for(
                        client.get(url), timeout=healthcheck.timeout / 1000
                    )
                    if response.is_success:
                        log(f"Healthcheck passed (status {response.status_code})")
                        return
                    log(f"Healthcheck returned status {response.status_code}")
                except TimeoutError:
                    log(f"Healthcheck failed: timed out after {healthcheck.timeout}ms")
                except httpx.HTTPError as e:
                    log(f"Healthcheck failed: {str(e) or type(e).__name__}")

                if attempt < healthcheck.retries:
                    await asyncio.sleep(healthcheck.interval / 1000)

        raise HealthcheckExhaustedError()

    async def _stage_test(self, module, target, workload, handler, log: StageLog) -> None:
        tests = handler.get_tests(module, workload.artifacts)
        log(f"Running {len(tests)} tests")

        failures: list[str] = []

        async with httpx.AsyncClient(transport=self._transport, timeout=None) as client:
            for test in tests:
                self._emit(CheckStartEvent(workload.id, test=test.name))
                log(f"Running test: {test.name}")

                try:
                    passed = await self._run_test(client, test)
                except httpx.HTTPError as e:
                    log(f"  FAIL: {test.name} - {e}")
                    failures.append(f"{test.name}: {e}")
                    self._emit(
                        CheckCompleteEvent(
                            workload.id, test=test.name, passed=False, error=str(e)
                        )
                    )
                    continue

                if passed:
                    log(f"  PASS: {test.name}")
                else:
                    log(f"  FAIL: {test.name}")
                    failures.append(test.name)
                self._emit(CheckCompleteEvent(workload.id, test=test.name, passed=passed))

        if failures:
            raise FailedTestsError(failures)

        log(f"All {len(tests)} tests passed")

    async def _stage_complete(self, module, target, workload, handler, log: StageLog) -> None:
        log("Workload deployment complete")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _run_test(client: httpx.AsyncClient, test: TestDefinition) -> bool:
        """Run one test. Only "http" tests can pass; other types count as failed."""
        if test.type != "http":
            return False

        config = test.config
        request_args: dict = {"headers": config.headers}
        if config.body is not None:
            request_args["json"] = config.body

        response = await client.request(config.method, config.path, **request_args)

        expect = config.expect
        if expect.status is not None and response.status_code != expect.status:
            return False
        if expect.body_contains is not None and expect.body_contains not in response.text:
            return False
        return True

    def _apply_handler_result(
        self,
        stage: str,
        outcome: BuildResult | DeployResult,
        workload: Workload,
        log: StageLog,
    ) -> None:
        for line in outcome.logs:
            log(line)
        if outcome.artifacts:
            self._set_artifacts(workload, **outcome.artifacts)
        if not outcome.success:
            raise StageExecutionError(outcome.error or f"{stage} failed")

    def _set_artifacts(self, workload: Workload, **values) -> None:
        workload.artifacts.update(**values)
        for key, value in values.items():
            self._emit(ArtifactEvent(workload.id, key=key, value=value))

    async def _fail(self, workload: Workload, stage: str, error: str) -> Workload:
        workload.status = "failed"
        workload.current_stage = stage
        workload.error = error
        workload.completed_at = utcnow()
        await self._record(workload)

        logger.warning(f"Workload {workload.id} failed at {stage}: {error}")
        self._emit(WorkloadCompleteEvent(workload.id, status="failed"))
        return workload

    def _emit(self, event: PipelineEvent) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception as e:
            logger.error(f"Event callback failed handling {event.type}: {e}", exc_info=True)

    async def _record(
        self,
        workload: Workload,
        create: bool = False,
        logs: StageResult | None = None,
    ) -> None:
        """Persist and publish the workload's current state, if configured to."""
        if self.repository is not None:
            try:
                if create:
                    await self.repository.create_workload(workload)
                else:
                    await self.repository.update_workload(
                        workload.id,
                        status=workload.status,
                        current_stage=workload.current_stage,
                        stages=workload.stages,
                        artifacts=workload.artifacts,
                        error=workload.error,
                        completed_at=workload.completed_at,
                    )
                if logs is not None:
                    entries = [LogEntry(stage=logs.stage, message=line) for line in logs.logs]
                    if logs.error:
                        entries.append(
                            LogEntry(stage=logs.stage, message=logs.error, level="error")
                        )
                    await self.repository.add_logs(workload.id, entries)
            except Exception as e:
                logger.error(f"Failed to persist workload {workload.id}: {e}", exc_info=True)

        if self.event_bus is not None:
            self.event_bus.publish(
                WorkloadUpdate(
                    workload_id=workload.id,
                    deployment_id=workload.deployment_id,
                    project_id=self.project_id,
                    current_stage=workload.current_stage,
                    status=workload.status,
                    stages=list(workload.stages),
                    updated_at=workload.updated_at.isoformat(),
                )
            )
