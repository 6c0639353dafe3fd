"""
Exception taxonomy for workload deployment and orchestration.

Stage failures raised inside the deployment pipeline are converted into
failed StageResults and never escape ``Deployer.deploy_workload``. The
remaining errors propagate to imperative callers (orchestrator, HTTP layer).
"""


class WorkloadError(Exception):
    """Base class for every error raised by this project."""


# ============================================================================
# Pipeline stage failures
# ============================================================================


class StageExecutionError(WorkloadError):
    """A pipeline stage failed; the message becomes the StageResult error."""


class ValidationFailedError(StageExecutionError):
    """Handler validation reported one or more fatal errors."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class UnknownModuleTypeError(ValidationFailedError):
    """No handler is registered for the module type."""

    def __init__(self, module_type: str):
        self.module_type = module_type
        super().__init__([f"Unknown module type: {module_type}"])


class UnsupportedTargetError(StageExecutionError):
    """The deploy target type is not supported."""

    def __init__(self, target_type: str):
        self.target_type = target_type
        super().__init__(f"Unsupported target type: {target_type}")


class HealthcheckExhaustedError(StageExecutionError):
    """Every healthcheck attempt failed."""

    def __init__(self):
        super().__init__("Healthcheck failed after all retries")


class FailedTestsError(StageExecutionError):
    """One or more post-deployment tests failed."""

    def __init__(self, failures: list[str]):
        self.failures = list(failures)
        super().__init__(
            f"{len(self.failures)} test(s) failed: {', '.join(self.failures)}"
        )


# ============================================================================
# Container runtime failures
# ============================================================================


class ContainerRuntimeError(WorkloadError, RuntimeError):
    """Wraps a container engine failure with the operation and its target."""

    def __init__(self, operation: str, target: str, message: str):
        self.operation = operation
        self.target = target
        super().__init__(f"Failed to {operation} {target}: {message}")


class ContainerExitedError(WorkloadError):
    """A container died or exited non-zero while waiting for it."""

    def __init__(self, container_id: str, exit_code: int | None):
        self.container_id = container_id
        self.exit_code = exit_code
        super().__init__(
            f"Container {container_id} died with exit code {exit_code}"
        )


class ContainerReadyTimeoutError(WorkloadError, TimeoutError):
    """A container did not report running in time."""


# ============================================================================
# Orchestrator failures
# ============================================================================


class PortPoolExhaustedError(WorkloadError):
    """No port left in the pool."""

    def __init__(self):
        super().__init__("No available ports")


class WorkloadNotFoundError(WorkloadError, LookupError):
    def __init__(self, workload_id: str):
        self.workload_id = workload_id
        super().__init__(f"Workload {workload_id} not found")


class DeploymentNotFoundError(WorkloadError, LookupError):
    def __init__(self, deployment_id: str):
        self.deployment_id = deployment_id
        super().__init__(f"Deployment {deployment_id} not found")


class WorkloadNotRunningError(WorkloadError):
    def __init__(self, workload_id: str):
        self.workload_id = workload_id
        super().__init__(f"Workload {workload_id} is not running")


class WorkloadAlreadyRunningError(WorkloadError):
    def __init__(self, workload_id: str):
        self.workload_id = workload_id
        super().__init__(f"Workload {workload_id} is already running")


class OperationInProgressError(WorkloadError):
    def __init__(self, workload_id: str):
        self.workload_id = workload_id
        super().__init__(f"Operation already in progress for workload {workload_id}")


class RepositoryCloneError(WorkloadError):
    """git clone failed."""


class ServiceLayoutError(WorkloadError):
    """The cloned repository does not contain the expected service files."""
