"""
Data models for module definitions, workloads and deployments.

These models represent the domain objects used throughout the application,
independent of the underlying storage mechanism. Module definitions use the
camelCase JSON file format; everything serialized by ``to_dict`` is
snake_case.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

WorkloadStatus = Literal[
    "pending", "running", "success", "failed", "rolledback", "stopped"
]
StageStatus = Literal["pending", "running", "success", "failed", "skipped"]
LogLevel = Literal["info", "warn", "error"]


def utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ============================================================================
# Module definitions
# ============================================================================


@dataclass
class HealthcheckConfig:
    """HTTP healthcheck settings. ``interval`` and ``timeout`` are milliseconds."""

    path: str = "/health"
    interval: int = 1000
    timeout: int = 5000
    retries: int = 10

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HealthcheckConfig":
        defaults = cls()
        return cls(
            path=data.get("path") or defaults.path,
            interval=int(data.get("interval") or defaults.interval),
            timeout=int(data.get("timeout") or defaults.timeout),
            retries=int(data.get("retries") or defaults.retries),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "interval": self.interval,
            "timeout": self.timeout,
            "retries": self.retries,
        }


@dataclass
class BuildConfig:
    dockerfile: str | None = None
    context: str | None = None
    build_args: dict[str, str] = field(default_factory=dict)


@dataclass
class RuntimeConfig:
    port: int | None = None
    env: dict[str, str] = field(default_factory=dict)
    healthcheck: HealthcheckConfig | None = None
    resources: dict[str, str] = field(default_factory=dict)  # memory / cpu limits


@dataclass(frozen=True)
class ModuleDefinition:
    """
    A versioned, typed unit of deployable work.

    Frozen: a pipeline run never mutates the definition it was given.
    """

    id: str
    name: str
    version: str
    type: str  # Key into the module type registry
    source_dir: str | None = None
    build: BuildConfig = field(default_factory=BuildConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    config: dict[str, Any] = field(default_factory=dict)  # Handler-specific

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModuleDefinition":
        """Create a module definition from the JSON module file format."""
        build = data.get("build") or {}
        runtime = data.get("runtime") or {}
        healthcheck = runtime.get("healthcheck")

        return cls(
            id=data["id"],
            name=data["name"],
            version=str(data["version"]),
            type=data["type"],
            source_dir=data.get("sourceDir"),
            build=BuildConfig(
                dockerfile=build.get("dockerfile"),
                context=build.get("context"),
                build_args=dict(build.get("buildArgs") or {}),
            ),
            runtime=RuntimeConfig(
                port=runtime.get("port"),
                env={k: str(v) for k, v in (runtime.get("env") or {}).items()},
                healthcheck=HealthcheckConfig.from_dict(healthcheck)
                if healthcheck
                else None,
                resources=dict(runtime.get("resources") or {}),
            ),
            config=dict(data.get("config") or {}),
        )


# ============================================================================
# Post-deployment tests
# ============================================================================


@dataclass
class TestExpectation:
    __test__ = False

    status: int | None = None
    body_contains: str | None = None


@dataclass
class HttpTestConfig:
    method: str
    path: str  # Absolute URL
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    expect: TestExpectation = field(default_factory=TestExpectation)


@dataclass
class TestDefinition:
    """A check run against a deployed workload. Only "http" tests are executed."""

    __test__ = False

    name: str
    type: str
    config: HttpTestConfig


# ============================================================================
# Workloads
# ============================================================================


@dataclass
class WorkloadTarget:
    type: str  # "docker-local" is the only implemented target
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "config": dict(self.config)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkloadTarget":
        return cls(type=data["type"], config=dict(data.get("config") or {}))


@dataclass
class WorkloadArtifacts:
    image_id: str | None = None
    image_name: str | None = None
    container_id: str | None = None
    container_name: str | None = None
    port: int | None = None
    url: str | None = None

    def update(self, **values: Any) -> None:
        for key, value in values.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown artifact: {key}")
            setattr(self, key, value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "image_id": self.image_id,
            "image_name": self.image_name,
            "container_id": self.container_id,
            "container_name": self.container_name,
            "port": self.port,
            "url": self.url,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkloadArtifacts":
        return cls(**{k: data.get(k) for k in cls().to_dict()})


@dataclass
class StageResult:
    """Outcome of one executed stage."""

    stage: str
    status: StageStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration: int | None = None  # Milliseconds
    logs: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "stage": self.stage,
            "status": self.status,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration": self.duration,
            "logs": list(self.logs),
        }
        if self.error is not None:
            result["error"] = self.error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StageResult":
        return cls(
            stage=data["stage"],
            status=data["status"],
            started_at=_parse_iso(data.get("started_at")),
            completed_at=_parse_iso(data.get("completed_at")),
            duration=data.get("duration"),
            logs=list(data.get("logs") or []),
            error=data.get("error"),
        )


@dataclass
class LogEntry:
    """A single orchestrator log line, tagged with the stage that produced it."""

    stage: str
    message: str
    level: LogLevel = "info"
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "stage": self.stage,
            "message": self.message,
            "level": self.level,
        }


@dataclass
class Workload:
    """
    A persisted record of one deployment/run attempt.

    ``stages`` is append-only: one entry per executed stage, in order. Once a
    failed StageResult is appended, nothing else is appended and the status
    becomes "failed".
    """

    id: str
    deployment_id: str
    module_id: str | None = None
    module_name: str | None = None
    module_type: str | None = None
    service_path: str | None = None  # Service subdirectory inside the repo
    repo_url: str | None = None
    status: WorkloadStatus = "pending"
    current_stage: str = "pending"
    stages: list[StageResult] = field(default_factory=list)
    target: WorkloadTarget | None = None
    artifacts: WorkloadArtifacts = field(default_factory=WorkloadArtifacts)
    error: str | None = None
    logs: list[LogEntry] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert workload to dictionary format (for API responses)."""
        return {
            "id": self.id,
            "deployment_id": self.deployment_id,
            "module_id": self.module_id,
            "module_name": self.module_name,
            "module_type": self.module_type,
            "service_path": self.service_path,
            "repo_url": self.repo_url,
            "status": self.status,
            "current_stage": self.current_stage,
            "stages": [stage.to_dict() for stage in self.stages],
            "target": self.target.to_dict() if self.target else None,
            "artifacts": self.artifacts.to_dict(),
            "error": self.error,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
        }

    def to_summary_dict(self) -> dict[str, Any]:
        """Convert workload to summary format (for listings)."""
        return {
            "id": self.id,
            "deployment_id": self.deployment_id,
            "status": self.status,
            "current_stage": self.current_stage,
            "port": self.artifacts.port,
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class Deployment:
    """A group of workloads deployed together for a project."""

    id: str
    project_id: str
    name: str
    service_path: str | None = None
    status: str = "active"  # "active", "inactive" or "archived"
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "service_path": self.service_path,
            "status": self.status,
            "created_at": _iso(self.created_at),
        }
