"""
Typed events and an in-process publish/subscribe bus.

Pipeline events (``PipelineEvent`` subclasses) are delivered to a Deployer's
``on_event`` callback. Bus events (``WorkloadUpdate``, ``DeploymentDeleted``)
are published on an ``EventBus`` instance that is constructed by the process
entry point and handed to the orchestrator and its consumers.
"""

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar, TypeVar

from .models import StageResult

logger = logging.getLogger(__name__)


# ============================================================================
# Pipeline events
# ============================================================================


@dataclass
class PipelineEvent:
    type: ClassVar[str]
    workload_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "workload_id": self.workload_id}


@dataclass
class StageStartEvent(PipelineEvent):
    type: ClassVar[str] = "stage-start"
    stage: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "stage": self.stage}


@dataclass
class LogEvent(PipelineEvent):
    type: ClassVar[str] = "log"
    stage: str = ""
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "stage": self.stage, "message": self.message}


@dataclass
class StageCompleteEvent(PipelineEvent):
    type: ClassVar[str] = "stage-complete"
    stage: str = ""
    result: StageResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "stage": self.stage,
            "result": self.result.to_dict() if self.result else None,
        }


@dataclass
class ArtifactEvent(PipelineEvent):
    type: ClassVar[str] = "artifact"
    key: str = ""
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "key": self.key, "value": self.value}


@dataclass
class CheckStartEvent(PipelineEvent):
    """A post-deployment test started."""

    type: ClassVar[str] = "test-start"
    test: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "test": self.test}


@dataclass
class CheckCompleteEvent(PipelineEvent):
    """A post-deployment test finished."""

    type: ClassVar[str] = "test-complete"
    test: str = ""
    passed: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result = {**super().to_dict(), "test": self.test, "passed": self.passed}
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class WorkloadCompleteEvent(PipelineEvent):
    type: ClassVar[str] = "workload-complete"
    status: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "status": self.status}


# ============================================================================
# Bus events
# ============================================================================


@dataclass
class WorkloadUpdate:
    type: ClassVar[str] = "workload-update"

    workload_id: str
    deployment_id: str
    project_id: str
    current_stage: str
    status: str
    stages: list[StageResult] = field(default_factory=list)
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "workload_id": self.workload_id,
            "deployment_id": self.deployment_id,
            "project_id": self.project_id,
            "current_stage": self.current_stage,
            "status": self.status,
            "stages": [stage.to_dict() for stage in self.stages],
            "updated_at": self.updated_at,
        }


@dataclass
class DeploymentDeleted:
    type: ClassVar[str] = "deployment-deleted"

    deployment_id: str
    project_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "deployment_id": self.deployment_id,
            "project_id": self.project_id,
        }


BusEvent = WorkloadUpdate | DeploymentDeleted
E = TypeVar("E", WorkloadUpdate, DeploymentDeleted)


class EventBus:
    """
    Synchronous fan-out publish/subscribe keyed by event class.

    A subscriber that raises is logged and skipped; the remaining subscribers
    still receive the event.
    """

    def __init__(self):
        self._subscribers: dict[type, list[Callable[[Any], None]]] = defaultdict(list)

    def subscribe(self, event_type: type[E], callback: Callable[[E], None]) -> None:
        self._subscribers[event_type].append(callback)

    def unsubscribe(self, event_type: type[E], callback: Callable[[E], None]) -> None:
        try:
            self._subscribers[event_type].remove(callback)
        except ValueError:
            pass

    def subscriber_count(self, event_type: type) -> int:
        return len(self._subscribers[event_type])

    def publish(self, event: BusEvent) -> None:
        # Snapshot so callbacks may unsubscribe themselves
        for callback in list(self._subscribers[type(event)]):
            try:
                callback(event)
            except Exception as e:
                logger.error(
                    f"Event subscriber failed handling {event.type}: {e}",
                    exc_info=True,
                )
