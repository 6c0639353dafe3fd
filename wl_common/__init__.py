"""
Workload common module.

This module contains shared domain models, errors, the event bus and the
repository interface used across the workload components (runtime, deployer,
orchestrator, persistence, server).

The common module has no dependencies on other wl_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .events import DeploymentDeleted, EventBus, WorkloadUpdate
from .models import Deployment, LogEntry, ModuleDefinition, StageResult, Workload
from .repository import WorkloadRepository

__all__ = [
    "Deployment",
    "DeploymentDeleted",
    "EventBus",
    "LogEntry",
    "ModuleDefinition",
    "StageResult",
    "Workload",
    "WorkloadRepository",
    "WorkloadUpdate",
]
