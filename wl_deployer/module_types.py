"""
Module type handlers and their registry.

Each module type plugs validation, test generation and optional custom
build/deploy logic into the deployment pipeline. The registry is a plain
object owned by whoever builds the Deployer; there is no global registry.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from wl_common.models import (
    ModuleDefinition,
    TestDefinition,
    WorkloadArtifacts,
    WorkloadTarget,
)

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class BuildResult:
    """Outcome of a handler's custom build. ``artifacts`` are merged into the workload's."""

    success: bool
    artifacts: dict[str, Any] = field(default_factory=dict)
    logs: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class DeployResult:
    """Outcome of a handler's custom deploy. ``artifacts`` are merged into the workload's."""

    success: bool
    artifacts: dict[str, Any] = field(default_factory=dict)
    logs: list[str] = field(default_factory=list)
    error: str | None = None


class ModuleTypeHandler(ABC):
    """
    Per-module-type pipeline logic.

    Subclasses set ``type`` and implement ``validate`` and ``get_tests``.
    ``build`` and ``deploy`` return None to let the pipeline use its generic
    behaviour.
    """

    type: str

    @abstractmethod
    async def validate(self, module: ModuleDefinition) -> ValidationResult:
        """Check a module definition before anything is built or deployed."""

    def generate_dockerfile(self, module: ModuleDefinition) -> str | None:
        """Dockerfile for modules that don't ship one, or None if unsupported."""
        return None

    @abstractmethod
    def get_tests(
        self, module: ModuleDefinition, artifacts: WorkloadArtifacts
    ) -> list[TestDefinition]:
        """Checks to run against the deployed workload."""

    async def build(
        self, module: ModuleDefinition, target: WorkloadTarget
    ) -> BuildResult | None:
        return None

    async def deploy(
        self,
        module: ModuleDefinition,
        target: WorkloadTarget,
        artifacts: WorkloadArtifacts,
    ) -> DeployResult | None:
        return None


class ModuleTypeRegistry:
    """Lookup from module type identifier to handler."""

    def __init__(self, handlers: list[ModuleTypeHandler] | None = None):
        self._handlers: dict[str, ModuleTypeHandler] = {}
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: ModuleTypeHandler) -> None:
        if handler.type in self._handlers:
            logger.warning(f"Replacing handler for module type {handler.type}")
        self._handlers[handler.type] = handler

    def get(self, module_type: str) -> ModuleTypeHandler | None:
        return self._handlers.get(module_type)

    def list_types(self) -> list[str]:
        return list(self._handlers)

    def __contains__(self, module_type: object) -> bool:
        return module_type in self._handlers
