"""
Workload deployment pipeline.

Module type handlers, their registry and the Deployer that runs a module
through validate, build, deploy, healthcheck, test and complete.
"""

from .deployer import STAGES, Deployer
from .handlers import ApiResourceHandler
from .module_types import (
    BuildResult,
    DeployResult,
    ModuleTypeHandler,
    ModuleTypeRegistry,
    ValidationResult,
)


def create_default_registry() -> ModuleTypeRegistry:
    """Registry with every built-in module type handler."""
    return ModuleTypeRegistry([ApiResourceHandler()])


__all__ = [
    "STAGES",
    "ApiResourceHandler",
    "BuildResult",
    "DeployResult",
    "Deployer",
    "ModuleTypeHandler",
    "ModuleTypeRegistry",
    "ValidationResult",
    "create_default_registry",
]
