"""
Handler for "api-resource" modules: HTTP services exposing CRUD resources.

Module config:
    resources: Resource names the module exposes, e.g. ["brand", "product"]
    basePath: Prefix in front of every resource path (default "")
"""

from wl_common.models import (
    HttpTestConfig,
    ModuleDefinition,
    TestDefinition,
    TestExpectation,
    WorkloadArtifacts,
)
from wl_runtime.builders import DockerfileGenerator

from ..module_types import ModuleTypeHandler, ValidationResult

DEFAULT_PORT = 3000


class ApiResourceHandler(ModuleTypeHandler):
    type = "api-resource"

    async def validate(self, module: ModuleDefinition) -> ValidationResult:
        errors = []
        warnings = []

        if not module.config.get("resources"):
            errors.append("api-resource module must define at least one resource")

        if not module.source_dir:
            errors.append("sourceDir is required")

        if not module.runtime.port:
            warnings.append(f"No port specified, defaulting to {DEFAULT_PORT}")

        if not module.runtime.healthcheck:
            warnings.append("No healthcheck configured, defaulting to /health")

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def generate_dockerfile(self, module: ModuleDefinition) -> str:
        port = module.runtime.port or DEFAULT_PORT
        entry = module.config.get("entry", "main.py")
        return "# Generated Dockerfile for api-resource module\n" + (
            DockerfileGenerator.generate_python_service(
                ["python", entry], port=port, env={"PORT": str(port)}
            )
        )

    def get_tests(
        self, module: ModuleDefinition, artifacts: WorkloadArtifacts
    ) -> list[TestDefinition]:
        base_url = artifacts.url or (
            f"http://localhost:{artifacts.port or module.runtime.port or DEFAULT_PORT}"
        )
        base_path = module.config.get("basePath", "")

        tests = [
            TestDefinition(
                name="Health check",
                type="http",
                config=HttpTestConfig(
                    method="GET",
                    path=f"{base_url}/health",
                    expect=TestExpectation(status=200),
                ),
            )
        ]

        for resource in module.config.get("resources", []):
            resource_path = f"{base_url}{base_path}/{resource}s"

            tests.append(
                TestDefinition(
                    name=f"List {resource}s",
                    type="http",
                    config=HttpTestConfig(
                        method="GET",
                        path=resource_path,
                        expect=TestExpectation(status=200),
                    ),
                )
            )

            # An empty body must be rejected by the resource's validation
            tests.append(
                TestDefinition(
                    name=f"Create {resource} returns proper format",
                    type="http",
                    config=HttpTestConfig(
                        method="POST",
                        path=resource_path,
                        headers={"Content-Type": "application/json"},
                        body={},
                        expect=TestExpectation(status=400),
                    ),
                )
            )

        return tests
