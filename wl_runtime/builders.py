"""
Image builders for cloned services.

Code generation is kept to fixed templates: a Dockerfile, a requirements
scaffold, a stub ``dataobject`` package and a small FastAPI shim that serves a
service's resource over HTTP. Nothing here knows about workload state; the
orchestrator hands in a directory and gets an image back.
"""

import json
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from string import Template

from .docker_client import BuildOptions, DockerClient

logger = logging.getLogger(__name__)

DEFAULT_PYTHON_BASE_IMAGE = "python:3.12-slim"
SERVICE_INTERNAL_PORT = 8000
SHIM_FILENAME = "workload_server.py"
SHIM_REQUIREMENTS = ("fastapi", "uvicorn")


@dataclass
class CopyInstruction:
    src: str
    dest: str


@dataclass
class DockerfileConfig:
    base_image: str
    workdir: str | None = None
    copy_files: list[CopyInstruction] = field(default_factory=list)
    run_commands: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    expose: list[int] = field(default_factory=list)
    entrypoint: list[str] = field(default_factory=list)
    cmd: list[str] = field(default_factory=list)


class DockerfileGenerator:
    @staticmethod
    def generate(config: DockerfileConfig) -> str:
        """Render a Dockerfile, one blank-line separated block per instruction kind."""
        blocks = [[f"FROM {config.base_image}"]]

        if config.workdir:
            blocks.append([f"WORKDIR {config.workdir}"])
        if config.copy_files:
            blocks.append([f"COPY {c.src} {c.dest}" for c in config.copy_files])
        if config.run_commands:
            blocks.append([f"RUN {cmd}" for cmd in config.run_commands])
        if config.env:
            blocks.append([f'ENV {key}="{value}"' for key, value in config.env.items()])
        if config.expose:
            blocks.append([f"EXPOSE {port}" for port in config.expose])

        final = []
        if config.entrypoint:
            final.append(f"ENTRYPOINT {json.dumps(config.entrypoint)}")
        if config.cmd:
            final.append(f"CMD {json.dumps(config.cmd)}")
        if final:
            blocks.append(final)

        return "\n\n".join("\n".join(block) for block in blocks) + "\n"

    @classmethod
    def generate_python_service(
        cls,
        command: list[str],
        port: int = SERVICE_INTERNAL_PORT,
        base_image: str = DEFAULT_PYTHON_BASE_IMAGE,
        env: dict[str, str] | None = None,
    ) -> str:
        """Dockerfile for a Python service that installs requirements.txt."""
        return cls.generate(
            DockerfileConfig(
                base_image=base_image,
                workdir="/app",
                copy_files=[CopyInstruction(".", ".")],
                run_commands=["pip install --no-cache-dir -r requirements.txt"],
                env=dict(env or {}),
                expose=[port],
                cmd=command,
            )
        )


@dataclass
class ServiceBuildConfig:
    workload_id: str
    entry_file: str  # Resource module, relative to the service directory
    port: int = SERVICE_INTERNAL_PORT


_SHIM_TEMPLATE = Template('''\
"""HTTP shim serving one resource module. Generated; do not edit."""

import importlib.util
import inspect
import os
import sys

import uvicorn
from fastapi import FastAPI, HTTPException, Request, Response

HERE = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, HERE)

spec = importlib.util.spec_from_file_location("resource_module", os.path.join(HERE, "$entry_file"))
resource_module = importlib.util.module_from_spec(spec)
spec.loader.exec_module(resource_module)

resource = getattr(resource_module, "resource", None) or getattr(resource_module, "default", None)
if resource is None:
    print("Could not find resource export in service", file=sys.stderr)
    sys.exit(1)

print("Starting server for resource:", getattr(resource, "name", "unknown"), flush=True)

app = FastAPI()


async def call(method, *args):
    result = method(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/$workload_id")
async def list_items(request: Request):
    try:
        return await call(resource.list, dict(request.query_params))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/$workload_id/{item_id}")
async def get_item(item_id: str):
    try:
        item = await call(resource.get, item_id)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    if item is None:
        raise HTTPException(status_code=404, detail="Not found")
    return item


@app.post("/api/$workload_id", status_code=201)
async def create_item(request: Request):
    try:
        return await call(resource.create, await request.json())
    except Exception as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.put("/api/$workload_id/{item_id}")
async def update_item(item_id: str, request: Request):
    try:
        return await call(resource.update, item_id, await request.json())
    except Exception as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.delete("/api/$workload_id/{item_id}", status_code=204)
async def delete_item(item_id: str):
    try:
        await call(resource.delete, item_id)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return Response(status_code=204)


if __name__ == "__main__":
    port = int(os.environ.get("PORT", "$port"))
    print(f"Server listening on port {port}", flush=True)
    uvicorn.run(app, host="0.0.0.0", port=port)
''')

_DATAOBJECT_STUB = '''\
"""In-memory stand-in for the dataobject library. Generated; do not edit."""

import uuid


class Resource:
    def __init__(self, name, schema=None, **options):
        self.name = name
        self.schema = schema
        self.options = options
        self._items = {}

    def list(self, query=None):
        return list(self._items.values())

    def get(self, item_id):
        return self._items.get(item_id)

    def create(self, data):
        if not data:
            raise ValueError("Validation failed: empty body")
        item = {"id": str(uuid.uuid4()), **data}
        self._items[item["id"]] = item
        return item

    def update(self, item_id, data):
        if item_id not in self._items:
            raise KeyError(item_id)
        self._items[item_id] = {**self._items[item_id], **data, "id": item_id}
        return self._items[item_id]

    def delete(self, item_id):
        self._items.pop(item_id, None)


def define_resource(name, schema=None, **options):
    return Resource(name, schema, **options)
'''


class ServiceBuilder:
    """
    Turns a cloned service directory into a runnable image.

    Args:
        client: Container runtime used for the image build
        base_image: Python base image for the generated Dockerfile
    """

    def __init__(self, client: DockerClient, base_image: str = DEFAULT_PYTHON_BASE_IMAGE):
        self.client = client
        self.base_image = base_image

    @staticmethod
    def image_name(workload_id: str) -> str:
        return f"workload-{workload_id}"

    async def build(
        self,
        service_path: Path,
        config: ServiceBuildConfig,
        on_progress: Callable[[str], None] | None = None,
    ) -> str:
        """
        Scaffold, generate and build. Returns the image ID.
        """
        self.ensure_requirements(service_path)
        self.ensure_dataobject_package(service_path)

        (service_path / SHIM_FILENAME).write_text(self.generate_shim(config), encoding="utf-8")
        (service_path / "Dockerfile").write_text(
            DockerfileGenerator.generate_python_service(
                ["python", SHIM_FILENAME], port=config.port, base_image=self.base_image
            ),
            encoding="utf-8",
        )

        tag = self.image_name(config.workload_id)
        logger.info(f"Building image {tag} from {service_path}")
        return await self.client.build_image(
            str(service_path), BuildOptions(tag=tag, on_progress=on_progress)
        )

    @staticmethod
    def generate_shim(config: ServiceBuildConfig) -> str:
        return _SHIM_TEMPLATE.substitute(
            workload_id=config.workload_id,
            entry_file=config.entry_file.replace(os.sep, "/"),
            port=config.port,
        )

    @staticmethod
    def ensure_requirements(service_path: Path) -> None:
        """Create requirements.txt, or add the shim's packages to an existing one."""
        path = service_path / "requirements.txt"

        if not path.exists():
            path.write_text("\n".join(SHIM_REQUIREMENTS) + "\n", encoding="utf-8")
            return

        lines = path.read_text(encoding="utf-8").splitlines()
        declared = {
            line.split("=")[0].split("<")[0].split(">")[0].split("[")[0].strip().lower()
            for line in lines
            if line.strip() and not line.lstrip().startswith("#")
        }
        missing = [pkg for pkg in SHIM_REQUIREMENTS if pkg not in declared]
        if missing:
            path.write_text("\n".join(lines + missing) + "\n", encoding="utf-8")

    @staticmethod
    def ensure_dataobject_package(service_path: Path) -> None:
        package = service_path / "dataobject"
        if package.exists() or (service_path / "dataobject.py").exists():
            return

        package.mkdir()
        (package / "__init__.py").write_text(_DATAOBJECT_STUB, encoding="utf-8")
