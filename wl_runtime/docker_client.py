"""
Container runtime client.

This module wraps the container engine operations used by the deployment
pipeline and the workload orchestrator. Container and image operations run
the docker CLI as subprocesses; the follow-mode log stream is read straight
from the Engine API over its unix socket, because only the API exposes the
raw multiplexed stdout/stderr frames.

Every failure surfaces as ContainerRuntimeError carrying the operation and the
container or image it targeted.
"""

import asyncio
import contextlib
import inspect as _inspect
import json
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from wl_common.errors import ContainerRuntimeError

from .log_stream import LogFrameDecoder

logger = logging.getLogger(__name__)

DEFAULT_DOCKER_SOCKET = "/var/run/docker.sock"

LineCallback = Callable[[str], Awaitable[None] | None]


@dataclass
class PortMapping:
    internal: int  # Port inside the container
    external: int  # Port on the host


@dataclass
class VolumeMount:
    host: str
    container: str
    read_only: bool = False


@dataclass
class ContainerConfig:
    """Everything needed to create a container."""

    name: str
    image: str
    env: dict[str, str] = field(default_factory=dict)
    ports: list[PortMapping] = field(default_factory=list)
    volumes: list[VolumeMount] = field(default_factory=list)
    work_dir: str | None = None
    cmd: list[str] = field(default_factory=list)
    entrypoint: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    network_mode: str | None = None
    memory: str | None = None  # e.g. "512m"
    cpus: str | None = None  # e.g. "0.5"


@dataclass
class ContainerState:
    running: bool = False
    paused: bool = False
    restarting: bool = False
    dead: bool = False
    exit_code: int | None = None
    error: str | None = None


@dataclass
class ContainerInfo:
    """Information about a container from the engine's perspective."""

    id: str
    name: str
    state: ContainerState
    image: str
    ports: list[PortMapping] = field(default_factory=list)

    @property
    def exit_code(self) -> int | None:
        return self.state.exit_code


@dataclass
class BuildOptions:
    tag: str
    dockerfile: str | None = None  # Relative to the build context
    build_args: dict[str, str] = field(default_factory=dict)
    on_progress: Callable[[str], None] | None = None


async def _maybe_await(result: Any) -> None:
    if _inspect.isawaitable(result):
        await result


class DockerClient:
    """
    Async container engine client.

    Args:
        socket_path: Engine API unix socket, used for log streaming
        docker_bin: docker CLI executable
        transport: Optional httpx transport for the Engine API (tests inject
            an ``httpx.MockTransport`` here)
    """

    def __init__(
        self,
        socket_path: str = DEFAULT_DOCKER_SOCKET,
        docker_bin: str = "docker",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.socket_path = socket_path
        self.docker_bin = docker_bin
        self._transport = transport

    async def _run(self, operation: str, target: str, *args: str) -> str:
        """
        Run one docker CLI command and return its stdout.

        Raises:
            ContainerRuntimeError: If the command cannot be run or exits non-zero
        """
        try:
            process = await asyncio.create_subprocess_exec(
                self.docker_bin,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ContainerRuntimeError(operation, target, str(e)) from e

        stdout, stderr = await process.communicate()

        if process.returncode != 0:
            raise ContainerRuntimeError(operation, target, stderr.decode().strip())

        return stdout.decode()

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    async def create(self, config: ContainerConfig) -> str:
        """
        Create (but don't start) a container.

        Returns:
            The new container's ID
        """
        args = ["create", "--name", config.name]

        for key, value in config.env.items():
            args += ["--env", f"{key}={value}"]
        for port in config.ports:
            args += ["--publish", f"{port.external}:{port.internal}"]
        for volume in config.volumes:
            mode = "ro" if volume.read_only else "rw"
            args += ["--volume", f"{volume.host}:{volume.container}:{mode}"]
        for key, value in config.labels.items():
            args += ["--label", f"{key}={value}"]
        if config.work_dir:
            args += ["--workdir", config.work_dir]
        if config.network_mode:
            args += ["--network", config.network_mode]
        if config.memory:
            args += ["--memory", config.memory]
        if config.cpus:
            args += ["--cpus", config.cpus]

        # The CLI takes a single entrypoint executable; its arguments go
        # ahead of the command
        command = list(config.cmd)
        if config.entrypoint:
            args += ["--entrypoint", config.entrypoint[0]]
            command = list(config.entrypoint[1:]) + command

        args.append(config.image)
        args += command

        stdout = await self._run("create container", config.name, *args)
        return stdout.strip()

    async def start(self, container_id: str) -> None:
        await self._run("start container", container_id, "start", container_id)

    async def stop(self, container_id: str, timeout: int = 10) -> None:
        """
        Stop a running container.

        Args:
            container_id: Container ID or name
            timeout: Seconds to wait before the engine kills the container
        """
        await self._run(
            "stop container", container_id, "stop", "--time", str(timeout), container_id
        )

    async def kill(self, container_id: str) -> None:
        await self._run("kill container", container_id, "kill", container_id)

    async def remove(self, container_id: str, force: bool = False) -> None:
        """
        Remove a container. A container that no longer exists is not an error.
        """
        args = ["rm"]
        if force:
            args.append("--force")
        args.append(container_id)

        try:
            await self._run("remove container", container_id, *args)
        except ContainerRuntimeError as e:
            # Ignore "already removed" errors
            if "No such container" not in str(e):
                raise

    async def inspect(self, container_id: str) -> ContainerInfo:
        """
        Get the current state of a container.

        Raises:
            ContainerRuntimeError: If the container does not exist or the
                engine output cannot be parsed
        """
        stdout = await self._run("inspect container", container_id, "inspect", container_id)

        try:
            data = json.loads(stdout)
            container = data[0]
            state = container["State"]

            ports = []
            for container_port, bindings in (
                container.get("NetworkSettings", {}).get("Ports") or {}
            ).items():
                internal = int(container_port.split("/")[0])
                for binding in bindings or []:
                    if binding.get("HostPort"):
                        ports.append(PortMapping(internal, int(binding["HostPort"])))

            return ContainerInfo(
                id=container["Id"],
                name=container["Name"].lstrip("/"),
                state=ContainerState(
                    running=bool(state.get("Running")),
                    paused=bool(state.get("Paused")),
                    restarting=bool(state.get("Restarting")),
                    dead=bool(state.get("Dead")),
                    exit_code=state.get("ExitCode"),
                    error=state.get("Error") or None,
                ),
                image=container.get("Image", ""),
                ports=ports,
            )
        except (json.JSONDecodeError, KeyError, IndexError, ValueError) as e:
            raise ContainerRuntimeError(
                "inspect container", container_id, f"unexpected engine output: {e}"
            ) from e

    async def logs(self, container_id: str) -> str:
        """Get everything a container has written to stdout and stderr so far."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.docker_bin,
                "logs",
                container_id,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ContainerRuntimeError("get logs for", container_id, str(e)) from e

        stdout, stderr = await process.communicate()

        if process.returncode != 0:
            raise ContainerRuntimeError("get logs for", container_id, stderr.decode().strip())

        # docker logs replays the container's stderr on its own stderr
        return stdout.decode() + stderr.decode()

    async def stream_logs(
        self,
        container_id: str,
        on_line: LineCallback,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        """
        Follow a container's log stream until it ends or is cancelled.

        Each non-empty frame payload is passed to ``on_line``. Setting
        ``cancel_event`` stops the stream immediately and returns normally.
        """
        reader = asyncio.create_task(self._read_log_stream(container_id, on_line))

        if cancel_event is None:
            await reader
            return

        waiter = asyncio.create_task(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {reader, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            reader.cancel()
            waiter.cancel()
            raise

        if reader in done:
            waiter.cancel()
            reader.result()
            return

        reader.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reader

    async def _read_log_stream(self, container_id: str, on_line: LineCallback) -> None:
        decoder = LogFrameDecoder()
        transport = self._transport or httpx.AsyncHTTPTransport(uds=self.socket_path)

        try:
            async with httpx.AsyncClient(
                transport=transport, base_url="http://docker", timeout=None
            ) as client:
                async with client.stream(
                    "GET",
                    f"/containers/{container_id}/logs",
                    params={"follow": "1", "stdout": "1", "stderr": "1"},
                ) as response:
                    if response.status_code != 200:
                        body = await response.aread()
                        raise ContainerRuntimeError(
                            "stream logs for",
                            container_id,
                            body.decode(errors="replace").strip()
                            or f"HTTP {response.status_code}",
                        )

                    async for chunk in response.aiter_bytes():
                        for line in decoder.feed(chunk):
                            await _maybe_await(on_line(line))
        except httpx.HTTPError as e:
            raise ContainerRuntimeError("stream logs for", container_id, str(e)) from e

    def monitor(
        self,
        container_id: str,
        on_state: Callable[[ContainerState], Awaitable[None] | None],
        interval: float = 5.0,
    ) -> Callable[[], None]:
        """
        Poll a container until it stops running.

        ``on_state`` receives every observed state. Polling ends after the
        first non-running state; an inspect failure is reported as a dead
        state carrying the error. Must be called from a running event loop.

        Returns:
            A function that stops the polling
        """
        stopped = False

        async def poll() -> None:
            nonlocal stopped
            while not stopped:
                await asyncio.sleep(interval)
                if stopped:
                    return

                try:
                    info = await self.inspect(container_id)
                    state = info.state
                except ContainerRuntimeError as e:
                    state = ContainerState(dead=True, error=str(e))

                if not state.running:
                    stopped = True

                try:
                    await _maybe_await(on_state(state))
                except Exception as e:
                    logger.error(
                        f"Monitor callback failed for container {container_id}: {e}",
                        exc_info=True,
                    )

        task = asyncio.create_task(poll())

        def cancel() -> None:
            nonlocal stopped
            stopped = True
            # The callback itself may cancel; don't interrupt it mid-flight
            if not task.done() and task is not asyncio.current_task():
                task.cancel()

        return cancel

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def build_image(self, context: str, options: BuildOptions) -> str:
        """
        Build an image from a directory.

        Build output is passed line by line to ``options.on_progress``.

        Returns:
            The built image's ID
        """
        args = [self.docker_bin, "build", "--tag", options.tag]
        if options.dockerfile:
            args += ["--file", os.path.join(context, options.dockerfile)]
        for key, value in options.build_args.items():
            args += ["--build-arg", f"{key}={value}"]
        args.append(context)

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise ContainerRuntimeError("build image", options.tag, str(e)) from e

        assert process.stdout is not None

        output: list[str] = []
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            text = line.decode(errors="replace").rstrip()
            if not text:
                continue
            output.append(text)
            if options.on_progress:
                options.on_progress(text)

        await process.wait()

        if process.returncode != 0:
            detail = "\n".join(output[-5:]) or f"exit code {process.returncode}"
            raise ContainerRuntimeError("build image", options.tag, detail)

        stdout = await self._run(
            "inspect image", options.tag, "image", "inspect", "--format", "{{.Id}}", options.tag
        )
        return stdout.strip() or options.tag

    async def pull_image(self, name: str) -> None:
        await self._run("pull image", name, "pull", name)

    async def remove_image(self, name: str, force: bool = False) -> None:
        args = ["rmi"]
        if force:
            args.append("--force")
        args.append(name)
        await self._run("remove image", name, *args)
