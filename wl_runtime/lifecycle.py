"""
Container lifecycle policies built on top of the DockerClient.

Graceful stop with a kill fallback, restart, best-effort cleanup and
polling until a container reports running.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field

from wl_common.errors import (
    ContainerExitedError,
    ContainerReadyTimeoutError,
    ContainerRuntimeError,
)
from wl_common.models import HealthcheckConfig

from .docker_client import ContainerConfig, DockerClient

logger = logging.getLogger(__name__)

GRACEFUL_STOP_TIMEOUT = 10  # seconds
CLEANUP_STOP_TIMEOUT = 5  # seconds

READY_INTERVAL_MS = 1000
READY_TIMEOUT_MS = 30000
READY_RETRIES = 30


@dataclass
class CleanupReport:
    """Outcome of a cleanup. ``warnings`` lists the failures that were tolerated."""

    container_id: str
    warnings: list[str] = field(default_factory=list)


class ContainerLifecycle:
    def __init__(self, client: DockerClient):
        self.client = client

    async def create(self, config: ContainerConfig) -> str:
        return await self.client.create(config)

    async def start(self, container_id: str) -> None:
        await self.client.start(container_id)

    async def stop(self, container_id: str, graceful: bool = True) -> None:
        """
        Stop a container.

        A graceful stop gives the container 10 seconds and falls back to a
        kill; a failure of that fallback is logged, not raised. A non-graceful
        stop kills right away and raises on failure.
        """
        if not graceful:
            await self.client.kill(container_id)
            return

        try:
            await self.client.stop(container_id, GRACEFUL_STOP_TIMEOUT)
        except ContainerRuntimeError as e:
            logger.warning(f"Graceful stop failed, killing container: {e}")
            try:
                await self.client.kill(container_id)
            except ContainerRuntimeError as kill_error:
                logger.warning(f"Kill fallback failed: {kill_error}")

    async def restart(self, container_id: str) -> None:
        await self.stop(container_id, graceful=True)
        await self.start(container_id)

    async def cleanup(self, container_id: str) -> CleanupReport:
        """
        Stop and remove a container.

        The stop is best effort (the container may already have exited) and
        is reported in the returned warnings.

        Raises:
            ContainerRuntimeError: If the container cannot be removed
        """
        report = CleanupReport(container_id)

        try:
            await self.client.stop(container_id, CLEANUP_STOP_TIMEOUT)
        except ContainerRuntimeError as e:
            report.warnings.append(str(e))

        await self.client.remove(container_id, force=True)
        return report

    async def wait_for_ready(
        self, container_id: str, healthcheck: HealthcheckConfig | None = None
    ) -> None:
        """
        Poll a container until it is running.

        Uses the healthcheck's interval/timeout/retries when given, otherwise
        1000ms / 30000ms / 30 attempts.

        Raises:
            ContainerExitedError: If the container is dead or exited non-zero
            ContainerReadyTimeoutError: If the timeout or the retries run out
        """
        interval = (healthcheck.interval if healthcheck else 0) or READY_INTERVAL_MS
        timeout = (healthcheck.timeout if healthcheck else 0) or READY_TIMEOUT_MS
        retries = (healthcheck.retries if healthcheck else 0) or READY_RETRIES

        started = time.monotonic()

        for _ in range(retries):
            if (time.monotonic() - started) * 1000 > timeout:
                raise ContainerReadyTimeoutError(
                    f"Container {container_id} did not become ready within {timeout}ms"
                )

            try:
                info = await self.client.inspect(container_id)
            except ContainerRuntimeError as e:
                # The container may not be visible yet; keep polling
                logger.debug(f"Inspect failed while waiting for {container_id}: {e}")
            else:
                state = info.state
                if state.running:
                    return
                if state.dead or (state.exit_code is not None and state.exit_code != 0):
                    raise ContainerExitedError(container_id, state.exit_code)

            await asyncio.sleep(interval / 1000)

        raise ContainerReadyTimeoutError(
            f"Container {container_id} did not become ready after {retries} attempts"
        )
