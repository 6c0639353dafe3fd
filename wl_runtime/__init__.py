"""
Container runtime layer.

Wraps the container engine (docker CLI plus the Engine API log stream) and
the host-side resources workloads need: lifecycle policies, a host port
pool, git checkouts and generated service images.
"""

from .docker_client import (
    BuildOptions,
    ContainerConfig,
    ContainerInfo,
    ContainerState,
    DockerClient,
    PortMapping,
)
from .lifecycle import CleanupReport, ContainerLifecycle
from .log_stream import LogFrameDecoder
from .port_pool import PortPool

__all__ = [
    "BuildOptions",
    "CleanupReport",
    "ContainerConfig",
    "ContainerInfo",
    "ContainerLifecycle",
    "ContainerState",
    "DockerClient",
    "LogFrameDecoder",
    "PortMapping",
    "PortPool",
]
