"""
Host port allocation for running workloads.
"""

import logging
from collections.abc import Iterable

from wl_common.errors import PortPoolExhaustedError

logger = logging.getLogger(__name__)


class PortPool:
    """
    A fixed range of host ports handed out to running workloads.

    ``assign`` takes the lowest free port and marks it used in one synchronous
    step, so two coroutines can never be handed the same port. ``release``
    is idempotent: releasing a port that is not assigned is a no-op and
    returns False.
    """

    def __init__(self, min_port: int, max_port: int, reserved: Iterable[int] = ()):
        if min_port > max_port:
            raise ValueError(f"Invalid port range: {min_port}-{max_port}")

        self.min_port = min_port
        self.max_port = max_port
        self._available = set(range(min_port, max_port + 1)) - set(reserved)
        self._assigned: set[int] = set()

    def assign(self) -> int:
        """
        Take the next free port.

        Raises:
            PortPoolExhaustedError: If every port is assigned
        """
        if not self._available:
            raise PortPoolExhaustedError()

        port = min(self._available)
        self._available.remove(port)
        self._assigned.add(port)
        logger.debug(f"Assigned port {port}")
        return port

    def release(self, port: int) -> bool:
        """Return a port to the pool. Returns False if it was not assigned."""
        if port not in self._assigned:
            return False

        self._assigned.remove(port)
        self._available.add(port)
        logger.debug(f"Released port {port}")
        return True

    def is_available(self, port: int) -> bool:
        return port in self._available

    def is_assigned(self, port: int) -> bool:
        return port in self._assigned

    @property
    def available_count(self) -> int:
        return len(self._available)

    @property
    def assigned_count(self) -> int:
        return len(self._assigned)
