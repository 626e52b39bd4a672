"""Dynamic TCP port allocation.

Ports come from binding to port 0 and letting the OS choose. The socket is
released before the port is handed out, so another process can grab it
between allocation and the spawned service's own bind. Re-validating and
retrying narrows that window; nothing closes it.
"""

from __future__ import annotations

import logging
import socket
import time
from typing import Iterable, List

from .config import DEFAULT_PORT_RETRIES, DEFAULT_PORT_RETRY_DELAY


logger = logging.getLogger(__name__)


class AllocationError(RuntimeError):
    """Raised when no usable port could be found within the configured retries."""


def is_port_available(port: int, host: str = "") -> bool:
    """Check if a port can be bound right now.

    Args:
        port: Port number to check.
        host: Interface to bind; empty string means all interfaces.

    Returns:
        True if a bind on the port succeeded.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def _ephemeral_port(host: str = "") -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, 0))
        sock.listen(1)
        return sock.getsockname()[1]


class PortAllocator:
    """Hands out ephemeral ports with bounded retry."""

    def __init__(
        self,
        retries: int = DEFAULT_PORT_RETRIES,
        retry_delay: float = DEFAULT_PORT_RETRY_DELAY,
        host: str = "",
    ):
        """Initialize port allocator.

        Args:
            retries: Maximum number of allocation attempts.
            retry_delay: Seconds to sleep between attempts.
            host: Interface to bind while allocating.
        """
        if retries < 1:
            raise ValueError("retries must be at least 1")
        self.retries = retries
        self.retry_delay = retry_delay
        self.host = host

    def allocate(self, exclude: Iterable[int] = ()) -> int:
        """Allocate a port that is bindable at the moment of return.

        Args:
            exclude: Ports that must not be returned (e.g. already handed
                out to a sibling process).

        Returns:
            The port number.

        Raises:
            AllocationError: If every attempt failed.
        """
        excluded = set(exclude)

        for attempt in range(1, self.retries + 1):
            try:
                port = _ephemeral_port(self.host)
            except OSError as e:
                logger.warning("Port allocation attempt %d failed: %s", attempt, e)
            else:
                if port not in excluded and is_port_available(port, self.host):
                    logger.debug("Allocated port %d on attempt %d", port, attempt)
                    return port
                logger.debug("Port %d rejected on attempt %d", port, attempt)

            if attempt < self.retries:
                time.sleep(self.retry_delay)

        raise AllocationError(f"Failed to allocate port after {self.retries} retries")

    def allocate_many(self, count: int) -> List[int]:
        """Allocate `count` distinct ports."""
        ports: List[int] = []
        for _ in range(count):
            ports.append(self.allocate(exclude=ports))
        return ports


def find_available_port(retries: int = DEFAULT_PORT_RETRIES) -> int:
    """Allocate a single port with the default retry policy."""
    return PortAllocator(retries=retries).allocate()
