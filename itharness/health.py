"""Deadline-bounded readiness probes.

Both probes block the calling thread. They report pass/fail only; the
process log file is where a failed start gets diagnosed.
"""

from __future__ import annotations

import logging
import socket
import time
from typing import Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .config import DEFAULT_HEALTH_INTERVAL


logger = logging.getLogger(__name__)

HealthCheck = Callable[[float], bool]

# Per-attempt bounds (seconds)
HTTP_REQUEST_TIMEOUT = 5.0
TCP_CONNECT_TIMEOUT = 1.0


def wait_until(
    predicate: Callable[[], bool],
    deadline: float,
    interval: float = DEFAULT_HEALTH_INTERVAL,
) -> bool:
    """Poll `predicate` until it returns True or `deadline` passes.

    Args:
        predicate: Zero-argument check. Exceptions count as False.
        deadline: Absolute time on the time.monotonic() clock.
        interval: Seconds between attempts.

    Returns:
        True if the predicate passed before the deadline.
    """
    while True:
        try:
            if predicate():
                return True
        except Exception as e:
            logger.debug("Probe raised %s: %s", type(e).__name__, e)

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        time.sleep(min(interval, remaining))


def _remaining(deadline: float, cap: float) -> float:
    return max(0.05, min(cap, deadline - time.monotonic()))


def check_http(url: str, timeout: float = HTTP_REQUEST_TIMEOUT) -> bool:
    """Perform a single GET request.

    Returns:
        True if the response status is 2xx.
    """
    try:
        with urlopen(Request(url, method="GET"), timeout=timeout) as response:
            return 200 <= response.status < 300
    except HTTPError as e:
        logger.debug("Health check %s returned %d", url, e.code)
        return False
    except (URLError, OSError):
        return False


def is_port_open(host: str, port: int, timeout: float = TCP_CONNECT_TIMEOUT) -> bool:
    """Check if something accepts TCP connections on host:port."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def wait_for_http(
    url: str,
    timeout: float,
    interval: float = DEFAULT_HEALTH_INTERVAL,
) -> bool:
    """Wait for an HTTP endpoint to answer with a 2xx status.

    Args:
        url: Health check URL.
        timeout: Maximum time to wait in seconds.
        interval: Time between attempts in seconds.

    Returns:
        True if the endpoint became healthy within the timeout.
    """
    logger.debug("Waiting for health check: %s (timeout: %ss)", url, timeout)
    deadline = time.monotonic() + timeout

    healthy = wait_until(
        lambda: check_http(url, timeout=_remaining(deadline, HTTP_REQUEST_TIMEOUT)),
        deadline,
        interval,
    )
    if healthy:
        logger.debug("Health check passed: %s", url)
    else:
        logger.error("Health check timeout: %s", url)
    return healthy


def wait_for_port(
    host: str,
    port: int,
    timeout: float,
    interval: float = DEFAULT_HEALTH_INTERVAL,
) -> bool:
    """Wait for a TCP port to accept connections.

    Returns:
        True if the port opened within the timeout.
    """
    logger.debug("Waiting for port %s:%d (timeout: %ss)", host, port, timeout)
    deadline = time.monotonic() + timeout

    opened = wait_until(
        lambda: is_port_open(host, port, timeout=_remaining(deadline, TCP_CONNECT_TIMEOUT)),
        deadline,
        interval,
    )
    if opened:
        logger.debug("Port %s:%d is available", host, port)
    else:
        logger.error("Timeout waiting for port %s:%d", host, port)
    return opened


def http_health_check(url: str, interval: float = DEFAULT_HEALTH_INTERVAL) -> HealthCheck:
    """Build a health check that waits for `url` to return 2xx."""
    def check(timeout: float) -> bool:
        return wait_for_http(url, timeout, interval)
    return check


def tcp_health_check(host: str, port: int, interval: float = DEFAULT_HEALTH_INTERVAL) -> HealthCheck:
    """Build a health check that waits for host:port to accept connections."""
    def check(timeout: float) -> bool:
        return wait_for_port(host, port, timeout, interval)
    return check
