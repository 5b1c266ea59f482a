"""Readiness gate and service probes.

Both waits are bounded: they return False once the budget is spent instead of
retrying forever, so a dead host aborts the pipeline inside its time budget.
"""

from __future__ import annotations

import socket
import time
from collections.abc import Callable

import requests

from vmdeploy.lib.logging_config import get_logger

logger = get_logger(__name__)

# Upper bound for a single TCP connect attempt
MAX_ATTEMPT_TIMEOUT = 5.0


def await_ready(
    address: str,
    max_wait: float,
    port: int = 22,
    interval: float = 2.0,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Wait until ``address:port`` accepts TCP connections.

    Args:
        address: Host address
        max_wait: Total budget in seconds
        port: Port to probe (the login port)
        interval: Pause between attempts
        sleep: Sleep function (injectable for tests)
        clock: Monotonic clock (injectable for tests)

    Returns:
        True once a connection succeeds, False when the budget is exhausted
    """
    deadline = clock() + max_wait
    attempt = 0
    while True:
        attempt += 1
        remaining = deadline - clock()
        if remaining <= 0:
            break
        try:
            with socket.create_connection(
                (address, port), timeout=min(MAX_ATTEMPT_TIMEOUT, remaining)
            ):
                logger.info(f"{address}:{port} accepts connections (attempt {attempt})")
                return True
        except OSError as exc:
            logger.debug(f"{address}:{port} not ready (attempt {attempt}): {exc}")

        remaining = deadline - clock()
        if remaining <= 0:
            break
        sleep(min(interval, remaining))

    logger.warning(f"{address}:{port} not reachable after {max_wait:g}s")
    return False


def probe_service(url: str, timeout: float = 5.0) -> bool:
    """Return True if an HTTP GET on ``url`` answers with a non-error status."""
    try:
        response = requests.get(url, timeout=timeout, allow_redirects=True)
    except requests.RequestException as exc:
        logger.debug(f"Probe of {url} failed: {exc}")
        return False
    logger.debug(f"Probe of {url} returned {response.status_code}")
    return response.status_code < 400


def wait_for_service(
    url: str,
    max_wait: float,
    interval: float = 2.0,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll :func:`probe_service` until it succeeds or ``max_wait`` elapses."""
    deadline = clock() + max_wait
    while True:
        remaining = deadline - clock()
        if probe_service(url, timeout=max(0.5, min(MAX_ATTEMPT_TIMEOUT, remaining))):
            return True
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        sleep(min(interval, remaining))
