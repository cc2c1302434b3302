"""TCP readiness probing for local API server instances."""
from __future__ import annotations

import logging
import socket
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from .rules import BYPASS_MARK

LOGGER = logging.getLogger(__name__)

DEFAULT_INTERVAL = 1.0
DEFAULT_TIMEOUT = 300.0
DEFAULT_CONNECT_TIMEOUT = 1.0

# Linux value; the constant is missing from older ``socket`` builds.
SO_MARK = getattr(socket, "SO_MARK", 36)


class ProbeError(RuntimeError):
    """Raised when a health check cannot be carried out at all."""


class ProbeTimeoutError(ProbeError):
    """Raised when a port does not reach the expected state in time."""

    def __init__(self, port: int, expected: str, timeout: float) -> None:
        """Record which port failed to become *expected*."""
        super().__init__(
            f"Port {port} did not become {expected} within {timeout:g} seconds."
        )
        self.port = port
        self.expected = expected
        self.timeout = timeout


class ReadinessProbe(Protocol):
    """Strategy used by the orchestrator to gate on instance health."""

    def is_reachable(self, port: int) -> bool: ...

    def wait_until_reachable(self, port: int) -> None: ...

    def wait_until_unreachable(self, port: int) -> None: ...


@dataclass(slots=True)
class TcpReadinessProbe:
    """Poll a local TCP port with short-lived connection attempts.

    A port counts as reachable when a connection is accepted within
    ``connect_timeout`` seconds. Waiting polls every ``interval`` seconds and
    gives up with :class:`ProbeTimeoutError` once ``timeout`` seconds have
    elapsed.

    Sockets carry ``mark`` so the NAT chain's jumps let them through
    untouched; without it a check on a canonical port would be answered by
    whichever instance the chain forwards to. ``None`` sends unmarked
    connections, which needs no privileges.
    """

    host: str = "127.0.0.1"
    interval: float = DEFAULT_INTERVAL
    timeout: float = DEFAULT_TIMEOUT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    mark: int | None = BYPASS_MARK
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep

    def is_reachable(self, port: int) -> bool:
        """Return ``True`` when *port* currently accepts connections."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            if self.mark is not None:
                try:
                    sock.setsockopt(socket.SOL_SOCKET, SO_MARK, self.mark)
                except OSError as exc:
                    raise ProbeError(
                        f"Unable to mark health check socket with {self.mark:#x}: {exc}"
                    ) from exc
            sock.settimeout(self.connect_timeout)
            try:
                sock.connect((self.host, port))
            except OSError:
                return False
        return True

    def wait_until_reachable(self, port: int) -> None:
        """Block until *port* accepts connections."""
        self._wait(port, reachable=True)

    def wait_until_unreachable(self, port: int) -> None:
        """Block until *port* refuses connections."""
        self._wait(port, reachable=False)

    def _wait(self, port: int, *, reachable: bool) -> None:
        expected = "reachable" if reachable else "unreachable"
        deadline = self.clock() + self.timeout
        attempts = 0
        while True:
            attempts += 1
            if self.is_reachable(port) is reachable:
                LOGGER.info("Port %d is %s after %d attempt(s).", port, expected, attempts)
                return
            remaining = deadline - self.clock()
            if remaining <= 0:
                raise ProbeTimeoutError(port, expected, self.timeout)
            LOGGER.debug("Waiting for port %d to become %s.", port, expected)
            self.sleep(min(self.interval, remaining))


__all__ = [
    "DEFAULT_CONNECT_TIMEOUT",
    "DEFAULT_INTERVAL",
    "DEFAULT_TIMEOUT",
    "ProbeError",
    "ProbeTimeoutError",
    "ReadinessProbe",
    "TcpReadinessProbe",
]
