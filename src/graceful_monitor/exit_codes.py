"""Process exit codes of the ``graceful-monitor`` command."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit statuses, grouped by which side of the host is at fault."""

    OK = 0
    # Bad configuration or unreadable manifests.
    VALIDATION = 2
    # Filesystem trouble or another run holding the rollout lock.
    ENVIRONMENT = 3
    # iptables failures, probe timeouts and failed rollbacks.
    PROVIDER = 4


__all__ = ["ExitCode"]
