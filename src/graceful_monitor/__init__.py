"""graceful-monitor: hand an API server over between two local instances.

The coordination logic lives in :mod:`graceful_monitor.rollout`; the
command line in :mod:`graceful_monitor.cli`.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# Keep in sync with ``version`` in pyproject.toml.
__version__ = "0.1.0"


def get_version() -> str:
    """Return the installed package version string."""
    return __version__
