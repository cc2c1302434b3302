"""Provider backends for graceful_monitor."""
from __future__ import annotations

from .iptables import IptablesError, IptablesProvider

__all__ = [
    "IptablesError",
    "IptablesProvider",
]
