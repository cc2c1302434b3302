"""Port mapping helpers for alternating API server instances.

Every instance binds each canonical port shifted by the offset of the slot it
occupies. The slot of the incoming instance is derived from the port the
active instance is observed on, so no rotation counter is ever stored.
"""
from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from enum import IntEnum

SECURE_PORT = 6443
HEALTH_PORT = 6080
CHECK_PORT = 17697

CANONICAL_PORTS: tuple[int, ...] = (SECURE_PORT, HEALTH_PORT, CHECK_PORT)


class PortMapError(ValueError):
    """Raised when a port cannot be associated with a rotation slot."""


class PortSlot(IntEnum):
    """The three offsets instances rotate through."""

    ZERO = 0
    ONE = 1
    TWO = 2

    def next(self) -> PortSlot:
        """Return the slot following this one in the rotation."""
        return PortSlot((self.value + 1) % len(PortSlot))


@dataclass(frozen=True, slots=True)
class PortMap:
    """Canonical to actual port association for a single slot."""

    slot: PortSlot

    @property
    def offset(self) -> int:
        """Return the integer offset applied to each canonical port."""
        return int(self.slot)

    @property
    def mapping(self) -> dict[int, int]:
        """Return ``{canonical: actual}`` for every canonical port."""
        return {port: port + self.offset for port in CANONICAL_PORTS}

    @property
    def secure_port(self) -> int:
        return SECURE_PORT + self.offset

    @property
    def health_port(self) -> int:
        return HEALTH_PORT + self.offset

    @property
    def check_port(self) -> int:
        return CHECK_PORT + self.offset

    def items(self) -> Iterator[tuple[int, int]]:
        """Iterate ``(canonical, actual)`` pairs in canonical order."""
        return iter(self.mapping.items())

    def __getitem__(self, canonical: int) -> int:
        try:
            return self.mapping[canonical]
        except KeyError:
            raise KeyError(f"{canonical} is not a canonical port") from None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "offset": self.offset,
            "ports": {str(canonical): actual for canonical, actual in self.items()},
        }


def offset_for_active_port(active_port: int) -> PortSlot:
    """Return the slot occupied by an instance bound to *active_port*.

    ``0`` stands for "no active instance" and resolves to the canonical slot.
    """
    if active_port == 0:
        return PortSlot.ZERO
    offset = active_port % SECURE_PORT
    if active_port < SECURE_PORT or offset >= len(PortSlot):
        raise PortMapError(
            f"Port {active_port} is not a secure port of any rotation slot "
            f"({SECURE_PORT}-{SECURE_PORT + len(PortSlot) - 1})."
        )
    return PortSlot(offset)


def port_map_for_slot(slot: PortSlot) -> PortMap:
    """Return the port map for *slot*."""
    return PortMap(slot=slot)


def active_port_map(active_port: int) -> PortMap:
    """Return the port map of the instance currently bound to *active_port*."""
    return port_map_for_slot(offset_for_active_port(active_port))


def next_port_map(active_port: int) -> PortMap:
    """Return the port map the incoming instance should use."""
    return port_map_for_slot(offset_for_active_port(active_port).next())


__all__ = [
    "CANONICAL_PORTS",
    "CHECK_PORT",
    "HEALTH_PORT",
    "SECURE_PORT",
    "PortMap",
    "PortMapError",
    "PortSlot",
    "active_port_map",
    "next_port_map",
    "offset_for_active_port",
    "port_map_for_slot",
]
