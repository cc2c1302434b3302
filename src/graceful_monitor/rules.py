"""Declarative reconciliation of the API server NAT chain.

The chain is linked from ``PREROUTING`` (externally originated traffic) and
``OUTPUT`` (locally originated traffic) and holds nothing but DNAT rules
rewriting canonical ports to the ports of the serving instance. Every
operation here converges the chain to a desired rule set from whatever state
it is found in.

Both jumps skip packets carrying :data:`BYPASS_MARK`. Health checks mark
their sockets with it so they reach the port they name rather than the
instance the chain currently forwards that port to.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Protocol

from .portmap import PortMap

LOGGER = logging.getLogger(__name__)

API_CHAIN = "OPENSHIFT_APISERVER_REWRITE"
NAT_TABLE = "nat"
JUMP_CHAINS: tuple[str, ...] = ("PREROUTING", "OUTPUT")
BYPASS_MARK = 0x4D47
_MARK_LIMIT = 0xFFFFFFFF

_ESTABLISHED_STATES = frozenset({"ESTABLISHED", "RELATED"})
_KNOWN_MATCH_MODULES = frozenset({"addrtype", "tcp", "state", "conntrack"})


class RuleTable(Protocol):
    """Capabilities required from a firewall backend."""

    def chain_exists(self, table: str, chain: str) -> bool: ...

    def new_chain(self, table: str, chain: str) -> None: ...

    def exists(self, table: str, chain: str, rulespec: Sequence[str]) -> bool: ...

    def append(self, table: str, chain: str, rulespec: Sequence[str]) -> None: ...

    def delete(self, table: str, chain: str, rulespec: Sequence[str]) -> None: ...

    def list_rules(self, table: str, chain: str) -> list[tuple[str, ...]]: ...


@dataclass(frozen=True, slots=True)
class DnatRule:
    """Rewrite of local TCP traffic for *target_port* to *destination_port*."""

    target_port: int
    destination_port: int
    established_only: bool = False

    def rulespec(self) -> tuple[str, ...]:
        """Return the iptables arguments for this rule."""
        spec: list[str] = []
        if self.established_only:
            spec.extend(["-m", "state", "--state", "ESTABLISHED,RELATED"])
        spec.extend(
            [
                "-m",
                "addrtype",
                "--dst-type",
                "LOCAL",
                "-p",
                "tcp",
                "--dport",
                str(self.target_port),
                "-j",
                "DNAT",
                "--to-destination",
                f":{self.destination_port}",
            ]
        )
        return tuple(spec)

    def __str__(self) -> str:
        scope = " (established)" if self.established_only else ""
        return f"{self.target_port}->{self.destination_port}{scope}"

    @classmethod
    def parse(cls, rulespec: Sequence[str]) -> DnatRule | None:
        """Parse a rule as listed by ``iptables -S``.

        iptables normalises rules when listing them (implicit ``-m tcp``,
        reordered matches, reordered states). Rules carrying anything beyond
        the matches written by :meth:`rulespec` yield ``None``.
        """
        tokens = list(rulespec)
        protocol: str | None = None
        dst_type: str | None = None
        jump: str | None = None
        target: int | None = None
        destination: int | None = None
        states: frozenset[str] | None = None

        index = 0
        while index < len(tokens):
            option = tokens[index]
            if index + 1 >= len(tokens):
                return None
            value = tokens[index + 1]
            index += 2
            if option == "-m":
                if value not in _KNOWN_MATCH_MODULES:
                    return None
            elif option in ("-p", "--protocol"):
                protocol = value
            elif option == "--dst-type":
                dst_type = value
            elif option == "--dport":
                target = _parse_port(value)
            elif option in ("--state", "--ctstate"):
                states = frozenset(value.split(","))
            elif option in ("-j", "--jump"):
                jump = value
            elif option == "--to-destination":
                host, _, port = value.rpartition(":")
                if host:
                    return None
                destination = _parse_port(port)
            else:
                return None

        if protocol != "tcp" or dst_type != "LOCAL" or jump != "DNAT":
            return None
        if target is None or destination is None:
            return None
        if states is None:
            return cls(target, destination)
        if states == _ESTABLISHED_STATES:
            return cls(target, destination, established_only=True)
        return None


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    """Changes applied by a single reconciliation."""

    appended: tuple[DnatRule, ...] = ()
    deleted: tuple[tuple[str, ...], ...] = ()
    jumps_added: tuple[str, ...] = ()
    chain_created: bool = False
    jumps_removed: tuple[tuple[str, ...], ...] = ()

    @property
    def changed(self) -> bool:
        """Return ``True`` when the firewall was modified."""
        return bool(
            self.appended
            or self.deleted
            or self.jumps_added
            or self.jumps_removed
            or self.chain_created
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "appended": [str(rule) for rule in self.appended],
            "deleted": [" ".join(spec) for spec in self.deleted],
            "jumps_added": list(self.jumps_added),
            "jumps_removed": [" ".join(spec) for spec in self.jumps_removed],
            "chain_created": self.chain_created,
        }


def active_rules(port_map: PortMap) -> tuple[DnatRule, ...]:
    """Return the rules sending all traffic to the instance using *port_map*."""
    return tuple(DnatRule(canonical, actual) for canonical, actual in port_map.items())


def transition_rules(active_map: PortMap, next_map: PortMap) -> tuple[DnatRule, ...]:
    """Return the rules keeping open connections on *active_map*.

    New connections are sent to the instance using *next_map*.
    """
    established = tuple(
        DnatRule(canonical, actual, established_only=True)
        for canonical, actual in active_map.items()
    )
    return established + active_rules(next_map)


@dataclass(slots=True)
class NatRuleReconciler:
    """Keep the dedicated NAT chain in line with the desired port mapping."""

    table: RuleTable
    chain: str = API_CHAIN
    nat_table: str = NAT_TABLE
    jump_chains: tuple[str, ...] = JUMP_CHAINS
    bypass_mark: int = BYPASS_MARK

    def jump_rulespec(self) -> tuple[str, ...]:
        """Return the jump into the chain, skipping marked packets."""
        return ("-m", "mark", "!", "--mark", f"{self.bypass_mark:#x}", "-j", self.chain)

    def ensure_active_rules(self, port_map: PortMap) -> ReconcileResult:
        """Route every connection to the instance using *port_map*."""
        return self._reconcile(active_rules(port_map))

    def ensure_transition_rules(
        self,
        active_map: PortMap,
        next_map: PortMap,
    ) -> ReconcileResult:
        """Keep established traffic on *active_map*, new traffic on *next_map*."""
        return self._reconcile(transition_rules(active_map, next_map))

    def current_rules(self) -> list[DnatRule | None]:
        """Return the parsed chain contents; unrecognised rules are ``None``."""
        if not self.table.chain_exists(self.nat_table, self.chain):
            return []
        return [
            DnatRule.parse(spec) for spec in self.table.list_rules(self.nat_table, self.chain)
        ]

    # ------------------------------------------------------------------
    def _reconcile(self, desired: Iterable[DnatRule]) -> ReconcileResult:
        wanted = tuple(desired)
        chain_created = self._ensure_chain()
        jumps_added, jumps_removed = self._ensure_jumps()

        appended: list[DnatRule] = []
        for rule in wanted:
            spec = rule.rulespec()
            if self.table.exists(self.nat_table, self.chain, spec):
                continue
            self.table.append(self.nat_table, self.chain, spec)
            appended.append(rule)

        wanted_set = set(wanted)
        kept: set[DnatRule] = set()
        deleted: list[tuple[str, ...]] = []
        for spec in self.table.list_rules(self.nat_table, self.chain):
            rule = DnatRule.parse(spec)
            if rule is not None and rule in wanted_set and rule not in kept:
                kept.add(rule)
                continue
            self.table.delete(self.nat_table, self.chain, spec)
            deleted.append(tuple(spec))

        result = ReconcileResult(
            appended=tuple(appended),
            deleted=tuple(deleted),
            jumps_added=tuple(jumps_added),
            chain_created=chain_created,
            jumps_removed=tuple(jumps_removed),
        )
        if result.changed:
            LOGGER.info(
                "Reconciled chain %s: appended %d rule(s), deleted %d rule(s).",
                self.chain,
                len(result.appended),
                len(result.deleted),
            )
        else:
            LOGGER.debug("Chain %s already matches the desired rules.", self.chain)
        return result

    def _ensure_chain(self) -> bool:
        if self.table.chain_exists(self.nat_table, self.chain):
            return False
        self.table.new_chain(self.nat_table, self.chain)
        return True

    def _ensure_jumps(self) -> tuple[list[str], list[tuple[str, ...]]]:
        jump = self.jump_rulespec()
        added: list[str] = []
        removed: list[tuple[str, ...]] = []
        for source in self.jump_chains:
            if not self.table.exists(self.nat_table, source, jump):
                self.table.append(self.nat_table, source, jump)
                added.append(source)

            # Unmarked or duplicate jumps into the chain would rewrite health checks.
            kept = False
            for spec in self.table.list_rules(self.nat_table, source):
                if not _jumps_to(spec, self.chain):
                    continue
                if not kept and _bypass_mark(spec) == self.bypass_mark:
                    kept = True
                    continue
                self.table.delete(self.nat_table, source, spec)
                removed.append(tuple(spec))
        return added, removed


def _jumps_to(rulespec: Sequence[str], chain: str) -> bool:
    tokens = tuple(rulespec)
    return len(tokens) >= 2 and tokens[-2] in ("-j", "--jump") and tokens[-1] == chain


def _bypass_mark(rulespec: Sequence[str]) -> int | None:
    """Return the mark a jump excludes, or ``None`` for any other form.

    ``iptables -S`` prints the mark in hex and may append a full mask.
    """
    tokens = tuple(rulespec)
    if len(tokens) != 7 or tokens[:4] != ("-m", "mark", "!", "--mark"):
        return None
    value, _, mask = tokens[4].partition("/")
    try:
        mark = int(value, 0)
        if mask and int(mask, 0) != _MARK_LIMIT:
            return None
    except ValueError:
        return None
    return mark


def _parse_port(value: str) -> int | None:
    try:
        port = int(value)
    except ValueError:
        return None
    return port if 0 < port < 65536 else None


__all__ = [
    "API_CHAIN",
    "BYPASS_MARK",
    "JUMP_CHAINS",
    "NAT_TABLE",
    "DnatRule",
    "NatRuleReconciler",
    "ReconcileResult",
    "RuleTable",
    "active_rules",
    "transition_rules",
]
