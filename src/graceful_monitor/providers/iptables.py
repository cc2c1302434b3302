"""iptables provider backing the NAT rule reconciler."""
from __future__ import annotations

import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass


class IptablesError(RuntimeError):
    """Raised when iptables operations fail."""


@dataclass(slots=True)
class IptablesProvider:
    """Run ``iptables`` to inspect and mutate chains of a table.

    Rule specifications are argument sequences as accepted by ``iptables -A``
    (without the ``-A CHAIN`` prefix).
    """

    iptables_bin: str = "iptables"
    wait_seconds: int = 5

    def chain_exists(self, table: str, chain: str) -> bool:
        """Return ``True`` when *chain* exists in *table*."""
        result = self._iptables(table, ["-S", chain], check=False)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise self._failure(table, ["-S", chain], result)

    def new_chain(self, table: str, chain: str) -> None:
        """Create *chain* in *table*."""
        self._iptables(table, ["-N", chain])

    def exists(self, table: str, chain: str, rulespec: Sequence[str]) -> bool:
        """Return ``True`` when *rulespec* is present in *chain*."""
        args = ["-C", chain, *rulespec]
        result = self._iptables(table, args, check=False)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise self._failure(table, args, result)

    def append(self, table: str, chain: str, rulespec: Sequence[str]) -> None:
        """Append *rulespec* to *chain*."""
        self._iptables(table, ["-A", chain, *rulespec])

    def delete(self, table: str, chain: str, rulespec: Sequence[str]) -> None:
        """Delete the first rule in *chain* matching *rulespec*."""
        self._iptables(table, ["-D", chain, *rulespec])

    def list_rules(self, table: str, chain: str) -> list[tuple[str, ...]]:
        """Return the rule specifications currently installed in *chain*."""
        result = self._iptables(table, ["-S", chain])
        return parse_rule_listing(result.stdout or "", chain)

    # ------------------------------------------------------------------
    def _iptables(
        self,
        table: str,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.iptables_bin, "-w", str(self.wait_seconds), "-t", table, *args]
        try:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise IptablesError(f"{self.iptables_bin} not found: {exc}") from exc
        if check and result.returncode != 0:
            raise self._failure(table, args, result)
        return result

    def _failure(
        self,
        table: str,
        args: Sequence[str],
        result: subprocess.CompletedProcess[str],
    ) -> IptablesError:
        stdout = getattr(result, "stdout", "") or ""
        stderr = getattr(result, "stderr", "") or ""
        message = stderr.strip() or stdout.strip() or "no output"
        joined = " ".join(args)
        return IptablesError(
            f"{self.iptables_bin} -t {table} {joined} failed (exit {result.returncode}): {message}"
        )


def parse_rule_listing(output: str, chain: str) -> list[tuple[str, ...]]:
    """Extract rule specifications for *chain* from ``iptables -S`` output."""
    rules: list[tuple[str, ...]] = []
    for line in output.splitlines():
        tokens = shlex.split(line)
        if len(tokens) < 2 or tokens[0] != "-A" or tokens[1] != chain:
            continue
        rules.append(tuple(tokens[2:]))
    return rules


__all__ = ["IptablesError", "IptablesProvider", "parse_rule_listing"]
