"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path

import pytest
import yaml


class FakeRuleTable:
    """In-memory stand-in for the iptables provider.

    Rules are stored exactly as appended, so ``exists`` and ``delete`` match
    on the literal argument tuple just like ``iptables -C``/``-D`` would for
    rules written by the reconciler.
    """

    def __init__(self) -> None:
        """Start with empty built-in chains and no failures scheduled."""
        self.chains: dict[tuple[str, str], list[tuple[str, ...]]] = {
            ("nat", "PREROUTING"): [],
            ("nat", "OUTPUT"): [],
        }
        self.calls: list[tuple[str, str, str]] = []
        self.appended: list[tuple[str, ...]] = []
        self.fail_append: Callable[[str, tuple[str, ...]], bool] | None = None
        self.fail_delete: Callable[[str, tuple[str, ...]], bool] | None = None

    def _record(self, action: str, table: str, chain: str) -> None:
        self.calls.append((action, table, chain))

    def chain_exists(self, table: str, chain: str) -> bool:
        self._record("exists-chain", table, chain)
        return (table, chain) in self.chains

    def new_chain(self, table: str, chain: str) -> None:
        self._record("new-chain", table, chain)
        self.chains[(table, chain)] = []

    def exists(self, table: str, chain: str, rulespec: Sequence[str]) -> bool:
        self._record("check", table, chain)
        return tuple(rulespec) in self.chains.get((table, chain), [])

    def append(self, table: str, chain: str, rulespec: Sequence[str]) -> None:
        self._record("append", table, chain)
        spec = tuple(rulespec)
        if self.fail_append is not None and self.fail_append(chain, spec):
            raise FakeTableError(f"append to {chain} failed")
        self.appended.append(spec)
        self.chains.setdefault((table, chain), []).append(spec)

    def delete(self, table: str, chain: str, rulespec: Sequence[str]) -> None:
        self._record("delete", table, chain)
        spec = tuple(rulespec)
        if self.fail_delete is not None and self.fail_delete(chain, spec):
            raise FakeTableError(f"delete from {chain} failed")
        self.chains[(table, chain)].remove(spec)

    def list_rules(self, table: str, chain: str) -> list[tuple[str, ...]]:
        self._record("list", table, chain)
        return list(self.chains[(table, chain)])

    def rules(self, chain: str = "OPENSHIFT_APISERVER_REWRITE") -> list[tuple[str, ...]]:
        """Return the rules of *chain* in the nat table."""
        return list(self.chains.get(("nat", chain), []))


class FakeTableError(RuntimeError):
    """Raised by :class:`FakeRuleTable` when a failure is injected."""


@pytest.fixture
def rule_table() -> FakeRuleTable:
    """Return an empty in-memory rule table."""
    return FakeRuleTable()


def write_manifest(
    directory: Path,
    revision: int,
    port: int,
    *,
    prefix: str = "kube-apiserver-pod-",
    container_name: str = "kube-apiserver",
) -> Path:
    """Write a minimal API server static pod manifest and return its path."""
    directory.mkdir(parents=True, exist_ok=True)
    payload = {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": "kube-apiserver",
            "namespace": "openshift-kube-apiserver",
            "labels": {"app": "openshift-kube-apiserver", "revision": str(revision)},
        },
        "spec": {
            "containers": [
                {
                    "name": "kube-apiserver-insecure-readyz",
                    "ports": [{"containerPort": 6080 + (port - 6443)}],
                },
                {
                    "name": container_name,
                    "image": "registry.example/kube-apiserver:latest",
                    "ports": [{"containerPort": port}],
                },
            ]
        },
    }
    path = directory / f"{prefix}{revision}.yaml"
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
    return path


@pytest.fixture
def manifest_writer(tmp_path: Path) -> Callable[..., Path]:
    """Return a helper writing manifests into ``tmp_path / "manifests"``."""
    manifest_dir = tmp_path / "manifests"
    manifest_dir.mkdir(parents=True, exist_ok=True)

    def _write(revision: int, port: int, **kwargs: str) -> Path:
        return write_manifest(manifest_dir, revision, port, **kwargs)

    return _write
