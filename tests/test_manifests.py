"""Tests for static pod manifest discovery."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from graceful_monitor.manifests import (
    InstanceManifest,
    ManifestError,
    ManifestScanner,
    ManifestSet,
    read_static_pod_manifest,
    read_static_pod_manifests,
)


def test_scan_orders_by_revision(
    tmp_path: Path,
    manifest_writer: Callable[..., Path],
) -> None:
    """Manifests are ordered by revision regardless of filename order."""
    manifest_writer(10, 6444)
    manifest_writer(9, 6443)
    (tmp_path / "manifests" / "etcd-pod.yaml").write_text("not: relevant\n", encoding="utf-8")

    manifests = ManifestScanner(tmp_path / "manifests").scan()

    assert [item.revision for item in manifests] == [9, 10]
    assert [item.port for item in manifests] == [6443, 6444]
    assert manifests.active_manifest() == manifests[0]
    assert manifests.next_manifest() == manifests[1]
    assert manifests.latest_manifest() == manifests[1]


def test_port_comes_from_named_container(manifest_writer: Callable[..., Path]) -> None:
    """The sidecar's containerPort is ignored in favour of the API server's."""
    path = manifest_writer(3, 6445)

    manifest = read_static_pod_manifest(path, "kube-apiserver")

    assert manifest == InstanceManifest(
        filename=path, revision=3, port=6445, name="kube-apiserver"
    )


def test_single_manifest_has_no_next(tmp_path: Path, manifest_writer: Callable[..., Path]) -> None:
    """A lone manifest is active and no transition is pending."""
    manifest_writer(4, 6443)

    manifests = read_static_pod_manifests(tmp_path / "manifests", "kube-apiserver-pod-", "kube-apiserver")

    assert len(manifests) == 1
    assert manifests.next_manifest() is None


def test_empty_manifest_set() -> None:
    """An empty set has neither an active nor a latest manifest."""
    manifests = ManifestSet()
    assert len(manifests) == 0
    assert manifests.active_manifest() is None
    assert manifests.latest_manifest() is None


def test_missing_directory_raises(tmp_path: Path) -> None:
    """An unreadable directory is reported as a manifest error."""
    with pytest.raises(ManifestError, match="Unable to read manifest directory"):
        read_static_pod_manifests(tmp_path / "absent", "kube-apiserver-pod-", "kube-apiserver")


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("metadata: [unclosed\n", "Failed to parse"),
        ("- just\n- a list\n", "mapping"),
        ("metadata:\n  labels: {}\nspec:\n  containers: []\n", "missing the 'revision' label"),
        (
            "metadata:\n  labels:\n    revision: abc\nspec:\n  containers: []\n",
            "non-numeric revision",
        ),
        ("metadata:\n  labels:\n    revision: '2'\n", "declares no containers"),
        (
            "metadata:\n  labels:\n    revision: '2'\nspec:\n  containers:\n"
            "  - name: other\n    ports:\n    - containerPort: 6443\n",
            "no container named",
        ),
        (
            "metadata:\n  labels:\n    revision: '2'\nspec:\n  containers:\n"
            "  - name: kube-apiserver\n    ports: []\n",
            "declares no containerPort",
        ),
    ],
)
def test_invalid_manifest_raises(tmp_path: Path, content: str, message: str) -> None:
    """Malformed manifests are rejected with a descriptive error."""
    path = tmp_path / "kube-apiserver-pod-2.yaml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ManifestError, match=message):
        read_static_pod_manifest(path, "kube-apiserver")
