"""Static pod manifest discovery for API server instances."""
from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml

REVISION_LABEL = "revision"
DEFAULT_MANIFEST_DIR = Path("/etc/kubernetes/manifests")
DEFAULT_PREFIX = "kube-apiserver-pod-"
DEFAULT_CONTAINER_NAME = "kube-apiserver"


class ManifestError(RuntimeError):
    """Raised when the manifest directory or a manifest cannot be read."""


@dataclass(frozen=True, slots=True)
class InstanceManifest:
    """A static pod manifest declaring one API server instance."""

    filename: Path
    revision: int
    port: int
    name: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "filename": str(self.filename),
            "revision": self.revision,
            "port": self.port,
            "name": self.name,
        }


class ManifestSet:
    """Manifests ordered by revision, lowest (oldest) first."""

    __slots__ = ("_manifests",)

    def __init__(self, manifests: Iterable[InstanceManifest] = ()) -> None:
        """Sort *manifests* by revision, then filename."""
        self._manifests: tuple[InstanceManifest, ...] = tuple(
            sorted(manifests, key=lambda item: (item.revision, str(item.filename)))
        )

    def __len__(self) -> int:
        return len(self._manifests)

    def __iter__(self) -> Iterator[InstanceManifest]:
        return iter(self._manifests)

    def __getitem__(self, index: int) -> InstanceManifest:
        return self._manifests[index]

    def __repr__(self) -> str:
        return f"ManifestSet({list(self._manifests)!r})"

    def active_manifest(self) -> InstanceManifest | None:
        """Return the manifest currently serving traffic (lowest revision)."""
        return self._manifests[0] if self._manifests else None

    def latest_manifest(self) -> InstanceManifest | None:
        """Return the manifest with the most recent revision."""
        return self._manifests[-1] if self._manifests else None

    def next_manifest(self) -> InstanceManifest | None:
        """Return the incoming manifest when a transition is pending."""
        if len(self._manifests) < 2:
            return None
        return self._manifests[-1]


@dataclass(frozen=True, slots=True)
class ManifestScanner:
    """Scan a manifest directory for the instances of one static pod."""

    directory: Path
    prefix: str = DEFAULT_PREFIX
    container_name: str = DEFAULT_CONTAINER_NAME

    def scan(self) -> ManifestSet:
        """Return the manifests currently present in :attr:`directory`."""
        return read_static_pod_manifests(self.directory, self.prefix, self.container_name)


def read_static_pod_manifests(
    directory: Path,
    prefix: str,
    container_name: str,
) -> ManifestSet:
    """Read manifests in *directory* whose filename starts with *prefix*.

    The revision is taken from the pod's ``revision`` label and the port from
    the first declared ``containerPort`` of *container_name*.
    """
    try:
        entries = sorted(directory.iterdir())
    except OSError as exc:
        raise ManifestError(f"Unable to read manifest directory {directory}: {exc}") from exc

    manifests: list[InstanceManifest] = []
    for path in entries:
        if not path.name.startswith(prefix) or not path.is_file():
            continue
        manifests.append(read_static_pod_manifest(path, container_name))
    return ManifestSet(manifests)


def read_static_pod_manifest(path: Path, container_name: str) -> InstanceManifest:
    """Parse a single static pod manifest at *path*."""
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ManifestError(f"Unable to read manifest {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ManifestError(f"Failed to parse manifest {path}: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise ManifestError(f"Manifest {path} must contain a mapping at the top level.")

    metadata = payload.get("metadata")
    metadata = metadata if isinstance(metadata, Mapping) else {}
    labels = metadata.get("labels")
    labels = labels if isinstance(labels, Mapping) else {}

    revision = _parse_revision(labels.get(REVISION_LABEL), path)
    port = _container_port(payload, container_name, path)
    name = metadata.get("name")
    return InstanceManifest(
        filename=path,
        revision=revision,
        port=port,
        name=name if isinstance(name, str) else "",
    )


def _parse_revision(value: object, path: Path) -> int:
    if value is None:
        raise ManifestError(f"Manifest {path} is missing the '{REVISION_LABEL}' label.")
    if isinstance(value, bool):
        raise ManifestError(f"Manifest {path} has a non-numeric revision: {value!r}.")
    text = str(value).strip()
    if not text.isdigit():
        raise ManifestError(f"Manifest {path} has a non-numeric revision: {value!r}.")
    return int(text)


def _container_port(payload: Mapping[str, object], container_name: str, path: Path) -> int:
    spec = payload.get("spec")
    containers = spec.get("containers") if isinstance(spec, Mapping) else None
    if not isinstance(containers, list):
        raise ManifestError(f"Manifest {path} declares no containers.")

    for container in containers:
        if not isinstance(container, Mapping) or container.get("name") != container_name:
            continue
        ports = container.get("ports")
        if isinstance(ports, list):
            for entry in ports:
                if not isinstance(entry, Mapping):
                    continue
                port = entry.get("containerPort")
                if isinstance(port, int) and not isinstance(port, bool):
                    return port
        raise ManifestError(
            f"Container '{container_name}' in manifest {path} declares no containerPort."
        )
    raise ManifestError(f"Manifest {path} has no container named '{container_name}'.")


__all__ = [
    "DEFAULT_CONTAINER_NAME",
    "DEFAULT_MANIFEST_DIR",
    "DEFAULT_PREFIX",
    "InstanceManifest",
    "ManifestError",
    "ManifestScanner",
    "ManifestSet",
    "read_static_pod_manifest",
    "read_static_pod_manifests",
]
