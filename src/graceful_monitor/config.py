"""Configuration loader for graceful-monitor.

Values are resolved from, in increasing order of precedence:

1. Built-in defaults.
2. ``/etc/graceful-monitor/config.yml`` (or an override path).
3. Environment variables prefixed with ``GRACEFUL_MONITOR_``.
4. Explicit overrides supplied programmatically (used for CLI flags).

Nested keys are addressed from the environment with a double underscore::

    export GRACEFUL_MONITOR_PROBE__TIMEOUT=600
    export GRACEFUL_MONITOR_IPTABLES__BYPASS_MARK=0x4d48

Environment values go through ``yaml.safe_load`` so ``600`` arrives as an
integer and ``0.5`` as a float.
"""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml

from .rules import API_CHAIN, BYPASS_MARK

ENV_PREFIX = "GRACEFUL_MONITOR_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
DEFAULT_CONFIG_FILE = Path("/etc/graceful-monitor/config.yml")

# iptables rejects chain names longer than this.
_MAX_CHAIN_LENGTH = 28


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class IptablesConfig:
    """How the NAT chain is managed."""

    bin: str = "iptables"
    chain: str = API_CHAIN
    wait: int = 5
    bypass_mark: int = BYPASS_MARK

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bin": self.bin,
            "chain": self.chain,
            "wait": self.wait,
            "bypass_mark": self.bypass_mark,
        }


@dataclass(frozen=True)
class ProbeConfig:
    """Polling policy for readiness and drain checks."""

    host: str = "127.0.0.1"
    interval: float = 1.0
    timeout: float = 300.0
    connect_timeout: float = 1.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "host": self.host,
            "interval": self.interval,
            "timeout": self.timeout,
            "connect_timeout": self.connect_timeout,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for graceful-monitor."""

    config_file: Path
    manifest_dir: Path
    manifest_prefix: str
    container_name: str
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    iptables: IptablesConfig
    probe: ProbeConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "manifest_dir": str(self.manifest_dir),
            "manifest_prefix": self.manifest_prefix,
            "container_name": self.container_name,
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "iptables": self.iptables.to_dict(),
            "probe": self.probe.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "manifest_dir": "/etc/kubernetes/manifests",
    "manifest_prefix": "kube-apiserver-pod-",
    "container_name": "kube-apiserver",
    "logs_dir": "/var/log/graceful-monitor",
    "runtime_dir": "/run/graceful-monitor",
    "lock_timeout": 30.0,
    "iptables": IptablesConfig().to_dict(),
    "probe": ProbeConfig().to_dict(),
}

_SECTION_KEYS: dict[str, frozenset[str]] = {
    "iptables": frozenset(IptablesConfig().to_dict()),
    "probe": frozenset(ProbeConfig().to_dict()),
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    environ = os.environ if env is None else env
    if config_file:
        path = Path(config_file)
    elif CONFIG_ENV_VAR in environ:
        path = Path(environ[CONFIG_ENV_VAR])
    else:
        path = DEFAULT_CONFIG_FILE

    raw: dict[str, object] = dict(DEFAULTS)
    for layer in (_read_config_file(path), _env_layer(environ), dict(overrides or {})):
        raw = _merge(raw, layer)

    unknown = set(raw) - set(DEFAULTS)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}.")

    return AppConfig(
        config_file=path,
        manifest_dir=_as_path(raw["manifest_dir"], "manifest_dir"),
        manifest_prefix=_as_word(raw["manifest_prefix"], "manifest_prefix"),
        container_name=_as_word(raw["container_name"], "container_name"),
        logs_dir=_as_path(raw["logs_dir"], "logs_dir"),
        runtime_dir=_as_path(raw["runtime_dir"], "runtime_dir"),
        lock_timeout=_as_positive_float(raw["lock_timeout"], "lock_timeout"),
        iptables=_iptables_config(_section(raw, "iptables")),
        probe=_probe_config(_section(raw, "probe")),
    )


def _read_config_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_mapping(data, str(path))


def _env_layer(environ: Mapping[str, str]) -> dict[str, object]:
    layer: dict[str, object] = {}
    for key, value in environ.items():
        if key == CONFIG_ENV_VAR or not key.startswith(ENV_PREFIX):
            continue
        parts = [part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part]
        if not parts:
            continue
        node = layer
        for part in parts[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                raise ConfigError(
                    f"Environment variable {key} conflicts with {ENV_PREFIX}{part.upper()}."
                )
            node = child
        try:
            node[parts[-1]] = yaml.safe_load(value.strip())
        except yaml.YAMLError:
            node[parts[-1]] = value.strip()
    return layer


def _merge(base: Mapping[str, object], layer: Mapping[str, object]) -> dict[str, object]:
    merged = dict(base)
    for key, value in layer.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = _merge(current, value)
        else:
            merged[key] = value
    return merged


def _section(raw: Mapping[str, object], name: str) -> dict[str, object]:
    values = _as_mapping(raw.get(name), name)
    unknown = set(values) - _SECTION_KEYS[name]
    if unknown:
        raise ConfigError(f"Unknown {name} configuration keys: {', '.join(sorted(unknown))}.")
    return values


def _iptables_config(values: Mapping[str, object]) -> IptablesConfig:
    chain = _as_word(values["chain"], "iptables.chain")
    if len(chain) > _MAX_CHAIN_LENGTH or " " in chain:
        raise ConfigError(
            f"iptables.chain must be a single word of at most {_MAX_CHAIN_LENGTH} "
            f"characters. Got {chain!r}."
        )
    wait = _as_int(values["wait"], "iptables.wait")
    if wait < 0:
        raise ConfigError("iptables.wait must be non-negative.")
    bypass_mark = _as_int(values["bypass_mark"], "iptables.bypass_mark")
    if not 0 < bypass_mark <= 0xFFFFFFFF:
        raise ConfigError(
            f"iptables.bypass_mark must be a non-zero 32-bit value. Got {bypass_mark!r}."
        )
    return IptablesConfig(
        bin=_as_word(values["bin"], "iptables.bin"),
        chain=chain,
        wait=wait,
        bypass_mark=bypass_mark,
    )


def _probe_config(values: Mapping[str, object]) -> ProbeConfig:
    return ProbeConfig(
        host=_as_word(values["host"], "probe.host"),
        interval=_as_positive_float(values["interval"], "probe.interval"),
        timeout=_as_positive_float(values["timeout"], "probe.timeout"),
        connect_timeout=_as_positive_float(values["connect_timeout"], "probe.connect_timeout"),
    )


def _as_mapping(value: object, label: str) -> dict[str, object]:
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    for key in value:
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
    return dict(value)


def _as_word(value: object, label: str) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ConfigError(f"{label} must be a non-empty string. Got {value!r}.")
    text = str(value).strip()
    if not text:
        raise ConfigError(f"{label} must be a non-empty string.")
    return text


def _as_path(value: object, label: str) -> Path:
    if isinstance(value, (str, Path)) and str(value).strip():
        return Path(value).expanduser()
    raise ConfigError(f"{label} must be a filesystem path. Got {value!r}.")


def _as_int(value: object, label: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _as_positive_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


__all__ = [
    "AppConfig",
    "ConfigError",
    "IptablesConfig",
    "ProbeConfig",
    "load_config",
]
