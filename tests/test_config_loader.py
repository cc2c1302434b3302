"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from graceful_monitor.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.manifest_dir == Path("/etc/kubernetes/manifests")
    assert config.manifest_prefix == "kube-apiserver-pod-"
    assert config.container_name == "kube-apiserver"
    assert config.iptables.chain == "OPENSHIFT_APISERVER_REWRITE"
    assert config.iptables.wait == 5
    assert config.iptables.bypass_mark == 0x4D47
    assert config.probe.interval == 1.0
    assert config.probe.timeout == 300.0
    assert config.lock_timeout == 30.0


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "graceful-monitor.yml"
    cfg.write_text(
        "manifest_dir: {manifests}\n"
        "container_name: apiserver\n"
        "iptables:\n"
        "  bin: /usr/sbin/iptables-nft\n"
        "probe:\n"
        "  timeout: 90\n"
        "  host: 10.0.0.5\n".format(manifests=tmp_path / "manifests")
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.manifest_dir == tmp_path / "manifests"
    assert config.container_name == "apiserver"
    assert config.iptables.bin == "/usr/sbin/iptables-nft"
    assert config.iptables.chain == "OPENSHIFT_APISERVER_REWRITE"
    assert config.probe.timeout == 90.0
    assert config.probe.host == "10.0.0.5"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "graceful-monitor.yml"
    cfg.write_text("probe:\n  interval: 5\n")
    env = {
        "GRACEFUL_MONITOR_CONFIG_FILE": str(cfg),
        "GRACEFUL_MONITOR_PROBE__INTERVAL": "0.25",
        "GRACEFUL_MONITOR_IPTABLES__WAIT": "0",
        "GRACEFUL_MONITOR_IPTABLES__BYPASS_MARK": "0x10",
        "GRACEFUL_MONITOR_LOGS_DIR": str(tmp_path / "logs"),
        "GRACEFUL_MONITOR_LOCK_TIMEOUT": "45",
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.probe.interval == 0.25
    assert config.iptables.wait == 0
    assert config.iptables.bypass_mark == 0x10
    assert config.logs_dir == tmp_path / "logs"
    assert config.lock_timeout == 45.0


def test_overrides_beat_environment(tmp_path: Path) -> None:
    """Programmatic overrides have the final say."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"GRACEFUL_MONITOR_MANIFEST_DIR": "/from/env"},
        overrides={"manifest_dir": str(tmp_path)},
    )

    assert config.manifest_dir == tmp_path


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """The config renders into plain values."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    data = config.to_dict()

    assert data["manifest_dir"] == "/etc/kubernetes/manifests"
    assert data["iptables"] == {
        "bin": "iptables",
        "chain": "OPENSHIFT_APISERVER_REWRITE",
        "wait": 5,
        "bypass_mark": 0x4D47,
    }


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("unknown_key: 1\n", "Unknown configuration keys"),
        ("iptables:\n  table: filter\n", "Unknown iptables configuration keys"),
        ("probe:\n  retries: 3\n", "Unknown probe configuration keys"),
        ("iptables:\n  chain: THIS_CHAIN_NAME_IS_FAR_TOO_LONG\n", "iptables.chain"),
        ("iptables:\n  wait: -1\n", "non-negative"),
        ("iptables:\n  bypass_mark: 0\n", "bypass_mark"),
        ("iptables:\n  bypass_mark: 0x100000000\n", "bypass_mark"),
        ("probe:\n  timeout: 0\n", "greater than zero"),
        ("probe:\n  interval: soon\n", "Invalid number"),
        ("manifest_prefix: ''\n", "manifest_prefix"),
        ("- a\n- list\n", "mapping at the top level"),
    ],
)
def test_invalid_config_raises(tmp_path: Path, content: str, message: str) -> None:
    """Invalid values are rejected with a descriptive error."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text(content)

    with pytest.raises(ConfigError, match=message):
        load_config(config_file=cfg, env={})
