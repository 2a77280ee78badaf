from __future__ import annotations

from pathlib import Path

import pytest

from domain_probes.common_probe import CheckType
from probe_monitoring.config import MonitorConfig, load_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "PROBE_MONITOR_CONFIG",
        "PROBE_MONITOR_DB_PATH",
        "PROBE_MAX_CONCURRENCY",
        "PROBE_RECONCILE_INTERVAL_SECONDS",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path: Path, text: str) -> str:
    path = tmp_path / "probe-monitor.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_load_config_parses_sections(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
log_level: DEBUG
storage:
  db_path: /tmp/x.db
scheduler:
  max_concurrency: 4
probes:
  dns_resolvers: ["1.1.1.1"]
notifications:
  channels:
    - channel: slack
      destination: https://hooks.example/abc
domains:
  - HTTPS://WWW.Example.com/
  - domain: api.example.org
    interval_minutes: 10
    group: backend
    checks:
      tls: false
""",
    )

    config = load_config(path)

    assert config.log_level == "DEBUG"
    assert config.storage.db_path == "/tmp/x.db"
    assert config.scheduler.max_concurrency == 4
    assert config.scheduler.reconcile_interval_seconds == 60
    assert config.probes.dns_resolvers == ["1.1.1.1"]
    assert config.notifications.channels[0].channel == "SLACK"
    assert [d.domain for d in config.domains] == ["example.com", "api.example.org"]
    assert config.domains[0].interval_minutes == 5
    assert config.domains[1].group == "backend"
    assert config.domains[1].checks == {CheckType.TLS: False}


def test_missing_file_gives_defaults(tmp_path: Path) -> None:
    config = load_config(str(tmp_path / "absent.yaml"))

    assert config.domains == []
    assert config.notifications.max_retries == 3
    assert config.notifications.batch_size == 10
    assert config.probes.http_timeout_seconds == 10


def test_env_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _write(tmp_path, "scheduler:\n  max_concurrency: 4\n")
    monkeypatch.setenv("PROBE_MONITOR_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("PROBE_MAX_CONCURRENCY", "16")
    monkeypatch.setenv("PROBE_RECONCILE_INTERVAL_SECONDS", "30")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")

    config = load_config(path)

    assert config.storage.db_path == str(tmp_path / "env.db")
    assert config.scheduler.max_concurrency == 16
    assert config.scheduler.reconcile_interval_seconds == 30
    assert config.log_level == "WARNING"


def test_config_path_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _write(tmp_path, "domains: [example.net]\n")
    monkeypatch.setenv("PROBE_MONITOR_CONFIG", path)

    assert [d.domain for d in load_config().domains] == ["example.net"]


@pytest.mark.parametrize(
    "data",
    [
        {"domains": ["example.com", "www.example.com"]},
        {"domains": [{"domain": "example.com", "interval_minutes": 20}]},
        {"domains": [{"domain": "example.com", "interval_minutes": 0}]},
        {"domains": [{"domain": "   "}]},
        {"scheduler": {"max_concurrency": 0}},
        {"notifications": {"channels": [{"channel": " ", "destination": "x"}]}},
    ],
)
def test_invalid_config_is_rejected(data: dict) -> None:
    with pytest.raises(ValueError):
        MonitorConfig(**data)


def test_non_mapping_yaml_is_rejected(tmp_path: Path) -> None:
    path = _write(tmp_path, "- just\n- a list\n")
    with pytest.raises(ValueError):
        load_config(path)
