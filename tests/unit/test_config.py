"""Tests for configuration loading."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from stepwise.config import StepwiseConfig, load_config
from stepwise.persistence import InMemoryActionLogStore, SQLiteActionLogStore, get_store


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("STEPWISE_CONFIG", "STEPWISE_DATABASE_URL", "DATABASE_URL", "STEPWISE_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
scheduler:
  period_seconds: 15
  batch_size: 20
  lease_timeout_seconds: 120
retry:
  max_retries: 3
dispatch:
  default_endpoint: https://hooks.example.test/default
workflows:
  - id: reminders
    trigger: booking_created
    phase: after
    interval_minutes: 1440
    actions:
      - id: email
        target_endpoint: https://hooks.example.test/email
      - id: crm
        delay_minutes: 30
"""
    )
    monkeypatch.setenv("STEPWISE_CONFIG", str(config_path))

    config = load_config()
    assert config.scheduler.period_seconds == 15
    assert config.scheduler.batch_size == 20
    assert config.scheduler.lease_timeout == timedelta(minutes=2)
    assert config.retry.max_retries == 3
    assert config.retry.base_minutes == 1
    assert config.dispatch.default_endpoint == "https://hooks.example.test/default"

    [workflow] = config.workflows
    assert [a.id for a in workflow.actions] == ["email", "crm"]
    assert [a.order for a in workflow.actions] == [1, 2]
    assert all(a.workflow_id == "reminders" for a in workflow.actions)


def test_missing_file_gives_defaults(tmp_path):
    config = load_config(str(tmp_path / "absent.yaml"))
    assert config == StepwiseConfig()
    assert config.scheduler.period_seconds == 60
    assert config.scheduler.batch_size == 100
    assert config.retry.ceiling_minutes == 180
    assert config.retention_days == 30


def test_env_overrides_database_and_log_level(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite:///ignored.db\nlog_level: INFO\n")
    monkeypatch.setenv("STEPWISE_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")
    monkeypatch.setenv("STEPWISE_LOG_LEVEL", "DEBUG")

    config = load_config(str(config_path))
    assert config.database_url == f"sqlite://{tmp_path / 'env.db'}"
    assert config.log_level == "DEBUG"


def test_invalid_batch_size_rejected(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("scheduler:\n  batch_size: 0\n")
    with pytest.raises(ValidationError):
        load_config(str(config_path))


def test_get_store_selects_backend(tmp_path):
    assert isinstance(get_store(config=StepwiseConfig()), InMemoryActionLogStore)

    store = get_store(f"sqlite://{tmp_path / 'actions.db'}", StepwiseConfig())
    assert isinstance(store, SQLiteActionLogStore)
    store.close()

    with pytest.raises(ValueError):
        get_store("mysql://localhost/db", StepwiseConfig())


def test_lease_must_outlast_dispatch_timeout(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "scheduler:\n  lease_timeout_seconds: 20\ndispatch:\n  timeout_seconds: 30\n"
    )
    with pytest.raises(ValidationError):
        load_config(str(config_path))

    config = StepwiseConfig(
        scheduler={"lease_timeout_seconds": 31}, dispatch={"timeout_seconds": 30}
    )
    assert config.scheduler.lease_timeout == timedelta(seconds=31)


def test_get_store_reads_url_from_config_only(tmp_path, monkeypatch):
    # Environment overrides are applied once, by load_config.
    monkeypatch.setenv("STEPWISE_DATABASE_URL", "mysql://elsewhere/db")
    store = get_store(config=StepwiseConfig(database_url=f"sqlite://{tmp_path / 'cfg.db'}"))
    assert isinstance(store, SQLiteActionLogStore)
    store.close()
