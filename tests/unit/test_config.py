"""Tests for configuration loading."""

import logging

from signalflow.config import load_config
from signalflow.persistence import SQLiteWorkflowStore, get_store


def _clear_env(monkeypatch):
    for name in (
        "SIGNALFLOW_CONFIG",
        "KEEPALIVE_INTERVAL",
        "SIGNALFLOW_DATABASE_URL",
        "DATABASE_URL",
        "CONNECTOR_SCHEMA_URL",
        "WEB3_CONNECTOR_URL",
        "MASTER_KEY",
        "SIGNALFLOW_LOG_LEVEL",
        "SIGNALFLOW_LOAD_WORKFLOWS",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_config_file(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    config = load_config(str(tmp_path / "missing.yaml"))
    assert config.runtime.keepalive_interval == 60
    assert config.runtime.max_start_attempts == 10
    assert config.database_url is None
    assert config.load_workflows is True


def test_load_config_from_yaml(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
runtime:
  retry_delay: 2.5
schemas:
  base_url: https://schemas.example.com/
database_url: sqlite:///tmp/flows.db
"""
    )
    monkeypatch.setenv("SIGNALFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.runtime.retry_delay == 2.5
    assert config.schemas.base_url == "https://schemas.example.com/"
    assert config.database_url == "sqlite:///tmp/flows.db"


def test_environment_overrides(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("KEEPALIVE_INTERVAL", "30000")
    monkeypatch.setenv("DATABASE_URL", "postgresql://db/flows")
    monkeypatch.setenv("WEB3_CONNECTOR_URL", "wss://web3.example.com/")
    monkeypatch.setenv("SIGNALFLOW_LOAD_WORKFLOWS", "false")

    config = load_config(str(tmp_path / "missing.yaml"))
    assert config.runtime.keepalive_interval == 30
    assert config.database_url == "postgresql://db/flows"
    assert config.schemas.web3_connector_url == "wss://web3.example.com/"
    assert config.load_workflows is False


def test_invalid_keepalive_is_ignored_with_warning(tmp_path, monkeypatch, caplog):
    _clear_env(monkeypatch)
    monkeypatch.setenv("KEEPALIVE_INTERVAL", "soon")
    with caplog.at_level(logging.WARNING, logger="signalflow.config"):
        config = load_config(str(tmp_path / "missing.yaml"))
    assert config.runtime.keepalive_interval == 60
    assert "Ignoring invalid KEEPALIVE_INTERVAL 'soon'" in caplog.text


def test_get_store_uses_database_url(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    store = get_store(f"sqlite://{tmp_path / 'flows.db'}")
    assert isinstance(store, SQLiteWorkflowStore)
