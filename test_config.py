#!/usr/bin/env python3
"""
Tests for loading, saving and validating the datastash configuration.
"""

import json
from pathlib import Path

from datastash.config import ENV_CONFIG_PATH, ENV_DATA_DIR, ENV_SMTP_PASSWORD, StashConfig


def test_defaults_live_under_data_dir(tmp_path, monkeypatch):
    monkeypatch.delenv(ENV_DATA_DIR, raising=False)
    monkeypatch.delenv(ENV_SMTP_PASSWORD, raising=False)
    data_dir = tmp_path / "stash"
    config = StashConfig(config_path=str(tmp_path / "missing.json"), data_dir=str(data_dir))

    assert config.data_dir == data_dir.resolve()
    assert config.source_location == config.data_dir / "source"
    assert config.database == config.data_dir / "stash.db"
    assert config.logging.file == str(config.data_dir / "logs" / "datastash.log")
    assert config.stored_runs == 50
    assert config.poll_interval_seconds == 10
    assert not config.email.configured
    assert config.validate() == []


def test_config_path_from_environment(tmp_path, monkeypatch):
    config_file = tmp_path / "from-env.json"
    config_file.write_text(json.dumps({'stored_runs': 7}))
    monkeypatch.setenv(ENV_CONFIG_PATH, str(config_file))

    config = StashConfig(data_dir=str(tmp_path))

    assert config.config_path == config_file
    assert config.stored_runs == 7


def test_data_dir_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv(ENV_DATA_DIR, str(tmp_path / "env-data"))
    config = StashConfig(config_path=str(tmp_path / "missing.json"))

    assert config.data_dir == (tmp_path / "env-data").resolve()


def test_save_and_reload_round_trip(tmp_path, monkeypatch):
    monkeypatch.delenv(ENV_SMTP_PASSWORD, raising=False)
    config_file = tmp_path / "config.json"
    config = StashConfig(config_path=str(config_file), data_dir=str(tmp_path))
    config.stored_runs = 3
    config.email.host = "smtp.example.com"
    config.email.password = "secret"
    config.save()

    saved = json.loads(config_file.read_text())
    assert saved['email']['password'] is None

    reloaded = StashConfig(config_path=str(config_file))
    assert reloaded.stored_runs == 3
    assert reloaded.email.host == "smtp.example.com"
    assert reloaded.data_dir == Path(tmp_path).resolve()


def test_smtp_password_comes_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv(ENV_SMTP_PASSWORD, "from-env")
    config = StashConfig(config_path=str(tmp_path / "missing.json"), data_dir=str(tmp_path))

    assert config.email.password == "from-env"


def test_validate_reports_bad_values(tmp_path):
    config = StashConfig(config_path=str(tmp_path / "missing.json"), data_dir=str(tmp_path))
    config.stored_runs = 0
    config.command_timeout = -1
    config.logging.level = "LOUD"

    errors = config.validate()

    assert len(errors) == 3
    assert any('stored_runs' in error for error in errors)
    assert any('LOUD' in error for error in errors)
