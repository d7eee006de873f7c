"""Tests for configuration loading."""

import pytest

from cloud_session.config import AppConfig, load_config


def test_defaults():
    config = AppConfig()
    assert config.session.request_timeout == 30
    assert config.storage.retention_hours == 24
    assert config.storage.history_limit == 50
    assert config.api.session_header == "X-Session-Id"


def test_load_with_env_interpolation(tmp_path, monkeypatch):
    monkeypatch.setenv("CLOUD_SESSION_TOKEN", "tok-123")
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        "data_dir: /var/lib/cloud-session\n"
        "api:\n"
        "  base_url: http://backend.test\n"
        "  auth_token: ${CLOUD_SESSION_TOKEN}\n"
        "storage:\n"
        "  db_path: ${data_dir}/sessions.db\n"
        "session:\n"
        "  request_timeout: 12\n",
        encoding="utf-8",
    )

    config = load_config(config_file, env_path=tmp_path / "missing.env")

    assert config.api.auth_token == "tok-123"
    assert config.storage.db_path == "/var/lib/cloud-session/sessions.db"
    assert config.session.request_timeout == 12


def test_dotenv_file_is_loaded(tmp_path, monkeypatch):
    monkeypatch.delenv("CLOUD_SESSION_URL", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("CLOUD_SESSION_URL=http://from-dotenv.test\n", encoding="utf-8")
    config_file = tmp_path / "config.yaml"
    config_file.write_text("api:\n  base_url: ${CLOUD_SESSION_URL}\n", encoding="utf-8")

    config = load_config(config_file, env_path=env_file)
    assert config.api.base_url == "http://from-dotenv.test"
    monkeypatch.delenv("CLOUD_SESSION_URL", raising=False)


def test_unknown_variable_left_as_is(tmp_path, monkeypatch):
    monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
    config_file = tmp_path / "config.yaml"
    config_file.write_text("api:\n  auth_token: ${NOT_SET_ANYWHERE}\n", encoding="utf-8")
    assert load_config(config_file, env_path=tmp_path / "none").api.auth_token == "${NOT_SET_ANYWHERE}"


def test_empty_file_gives_defaults(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("", encoding="utf-8")
    assert load_config(config_file, env_path=tmp_path / "none") == AppConfig()


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml", env_path=tmp_path / "none")
