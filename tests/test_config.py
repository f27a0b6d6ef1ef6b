"""Тесты загрузки конфигурации Settings из переменных окружения."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from failsig.config import Settings


def test_settings_defaults_are_applied(monkeypatch, tmp_path) -> None:
    """Без переменных окружения все поля имеют дефолты."""
    monkeypatch.chdir(tmp_path)  # изоляция от .env в корне проекта

    settings = Settings()

    assert settings.store_backend == "memory"
    assert settings.rules_backend == "yaml"
    assert settings.rules_path == "rules"
    assert settings.signature_frame_count == 3
    assert settings.error_type_max_length == 50
    assert settings.conflict_retries == 3
    assert settings.push_enabled is False
    assert settings.push_pending_timeout == 600
    assert settings.push_labels_prefix == "auto-defect"
    assert settings.log_level == "INFO"


def test_settings_loads_from_env_vars(monkeypatch, tmp_path) -> None:
    """Settings корректно читает FAILSIG_* переменные окружения."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("FAILSIG_STORE_BACKEND", "postgres")
    monkeypatch.setenv("FAILSIG_POSTGRES_DSN", "postgresql://u:p@localhost/failsig")
    monkeypatch.setenv("FAILSIG_SIGNATURE_FRAME_COUNT", "5")
    monkeypatch.setenv("FAILSIG_PUSH_ENABLED", "true")

    settings = Settings()

    assert settings.store_backend == "postgres"
    assert settings.postgres_dsn == "postgresql://u:p@localhost/failsig"
    assert settings.signature_frame_count == 5
    assert settings.push_enabled is True


def test_settings_reads_env_file(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text("FAILSIG_RULES_PATH=/etc/failsig/rules\n", encoding="utf-8")

    assert Settings().rules_path == "/etc/failsig/rules"


def test_invalid_values_are_rejected(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("FAILSIG_STORE_BACKEND", "mongo")

    with pytest.raises(ValidationError):
        Settings()


def test_frame_count_bounds(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("FAILSIG_SIGNATURE_FRAME_COUNT", "0")

    with pytest.raises(ValidationError):
        Settings()
