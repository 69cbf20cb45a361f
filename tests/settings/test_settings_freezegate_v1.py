"""Settings with pydantic-settings BaseSettings and the FREEZEGATE_ prefix."""
from __future__ import annotations

from datetime import timedelta

import pytest

from freezegate.config.settings import Settings
from freezegate.freezer.errors import InvalidDuration


def test_settings_default_values():
    cfg = Settings()
    assert cfg.STORE_BACKEND == "memory"
    assert cfg.CHECK_NAME == "freezegate"
    assert cfg.RECONCILE_MAX_RETRIES == 3
    assert cfg.get_default_freeze_duration() == timedelta(hours=2)
    assert not cfg.is_prod()


def test_settings_env_override(monkeypatch):
    monkeypatch.setenv("FREEZEGATE_ENV", "prod")
    monkeypatch.setenv("FREEZEGATE_STORE_BACKEND", "sqlite")
    monkeypatch.setenv("FREEZEGATE_RECONCILE_MAX_CONCURRENCY", "3")
    monkeypatch.setenv("FREEZEGATE_FREEZE_DEFAULT_DURATION", "PT30M")
    cfg = Settings()
    assert cfg.is_prod()
    assert cfg.STORE_BACKEND == "sqlite"
    assert cfg.RECONCILE_MAX_CONCURRENCY == 3
    assert cfg.get_default_freeze_duration() == timedelta(minutes=30)


@pytest.mark.parametrize("raw", ["", "none", "0"])
def test_default_duration_can_be_disabled(raw):
    assert Settings(FREEZE_DEFAULT_DURATION=raw).get_default_freeze_duration() is None


def test_invalid_default_duration():
    with pytest.raises(InvalidDuration):
        Settings(FREEZE_DEFAULT_DURATION="soon").get_default_freeze_duration()
