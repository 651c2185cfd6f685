import logging
from types import SimpleNamespace

import pytest

from marketplace.core.config import validate_config
from marketplace.core.validation import EnvValidationError, validate_env


def _cfg(**overrides):
    values = {
        "ENV": "production",
        "DATABASE_URL": "postgresql://ledger:secret@db:5432/ledger",
        "TEST_DATABASE_URL": None,
        "ADMIN_KEY": "k",
        "MIN_PAYOUT_AMOUNT": 500,
        "EARNING_MATURATION_DAYS": 7,
        "CONFIG_STRICT": False,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.fixture(autouse=True)
def enforce_validation(monkeypatch):
    monkeypatch.delenv("SKIP_ENV_VALIDATION", raising=False)


def test_production_ok():
    assert validate_env(settings_obj=_cfg()) is True


@pytest.mark.parametrize(
    "overrides",
    [
        {"ADMIN_KEY": None},
        {"DATABASE_URL": None},
        {"DATABASE_URL": "sqlite:///ledger.db"},
        {"DATABASE_URL": "not a url"},
        {"TEST_DATABASE_URL": "sqlite:///test.db"},
    ],
)
def test_production_rejects(overrides):
    with pytest.raises(EnvValidationError):
        validate_env(settings_obj=_cfg(**overrides))


def test_test_database_only_in_test_mode():
    cfg = _cfg(ENV="development", TEST_DATABASE_URL="sqlite:///test.db")
    with pytest.raises(EnvValidationError):
        validate_env(settings_obj=cfg)
    assert validate_env(env="test", settings_obj=cfg) is True


def test_skip_flag(monkeypatch):
    monkeypatch.setenv("SKIP_ENV_VALIDATION", "1")
    assert validate_env(settings_obj=_cfg(ADMIN_KEY=None)) is True


def test_config_warns_when_not_strict(caplog):
    with caplog.at_level(logging.WARNING, logger="marketplace"):
        assert validate_config(strict=False, settings_obj=_cfg(ADMIN_KEY=None)) is True
    assert "ADMIN_KEY" in caplog.text
    assert "secret" not in caplog.text


@pytest.mark.parametrize(
    "overrides",
    [{"ADMIN_KEY": None}, {"MIN_PAYOUT_AMOUNT": 0}, {"EARNING_MATURATION_DAYS": -1}],
)
def test_config_strict_raises(overrides):
    with pytest.raises(RuntimeError):
        validate_config(strict=True, settings_obj=_cfg(**overrides))
