import importlib

import pytest
from pydantic import ValidationError


def _load_settings(monkeypatch, extra_env=None):
    import flagvault.core.config as config

    monkeypatch.setenv("SKIP_MIGRATIONS", "1")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    if extra_env:
        for key, value in extra_env.items():
            monkeypatch.setenv(key, value)
    importlib.reload(config)
    return config.Settings


def test_settings_defaults(monkeypatch):
    Settings = _load_settings(monkeypatch)
    cfg = Settings(_env_file=None)
    assert cfg.FLAG_ENVIRONMENTS == ["prod", "staging", "dev"]
    assert cfg.DEFAULT_ENVIRONMENT == "prod"
    assert cfg.TENANT_LABELS == ["Public", "Family", "Staff"]
    assert cfg.DEFAULT_TENANT == "Public"
    assert cfg.STAFF_EMAIL_DOMAIN == "@familycirclesecure.com"
    assert cfg.FLAG_SNAPSHOT_TTL_SECONDS == 30
    assert cfg.PREVIEW_HEADER_NAME == "X-Preview-User"
    assert cfg.ADMIN_ROLES == ["Admin", "Staff"]


def test_settings_env_overrides(monkeypatch):
    Settings = _load_settings(
        monkeypatch,
        {
            "FLAG_ENVIRONMENTS": "prod, qa",
            "TENANT_LABELS": '["Public","Partners"]',
            "ADMIN_ROLES": '["Owner"]',
            "STAFF_EMAIL_DOMAIN": "@example.org",
            "FLAG_SNAPSHOT_TTL_SECONDS": "0",
            "USER_ID_HEADER": "X-Auth-User",
        },
    )
    cfg = Settings(_env_file=None)
    assert cfg.FLAG_ENVIRONMENTS == ["prod", "qa"]
    assert cfg.TENANT_LABELS == ["Public", "Partners"]
    assert cfg.ADMIN_ROLES == ["Owner"]
    assert cfg.STAFF_EMAIL_DOMAIN == "@example.org"
    assert cfg.FLAG_SNAPSHOT_TTL_SECONDS == 0
    assert cfg.USER_ID_HEADER == "X-Auth-User"
    assert cfg.DATABASE_URL == "sqlite:///:memory:"


def test_snapshot_ttl_must_not_be_negative(monkeypatch):
    Settings = _load_settings(monkeypatch)
    with pytest.raises(ValidationError):
        Settings(_env_file=None, FLAG_SNAPSHOT_TTL_SECONDS=-1)


def test_default_environment_must_be_listed(monkeypatch):
    Settings = _load_settings(monkeypatch)
    with pytest.raises(ValidationError):
        Settings(_env_file=None, DEFAULT_ENVIRONMENT="qa")
    with pytest.raises(ValidationError):
        Settings(_env_file=None, DEFAULT_TENANT="Martians")


def test_list_settings_accept_comma_separated_values(monkeypatch):
    Settings = _load_settings(monkeypatch)
    cfg = Settings(_env_file=None, FLAG_ENVIRONMENTS="prod, staging ,dev,", ADMIN_ROLES="Admin")
    assert cfg.FLAG_ENVIRONMENTS == ["prod", "staging", "dev"]
    assert cfg.ADMIN_ROLES == ["Admin"]
