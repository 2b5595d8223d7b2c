"""Tests for application settings."""

from reconciler.config import Settings, parse_comma_list


def test_parse_comma_list() -> None:
    assert parse_comma_list(None, ["a"]) == ["a"]
    assert parse_comma_list(["x"], []) == ["x"]
    assert parse_comma_list(" http://a , ,http://b ", []) == ["http://a", "http://b"]


def test_settings_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("CORS_ORIGINS", "http://one,http://two")
    monkeypatch.setenv("RECONCILIATION_USER", "ops@example.com")
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    monkeypatch.setenv("ENV", "staging")

    settings = Settings(_env_file=None)

    assert settings.cors_origins == ["http://one", "http://two"]
    assert settings.reconciliation_user == "ops@example.com"
    assert settings.environment == "staging"


def test_sqlite_detection(monkeypatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    assert Settings(_env_file=None).is_sqlite
