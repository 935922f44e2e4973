import pytest

from keydesk.app.config import get_settings, load_settings, set_settings


def test_defaults_for_development():
    settings = load_settings({})

    assert settings.app_env == "development"
    assert settings.jwt_secret_key == "dev-secret-change-me"
    assert settings.session_cookie_name == "keydesk_session"
    assert settings.session_cookie_candidates == ("keydesk_session",)
    assert settings.rate_limit_window_seconds == 60.0
    assert settings.rate_limit_max_attempts == 5
    assert settings.session_cookie_secure is False


def test_production_requires_secret():
    with pytest.raises(ValueError):
        load_settings({"APP_ENV": "production"})


def test_production_uses_host_prefixed_cookie():
    settings = load_settings({"APP_ENV": "production", "JWT_SECRET_KEY": "s"})

    assert settings.is_production
    assert settings.session_cookie_name == "__Host-keydesk_session"
    assert settings.session_cookie_candidates == ("__Host-keydesk_session", "keydesk_session")
    assert settings.session_cookie_secure is True


def test_rate_limit_and_database_values_are_parsed():
    settings = load_settings(
        {
            "RATE_LIMIT_WINDOW": "1500",
            "RATE_LIMIT_MAX": "0",
            "DB_PORT": "6543",
            "DB_CONNECT_TIMEOUT": "2.5",
            "DB_STATEMENT_TIMEOUT_MS": "250",
            "CSRF_HEADER_NAME": "X-Token",
        }
    )

    assert settings.rate_limit_window_seconds == 1.5
    assert settings.rate_limit_max_attempts == 1
    assert settings.csrf_header_name == "x-token"
    config = settings.db_config()
    assert config["port"] == 6543
    assert config["connect_timeout"] == 3
    assert config["options"] == "-c statement_timeout=250"


def test_invalid_integer_is_reported():
    with pytest.raises(ValueError):
        load_settings({"DB_PORT": "abc"})


def test_set_settings_overrides_cached_value():
    custom = load_settings({"JWT_SECRET_KEY": "override"})
    set_settings(custom)
    try:
        assert get_settings() is custom
    finally:
        set_settings(None)
