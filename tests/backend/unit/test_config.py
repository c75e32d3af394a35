import logging

from rollrelay.config import configure_logging, load_settings


ENV_NAMES = (
    "ROLLRELAY_SERVICE_KEY",
    "ROLLRELAY_DATABASE_URL",
    "ROLLRELAY_HOST",
    "ROLLRELAY_PORT",
    "ROLLRELAY_STORE_URL",
    "ROLLRELAY_LOG_LEVEL",
    "ROLLRELAY_POLL_INTERVAL_S",
    "ROLLRELAY_OUTCOME_TIMEOUT_S",
    "ROLLRELAY_WATCH_TIMEOUT_S",
    "ROLLRELAY_SWEEP_INTERVAL_S",
    "ROLLRELAY_RETENTION_S",
)


def test_load_settings_reads_expected_env(monkeypatch) -> None:
    monkeypatch.setenv("ROLLRELAY_SERVICE_KEY", "key-1")
    monkeypatch.setenv("ROLLRELAY_DATABASE_URL", "postgresql://local")
    monkeypatch.setenv("ROLLRELAY_HOST", "localhost")
    monkeypatch.setenv("ROLLRELAY_PORT", "9000")
    monkeypatch.setenv("ROLLRELAY_STORE_URL", "http://relay.local")
    monkeypatch.setenv("ROLLRELAY_LOG_LEVEL", "debug")
    monkeypatch.setenv("ROLLRELAY_OUTCOME_TIMEOUT_S", "12.5")
    monkeypatch.setenv("ROLLRELAY_SWEEP_INTERVAL_S", "30")

    settings = load_settings()

    assert settings.service_key == "key-1"
    assert settings.database_url == "postgresql://local"
    assert settings.host == "localhost"
    assert settings.port == 9000
    assert settings.store_url == "http://relay.local"
    assert settings.log_level == "DEBUG"
    assert settings.outcome_timeout_s == 12.5
    assert settings.sweep_interval_s == 30.0


def test_load_settings_applies_defaults(monkeypatch) -> None:
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings.service_key is None
    assert settings.database_url is None
    assert settings.store_url is None
    assert settings.host == "127.0.0.1"
    assert settings.port == 8000
    assert settings.log_level == "INFO"
    assert settings.poll_interval_s == 1.0
    assert settings.outcome_timeout_s == 30.0
    assert settings.watch_timeout_s == 5.0
    assert settings.sweep_interval_s == 0.0
    assert settings.retention_s == 86400.0


def test_load_settings_treats_empty_strings_as_unset(monkeypatch) -> None:
    monkeypatch.setenv("ROLLRELAY_SERVICE_KEY", "")
    monkeypatch.setenv("ROLLRELAY_STORE_URL", "")

    settings = load_settings()

    assert settings.service_key is None
    assert settings.store_url is None


def test_configure_logging_accepts_unknown_level(monkeypatch) -> None:
    calls: list[dict] = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))

    configure_logging("chatty")

    assert calls[0]["level"] == logging.INFO
