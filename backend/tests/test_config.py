from app.core.config import Environment, Settings, apply_environment_overrides, settings


def test_test_session_runs_in_testing_mode():
    assert settings.is_testing
    assert settings.is_sqlite
    assert settings.rate_limit_enabled is False


def test_overrides_fill_unset_values(monkeypatch):
    monkeypatch.delenv("RATE_LIMIT_ENABLED", raising=False)

    config = apply_environment_overrides(Settings(environment=Environment.PRODUCTION, _env_file=None))

    assert config.log_level == "WARNING"
    assert config.rate_limit_enabled is True


def test_explicit_values_beat_overrides(monkeypatch):
    monkeypatch.delenv("RATE_LIMIT_ENABLED", raising=False)

    config = apply_environment_overrides(
        Settings(environment=Environment.PRODUCTION, log_level="debug", _env_file=None)
    )

    assert config.log_level == "DEBUG"


def test_sqlite_has_no_pool_options():
    assert Settings(database_url="sqlite://", _env_file=None).engine_options() == {}
    assert Settings(database_url="postgresql://db/chats", _env_file=None).engine_options() == {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
    }
