import pytest

from src.core.config import get_settings


def _set_minimum_production_env(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "prod-secret-key")
    monkeypatch.setenv("TOKEN_ENCRYPTION_KEY", "Y4Cpe2s2aQvRIvF8y17kF8s0w58K7tY6xE8DAXmXGJQ=")
    monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg2://app:password@db:5432/opshub")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")


def test_requires_secret_key_in_production(monkeypatch) -> None:
    _set_minimum_production_env(monkeypatch)
    monkeypatch.setenv("SECRET_KEY", "")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="SECRET_KEY"):
        get_settings()

    get_settings.cache_clear()


def test_accepts_complete_production_env(monkeypatch) -> None:
    _set_minimum_production_env(monkeypatch)
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.env == "production"
    assert settings.database_url.endswith("/opshub")

    get_settings.cache_clear()


def test_loads_environment_values(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///./data/opshub_test.sqlite")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/9")
    monkeypatch.setenv("PUBLISH_BULK_APPROVAL_THRESHOLD", "25")
    monkeypatch.setenv("WEBHOOK_JOB_PRIORITY", "7")
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.env == "development"
    assert settings.secret_key == "test-secret"
    assert settings.database_url.endswith("opshub_test.sqlite")
    assert settings.redis_url.endswith("/9")
    assert settings.publish_bulk_approval_threshold == 25
    assert settings.webhook_job_priority == 7
    assert settings.job_default_max_attempts == 3

    get_settings.cache_clear()


def test_rejects_invalid_observability_limits(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("SENTRY_TRACES_SAMPLE_RATE", "1.2")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="SENTRY_TRACES_SAMPLE_RATE"):
        get_settings()

    monkeypatch.setenv("SENTRY_TRACES_SAMPLE_RATE", "0.5")
    monkeypatch.setenv("IP_RATE_LIMIT_REQUESTS_PER_WINDOW", "0")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="IP_RATE_LIMIT_REQUESTS_PER_WINDOW"):
        get_settings()

    get_settings.cache_clear()


def test_rejects_invalid_queue_settings(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("JOB_DEFAULT_MAX_ATTEMPTS", "0")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="JOB_DEFAULT_MAX_ATTEMPTS"):
        get_settings()

    monkeypatch.setenv("JOB_DEFAULT_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("JOB_RETRY_BASE_SECONDS", "120")
    monkeypatch.setenv("JOB_RETRY_MAX_BACKOFF_SECONDS", "60")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="JOB_RETRY_MAX_BACKOFF_SECONDS"):
        get_settings()

    monkeypatch.setenv("JOB_RETRY_MAX_BACKOFF_SECONDS", "3600")
    monkeypatch.setenv("APPROVAL_TTL_DAYS", "0")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="APPROVAL_TTL_DAYS"):
        get_settings()

    get_settings.cache_clear()
