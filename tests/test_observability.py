from types import SimpleNamespace

from src.core import observability


def _settings(dsn: str, *, env: str = "production", rate: float = 0.0) -> SimpleNamespace:
    return SimpleNamespace(
        sentry_dsn=dsn,
        env=env,
        app_name="opshub",
        app_version="0.1.0",
        sentry_traces_sample_rate=rate,
    )


def test_init_sentry_skips_when_dsn_missing(monkeypatch) -> None:
    observability.reset_observability_for_tests()
    calls = []

    monkeypatch.setattr(observability, "_call_sentry_init", lambda **kwargs: calls.append(kwargs))
    monkeypatch.setattr(observability, "get_settings", lambda: _settings("", env="development"))

    assert observability.init_sentry() is False
    assert calls == []
    observability.reset_observability_for_tests()


def test_init_sentry_initializes_once(monkeypatch) -> None:
    observability.reset_observability_for_tests()
    calls = []

    monkeypatch.setattr(observability, "FastApiIntegration", lambda: object())
    monkeypatch.setattr(observability, "_call_sentry_init", lambda **kwargs: calls.append(kwargs))
    monkeypatch.setattr(
        observability,
        "get_settings",
        lambda: _settings("https://abc@example.ingest.sentry.io/1", rate=0.2),
    )

    assert observability.init_sentry() is True
    assert observability.init_sentry() is True
    assert len(calls) == 1
    assert calls[0]["dsn"] == "https://abc@example.ingest.sentry.io/1"
    assert calls[0]["environment"] == "production"
    assert calls[0]["release"] == "opshub@0.1.0"
    assert calls[0]["traces_sample_rate"] == 0.2
    observability.reset_observability_for_tests()


def test_scope_and_capture_are_noops_before_init(monkeypatch) -> None:
    observability.reset_observability_for_tests()
    captured = []
    monkeypatch.setattr(observability.sentry_sdk, "capture_exception", lambda exc: captured.append(exc))

    with observability.sentry_scope(org_id="org-1", request_id="req-1"):
        observability.capture_exception(RuntimeError("boom"))

    assert captured == []
