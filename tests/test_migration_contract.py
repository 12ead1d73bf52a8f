from __future__ import annotations

from pathlib import Path


VERSIONS = Path(__file__).resolve().parents[1] / "migrations" / "versions"


def test_org_migration_declares_core_tables_and_rls_contract() -> None:
    source = (VERSIONS / "20261018_0001_orgs_plugins_settings.py").read_text(encoding="utf-8")

    for table in ("orgs", "users", "org_members", "plugins", "plugin_contracts", "stores", "audit_logs"):
        assert f'"{table}",' in source

    assert "uq_plugin_contracts_plugin_capability" in source
    assert "uq_settings_values_definition_scope" in source
    assert 'ORG_SCOPED_TABLES = ["org_members", "stores", "settings_values", "audit_logs"]' in source
    assert '"org_id",\n            "definition_id",\n            "scope",' in source
    assert "ENABLE ROW LEVEL SECURITY" in source
    assert "FORCE ROW LEVEL SECURITY" in source
    assert "app_current_org_id" in source
    assert "audit_logs is append-only" in source


def test_pipeline_migration_declares_idempotency_constraints() -> None:
    source = (VERSIONS / "20261018_0002_job_pipeline.py").read_text(encoding="utf-8")

    assert 'down_revision = "20261018_0001"' in source
    assert "uq_jobs_org_idempotency_key" in source
    assert "uq_webhook_events_org_event_id" in source
    assert "uq_budgets_org_budget_type" in source
    assert "ix_jobs_org_status_priority_scheduled" in source
    assert "ck_jobs_attempts_bounded" in source
    assert "ck_approvals_decided_at" in source
