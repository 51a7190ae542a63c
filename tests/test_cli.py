"""
Tests for the CLI interface.
"""
import os
import tempfile
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from care_guard.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from care_guard.storage.db import get_connection
from care_guard.storage.models import AuditLogEntry, AuditStatus, UsageRecord
from care_guard.storage.repository import SQLiteAuditSink, UsageRepository, initialize_schema

runner = CliRunner()


@pytest.fixture
def db_path(monkeypatch):
    """Point the CLI at a temporary database."""
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "care_guard.db")
        monkeypatch.setenv("CARE_GUARD_DB_PATH", path)
        monkeypatch.delenv("CARE_GUARD_BUDGET_POLICY", raising=False)
        yield path


@pytest.fixture
def mock_orchestrator():
    """Mock the orchestrator used by the health command."""
    with patch('care_guard.cli.main.ServiceOrchestrator') as mock_class:
        instance = MagicMock()
        instance.initialize = AsyncMock()
        instance.shutdown = AsyncMock()
        instance.perform_health_check = AsyncMock()
        mock_class.return_value = instance
        yield instance


def health_report(status, unhealthy=()):
    return {
        "status": status,
        "services": {
            name: {
                "status": "unhealthy" if name in unhealthy else "healthy",
                "configured": True,
                "ready": True,
            }
            for name in ("nutrition", "ai", "payments", "identity")
        },
        "last_checked": "2024-06-10T09:00:00+00:00",
        "uptime": 1.5,
    }


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_hint(self):
        result = runner.invoke(app, [])
        assert result.exit_code == EXIT_CODE_PASS
        assert "--help" in result.output

    def test_init_creates_database(self, db_path):
        result = runner.invoke(app, ["init"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert os.path.exists(db_path)

    def test_health_healthy(self, db_path, mock_orchestrator):
        mock_orchestrator.perform_health_check.return_value = health_report("healthy")

        result = runner.invoke(app, ["health"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Overall:" in result.output
        assert "healthy" in result.output
        mock_orchestrator.initialize.assert_awaited_once()
        mock_orchestrator.shutdown.assert_awaited_once()

    def test_health_degraded_is_non_failing(self, db_path, mock_orchestrator):
        mock_orchestrator.perform_health_check.return_value = health_report(
            "degraded", unhealthy=("ai", "payments")
        )
        result = runner.invoke(app, ["health"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "degraded" in result.output

    def test_health_unhealthy_fails(self, db_path, mock_orchestrator):
        mock_orchestrator.perform_health_check.return_value = health_report(
            "unhealthy", unhealthy=("ai", "payments", "identity")
        )
        result = runner.invoke(app, ["health"])
        assert result.exit_code == EXIT_CODE_FAIL

    def test_health_initialize_error(self, db_path, mock_orchestrator):
        mock_orchestrator.initialize.side_effect = RuntimeError("boom")
        result = runner.invoke(app, ["health"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "boom" in result.output

    def test_budget_replays_ledger(self, db_path):
        initialize_schema(db_path)
        repository = UsageRepository(db_path)
        now = datetime.now()
        for cost in (1.5, 1.0):
            repository.append(UsageRecord(
                timestamp=now, tenant_id="clinic-a", user_id="user-1",
                service="nutrition", operation="search_recipes", cost=cost
            ))

        result = runner.invoke(app, ["budget", "user-1", "--tenant", "clinic-a"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Monthly API Budget" in result.output
        assert "$2.5000" in result.output
        assert "Over 50% of the monthly budget used" not in result.output

    def test_budget_bad_policy_fails(self, db_path, monkeypatch):
        monkeypatch.setenv("CARE_GUARD_BUDGET_POLICY", os.path.join(os.path.dirname(db_path), "missing.yaml"))
        result = runner.invoke(app, ["budget", "user-1"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Budget policy file not found" in result.output

    def test_audit_empty(self, db_path):
        result = runner.invoke(app, ["audit", "clinic-a"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "No audit entries found" in result.output

    def test_audit_lists_and_verifies(self, db_path):
        initialize_schema(db_path)
        sink = SQLiteAuditSink(db_path)
        sink.write(AuditLogEntry(
            tenant_id="clinic-a",
            action="database.select",
            resource_type="profile",
            phi_accessed=True,
            execution_time_ms=2.5,
            timestamp=datetime(2024, 6, 10, 9, 0, 0, tzinfo=timezone.utc),
            status=AuditStatus.SUCCESS,
            user_id="user-1",
        ))

        result = runner.invoke(app, ["audit", "clinic-a", "--verify"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "database.select" in result.output
        assert "hash chain verified" in result.output

    def test_audit_broken_chain_fails(self, db_path):
        initialize_schema(db_path)
        sink = SQLiteAuditSink(db_path)
        for _ in range(2):
            sink.write(AuditLogEntry(
                tenant_id="clinic-a",
                action="database.update",
                resource_type="profile",
                phi_accessed=True,
                execution_time_ms=1.0,
                timestamp=datetime(2024, 6, 10, 9, 0, 0, tzinfo=timezone.utc),
                status=AuditStatus.SUCCESS,
            ))
        conn = get_connection(db_path)
        try:
            conn.execute("DROP TRIGGER audit_log_no_update")
            conn.execute("UPDATE audit_log SET phi_accessed = 0 WHERE id = 1")
            conn.commit()
        finally:
            conn.close()

        result = runner.invoke(app, ["audit", "clinic-a", "--verify"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "broken" in result.output
