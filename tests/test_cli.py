"""Tests for the webrecover command line."""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from webrecover import __version__
from webrecover.cli import main
from webrecover.observability import AuditEventType, AuditLog
from webrecover.solutions.store import SolutionStore

from conftest import make_stored_solution


@pytest.fixture
def runner(tmp_path):
    """CliRunner isolated from the user's configuration and environment."""
    return CliRunner(
        env={
            "WEBRECOVER_CONFIG": str(tmp_path / "config.toml"),
            "WEBRECOVER_PROFILE": "default",
            "ANTHROPIC_API_KEY": "",
            "WEBRECOVER_DB_PATH": "",
            "WEBRECOVER_AUDIT_LOG": "",
        }
    )


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "solutions.db"
    store = SolutionStore(path)
    store.store(make_stored_solution("proven", actual_success_rate=0.9))
    store.store(make_stored_solution("shaky", actual_success_rate=0.3))
    store.close()
    return path


class TestMain:
    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert f"webrecover version {__version__}" in result.output

    def test_help_without_command(self, runner):
        result = runner.invoke(main, [])
        assert result.exit_code == 0
        assert "classify" in result.output


class TestClassify:
    def test_known_timeout(self, runner):
        result = runner.invoke(main, ["classify", "Timeout 30000ms exceeded waiting for selector"])

        assert result.exit_code == 0
        assert "Category: timeout" in result.output
        assert "Known issue: yes" in result.output
        assert "Quick fix: wait_for_element" in result.output

    def test_non_recoverable(self, runner):
        result = runner.invoke(main, ["classify", "Permission", "denied"])
        assert "Recovery would not be attempted" in result.output

    def test_message_required(self, runner):
        assert runner.invoke(main, ["classify"]).exit_code != 0


class TestConfigCommands:
    """Tests for config show/init/validate."""

    def test_show(self, runner):
        result = runner.invoke(main, ["config", "show"])
        assert result.exit_code == 0
        assert "Profile: default" in result.output
        assert "api_key = (not set)" in result.output

    def test_init_writes_profile(self, runner, tmp_path):
        result = runner.invoke(main, ["config", "init", "--profile", "test"])

        assert result.exit_code == 0
        assert (tmp_path / "config.toml").exists()
        assert "Profile: test" in runner.invoke(main, ["config", "show"]).output

    def test_init_refuses_to_overwrite(self, runner, tmp_path):
        runner.invoke(main, ["config", "init"])
        result = runner.invoke(main, ["config", "init"])
        assert "already exists" in result.output

    def test_validate_clean(self, runner):
        result = runner.invoke(main, ["config", "validate"])
        assert result.exit_code == 0
        assert "Configuration is valid" in result.output

    def test_validate_reports_reset_values(self, runner, tmp_path):
        (tmp_path / "config.toml").write_text("[generator]\nmax_requests_per_minute = 500\n")
        result = runner.invoke(main, ["config", "validate"])

        assert result.exit_code == 1
        assert "reset to defaults" in result.output


class TestSolutionsCommands:
    """Tests for solution library maintenance."""

    def test_stats(self, runner, db_path):
        result = runner.invoke(main, ["solutions", "stats", "--db", str(db_path)])

        assert result.exit_code == 0
        assert "Total: 2" in result.output
        assert "Active: 2" in result.output

    def test_json_export_to_stdout(self, runner, db_path):
        result = runner.invoke(main, ["solutions", "export", "--db", str(db_path)])

        assert result.exit_code == 0
        assert json.loads(result.output)["total_solutions"] == 2

    def test_community_export_and_trusted_import(self, runner, db_path, tmp_path):
        exported = tmp_path / "community.json"
        result = runner.invoke(
            main,
            ["solutions", "export", "--db", str(db_path), "--format", "community", "--anonymize",
             "--min-success-rate", "0.0", "-o", str(exported)],
        )
        assert result.exit_code == 0
        assert len(json.loads(exported.read_text())["solutions"]) == 2

        target = tmp_path / "target.db"
        result = runner.invoke(
            main, ["solutions", "import", "--db", str(target), str(exported), "--trust", "medium"]
        )

        assert result.exit_code == 0
        assert "Imported 1" in result.output
        store = SolutionStore(target)
        assert store.get("proven") is not None
        assert store.get("shaky") is None
        store.close()

    def test_deprecate(self, runner, db_path):
        result = runner.invoke(main, ["solutions", "deprecate", "--db", str(db_path), "shaky", "-r", "flaky"])
        assert result.exit_code == 0

        store = SolutionStore(db_path)
        assert store.get("shaky").metadata.deprecated_reason == "flaky"
        store.close()

    def test_deprecate_unknown_fails(self, runner, db_path):
        result = runner.invoke(main, ["solutions", "deprecate", "--db", str(db_path), "missing"])
        assert result.exit_code == 1

    def test_backup(self, runner, db_path):
        result = runner.invoke(main, ["solutions", "backup", "--db", str(db_path)])

        assert result.exit_code == 0
        assert len(list((db_path.parent / "backups").glob("*.db"))) == 1


class TestAuditCommands:
    def test_stats(self, runner, tmp_path):
        path = tmp_path / "audit.jsonl"
        log = AuditLog(path)
        log.log(AuditEventType.EXECUTION, "s", 100.0, {"success": True})
        log.log(AuditEventType.DECISION, "s", 50.0)

        result = runner.invoke(main, ["audit", "stats", "--log", str(path)])

        assert result.exit_code == 0
        assert "Events: 2" in result.output
        assert "Execution success rate: 100%" in result.output

    def test_missing_log(self, runner, tmp_path):
        result = runner.invoke(main, ["audit", "stats", "--log", str(tmp_path / "none.jsonl")])
        assert result.exit_code == 0
        assert "No audit log" in result.output
