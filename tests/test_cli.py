"""Tests for the command-line interface."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from feature_orchestrator.cli import EXIT_COMPLETED, EXIT_CONFIG_ERROR, main
from feature_orchestrator.models import Feature, FeatureStatus
from feature_orchestrator.state import StateManager
from feature_orchestrator.tracker import LocalIssueTracker


class TestStatus:
    def test_no_features(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]):
        assert main(["status", "--project", str(tmp_path)]) == EXIT_COMPLETED
        assert "No features recorded yet." in capsys.readouterr().out

    def test_lists_features_and_issues(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]):
        state = StateManager(tmp_path / ".orchestrator")
        state.save_feature(Feature(name="user-auth", status=FeatureStatus.IN_PROGRESS))
        tracker = LocalIssueTracker(state)
        first = tracker.create_issue("user-auth", "Model", "", 1, [], [], 3)
        tracker.create_issue("user-auth", "Endpoint", "", 2, [first.number], [], 3)

        assert main(["status", "--project", str(tmp_path), "user-auth"]) == EXIT_COMPLETED
        out = capsys.readouterr().out
        assert "user-auth [in_progress] on feature/user-auth" in out
        assert "#2 step 2: Endpoint [open, 0/3 attempts] (deps: #1)" in out

    def test_unknown_feature(self, tmp_path: Path):
        assert main(["status", "--project", str(tmp_path), "ghost"]) == EXIT_CONFIG_ERROR


class TestRun:
    def test_invalid_feature_name(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]):
        code = main(["run", "--project", str(tmp_path), "--name", "Not Kebab"])
        assert code == EXIT_CONFIG_ERROR
        assert "Invalid feature name" in capsys.readouterr().err

    def test_unreadable_issues_file(self, tmp_path: Path):
        code = main([
            "run", "--project", str(tmp_path), "--name", "ok-name",
            "--issues-file", str(tmp_path / "missing.json"),
        ])
        assert code == EXIT_CONFIG_ERROR

    def test_invalid_issues_file(self, tmp_path: Path):
        issues = tmp_path / "issues.json"
        issues.write_text(json.dumps([{"title": "no step"}]))
        code = main(["run", "--project", str(tmp_path), "--name", "ok-name", "--issues-file", str(issues)])
        assert code == EXIT_CONFIG_ERROR

    def test_corrupt_state_is_reported_without_traceback(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]):
        cli = tmp_path / "claude"
        cli.write_text("#!/bin/sh\necho '2.0.1 (Claude Code)'\n")
        cli.chmod(0o755)
        (tmp_path / "orchestrator.toml").write_text(f'cli_path = "{cli}"\nstructured_log = false\n')
        state_dir = tmp_path / ".orchestrator"
        state_dir.mkdir()
        (state_dir / "features.json").write_text("{not json")

        code = main(["run", "--project", str(tmp_path), "--name", "ok-name"])
        assert code == EXIT_CONFIG_ERROR
        err = capsys.readouterr().err
        assert "Cannot parse" in err
        assert "Traceback" not in err


class TestCheck:
    def test_missing_cli(self, tmp_path: Path):
        (tmp_path / "orchestrator.toml").write_text(f'cli_path = "{tmp_path / "no-such-claude"}"\n')
        assert main(["check", "--project", str(tmp_path)]) == EXIT_CONFIG_ERROR

    def test_invalid_config_value(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]):
        (tmp_path / "orchestrator.toml").write_text("max_concurrent_tasks = 9\n")
        assert main(["check", "--project", str(tmp_path)]) == EXIT_CONFIG_ERROR
        assert "Configuration error" in capsys.readouterr().err

    def test_too_few_reviewer_profiles(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]):
        (tmp_path / "orchestrator.toml").write_text('required_approvals = 3\nreviewer_profiles = ["backend"]\n')
        assert main(["check", "--project", str(tmp_path)]) == EXIT_CONFIG_ERROR
        assert "required_approvals (3)" in capsys.readouterr().err
