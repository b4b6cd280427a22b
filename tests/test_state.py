"""Tests for state management and the local issue tracker."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from feature_orchestrator.errors import StateCorruptionError
from feature_orchestrator.models import Feature, FeatureStatus, IssueStatus, ProgressEntry
from feature_orchestrator.state import StateManager
from feature_orchestrator.tracker import LocalIssueTracker


@pytest.fixture
def state(tmp_path: Path) -> StateManager:
    return StateManager(tmp_path / "state")


class TestFeatures:
    def test_empty_when_missing(self, state: StateManager):
        assert state.list_features() == []
        assert state.load_feature("nope") is None

    def test_roundtrip(self, state: StateManager):
        state.save_feature(Feature(name="user-auth", description="Login", base_branch="develop"))
        loaded = state.load_feature("user-auth")
        assert loaded is not None
        assert loaded.description == "Login"
        assert loaded.base_branch == "develop"
        assert loaded.branch == "feature/user-auth"

    def test_save_replaces_by_name(self, state: StateManager):
        state.save_feature(Feature(name="user-auth"))
        state.save_feature(Feature(name="billing"))
        state.save_feature(Feature(name="user-auth", status=FeatureStatus.COMPLETED))
        features = state.list_features()
        assert sorted(f.name for f in features) == ["billing", "user-auth"]
        assert state.load_feature("user-auth").status == FeatureStatus.COMPLETED

    def test_no_tmp_file_left(self, state: StateManager):
        state.save_feature(Feature(name="user-auth"))
        assert not list(state.state_dir.glob("*.tmp"))


class TestCorruption:
    def test_invalid_json(self, state: StateManager):
        state.state_dir.mkdir(parents=True)
        state.features_path.write_text("{not json")
        with pytest.raises(StateCorruptionError):
            state.list_features()

    def test_invalid_record(self, state: StateManager):
        state.state_dir.mkdir(parents=True)
        state.issues_path.write_text('[{"number": "abc"}]')
        with pytest.raises(StateCorruptionError):
            state.load_issues()


class TestProgress:
    def test_append_progress(self, state: StateManager):
        state.append_progress(ProgressEntry(
            timestamp=datetime(2024, 1, 15, 10, 30),
            feature="user-auth",
            issue_number=3,
            title="Login endpoint",
            status="closed",
            summary="Merged after 2 attempts",
            commit_hash="abc1234",
        ))
        state.append_progress(ProgressEntry(
            timestamp=datetime(2024, 1, 15, 11, 0),
            feature="user-auth",
            title="User auth",
            status="failed",
            summary="1 issue failed",
            error="merge conflict",
        ))

        content = state.progress_path.read_text()
        assert "=== user-auth #3: Login endpoint -- closed -- 2024-01-15 10:30 ===" in content
        assert "- Commit: abc1234" in content
        assert "=== user-auth: User auth -- failed -- 2024-01-15 11:00 ===" in content
        assert "- Error: merge conflict" in content


class TestLocalIssueTracker:
    def test_numbers_are_global(self, state: StateManager):
        tracker = LocalIssueTracker(state)
        a = tracker.create_issue("one", "A", "", 1, [], [], 3)
        b = tracker.create_issue("two", "B", "", 1, [], [], 3)
        c = tracker.create_issue("one", "C", "", 2, [a.number], ["backend"], 2)
        assert (a.number, b.number, c.number) == (1, 2, 3)
        assert [i.title for i in tracker.list_issues_for_feature("one")] == ["A", "C"]
        assert tracker.get_issue("one", 3).max_attempts == 2

    def test_list_sorted_by_step(self, state: StateManager):
        tracker = LocalIssueTracker(state)
        tracker.create_issue("feat", "Second", "", 2, [], [], 3)
        tracker.create_issue("feat", "First", "", 1, [], [], 3)
        assert [i.title for i in tracker.list_issues_for_feature("feat")] == ["First", "Second"]

    def test_update_persists(self, state: StateManager):
        tracker = LocalIssueTracker(state)
        issue = tracker.create_issue("feat", "A", "", 1, [], [], 3)
        issue.status = IssueStatus.CLOSED
        issue.merge_commit = "deadbeef"
        tracker.update_issue(issue)

        reloaded = LocalIssueTracker(StateManager(state.state_dir)).get_issue("feat", issue.number)
        assert reloaded.status == IssueStatus.CLOSED
        assert reloaded.merge_commit == "deadbeef"
        assert len(state.load_issues()) == 1

    def test_get_unknown(self, state: StateManager):
        assert LocalIssueTracker(state).get_issue("feat", 9) is None
