"""End-to-end orchestrator tests: real git, scripted agents."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from feature_orchestrator.config import OrchestratorConfig
from feature_orchestrator.errors import ConfigurationError, DependencyCycleError, FeatureNotFoundError
from feature_orchestrator.models import (
    AgentType,
    FeatureSpec,
    FeatureStatus,
    IssueSpec,
    IssueState,
    IssueStatus,
)
from feature_orchestrator.orchestrator import Orchestrator
from feature_orchestrator.state import StateManager
from feature_orchestrator.tracker import LocalIssueTracker

from conftest import FakeInvoker, RecordingSink, git


def make_orchestrator(config: OrchestratorConfig, invoker: FakeInvoker) -> tuple[Orchestrator, RecordingSink]:
    sink = RecordingSink()
    return Orchestrator(config, invoker=invoker, events=sink), sink


def branch_exists(repo: Path, branch: str) -> bool:
    return git("branch", "--list", branch, cwd=repo) != ""


async def reject(kind, prompt, working_dir, issue_number) -> str:
    return "VERDICT: REJECT"


class TestExecuteFeature:
    @pytest.mark.asyncio
    async def test_dependent_issues_merge_into_base(self, config: OrchestratorConfig, git_repo: Path, origin: Path):
        invoker = FakeInvoker()
        orch, sink = make_orchestrator(config, invoker)
        result = await orch.execute_feature(FeatureSpec(
            name="user-auth",
            description="Login support",
            issues=[
                IssueSpec(step_number=1, title="User model"),
                IssueSpec(step_number=2, title="Login endpoint", dependencies=[1]),
            ],
        ))

        assert result.status == FeatureStatus.COMPLETED
        assert result.error is None
        assert result.closed_issues == [1, 2]
        assert [o.state for o in result.outcomes] == [IssueState.CLOSED, IssueState.CLOSED]
        assert (git_repo / "issue-1.txt").exists()
        assert (git_repo / "issue-2.txt").exists()
        assert git("rev-parse", "main", cwd=origin) == git("rev-parse", "main", cwd=git_repo)

        states = sink.issue_states()
        assert states.index((2, "solving")) > states.index((1, "closed"))

        assert not branch_exists(git_repo, "feature/user-auth-issue-1")
        assert not (config.base_worktree_path / "proj-user-auth").exists()
        assert orch.get_feature_status("user-auth").status == FeatureStatus.COMPLETED
        assert "user-auth: Login support -- completed" in orch.state.progress_path.read_text()

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, config: OrchestratorConfig):
        invoker = FakeInvoker()
        orch, _ = make_orchestrator(config, invoker)
        result = await orch.execute_feature(FeatureSpec(
            name="wide",
            issues=[IssueSpec(step_number=n, title=f"Part {n}") for n in range(1, 6)],
        ))

        assert result.status == FeatureStatus.COMPLETED
        assert result.closed_issues == [1, 2, 3, 4, 5]
        assert 1 <= invoker.max_active_issues <= config.max_concurrent_tasks

    @pytest.mark.asyncio
    async def test_conflicting_issue_fails_under_manual_policy(self, config: OrchestratorConfig, git_repo: Path):
        started = 0
        both_started = asyncio.Event()

        async def solver(kind, prompt, working_dir, issue_number) -> str:
            nonlocal started
            started += 1
            if started == 2:
                both_started.set()
            await both_started.wait()
            (working_dir / "shared.txt").write_text(f"written by issue {issue_number}\n")
            return "done"

        orch, _ = make_orchestrator(config, FakeInvoker(solver=solver))
        result = await orch.execute_feature(FeatureSpec(
            name="clash",
            issues=[IssueSpec(step_number=1, title="One"), IssueSpec(step_number=2, title="Two")],
        ))

        assert result.status == FeatureStatus.FAILED
        assert len(result.closed_issues) == 1
        assert len(result.failed_issues) == 1
        closed = next(o for o in result.outcomes if o.state == IssueState.CLOSED)
        failed = next(o for o in result.outcomes if o.state == IssueState.FAILED)
        assert "shared.txt" in failed.error

        assert git("rev-parse", "feature/clash", cwd=git_repo) == closed.merge_commit
        assert (config.base_worktree_path / f"proj-clash-issue-{failed.number}").exists()
        assert not (git_repo / "shared.txt").exists()

    @pytest.mark.asyncio
    async def test_failed_dependency_blocks_dependents(self, config: OrchestratorConfig):
        invoker = FakeInvoker(reviewer=reject)
        orch, _ = make_orchestrator(config.model_copy(update={"max_attempts": 1}), invoker)
        result = await orch.execute_feature(FeatureSpec(
            name="blocked",
            issues=[
                IssueSpec(step_number=1, title="Base"),
                IssueSpec(step_number=2, title="On top", dependencies=[1]),
            ],
        ))

        assert result.status == FeatureStatus.FAILED
        assert result.failed_issues == [1]
        assert result.blocked_issues == [2]
        assert invoker.calls_for(AgentType.SOLVER, 2) == []
        assert result.outcomes[1].state == IssueState.PENDING

    @pytest.mark.asyncio
    async def test_unavailable_agent_is_configuration_error(self, config: OrchestratorConfig, git_repo: Path):
        orch, _ = make_orchestrator(config, FakeInvoker(available=False))
        with pytest.raises(ConfigurationError, match="not available"):
            await orch.execute_feature(FeatureSpec(name="nope", issues=[IssueSpec(step_number=1, title="A")]))
        assert not branch_exists(git_repo, "feature/nope")

    @pytest.mark.asyncio
    async def test_dependency_cycle_rejected_before_git(self, config: OrchestratorConfig, git_repo: Path):
        orch, _ = make_orchestrator(config, FakeInvoker())
        with pytest.raises(DependencyCycleError):
            await orch.execute_feature(FeatureSpec(
                name="loop",
                issues=[
                    IssueSpec(step_number=1, title="A", dependencies=[2]),
                    IssueSpec(step_number=2, title="B", dependencies=[1]),
                ],
            ))
        assert not branch_exists(git_repo, "feature/loop")
        assert orch.get_feature_status("loop").status == FeatureStatus.FAILED

    @pytest.mark.asyncio
    async def test_too_few_issue_reviewers_rejected_before_agents(self, config: OrchestratorConfig, git_repo: Path):
        strict = config.model_copy(update={"required_approvals": 2, "reviewer_profiles": ["backend", "security"]})
        invoker = FakeInvoker()
        orch, _ = make_orchestrator(strict, invoker)
        with pytest.raises(ConfigurationError, match="2 approvals are required"):
            await orch.execute_feature(FeatureSpec(
                name="strict",
                issues=[IssueSpec(step_number=1, title="A", reviewers=["backend"])],
            ))
        assert invoker.calls == []
        assert not branch_exists(git_repo, "feature/strict")

    @pytest.mark.asyncio
    async def test_invalid_name(self, config: OrchestratorConfig):
        orch, _ = make_orchestrator(config, FakeInvoker())
        with pytest.raises(ConfigurationError):
            await orch.execute_feature(FeatureSpec(name="Bad Name"))

    @pytest.mark.asyncio
    async def test_no_issues_is_configuration_error(self, config: OrchestratorConfig):
        orch, _ = make_orchestrator(config, FakeInvoker())
        with pytest.raises(ConfigurationError, match="no issues"):
            await orch.execute_feature(FeatureSpec(name="empty"))


class TestArchitectureMode:
    @pytest.mark.asyncio
    async def test_plans_commits_notes_and_runs_issues(self, config: OrchestratorConfig, git_repo: Path):
        plan = {"issues": [
            {"step_number": 1, "title": "Schema", "description": "Tables"},
            {"step_number": 2, "title": "API", "dependencies": [1], "reviewers": ["backend"]},
        ]}

        async def architect(kind, prompt, working_dir, issue_number) -> str:
            notes = working_dir / ".orchestrator" / "planned" / "ARCHITECTURE_NOTES.md"
            assert notes.exists()
            notes.write_text(notes.read_text() + "\nUse a repository layer.\n")
            return f"Plan ready.\n\n```json\n{json.dumps(plan)}\n```\n"

        invoker = FakeInvoker(architect=architect)
        orch, _ = make_orchestrator(config, invoker)
        result = await orch.execute_feature(FeatureSpec(
            name="planned", description="Orders API", architecture_mode=True,
            issues=[IssueSpec(step_number=1, title="ignored")],
        ))

        assert result.status == FeatureStatus.COMPLETED
        assert [o.title for o in result.outcomes] == ["Schema", "API"]
        notes = git_repo / ".orchestrator" / "planned" / "ARCHITECTURE_NOTES.md"
        assert "Use a repository layer." in notes.read_text()
        issues = orch.tracker.list_issues_for_feature("planned")
        assert issues[1].dependencies == [issues[0].number]
        assert len(invoker.calls_for(AgentType.ARCHITECTURE)) == 1

    @pytest.mark.asyncio
    async def test_unparseable_plan_fails_feature(self, config: OrchestratorConfig):
        async def architect(kind, prompt, working_dir, issue_number) -> str:
            return "I need more information."

        orch, _ = make_orchestrator(config, FakeInvoker(architect=architect))
        result = await orch.execute_feature(FeatureSpec(name="vague", architecture_mode=True))

        assert result.status == FeatureStatus.FAILED
        assert "Architecture planning failed" in result.error
        assert orch.tracker.list_issues_for_feature("vague") == []

    @pytest.mark.asyncio
    async def test_plan_with_too_few_reviewers_fails_feature(self, config: OrchestratorConfig):
        plan = {"issues": [{"step_number": 1, "title": "API", "reviewers": ["backend"]}]}

        async def architect(kind, prompt, working_dir, issue_number) -> str:
            return f"```json\n{json.dumps(plan)}\n```"

        strict = config.model_copy(update={"required_approvals": 2, "reviewer_profiles": ["backend", "security"]})
        invoker = FakeInvoker(architect=architect)
        orch, _ = make_orchestrator(strict, invoker)
        result = await orch.execute_feature(FeatureSpec(name="thin", architecture_mode=True))

        assert result.status == FeatureStatus.FAILED
        assert "approvals are required" in result.error
        assert invoker.calls_for(AgentType.SOLVER) == []


class TestTrackerIssues:
    @pytest.mark.asyncio
    async def test_runs_existing_issues_and_skips_closed(self, config: OrchestratorConfig):
        tracker = LocalIssueTracker(StateManager(config.resolve(config.state_dir)))
        done = tracker.create_issue("resume", "Already done", "", 1, [], [], 3)
        done.status = IssueStatus.CLOSED
        tracker.update_issue(done)
        stale = tracker.create_issue("resume", "Retry me", f"Depends on #{done.number}", 2, [], [], 3)
        stale.status = IssueStatus.FAILED
        stale.attempt_count = 3
        tracker.update_issue(stale)

        invoker = FakeInvoker()
        orch, _ = make_orchestrator(config, invoker)
        result = await orch.execute_feature(FeatureSpec(name="resume"))

        assert result.status == FeatureStatus.COMPLETED
        assert result.closed_issues == [done.number, stale.number]
        assert invoker.calls_for(AgentType.SOLVER, done.number) == []
        assert len(invoker.calls_for(AgentType.SOLVER, stale.number)) == 1

    @pytest.mark.asyncio
    async def test_issue_body_with_too_few_reviewers(self, config: OrchestratorConfig):
        strict = config.model_copy(update={"required_approvals": 2, "reviewer_profiles": ["backend", "security"]})
        tracker = LocalIssueTracker(StateManager(strict.resolve(strict.state_dir)))
        tracker.create_issue("sparse", "API", "This issue requires: backend", 1, [], [], 3)

        invoker = FakeInvoker()
        orch, _ = make_orchestrator(strict, invoker)
        with pytest.raises(ConfigurationError, match="Issue #1 names 1 reviewer"):
            await orch.execute_feature(FeatureSpec(name="sparse"))
        assert invoker.calls == []


class TestStatusAndCancel:
    @pytest.mark.asyncio
    async def test_cancel_running_feature(self, config: OrchestratorConfig):
        holder: dict[str, Orchestrator] = {}
        cancelled: list[bool] = []

        async def solver(kind, prompt, working_dir, issue_number) -> str:
            cancelled.append(holder["orch"].cancel_feature("stop-me"))
            await asyncio.Event().wait()
            return "unreachable"

        orch, _ = make_orchestrator(config, FakeInvoker(solver=solver))
        holder["orch"] = orch
        result = await orch.execute_feature(FeatureSpec(
            name="stop-me",
            issues=[IssueSpec(step_number=1, title="A"), IssueSpec(step_number=2, title="B", dependencies=[1])],
        ))

        assert cancelled == [True]
        assert result.status == FeatureStatus.FAILED
        assert "cancelled" in result.error
        assert result.failed_issues == [1, 2]
        assert orch.cancel_feature("stop-me") is False

    def test_unknown_feature(self, config: OrchestratorConfig):
        orch, _ = make_orchestrator(config, FakeInvoker())
        with pytest.raises(FeatureNotFoundError):
            orch.get_feature_status("ghost")
        with pytest.raises(FeatureNotFoundError):
            orch.cancel_feature("ghost")
