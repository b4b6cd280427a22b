"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import logging
import subprocess
from collections.abc import Awaitable, Callable
from pathlib import Path

import pytest

from feature_orchestrator.agent import CancelToken
from feature_orchestrator.config import OrchestratorConfig
from feature_orchestrator.errors import AgentCancelledError
from feature_orchestrator.events import AuditEvent
from feature_orchestrator.models import AgentAvailability, AgentType

Handler = Callable[[AgentType, str, Path, "int | None"], Awaitable[str]]


def git(*args: str, cwd: Path) -> str:
    """Run git synchronously for test setup and assertions."""
    result = subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True,
    )
    return result.stdout.strip()


def commit_file(repo: Path, name: str, content: str, message: str) -> str:
    (repo / name).write_text(content)
    git("add", name, cwd=repo)
    git("commit", "-m", message, cwd=repo)
    return git("rev-parse", "HEAD", cwd=repo)


@pytest.fixture(autouse=True)
def reset_orchestrator_logger():
    """Drop handlers added by setup_logger so each test starts unconfigured."""
    yield
    logger = logging.getLogger("orchestrator")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test Author")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "author@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test Committer")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "committer@example.com")


@pytest.fixture
def origin(tmp_path: Path, git_env: None) -> Path:
    path = tmp_path / "origin.git"
    git("init", "--bare", "-q", str(path), cwd=tmp_path)
    git("symbolic-ref", "HEAD", "refs/heads/main", cwd=path)
    return path


@pytest.fixture
def git_repo(tmp_path: Path, origin: Path) -> Path:
    """A clone of a bare origin with one commit on main, pushed."""
    repo = tmp_path / "work" / "project"
    repo.parent.mkdir(parents=True)
    git("clone", "-q", str(origin), str(repo), cwd=tmp_path)
    git("symbolic-ref", "HEAD", "refs/heads/main", cwd=repo)
    commit_file(repo, "README.md", "# Project\n", "Initial commit")
    git("push", "-q", "-u", "origin", "main", cwd=repo)
    return repo


@pytest.fixture
def config(tmp_path: Path, git_repo: Path) -> OrchestratorConfig:
    return OrchestratorConfig(
        project_dir=git_repo,
        base_worktree_path=tmp_path / "worktrees",
        project_name="proj",
        state_dir=tmp_path / "state",
        structured_log=False,
        event_log=None,
        max_concurrent_tasks=2,
        required_approvals=1,
        reviewer_profiles=["backend"],
        agent_timeout_seconds=30,
    )


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def issue_states(self) -> list[tuple[int, str]]:
        return [
            (e.issue_number, e.data["state"])
            for e in self.events
            if e.kind == "issue_state" and e.issue_number is not None
        ]


async def write_issue_file(kind: AgentType, prompt: str, working_dir: Path, issue_number: int | None) -> str:
    """Default solver: one file per issue, so issues never conflict."""
    (working_dir / f"issue-{issue_number}.txt").write_text(f"work for issue {issue_number}\n")
    return f"Implemented issue {issue_number}"


async def approve(kind: AgentType, prompt: str, working_dir: Path, issue_number: int | None) -> str:
    return "Looks good.\n\nVERDICT: APPROVE"


class FakeInvoker:
    """Scripted stand-in for AgentInvoker; handlers are async callables per agent kind."""

    def __init__(
        self,
        solver: Handler = write_issue_file,
        reviewer: Handler = approve,
        architect: Handler | None = None,
        available: bool = True,
    ):
        self.handlers: dict[AgentType, Handler | None] = {
            AgentType.SOLVER: solver,
            AgentType.REVIEWER: reviewer,
            AgentType.ARCHITECTURE: architect,
        }
        self.available = available
        self.calls: list[tuple[AgentType, int | None, str]] = []
        self.active: dict[int, int] = {}
        self.max_active_issues = 0
        self.terminated = False

    async def check_availability(self) -> AgentAvailability:
        if self.available:
            return AgentAvailability(available=True, version="fake 1.0")
        return AgentAvailability(available=False, error="claude: command not found")

    async def run(
        self,
        kind: AgentType,
        prompt: str,
        working_dir: Path | str,
        timeout: float,
        cancel_token: CancelToken | None = None,
        agent_id: str | None = None,
        feature: str | None = None,
        issue_number: int | None = None,
    ) -> str:
        handler = self.handlers[kind]
        assert handler is not None, f"unexpected {kind.value} run"
        self.calls.append((kind, issue_number, prompt))
        agent_id = agent_id or f"{kind.value}-fake"

        if issue_number is not None:
            self.active[issue_number] = self.active.get(issue_number, 0) + 1
            self.max_active_issues = max(self.max_active_issues, len(self.active))
        try:
            await asyncio.sleep(0.01)
            work = asyncio.ensure_future(handler(kind, prompt, Path(working_dir), issue_number))
            if cancel_token is None:
                return await work
            waiter = asyncio.ensure_future(cancel_token.wait())
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
            waiter.cancel()
            if work not in done:
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)
                raise AgentCancelledError(kind.value, agent_id)
            return work.result()
        finally:
            if issue_number is not None:
                self.active[issue_number] -= 1
                if not self.active[issue_number]:
                    del self.active[issue_number]

    def calls_for(self, kind: AgentType, issue_number: int | None = None) -> list[str]:
        return [
            prompt for k, n, prompt in self.calls
            if k == kind and (issue_number is None or n == issue_number)
        ]

    def terminate_all(self) -> None:
        self.terminated = True
