"""Data models for the orchestrator."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


def feature_branch_name(feature: str) -> str:
    return f"feature/{feature}"


def issue_branch_name(feature: str, issue_number: int) -> str:
    # Sibling of the feature branch: git refuses feature/<f> and feature/<f>/x side by side.
    return f"feature/{feature}-issue-{issue_number}"


class FeatureStatus(str, Enum):
    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ARCHIVED = "archived"
    FAILED = "failed"


class IssueStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"
    FAILED = "failed"


class IssueState(str, Enum):
    """States of the per-issue solve/review machine."""

    PENDING = "pending"
    SOLVING = "solving"
    REVIEWING = "reviewing"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    MERGING = "merging"
    CLOSED = "closed"
    FAILED = "failed"


class AgentType(str, Enum):
    ARCHITECTURE = "architecture"
    SOLVER = "solver"
    REVIEWER = "reviewer"


class AgentRunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class ApprovalStatus(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_CHANGES = "needs_changes"


class Feature(BaseModel):
    """A unit of work delivered on its own feature branch."""

    name: str
    description: str = ""
    status: FeatureStatus = FeatureStatus.PLANNING
    base_branch: str = "main"
    worktree_path: str | None = None
    parent_feature: str | None = None
    architecture_mode: bool = False
    error: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def branch(self) -> str:
        return feature_branch_name(self.name)


class Issue(BaseModel):
    """One step of a feature, solved on its own branch and worktree."""

    feature: str
    number: int
    title: str
    description: str = ""
    status: IssueStatus = IssueStatus.OPEN
    step_number: int = 0
    dependencies: list[int] = Field(default_factory=list)
    attempt_count: int = 0
    max_attempts: int = 3
    assigned_agent_id: str | None = None
    pr_number: int | None = None
    reviewers: list[str] = Field(default_factory=list)
    branch: str | None = None
    worktree_path: str | None = None
    merge_commit: str | None = None
    last_error: str | None = None


class Worktree(BaseModel):
    path: str
    branch: str | None = None
    feature: str | None = None
    is_main: bool = False
    commit: str | None = None
    has_changes: bool = False
    files_changed: list[str] = Field(default_factory=list)


class AgentRun(BaseModel):
    """Ephemeral record of one agent invocation."""

    agent_id: str
    type: AgentType
    status: AgentRunStatus = AgentRunStatus.IDLE
    working_dir: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    error: str | None = None


class ReviewVerdict(BaseModel):
    reviewer_profile: str
    agent_id: str | None = None
    attempt_number: int
    approval_status: ApprovalStatus
    feedback: str = ""


class AgentAvailability(BaseModel):
    available: bool
    version: str | None = None
    error: str | None = None


class MergeResult(BaseModel):
    source: str
    target: str
    commit: str | None = None
    fast_forward: bool = False
    resolved_files: list[str] = Field(default_factory=list)


class IssueSpec(BaseModel):
    """An issue as planned, before the tracker assigns it a number."""

    step_number: int
    title: str
    description: str = ""
    dependencies: list[int] = Field(default_factory=list)  # step numbers
    reviewers: list[str] = Field(default_factory=list)


class FeatureSpec(BaseModel):
    name: str
    description: str = ""
    base_branch: str | None = None
    architecture_mode: bool = False
    issues: list[IssueSpec] = Field(default_factory=list)
    parent_feature: str | None = None


class IssueOutcome(BaseModel):
    number: int
    title: str
    state: IssueState
    attempts: int = 0
    error: str | None = None
    merge_commit: str | None = None
    verdicts: list[ReviewVerdict] = Field(default_factory=list)


class FeatureResult(BaseModel):
    """Terminal report of a feature run."""

    feature: str
    status: FeatureStatus
    closed_issues: list[int] = Field(default_factory=list)
    failed_issues: list[int] = Field(default_factory=list)
    blocked_issues: list[int] = Field(default_factory=list)
    outcomes: list[IssueOutcome] = Field(default_factory=list)
    error: str | None = None
    duration_seconds: float = 0.0

    def summary(self) -> str:
        parts = [f"{len(self.closed_issues)}/{len(self.outcomes)} issues closed"]
        if self.failed_issues:
            parts.append(f"{len(self.failed_issues)} failed")
        if self.blocked_issues:
            parts.append(f"{len(self.blocked_issues)} blocked")
        return f"Feature {self.feature} {self.status.value}: " + ", ".join(parts)


class ProgressEntry(BaseModel):
    """A single entry in the progress log."""

    timestamp: datetime
    feature: str
    issue_number: int | None = None
    title: str
    status: str
    summary: str
    commit_hash: str | None = None
    error: str | None = None
