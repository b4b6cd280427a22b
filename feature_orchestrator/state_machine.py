"""Per-issue solve/review loop: solve, review, then merge, retry or fail."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from .agent import AgentInvoker, CancelToken, new_agent_id
from .errors import (
    AgentCancelledError,
    AgentError,
    AgentUnavailableError,
    GitOperationError,
)
from .events import AuditEvent, EventSink, emit_safely
from .feedback import (
    ReviewOutcome,
    decide_review_outcome,
    format_previous_feedback,
    parse_review_verdict,
)
from .models import (
    AgentType,
    ApprovalStatus,
    Feature,
    Issue,
    IssueOutcome,
    IssueState,
    IssueStatus,
    ReviewVerdict,
    issue_branch_name,
)
from .prompts import REVIEWER_PROMPT_TEMPLATE, SOLVER_PROMPT_TEMPLATE, load_profile_content, render_template

if TYPE_CHECKING:
    from .config import OrchestratorConfig
    from .tracker import IssueTracker
    from .worktree import WorktreeManager

logger = logging.getLogger("orchestrator")

TransitionCallback = Callable[[Issue, IssueState], None]


class IssueStateMachine:
    """Drives one issue from Pending to Closed or Failed.

    Solver failures other than an unavailable agent consume an attempt like a
    change request. Git failures and cancellation fail the issue at once and
    keep its worktree for inspection.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        feature: Feature,
        issue: Issue,
        invoker: AgentInvoker,
        worktrees: WorktreeManager,
        tracker: IssueTracker,
        cancel_token: CancelToken,
        events: EventSink | None = None,
        on_transition: TransitionCallback | None = None,
    ):
        self.config = config
        self.feature = feature
        self.issue = issue
        self.invoker = invoker
        self.worktrees = worktrees
        self.tracker = tracker
        self.cancel_token = cancel_token
        self.events = events
        self.on_transition = on_transition
        self.state = IssueState.PENDING
        self.branch = issue_branch_name(feature.name, issue.number)
        self.verdicts: list[ReviewVerdict] = []

    @property
    def _tag(self) -> str:
        return f"Issue #{self.issue.number}"

    @property
    def _log_extra(self) -> dict[str, object]:
        return {"feature": self.feature.name, "issue": self.issue.number, "agent_id": self.issue.assigned_agent_id}

    async def run(self) -> IssueOutcome:
        try:
            await self._provision()
            while True:
                if self.cancel_token.cancelled:
                    return await self._fail("cancelled")

                self._transition(IssueState.SOLVING)
                if await self._solve():
                    self._transition(IssueState.REVIEWING)
                    if await self._review() == ReviewOutcome.APPROVED:
                        self._transition(IssueState.APPROVED)
                        await self._merge()
                        return self.outcome()

                self._transition(IssueState.CHANGES_REQUESTED)
                if self.issue.attempt_count >= self.issue.max_attempts:
                    return await self._fail(
                        f"Changes still requested after {self.issue.attempt_count} attempts",
                        cleanup=True,
                    )
                logger.info(f"{self._tag}: changes requested, re-solving", extra=self._log_extra)

        except AgentUnavailableError as e:
            await self._fail(str(e))
            raise
        except AgentCancelledError:
            return await self._fail("cancelled")
        except GitOperationError as e:
            logger.error(f"{self._tag}: git operation failed: {e}", extra=self._log_extra)
            return await self._fail(str(e))
        except asyncio.CancelledError:
            self.mark_failed("cancelled")
            raise

    # --- States ---

    async def _provision(self) -> None:
        self.branch = await self.worktrees.setup_issue_branch(self.issue.number)
        self.issue.branch = self.branch
        self.issue.worktree_path = str(self.worktrees.issue_worktree_path(self.issue.number))
        self.issue.status = IssueStatus.IN_PROGRESS
        self.tracker.update_issue(self.issue)

    async def _solve(self) -> bool:
        """Run one solver attempt and commit its work. False means changes requested."""
        self.issue.attempt_count += 1
        attempt = self.issue.attempt_count
        agent_id = new_agent_id(AgentType.SOLVER)
        self.issue.assigned_agent_id = agent_id
        self.tracker.update_issue(self.issue)
        logger.info(
            f"{self._tag}: solve attempt {attempt}/{self.issue.max_attempts} ({agent_id})",
            extra=self._log_extra,
        )

        prompt = render_template(SOLVER_PROMPT_TEMPLATE, {
            "AGENT_ID": agent_id,
            "ISSUE_NUMBER": self.issue.number,
            "FEATURE_NAME": self.feature.name,
            "ATTEMPT_NUMBER": attempt,
            "MAX_ATTEMPTS": self.issue.max_attempts,
            "WORKTREE_PATH": self.issue.worktree_path,
            "BASE_BRANCH": self.feature.branch,
            "ISSUE_DETAILS": self._issue_details(),
            "PREVIOUS_FEEDBACK_SECTION": format_previous_feedback(self.verdicts),
        })

        try:
            await self.invoker.run(
                AgentType.SOLVER, prompt, self.issue.worktree_path,
                timeout=self.config.agent_timeout_seconds,
                cancel_token=self.cancel_token,
                agent_id=agent_id,
                feature=self.feature.name,
                issue_number=self.issue.number,
            )
        except (AgentUnavailableError, AgentCancelledError):
            raise
        except AgentError as e:
            self.issue.last_error = str(e)
            self.tracker.update_issue(self.issue)
            return False

        await self.worktrees.commit_issue_changes(
            self.issue.number, self.issue.title, self.branch,
        )
        return True

    async def _review(self) -> ReviewOutcome:
        profiles = self.issue.reviewers or self.config.reviewer_profiles
        attempt = self.issue.attempt_count
        logger.info(f"{self._tag}: reviewing attempt {attempt} with {', '.join(profiles)}", extra=self._log_extra)

        results = await asyncio.gather(
            *(self._run_reviewer(profile, attempt) for profile in profiles),
            return_exceptions=True,
        )
        verdicts: list[ReviewVerdict] = []
        for result in results:
            if isinstance(result, BaseException):
                raise result
            verdicts.append(result)

        for verdict in verdicts:
            emit_safely(self.events, AuditEvent.review(verdict, self.feature.name, self.issue.number))
            logger.info(
                f"{self._tag}: {verdict.reviewer_profile} -> {verdict.approval_status.value}",
                extra={**self._log_extra, "agent_id": verdict.agent_id},
            )
        self.verdicts.extend(verdicts)

        threshold = self.config.required_approvals
        outcome = decide_review_outcome(verdicts, threshold)
        logger.info(f"{self._tag}: review {outcome.value} (needs {threshold} approvals)", extra=self._log_extra)
        return outcome

    async def _run_reviewer(self, profile: str, attempt: int) -> ReviewVerdict:
        agent_id = new_agent_id(AgentType.REVIEWER)
        prompt = render_template(REVIEWER_PROMPT_TEMPLATE, {
            "AGENT_ID": agent_id,
            "REVIEWER_PROFILE": profile,
            "ISSUE_NUMBER": self.issue.number,
            "FEATURE_NAME": self.feature.name,
            "ATTEMPT_NUMBER": attempt,
            "WORKTREE_PATH": self.issue.worktree_path,
            "BASE_BRANCH": self.feature.branch,
            "ISSUE_DETAILS": self._issue_details(),
            "PROFILE_SPECIFIC_CONTENT": load_profile_content(profile, self.config.profiles_dir),
        })
        try:
            text = await self.invoker.run(
                AgentType.REVIEWER, prompt, self.issue.worktree_path,
                timeout=self.config.agent_timeout_seconds,
                cancel_token=self.cancel_token,
                agent_id=agent_id,
                feature=self.feature.name,
                issue_number=self.issue.number,
            )
        except (AgentUnavailableError, AgentCancelledError):
            raise
        except AgentError as e:
            return ReviewVerdict(
                reviewer_profile=profile,
                agent_id=agent_id,
                attempt_number=attempt,
                approval_status=ApprovalStatus.NEEDS_CHANGES,
                feedback=f"Review could not be completed: {e}",
            )

        return ReviewVerdict(
            reviewer_profile=profile,
            agent_id=agent_id,
            attempt_number=attempt,
            approval_status=parse_review_verdict(text),
            feedback=text,
        )

    async def _merge(self) -> None:
        self._transition(IssueState.MERGING)
        result = await self.worktrees.merge_issue_branch(
            self.branch,
            self.config.merge_conflict_policy,
        )
        self.issue.merge_commit = result.commit
        self.issue.status = IssueStatus.CLOSED
        self.issue.last_error = None
        self.tracker.update_issue(self.issue)
        self._transition(IssueState.CLOSED)
        logger.info(f"{self._tag}: closed ({result.commit[:8] if result.commit else 'no commit'})", extra=self._log_extra)

        try:
            await self.worktrees.cleanup_issue(self.issue.number, delete_branch=True)
        except GitOperationError as e:
            logger.warning(f"{self._tag}: cleanup after merge failed: {e}", extra=self._log_extra)

    async def _fail(self, error: str, cleanup: bool = False) -> IssueOutcome:
        self.mark_failed(error)
        logger.error(f"{self._tag}: FAILED: {error}", extra=self._log_extra)
        if cleanup:
            try:
                await self.worktrees.cleanup_issue(self.issue.number)
            except GitOperationError as e:
                logger.warning(f"{self._tag}: cleanup failed: {e}", extra=self._log_extra)
        return self.outcome()

    # --- Helpers ---

    def mark_failed(self, error: str) -> None:
        self.issue.status = IssueStatus.FAILED
        self.issue.last_error = error
        self.tracker.update_issue(self.issue)
        self._transition(IssueState.FAILED)

    def _transition(self, state: IssueState) -> None:
        logger.debug(f"{self._tag}: {self.state.value} -> {state.value}", extra=self._log_extra)
        self.state = state
        if self.on_transition is not None:
            self.on_transition(self.issue, state)

    def _issue_details(self) -> str:
        return f"#{self.issue.number}: {self.issue.title}\n\n{self.issue.description}".strip()

    def outcome(self) -> IssueOutcome:
        return IssueOutcome(
            number=self.issue.number,
            title=self.issue.title,
            state=self.state,
            attempts=self.issue.attempt_count,
            error=self.issue.last_error,
            merge_commit=self.issue.merge_commit,
            verdicts=list(self.verdicts),
        )
