"""Feature orchestration: plan, schedule issue state machines, merge the feature."""

from __future__ import annotations

import asyncio
import signal
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from .agent import AgentInvoker, CancelToken, new_agent_id
from .errors import (
    AgentError,
    AgentUnavailableError,
    ConfigurationError,
    DependencyCycleError,
    FeatureNotFoundError,
    GitOperationError,
    PlanParseError,
)
from .events import (
    AuditEvent,
    EventSink,
    FanoutEventSink,
    JsonlEventSink,
    LoggingEventSink,
    emit_safely,
)
from .logging_config import setup_logger
from .models import (
    AgentType,
    Feature,
    FeatureResult,
    FeatureSpec,
    FeatureStatus,
    Issue,
    IssueOutcome,
    IssueSpec,
    IssueState,
    IssueStatus,
    ProgressEntry,
    feature_branch_name,
)
from .planning import enrich_from_body, parse_architecture_plan, validate_feature_name, validate_plan
from .prompts import ARCHITECTURE_PROMPT_TEMPLATE, render_template
from .scheduler import admit, blocked_issues, check_dependency_graph, ready_set
from .state import StateManager
from .state_machine import IssueStateMachine
from .tracker import IssueTracker, LocalIssueTracker
from .worktree import WorktreeManager

if TYPE_CHECKING:
    from .config import OrchestratorConfig

NOTES_DIR = ".orchestrator"

WorktreeFactory = Callable[[str], WorktreeManager]


class FeatureRun:
    """In-memory state of one executing feature."""

    def __init__(self, feature: Feature, worktrees: WorktreeManager):
        self.feature = feature
        self.worktrees = worktrees
        self.cancel_token = CancelToken()
        self.issues: dict[int, Issue] = {}
        self.machines: dict[int, IssueStateMachine] = {}
        self.outcomes: dict[int, IssueOutcome] = {}
        self.started = time.monotonic()


class Orchestrator:
    """Runs features end to end: planning, bounded issue dispatch, feature merge."""

    def __init__(
        self,
        config: OrchestratorConfig,
        invoker: AgentInvoker | None = None,
        tracker: IssueTracker | None = None,
        events: EventSink | None = None,
        worktree_factory: WorktreeFactory | None = None,
    ):
        self.config = config
        self.logger = setup_logger(config)
        self.state = StateManager(config.resolve(config.state_dir))
        self.events = events if events is not None else self._default_events()
        self.invoker = invoker or AgentInvoker(config, self.events)
        self.tracker = tracker or LocalIssueTracker(self.state)
        self._worktree_factory = worktree_factory or (lambda name: WorktreeManager(config, name))
        self._runs: dict[str, FeatureRun] = {}
        self._shutdown_requested = False

    def _default_events(self) -> EventSink:
        sinks: list[EventSink] = [LoggingEventSink()]
        if self.config.event_log is not None:
            sinks.append(JsonlEventSink(self.config.resolve(self.config.event_log)))
        return FanoutEventSink(*sinks)

    # --- Exposed surface ---

    async def execute_feature(self, spec: FeatureSpec) -> FeatureResult:
        """Run one feature to a terminal status.

        Raises ConfigurationError (bad name, unavailable agent, invalid issue
        graph) before any git or agent work; every later failure is reported
        in the returned FeatureResult.
        """
        name = validate_feature_name(spec.name)
        if name in self._runs:
            raise ConfigurationError(f"Feature {name} is already running")

        availability = await self.invoker.check_availability()
        if not availability.available:
            raise ConfigurationError(f"Agent CLI is not available: {availability.error}")

        existing = self.state.load_feature(name)
        feature = Feature(
            name=name,
            description=spec.description,
            status=FeatureStatus.PLANNING,
            base_branch=spec.base_branch or self._default_base(spec),
            parent_feature=spec.parent_feature,
            architecture_mode=spec.architecture_mode,
            created_at=existing.created_at if existing else datetime.now(),
        )
        run = FeatureRun(feature, self._worktree_factory(name))
        self._runs[name] = run
        self._set_status(run, FeatureStatus.PLANNING)
        try:
            return await self._execute(run, spec)
        except ConfigurationError as e:
            self._set_status(run, FeatureStatus.FAILED, str(e))
            raise
        finally:
            self._runs.pop(name, None)

    def get_feature_status(self, name: str) -> Feature:
        run = self._runs.get(name)
        if run is not None:
            return run.feature
        feature = self.state.load_feature(name)
        if feature is None:
            raise FeatureNotFoundError(name)
        return feature

    def cancel_feature(self, name: str) -> bool:
        """Signal a running feature to stop. False if it is not running here."""
        run = self._runs.get(name)
        if run is None:
            if self.state.load_feature(name) is None:
                raise FeatureNotFoundError(name)
            return False
        self.logger.info(f"Cancelling feature {name}")
        run.cancel_token.cancel(f"feature {name} cancelled")
        return True

    async def run(self, spec: FeatureSpec) -> FeatureResult:
        """CLI driver: execute one feature with graceful shutdown on Ctrl-C."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_shutdown_signal, sig)

        self.logger.info("=" * 60)
        self.logger.info("Feature orchestrator starting")
        self.logger.info(f"Project: {self.config.project_dir}")
        self.logger.info(f"Feature: {spec.name}")
        self.logger.info("=" * 60)

        try:
            result = await self.execute_feature(spec)
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            self.invoker.terminate_all()

        self.logger.info("=" * 60)
        self.logger.info(result.summary())
        for outcome in result.outcomes:
            line = f"  #{outcome.number} {outcome.title}: {outcome.state.value} ({outcome.attempts} attempts)"
            if outcome.error:
                line += f" -- {outcome.error}"
            self.logger.info(line)
        self.logger.info(f"Duration: {result.duration_seconds:.0f}s")
        self.logger.info("=" * 60)
        return result

    def _handle_shutdown_signal(self, sig: signal.Signals) -> None:
        """First SIGINT/SIGTERM cancels every running feature; the second force-exits."""
        sig_name = sig.name
        if self._shutdown_requested:
            self.logger.warning(f"Second {sig_name} received, force exiting")
            self.invoker.terminate_all()
            raise SystemExit(1)

        self._shutdown_requested = True
        self.logger.info(f"\n{sig_name} received, cancelling running features...")
        self.logger.info("  (press Ctrl-C again to force-quit)")
        for name in list(self._runs):
            self.cancel_feature(name)

    # --- Phases ---

    async def _execute(self, run: FeatureRun, spec: FeatureSpec) -> FeatureResult:
        feature = run.feature
        try:
            if spec.architecture_mode:
                if spec.issues:
                    self.logger.warning("Architecture mode ignores the supplied issue list")
                await self._prepare_workspace(run)
                try:
                    specs = await self._plan(run, spec)
                except (AgentError, PlanParseError, DependencyCycleError) as e:
                    return self._fail_early(run, f"Architecture planning failed: {e}")
                self._create_issues(run, specs)
                await self._commit_architecture_notes(run)
            else:
                if spec.issues:
                    self._check_plan(spec.issues)
                    self._create_issues(run, spec.issues)
                else:
                    self._load_tracker_issues(run)
                await self._prepare_workspace(run)
        except GitOperationError as e:
            return self._fail_early(run, f"Workspace preparation failed: {e}")

        self._set_status(run, FeatureStatus.IN_PROGRESS)
        self.logger.info(f"Feature {feature.name}: {len(run.issues)} issues on {feature.branch}")

        fatal = await self._schedule(run)
        return await self._finish(run, fatal)

    def _default_base(self, spec: FeatureSpec) -> str:
        if spec.parent_feature:
            return feature_branch_name(spec.parent_feature)
        return self.config.base_branch

    async def _prepare_workspace(self, run: FeatureRun) -> None:
        if run.feature.worktree_path is not None:
            return
        worktrees = run.worktrees
        await worktrees.sync_base_branch(run.feature.base_branch)
        branch = await worktrees.ensure_feature_branch(run.feature.base_branch)
        worktree = await worktrees.ensure_worktree(branch)
        run.feature.worktree_path = worktree.path
        self._save_feature(run.feature)

    async def _plan(self, run: FeatureRun, spec: FeatureSpec) -> list[IssueSpec]:
        """Run the architecture agent and turn its answer into a checked plan."""
        feature = run.feature
        worktree = Path(feature.worktree_path or run.worktrees.feature_worktree_path)
        notes = Path(NOTES_DIR) / feature.name / "ARCHITECTURE_NOTES.md"
        notes_path = worktree / notes
        if not notes_path.exists():
            notes_path.parent.mkdir(parents=True, exist_ok=True)
            notes_path.write_text(f"# Architecture Notes: {feature.name}\n\n{feature.description}\n")

        agent_id = new_agent_id(AgentType.ARCHITECTURE)
        prompt = render_template(ARCHITECTURE_PROMPT_TEMPLATE, {
            "AGENT_ID": agent_id,
            "FEATURE_NAME": feature.name,
            "WORKTREE_PATH": worktree,
            "FEATURE_REQUEST": spec.description,
            "ARCHITECTURE_NOTES": notes.as_posix(),
            "REVIEWER_PROFILES": ", ".join(self.config.reviewer_profiles),
        })
        self.logger.info(f"Feature {feature.name}: running architecture agent {agent_id}")
        output = await self.invoker.run(
            AgentType.ARCHITECTURE, prompt, worktree,
            timeout=self.config.planning_timeout_seconds,
            cancel_token=run.cancel_token,
            agent_id=agent_id,
            feature=feature.name,
        )
        specs = parse_architecture_plan(output)
        self._check_plan(specs)
        return specs

    async def _commit_architecture_notes(self, run: FeatureRun) -> None:
        await run.worktrees.commit_feature_changes(
            f"docs({run.feature.name}): architecture notes and issue plan",
        )

    def _check_plan(self, specs: list[IssueSpec]) -> None:
        """Unique step numbers, known dependencies, enough reviewers, no cycles."""
        validate_plan(specs, self.config.required_approvals)
        check_dependency_graph(
            Issue(feature="", number=s.step_number, title=s.title, step_number=s.step_number, dependencies=s.dependencies)
            for s in specs
        )

    def _create_issues(self, run: FeatureRun, specs: list[IssueSpec]) -> None:
        """Persist planned issues; step-number dependencies become issue numbers."""
        by_step: dict[int, Issue] = {}
        for spec in sorted(specs, key=lambda s: s.step_number):
            by_step[spec.step_number] = self.tracker.create_issue(
                feature=run.feature.name,
                title=spec.title,
                description=spec.description,
                step_number=spec.step_number,
                dependencies=[],
                reviewers=spec.reviewers,
                max_attempts=self.config.max_attempts,
            )
        for spec in specs:
            issue = by_step[spec.step_number]
            if spec.dependencies:
                issue.dependencies = [by_step[d].number for d in spec.dependencies]
                self.tracker.update_issue(issue)
        run.issues = {issue.number: issue for issue in by_step.values()}

    def _load_tracker_issues(self, run: FeatureRun) -> None:
        """Take the tracker's issues for the feature; unfinished ones start over."""
        issues = [enrich_from_body(i) for i in self.tracker.list_issues_for_feature(run.feature.name)]
        if not issues:
            raise ConfigurationError(f"Feature {run.feature.name} has no issues to run")
        check_dependency_graph(issues)
        required = self.config.required_approvals
        for issue in issues:
            if issue.reviewers and len(set(issue.reviewers)) < required:
                raise ConfigurationError(
                    f"Issue #{issue.number} names {len(set(issue.reviewers))} reviewer(s) "
                    f"but {required} approvals are required"
                )
        for issue in issues:
            if issue.status != IssueStatus.CLOSED:
                issue.status = IssueStatus.OPEN
                issue.attempt_count = 0
                issue.max_attempts = self.config.max_attempts
                self.tracker.update_issue(issue)
        run.issues = {issue.number: issue for issue in issues}

    async def _schedule(self, run: FeatureRun) -> AgentUnavailableError | None:
        """Admit ready issues up to the concurrency bound until none can run."""
        limit = self.config.max_concurrent_tasks
        running: dict[asyncio.Task[IssueOutcome], int] = {}
        fatal: AgentUnavailableError | None = None

        try:
            while True:
                if not run.cancel_token.cancelled:
                    ready = ready_set(run.issues.values())
                    for number in admit(ready, running.values(), limit):
                        machine = self._machine(run, run.issues[number])
                        run.machines[number] = machine
                        running[asyncio.create_task(machine.run(), name=f"issue-{number}")] = number
                        self.logger.info(f"Admitted issue #{number} ({len(running)}/{limit} running)")

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    number = running.pop(task)
                    machine = run.machines[number]
                    try:
                        outcome = task.result()
                    except AgentUnavailableError as e:
                        self.logger.error(f"Agent unavailable, aborting feature: {e}")
                        fatal = e
                        run.cancel_token.cancel("agent unavailable")
                        outcome = machine.outcome()
                    except Exception as e:
                        self.logger.exception(f"Issue #{number} crashed")
                        machine.mark_failed(f"{type(e).__name__}: {e}")
                        outcome = machine.outcome()
                    run.outcomes[number] = outcome
                    self._record_issue_progress(run, outcome)

        except asyncio.CancelledError:
            run.cancel_token.cancel("orchestrator task cancelled")
            for task in running:
                task.cancel()
            await asyncio.gather(*running, return_exceptions=True)
            raise

        if run.cancel_token.cancelled:
            reason = run.cancel_token.reason or "cancelled"
            for issue in run.issues.values():
                if issue.status in (IssueStatus.OPEN, IssueStatus.IN_PROGRESS):
                    issue.status = IssueStatus.FAILED
                    issue.last_error = reason
                    self.tracker.update_issue(issue)
        return fatal

    def _machine(self, run: FeatureRun, issue: Issue) -> IssueStateMachine:
        return IssueStateMachine(
            config=self.config,
            feature=run.feature,
            issue=issue,
            invoker=self.invoker,
            worktrees=run.worktrees,
            tracker=self.tracker,
            cancel_token=run.cancel_token,
            events=self.events,
            on_transition=self._on_transition,
        )

    def _on_transition(self, issue: Issue, state: IssueState) -> None:
        emit_safely(self.events, AuditEvent(
            kind="issue_state",
            feature=issue.feature,
            issue_number=issue.number,
            data={"state": state.value, "attempt": issue.attempt_count},
        ))

    async def _finish(self, run: FeatureRun, fatal: AgentUnavailableError | None) -> FeatureResult:
        issues = list(run.issues.values())
        closed = sorted(i.number for i in issues if i.status == IssueStatus.CLOSED)
        failed = sorted(i.number for i in issues if i.status == IssueStatus.FAILED)
        blocked = blocked_issues(issues)

        error: str | None = None
        if fatal is not None:
            error = str(fatal)
        elif run.cancel_token.cancelled:
            error = run.cancel_token.reason or "cancelled"
        elif failed or blocked or len(closed) != len(issues):
            error = f"{len(failed)} issues failed, {len(blocked)} blocked"

        if error is None:
            try:
                await run.worktrees.merge_feature_into_base(
                    run.feature.base_branch, self.config.merge_conflict_policy,
                )
            except GitOperationError as e:
                error = f"Merging {run.feature.branch} into {run.feature.base_branch} failed: {e}"

        if error is None:
            self._set_status(run, FeatureStatus.COMPLETED)
            try:
                await run.worktrees.cleanup_feature()
            except GitOperationError as e:
                self.logger.warning(f"Feature worktree cleanup failed: {e}")
        else:
            self.logger.error(f"Feature {run.feature.name} failed: {error}")
            self._set_status(run, FeatureStatus.FAILED, error)

        result = FeatureResult(
            feature=run.feature.name,
            status=run.feature.status,
            closed_issues=closed,
            failed_issues=failed,
            blocked_issues=blocked,
            outcomes=[self._outcome_for(run, i) for i in sorted(issues, key=lambda i: (i.step_number, i.number))],
            error=error,
            duration_seconds=time.monotonic() - run.started,
        )
        self.state.append_progress(ProgressEntry(
            timestamp=datetime.now(),
            feature=run.feature.name,
            title=run.feature.description[:80] or run.feature.name,
            status=result.status.value,
            summary=result.summary(),
            error=error,
        ))
        return result

    def _fail_early(self, run: FeatureRun, error: str) -> FeatureResult:
        self.logger.error(f"Feature {run.feature.name} failed: {error}")
        self._set_status(run, FeatureStatus.FAILED, error)
        return FeatureResult(
            feature=run.feature.name,
            status=FeatureStatus.FAILED,
            error=error,
            duration_seconds=time.monotonic() - run.started,
        )

    @staticmethod
    def _outcome_for(run: FeatureRun, issue: Issue) -> IssueOutcome:
        if issue.number in run.outcomes:
            return run.outcomes[issue.number]
        state = {
            IssueStatus.CLOSED: IssueState.CLOSED,
            IssueStatus.FAILED: IssueState.FAILED,
        }.get(issue.status, IssueState.PENDING)
        return IssueOutcome(
            number=issue.number,
            title=issue.title,
            state=state,
            attempts=issue.attempt_count,
            error=issue.last_error,
            merge_commit=issue.merge_commit,
        )

    # --- Records ---

    def _set_status(self, run: FeatureRun, status: FeatureStatus, error: str | None = None) -> None:
        run.feature.status = status
        run.feature.error = error
        self._save_feature(run.feature)
        emit_safely(self.events, AuditEvent(
            kind="feature_status",
            feature=run.feature.name,
            data={"status": status.value, "error": error},
        ))

    def _save_feature(self, feature: Feature) -> None:
        feature.updated_at = datetime.now()
        self.state.save_feature(feature)

    def _record_issue_progress(self, run: FeatureRun, outcome: IssueOutcome) -> None:
        self.state.append_progress(ProgressEntry(
            timestamp=datetime.now(),
            feature=run.feature.name,
            issue_number=outcome.number,
            title=outcome.title,
            status=outcome.state.value,
            summary=f"{outcome.state.value} after {outcome.attempts} attempt(s)",
            commit_hash=outcome.merge_commit,
            error=outcome.error,
        ))
