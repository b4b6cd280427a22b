"""Custom exception hierarchy for the orchestrator."""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base exception for the orchestrator."""


# --- Configuration: fatal, surfaced before any agent runs ---


class ConfigurationError(OrchestratorError):
    """Invalid configuration, feature name, dependency graph or agent setup."""


class InvalidFeatureNameError(ConfigurationError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"Invalid feature name {name!r}: expected kebab-case, 2-50 characters"
        )


class DependencyCycleError(ConfigurationError):
    """Issue dependencies contain a cycle."""

    def __init__(self, issues: list[int]):
        self.issues = issues
        joined = ", ".join(f"#{n}" for n in issues)
        super().__init__(f"Dependency cycle between issues: {joined}")


class UnresolvedPlaceholderError(ConfigurationError):
    """A prompt template references a $KEY with no value."""

    def __init__(self, placeholders: list[str]):
        self.placeholders = placeholders
        super().__init__(
            "Unresolved prompt placeholders: "
            + ", ".join(f"${p}" for p in placeholders)
        )


class PlanParseError(ConfigurationError):
    """Architecture agent output could not be turned into an issue plan."""


class FeatureNotFoundError(ConfigurationError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown feature: {name}")


# --- Agent invocation ---


class AgentError(OrchestratorError):
    """An agent invocation did not produce a usable result."""

    retriable = True

    def __init__(self, kind: str, agent_id: str, message: str):
        self.kind = kind
        self.agent_id = agent_id
        super().__init__(f"{kind} agent {agent_id}: {message}")


class AgentTimeoutError(AgentError):
    def __init__(self, kind: str, agent_id: str, seconds: float):
        self.seconds = seconds
        super().__init__(kind, agent_id, f"timed out after {seconds:.0f}s")


class AgentProcessError(AgentError):
    def __init__(self, kind: str, agent_id: str, exit_code: int | None, stderr: str = ""):
        self.exit_code = exit_code
        self.stderr = stderr
        detail = stderr.strip()[:500] or "no stderr"
        super().__init__(kind, agent_id, f"exited with code {exit_code}: {detail}")


class AgentNoOutputError(AgentError):
    def __init__(self, kind: str, agent_id: str):
        super().__init__(kind, agent_id, "finished without producing any output")


class AgentUnavailableError(AgentError):
    """The agent binary is missing. Fatal to the whole feature run."""

    retriable = False

    def __init__(self, kind: str, agent_id: str, message: str = "agent CLI not found"):
        super().__init__(kind, agent_id, message)


class AgentCancelledError(AgentError):
    retriable = False

    def __init__(self, kind: str, agent_id: str):
        super().__init__(kind, agent_id, "cancelled")


# --- Git: never retried automatically ---


class GitOperationError(OrchestratorError):
    """A git state transition failed and needs external remediation."""


class GitCommandError(GitOperationError):
    def __init__(self, args: list[str], returncode: int, stderr: str):
        self.command = args
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"git {' '.join(args)} failed ({returncode}): {stderr.strip()[:500]}"
        )


class SyncError(GitOperationError):
    """Local base branch has diverged from its remote."""


class WorktreeConflict(GitOperationError):
    """Branch already checked out elsewhere, or path occupied by another branch."""


class MergeConflictError(GitOperationError):
    def __init__(self, source: str, target: str, files: list[str]):
        self.source = source
        self.target = target
        self.files = files
        super().__init__(
            f"Unresolved merge conflicts merging {source} into {target}: "
            + ", ".join(files)
        )


class StateCorruptionError(OrchestratorError):
    """State files are corrupted."""
