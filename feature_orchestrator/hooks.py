"""Hook callbacks enforcing per-agent tool policy inside agent sessions."""

from __future__ import annotations

import logging
import re
from typing import Any

from .models import AgentType

logger = logging.getLogger("orchestrator")

# ---------------------------------------------------------------------------
# Bash command rules
#
# Every agent kind gets the COMMON rules. Solvers and reviewers work inside a
# worktree the orchestrator owns, so they additionally may not move it to
# another branch, publish it, or manage worktrees. Reviewers are read-only.
# Each entry is (pattern, reason).
# ---------------------------------------------------------------------------

COMMON_BLOCKED_SUBSTRINGS: list[tuple[str, str]] = [
    ("mkfs.", "filesystem format"),
    (":(){:|:&};:", "fork bomb"),
    ("dd if=/dev/", "raw disk write"),
    ("git reset --hard", "destructive history reset"),
    ("git clean -f", "force-delete untracked files"),
    ("git branch -D", "force-delete branch"),
    ("git push --force", "force push"),
    ("git rebase", "rebase (risky in automated context)"),
    ("npm publish", "publish package to npm"),
    ("twine upload", "publish package to PyPI"),
    ("cargo publish", "publish crate"),
]

COMMON_BLOCKED_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (
        re.compile(r"\b(curl|wget)\b.*\|\s*(sh|bash|zsh|python|node)\b"),
        "piping downloaded content to interpreter",
    ),
    (re.compile(r"\bsudo\b"), "sudo"),
    (re.compile(r"\brm\s+-[a-zA-Z]*[rR][a-zA-Z]*\s+(/|~|\.\.?)(\s|$)"), "recursive rm of root, home or cwd"),
]

WORKTREE_BLOCKED_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\bgit\s+push\b"), "push (the orchestrator pushes issue branches)"),
    (re.compile(r"\bgit\s+(checkout|switch)\s+(-[bBcC]\s+)?[\w./-]+\s*(?:$|[;&|\n])"), "switch branch"),
    (re.compile(r"\bgit\s+worktree\b"), "manage worktrees"),
    (re.compile(r"\bgit\s+merge\b"), "merge (the orchestrator merges approved work)"),
]

REVIEWER_BLOCKED_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (
        re.compile(r"\bgit\s+(?:(?:commit|add|stash|restore)\b|checkout\s+--(?:\s|$))"),
        "modify the reviewed tree",
    ),
]

REVIEWER_DISALLOWED_TOOLS = ["Write", "Edit", "NotebookEdit"]


def check_command(command: str, kind: AgentType) -> str | None:
    """Return None if an agent of ``kind`` may run ``command``, else the reason."""
    for pattern, reason in COMMON_BLOCKED_SUBSTRINGS:
        if pattern in command:
            return reason

    rules = list(COMMON_BLOCKED_PATTERNS)
    if kind in (AgentType.SOLVER, AgentType.REVIEWER):
        rules += WORKTREE_BLOCKED_PATTERNS
    if kind == AgentType.REVIEWER:
        rules += REVIEWER_BLOCKED_PATTERNS

    for regex, reason in rules:
        if regex.search(command):
            return reason
    return None


class AgentHooks:
    """Per-session hook callbacks: command policy and activity logging."""

    def __init__(self, kind: AgentType, agent_id: str):
        self.kind = kind
        self.agent_id = agent_id
        self.tool_count = 0
        self.blocked: list[str] = []

    async def policy_hook(
        self,
        input_data: dict[str, Any],
        tool_use_id: str | None,
        context: Any,
    ) -> dict[str, Any]:
        """Deny Bash commands this agent kind may not run."""
        if input_data.get("hook_event_name") != "PreToolUse":
            return {}
        if input_data.get("tool_name") != "Bash":
            return {}

        command = input_data.get("tool_input", {}).get("command", "")
        reason = check_command(command, self.kind)
        if reason is None:
            return {}

        self.blocked.append(command)
        logger.warning(f"  {self.agent_id}: BLOCKED {reason} -- {command}")
        return {
            "hookSpecificOutput": {
                "hookEventName": "PreToolUse",
                "permissionDecision": "deny",
                "permissionDecisionReason": (
                    f"Blocked by orchestrator policy for {self.kind.value} agents: {reason}"
                ),
            }
        }

    async def activity_tracker(
        self,
        input_data: dict[str, Any],
        tool_use_id: str | None,
        context: Any,
    ) -> dict[str, Any]:
        self.tool_count += 1
        tool_name = input_data.get("tool_name", "unknown")
        logger.debug(f"  {self.agent_id}: tool #{self.tool_count}: {tool_name}")
        return {}

    async def stop_hook(
        self,
        input_data: dict[str, Any],
        tool_use_id: str | None,
        context: Any,
    ) -> dict[str, Any]:
        logger.info(f"  {self.agent_id}: session stopping. Tools used: {self.tool_count}")
        return {}
