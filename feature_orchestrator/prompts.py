"""Prompt templates for architecture, solver and reviewer sessions."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from pathlib import Path

from .errors import UnresolvedPlaceholderError

logger = logging.getLogger("orchestrator")

PLACEHOLDER_RE = re.compile(r"\$([A-Z][A-Z0-9_]*)")

ARCHITECTURE_PROMPT_TEMPLATE = """\
You are the architecture agent ($AGENT_ID) for feature "$FEATURE_NAME".
Your working directory is the feature worktree at $WORKTREE_PATH.

## Feature Request

$FEATURE_REQUEST

## Your Task

1. Study the repository to understand its structure and conventions.
2. Write your design notes to `$ARCHITECTURE_NOTES`.
3. Break the feature into small, independently reviewable issues. Each issue
   must be solvable in one focused coding session.
4. Order the issues with `step_number` (starting at 1). List in `dependencies`
   the step numbers an issue needs merged first. Do not create cycles.
5. Optionally name the reviewer profiles an issue needs in `reviewers`.
   Available profiles: $REVIEWER_PROFILES.

## Output

Finish with exactly one fenced JSON block of this shape and nothing after it:

```json
{"issues": [{"step_number": 1, "title": "...", "description": "...", "dependencies": [], "reviewers": []}]}
```

Do not commit, push or switch branches. The orchestrator does that.
"""

SOLVER_PROMPT_TEMPLATE = """\
You are solver agent $AGENT_ID implementing issue #$ISSUE_NUMBER of feature "$FEATURE_NAME".
This is attempt $ATTEMPT_NUMBER of $MAX_ATTEMPTS.

## Workspace

- Working directory: $WORKTREE_PATH (an isolated git worktree for this issue only)
- Your branch was created from: $BASE_BRANCH

## Issue

$ISSUE_DETAILS

## Previous Feedback

$PREVIOUS_FEEDBACK_SECTION

## Protocol

1. Read the relevant code and any architecture notes under `.orchestrator/`.
2. Implement the issue following the project's existing patterns.
3. Run the project's tests, linters and build, and fix what you broke.
4. Leave your changes in the working tree. Do not commit, push, switch branches
   or touch other worktrees. The orchestrator commits and opens the review.
5. Print a short summary of what you changed.
"""

REVIEWER_PROMPT_TEMPLATE = """\
You are reviewer agent $AGENT_ID with the "$REVIEWER_PROFILE" profile.
Review the changes for issue #$ISSUE_NUMBER of feature "$FEATURE_NAME" (attempt $ATTEMPT_NUMBER).

- Working directory: $WORKTREE_PATH
- Review the diff with: `git diff $BASE_BRANCH...HEAD`

## Issue

$ISSUE_DETAILS

$PROFILE_SPECIFIC_CONTENT

## Verdict

You are read-only: do not edit files or commit. Explain every problem you find
with file and line references. End your response with exactly one of:

VERDICT: APPROVE
VERDICT: NEEDS_CHANGES
VERDICT: REJECT

Use REJECT only for changes that are wrong in approach or unsafe to merge.
"""

DEFAULT_PROFILE_CONTENT = """\
## $PROFILE Review Focus

No specific profile guidance available. Use general code review principles:
correctness, tests, readability and consistency with the codebase."""

NO_FEEDBACK = "No previous attempts - this is the first implementation attempt."


def find_placeholders(template: str) -> list[str]:
    """Return the distinct $KEY names in a template, in order of appearance."""
    seen: dict[str, None] = {}
    for match in PLACEHOLDER_RE.finditer(template):
        seen.setdefault(match.group(1), None)
    return list(seen)


def render_template(template: str, variables: Mapping[str, object]) -> str:
    """Replace every literal $KEY in template with str(variables[KEY]).

    Any key is substituted, not only upper-case ones. Keys are tried longest
    first in a single pass, so substituted values are never re-scanned and the
    result does not depend on the iteration order of ``variables``. An
    upper-case $TOKEN with no value raises UnresolvedPlaceholderError.
    """
    missing = [key for key in find_placeholders(template) if key not in variables]
    if missing:
        raise UnresolvedPlaceholderError(missing)
    keys = sorted((k for k in variables if k), key=lambda k: (-len(k), k))
    if not keys:
        return template
    pattern = re.compile(r"\$(" + "|".join(re.escape(k) for k in keys) + ")")
    return pattern.sub(lambda m: str(variables[m.group(1)]), template)


def load_profile_content(profile: str, profiles_dir: Path | None) -> str:
    """Load reviewer guidance from <profiles_dir>/<profile>/review.md."""
    if profiles_dir is not None:
        path = profiles_dir / profile.lower() / "review.md"
        if path.is_file():
            logger.debug(f"Loaded {profile} profile content from {path}")
            return path.read_text()
        logger.warning(f"No profile content found for {profile} at {path}")
    return DEFAULT_PROFILE_CONTENT.replace("$PROFILE", profile.upper())
