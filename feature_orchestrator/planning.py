"""Turn architecture-agent output and issue bodies into plans the scheduler can run."""

from __future__ import annotations

import json
import logging
import re

from pydantic import BaseModel, ValidationError

from .errors import InvalidFeatureNameError, PlanParseError
from .models import Issue, IssueSpec

logger = logging.getLogger("orchestrator")

FEATURE_NAME_RE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")
JSON_BLOCK_RE = re.compile(r"```(?:json)?\s*\n(.*?)```", re.DOTALL)
DEPENDENCY_RE = re.compile(r"(?:depends on|blocked by)\s+#(\d+)", re.IGNORECASE)
REVIEWER_PATTERNS = [
    re.compile(
        r"(?:\*\*)?(?:This issue requires?|Reviewers? Required?)(?:\*\*)?\s*:\s*(?:\*\*)?\s*([a-zA-Z,\s-]+?)(?:\n|$)",
        re.IGNORECASE,
    ),
    re.compile(
        r"Reviewers?\s+Required[:\s]*\n\s*(?:\*\*)?(?:This issue requires?)?(?:\*\*)?\s*:?\s*([a-zA-Z,\s-]+?)(?:\n|$)",
        re.IGNORECASE,
    ),
]
REVIEWER_NAME_RE = re.compile(r"^[a-z-]+$")


class ArchitecturePlan(BaseModel):
    issues: list[IssueSpec]


def validate_feature_name(name: str) -> str:
    if not 2 <= len(name) <= 50 or not FEATURE_NAME_RE.match(name):
        raise InvalidFeatureNameError(name)
    return name


def parse_architecture_plan(text: str) -> list[IssueSpec]:
    """Extract the issue plan from the last JSON block of an architecture response."""
    blocks = JSON_BLOCK_RE.findall(text)
    candidate = blocks[-1] if blocks else text.strip()
    try:
        plan = ArchitecturePlan.model_validate(json.loads(candidate))
    except (json.JSONDecodeError, ValidationError) as e:
        raise PlanParseError(f"Architecture output is not a valid issue plan: {e}") from e

    validate_plan(plan.issues)
    logger.info(f"Architecture plan: {len(plan.issues)} issues")
    return sorted(plan.issues, key=lambda s: s.step_number)


def validate_plan(specs: list[IssueSpec], required_approvals: int = 1) -> None:
    """Step numbers unique, dependencies refer to steps in the plan.

    An issue that names its own reviewers must name at least
    ``required_approvals`` distinct profiles.
    """
    if not specs:
        raise PlanParseError("Plan contains no issues")
    steps = [s.step_number for s in specs]
    duplicates = sorted({n for n in steps if steps.count(n) > 1})
    if duplicates:
        raise PlanParseError(f"Duplicate step numbers in plan: {duplicates}")
    known = set(steps)
    for spec in specs:
        unknown = [d for d in spec.dependencies if d not in known]
        if unknown:
            raise PlanParseError(f"Step {spec.step_number} depends on unknown steps {unknown}")
        if spec.reviewers and len(set(spec.reviewers)) < required_approvals:
            raise PlanParseError(
                f"Step {spec.step_number} names {len(set(spec.reviewers))} reviewer(s) "
                f"but {required_approvals} approvals are required"
            )


def parse_dependencies(body: str) -> list[int]:
    """Issue numbers referenced as "Depends on #N" or "Blocked by #N"."""
    seen: dict[int, None] = {}
    for match in DEPENDENCY_RE.finditer(body):
        seen.setdefault(int(match.group(1)), None)
    return list(seen)


def parse_required_reviewers(body: str) -> list[str]:
    """Reviewer profiles named by a "This issue requires: a, b" line, if any."""
    for pattern in REVIEWER_PATTERNS:
        match = pattern.search(body)
        if not match:
            continue
        reviewers = [
            r.strip().lower() for r in match.group(1).split(",")
        ]
        reviewers = [r for r in reviewers if r and REVIEWER_NAME_RE.match(r)]
        if reviewers:
            return reviewers
    return []


def enrich_from_body(issue: Issue) -> Issue:
    """Fold dependencies and reviewers written in the issue body into its fields."""
    deps = [d for d in parse_dependencies(issue.description) if d != issue.number]
    issue.dependencies = list(dict.fromkeys([*issue.dependencies, *deps]))
    if not issue.reviewers:
        issue.reviewers = parse_required_reviewers(issue.description)
    return issue
