"""Review verdict parsing, the approval rule and feedback for re-solves."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from enum import Enum

from .models import ApprovalStatus, ReviewVerdict
from .prompts import NO_FEEDBACK

logger = logging.getLogger("orchestrator")

VERDICT_RE = re.compile(
    r"^\W*VERDICT\W*:\W*(APPROVE|APPROVED|REJECT|REJECTED|NEEDS[ _-]CHANGES)\b",
    re.IGNORECASE | re.MULTILINE,
)
APPROVE_MARKER = "✅ APPROVE"
REJECT_MARKER = "❌ REJECT"
REWORK_MARKER = "**REWORK_REQUIRED**"


class ReviewOutcome(str, Enum):
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"


def parse_review_verdict(response: str) -> ApprovalStatus:
    """Classify a reviewer's free-text response.

    The last ``VERDICT:`` line wins. Older emoji markers are accepted as a
    fallback; anything unclear is treated as a rejection.
    """
    matches = VERDICT_RE.findall(response)
    if matches:
        word = matches[-1].upper()
        if word.startswith("APPROVE"):
            return ApprovalStatus.APPROVED
        if word.startswith("REJECT"):
            return ApprovalStatus.REJECTED
        return ApprovalStatus.NEEDS_CHANGES

    has_approve = APPROVE_MARKER in response
    has_reject = REJECT_MARKER in response
    if has_approve and has_reject:
        logger.warning("Both APPROVE and REJECT markers found, treating as REJECT")
        return ApprovalStatus.REJECTED
    if has_reject:
        return ApprovalStatus.REJECTED
    if REWORK_MARKER in response:
        return ApprovalStatus.NEEDS_CHANGES
    if has_approve:
        return ApprovalStatus.APPROVED

    logger.warning("Unclear review result, treating as REJECT")
    return ApprovalStatus.REJECTED


def decide_review_outcome(
    verdicts: Sequence[ReviewVerdict], required_approvals: int,
) -> ReviewOutcome:
    """Approved iff enough approvals and no rejection.

    ``needs_changes`` neither blocks nor counts toward the threshold.
    """
    approvals = sum(1 for v in verdicts if v.approval_status == ApprovalStatus.APPROVED)
    rejected = any(v.approval_status == ApprovalStatus.REJECTED for v in verdicts)
    if not rejected and approvals >= required_approvals:
        return ReviewOutcome.APPROVED
    return ReviewOutcome.CHANGES_REQUESTED


def format_previous_feedback(history: Sequence[ReviewVerdict]) -> str:
    """Concatenate every verdict of the prior attempts, grouped by attempt.

    Approving verdicts are included too; each entry is labelled with its
    reviewer profile and verdict status.
    """
    if not history:
        return NO_FEEDBACK

    sections: list[str] = []
    for attempt in sorted({v.attempt_number for v in history}):
        sections.append(f"### Attempt {attempt}")
        for verdict in history:
            if verdict.attempt_number != attempt:
                continue
            sections.append(
                f"#### {verdict.reviewer_profile} ({verdict.approval_status.value})\n"
                f"{verdict.feedback.strip()}"
            )
    sections.append("**Address all of the feedback above before finishing.**")
    return "\n\n".join(sections)
