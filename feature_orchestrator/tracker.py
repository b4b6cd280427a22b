"""Issue tracker interface and the local JSON-backed implementation."""

from __future__ import annotations

import logging
from typing import Protocol

from .models import Issue
from .state import StateManager

logger = logging.getLogger("orchestrator")


class IssueTracker(Protocol):
    def list_issues_for_feature(self, feature: str) -> list[Issue]: ...

    def create_issue(
        self,
        feature: str,
        title: str,
        description: str,
        step_number: int,
        dependencies: list[int],
        reviewers: list[str],
        max_attempts: int,
    ) -> Issue: ...

    def update_issue(self, issue: Issue) -> None: ...

    def get_issue(self, feature: str, number: int) -> Issue | None: ...


class LocalIssueTracker:
    """Issues stored in issues.json. Numbers are unique across all features."""

    def __init__(self, state: StateManager):
        self.state = state

    def list_issues_for_feature(self, feature: str) -> list[Issue]:
        issues = [i for i in self.state.load_issues() if i.feature == feature]
        return sorted(issues, key=lambda i: (i.step_number, i.number))

    def create_issue(
        self,
        feature: str,
        title: str,
        description: str,
        step_number: int,
        dependencies: list[int],
        reviewers: list[str],
        max_attempts: int,
    ) -> Issue:
        issues = self.state.load_issues()
        number = max((i.number for i in issues), default=0) + 1
        issue = Issue(
            feature=feature,
            number=number,
            title=title,
            description=description,
            step_number=step_number,
            dependencies=dependencies,
            reviewers=reviewers,
            max_attempts=max_attempts,
        )
        issues.append(issue)
        self.state.save_issues(issues)
        logger.info(f"Created issue #{number}: {title}")
        return issue

    def update_issue(self, issue: Issue) -> None:
        issues = [
            i for i in self.state.load_issues()
            if not (i.feature == issue.feature and i.number == issue.number)
        ]
        issues.append(issue)
        self.state.save_issues(issues)

    def get_issue(self, feature: str, number: int) -> Issue | None:
        for issue in self.state.load_issues():
            if issue.feature == feature and issue.number == number:
                return issue
        return None
