"""Issue scheduler: pure functions over the issue table."""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Collection, Iterable

from .errors import DependencyCycleError
from .models import Issue, IssueStatus


def _by_number(issues: Iterable[Issue]) -> dict[int, Issue]:
    return {issue.number: issue for issue in issues}


def is_ready(issue: Issue, table: dict[int, Issue]) -> bool:
    """Open, and every dependency closed. Dependencies outside the table count as done."""
    if issue.status != IssueStatus.OPEN:
        return False
    return all(
        table[dep].status == IssueStatus.CLOSED
        for dep in issue.dependencies
        if dep in table
    )


def ready_set(issues: Iterable[Issue]) -> list[int]:
    """Ready issue numbers, ordered by (step_number, number)."""
    table = _by_number(issues)
    ready = [issue for issue in table.values() if is_ready(issue, table)]
    ready.sort(key=lambda i: (i.step_number, i.number))
    return [issue.number for issue in ready]


def check_dependency_graph(issues: Iterable[Issue]) -> list[int]:
    """Return a topological order of the issues or raise DependencyCycleError.

    Kahn's algorithm over dependency -> dependent edges; a self-dependency
    is a cycle of one.
    """
    table = _by_number(issues)
    indegree = {number: 0 for number in table}
    dependents: dict[int, list[int]] = defaultdict(list)
    for issue in table.values():
        for dep in set(issue.dependencies):
            if dep in table:
                indegree[issue.number] += 1
                dependents[dep].append(issue.number)

    queue = deque(sorted(
        (n for n, degree in indegree.items() if degree == 0),
        key=lambda n: (table[n].step_number, n),
    ))
    ordered: list[int] = []
    while queue:
        current = queue.popleft()
        ordered.append(current)
        for nxt in dependents[current]:
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                queue.append(nxt)

    if len(ordered) != len(table):
        raise DependencyCycleError(_cycle_members(table, set(table) - set(ordered)))
    return ordered


def _cycle_members(table: dict[int, Issue], remaining: set[int]) -> list[int]:
    """Drop issues that only sit downstream of a cycle, keeping the cycle itself."""
    remaining = set(remaining)
    changed = True
    while changed:
        changed = False
        for number in sorted(remaining):
            has_dependent = any(
                number in table[other].dependencies for other in remaining
            )
            if not has_dependent:
                remaining.discard(number)
                changed = True
    return sorted(remaining)


def blocked_issues(issues: Iterable[Issue]) -> list[int]:
    """Open issues that can never become ready because a dependency failed."""
    table = _by_number(issues)
    failed = {n for n, issue in table.items() if issue.status == IssueStatus.FAILED}
    blocked: set[int] = set()
    changed = True
    while changed:
        changed = False
        for issue in table.values():
            if issue.status != IssueStatus.OPEN or issue.number in blocked:
                continue
            if any(dep in failed or dep in blocked for dep in issue.dependencies):
                blocked.add(issue.number)
                changed = True
    return sorted(blocked)


def admit(ready: list[int], running: Collection[int], limit: int) -> list[int]:
    """The prefix of ``ready`` that fits in the free slots, skipping running issues."""
    free = max(0, limit - len(running))
    return [n for n in ready if n not in running][:free]
