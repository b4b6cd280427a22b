"""Worktree manager: feature/issue branches, isolated worktrees, merges and cleanup."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from .errors import GitCommandError, GitOperationError, MergeConflictError, SyncError, WorktreeConflict
from .git import run_git, rev_parse
from .models import MergeResult, Worktree, feature_branch_name, issue_branch_name

if TYPE_CHECKING:
    from .config import OrchestratorConfig

logger = logging.getLogger("orchestrator")

MergePolicy = Literal["ours", "theirs", "manual"]


def parse_worktree_list(output: str) -> list[Worktree]:
    """Parse ``git worktree list --porcelain``. The first entry is the main worktree."""
    worktrees: list[Worktree] = []
    for block in output.strip().split("\n\n"):
        fields: dict[str, str] = {}
        for line in block.strip().splitlines():
            key, _, value = line.partition(" ")
            fields[key] = value
        if "worktree" not in fields:
            continue
        branch = fields.get("branch")
        if branch is not None:
            branch = branch.removeprefix("refs/heads/")
        worktrees.append(Worktree(
            path=fields["worktree"],
            branch=branch,
            commit=fields.get("HEAD"),
            is_main=not worktrees,
        ))
    return worktrees


def _same_path(a: Path | str, b: Path | str) -> bool:
    return Path(a).resolve() == Path(b).resolve()


class WorktreeManager:
    """Owns the branches and worktrees of one feature.

    Worktree creation and removal are serialized by a path lock; merges into
    the feature branch by a merge lock. Nothing here retries: every git
    failure is raised to the caller.
    """

    def __init__(self, config: OrchestratorConfig, feature: str):
        self.config = config
        self.feature = feature
        self.repo = config.project_dir
        self.root = config.worktree_root
        self.project = config.resolved_project_name
        self._path_lock = asyncio.Lock()
        self._merge_lock = asyncio.Lock()

    # --- Paths ---

    @property
    def feature_branch(self) -> str:
        return feature_branch_name(self.feature)

    @property
    def feature_worktree_path(self) -> Path:
        return self.worktree_path_for(self.feature_branch)

    def worktree_path_for(self, branch: str) -> Path:
        name = branch.removeprefix("feature/").replace("/", "-")
        return self.root / f"{self.project}-{name}"

    def issue_worktree_path(self, issue_number: int) -> Path:
        return self.worktree_path_for(issue_branch_name(self.feature, issue_number))

    @property
    def _publish(self) -> bool:
        return self.config.push_branches and self.config.remote is not None

    # --- Base branch and feature branch ---

    async def sync_base_branch(self, base: str) -> None:
        """Fetch ``base`` and fast-forward the local branch. Never force-resets."""
        remote = self.config.remote
        if remote is None:
            logger.info(f"No remote configured, using local {base} as is")
            return

        fetched = await run_git("fetch", remote, base, cwd=self.repo, check=False)
        if fetched.returncode != 0:
            logger.warning(f"Could not fetch {base} from {remote}, using local {base}: {fetched.stderr.strip()}")
            return
        remote_sha = await rev_parse(f"refs/remotes/{remote}/{base}", self.repo)
        local_sha = await rev_parse(f"refs/heads/{base}", self.repo)

        if remote_sha is None:
            logger.warning(f"{remote}/{base} not found after fetch, using local {base}")
            return
        if local_sha is None:
            await run_git("branch", "--track", base, f"{remote}/{base}", cwd=self.repo)
            return
        if local_sha == remote_sha:
            logger.debug(f"{base} is up to date with {remote}")
            return

        behind = await run_git("merge-base", "--is-ancestor", local_sha, remote_sha, cwd=self.repo, check=False)
        if behind.returncode == 0:
            checkout = await self._checkout_path(base)
            if checkout is not None:
                await run_git("merge", "--ff-only", f"{remote}/{base}", cwd=checkout)
            else:
                await run_git("update-ref", f"refs/heads/{base}", remote_sha, local_sha, cwd=self.repo)
            logger.info(f"Fast-forwarded {base} to {remote_sha[:8]}")
            return

        ahead = await run_git("merge-base", "--is-ancestor", remote_sha, local_sha, cwd=self.repo, check=False)
        if ahead.returncode == 0:
            logger.info(f"Local {base} is ahead of {remote}/{base}")
            return

        raise SyncError(f"Local {base} has diverged from {remote}/{base}; reconcile it manually")

    async def ensure_feature_branch(self, base: str) -> str:
        """Create ``feature/<name>`` from ``base`` unless it already exists."""
        branch = self.feature_branch
        if await rev_parse(f"refs/heads/{branch}", self.repo) is not None:
            logger.debug(f"Feature branch {branch} already exists")
            return branch

        start = base
        if await rev_parse(f"refs/heads/{base}", self.repo) is None:
            remote_base = f"{self.config.remote}/{base}" if self.config.remote else None
            if remote_base is None or await rev_parse(f"refs/remotes/{remote_base}", self.repo) is None:
                raise GitOperationError(f"Base branch {base} does not exist")
            start = remote_base

        await run_git("branch", branch, start, cwd=self.repo)
        logger.info(f"Created feature branch {branch} from {start}")
        if self._publish:
            await run_git("push", self.config.remote, branch, cwd=self.repo)
        return branch

    # --- Worktrees ---

    async def ensure_worktree(self, branch: str) -> Worktree:
        """Check ``branch`` out at its derived path, reusing an existing worktree there."""
        path = self.worktree_path_for(branch)
        async with self._path_lock:
            await run_git("worktree", "prune", cwd=self.repo)
            existing = await self._find_worktree(branch, path)
            if existing is None:
                if path.exists() and any(path.iterdir()):
                    raise WorktreeConflict(f"{path} exists and is not a worktree of this repository")
                path.parent.mkdir(parents=True, exist_ok=True)
                await run_git("worktree", "add", str(path), branch, cwd=self.repo)
                logger.info(f"Created worktree {path} ({branch})")
        return await self.worktree_status(path)

    async def setup_issue_branch(self, issue_number: int) -> str:
        """Create the issue branch off the feature branch tip in its own worktree.

        Both are reused as they are when an attempt is retried.
        """
        branch = issue_branch_name(self.feature, issue_number)
        path = self.issue_worktree_path(issue_number)
        async with self._path_lock:
            await run_git("worktree", "prune", cwd=self.repo)
            if await self._find_worktree(branch, path) is not None:
                return branch

            path.parent.mkdir(parents=True, exist_ok=True)
            if await rev_parse(f"refs/heads/{branch}", self.repo) is not None:
                await run_git("worktree", "add", str(path), branch, cwd=self.repo)
            else:
                await run_git("worktree", "add", "-b", branch, str(path), self.feature_branch, cwd=self.repo)
            logger.info(f"Issue #{issue_number}: worktree {path} on {branch}")
        return branch

    async def _find_worktree(self, branch: str, path: Path) -> Worktree | None:
        """Return the worktree of ``branch`` at ``path``, or raise if either is taken."""
        for wt in await self.list_worktrees():
            if wt.branch == branch:
                if _same_path(wt.path, path):
                    return wt
                raise WorktreeConflict(f"Branch {branch} is already checked out at {wt.path}")
            if _same_path(wt.path, path):
                raise WorktreeConflict(f"{path} has {wt.branch or 'a detached HEAD'} checked out, expected {branch}")
        return None

    async def _checkout_path(self, branch: str) -> Path | None:
        for wt in await self.list_worktrees():
            if wt.branch == branch:
                return Path(wt.path)
        return None

    # --- Commits ---

    async def commit_issue_changes(self, issue_number: int, title: str, branch: str) -> str | None:
        """Stage and commit everything in the issue worktree; None if nothing changed."""
        message = f"feat(#{issue_number}): {title}\n\nCloses #{issue_number}"
        return await self._commit_all(self.issue_worktree_path(issue_number), message, branch)

    async def commit_feature_changes(self, message: str) -> str | None:
        return await self._commit_all(self.feature_worktree_path, message, self.feature_branch)

    async def _commit_all(self, cwd: Path, message: str, branch: str) -> str | None:
        await run_git("add", "-A", cwd=cwd)
        status = await run_git("status", "--porcelain", cwd=cwd)
        if not status.stdout.strip():
            logger.info(f"Nothing to commit on {branch}")
            return None

        await run_git("commit", "-m", message, cwd=cwd)
        sha = await rev_parse("HEAD", cwd)
        logger.info(f"Committed {sha[:8] if sha else '?'} on {branch}")
        if self._publish:
            await run_git("push", self.config.remote, branch, cwd=cwd)
        return sha

    # --- Merges ---

    async def merge_issue_branch(self, branch: str, policy: MergePolicy) -> MergeResult:
        """Merge an approved issue branch into the feature branch (feature worktree)."""
        async with self._merge_lock:
            cwd = self.feature_worktree_path
            before = await rev_parse("HEAD", cwd)
            result = await self._merge(branch, self.feature_branch, cwd, policy)
            if self._publish:
                await self._push_merged(self.feature_branch, cwd, before)
            return result

    async def merge_feature_into_base(self, base: str, policy: MergePolicy) -> MergeResult:
        """Merge the feature branch into ``base`` where ``base`` is checked out."""
        async with self._merge_lock:
            checkout = await self._checkout_path(base)
            temporary = checkout is None
            if checkout is None:
                checkout = self.worktree_path_for(f"merge-{self.feature}")
                async with self._path_lock:
                    await run_git("worktree", "add", str(checkout), base, cwd=self.repo)
            try:
                before = await rev_parse("HEAD", checkout)
                result = await self._merge(self.feature_branch, base, checkout, policy)
                if self._publish:
                    await self._push_merged(base, checkout, before)
            finally:
                if temporary:
                    await self.remove_worktree(checkout)
            return result

    async def _push_merged(self, target: str, cwd: Path, before: str | None) -> None:
        """Push a freshly merged ``target``; if the push fails, move it back to ``before``."""
        try:
            await run_git("push", self.config.remote, target, cwd=cwd)
        except GitCommandError:
            if before is not None:
                logger.error(f"Push of {target} failed, resetting {target} to {before[:8]}")
                await run_git("reset", "--keep", before, cwd=cwd)
            raise

    async def _merge(self, source: str, target: str, cwd: Path, policy: MergePolicy) -> MergeResult:
        source_sha = await rev_parse(source, cwd)
        attempt = await run_git(
            "merge", "--no-edit", "-m", f"Merge {source} into {target}", source,
            cwd=cwd, check=False,
        )
        resolved: list[str] = []
        if attempt.returncode != 0:
            files = await self.get_merge_conflict_files(cwd)
            if not files:
                await self.abort_merge(cwd)
                raise GitCommandError(["merge", source], attempt.returncode, attempt.stderr or attempt.stdout)

            logger.warning(f"Merge conflicts merging {source} into {target}: {', '.join(files)}")
            if policy == "manual":
                await self.abort_merge(cwd)
                raise MergeConflictError(source, target, files)

            for path in files:
                if not await self.resolve_merge_conflict(path, policy, cwd):
                    await self.abort_merge(cwd)
                    raise MergeConflictError(source, target, [f for f in files if f not in resolved])
                resolved.append(path)
            await run_git("commit", "--no-edit", cwd=cwd)

        head = await rev_parse("HEAD", cwd)
        logger.info(f"Merged {source} into {target} ({head[:8] if head else '?'})")
        return MergeResult(
            source=source,
            target=target,
            commit=head,
            fast_forward=head == source_sha,
            resolved_files=resolved,
        )

    async def get_merge_conflict_files(self, cwd: Path) -> list[str]:
        result = await run_git("diff", "--name-only", "--diff-filter=U", cwd=cwd)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def resolve_merge_conflict(self, path: str, policy: MergePolicy, cwd: Path) -> bool:
        """Take one side of a conflicted file. False if that side cannot be checked out."""
        if policy == "manual":
            return False
        checkout = await run_git("checkout", f"--{policy}", "--", path, cwd=cwd, check=False)
        if checkout.returncode != 0:
            logger.warning(f"Cannot resolve {path} with --{policy}: {checkout.stderr.strip()}")
            return False
        await run_git("add", "--", path, cwd=cwd)
        logger.info(f"Resolved {path} using {policy}")
        return True

    async def abort_merge(self, cwd: Path) -> None:
        await run_git("merge", "--abort", cwd=cwd, check=False)

    # --- Cleanup and inspection ---

    async def remove_worktree(self, path: Path, branch: str | None = None) -> None:
        """Remove a worktree and, when given, delete its branch locally and remotely."""
        async with self._path_lock:
            if path.exists():
                await run_git("worktree", "remove", "--force", str(path), cwd=self.repo)
                logger.info(f"Removed worktree {path}")
            await run_git("worktree", "prune", cwd=self.repo)

            if branch is None:
                return
            deleted = await run_git("branch", "-D", branch, cwd=self.repo, check=False)
            if deleted.returncode != 0:
                logger.warning(f"Could not delete branch {branch}: {deleted.stderr.strip()}")
            if self._publish:
                result = await run_git("push", self.config.remote, "--delete", branch, cwd=self.repo, check=False)
                if result.returncode != 0:
                    logger.warning(f"Could not delete remote branch {branch}: {result.stderr.strip()}")

    async def cleanup_issue(self, issue_number: int, delete_branch: bool = False) -> None:
        branch = issue_branch_name(self.feature, issue_number) if delete_branch else None
        await self.remove_worktree(self.issue_worktree_path(issue_number), branch)

    async def cleanup_feature(self) -> None:
        await self.remove_worktree(self.feature_worktree_path)

    async def list_worktrees(self) -> list[Worktree]:
        result = await run_git("worktree", "list", "--porcelain", cwd=self.repo)
        worktrees = parse_worktree_list(result.stdout)
        prefix = f"{self.feature_branch}-issue-"
        for wt in worktrees:
            if wt.branch == self.feature_branch or (wt.branch or "").startswith(prefix):
                wt.feature = self.feature
        return worktrees

    async def worktree_status(self, path: Path) -> Worktree:
        """Snapshot branch, HEAD and dirty files of one worktree."""
        status = await run_git("status", "--porcelain", cwd=path)
        files = [line[3:] for line in status.stdout.splitlines() if line.strip()]
        branch = (await run_git("rev-parse", "--abbrev-ref", "HEAD", cwd=path)).stdout.strip()
        return Worktree(
            path=str(path),
            branch=None if branch == "HEAD" else branch,
            feature=self.feature,
            is_main=_same_path(path, self.repo),
            commit=await rev_parse("HEAD", path),
            has_changes=bool(files),
            files_changed=files,
        )
