"""Async git command runner."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import NamedTuple

from .errors import GitCommandError

logger = logging.getLogger("orchestrator")

GIT_TIMEOUT_SECONDS = 120


class GitResult(NamedTuple):
    returncode: int
    stdout: str
    stderr: str


async def run_git(
    *args: str,
    cwd: Path | str,
    timeout: float = GIT_TIMEOUT_SECONDS,
    check: bool = True,
) -> GitResult:
    """Run a git command without blocking the event loop.

    Raises GitCommandError on a non-zero exit when ``check`` is set, and
    always on timeout.
    """
    env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
    logger.debug(f"  git {' '.join(args)}  (in {cwd})")
    proc = await asyncio.create_subprocess_exec(
        "git", *args,
        cwd=str(cwd),
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise GitCommandError(list(args), -1, f"timed out after {timeout:.0f}s")

    result = GitResult(
        proc.returncode or 0,
        (stdout_bytes or b"").decode(errors="replace"),
        (stderr_bytes or b"").decode(errors="replace"),
    )
    if check and result.returncode != 0:
        raise GitCommandError(list(args), result.returncode, result.stderr or result.stdout)
    return result


async def rev_parse(ref: str, cwd: Path | str) -> str | None:
    """Return the commit SHA of ``ref``, or None if it does not exist."""
    result = await run_git("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", cwd=cwd, check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip()
