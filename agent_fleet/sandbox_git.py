"""Commit sandbox output to a branch of the shared repository.

Sandboxes symlink the same ``.git`` directory, so every commit mutates one
index and one HEAD. All commits for a repository go through a single FIFO
mutex; the critical section is copy + stage + commit only.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from .config import DEFAULT_NAMESPACE
from .git import (
    agent_branch_name,
    delete_local_branch,
    generate_unique_id,
    get_current_branch,
    git_output,
    run_git,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GitMutex:
    """Serialise coroutines in arrival order.

    ``asyncio.Lock`` hands the lock to its waiters first-in first-out, so
    nobody starves. The lock is recreated when used from a new event loop.
    """

    def __init__(self) -> None:
        self._lock: asyncio.Lock | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.pending = 0

    def _get_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._loop is not loop:
            self._lock = asyncio.Lock()
            self._loop = loop
        return self._lock

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        lock = self._get_lock()
        self.pending += 1
        try:
            async with lock:
                return await fn()
        finally:
            self.pending -= 1


_mutexes: dict[Path, GitMutex] = {}


def get_git_mutex(repo_dir: str | Path) -> GitMutex:
    key = Path(repo_dir).resolve()
    mutex = _mutexes.get(key)
    if mutex is None:
        mutex = _mutexes[key] = GitMutex()
    return mutex


@dataclass(slots=True)
class SandboxCommitResult:
    success: bool
    branch_name: str
    files_committed: int
    error: str | None = None


def _copy_files(sandbox_dir: Path, original_dir: Path, files: list[str]) -> None:
    for rel_path in files:
        source = sandbox_dir / rel_path
        if not source.is_file():
            continue
        destination = original_dir / rel_path
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, destination)


async def commit_sandbox_changes(
    original_dir: str | Path,
    modified_files: list[str],
    sandbox_dir: str | Path,
    task_title: str,
    agent_num: int,
    base_branch: str,
    namespace: str = DEFAULT_NAMESPACE,
) -> SandboxCommitResult:
    """Commit *modified_files* from a sandbox onto a new branch off *base_branch*.

    On failure the repository is moved back to *base_branch* on a best-effort
    basis and the branch name is reported so the partial branch can be
    inspected. It is never deleted.
    """
    if not modified_files:
        return SandboxCommitResult(success=True, branch_name="", files_committed=0)

    original = Path(original_dir)
    sandbox = Path(sandbox_dir)
    branch_name = agent_branch_name(namespace, agent_num, generate_unique_id(), task_title)
    mutex = get_git_mutex(original)

    async def critical_section() -> SandboxCommitResult:
        try:
            previous_branch = await get_current_branch(original)
            await run_git(["checkout", "-B", branch_name, base_branch], original)

            await asyncio.to_thread(_copy_files, sandbox, original, modified_files)

            # Stage exactly the captured files, never the whole tree
            await run_git(["add", "--", *modified_files], original)
            staged = await git_output(["diff", "--cached", "--quiet"], original)
            if staged.ok:
                logger.info(
                    "Agent %d: sandbox changes match %s, nothing to commit",
                    agent_num,
                    base_branch,
                )
                await run_git(["checkout", previous_branch], original)
                await delete_local_branch(branch_name, original, force=True)
                return SandboxCommitResult(success=True, branch_name="", files_committed=0)

            message = f"feat: {task_title}\n\nAutomated commit by agent-fleet agent {agent_num}"
            await run_git(["commit", "-m", message], original)
            logger.debug(
                "Agent %d: committed %d files to %s", agent_num, len(modified_files), branch_name
            )

            await run_git(["checkout", previous_branch], original)
            return SandboxCommitResult(
                success=True,
                branch_name=branch_name,
                files_committed=len(modified_files),
            )
        except Exception as exc:
            logger.error("Agent %d: sandbox commit failed on %s: %s", agent_num, branch_name, exc)
            await _recover(original, base_branch)
            return SandboxCommitResult(
                success=False,
                branch_name=branch_name,
                files_committed=0,
                error=str(exc),
            )

    if mutex.pending:
        logger.debug("Agent %d: waiting for git lock (%d ahead)", agent_num, mutex.pending)
    return await mutex.run(critical_section)


async def _recover(original: Path, base_branch: str) -> None:
    result = await git_output(["rev-parse", "--abbrev-ref", "HEAD"], original)
    if result.ok and result.stdout.strip() == base_branch:
        return
    recovered = await git_output(["checkout", base_branch], original)
    if not recovered.ok:
        logger.warning(
            "Could not return %s to %s: %s", original, base_branch, recovered.stderr.strip()[:300]
        )
