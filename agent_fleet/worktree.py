"""Git worktree isolation for parallel agents."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from .config import DEFAULT_NAMESPACE, WORKTREE_DIR_NAME
from .git import GitError, agent_branch_name, generate_unique_id, git_output, run_git

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorktreeInfo:
    worktree_dir: Path
    branch_name: str


@dataclass(slots=True)
class WorktreeCleanup:
    left_in_place: bool


def get_worktree_base(work_dir: str | Path) -> Path:
    """Return the worktree root under *work_dir*, creating it if needed."""
    base = Path(work_dir) / WORKTREE_DIR_NAME
    base.mkdir(parents=True, exist_ok=True)
    return base


async def create_agent_worktree(
    task_title: str,
    agent_num: int,
    base_branch: str,
    worktree_base: str | Path,
    original_dir: str | Path,
    namespace: str = DEFAULT_NAMESPACE,
) -> WorktreeInfo:
    """Create a worktree on a fresh branch seeded from *base_branch*.

    The branch is created or reset with ``git worktree add -B`` so that a
    stale branch of the same name can never race a separate delete step.
    Raises :class:`GitError` if git itself fails.
    """
    unique_id = generate_unique_id()
    branch_name = agent_branch_name(namespace, agent_num, unique_id, task_title)
    worktree_dir = Path(worktree_base) / f"agent-{agent_num}-{unique_id}"

    # Stale metadata from crashed runs
    await run_git(["worktree", "prune"], original_dir)

    if worktree_dir.exists():
        logger.warning("Removing leftover worktree directory %s", worktree_dir)
        await asyncio.to_thread(shutil.rmtree, worktree_dir, ignore_errors=True)
        await run_git(["worktree", "prune"], original_dir)

    await run_git(
        ["worktree", "add", "-B", branch_name, str(worktree_dir), base_branch],
        original_dir,
    )
    logger.debug("Agent %d: created worktree %s on %s", agent_num, worktree_dir, branch_name)
    return WorktreeInfo(worktree_dir=worktree_dir, branch_name=branch_name)


async def cleanup_agent_worktree(
    worktree_dir: str | Path,
    branch_name: str,
    original_dir: str | Path,
) -> WorktreeCleanup:
    """Remove a worktree unless it holds uncommitted changes.

    The branch is never deleted; it may carry commits that still have to be
    merged.
    """
    worktree_dir = Path(worktree_dir)
    if worktree_dir.exists():
        status = await git_output(["status", "--porcelain"], worktree_dir)
        if status.ok and status.stdout.strip():
            logger.info(
                "Worktree %s (%s) has uncommitted changes, leaving it in place",
                worktree_dir,
                branch_name,
            )
            return WorktreeCleanup(left_in_place=True)

    try:
        await run_git(["worktree", "remove", "-f", str(worktree_dir)], original_dir)
    except GitError as exc:
        logger.debug("Failed to remove worktree %s: %s", worktree_dir, exc)
    return WorktreeCleanup(left_in_place=False)


async def list_worktrees(work_dir: str | Path) -> list[Path]:
    """Return all worktrees that live under this tool's worktree root."""
    output = await run_git(["worktree", "list", "--porcelain"], work_dir)
    worktrees: list[Path] = []
    for line in output.splitlines():
        if line.startswith("worktree ") and WORKTREE_DIR_NAME in line:
            worktrees.append(Path(line[len("worktree "):]))
    return worktrees


async def cleanup_all_worktrees(work_dir: str | Path) -> int:
    """Force-remove every agent worktree, then prune. Returns the number removed."""
    removed = 0
    for worktree in await list_worktrees(work_dir):
        try:
            await run_git(["worktree", "remove", "-f", str(worktree)], work_dir)
            removed += 1
        except GitError as exc:
            logger.warning("Failed to remove worktree %s: %s", worktree, exc)
    await run_git(["worktree", "prune"], work_dir)
    return removed
