"""Conflict resolution agent: lets an agent fix an in-progress merge."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

from .agents import Agent, AgentOptions
from .git import GitError, run_git
from .merge import get_conflicted_files, is_merge_in_progress

logger = logging.getLogger(__name__)

DEFAULT_RESOLVE_TIMEOUT = 600.0  # seconds

_CONFLICT_MARKER_RE = re.compile(r"^(?:<{7}|>{7})(?:\s|$)|^={7}\s*$", re.MULTILINE)


def _build_resolve_prompt(conflicted_files: list[str], branch: str) -> str:
    """Build the conflict-resolution prompt without ``str.format()``.

    File names may contain braces.
    """
    files = "\n".join("- " + f for f in conflicted_files)
    return (
        "You are an expert software engineer resolving a merge conflict.\n\n"
        "A git merge of branch "
        + branch
        + " is in progress in this repository and stopped with conflicts in:\n"
        + files
        + "\n\nThese files contain conflict markers (<<<<<<<, =======, >>>>>>>).\n"
        "Resolve every conflict by keeping BOTH sets of changes where possible.\n"
        "Remove all conflict markers and save the files.\n"
        "Do NOT run git merge --abort, git reset, or check out another branch.\n"
        "Do NOT modify files that are not in the list above.\n"
    )


def has_conflict_markers(content: str) -> bool:
    return _CONFLICT_MARKER_RE.search(content) is not None


def _files_with_markers(work_dir: Path, files: list[str]) -> list[str]:
    dirty = []
    for rel_path in files:
        path = work_dir / rel_path
        if not path.is_file():
            continue
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.warning("Could not read %s: %s", path, exc)
            dirty.append(rel_path)
            continue
        if has_conflict_markers(content):
            dirty.append(rel_path)
    return dirty


async def complete_merge(work_dir: str | Path, resolved_files: list[str]) -> bool:
    """Stage *resolved_files* and conclude the merge.

    Fails if git still reports unmerged paths or a resolved file still holds
    conflict markers. Only the listed files are staged.
    """
    work_dir = Path(work_dir)
    try:
        with_markers = await asyncio.to_thread(_files_with_markers, work_dir, resolved_files)
        if with_markers:
            logger.warning("Unresolved conflict markers remain in %s", with_markers)
            return False

        if await is_merge_in_progress(work_dir):
            await run_git(["add", "--", *resolved_files], work_dir)
            remaining = await get_conflicted_files(work_dir)
            if remaining:
                logger.warning("Unresolved conflicts remain: %s", remaining)
                return False
            # --no-edit keeps git's prepared merge message
            await run_git(["commit", "--no-edit"], work_dir)
        return True
    except GitError as exc:
        logger.error("Could not complete merge: %s", exc)
        return False


async def resolve_conflicts_with_ai(
    agent: Agent,
    conflicted_files: list[str],
    branch: str,
    work_dir: str | Path,
    options: AgentOptions | None = None,
    timeout: float = DEFAULT_RESOLVE_TIMEOUT,
) -> bool:
    """Ask *agent* to resolve the in-progress merge of *branch*.

    Returns True only when the merge has been committed cleanly. The caller
    is responsible for aborting the merge on False.
    """
    logger.info("Resolving conflicts in %s with %s: %s", branch, agent.name, conflicted_files)
    prompt = _build_resolve_prompt(conflicted_files, branch)
    try:
        result = await asyncio.wait_for(agent.execute(prompt, work_dir, options), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error("Conflict resolution for %s timed out after %gs", branch, timeout)
        return False
    except Exception as exc:
        logger.error("Conflict resolution for %s failed: %s", branch, exc)
        return False

    if not result.success:
        logger.error("Conflict resolution for %s failed: %s", branch, result.error)
        return False
    return await complete_merge(work_dir, conflicted_files)
