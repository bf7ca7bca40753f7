"""Merge agent branches back into the target branch.

Branches are analysed in parallel, ordered so that branches touching files no
other branch touches go first, then merged one at a time into the single
working tree.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path

from .git import GitError, delete_local_branch, git_output, parse_file_list, run_git

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PreMergeAnalysis:
    branch: str
    files_changed: list[str] = field(default_factory=list)

    @property
    def file_count(self) -> int:
        return len(self.files_changed)


@dataclass
class MergeResult:
    success: bool
    has_conflicts: bool = False
    conflicted_files: list[str] = field(default_factory=list)
    potential_conflict_files: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class MergeSummary:
    merged: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    undeleted: list[str] = field(default_factory=list)


async def analyze_pre_merge(branch: str, target_branch: str, work_dir: str | Path) -> PreMergeAnalysis:
    """List the files *branch* changed since it diverged from *target_branch*.

    Returns an empty analysis if git fails, e.g. because the branch is gone.
    """
    result = await git_output(["diff", "--name-only", f"{target_branch}...{branch}"], work_dir)
    if not result.ok:
        logger.debug("Pre-merge diff failed for %s: %s", branch, result.stderr.strip()[:300])
        return PreMergeAnalysis(branch=branch)
    return PreMergeAnalysis(branch=branch, files_changed=parse_file_list(result.stdout))


def calculate_conflict_score(analysis: PreMergeAnalysis, all_analyses: list[PreMergeAnalysis]) -> int:
    """Sum of files *analysis* shares with each other branch."""
    files = set(analysis.files_changed)
    score = 0
    for other in all_analyses:
        if other.branch == analysis.branch:
            continue
        score += sum(1 for f in other.files_changed if f in files)
    return score


def sort_by_conflict_likelihood(analyses: list[PreMergeAnalysis]) -> list[PreMergeAnalysis]:
    """Order by ascending conflict score, then ascending file count. Stable."""
    scores = {a.branch: calculate_conflict_score(a, analyses) for a in analyses}
    return sorted(analyses, key=lambda a: (scores[a.branch], a.file_count))


async def get_potential_conflict_files(
    branch: str, target_branch: str, work_dir: str | Path
) -> list[str]:
    """Files changed both on *branch* and on *target_branch* since their merge-base."""
    base = await git_output(["merge-base", target_branch, branch], work_dir)
    merge_base = base.stdout.strip()
    if not base.ok or not merge_base:
        return []
    branch_diff, target_diff = await asyncio.gather(
        git_output(["diff", "--name-only", f"{merge_base}..{branch}"], work_dir),
        git_output(["diff", "--name-only", f"{merge_base}..{target_branch}"], work_dir),
    )
    if not branch_diff.ok or not target_diff.ok:
        return []
    target_files = set(parse_file_list(target_diff.stdout))
    return [f for f in parse_file_list(branch_diff.stdout) if f in target_files]


async def get_conflicted_files(work_dir: str | Path) -> list[str]:
    output = await run_git(["diff", "--name-only", "--diff-filter=U"], work_dir)
    return parse_file_list(output)


async def is_merge_in_progress(work_dir: str | Path) -> bool:
    result = await git_output(["rev-parse", "-q", "--verify", "MERGE_HEAD"], work_dir)
    return result.ok


async def abort_merge(work_dir: str | Path) -> None:
    result = await git_output(["merge", "--abort"], work_dir)
    if not result.ok:
        logger.debug("git merge --abort: %s", result.stderr.strip()[:300])


async def rollback_merge(
    target_branch: str, pre_merge_sha: str | None, work_dir: str | Path
) -> None:
    """Put *target_branch* back at *pre_merge_sha* after a failed merge.

    Aborts a merge still in progress. If a commit was made anyway (a
    resolver that committed without resolving), the branch is hard reset.
    """
    if await is_merge_in_progress(work_dir):
        await abort_merge(work_dir)

    current = await git_output(["rev-parse", "--abbrev-ref", "HEAD"], work_dir)
    if current.stdout.strip() != target_branch:
        await run_git(["checkout", "--force", target_branch], work_dir)

    if pre_merge_sha is None:
        return
    head = (await run_git(["rev-parse", "HEAD"], work_dir)).strip()
    if head != pre_merge_sha:
        logger.warning("Resetting %s from %s back to %s", target_branch, head[:12], pre_merge_sha[:12])
        await run_git(["reset", "--hard", pre_merge_sha], work_dir)


async def merge_agent_branch(branch: str, target_branch: str, work_dir: str | Path) -> MergeResult:
    """Check out *target_branch* and merge *branch* into it with ``--no-ff``.

    On a content conflict the merge is left in progress so the caller can
    resolve or abort it. Any other git failure is reported as an error.
    """
    potential = await get_potential_conflict_files(branch, target_branch, work_dir)
    if potential:
        logger.debug("Files changed on both %s and %s: %s", branch, target_branch, potential)

    try:
        await run_git(["checkout", target_branch], work_dir)
        merge = await git_output(
            ["merge", "--no-ff", "-m", f"Merge {branch} into {target_branch}", branch], work_dir
        )
        if merge.ok:
            return MergeResult(success=True, potential_conflict_files=potential)

        conflicted = await get_conflicted_files(work_dir)
        if conflicted:
            return MergeResult(
                success=False,
                has_conflicts=True,
                conflicted_files=conflicted,
                potential_conflict_files=potential,
            )
        error = (merge.stderr.strip() or merge.stdout.strip())[:500]
        if await is_merge_in_progress(work_dir):
            await abort_merge(work_dir)
        return MergeResult(success=False, potential_conflict_files=potential, error=error)
    except GitError as exc:
        return MergeResult(success=False, potential_conflict_files=potential, error=str(exc))


async def delete_merged_branches(branches: list[str], work_dir: str | Path) -> list[str]:
    """Force-delete *branches* concurrently. Returns the ones that could not be deleted.

    Concurrent ``git branch -D`` calls can collide on ref locks, so every
    failed deletion is retried once, sequentially.
    """
    if not branches:
        return []
    results = await asyncio.gather(
        *(delete_local_branch(branch, work_dir, force=True) for branch in branches)
    )
    retry = [branch for branch, deleted in zip(branches, results) if not deleted]
    undeleted = []
    for branch in retry:
        if not await delete_local_branch(branch, work_dir, force=True):
            undeleted.append(branch)
    for branch in branches:
        if branch not in undeleted:
            logger.debug("Deleted merged branch: %s", branch)
    return undeleted
