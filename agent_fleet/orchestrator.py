"""Orchestrator: run agents on a task backlog in parallel batches, then merge."""

from __future__ import annotations

import argparse
import asyncio
import logging
import shutil
import subprocess
import sys
import time
from collections.abc import Awaitable
from dataclasses import dataclass, field
from pathlib import Path

from rich.console import Console
from rich.live import Live
from rich.table import Table

from .agents import Agent, AgentOptions, ClaudeAgent
from .config import DEFAULT_NAMESPACE, ConfigError, RunConfig
from .conflict_resolver import resolve_conflicts_with_ai
from .git import GitError, branch_exists, get_current_branch, git_output, return_to_base_branch
from .merge import (
    MergeSummary,
    analyze_pre_merge,
    delete_merged_branches,
    merge_agent_branch,
    rollback_merge,
    sort_by_conflict_likelihood,
)
from .notify import DesktopNotifier, Notifier, log_task_progress, safe_notify
from .retry import describe_failure
from .sandbox import cleanup_sandbox
from .task_manager import CachedTaskSource, TaskSource, TaskSourceError, YamlTaskSource
from .worker import Task, WorkerResult, run_agent_in_sandbox, run_agent_in_worktree
from .worktree import cleanup_agent_worktree, cleanup_all_worktrees

log = logging.getLogger(__name__)
console = Console()


@dataclass
class ExecutionResult:
    tasks_completed: int = 0
    tasks_failed: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost_usd: float = 0.0
    batches: list[list[str]] = field(default_factory=list)
    completed_branches: list[str] = field(default_factory=list)
    preserved_workspaces: list[Path] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    merge: MergeSummary | None = None

    @property
    def ok(self) -> bool:
        return self.tasks_failed == 0 and not (self.merge and self.merge.failed)


# ---------------------------------------------------------------------------
# Rich display
# ---------------------------------------------------------------------------

def _format_duration(seconds: float) -> str:
    """Format elapsed seconds as 'Xm YYs' or 'Xs'."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    mins = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{mins}m {secs:02d}s"


def build_batch_table(
    batch_num: int,
    batch: list[tuple[int, Task]],
    finished: dict[int, WorkerResult],
    started: float,
) -> Table:
    table = Table(title=f"Batch {batch_num}", expand=True)
    table.add_column("Agent", style="cyan", no_wrap=True, justify="right")
    table.add_column("Task", style="white")
    table.add_column("Status", justify="center")
    table.add_column("Duration", justify="right")
    table.add_column("Branch", style="dim")

    running_for = _format_duration(time.monotonic() - started)
    for agent_num, task in batch:
        wr = finished.get(agent_num)
        if wr is None:
            status = "[yellow]running[/yellow]"
            duration = f"[yellow]{running_for}[/yellow]"
            branch = ""
        else:
            status = "[green]completed[/green]" if wr.succeeded else "[red]failed[/red]"
            duration = _format_duration(wr.elapsed_seconds)
            branch = wr.branch if wr.succeeded else ""
        table.add_row(str(agent_num), task.title, status, duration, branch)

    table.caption = f"Done: {len(finished)}/{len(batch)}"
    return table


def print_dry_run_plan(batches: list[list[Task]], config: RunConfig) -> None:
    """Print the batches a real run would dispatch."""
    console.rule("[bold cyan]Dry Run: Execution Plan")
    mode = "sandbox" if config.use_sandbox else "worktree"
    console.print(
        f"\n[bold]Mode:[/bold] {mode}  [bold]Max parallel:[/bold] {config.max_parallel}"
    )
    console.print()
    for i, batch in enumerate(batches):
        console.print(f"[bold]Batch {i + 1}[/bold] ({len(batch)} task(s) in parallel):")
        for task in batch:
            group_str = (
                f" [dim][group {task.parallel_group}][/dim]" if task.parallel_group else ""
            )
            console.print(f"  • [cyan]{task.id}[/cyan]: {task.title}{group_str}")
    console.print()
    console.print(f"[bold]Batches:[/bold] {len(batches)}")
    console.rule("[bold cyan]End of Dry Run")


def print_summary(result: ExecutionResult, elapsed: float) -> None:
    console.print()
    console.rule("[bold green]Run Complete")
    console.print(f"  Completed: {result.tasks_completed}")
    console.print(f"  Failed:    {result.tasks_failed}")
    console.print(f"  Elapsed:   {_format_duration(elapsed)}")
    console.print(
        f"  Tokens:    {result.total_input_tokens} in / {result.total_output_tokens} out"
    )
    if result.total_cost_usd > 0:
        console.print(f"  Cost:      ${result.total_cost_usd:.4f}")
    for title, reason in result.failures.items():
        console.print(f"  [red]✗[/red] {title}: {reason}")
    if result.merge is not None:
        console.print(f"  Merged:    {len(result.merge.merged)} branch(es)")
        for branch in result.merge.failed:
            console.print(f"  [yellow]Not merged (kept for review):[/yellow] {branch}")
    for path in result.preserved_workspaces:
        console.print(f"  [yellow]Workspace kept:[/yellow] {path}")


# ---------------------------------------------------------------------------
# Merge phase
# ---------------------------------------------------------------------------

async def merge_completed_branches(
    branches: list[str],
    target_branch: str,
    agent: Agent,
    work_dir: str | Path,
    options: AgentOptions | None = None,
) -> MergeSummary:
    """Merge *branches* into *target_branch*, least conflict-prone first.

    Conflicts go to the agent for resolution; a merge that cannot be
    resolved is rolled back and its branch kept. Merged branches are deleted.
    """
    summary = MergeSummary()
    if not branches:
        return summary

    log.info("Merge phase: merging %d branch(es) into %s", len(branches), target_branch)

    # Read-only diffs, safe to run concurrently
    analyses = await asyncio.gather(
        *(analyze_pre_merge(branch, target_branch, work_dir) for branch in branches)
    )
    ordered = sort_by_conflict_likelihood(list(analyses))
    if ordered[0].branch != branches[0]:
        log.debug("Reordered branches to minimize conflicts: %s", [a.branch for a in ordered])

    for analysis in ordered:
        branch = analysis.branch
        log.info(
            "Merging %s... (%d file%s changed)",
            branch,
            analysis.file_count,
            "" if analysis.file_count == 1 else "s",
        )
        pre_merge = await git_output(["rev-parse", "--verify", target_branch], work_dir)
        pre_merge_sha = pre_merge.stdout.strip() if pre_merge.ok else None
        merge = await merge_agent_branch(branch, target_branch, work_dir)

        if merge.success:
            log.info("Merged %s", branch)
            summary.merged.append(branch)
        elif merge.has_conflicts:
            log.warning(
                "Merge conflict in %s (%s), attempting AI resolution",
                branch,
                ", ".join(merge.conflicted_files),
            )
            resolved = await resolve_conflicts_with_ai(
                agent, merge.conflicted_files, branch, work_dir, options
            )
            if resolved:
                log.info("Resolved conflicts and merged %s", branch)
                summary.merged.append(branch)
            else:
                log.error("Failed to resolve conflicts for %s", branch)
                try:
                    await rollback_merge(target_branch, pre_merge_sha, work_dir)
                except GitError as exc:
                    log.error(
                        "Could not restore %s after failed merge of %s: %s",
                        target_branch,
                        branch,
                        exc,
                    )
                summary.failed.append(branch)
        else:
            log.error("Failed to merge %s: %s", branch, merge.error or "Unknown error")
            summary.failed.append(branch)

    summary.undeleted = await delete_merged_branches(summary.merged, work_dir)
    for branch in summary.undeleted:
        log.warning("Could not delete merged branch %s", branch)

    if summary.merged:
        log.info("Successfully merged %d branch(es)", len(summary.merged))
    if summary.failed:
        log.warning(
            "Failed to merge %d branch(es): %s. They have been kept for manual review.",
            len(summary.failed),
            ", ".join(summary.failed),
        )
    return summary


# ---------------------------------------------------------------------------
# Batch scheduler
# ---------------------------------------------------------------------------

def _next_candidates(source: TaskSource, skip_ids: set[str]) -> list[Task]:
    """Tasks eligible for the next batch, before the max_parallel cap.

    Grouped sources yield the next task's whole group, or the task alone if
    it has group 0. Other sources yield everything that is left.
    """
    if getattr(source, "supports_groups", False):
        next_task = source.get_next_task()
        if next_task is not None and next_task.id in skip_ids:
            next_task = next((t for t in source.get_all_tasks() if t.id not in skip_ids), None)
        if next_task is None:
            return []
        group = source.get_parallel_group(next_task.title)
        if group > 0:
            return [t for t in source.get_tasks_in_group(group) if t.id not in skip_ids]
        return [next_task]
    return [t for t in source.get_all_tasks() if t.id not in skip_ids]


async def _run_batch(
    pipelines: list[tuple[int, Task, Awaitable[WorkerResult]]],
    batch_num: int,
    show_progress: bool,
) -> list[WorkerResult]:
    if not show_progress:
        return list(await asyncio.gather(*(p for _, _, p in pipelines)))

    batch = [(agent_num, task) for agent_num, task, _ in pipelines]
    finished: dict[int, WorkerResult] = {}
    started = time.monotonic()

    with Live(build_batch_table(batch_num, batch, finished, started), console=console,
              refresh_per_second=2) as live:

        async def track(agent_num: int, pipeline: Awaitable[WorkerResult]) -> WorkerResult:
            wr = await pipeline
            finished[agent_num] = wr
            live.update(build_batch_table(batch_num, batch, finished, started))
            return wr

        return list(await asyncio.gather(*(track(n, p) for n, _, p in pipelines)))


async def _cleanup_workspaces(
    worker_results: list[WorkerResult], work_dir: Path, result: ExecutionResult
) -> None:
    sandboxes_to_delete = []
    worktrees = []
    for wr in worker_results:
        if wr.workspace_dir is None:
            continue
        if wr.used_sandbox:
            if wr.preserve_workspace:
                log.warning("Sandbox preserved for manual review: %s", wr.workspace_dir)
                result.preserved_workspaces.append(wr.workspace_dir)
            else:
                sandboxes_to_delete.append(wr.workspace_dir)
        else:
            worktrees.append(wr)

    # Each workspace is owned by one finished task, so no locking is needed
    cleanups = await asyncio.gather(
        *(cleanup_agent_worktree(wr.workspace_dir, wr.branch, work_dir) for wr in worktrees),
        *(cleanup_sandbox(path) for path in sandboxes_to_delete),
    )
    for wr, cleanup in zip(worktrees, cleanups):
        if cleanup.left_in_place:
            log.info("Worktree left in place (uncommitted changes): %s", wr.workspace_dir)
            result.preserved_workspaces.append(wr.workspace_dir)


async def run_parallel(
    config: RunConfig,
    agent: Agent,
    task_source: TaskSource,
    notifier: Notifier | None = None,
) -> ExecutionResult:
    """Run the backlog in batches of up to ``config.max_parallel`` tasks.

    Each batch fully settles, including workspace cleanup, before the next
    is fetched. Branches of successful tasks are merged into the base branch
    once all batches are done. Pending backlog writes are flushed on the way
    out, whatever happens.
    """
    config.validate()
    result = ExecutionResult()
    work_dir = config.work_dir

    starting_branch = await get_current_branch(work_dir)
    base_branch = config.base_branch or starting_branch
    if base_branch == "HEAD":
        raise ConfigError("HEAD is detached; pass an explicit base branch")
    if not await branch_exists(base_branch, work_dir):
        raise ConfigError(f"base branch does not exist: {base_branch}")

    log.info(
        "Running with %s (%s mode, max_parallel=%d, base=%s)",
        agent.name,
        "sandbox" if config.use_sandbox else "worktree",
        config.max_parallel,
        base_branch,
    )

    options = AgentOptions(model_override=config.model_override, extra_args=config.extra_args)
    runner = run_agent_in_sandbox if config.use_sandbox else run_agent_in_worktree
    agent_num = 0
    # Every task is dispatched at most once per run; failed tasks stay in
    # the backlog for the next run.
    dispatched: set[str] = set()
    iteration = 0

    try:
        while True:
            if config.max_iterations > 0 and iteration >= config.max_iterations:
                log.info("Reached max iterations (%d)", config.max_iterations)
                break

            candidates = _next_candidates(task_source, dispatched)
            if not candidates:
                log.info("All tasks completed!")
                break

            batch = candidates[: config.max_parallel]
            iteration += 1
            result.batches.append([t.id for t in batch])
            dispatched.update(t.id for t in batch)
            log.info("Batch %d: %d task(s) in parallel", iteration, len(batch))

            if config.dry_run:
                for task in batch:
                    log.info("(dry run) would run: %s", task.title)
                continue

            pipelines = []
            for task in batch:
                agent_num += 1
                pipelines.append(
                    (agent_num, task, runner(agent, task, agent_num, base_branch, config))
                )
            worker_results = await _run_batch(pipelines, iteration, config.show_progress)

            for wr in worker_results:
                title = wr.task.title
                if wr.succeeded:
                    log.info('Task "%s" completed', title)
                    result.total_input_tokens += wr.result.input_tokens
                    result.total_output_tokens += wr.result.output_tokens
                    result.total_cost_usd += wr.result.cost_usd or 0.0
                    try:
                        task_source.mark_complete(wr.task.id)
                    except TaskSourceError as exc:
                        log.error("Could not mark %r complete: %s", title, exc)
                    log_task_progress(title, "completed", work_dir)
                    result.tasks_completed += 1
                    safe_notify(notifier, "task_completed", title)
                    if wr.branch:
                        result.completed_branches.append(wr.branch)
                else:
                    reason = describe_failure(wr.failure_reason)
                    log.error('Task "%s" failed: %s', title, reason)
                    log_task_progress(title, "failed", work_dir)
                    result.tasks_failed += 1
                    result.failures[title] = reason
                    safe_notify(notifier, "task_failed", title, reason)

            await _cleanup_workspaces(worker_results, work_dir, result)

        if not config.skip_merge and not config.dry_run and result.completed_branches:
            result.merge = await merge_completed_branches(
                result.completed_branches, base_branch, agent, work_dir, options
            )
            if await get_current_branch(work_dir) != starting_branch:
                log.debug("Restoring starting branch: %s", starting_branch)
                await return_to_base_branch(starting_branch, work_dir)
    finally:
        flush = getattr(task_source, "flush", None)
        if callable(flush):
            try:
                flush()
            except TaskSourceError as exc:
                log.error("Failed to persist task completions: %s", exc)

    safe_notify(notifier, "run_completed", result.tasks_completed, result.tasks_failed)
    return result


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def _preflight(config: RunConfig, agent: ClaudeAgent, check_agent: bool) -> None:
    """Fail fast on problems no task could recover from."""
    if shutil.which("git") is None:
        raise ConfigError("git is not installed or not on PATH")
    proc = subprocess.run(
        ["git", "rev-parse", "--is-inside-work-tree"],
        cwd=config.work_dir,
        capture_output=True,
        text=True,
        timeout=30,
    )
    if proc.returncode != 0 or proc.stdout.strip() != "true":
        raise ConfigError(f"not a git repository: {config.work_dir}")
    if check_agent and not agent.is_available():
        raise ConfigError(f"{agent.name} CLI ({agent.cli_command!r}) not found on PATH")


def main() -> None:
    parser = argparse.ArgumentParser(description="Run coding agents on a task backlog in parallel")
    parser.add_argument(
        "--tasks", default="PLAN.yaml", help="Backlog file, relative to the repo (default: PLAN.yaml)"
    )
    parser.add_argument("--repo-path", default=".", help="Path to the git repo (default: cwd)")
    parser.add_argument(
        "--max-parallel", type=int, default=3, help="Max tasks per batch (default: 3)"
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=0,
        help="Stop after this many batches; 0 means no limit (default: 0)",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=3,
        help="Attempts per task for retryable failures (default: 3)",
    )
    parser.add_argument(
        "--retry-delay", type=float, default=5.0, help="Seconds between attempts (default: 5)"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=1800,
        help="Wall-clock limit per agent attempt in seconds (default: 1800)",
    )
    parser.add_argument(
        "--base-branch", default=None, help="Branch to fork from and merge into (default: current)"
    )
    parser.add_argument(
        "--branch-namespace",
        default=DEFAULT_NAMESPACE,
        help=f"Prefix for agent branches (default: {DEFAULT_NAMESPACE})",
    )
    parser.add_argument(
        "--sandbox",
        action="store_true",
        default=False,
        help="Use symlink/copy sandboxes instead of git worktrees (faster for large repos)",
    )
    parser.add_argument(
        "--skip-merge", action="store_true", default=False, help="Leave agent branches unmerged"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        help="Print the batch plan without running any agent (default: False)",
    )
    parser.add_argument("--model", default=None, help="Model override passed to the agent")
    parser.add_argument(
        "--engine-arg",
        action="append",
        default=[],
        metavar="ARG",
        help="Extra argument passed through to the agent CLI (repeatable)",
    )
    parser.add_argument("--skip-tests", action="store_true", default=False)
    parser.add_argument("--skip-lint", action="store_true", default=False)
    parser.add_argument(
        "--live",
        action="store_true",
        default=False,
        help="Show a live status table for each batch",
    )
    parser.add_argument(
        "--notify",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Send a desktop notification when the run completes (default: True)",
    )
    parser.add_argument(
        "--cleanup",
        action="store_true",
        default=False,
        help="Remove all agent worktrees left behind by earlier runs, then exit",
    )
    parser.add_argument("-v", "--verbose", action="store_true", default=False)
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    agent = ClaudeAgent()
    try:
        config = RunConfig(
            work_dir=Path(args.repo_path),
            backlog_file=args.tasks,
            base_branch=args.base_branch,
            max_parallel=args.max_parallel,
            max_iterations=args.max_iterations,
            max_retries=args.max_retries,
            retry_delay=args.retry_delay,
            timeout=args.timeout,
            namespace=args.branch_namespace,
            use_sandbox=args.sandbox,
            skip_merge=args.skip_merge,
            dry_run=args.dry_run,
            skip_tests=args.skip_tests,
            skip_lint=args.skip_lint,
            model_override=args.model,
            extra_args=tuple(args.engine_arg),
            show_progress=args.live,
        )
        config.validate()
        _preflight(config, agent, check_agent=not (args.dry_run or args.cleanup))

        if args.cleanup:
            removed = asyncio.run(cleanup_all_worktrees(config.work_dir))
            console.print(f"Removed {removed} agent worktree(s)")
            return

        backlog_path = Path(args.tasks)
        if not backlog_path.is_absolute():
            backlog_path = config.work_dir / backlog_path
        if not backlog_path.is_file():
            raise ConfigError(f"backlog file not found: {backlog_path}")
        source = CachedTaskSource(YamlTaskSource(backlog_path), flush_interval=config.flush_interval)
        all_tasks = {t.id: t for t in source.get_all_tasks()}
        log.info("Loaded %d pending task(s) from %s", len(all_tasks), backlog_path)
    except (ConfigError, TaskSourceError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(2)

    notifier = DesktopNotifier() if args.notify and not args.dry_run else None
    started = time.monotonic()
    try:
        result = asyncio.run(run_parallel(config, agent, source, notifier))
    except ConfigError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(2)
    except KeyboardInterrupt:
        console.print("\n[bold red]Interrupted![/bold red] Agent workspaces may be left behind; "
                      "run with --cleanup to remove worktrees.")
        log.warning("KeyboardInterrupt, shutting down")
        sys.exit(130)

    if args.dry_run:
        print_dry_run_plan([[all_tasks[i] for i in batch] for batch in result.batches], config)
        return
    print_summary(result, time.monotonic() - started)
    sys.exit(0 if result.ok else 1)


if __name__ == "__main__":
    main()
