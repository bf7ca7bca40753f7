"""Run one task in an isolated workspace: provision, execute the agent, capture."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path

from .agents import Agent, AgentOptions, AgentResult
from .config import RunConfig
from .git import filter_ignored, generate_unique_id
from .prompt import build_parallel_prompt
from .retry import RetryableAgentError, WorkerError, is_retryable_error, with_retry
from .sandbox import create_sandbox, get_modified_files, get_sandbox_base, verify_sandbox_isolation
from .sandbox_git import commit_sandbox_changes, get_git_mutex
from .worktree import create_agent_worktree, get_worktree_base

logger = logging.getLogger(__name__)

__all__ = [
    "Task",
    "WorkerError",
    "WorkerResult",
    "run_agent_in_sandbox",
    "run_agent_in_worktree",
    "run_task",
]


@dataclass
class Task:
    id: str
    title: str
    description: str = ""
    parallel_group: int = 0
    completed: bool = False


@dataclass
class WorkerResult:
    task: Task
    agent_num: int
    workspace_dir: Path | None = None
    branch: str = ""
    result: AgentResult | None = None
    error: str | None = None
    used_sandbox: bool = False
    preserve_workspace: bool = False
    modified_files: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.result is not None and self.result.success

    @property
    def failure_reason(self) -> str:
        if self.error:
            return self.error
        if self.result is not None and self.result.error:
            return self.result.error
        return "Unknown error"

    @property
    def elapsed_seconds(self) -> float:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0


async def run_task(
    agent: Agent,
    task: Task,
    workspace_dir: str | Path,
    config: RunConfig,
    allow_commit: bool = True,
    branch: str = "",
) -> AgentResult:
    """Run *agent* on *task* inside *workspace_dir* with retries.

    Each attempt is bounded by ``config.timeout``. Timeouts and errors that
    ``config.is_retryable`` (or the default predicate) accepts are retried up
    to ``config.max_retries`` attempts in total. Anything else is returned
    at once as a failed result.
    """
    workspace_dir = Path(workspace_dir)
    prompt = build_parallel_prompt(
        task.title,
        task.description,
        boundaries=config.boundary_files,
        allow_commit=allow_commit,
        skip_tests=config.skip_tests,
        skip_lint=config.skip_lint,
        workspace_dir=workspace_dir,
    )
    options = AgentOptions(model_override=config.model_override, extra_args=config.extra_args)
    is_retryable = config.is_retryable or is_retryable_error

    async def attempt() -> AgentResult:
        try:
            res = await asyncio.wait_for(
                agent.execute(prompt, workspace_dir, options), timeout=config.timeout
            )
        except asyncio.TimeoutError as exc:
            raise RetryableAgentError(f"Agent timed out after {config.timeout:g}s") from exc
        if not res.success and res.error and is_retryable(res.error):
            raise RetryableAgentError(res.error)
        return res

    try:
        result = await with_retry(
            attempt, config.max_retries, config.retry_delay, label=f"Task {task.title!r}"
        )
    except RetryableAgentError as exc:
        result = AgentResult(success=False, error=str(exc))
    return replace(result, workspace_dir=workspace_dir, branch=branch)


async def run_agent_in_worktree(
    agent: Agent,
    task: Task,
    agent_num: int,
    base_branch: str,
    config: RunConfig,
) -> WorkerResult:
    """Provision a worktree for *task* and run the agent in it.

    The agent commits its own work on the worktree branch. Exceptions are
    caught and reported on the returned :class:`WorkerResult`.
    """
    result = WorkerResult(task=task, agent_num=agent_num, started_at=datetime.now(timezone.utc))
    try:
        worktree = await create_agent_worktree(
            task.title,
            agent_num,
            base_branch,
            get_worktree_base(config.work_dir),
            config.work_dir,
            namespace=config.namespace,
        )
        result.workspace_dir = worktree.worktree_dir
        result.branch = worktree.branch_name
        logger.debug("Agent %d: running %r in %s", agent_num, task.title, worktree.worktree_dir)

        result.result = await run_task(
            agent, task, worktree.worktree_dir, config, allow_commit=True, branch=worktree.branch_name
        )
    except Exception as e:
        result.error = str(e) or type(e).__name__
        logger.error("Agent %d: task %r failed: %s", agent_num, task.title, result.error)
    finally:
        result.finished_at = datetime.now(timezone.utc)
    return result


async def run_agent_in_sandbox(
    agent: Agent,
    task: Task,
    agent_num: int,
    base_branch: str,
    config: RunConfig,
) -> WorkerResult:
    """Provision a sandbox for *task*, run the agent, then commit its output.

    The commit goes to a fresh branch of the real repository through the
    shared git mutex. Provisioning takes the same mutex, so sandbox copies
    are serialized with commits rather than running alongside them; only the
    agent run and the change scan are fully parallel. ``preserve_workspace``
    is set whenever the sandbox holds agent output that did not make it into
    a commit.
    """
    sandbox_dir = get_sandbox_base(config.work_dir) / f"agent-{agent_num}-{generate_unique_id()}"
    result = WorkerResult(
        task=task,
        agent_num=agent_num,
        workspace_dir=sandbox_dir,
        used_sandbox=True,
        started_at=datetime.now(timezone.utc),
    )
    try:
        # A sandbox commit briefly checks out an agent branch in the repo;
        # copying then would pick up that branch's files
        await get_git_mutex(config.work_dir).run(
            lambda: create_sandbox(config.work_dir, sandbox_dir, agent_num, config.symlink_dirs)
        )
        if not verify_sandbox_isolation(sandbox_dir, config.symlink_dirs):
            logger.warning("Agent %d: some shared directories were copied, not symlinked", agent_num)

        result.result = await run_task(agent, task, sandbox_dir, config, allow_commit=False)

        if result.result.success:
            modified = await get_modified_files(sandbox_dir, config.work_dir, config.symlink_dirs)
            # The backlog is rewritten in the repo while agents run
            modified = [f for f in modified if f != config.backlog_relpath]
            result.modified_files = await filter_ignored(modified, config.work_dir)
            if result.modified_files:
                commit = await commit_sandbox_changes(
                    config.work_dir,
                    result.modified_files,
                    sandbox_dir,
                    task.title,
                    agent_num,
                    base_branch,
                    namespace=config.namespace,
                )
                if commit.success:
                    result.branch = commit.branch_name
                    logger.debug(
                        "Agent %d: committed %d files to %s",
                        agent_num,
                        commit.files_committed,
                        commit.branch_name,
                    )
                else:
                    result.error = commit.error or "Failed to commit sandbox changes"
                    result.preserve_workspace = True
        else:
            await _flag_uncommitted_output(result, config)
    except Exception as e:
        result.error = str(e) or type(e).__name__
        logger.error("Agent %d: task %r failed: %s", agent_num, task.title, result.error)
        if result.result is not None and result.result.success:
            # Agent finished but capture broke; its output only lives here now
            result.preserve_workspace = True
        else:
            await _flag_uncommitted_output(result, config)
    finally:
        result.finished_at = datetime.now(timezone.utc)
    return result


async def _flag_uncommitted_output(result: WorkerResult, config: RunConfig) -> None:
    """Mark a failed sandbox for preservation if the agent left changes in it."""
    if result.workspace_dir is None or not result.workspace_dir.exists():
        return
    try:
        modified = await get_modified_files(result.workspace_dir, config.work_dir, config.symlink_dirs)
        result.modified_files = [f for f in modified if f != config.backlog_relpath]
    except OSError as exc:
        logger.warning(
            "Agent %d: could not scan sandbox %s: %s", result.agent_num, result.workspace_dir, exc
        )
        result.preserve_workspace = True
        return
    result.preserve_workspace = bool(result.modified_files)
