"""Async wrappers around the ``git`` command line."""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 120  # seconds


class GitError(RuntimeError):
    """Raised when a git command exits non-zero or times out."""

    def __init__(self, args: list[str], returncode: int | None, stderr: str) -> None:
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"git {' '.join(args)} failed: {stderr[:500]}")


@dataclass(slots=True)
class GitOutput:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def git_output(
    args: list[str], cwd: str | Path, timeout: float = GIT_TIMEOUT
) -> GitOutput:
    """Run ``git <args>`` in *cwd* and return its output without raising on failure."""
    process = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=str(cwd),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(), timeout=timeout
        )
    except asyncio.TimeoutError as exc:
        process.kill()
        await process.wait()
        raise GitError(args, None, f"timed out after {timeout}s") from exc
    return GitOutput(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout_bytes.decode("utf-8", errors="replace"),
        stderr=stderr_bytes.decode("utf-8", errors="replace"),
    )


async def run_git(
    args: list[str], cwd: str | Path, timeout: float = GIT_TIMEOUT
) -> str:
    """Run ``git <args>`` in *cwd*, returning stdout or raising :class:`GitError`."""
    result = await git_output(args, cwd, timeout=timeout)
    if not result.ok:
        raise GitError(args, result.returncode, result.stderr.strip())
    return result.stdout


def parse_file_list(output: str) -> list[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


async def get_current_branch(cwd: str | Path) -> str:
    return (await run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)).strip()


async def checkout(branch: str, cwd: str | Path) -> None:
    await run_git(["checkout", branch], cwd)


async def return_to_base_branch(branch: str, cwd: str | Path) -> None:
    """Check out *branch* again, logging instead of raising on failure."""
    try:
        await checkout(branch, cwd)
    except GitError as exc:
        logger.warning("Could not return to branch %s: %s", branch, exc)


async def branch_exists(branch: str, cwd: str | Path) -> bool:
    result = await git_output(
        ["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], cwd
    )
    return result.ok


async def delete_local_branch(branch: str, cwd: str | Path, force: bool = False) -> bool:
    flag = "-D" if force else "-d"
    result = await git_output(["branch", flag, branch], cwd)
    if not result.ok:
        logger.debug("Could not delete branch %s: %s", branch, result.stderr.strip()[:300])
    return result.ok


def slugify(text: str, max_length: int = 50) -> str:
    slug = text.lower().strip()
    slug = re.sub(r"[^a-z0-9]+", "-", slug)
    slug = slug.strip("-")
    return slug[:max_length].rstrip("-") or "task"


def generate_unique_id() -> str:
    """Return ``<epoch millis>-<6 hex chars>`` for collision-free names."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


def agent_branch_name(namespace: str, agent_num: int, unique_id: str, title: str) -> str:
    return f"{namespace.strip('/')}/agent-{agent_num}-{unique_id}-{slugify(title)}"


async def filter_ignored(paths: list[str], cwd: str | Path) -> list[str]:
    """Drop the entries of *paths* that .gitignore rules exclude."""
    if not paths:
        return []
    result = await git_output(["check-ignore", "--", *paths], cwd)
    # Exit status 1 means nothing is ignored
    if result.returncode not in (0, 1):
        logger.debug("git check-ignore failed: %s", result.stderr.strip()[:300])
        return list(paths)
    ignored = set(parse_file_list(result.stdout))
    return [p for p in paths if p not in ignored]
