"""Lightweight sandboxes: symlink read-only dependency trees, copy the rest.

A full worktree checkout of a repository with hundreds of thousands of files
under ``node_modules`` or ``.venv`` is slow and disk hungry. A sandbox shares
those trees through symlinks and only copies the parts an agent is expected
to edit.

Change detection compares modification time and size against the original
tree instead of hashing content. A tool that rewrites a file with identical
size and identical mtime is not detected; that is an accepted limitation.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from .config import DEFAULT_SYMLINK_DIRS, EXCLUDED_TOP_LEVEL, SANDBOX_DIR_NAME

logger = logging.getLogger(__name__)


class SandboxError(Exception):
    """Raised when a sandbox cannot be provisioned."""


@dataclass(slots=True)
class SandboxResult:
    sandbox_dir: Path
    symlinks_created: int
    files_copied: int


def _symlink_or_copy(original: Path, target: Path, agent_num: int) -> bool:
    """Symlink *original* at *target*. Returns False if the OS refused."""
    try:
        target.symlink_to(original, target_is_directory=original.is_dir())
        return True
    except OSError as exc:
        logger.debug("Agent %d: symlink refused for %s (%s), copying instead", agent_num, original.name, exc)
        return False


def _copy_entry(original: Path, target: Path, agent_num: int) -> tuple[int, int]:
    """Copy one top-level entry. Returns (symlinks_created, files_copied)."""
    if original.is_symlink():
        link_target = os.readlink(original)
        resolved = (original.parent / link_target).resolve()
        if not resolved.exists():
            logger.debug("Agent %d: skipping broken symlink %s -> %s", agent_num, original.name, link_target)
            return 0, 0
        target.symlink_to(link_target, target_is_directory=resolved.is_dir())
        return 1, 0

    if original.is_dir():
        # copy2 keeps mtimes, which change detection relies on
        shutil.copytree(original, target, symlinks=True, copy_function=shutil.copy2)
        return 0, 1

    if original.is_file():
        shutil.copyfile(original, target)
        stat = original.stat()
        try:
            os.utime(target, ns=(stat.st_atime_ns, stat.st_mtime_ns))
        except OSError as exc:
            logger.debug("Agent %d: failed to preserve timestamps for %s: %s", agent_num, original.name, exc)
        return 0, 1

    return 0, 0


def _build_sandbox(
    original_dir: Path,
    sandbox_dir: Path,
    agent_num: int,
    symlink_dirs: Iterable[str],
) -> SandboxResult:
    symlink_set = set(symlink_dirs)
    if sandbox_dir.exists():
        shutil.rmtree(sandbox_dir, ignore_errors=True)
    sandbox_dir.mkdir(parents=True)

    symlinks_created = 0
    files_copied = 0
    try:
        for original in sorted(original_dir.iterdir()):
            name = original.name
            if name in EXCLUDED_TOP_LEVEL:
                continue
            target = sandbox_dir / name

            if name in symlink_set and _symlink_or_copy(original, target, agent_num):
                symlinks_created += 1
                logger.debug("Agent %d: symlinked %s", agent_num, name)
                continue

            links, copies = _copy_entry(original, target, agent_num)
            symlinks_created += links
            files_copied += copies
    except Exception:
        shutil.rmtree(sandbox_dir, ignore_errors=True)
        raise

    return SandboxResult(
        sandbox_dir=sandbox_dir,
        symlinks_created=symlinks_created,
        files_copied=files_copied,
    )


async def create_sandbox(
    original_dir: str | Path,
    sandbox_dir: str | Path,
    agent_num: int,
    symlink_dirs: Iterable[str] = DEFAULT_SYMLINK_DIRS,
) -> SandboxResult:
    """Build a fresh sandbox of *original_dir* at *sandbox_dir*.

    Any existing directory at *sandbox_dir* is removed first. A partially
    built sandbox is removed again before an error propagates.
    """
    original = Path(original_dir)
    if not original.is_dir():
        raise SandboxError(f"original directory does not exist: {original}")
    result = await asyncio.to_thread(
        _build_sandbox, original, Path(sandbox_dir), agent_num, tuple(symlink_dirs)
    )
    logger.debug(
        "Agent %d: created sandbox %s (%d symlinks, %d copies)",
        agent_num,
        result.sandbox_dir,
        result.symlinks_created,
        result.files_copied,
    )
    return result


def verify_sandbox_isolation(sandbox_dir: str | Path, symlink_dirs: Iterable[str]) -> bool:
    """Return True if every symlink-set entry present in the sandbox is a symlink."""
    sandbox = Path(sandbox_dir)
    for name in symlink_dirs:
        entry = sandbox / name
        if os.path.lexists(entry) and not entry.is_symlink():
            return False
    return True


def _scan_modified(
    sandbox_dir: Path, original_dir: Path, symlink_set: set[str]
) -> list[str]:
    modified: list[str] = []
    for root, dirs, files in os.walk(sandbox_dir):
        root_path = Path(root)
        rel_root = root_path.relative_to(sandbox_dir)
        if rel_root == Path("."):
            dirs[:] = [
                d for d in dirs
                if d not in symlink_set and d not in EXCLUDED_TOP_LEVEL
            ]
        # os.walk does not descend into directory symlinks by default
        for name in files:
            sandbox_path = root_path / name
            if sandbox_path.is_symlink():
                continue
            rel_path = rel_root / name
            if rel_root == Path(".") and name in symlink_set:
                continue
            original_path = original_dir / rel_path
            if not original_path.is_file():
                modified.append(rel_path.as_posix())
                continue
            sandbox_stat = sandbox_path.stat()
            original_stat = original_path.stat()
            if (
                sandbox_stat.st_mtime_ns != original_stat.st_mtime_ns
                or sandbox_stat.st_size != original_stat.st_size
            ):
                modified.append(rel_path.as_posix())
    return sorted(modified)


async def get_modified_files(
    sandbox_dir: str | Path,
    original_dir: str | Path,
    symlink_dirs: Iterable[str] = DEFAULT_SYMLINK_DIRS,
) -> list[str]:
    """Return sandbox-relative paths of files that are new or differ in mtime/size."""
    return await asyncio.to_thread(
        _scan_modified, Path(sandbox_dir), Path(original_dir), set(symlink_dirs)
    )


async def cleanup_sandbox(sandbox_dir: str | Path) -> None:
    sandbox = Path(sandbox_dir)
    if sandbox.exists():
        await asyncio.to_thread(shutil.rmtree, sandbox, ignore_errors=True)


def get_sandbox_base(work_dir: str | Path) -> Path:
    """Return the sandbox root under *work_dir*, creating it if needed."""
    base = Path(work_dir) / SANDBOX_DIR_NAME
    base.mkdir(parents=True, exist_ok=True)
    return base
