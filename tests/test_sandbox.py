"""Tests for sandbox provisioning and change detection."""

import asyncio
import os
from pathlib import Path

import pytest

from agent_fleet.config import SANDBOX_DIR_NAME, STATE_DIR_NAME, WORKTREE_DIR_NAME
from agent_fleet.sandbox import (
    SandboxError,
    cleanup_sandbox,
    create_sandbox,
    get_modified_files,
    get_sandbox_base,
    verify_sandbox_isolation,
)


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    (root / "node_modules" / "lib").mkdir(parents=True)
    (root / "node_modules" / "lib" / "index.js").write_text("module.exports = 1\n")
    (root / "src").mkdir()
    (root / "src" / "a.py").write_text("a = 1\n")
    (root / "src" / "b.py").write_text("b = 2\n")
    (root / "README.md").write_text("# project\n")
    (root / WORKTREE_DIR_NAME).mkdir()
    (root / SANDBOX_DIR_NAME).mkdir()
    (root / STATE_DIR_NAME).mkdir()
    (root / STATE_DIR_NAME / "progress.txt").write_text("log\n")
    return root


def build(source: Path, sandbox: Path, agent_num: int = 1):
    return asyncio.run(create_sandbox(source, sandbox, agent_num))


def test_symlink_dirs_are_linked_and_sources_copied(source_tree: Path, tmp_path: Path) -> None:
    sandbox = tmp_path / "sb"
    result = build(source_tree, sandbox)

    assert (sandbox / "node_modules").is_symlink()
    assert (sandbox / "node_modules" / "lib" / "index.js").read_text() == "module.exports = 1\n"
    assert (sandbox / "src").is_dir() and not (sandbox / "src").is_symlink()
    assert result.symlinks_created == 1
    assert result.files_copied == 2  # src/ and README.md


def test_mutating_sandbox_copy_leaves_original_alone(source_tree: Path, tmp_path: Path) -> None:
    sandbox = tmp_path / "sb"
    build(source_tree, sandbox)

    (sandbox / "src" / "a.py").write_text("a = 'changed'\n")

    assert (source_tree / "src" / "a.py").read_text() == "a = 1\n"


def test_marker_dirs_are_not_copied(source_tree: Path, tmp_path: Path) -> None:
    sandbox = tmp_path / "sb"
    build(source_tree, sandbox)

    for name in (WORKTREE_DIR_NAME, SANDBOX_DIR_NAME, STATE_DIR_NAME):
        assert not (sandbox / name).exists()


def test_copy_preserves_mtime(source_tree: Path, tmp_path: Path) -> None:
    original = source_tree / "README.md"
    os.utime(original, ns=(1_600_000_000_000_000_000, 1_600_000_000_000_000_000))
    sandbox = tmp_path / "sb"
    build(source_tree, sandbox)

    assert (sandbox / "README.md").stat().st_mtime_ns == original.stat().st_mtime_ns


def test_existing_sandbox_dir_is_replaced(source_tree: Path, tmp_path: Path) -> None:
    sandbox = tmp_path / "sb"
    sandbox.mkdir()
    (sandbox / "stale.txt").write_text("old")

    build(source_tree, sandbox)

    assert not (sandbox / "stale.txt").exists()
    assert (sandbox / "README.md").exists()


def test_broken_symlink_is_skipped(source_tree: Path, tmp_path: Path) -> None:
    (source_tree / "dangling").symlink_to(source_tree / "nowhere")
    (source_tree / "docs").symlink_to(source_tree / "src", target_is_directory=True)
    sandbox = tmp_path / "sb"
    build(source_tree, sandbox)

    assert not os.path.lexists(sandbox / "dangling")
    assert (sandbox / "docs").is_symlink()


def test_missing_original_raises(tmp_path: Path) -> None:
    with pytest.raises(SandboxError):
        build(tmp_path / "missing", tmp_path / "sb")


def test_verify_sandbox_isolation(source_tree: Path, tmp_path: Path) -> None:
    sandbox = tmp_path / "sb"
    build(source_tree, sandbox)
    assert verify_sandbox_isolation(sandbox, ["node_modules", ".git"])

    (sandbox / "vendor").mkdir()
    assert not verify_sandbox_isolation(sandbox, ["node_modules", "vendor"])


def test_cleanup_sandbox(source_tree: Path, tmp_path: Path) -> None:
    sandbox = tmp_path / "sb"
    build(source_tree, sandbox)
    asyncio.run(cleanup_sandbox(sandbox))
    assert not sandbox.exists()
    assert (source_tree / "node_modules" / "lib" / "index.js").exists()


def test_get_sandbox_base(tmp_path: Path) -> None:
    base = get_sandbox_base(tmp_path)
    assert base == tmp_path / SANDBOX_DIR_NAME
    assert base.is_dir()


# ---------------------------------------------------------------------------
# Change detection
# ---------------------------------------------------------------------------


def test_modified_files_are_exactly_changed_and_new(source_tree: Path, tmp_path: Path) -> None:
    sandbox = tmp_path / "sb"
    build(source_tree, sandbox)

    changed = sandbox / "src" / "a.py"
    changed.write_text("a = 'rewritten by the agent'\n")
    st = changed.stat()
    os.utime(changed, ns=(st.st_atime_ns, st.st_mtime_ns + 5_000_000_000))
    (sandbox / "src" / "c.py").write_text("c = 3\n")

    modified = asyncio.run(get_modified_files(sandbox, source_tree))

    assert modified == ["src/a.py", "src/c.py"]


def test_same_size_rewrite_with_new_mtime_is_detected(source_tree: Path, tmp_path: Path) -> None:
    sandbox = tmp_path / "sb"
    build(source_tree, sandbox)

    target = sandbox / "src" / "b.py"
    target.write_text("b = 3\n")
    st = target.stat()
    os.utime(target, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))

    assert asyncio.run(get_modified_files(sandbox, source_tree)) == ["src/b.py"]


def test_changes_behind_symlinks_are_ignored(source_tree: Path, tmp_path: Path) -> None:
    sandbox = tmp_path / "sb"
    build(source_tree, sandbox)

    # Writes through the symlink land in the original tree
    (sandbox / "node_modules" / "lib" / "extra.js").write_text("x\n")

    assert asyncio.run(get_modified_files(sandbox, source_tree)) == []


def test_untouched_sandbox_has_no_changes(source_tree: Path, tmp_path: Path) -> None:
    sandbox = tmp_path / "sb"
    build(source_tree, sandbox)
    assert asyncio.run(get_modified_files(sandbox, source_tree)) == []
