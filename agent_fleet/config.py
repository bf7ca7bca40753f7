"""Run configuration and on-disk layout for agent-fleet."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

# Directories created under the repository root. None of them are ever
# copied or symlinked into a sandbox.
WORKTREE_DIR_NAME = ".agent-fleet-worktrees"
SANDBOX_DIR_NAME = ".agent-fleet-sandboxes"
STATE_DIR_NAME = ".agent-fleet"
PROGRESS_FILE = f"{STATE_DIR_NAME}/progress.txt"

DEFAULT_NAMESPACE = "agent"

# Read-only dependency trees shared with sandboxes via symlink.
# build/dist are deliberately absent so agents can run independent builds.
DEFAULT_SYMLINK_DIRS: tuple[str, ...] = (
    ".git",
    "node_modules",
    "vendor",
    ".venv",
    "venv",
    "__pycache__",
    ".pnpm-store",
    ".yarn",
    ".cache",
)

EXCLUDED_TOP_LEVEL: frozenset[str] = frozenset(
    {WORKTREE_DIR_NAME, SANDBOX_DIR_NAME, STATE_DIR_NAME}
)


class ConfigError(Exception):
    """Raised for run-fatal configuration problems."""


@dataclass
class RunConfig:
    work_dir: Path
    backlog_file: str | None = None
    base_branch: str | None = None
    max_parallel: int = 3
    max_iterations: int = 0
    max_retries: int = 3
    retry_delay: float = 5.0
    timeout: float = 1800.0
    namespace: str = DEFAULT_NAMESPACE
    use_sandbox: bool = False
    skip_merge: bool = False
    dry_run: bool = False
    skip_tests: bool = False
    skip_lint: bool = False
    model_override: str | None = None
    extra_args: tuple[str, ...] = ()
    symlink_dirs: tuple[str, ...] = DEFAULT_SYMLINK_DIRS
    flush_interval: float = 1.0
    show_progress: bool = False
    is_retryable: Callable[[str], bool] | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.work_dir = Path(self.work_dir).resolve()

    def validate(self) -> None:
        if self.max_parallel < 1:
            raise ConfigError("max_parallel must be >= 1")
        if self.max_iterations < 0:
            raise ConfigError("max_iterations must be >= 0 (0 means unlimited)")
        if self.max_retries < 1:
            raise ConfigError("max_retries must be >= 1")
        if self.retry_delay < 0:
            raise ConfigError("retry_delay must be >= 0")
        if self.timeout <= 0:
            raise ConfigError("timeout must be > 0")
        if not self.namespace.strip("/ ") or " " in self.namespace:
            raise ConfigError(f"invalid branch namespace: {self.namespace!r}")
        if not self.work_dir.is_dir():
            raise ConfigError(f"work directory does not exist: {self.work_dir}")

    @property
    def backlog_relpath(self) -> str | None:
        """The backlog file relative to work_dir, or None if it lives elsewhere."""
        if not self.backlog_file:
            return None
        path = Path(self.backlog_file)
        if not path.is_absolute():
            return path.as_posix()
        try:
            return path.resolve().relative_to(self.work_dir).as_posix()
        except ValueError:
            return None

    @property
    def boundary_files(self) -> list[str]:
        files = [PROGRESS_FILE, f"{WORKTREE_DIR_NAME}/", f"{SANDBOX_DIR_NAME}/"]
        if self.backlog_file:
            files.insert(0, self.backlog_file)
        return files
