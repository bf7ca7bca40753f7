"""Task sources: the PLAN.yaml backlog and a write-batching cache around it."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

import yaml

from .worker import Task

logger = logging.getLogger(__name__)

MAX_FLUSH_RETRIES = 3


class TaskSourceError(Exception):
    """Raised when the backlog cannot be read or updated."""


@runtime_checkable
class TaskSource(Protocol):
    """What the scheduler needs from a backlog.

    ``get_all_tasks`` returns the incomplete tasks in backlog order. Sources
    with ``supports_groups`` also implement ``get_tasks_in_group`` and
    ``get_parallel_group``.
    """

    supports_groups: bool

    def get_all_tasks(self) -> list[Task]: ...

    def get_next_task(self) -> Task | None: ...

    def mark_complete(self, task_id: str) -> None: ...


class YamlTaskSource:
    """Backlog stored in a YAML file with a top-level ``tasks`` list.

    Each entry needs a ``title``. Optional keys: ``id`` (defaults to the
    title), ``description``, ``parallel_group`` (default 0, run alone) and
    ``completed`` (default false). The file is re-read on every call.
    """

    supports_groups = True

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _load_raw(self) -> dict:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except OSError as exc:
            raise TaskSourceError(f"Could not read {self.path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise TaskSourceError(f"Invalid YAML in {self.path}: {exc}") from exc

        if not isinstance(data, dict) or not isinstance(data.get("tasks"), list):
            raise TaskSourceError(f"No 'tasks' list found in {self.path}")
        return data

    def load(self) -> list[Task]:
        """Return every task in the file, completed or not.

        Raises TaskSourceError on malformed entries or duplicate IDs.
        """
        tasks = []
        seen_ids: set[str] = set()
        for index, entry in enumerate(self._load_raw()["tasks"]):
            if not isinstance(entry, dict) or not entry.get("title"):
                raise TaskSourceError(f"Task #{index + 1} in {self.path} has no title")
            title = str(entry["title"])
            task_id = str(entry.get("id") or title)
            if task_id in seen_ids:
                raise TaskSourceError(f"Duplicate task ID: {task_id}")
            seen_ids.add(task_id)
            try:
                group = int(entry.get("parallel_group") or 0)
            except (TypeError, ValueError) as exc:
                raise TaskSourceError(f"Task {task_id!r}: parallel_group must be an integer") from exc

            tasks.append(Task(
                id=task_id,
                title=title,
                description=str(entry.get("description") or ""),
                parallel_group=group,
                completed=bool(entry.get("completed", False)),
            ))
        return tasks

    def get_all_tasks(self) -> list[Task]:
        return [t for t in self.load() if not t.completed]

    def get_next_task(self) -> Task | None:
        tasks = self.get_all_tasks()
        return tasks[0] if tasks else None

    def get_tasks_in_group(self, group: int) -> list[Task]:
        return [t for t in self.get_all_tasks() if t.parallel_group == group]

    def get_parallel_group(self, title: str) -> int:
        for task in self.load():
            if task.title == title:
                return task.parallel_group
        return 0

    def mark_complete(self, task_id: str) -> None:
        data = self._load_raw()
        for entry in data["tasks"]:
            if isinstance(entry, dict) and str(entry.get("id") or entry.get("title")) == task_id:
                entry["completed"] = True
                break
        else:
            raise TaskSourceError(f"Unknown task ID: {task_id}")

        try:
            with open(self.path, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)
        except OSError as exc:
            raise TaskSourceError(f"Could not write {self.path}: {exc}") from exc


class CachedTaskSource:
    """Caches an inner source and batches its ``mark_complete`` writes.

    Completions are applied in memory straight away and written to the inner
    source after ``flush_interval`` seconds (0 disables the timer). Call
    :meth:`flush` before exiting; pending writes are otherwise lost.
    """

    def __init__(self, inner: TaskSource, flush_interval: float = 1.0):
        self.inner = inner
        self.flush_interval = flush_interval
        self._cached: list[Task] | None = None
        self._pending: set[str] = set()
        self._timer: asyncio.TimerHandle | None = None
        self._flush_failures = 0

    @property
    def supports_groups(self) -> bool:
        return bool(getattr(self.inner, "supports_groups", False))

    def get_all_tasks(self) -> list[Task]:
        if self._cached is None:
            self._cached = self.inner.get_all_tasks()
        return [t for t in self._cached if t.id not in self._pending]

    def get_next_task(self) -> Task | None:
        tasks = self.get_all_tasks()
        return tasks[0] if tasks else None

    def get_tasks_in_group(self, group: int) -> list[Task]:
        if not self.supports_groups:
            raise TaskSourceError("Inner task source does not support groups")
        return [t for t in self.inner.get_tasks_in_group(group) if t.id not in self._pending]

    def get_parallel_group(self, title: str) -> int:
        if not self.supports_groups:
            return 0
        return self.inner.get_parallel_group(title)

    def mark_complete(self, task_id: str) -> None:
        self._pending.add(task_id)
        self._schedule_flush()

    def flush(self) -> None:
        """Write pending completions to the inner source. No-op if none are pending."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self._pending:
            return
        # Drop each id as soon as it is written so a retry never repeats it
        for task_id in sorted(self._pending):
            self.inner.mark_complete(task_id)
            self._pending.discard(task_id)
        self._cached = None
        logger.debug("Flushed task completions to %s", type(self.inner).__name__)

    def _schedule_flush(self) -> None:
        if self.flush_interval <= 0 or self._timer is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop: only explicit flush() writes
            return
        self._timer = loop.call_later(self.flush_interval, self._timed_flush)

    def _timed_flush(self) -> None:
        self._timer = None
        try:
            self.flush()
            self._flush_failures = 0
        except Exception as exc:
            self._flush_failures += 1
            if self._flush_failures < MAX_FLUSH_RETRIES:
                logger.error(
                    "Failed to flush task completions (retry %d/%d): %s",
                    self._flush_failures,
                    MAX_FLUSH_RETRIES,
                    exc,
                )
                self._schedule_flush()
            else:
                logger.error(
                    "Failed to flush task completions after %d retries: %s", MAX_FLUSH_RETRIES, exc
                )
                self._flush_failures = 0
