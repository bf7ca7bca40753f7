"""Best-effort notifications and the human-readable progress log."""

from __future__ import annotations

import logging
import shutil
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Protocol

from .config import PROGRESS_FILE

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def task_completed(self, title: str) -> None: ...

    def task_failed(self, title: str, reason: str) -> None: ...

    def run_completed(self, completed: int, failed: int) -> None: ...


class NullNotifier:
    def task_completed(self, title: str) -> None:
        pass

    def task_failed(self, title: str, reason: str) -> None:
        pass

    def run_completed(self, completed: int, failed: int) -> None:
        pass


class DesktopNotifier:
    """Desktop notifications through ``notify-send``. Only the run summary is sent."""

    app_name = "agent-fleet"

    def __init__(self) -> None:
        self.available = shutil.which("notify-send") is not None

    def _send(self, message: str) -> None:
        if not self.available:
            return
        subprocess.run(
            ["notify-send", self.app_name, message],
            check=False,
            timeout=5,
        )

    def task_completed(self, title: str) -> None:
        pass

    def task_failed(self, title: str, reason: str) -> None:
        pass

    def run_completed(self, completed: int, failed: int) -> None:
        self._send(f"{completed} completed, {failed} failed")


def safe_notify(notifier: Notifier | None, event: str, *args) -> None:
    """Call ``notifier.<event>(*args)``, logging instead of raising on failure."""
    if notifier is None:
        return
    try:
        getattr(notifier, event)(*args)
    except Exception as exc:
        logger.warning("Notifier %s raised for %r: %s", type(notifier).__name__, event, exc)


def log_task_progress(title: str, status: str, work_dir: str | Path) -> None:
    """Append ``[timestamp] status: title`` to the progress file."""
    path = Path(work_dir) / PROGRESS_FILE
    line = f"[{datetime.now().isoformat(timespec='seconds')}] {status}: {title}\n"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line)
    except OSError as exc:
        logger.warning("Could not write progress log %s: %s", path, exc)
