"""Task prompt for a single agent working in an isolated workspace."""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _read_project_context(workspace_dir: Path | None) -> str:
    if workspace_dir is None:
        return ""
    claude_md_path = workspace_dir / "CLAUDE.md"
    if not claude_md_path.is_file():
        return ""
    try:
        return claude_md_path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.warning("Could not read CLAUDE.md: %s", exc)
        return ""


def build_parallel_prompt(
    title: str,
    description: str = "",
    boundaries: list[str] | None = None,
    allow_commit: bool = True,
    skip_tests: bool = False,
    skip_lint: bool = False,
    workspace_dir: str | Path | None = None,
) -> str:
    """Build the instruction prompt for one task.

    *boundaries* are paths the agent must never modify. With
    ``allow_commit=False`` (sandbox mode) the agent is told to leave its
    changes uncommitted so they can be collected centrally.
    """
    instructions = ["Implement this specific task completely"]
    if not skip_tests:
        instructions.append("Write tests for the change")
        instructions.append("Run the tests and make sure they pass before proceeding")
    if not skip_lint:
        instructions.append("Run the linter and make sure it passes")
    if allow_commit:
        instructions.append(f"Commit your changes with message: feat: {title}")
        instructions.append("Do NOT push")
    else:
        instructions.append("Do NOT run git commit; your changes will be collected automatically")
    numbered = "\n".join(f"{i}. {line}" for i, line in enumerate(instructions, start=1))

    boundary_section = ""
    if boundaries:
        files = "\n".join(f"- {b}" for b in boundaries)
        boundary_section = (
            "\n\nNever create, modify or delete these paths; they are managed "
            f"by the orchestrator:\n{files}"
        )

    body = f"\n\n{description.strip()}" if description.strip() else ""
    task_body = (
        "You are working on a specific task. Focus ONLY on this task:\n\n"
        f"TASK: {title}{body}\n\n"
        f"Instructions:\n{numbered}"
        f"{boundary_section}\n\n"
        "Do NOT mark tasks complete; that is handled separately.\n"
        f"Focus only on implementing: {title}"
    )

    context = _read_project_context(Path(workspace_dir) if workspace_dir else None)
    if context:
        return (
            "The following is the project context from CLAUDE.md:\n"
            f"{context}\n\n---\n\nYour task:\n{task_body}"
        )
    return task_body
