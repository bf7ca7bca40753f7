"""Agent contract and the Claude Code CLI implementation."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

_LARGE_PROMPT_THRESHOLD = 100 * 1024  # 100 KB


@dataclass
class AgentOptions:
    model_override: str | None = None
    extra_args: tuple[str, ...] = ()


@dataclass
class AgentResult:
    success: bool
    response: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    error: str | None = None
    cost_usd: float | None = None
    duration_seconds: float | None = None
    workspace_dir: Path | None = None
    branch: str = ""


@runtime_checkable
class Agent(Protocol):
    name: str

    def is_available(self) -> bool: ...

    async def execute(
        self, prompt: str, work_dir: str | Path, options: AgentOptions | None = None
    ) -> AgentResult: ...


def _clean_env() -> dict[str, str]:
    """Return a copy of os.environ without the CLAUDECODE variable."""
    return {k: v for k, v in os.environ.items() if k != "CLAUDECODE"}


def parse_stream_json(output: str) -> AgentResult:
    """Parse ``--output-format stream-json`` output into an :class:`AgentResult`.

    An ``error`` event makes the result a failure. Non-JSON lines are ignored.
    """
    response = ""
    input_tokens = 0
    output_tokens = 0
    cost: float | None = None
    error: str | None = None

    for line in output.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(event, dict):
            continue
        kind = event.get("type")
        if kind == "error":
            err = event.get("error")
            message = err.get("message") if isinstance(err, dict) else err
            error = str(message or event.get("message") or "Unknown error")
        elif kind == "result":
            response = str(event.get("result") or "")
            usage = event.get("usage") or {}
            input_tokens = int(usage.get("input_tokens") or 0)
            output_tokens = int(usage.get("output_tokens") or 0)
            raw_cost = event.get("total_cost_usd", event.get("cost_usd"))
            cost = float(raw_cost) if raw_cost is not None else None
            if event.get("is_error"):
                error = response or "Agent reported an error result"

    if error is not None:
        return AgentResult(success=False, error=error, input_tokens=input_tokens, output_tokens=output_tokens)
    return AgentResult(
        success=True,
        response=response or "Task completed",
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cost_usd=cost,
    )


class ClaudeAgent:
    """Runs the ``claude`` CLI headless in a working directory."""

    name = "Claude Code"
    cli_command = "claude"

    def is_available(self) -> bool:
        return shutil.which(self.cli_command) is not None

    def build_command(self, prompt: str, options: AgentOptions) -> tuple[list[str], str | None]:
        cmd = [
            self.cli_command,
            "--dangerously-skip-permissions",
            "--verbose",
            "--output-format",
            "stream-json",
        ]
        if options.model_override:
            cmd += ["--model", options.model_override]
        cmd += list(options.extra_args)
        if len(prompt.encode("utf-8")) > _LARGE_PROMPT_THRESHOLD:
            return cmd, prompt
        return cmd + ["-p", prompt], None

    async def execute(
        self, prompt: str, work_dir: str | Path, options: AgentOptions | None = None
    ) -> AgentResult:
        cmd, stdin_input = self.build_command(prompt, options or AgentOptions())
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(work_dir),
                stdin=asyncio.subprocess.PIPE if stdin_input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=_clean_env(),
            )
        except FileNotFoundError as exc:
            return AgentResult(success=False, error=f"{self.cli_command}: command not found ({exc})")

        try:
            stdout_bytes, stderr_bytes = await process.communicate(
                stdin_input.encode("utf-8") if stdin_input is not None else None
            )
        except asyncio.CancelledError:
            # Per-attempt timeouts cancel us; don't leave the agent running
            process.kill()
            await process.wait()
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        result = parse_stream_json(stdout + "\n" + stderr)
        result.duration_seconds = time.monotonic() - started

        if result.success and process.returncode != 0:
            logger.error("%s exited with code %s: %s", self.name, process.returncode, stderr[:500])
            result.success = False
            result.error = stderr.strip() or f"{self.cli_command} exited with code {process.returncode}"
        elif not result.success:
            logger.debug("%s reported error: %s", self.name, result.error)
        else:
            logger.info(
                "%s finished in %.1fs (tokens in=%d out=%d, cost=$%s)",
                self.name,
                result.duration_seconds,
                result.input_tokens,
                result.output_tokens,
                result.cost_usd if result.cost_usd is not None else "unknown",
            )
        return result
