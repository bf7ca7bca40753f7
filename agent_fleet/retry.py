"""Retry policy for agent invocations."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

FAILURE_TAIL_LINES = 12

_RETRYABLE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"rate[\s_-]?limit",
        r"too many requests",
        r"\b429\b",
        r"\b50[23]\b",
        r"\b529\b",
        r"quota",
        r"overloaded",
        r"timed?\s?out",
        r"ECONNRESET",
        r"ETIMEDOUT",
        r"connection (reset|refused|closed)",
        r"network error",
        r"temporarily unavailable",
    )
]

# (pattern, human-readable reason)
_KNOWN_FAILURES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"rate[\s_-]?limit|too many requests|\b429\b", re.IGNORECASE),
     "Rate limited by the agent provider"),
    (re.compile(r"quota|credit balance|billing", re.IGNORECASE),
     "Agent provider quota or billing limit reached"),
    (re.compile(r"unauthori[sz]ed|invalid api key|authentication|\b401\b|not logged in", re.IGNORECASE),
     "Agent authentication failed"),
    (re.compile(r"command not found|executable not found|ENOENT", re.IGNORECASE),
     "Agent executable not found"),
    (re.compile(r"context (length|window)|prompt is too long|maximum context", re.IGNORECASE),
     "Prompt exceeded the model context window"),
    (re.compile(r"timed out after", re.IGNORECASE),
     "Agent timed out"),
]


class WorkerError(Exception):
    """Raised when a worker encounters an unrecoverable error."""


class RetryableAgentError(WorkerError):
    """An agent failure that may succeed on a later attempt."""


def is_retryable_error(error_text: str) -> bool:
    """Default predicate: does *error_text* look like a transient provider failure?"""
    if not error_text:
        return False
    return any(p.search(error_text) for p in _RETRYABLE_PATTERNS)


def describe_failure(error_text: str | None, max_lines: int = FAILURE_TAIL_LINES) -> str:
    """Turn raw agent error output into a short human-readable reason.

    Recognised patterns map to a one-line summary (with the first matching
    line appended); anything else keeps only the last *max_lines* lines.
    """
    if not error_text or not error_text.strip():
        return "Unknown error"
    for pattern, reason in _KNOWN_FAILURES:
        match = pattern.search(error_text)
        if match:
            line_start = error_text.rfind("\n", 0, match.start()) + 1
            line_end = error_text.find("\n", match.end())
            line = error_text[line_start: line_end if line_end != -1 else None].strip()
            return f"{reason}: {line[:200]}" if line else reason
    lines = [line for line in error_text.strip().splitlines() if line.strip()]
    if len(lines) <= max_lines:
        return "\n".join(lines)
    return "...\n" + "\n".join(lines[-max_lines:])


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int,
    retry_delay: float,
    label: str = "agent",
) -> T:
    """Call *fn* up to *max_retries* times while it raises :class:`RetryableAgentError`.

    Any other exception propagates immediately. The last retryable error is
    re-raised once the attempts are exhausted.
    """
    attempts = max(1, max_retries)
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except RetryableAgentError as exc:
            if attempt >= attempts:
                logger.warning("%s: giving up after %d attempt(s): %s", label, attempt, exc)
                raise
            logger.warning(
                "%s: retryable failure (attempt %d/%d), retrying in %.1fs: %s",
                label,
                attempt,
                attempts,
                retry_delay,
                str(exc)[:300],
            )
            await asyncio.sleep(retry_delay)
    raise AssertionError("unreachable")  # pragma: no cover
