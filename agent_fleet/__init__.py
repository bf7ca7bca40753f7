"""Parallel coding-agent runner with isolated workspaces and merge reconciliation."""

from .agents import Agent, AgentOptions, AgentResult, ClaudeAgent
from .config import ConfigError, RunConfig
from .orchestrator import ExecutionResult, merge_completed_branches, run_parallel
from .task_manager import CachedTaskSource, TaskSource, TaskSourceError, YamlTaskSource
from .worker import Task, WorkerError, WorkerResult

__version__ = "0.1.0"

__all__ = [
    "Agent",
    "AgentOptions",
    "AgentResult",
    "CachedTaskSource",
    "ClaudeAgent",
    "ConfigError",
    "ExecutionResult",
    "RunConfig",
    "Task",
    "TaskSource",
    "TaskSourceError",
    "WorkerError",
    "WorkerResult",
    "YamlTaskSource",
    "merge_completed_branches",
    "run_parallel",
]
