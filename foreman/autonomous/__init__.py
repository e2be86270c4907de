"""Autonomous task board runner."""

from .executor import TaskExecutor, build_task_prompt, format_failure_comment
from .manager import AutonomousManager
from .models import (
    CommentKind,
    RunEvent,
    RunEventType,
    RunnerStatus,
    RunOptions,
    RunProgress,
    RunResult,
    RuntimeStatus,
    Strategy,
    Task,
    TaskComment,
    TaskOutcome,
    TaskPriority,
    TaskRunResult,
    TaskRuntime,
    TaskStatus,
)
from .runner import AutonomousRunner
from .store import TaskStore

__all__ = [
    # Models
    "CommentKind",
    "RunEvent",
    "RunEventType",
    "RunOptions",
    "RunProgress",
    "RunResult",
    "RunnerStatus",
    "RuntimeStatus",
    "Strategy",
    "Task",
    "TaskComment",
    "TaskOutcome",
    "TaskPriority",
    "TaskRunResult",
    "TaskRuntime",
    "TaskStatus",
    # Components
    "AutonomousManager",
    "AutonomousRunner",
    "TaskExecutor",
    "TaskStore",
    "build_task_prompt",
    "format_failure_comment",
]
