"""Pydantic models for the board and the autonomous runner.

Board records (stored in tasks.json):
    Task, TaskComment, TaskRuntime

Run records (in memory, summarized on stop):
    RunOptions, RunProgress, TaskRunResult, RunResult, RunEvent

Enums:
    TaskStatus, TaskPriority, CommentKind, RuntimeStatus, Strategy,
    RunnerStatus, TaskOutcome, RunEventType
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def new_run_id() -> str:
    return f"run-{datetime.now().strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


class TaskStatus(str, Enum):
    """Board column of a task.

    Flow: BACKLOG/TODO -> DOING -> REVIEW -> DONE, or FAILED / BLOCKED.
    """
    BACKLOG = "backlog"
    TODO = "todo"
    DOING = "doing"
    REVIEW = "review"
    DONE = "done"
    FAILED = "failed"
    BLOCKED = "blocked"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


PRIORITY_RANK = {
    TaskPriority.CRITICAL: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


class CommentKind(str, Enum):
    NOTE = "note"
    INSTRUCTION = "instruction"  # Operator guidance, also answers a block
    FAILURE = "failure"
    AGENT = "agent"
    SYSTEM = "system"


class RuntimeStatus(str, Enum):
    """Execution state of a task, separate from its board column."""
    IDLE = "idle"
    RUNNING = "running"
    BLOCKED = "blocked"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Strategy(str, Enum):
    """Order in which pending tasks are picked."""
    FIFO = "fifo"
    PRIORITY = "priority"
    DEPENDENCY = "dependency"


class TaskComment(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    kind: CommentKind = CommentKind.NOTE
    author: str = Field(default="operator", description="'operator', 'agent' or 'system'")
    content: str
    run_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)


class TaskRuntime(BaseModel):
    status: RuntimeStatus = RuntimeStatus.IDLE
    run_count: int = 0
    failure_count: int = 0
    last_run_at: Optional[datetime] = None
    blocked_reason: Optional[str] = None
    blocked_question: Optional[str] = None
    blocked_at: Optional[datetime] = None


class Task(BaseModel):
    """A card on the board: the unit of work the runner executes."""

    id: str = Field(..., description="Board ID, e.g. TSK-0001")
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    order: int = Field(default=0, description="Position for fifo ordering")
    acceptance_criteria: List[str] = Field(default_factory=list)
    depends_on: List[str] = Field(default_factory=list, description="Task IDs that must be done first")
    requires_code_changes: bool = Field(
        default=True, description="Whether the run needs its own branch"
    )
    branch_name: Optional[str] = None
    current_run_id: Optional[str] = None
    comments: List[TaskComment] = Field(default_factory=list)
    runtime: TaskRuntime = Field(default_factory=TaskRuntime)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def has_unresolved_question(self) -> bool:
        """A block question stays open until an instruction comment follows it."""
        if not self.runtime.blocked_question:
            return False
        asked_at = self.runtime.blocked_at
        return not any(
            c.kind == CommentKind.INSTRUCTION and (asked_at is None or c.created_at > asked_at)
            for c in self.comments
        )


class RunOptions(BaseModel):
    strategy: Strategy = Strategy.DEPENDENCY
    max_tasks: Optional[int] = Field(default=None, ge=1)
    max_failures: Optional[int] = Field(default=None, ge=1)
    stop_on_blocking: bool = False
    merge_to_review: bool = True


class RunnerStatus(str, Enum):
    """Flow: IDLE -> RUNNING <-> PAUSED -> STOPPED."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class RunProgress(BaseModel):
    """Snapshot of an active run."""

    total: int = 0
    processed: int = 0
    completed: int = 0
    failed: int = 0
    blocked: int = 0
    current_task_id: Optional[str] = None
    current_task_title: Optional[str] = None
    status: RunnerStatus = RunnerStatus.IDLE


class TaskOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class TaskRunResult(BaseModel):
    """What happened to one task in a run."""

    task_id: str
    run_id: str
    outcome: TaskOutcome
    summary: str = ""
    error: Optional[str] = None
    branch_name: Optional[str] = None
    log_path: Optional[str] = None
    iterations: int = 0
    tool_calls: int = 0
    merge_conflicts: List[str] = Field(default_factory=list)
    duration_seconds: float = 0.0


class RunResult(BaseModel):
    """Summary of a finished or stopped run."""

    success: bool
    processed: int = 0
    completed: int = 0
    failed: int = 0
    blocked: int = 0
    results: List[TaskRunResult] = Field(default_factory=list)
    stopped_reason: Optional[str] = None


class RunEventType(str, Enum):
    RUN_STARTED = "run_started"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_BLOCKED = "task_blocked"
    TASK_CANCELLED = "task_cancelled"
    RUN_PAUSED = "run_paused"
    RUN_RESUMED = "run_resumed"
    RUN_STOPPED = "run_stopped"
    RUN_COMPLETED = "run_completed"


class RunEvent(BaseModel):
    type: RunEventType
    task_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)
