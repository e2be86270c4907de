"""JSON-file task store for one project (``<state_dir>/tasks.json``).

Tasks are a flat table keyed by ID. Every mutation loads the file,
applies the change and writes it back atomically, so the file on disk
is always a complete board.
"""

from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

import structlog

from ..exceptions import TaskStoreError
from ..security import redact_secrets
from ..storage import atomic_write_json, read_json
from .models import (
    PRIORITY_RANK,
    CommentKind,
    RuntimeStatus,
    Strategy,
    Task,
    TaskComment,
    TaskPriority,
    TaskStatus,
)

logger = structlog.get_logger("foreman.store")

TASKS_FILENAME = "tasks.json"
PENDING_STATUSES = (TaskStatus.TODO, TaskStatus.BACKLOG)
# A run that ends in review satisfies its dependents
DEPENDENCY_MET_STATUSES = (TaskStatus.REVIEW, TaskStatus.DONE)


class TaskStore:
    """Board persistence plus the queries the runner needs."""

    def __init__(self, state_dir: Path):
        self.path = Path(state_dir) / TASKS_FILENAME

    # ---- File I/O ----

    def _load(self) -> Dict:
        raw = read_json(self.path, {})
        return {
            "next_id": int(raw.get("next_id", 1)),
            "tasks": {tid: Task.model_validate(data) for tid, data in raw.get("tasks", {}).items()},
        }

    def _save(self, board: Dict) -> None:
        atomic_write_json(self.path, {
            "next_id": board["next_id"],
            "tasks": {tid: t.model_dump(mode="json") for tid, t in board["tasks"].items()},
        })

    # ---- CRUD ----

    def create_task(
        self,
        title: str,
        description: str = "",
        *,
        status: TaskStatus = TaskStatus.TODO,
        priority: TaskPriority = TaskPriority.MEDIUM,
        acceptance_criteria: Optional[List[str]] = None,
        depends_on: Optional[List[str]] = None,
        requires_code_changes: bool = True,
    ) -> Task:
        board = self._load()
        task_id = f"TSK-{board['next_id']:04d}"
        order = max((t.order for t in board["tasks"].values()), default=-1) + 1
        task = Task(
            id=task_id,
            title=title,
            description=description,
            status=status,
            priority=priority,
            order=order,
            acceptance_criteria=acceptance_criteria or [],
            depends_on=depends_on or [],
            requires_code_changes=requires_code_changes,
        )
        board["tasks"][task_id] = task
        board["next_id"] += 1
        self._save(board)
        logger.info("task_created", task_id=task_id, title=title[:80])
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._load()["tasks"].get(task_id)

    def require_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise TaskStoreError(f"Task not found: {task_id}", task_id=task_id)
        return task

    def list_tasks(self, status: Optional[TaskStatus] = None) -> List[Task]:
        tasks = sorted(self._load()["tasks"].values(), key=lambda t: t.order)
        if status is not None:
            tasks = [t for t in tasks if t.status == status]
        return tasks

    def save_task(self, task: Task) -> Task:
        """Replace a stored task with ``task``."""
        board = self._load()
        if task.id not in board["tasks"]:
            raise TaskStoreError(f"Task not found: {task.id}", task_id=task.id)
        task.updated_at = datetime.now()
        board["tasks"][task.id] = task
        self._save(board)
        return task

    def update_task(self, task_id: str, **changes) -> Task:
        """Apply field changes (validated) to a task."""
        board = self._load()
        task = board["tasks"].get(task_id)
        if task is None:
            raise TaskStoreError(f"Task not found: {task_id}", task_id=task_id)
        data = task.model_dump()
        data.update(changes)
        data["updated_at"] = datetime.now()
        updated = Task.model_validate(data)
        board["tasks"][task_id] = updated
        self._save(board)
        return updated

    def move_task(self, task_id: str, status: TaskStatus) -> Task:
        board = self._load()
        task = board["tasks"].get(task_id)
        if task is None:
            raise TaskStoreError(f"Task not found: {task_id}", task_id=task_id)
        old_status = task.status
        task.status = status
        task.updated_at = datetime.now()
        self._save(board)
        logger.info(
            "task_state_transition",
            task_id=task_id,
            from_status=old_status.value,
            to_status=status.value,
        )
        return task

    def delete_task(self, task_id: str) -> bool:
        board = self._load()
        if board["tasks"].pop(task_id, None) is None:
            return False
        for other in board["tasks"].values():
            if task_id in other.depends_on:
                other.depends_on.remove(task_id)
        self._save(board)
        logger.info("task_deleted", task_id=task_id)
        return True

    def add_typed_comment(
        self,
        task_id: str,
        kind: CommentKind,
        author: str,
        content: str,
        run_id: Optional[str] = None,
    ) -> TaskComment:
        """Attach a comment; secrets in ``content`` are redacted first."""
        board = self._load()
        task = board["tasks"].get(task_id)
        if task is None:
            raise TaskStoreError(f"Task not found: {task_id}", task_id=task_id)
        comment = TaskComment(kind=kind, author=author, content=redact_secrets(content), run_id=run_id)
        task.comments.append(comment)
        task.updated_at = datetime.now()
        self._save(board)
        return comment

    # ---- Runner queries ----

    @staticmethod
    def _cyclic_ids(tasks: Dict[str, Task]) -> Set[str]:
        """IDs of tasks on a dependency cycle (DFS with in-stack marking)."""
        cyclic: Set[str] = set()
        # 0=unvisited, 1=in_stack, 2=done
        state = {tid: 0 for tid in tasks}

        def dfs(tid: str, path: List[str]) -> None:
            state[tid] = 1
            path.append(tid)
            for dep in tasks[tid].depends_on:
                if dep not in tasks:
                    continue
                if state[dep] == 1:
                    cyclic.update(path[path.index(dep):])
                elif state[dep] == 0:
                    dfs(dep, path)
            path.pop()
            state[tid] = 2

        for tid in tasks:
            if state[tid] == 0:
                dfs(tid, [])
        return cyclic

    @staticmethod
    def _topological(pending: List[Task]) -> List[Task]:
        """Dependencies first; ties keep their fifo order."""
        by_id = {t.id: t for t in pending}
        remaining = {t.id: {d for d in t.depends_on if d in by_id} for t in pending}
        ordered: List[Task] = []
        while remaining:
            ready = sorted((tid for tid, deps in remaining.items() if not deps), key=lambda i: by_id[i].order)
            if not ready:
                break
            for tid in ready:
                ordered.append(by_id[tid])
                del remaining[tid]
            for deps in remaining.values():
                deps.difference_update(ready)
        return ordered

    def get_pending_tasks(self, strategy: Strategy = Strategy.DEPENDENCY) -> List[Task]:
        """Todo/backlog tasks without an open question, in strategy order.

        Tasks on a dependency cycle are excluded and logged. Unmet
        dependencies do not exclude a task here; see ``next_runnable_task``.
        """
        tasks = self._load()["tasks"]
        cyclic = self._cyclic_ids(tasks)
        pending = []
        for task in tasks.values():
            if task.status not in PENDING_STATUSES or task.has_unresolved_question:
                continue
            if task.id in cyclic:
                logger.warning("task_dependency_cycle", task_id=task.id, depends_on=task.depends_on)
                continue
            pending.append(task)

        strategy = Strategy(strategy)
        if strategy == Strategy.PRIORITY:
            return sorted(pending, key=lambda t: (PRIORITY_RANK[t.priority], t.order))
        if strategy == Strategy.DEPENDENCY:
            return self._topological(sorted(pending, key=lambda t: t.order))
        return sorted(pending, key=lambda t: t.order)

    def dependencies_met(self, task: Task, tasks: Optional[Dict[str, Task]] = None) -> bool:
        """Every dependency exists and has finished: awaiting review or done."""
        if tasks is None:
            tasks = self._load()["tasks"]
        return all(
            dep in tasks and tasks[dep].status in DEPENDENCY_MET_STATUSES for dep in task.depends_on
        )

    def next_runnable_task(
        self, strategy: Strategy = Strategy.DEPENDENCY, exclude: Iterable[str] = (),
    ) -> Optional[Task]:
        """First pending task whose dependencies have all finished."""
        skip = set(exclude)
        tasks = self._load()["tasks"]
        for task in self.get_pending_tasks(strategy):
            if task.id not in skip and self.dependencies_met(task, tasks):
                return task
        return None

    def recover_orphaned_tasks(self) -> int:
        """Reset tasks left in ``doing`` by a previous process to ``todo``.

        Returns:
            Number of tasks reset.
        """
        board = self._load()
        recovered = 0
        for task in board["tasks"].values():
            if task.status != TaskStatus.DOING:
                continue
            task.status = TaskStatus.TODO
            task.runtime.status = RuntimeStatus.IDLE
            task.current_run_id = None
            task.comments.append(TaskComment(
                kind=CommentKind.SYSTEM,
                author="system",
                content="Task was left in progress by an interrupted run and has been reset to todo.",
            ))
            task.updated_at = datetime.now()
            recovered += 1
            logger.info("orphaned_task_reset", task_id=task.id, title=task.title[:80])
        if recovered:
            self._save(board)
        return recovered
