"""Central coordinator for one project's autonomous system.

Wires the task store, branch orchestrator, provider, executor and
runner together and exposes the host verbs. No business logic lives
here; each verb delegates to the component that owns it.
"""

from pathlib import Path
from typing import List, Optional, Union

import structlog

from ..agent import ExecutionProvider, create_provider
from ..agent.providers.base import ChunkCallback
from ..agent.tools import ConfirmCallback
from ..config import Config, get_config
from ..git import (
    BranchInfo,
    BranchOrchestrator,
    BranchResult,
    GitStatus,
    MergeResult,
    OperationLogEntry,
    SafetyCheckResult,
    SafetyOperation,
    TaskBranchMapping,
)
from ..security import sanitize_input
from .executor import TaskExecutor
from .models import (
    CommentKind,
    RunOptions,
    RunProgress,
    RunResult,
    Task,
    TaskComment,
    TaskStatus,
)
from .runner import AutonomousRunner, EventCallback
from .store import TaskStore

logger = structlog.get_logger("foreman.runner")


class AutonomousManager:
    """Host-facing facade over all autonomous components for a project."""

    def __init__(
        self,
        project_root: Union[str, Path],
        *,
        config: Optional[Config] = None,
        provider: Optional[ExecutionProvider] = None,
        orchestrator: Optional[BranchOrchestrator] = None,
        event_callback: Optional[EventCallback] = None,
        chunk_callback: Optional[ChunkCallback] = None,
        confirm: Optional[ConfirmCallback] = None,
    ):
        """
        Initialize the manager.

        Args:
            project_root: Git working tree of the project.
            config: Settings; the global config if omitted.
            provider: Execution backend; built from ``provider.type`` if omitted.
            orchestrator: Branch orchestrator; built for project_root if omitted.
            event_callback: Async callback(RunEvent) for run events.
            chunk_callback: Async sink for streamed agent text.
            confirm: Async approver for require_confirmation decisions.
        """
        self.project_root = Path(project_root).resolve()
        self.config = config or get_config()
        self.state_dir = self.config.state_dir(self.project_root)
        self.store = TaskStore(self.state_dir)
        self.orchestrator = orchestrator or BranchOrchestrator(self.project_root, config=self.config)
        self.provider = provider or create_provider(self.config)
        self.executor = TaskExecutor(
            self.project_root,
            self.store,
            self.orchestrator,
            self.provider,
            config=self.config,
            confirm=confirm,
        )
        self.runner = AutonomousRunner(
            self.project_root,
            self.store,
            self.executor,
            config=self.config,
            event_callback=event_callback,
            chunk_callback=chunk_callback,
        )

    async def close(self) -> None:
        await self.provider.close()

    # ========== Run Control ==========

    async def start_run(self, options: Optional[RunOptions] = None) -> RunResult:
        """Run pending tasks; returns when the run stops."""
        return await self.runner.start(options)

    async def stop(self) -> Optional[RunResult]:
        return await self.runner.stop()

    async def pause(self) -> None:
        await self.runner.pause()

    async def resume(self) -> None:
        await self.runner.resume()

    def get_progress(self) -> RunProgress:
        return self.runner.get_progress()

    # ========== Board ==========

    def create_task(self, title: str, description: str = "", **fields) -> Task:
        return self.store.create_task(title, description, **fields)

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.store.get_task(task_id)

    def list_tasks(self, status: Optional[TaskStatus] = None) -> List[Task]:
        return self.store.list_tasks(status)

    def add_comment(
        self, task_id: str, content: str, kind: CommentKind = CommentKind.NOTE, author: str = "operator",
    ) -> TaskComment:
        return self.store.add_typed_comment(task_id, kind, author, sanitize_input(content))

    async def move_task(
        self, task_id: str, status: TaskStatus,
    ) -> Union[BranchResult, MergeResult, None]:
        """Move a task on the board and apply the matching branch action.

        Returns:
            The orchestrator's result, or None when the move needs no git action.
        """
        old = self.store.require_task(task_id)
        task = self.store.move_task(task_id, status)
        return await self.orchestrator.handle_task_status_change(
            task.id, task.title, old.status.value, task.status.value,
        )

    # ========== Branch Orchestration ==========

    async def create_task_branch(
        self, task_id: str, *, force: bool = False, base_ref: Optional[str] = None,
    ) -> BranchResult:
        task = self.store.require_task(task_id)
        result = await self.orchestrator.create_task_branch(task.id, task.title, force=force, base_ref=base_ref)
        if result.success and result.mapping is not None:
            self.store.update_task(task_id, branch_name=result.mapping.branch_name)
        return result

    async def checkout_task_branch(self, task_id: str) -> BranchResult:
        return await self.orchestrator.checkout_task_branch(task_id)

    async def detach_branch_from_task(self, task_id: str) -> BranchResult:
        return await self.orchestrator.detach_branch_from_task(task_id)

    async def delete_task_branch(self, task_id: str, *, force: bool = False) -> BranchResult:
        return await self.orchestrator.delete_task_branch(task_id, force=force)

    async def merge_task_to_review(self, task_id: str) -> MergeResult:
        return await self.orchestrator.merge_task_to_review(task_id)

    async def merge_task_to_main(self, task_id: str) -> MergeResult:
        return await self.orchestrator.merge_task_to_main(task_id)

    async def merge_review_to_main(self) -> MergeResult:
        return await self.orchestrator.merge_review_to_main()

    async def resolve_conflict(self, file_path: str, resolution: str) -> BranchResult:
        return await self.orchestrator.resolve_conflict(file_path, resolution)

    async def finalize_merge(self, message: Optional[str] = None) -> MergeResult:
        return await self.orchestrator.finalize_merge(message)

    async def abort_merge(self) -> BranchResult:
        return await self.orchestrator.abort_merge()

    async def run_safety_check(
        self, operation: SafetyOperation, branch: Optional[str] = None,
    ) -> SafetyCheckResult:
        return await self.orchestrator.run_safety_check(operation, branch)

    async def sync_with_git_branches(self) -> List[str]:
        return await self.orchestrator.sync_with_git_branches()

    async def get_git_status(self) -> GitStatus:
        return await self.orchestrator.get_status()

    async def list_branches(self) -> List[BranchInfo]:
        return await self.orchestrator.list_branches()

    def get_active_mapping(self, task_id: str) -> Optional[TaskBranchMapping]:
        return self.orchestrator.get_active_mapping(task_id)

    def get_mappings(self, task_id: Optional[str] = None) -> List[TaskBranchMapping]:
        return self.orchestrator.get_mappings(task_id)

    def get_operation_log(self, task_id: Optional[str] = None, limit: int = 100) -> List[OperationLogEntry]:
        return self.orchestrator.get_operation_log(task_id, limit)
