"""Runs a single board task end to end.

Moves the task to doing, prepares its branch, runs the execution loop
and records the outcome on the board: review on success, failed with a
structured failure comment, blocked with the agent's question, or back
to todo when the run was cancelled.
"""

import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import structlog

from ..agent import CancellationToken, ExecutionLoop, LoopResult, Message, Role, ToolExecutor
from ..agent.providers import ExecutionProvider
from ..agent.providers.base import ChunkCallback
from ..agent.models import SignalKind, StopReason
from ..agent.tools import ConfirmCallback
from ..config import Config, get_config
from ..exceptions import GitOperationFailure, LimitExceeded, ProviderFailure
from ..git import BranchOrchestrator
from ..policy import LimitTracker, Policy
from ..security import redact_secrets
from .models import (
    CommentKind,
    RuntimeStatus,
    Task,
    TaskOutcome,
    TaskRunResult,
    TaskStatus,
)
from .store import TaskStore

logger = structlog.get_logger("foreman.runner")

# Failure comments included in a retry prompt
MAX_RETRY_CONTEXT_COMMENTS = 3
MAX_PARTIAL_OUTPUT_CHARS = 10_000

CANCELLED_COMMENT = "Task execution was cancelled by user."


def build_task_prompt(task: Task) -> str:
    """Render the task as the first user message of its run."""
    parts = [f"# Task {task.id}: {task.title}", "", task.description.strip() or "(no description)"]

    if task.acceptance_criteria:
        parts += ["", "## Acceptance Criteria"]
        parts += [f"{i}. {c}" for i, c in enumerate(task.acceptance_criteria, 1)]

    instructions = [c for c in task.comments if c.kind == CommentKind.INSTRUCTION]
    if instructions:
        parts += ["", "## Operator Instructions"]
        parts += [f"- {c.content}" for c in instructions]

    failures = [c for c in task.comments if c.kind == CommentKind.FAILURE]
    if failures:
        parts += [
            "",
            f"## Retry Context (Attempt {task.runtime.failure_count + 1})",
            "",
            f"This task has failed {len(failures)} time(s) before. "
            "Review the previous failures and try a different approach.",
        ]
        for comment in failures[-MAX_RETRY_CONTEXT_COMMENTS:]:
            parts += ["", comment.content]

    parts += [
        "",
        "When the work is done and verified, call task_complete with a short summary. "
        "If you need a decision from the operator, call task_blocked with your question. "
        "If the task cannot be done, call task_failed with the reason.",
    ]
    return "\n".join(parts)


def format_failure_comment(run_id: str, log_path: Optional[Path], reason: str, details: str = "") -> str:
    lines = [
        f"**Run ID:** {run_id}",
        f"**Log Path:** {log_path or 'n/a'}",
        f"**Reason:** {reason}",
    ]
    if details:
        lines += ["", "**Details:**", details.strip()]
    return redact_secrets("\n".join(lines))


class TaskExecutor:
    """Executes board tasks one at a time for a project.

    Args:
        project_root: Working tree the agent operates on.
        store: Board for the project.
        orchestrator: Branch orchestrator for the project.
        provider: Backend used by every run.
        config: Settings; the global config if omitted.
        confirm: Async approver for require_confirmation decisions.
    """

    def __init__(
        self,
        project_root: Path,
        store: TaskStore,
        orchestrator: BranchOrchestrator,
        provider: ExecutionProvider,
        *,
        config: Optional[Config] = None,
        confirm: Optional[ConfirmCallback] = None,
    ):
        self.project_root = Path(project_root).resolve()
        self.store = store
        self.orchestrator = orchestrator
        self.provider = provider
        self.config = config or get_config()
        self.confirm = confirm
        self.runs_dir = self.config.state_dir(self.project_root) / "runs"

    def run_log_path(self, run_id: str, task_id: str) -> Path:
        return self.runs_dir / f"{run_id}-{task_id}.log"

    def _append_log(self, log_path: Path, text: str) -> None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(redact_secrets(text))

    async def execute(
        self,
        task: Task,
        *,
        run_id: str,
        policy: Policy,
        merge_to_review: bool = True,
        cancel_token: Optional[CancellationToken] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> TaskRunResult:
        """Run ``task`` and record the outcome on the board.

        Git, provider and limit failures become a failed task; they are
        not raised. Task store errors propagate.
        """
        token = cancel_token or CancellationToken()
        started = time.monotonic()
        log_path = self.run_log_path(run_id, task.id)
        self._append_log(
            log_path,
            f"=== {run_id} {task.id}: {task.title} ({datetime.now().isoformat()}) ===\n",
        )

        task = self._begin(task.id, run_id)
        branch_name: Optional[str] = None
        loop_result: Optional[LoopResult] = None

        def outcome(kind: TaskOutcome, **fields) -> TaskRunResult:
            return TaskRunResult(
                task_id=task.id,
                run_id=run_id,
                outcome=kind,
                branch_name=branch_name,
                log_path=str(log_path),
                iterations=loop_result.iterations if loop_result else 0,
                tool_calls=loop_result.tool_calls_made if loop_result else 0,
                duration_seconds=round(time.monotonic() - started, 3),
                **fields,
            )

        try:
            if task.requires_code_changes:
                branch_name = await self._prepare_branch(task)

            loop_result = await self._run_loop(task, policy, log_path, token, on_chunk)
            self._append_log(
                log_path,
                f"\n--- loop finished: {loop_result.stop_reason.value} "
                f"after {loop_result.iterations} iteration(s) ---\n{loop_result.content}\n",
            )

            if loop_result.stop_reason == StopReason.CANCELLED:
                token.raise_if_cancelled(loop_result.content)
                raise ProviderFailure("Run cancelled", partial_output=loop_result.content, cancelled=True)
            if loop_result.stop_reason == StopReason.ERROR:
                raise ProviderFailure(loop_result.error or "Provider error", partial_output=loop_result.content)
            if loop_result.stop_reason == StopReason.LIMIT_EXCEEDED:
                raise LimitExceeded(
                    loop_result.error or "",
                    limit_name=loop_result.limit_name or "",
                    current=loop_result.limit_current or 0,
                    maximum=loop_result.limit_maximum or 0,
                )

            signal = loop_result.signal
            if signal is not None and signal.kind == SignalKind.BLOCKED:
                self._handle_blocked(task.id, run_id, signal.reason or "", signal.question or "")
                return outcome(TaskOutcome.BLOCKED, summary=signal.question or signal.reason or "")

            if signal is not None and signal.kind == SignalKind.FAILED:
                details = "\n".join(f"- {step}" for step in signal.next_steps)
                if details:
                    details = f"Suggested next steps:\n{details}"
                self._handle_failure(task.id, run_id, log_path, signal.reason or "Agent reported failure", details)
                return outcome(TaskOutcome.FAILED, error=signal.reason)

            if signal is not None and signal.kind == SignalKind.COMPLETE:
                summary = signal.summary or loop_result.content
            elif loop_result.stop_reason == StopReason.COMPLETED and "complete" in loop_result.content.lower():
                summary = loop_result.content
            elif loop_result.stop_reason == StopReason.ITERATION_LIMIT:
                reason = f"Maximum iterations ({loop_result.iterations}) reached without completion"
                self._handle_failure(
                    task.id, run_id, log_path, reason, partial_output=loop_result.content,
                )
                return outcome(TaskOutcome.FAILED, error=reason)
            else:
                reason = "Agent stopped without completing the task"
                self._handle_failure(
                    task.id, run_id, log_path, reason, partial_output=loop_result.content,
                )
                return outcome(TaskOutcome.FAILED, error=reason)

            conflicts = await self._handle_success(
                task, run_id, summary, branch_name, merge_to_review,
            )
            return outcome(TaskOutcome.COMPLETED, summary=summary, merge_conflicts=conflicts)

        except ProviderFailure as e:
            if e.cancelled:
                self._handle_cancelled(task.id, run_id, e.partial_output)
                return outcome(TaskOutcome.CANCELLED, summary=CANCELLED_COMMENT)
            self._handle_failure(
                task.id, run_id, log_path, f"Provider failure: {e.message}",
                partial_output=e.partial_output,
            )
            return outcome(TaskOutcome.FAILED, error=e.message)

        except LimitExceeded as e:
            details = f"Limit: {e.limit_name} (current {e.current}, maximum {e.maximum})"
            partial = loop_result.content if loop_result else ""
            self._handle_failure(
                task.id, run_id, log_path, e.message, details, partial_output=partial,
            )
            return outcome(TaskOutcome.FAILED, error=e.message)

        except GitOperationFailure as e:
            details = f"Command: {e.command}\n{e.stderr}" if e.command else e.stderr
            self._handle_failure(task.id, run_id, log_path, e.message, details)
            return outcome(TaskOutcome.FAILED, error=e.message)

    # ---- Phases ----

    def _begin(self, task_id: str, run_id: str) -> Task:
        task = self.store.move_task(task_id, TaskStatus.DOING)
        task.current_run_id = run_id
        task.runtime.status = RuntimeStatus.RUNNING
        task.runtime.run_count += 1
        task.runtime.last_run_at = datetime.now()
        task.runtime.blocked_reason = None
        task.runtime.blocked_question = None
        task.runtime.blocked_at = None
        return self.store.save_task(task)

    async def _prepare_branch(self, task: Task) -> str:
        """Create the task branch off main if needed and check it out."""
        mapping = self.orchestrator.get_working_mapping(task.id)
        if mapping is None:
            main = self.orchestrator.main_branch
            base_ref = main if await self.orchestrator.runner.branch_exists(main) else None
            created = await self.orchestrator.create_task_branch(
                task.id, task.title, base_ref=base_ref, initiator="runner",
            )
            if not created.success:
                raise GitOperationFailure(
                    f"Could not create task branch: {created.error}",
                    command="create_task_branch",
                    stderr=created.stderr,
                )
            mapping = created.mapping

        checked = await self.orchestrator.checkout_task_branch(task.id, initiator="runner")
        if not checked.success:
            raise GitOperationFailure(
                f"Could not check out task branch: {checked.error}",
                command=f"checkout {mapping.branch_name}",
                stderr=checked.stderr,
            )
        if task.branch_name != mapping.branch_name:
            self.store.update_task(task.id, branch_name=mapping.branch_name)
        return mapping.branch_name

    async def _run_loop(
        self,
        task: Task,
        policy: Policy,
        log_path: Path,
        token: CancellationToken,
        on_chunk: Optional[ChunkCallback],
    ) -> LoopResult:
        tools = ToolExecutor(
            self.project_root,
            policy,
            limits=LimitTracker(policy.limits),
            run_log_path=log_path,
            command_timeout=self.config.agent_command_timeout,
            confirm=self.confirm,
            state_dir_name=self.config.state_dir_name,
        )
        self.provider.set_working_directory(self.project_root)
        loop = ExecutionLoop(self.provider, tools, max_iterations=self.config.agent_max_iterations)
        messages: List[Message] = [Message(role=Role.USER, content=build_task_prompt(task))]
        return await loop.run(messages, on_chunk=on_chunk, cancel_token=token)

    # ---- Outcomes ----

    async def _handle_success(
        self,
        task: Task,
        run_id: str,
        summary: str,
        branch_name: Optional[str],
        merge_to_review: bool,
    ) -> List[str]:
        """Commit, move to review and request the review merge.

        Returns:
            Files that conflicted in the review merge (the merge was aborted).
        """
        if branch_name:
            committed = await self.orchestrator.commit_task_changes(
                task.id, f"{task.id}: {task.title}", initiator="runner",
            )
            if not committed.success:
                raise GitOperationFailure(
                    f"Could not commit task changes: {committed.error}",
                    command="commit",
                    stderr=committed.stderr,
                )

        done = self.store.move_task(task.id, TaskStatus.REVIEW)
        done.runtime.status = RuntimeStatus.DONE
        done.current_run_id = None
        self.store.save_task(done)
        self.store.add_typed_comment(task.id, CommentKind.AGENT, "agent", summary or "Task completed", run_id)

        if not (branch_name and merge_to_review):
            return []

        merge = await self.orchestrator.merge_task_to_review(task.id, initiator="runner")
        if merge.had_conflicts:
            files = [c.file_path for c in merge.conflicts]
            aborted = await self.orchestrator.abort_merge(initiator="runner")
            logger.warning(
                "review_merge_conflicted",
                task_id=task.id,
                files=files,
                aborted=aborted.success,
            )
            self.store.add_typed_comment(
                task.id,
                CommentKind.SYSTEM,
                "system",
                "Merge into the review branch had conflicts and was aborted. "
                f"Conflicted files: {', '.join(files)}. Resolve manually and merge again.",
                run_id,
            )
            return files
        if not merge.success:
            logger.warning("review_merge_failed", task_id=task.id, error=merge.error)
            self.store.add_typed_comment(
                task.id, CommentKind.SYSTEM, "system",
                f"Merge into the review branch failed: {merge.error}", run_id,
            )
        return []

    def _handle_failure(
        self,
        task_id: str,
        run_id: str,
        log_path: Path,
        reason: str,
        details: str = "",
        partial_output: str = "",
    ) -> None:
        task = self.store.move_task(task_id, TaskStatus.FAILED)
        task.runtime.status = RuntimeStatus.FAILED
        task.runtime.failure_count += 1
        task.current_run_id = None
        self.store.save_task(task)
        self.store.add_typed_comment(
            task_id,
            CommentKind.FAILURE,
            "system",
            format_failure_comment(run_id, log_path, reason, details),
            run_id,
        )
        if partial_output.strip():
            self.store.add_typed_comment(
                task_id, CommentKind.AGENT, "agent",
                partial_output[-MAX_PARTIAL_OUTPUT_CHARS:], run_id,
            )
        logger.warning("task_failed", task_id=task_id, run_id=run_id, reason=reason[:300])

    def _handle_blocked(self, task_id: str, run_id: str, reason: str, question: str) -> None:
        task = self.store.move_task(task_id, TaskStatus.BLOCKED)
        task.runtime.status = RuntimeStatus.BLOCKED
        task.runtime.blocked_reason = reason
        task.runtime.blocked_question = question or reason
        task.runtime.blocked_at = datetime.now()
        task.current_run_id = None
        self.store.save_task(task)
        self.store.add_typed_comment(
            task_id, CommentKind.AGENT, "agent",
            f"Blocked: {reason}\n\nQuestion: {question or reason}", run_id,
        )
        logger.info("task_blocked", task_id=task_id, run_id=run_id, reason=reason[:300])

    def _handle_cancelled(self, task_id: str, run_id: str, partial_output: str) -> None:
        task = self.store.move_task(task_id, TaskStatus.TODO)
        task.runtime.status = RuntimeStatus.CANCELLED
        task.current_run_id = None
        self.store.save_task(task)
        self.store.add_typed_comment(task_id, CommentKind.SYSTEM, "system", CANCELLED_COMMENT, run_id)
        if partial_output.strip():
            self.store.add_typed_comment(
                task_id, CommentKind.AGENT, "agent",
                partial_output[-MAX_PARTIAL_OUTPUT_CHARS:], run_id,
            )
        logger.info("task_cancelled", task_id=task_id, run_id=run_id)
