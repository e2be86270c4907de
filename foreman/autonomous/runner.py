"""Autonomous task runner.

Pops eligible tasks from the board one at a time and hands each to the
TaskExecutor until the board is drained or a stop condition is met
(operator stop, max tasks, max failures, or a block with
``stop_on_blocking``). Pausing takes effect between tasks; an in-flight
task always finishes. Stopping cancels the in-flight task through its
CancellationToken.

Classes:
    AutonomousRunner: One project's run loop with pause/resume/stop
        and a progress snapshot.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Set

import structlog

from ..agent import CancellationToken
from ..agent.providers.base import ChunkCallback
from ..config import Config, get_config
from ..exceptions import ForemanError
from ..logging_config import bind_run_context, clear_run_context, clear_task_context
from ..policy import load_policy
from .executor import TaskExecutor
from .models import (
    RunEvent,
    RunEventType,
    RunnerStatus,
    RunOptions,
    RunProgress,
    RunResult,
    Strategy,
    TaskOutcome,
    TaskRunResult,
    TaskStatus,
    new_run_id,
)
from .store import TaskStore

logger = structlog.get_logger("foreman.runner")

EventCallback = Callable[[RunEvent], Awaitable[None]]

STOPPED_BY_USER = "stopped by user"
MAX_TASKS_REACHED = "max tasks reached"
MAX_FAILURES_REACHED = "max failures reached"
TASK_BLOCKED = "task blocked"
NO_MORE_TASKS = "no more tasks"


class AutonomousRunner:
    """Runs pending board tasks sequentially.

    Flow: IDLE -> RUNNING <-> PAUSED -> STOPPED. A stopped runner can
    be started again.
    """

    def __init__(
        self,
        project_root,
        store: TaskStore,
        executor: TaskExecutor,
        *,
        config: Optional[Config] = None,
        event_callback: Optional[EventCallback] = None,
        chunk_callback: Optional[ChunkCallback] = None,
        pause_poll_interval: float = 0.1,
    ):
        """
        Initialize the runner.

        Args:
            project_root: Project whose board and policy are used.
            store: Task store for the project.
            executor: Executes one task.
            config: Settings; the global config if omitted.
            event_callback: Async callback(RunEvent) for run events.
            chunk_callback: Async sink for streamed agent text.
            pause_poll_interval: Seconds between checks while paused.
        """
        self.project_root = project_root
        self.store = store
        self.executor = executor
        self.config = config or get_config()
        self.event_callback = event_callback
        self.chunk_callback = chunk_callback
        self.pause_poll_interval = pause_poll_interval

        self._status = RunnerStatus.IDLE
        self._stop_requested = False
        self._paused = False
        self._progress = RunProgress()
        self._cancel_token: Optional[CancellationToken] = None
        self._finished = asyncio.Event()
        self._finished.set()
        self._last_result: Optional[RunResult] = None

    @property
    def status(self) -> RunnerStatus:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._status in (RunnerStatus.RUNNING, RunnerStatus.PAUSED)

    @property
    def is_paused(self) -> bool:
        return self._status == RunnerStatus.PAUSED

    @property
    def last_result(self) -> Optional[RunResult]:
        return self._last_result

    def default_options(self) -> RunOptions:
        """Run options from the ``autonomous`` config section."""
        return RunOptions(
            strategy=Strategy(self.config.autonomous_strategy),
            max_tasks=self.config.autonomous_max_tasks,
            max_failures=self.config.autonomous_max_failures,
            stop_on_blocking=self.config.autonomous_stop_on_blocking,
            merge_to_review=self.config.autonomous_merge_to_review,
        )

    def get_progress(self) -> RunProgress:
        """Snapshot of the current (or last) run; never blocks."""
        return self._progress.model_copy()

    # ---- Control ----

    async def start(self, options: Optional[RunOptions] = None) -> RunResult:
        """Run pending tasks until a stop condition is met.

        Raises:
            RuntimeError: If a run is already in progress.
        """
        if self.is_running:
            raise RuntimeError("A run is already in progress")

        options = options or self.default_options()
        self._stop_requested = False
        self._paused = False
        self._finished.clear()
        self._status = RunnerStatus.RUNNING
        run_id = new_run_id()

        try:
            bind_run_context(run_id)
            recovered = self.store.recover_orphaned_tasks()
            if recovered:
                logger.info("orphaned_tasks_recovered", count=recovered)

            # Policy edits made during the run apply to the next one
            policy = load_policy(self.project_root, self.config)

            total = len(self.store.get_pending_tasks(options.strategy))
            if options.max_tasks is not None:
                total = min(total, options.max_tasks)
            self._progress = RunProgress(total=total, status=RunnerStatus.RUNNING)

            logger.info(
                "run_started",
                run_id=run_id,
                strategy=options.strategy.value,
                total=total,
                max_tasks=options.max_tasks,
                max_failures=options.max_failures,
            )
            await self._emit(RunEventType.RUN_STARTED, run_id=run_id, total=total, strategy=options.strategy.value)

            result = await self._run(run_id, options, policy)
            self._last_result = result
        finally:
            self._status = RunnerStatus.STOPPED
            self._progress.status = RunnerStatus.STOPPED
            self._progress.current_task_id = None
            self._progress.current_task_title = None
            self._cancel_token = None
            self._finished.set()
            clear_run_context()

        logger.info(
            "run_finished",
            run_id=run_id,
            stopped_reason=result.stopped_reason,
            processed=result.processed,
            completed=result.completed,
            failed=result.failed,
            blocked=result.blocked,
        )
        event = RunEventType.RUN_STOPPED if result.stopped_reason == STOPPED_BY_USER else RunEventType.RUN_COMPLETED
        await self._emit(event, run_id=run_id, **result.model_dump(exclude={"results"}))
        return result

    async def stop(self) -> Optional[RunResult]:
        """Cancel the in-flight task, halt the run and return its result.

        Must not be awaited from inside the event callback; the run
        cannot finish while its own callback is waiting on it.
        """
        if not self.is_running:
            return self._last_result
        self._stop_requested = True
        self._paused = False
        logger.info("run_stop_requested", current_task_id=self._progress.current_task_id)
        if self._cancel_token is not None:
            self._cancel_token.cancel(STOPPED_BY_USER)
        await self._finished.wait()
        return self._last_result

    async def pause(self) -> None:
        """Halt before the next task; the current task finishes first."""
        if self._status != RunnerStatus.RUNNING:
            return
        self._paused = True
        self._status = RunnerStatus.PAUSED
        self._progress.status = RunnerStatus.PAUSED
        logger.info("run_paused", current_task_id=self._progress.current_task_id)
        await self._emit(RunEventType.RUN_PAUSED)

    async def resume(self) -> None:
        if self._status != RunnerStatus.PAUSED:
            return
        self._paused = False
        self._status = RunnerStatus.RUNNING
        self._progress.status = RunnerStatus.RUNNING
        logger.info("run_resumed")
        await self._emit(RunEventType.RUN_RESUMED)

    # ---- Loop ----

    async def _wait_while_paused(self) -> None:
        while self._paused and not self._stop_requested:
            await asyncio.sleep(self.pause_poll_interval)

    def _stop_condition(self, options: RunOptions, processed: int, failed: int) -> Optional[str]:
        if self._stop_requested:
            return STOPPED_BY_USER
        if options.max_failures is not None and failed >= options.max_failures:
            return MAX_FAILURES_REACHED
        if options.max_tasks is not None and processed >= options.max_tasks:
            return MAX_TASKS_REACHED
        return None

    async def _run(self, run_id: str, options: RunOptions, policy) -> RunResult:
        progress = self._progress
        results = []
        attempted: Set[str] = set()
        stopped_reason: Optional[str] = None

        while True:
            stopped_reason = self._stop_condition(options, progress.processed, progress.failed)
            if stopped_reason:
                break

            await self._wait_while_paused()
            if self._stop_requested:
                stopped_reason = STOPPED_BY_USER
                break

            task = self.store.next_runnable_task(options.strategy, exclude=attempted)
            if task is None:
                stopped_reason = NO_MORE_TASKS
                break
            attempted.add(task.id)

            progress.current_task_id = task.id
            progress.current_task_title = task.title
            token = CancellationToken()
            self._cancel_token = token
            bind_run_context(run_id, task.id)
            await self._emit(RunEventType.TASK_STARTED, task_id=task.id, title=task.title)
            logger.info("task_started", run_id=run_id, task_id=task.id, title=task.title[:80])

            try:
                result = await self.executor.execute(
                    task,
                    run_id=run_id,
                    policy=policy,
                    merge_to_review=options.merge_to_review,
                    cancel_token=token,
                    on_chunk=self.chunk_callback,
                )
            except (ForemanError, OSError, RuntimeError, ValueError) as e:
                logger.error(
                    "task_processing_error",
                    task_id=task.id,
                    error=str(e),
                    exc_type=type(e).__name__,
                )
                self._mark_failed(task.id)
                result = TaskRunResult(
                    task_id=task.id,
                    run_id=run_id,
                    outcome=TaskOutcome.FAILED,
                    error=f"[{type(e).__name__}] {e}",
                )
            finally:
                self._cancel_token = None
                clear_task_context()
                progress.current_task_id = None
                progress.current_task_title = None

            results.append(result)
            progress.processed += 1

            if result.outcome == TaskOutcome.COMPLETED:
                progress.completed += 1
                await self._emit(
                    RunEventType.TASK_COMPLETED, task_id=task.id,
                    summary=result.summary, merge_conflicts=result.merge_conflicts,
                )
            elif result.outcome == TaskOutcome.BLOCKED:
                progress.blocked += 1
                await self._emit(RunEventType.TASK_BLOCKED, task_id=task.id, question=result.summary)
                if options.stop_on_blocking:
                    stopped_reason = TASK_BLOCKED
                    break
            elif result.outcome == TaskOutcome.CANCELLED:
                await self._emit(RunEventType.TASK_CANCELLED, task_id=task.id)
            else:
                progress.failed += 1
                await self._emit(RunEventType.TASK_FAILED, task_id=task.id, error=result.error)

        return RunResult(
            success=stopped_reason != STOPPED_BY_USER and progress.failed == 0 and progress.blocked == 0,
            processed=progress.processed,
            completed=progress.completed,
            failed=progress.failed,
            blocked=progress.blocked,
            results=results,
            stopped_reason=stopped_reason,
        )

    def _mark_failed(self, task_id: str) -> None:
        """Best-effort failed status after an unexpected executor error."""
        try:
            self.store.move_task(task_id, TaskStatus.FAILED)
        except ForemanError as e:
            logger.warning("task_mark_failed_error", task_id=task_id, error=str(e))

    async def _emit(self, event_type: RunEventType, task_id: Optional[str] = None, **data) -> None:
        if not self.event_callback:
            return
        try:
            await self.event_callback(RunEvent(type=event_type, task_id=task_id, data=data))
        except (OSError, RuntimeError, ValueError, asyncio.TimeoutError) as e:
            logger.warning("run_event_callback_error", event=event_type.value, error=str(e), exc_type=type(e).__name__)
