"""Tests for AutonomousRunner run control with a fake executor."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from foreman.autonomous import (
    AutonomousRunner,
    RunEventType,
    RunnerStatus,
    RunOptions,
    Strategy,
    TaskOutcome,
    TaskRunResult,
    TaskStatus,
    TaskStore,
)
from foreman.autonomous.runner import (
    MAX_FAILURES_REACHED,
    MAX_TASKS_REACHED,
    NO_MORE_TASKS,
    STOPPED_BY_USER,
    TASK_BLOCKED,
)
from foreman.exceptions import ProviderFailure

FIFO = RunOptions(strategy=Strategy.FIFO)


@pytest.fixture
def store(config, project):
    return TaskStore(config.state_dir(project))


def _fake_executor(store, outcome=TaskOutcome.COMPLETED, status=TaskStatus.REVIEW):
    """Executor that moves each task to ``status`` and reports ``outcome``."""
    executor = MagicMock()

    async def execute(task, *, run_id, policy, merge_to_review=True, cancel_token=None, on_chunk=None):
        store.move_task(task.id, status)
        return TaskRunResult(task_id=task.id, run_id=run_id, outcome=outcome)

    executor.execute = AsyncMock(side_effect=execute)
    return executor


def _runner(project, store, executor, config, events=None):
    async def record(event):
        events.append(event)

    return AutonomousRunner(
        project, store, executor, config=config,
        event_callback=record if events is not None else None,
        pause_poll_interval=0.01,
    )


async def _until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_drains_board(store, config, project):
    for title in ("A", "B", "C"):
        store.create_task(title)
    events = []
    runner = _runner(project, store, _fake_executor(store), config, events)

    result = await runner.start(FIFO)

    assert result.success
    assert result.stopped_reason == NO_MORE_TASKS
    assert (result.processed, result.completed, result.failed) == (3, 3, 0)
    assert [r.task_id for r in result.results] == ["TSK-0001", "TSK-0002", "TSK-0003"]
    types = [e.type for e in events]
    assert types[0] == RunEventType.RUN_STARTED
    assert events[0].data["total"] == 3
    assert types.count(RunEventType.TASK_STARTED) == 3
    assert types.count(RunEventType.TASK_COMPLETED) == 3
    assert types[-1] == RunEventType.RUN_COMPLETED
    assert runner.status == RunnerStatus.STOPPED
    assert runner.last_result == result


@pytest.mark.asyncio
async def test_max_failures_stops_run(store, config, project):
    for title in ("A", "B", "C"):
        store.create_task(title)
    executor = _fake_executor(store, TaskOutcome.FAILED, TaskStatus.FAILED)
    runner = _runner(project, store, executor, config)

    result = await runner.start(RunOptions(strategy=Strategy.FIFO, max_failures=1))

    assert result.stopped_reason == MAX_FAILURES_REACHED
    assert result.processed == 1
    assert result.failed == 1
    assert result.success is False
    assert executor.execute.await_count == 1


@pytest.mark.asyncio
async def test_max_tasks_caps_run(store, config, project):
    for title in ("A", "B", "C"):
        store.create_task(title)
    runner = _runner(project, store, _fake_executor(store), config)

    result = await runner.start(RunOptions(strategy=Strategy.FIFO, max_tasks=2))

    assert result.stopped_reason == MAX_TASKS_REACHED
    assert result.processed == 2
    assert runner.get_progress().total == 2
    assert store.get_task("TSK-0003").status == TaskStatus.TODO


@pytest.mark.asyncio
async def test_stop_on_blocking(store, config, project):
    store.create_task("A")
    store.create_task("B")
    executor = _fake_executor(store, TaskOutcome.BLOCKED, TaskStatus.BLOCKED)
    runner = _runner(project, store, executor, config)

    result = await runner.start(RunOptions(strategy=Strategy.FIFO, stop_on_blocking=True))

    assert result.stopped_reason == TASK_BLOCKED
    assert result.blocked == 1
    assert result.processed == 1


@pytest.mark.asyncio
async def test_blocked_task_does_not_stop_by_default(store, config, project):
    store.create_task("A")
    store.create_task("B")
    executor = _fake_executor(store, TaskOutcome.BLOCKED, TaskStatus.BLOCKED)
    result = await _runner(project, store, executor, config).start(FIFO)
    assert result.blocked == 2
    assert result.stopped_reason == NO_MORE_TASKS
    assert result.success is False


@pytest.mark.asyncio
async def test_dependency_order(store, config, project):
    later = store.create_task("Later")
    first = store.create_task("First")
    store.update_task(later.id, depends_on=[first.id])

    result = await _runner(project, store, _fake_executor(store), config).start(
        RunOptions(strategy=Strategy.DEPENDENCY)
    )

    assert [r.task_id for r in result.results] == [first.id, later.id]
    assert result.completed == 2
    assert store.get_task(later.id).status == TaskStatus.REVIEW


@pytest.mark.asyncio
async def test_chain_runs_through_review(store, config, project):
    a = store.create_task("A")
    b = store.create_task("B", depends_on=[a.id])
    c = store.create_task("C", depends_on=[b.id])

    result = await _runner(project, store, _fake_executor(store), config).start(FIFO)

    assert [r.task_id for r in result.results] == [a.id, b.id, c.id]
    assert result.stopped_reason == NO_MORE_TASKS


@pytest.mark.asyncio
async def test_failed_dependency_not_picked(store, config, project):
    first = store.create_task("First")
    store.create_task("Later", depends_on=[first.id])
    executor = _fake_executor(store, TaskOutcome.FAILED, TaskStatus.FAILED)

    result = await _runner(project, store, executor, config).start(FIFO)

    assert [r.task_id for r in result.results] == [first.id]
    assert result.stopped_reason == NO_MORE_TASKS


@pytest.mark.asyncio
async def test_failed_task_not_retried_in_same_run(store, config, project):
    store.create_task("A")
    executor = _fake_executor(store, TaskOutcome.FAILED, TaskStatus.TODO)
    result = await _runner(project, store, executor, config).start(FIFO)
    assert result.processed == 1
    assert executor.execute.await_count == 1


@pytest.mark.asyncio
async def test_executor_exception_marks_task_failed(store, config, project):
    store.create_task("A")
    store.create_task("B")
    executor = MagicMock()
    executor.execute = AsyncMock(side_effect=[
        ProviderFailure("boom"),
        TaskRunResult(task_id="TSK-0002", run_id="r", outcome=TaskOutcome.COMPLETED),
    ])
    events = []
    result = await _runner(project, store, executor, config, events).start(FIFO)

    assert result.processed == 2
    assert result.failed == 1
    assert result.completed == 1
    assert result.results[0].outcome == TaskOutcome.FAILED
    assert "boom" in result.results[0].error
    assert store.get_task("TSK-0001").status == TaskStatus.FAILED
    assert RunEventType.TASK_FAILED in [e.type for e in events]


@pytest.mark.asyncio
async def test_orphaned_tasks_recovered_on_start(store, config, project):
    task = store.create_task("Stuck")
    store.move_task(task.id, TaskStatus.DOING)
    result = await _runner(project, store, _fake_executor(store), config).start(FIFO)
    assert [r.task_id for r in result.results] == [task.id]


@pytest.mark.asyncio
async def test_stop_cancels_in_flight_task(store, config, project):
    store.create_task("Long")
    store.create_task("Next")
    started = asyncio.Event()
    tokens = []

    async def execute(task, *, run_id, policy, merge_to_review=True, cancel_token=None, on_chunk=None):
        tokens.append(cancel_token)
        started.set()
        await cancel_token.wait()
        store.move_task(task.id, TaskStatus.TODO)
        return TaskRunResult(task_id=task.id, run_id=run_id, outcome=TaskOutcome.CANCELLED)

    executor = MagicMock()
    executor.execute = AsyncMock(side_effect=execute)
    events = []
    runner = _runner(project, store, executor, config, events)

    run = asyncio.create_task(runner.start(FIFO))
    await started.wait()
    assert runner.get_progress().current_task_id == "TSK-0001"

    result = await runner.stop()

    assert tokens[0].cancelled
    assert tokens[0].reason == STOPPED_BY_USER
    assert result.stopped_reason == STOPPED_BY_USER
    assert result.processed == 1
    assert result.success is False
    assert executor.execute.await_count == 1
    assert (await run) == result
    assert events[-1].type == RunEventType.RUN_STOPPED
    assert RunEventType.TASK_CANCELLED in [e.type for e in events]
    assert store.get_task("TSK-0001").status == TaskStatus.TODO


@pytest.mark.asyncio
async def test_pause_lets_current_task_finish(store, config, project):
    store.create_task("A")
    store.create_task("B")
    started = asyncio.Event()
    release = asyncio.Event()

    async def execute(task, *, run_id, policy, merge_to_review=True, cancel_token=None, on_chunk=None):
        started.set()
        await release.wait()
        store.move_task(task.id, TaskStatus.REVIEW)
        return TaskRunResult(task_id=task.id, run_id=run_id, outcome=TaskOutcome.COMPLETED)

    executor = MagicMock()
    executor.execute = AsyncMock(side_effect=execute)
    runner = _runner(project, store, executor, config)

    run = asyncio.create_task(runner.start(FIFO))
    await started.wait()
    await runner.pause()
    assert runner.is_paused
    release.set()

    await _until(lambda: runner.get_progress().processed == 1)
    await asyncio.sleep(0.05)
    assert executor.execute.await_count == 1
    assert runner.get_progress().status == RunnerStatus.PAUSED

    result = await runner.stop()
    await run
    assert result.stopped_reason == STOPPED_BY_USER
    assert result.completed == 1
    assert store.get_task("TSK-0002").status == TaskStatus.TODO


@pytest.mark.asyncio
async def test_resume_continues_run(store, config, project):
    store.create_task("A")
    store.create_task("B")
    started = asyncio.Event()
    release = asyncio.Event()

    async def execute(task, *, run_id, policy, merge_to_review=True, cancel_token=None, on_chunk=None):
        started.set()
        await release.wait()
        store.move_task(task.id, TaskStatus.REVIEW)
        return TaskRunResult(task_id=task.id, run_id=run_id, outcome=TaskOutcome.COMPLETED)

    executor = MagicMock()
    executor.execute = AsyncMock(side_effect=execute)
    runner = _runner(project, store, executor, config)

    run = asyncio.create_task(runner.start(FIFO))
    await started.wait()
    await runner.pause()
    release.set()
    await _until(lambda: runner.get_progress().processed == 1)
    await runner.resume()

    result = await run
    assert result.processed == 2
    assert result.stopped_reason == NO_MORE_TASKS


@pytest.mark.asyncio
async def test_second_start_rejected(store, config, project):
    store.create_task("A")
    started = asyncio.Event()

    async def execute(task, *, run_id, policy, merge_to_review=True, cancel_token=None, on_chunk=None):
        started.set()
        await cancel_token.wait()
        return TaskRunResult(task_id=task.id, run_id=run_id, outcome=TaskOutcome.CANCELLED)

    executor = MagicMock()
    executor.execute = AsyncMock(side_effect=execute)
    runner = _runner(project, store, executor, config)

    run = asyncio.create_task(runner.start(FIFO))
    await started.wait()
    with pytest.raises(RuntimeError):
        await runner.start(FIFO)
    await runner.stop()
    await run


@pytest.mark.asyncio
async def test_event_callback_errors_do_not_stop_run(store, config, project):
    store.create_task("A")

    async def broken(event):
        raise RuntimeError("sink down")

    runner = AutonomousRunner(project, store, _fake_executor(store), config=config, event_callback=broken)
    result = await runner.start(FIFO)
    assert result.completed == 1


@pytest.mark.asyncio
async def test_stop_when_idle_returns_last_result(store, config, project):
    runner = _runner(project, store, _fake_executor(store), config)
    assert await runner.stop() is None
    result = await runner.start(FIFO)
    assert result.processed == 0
    assert await runner.stop() == result


def test_default_options_from_config(store, config, project):
    options = _runner(project, store, _fake_executor(store), config).default_options()
    assert options.strategy == Strategy.DEPENDENCY
    assert options.max_tasks is None
    assert options.merge_to_review is True
