"""Tests for the command line entry points."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from foreman.autonomous import RunOptions, RunResult, Strategy, TaskOutcome, TaskRunResult, TaskStore
from foreman.main import build_parser, run_command, status_command


def test_parser_run_options():
    args = build_parser().parse_args([
        "run", "/repo", "--strategy", "priority", "--max-tasks", "3", "--no-merge-to-review",
    ])
    assert args.command == "run"
    assert args.project == "/repo"
    assert args.strategy == "priority"
    assert args.max_tasks == 3
    assert args.max_failures is None
    assert args.merge_to_review is False
    assert args.stop_on_blocking is None


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


@pytest.mark.asyncio
async def test_run_command_merges_overrides(config, project, capsys):
    args = build_parser().parse_args(["run", str(project), "--max-failures", "2"])
    manager = MagicMock()
    manager.runner.default_options.return_value = RunOptions(strategy=Strategy.FIFO, max_tasks=10)
    manager.start_run = AsyncMock(return_value=RunResult(
        success=True, processed=1, completed=1, stopped_reason="no more tasks",
        results=[TaskRunResult(task_id="TSK-0001", run_id="r", outcome=TaskOutcome.COMPLETED)],
    ))
    manager.close = AsyncMock()

    with patch("foreman.autonomous.AutonomousManager", return_value=manager):
        code = await run_command(args, config)

    assert code == 0
    options = manager.start_run.await_args.args[0]
    assert options.strategy == Strategy.FIFO
    assert options.max_tasks == 10
    assert options.max_failures == 2
    manager.close.assert_awaited_once()
    out = capsys.readouterr().out
    assert "Run finished: no more tasks" in out
    assert "TSK-0001: completed" in out


@pytest.mark.asyncio
async def test_run_command_failure_exit_code(config, project):
    args = build_parser().parse_args(["run", str(project)])
    manager = MagicMock()
    manager.runner.default_options.return_value = RunOptions()
    manager.start_run = AsyncMock(return_value=RunResult(success=False, processed=1, failed=1))
    manager.close = AsyncMock()
    with patch("foreman.autonomous.AutonomousManager", return_value=manager):
        assert await run_command(args, config) == 1


@pytest.mark.asyncio
async def test_status_command(git_repo, config, capsys):
    store = TaskStore(config.state_dir(git_repo))
    store.create_task("Visible task")
    args = build_parser().parse_args(["status", str(git_repo)])

    assert await status_command(args, config) == 0
    out = capsys.readouterr().out
    assert "Board: 1 task(s)" in out
    assert "TSK-0001 [todo]" in out
    assert "Git: on main, clean" in out
