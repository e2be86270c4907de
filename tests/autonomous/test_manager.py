"""End-to-end tests for AutonomousManager on a real repository."""

import pytest

from foreman.agent import CompletionResult, ExecutionProvider, ToolCall
from foreman.autonomous import AutonomousManager, TaskOutcome, TaskStatus
from foreman.policy import default_policy, save_policy


class ScriptedProvider(ExecutionProvider):
    """Writes one file per task, then completes it."""

    name = "scripted"

    def __init__(self):
        super().__init__()
        self.turns = 0
        self.closed = False

    async def complete(self, messages, tools=None, on_chunk=None, mode=None, cancel_token=None):
        self.turns += 1
        task_line = messages[0].content.splitlines()[0]
        task_id = task_line.split()[2].rstrip(":")
        if len(messages) == 1:
            return CompletionResult(tool_calls=[ToolCall(
                name="write_file",
                arguments={"path": f"src/{task_id}.ts", "content": f"// {task_id}\n"},
            )])
        return CompletionResult(tool_calls=[ToolCall(name="task_complete", arguments={"summary": f"{task_id} done"})])

    async def cancel(self):
        pass

    async def close(self):
        self.closed = True


@pytest.fixture
def manager(git_repo, config):
    save_policy(git_repo, default_policy(), config)
    return AutonomousManager(git_repo, config=config, provider=ScriptedProvider())


@pytest.mark.asyncio
async def test_run_lands_tasks_on_review(manager, git_repo, run_git):
    first = manager.create_task("First feature")
    second = manager.create_task("Second feature")

    result = await manager.start_run()
    await manager.close()

    assert result.success
    assert [r.outcome for r in result.results] == [TaskOutcome.COMPLETED, TaskOutcome.COMPLETED]
    assert [t.status for t in manager.list_tasks()] == [TaskStatus.REVIEW, TaskStatus.REVIEW]
    files = run_git(git_repo, "ls-tree", "-r", "--name-only", "review").splitlines()
    assert f"src/{first.id}.ts" in files
    assert f"src/{second.id}.ts" in files
    assert manager.orchestrator.get_review_record().merged_task_ids == [first.id, second.id]
    assert manager.provider.closed

    landed = await manager.merge_review_to_main()
    assert landed.success
    assert all(m.merged_to == "main" for m in manager.get_mappings())


@pytest.mark.asyncio
async def test_board_moves_drive_branches(manager, git_repo, run_git):
    task = manager.create_task("Manual work")

    started = await manager.move_task(task.id, TaskStatus.DOING)
    assert started.success
    assert run_git(git_repo, "branch", "--show-current") == "task/TSK-0001-manual-work"

    (git_repo / "src").mkdir()
    (git_repo / "src" / "manual.ts").write_text("// manual\n")
    reviewed = await manager.move_task(task.id, TaskStatus.REVIEW)
    assert reviewed.success

    done = await manager.move_task(task.id, TaskStatus.DONE)
    assert done.success
    assert "src/manual.ts" in run_git(git_repo, "ls-tree", "-r", "--name-only", "main")
    assert manager.get_task(task.id).status == TaskStatus.DONE


@pytest.mark.asyncio
async def test_create_branch_records_name_on_task(manager):
    task = manager.create_task("Named branch")
    result = await manager.create_task_branch(task.id)
    assert result.success
    assert manager.get_task(task.id).branch_name == "task/TSK-0001-named-branch"
    assert manager.get_operation_log(task.id)[0].operation == "create_task_branch"


@pytest.mark.asyncio
async def test_progress_snapshot_after_run(manager):
    manager.create_task("Only")
    await manager.start_run()
    progress = manager.get_progress()
    assert progress.processed == 1
    assert progress.completed == 1
    assert progress.current_task_id is None
