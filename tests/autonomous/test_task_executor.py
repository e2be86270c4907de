"""Tests for TaskExecutor outcomes."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from foreman.agent import (
    CancellationToken,
    CompletionResult,
    ExecutionProvider,
    FinishReason,
    ToolCall,
)
from foreman.autonomous import (
    CommentKind,
    RuntimeStatus,
    TaskExecutor,
    TaskOutcome,
    TaskStatus,
    TaskStore,
    build_task_prompt,
    format_failure_comment,
)
from foreman.autonomous.executor import CANCELLED_COMMENT
from foreman.git import (
    BranchOrchestrator,
    BranchResult,
    ConflictInfo,
    MergeResult,
    TaskBranchMapping,
)
from foreman.policy import Policy, PolicyLimits, default_policy


class ScriptedProvider(ExecutionProvider):
    name = "scripted"

    def __init__(self, answers):
        super().__init__()
        self.answers = list(answers)
        self.prompts = []

    async def complete(self, messages, tools=None, on_chunk=None, mode=None, cancel_token=None):
        self.prompts.append(messages[0].content)
        if len(self.answers) > 1:
            return self.answers.pop(0)
        return self.answers[0]

    async def cancel(self):
        pass


def _tool(name, **arguments):
    return CompletionResult(tool_calls=[ToolCall(name=name, arguments=arguments)])


@pytest.fixture
def store(config, project):
    return TaskStore(config.state_dir(project))


def _executor(project, store, provider, config, orchestrator=None):
    orchestrator = orchestrator or BranchOrchestrator(project, config=config)
    return TaskExecutor(project, store, orchestrator, provider, config=config)


def _mock_orchestrator(merge=None):
    mapping = TaskBranchMapping(task_id="TSK-0001", branch_name="task/TSK-0001-a", base_commit_hash="abc")
    orchestrator = MagicMock()
    orchestrator.main_branch = "main"
    orchestrator.get_working_mapping.return_value = None
    orchestrator.runner.branch_exists = AsyncMock(return_value=True)
    orchestrator.create_task_branch = AsyncMock(return_value=BranchResult(success=True, mapping=mapping))
    orchestrator.checkout_task_branch = AsyncMock(return_value=BranchResult(success=True, mapping=mapping))
    orchestrator.commit_task_changes = AsyncMock(return_value=BranchResult(success=True, mapping=mapping))
    orchestrator.merge_task_to_review = AsyncMock(return_value=merge or MergeResult(
        success=True, source_branch=mapping.branch_name, target_branch="review", merge_commit_hash="def",
    ))
    orchestrator.abort_merge = AsyncMock(return_value=BranchResult(success=True))
    return orchestrator


# ---- Prompt and comments ----

def test_prompt_includes_criteria_instructions_and_retry_context(store):
    task = store.create_task("Add login", "Build the login form", acceptance_criteria=["Form renders", "Tests pass"])
    store.add_typed_comment(task.id, CommentKind.INSTRUCTION, "operator", "Use the existing Button component")
    for n in range(4):
        store.add_typed_comment(task.id, CommentKind.FAILURE, "system", f"failure {n}")
    prompt = build_task_prompt(store.get_task(task.id))

    assert prompt.startswith("# Task TSK-0001: Add login")
    assert "1. Form renders" in prompt
    assert "2. Tests pass" in prompt
    assert "- Use the existing Button component" in prompt
    assert "failed 4 time(s)" in prompt
    assert "failure 0" not in prompt
    assert "failure 3" in prompt
    assert "task_complete" in prompt


def test_failure_comment_format(tmp_path):
    text = format_failure_comment("run-1", tmp_path / "r.log", "Boom", "token=abc123")
    lines = text.splitlines()
    assert lines[0] == "**Run ID:** run-1"
    assert lines[1] == f"**Log Path:** {tmp_path / 'r.log'}"
    assert lines[2] == "**Reason:** Boom"
    assert "**Details:**" in text
    assert "abc123" not in text


# ---- Against a real repository ----

@pytest.mark.asyncio
async def test_success_commits_and_merges_to_review(git_repo, store, config, run_git):
    task = store.create_task("Add app", acceptance_criteria=["app exists"])
    provider = ScriptedProvider([
        _tool("write_file", path="src/app.ts", content="export const app = 1;\n"),
        _tool("task_complete", summary="Added src/app.ts"),
    ])
    executor = _executor(git_repo, store, provider, config)

    result = await executor.execute(task, run_id="run-1", policy=default_policy())

    assert result.outcome == TaskOutcome.COMPLETED
    assert result.summary == "Added src/app.ts"
    assert result.branch_name == "task/TSK-0001-add-app"
    assert result.merge_conflicts == []
    assert result.tool_calls == 2

    stored = store.get_task(task.id)
    assert stored.status == TaskStatus.REVIEW
    assert stored.runtime.status == RuntimeStatus.DONE
    assert stored.runtime.run_count == 1
    assert stored.branch_name == "task/TSK-0001-add-app"
    assert stored.comments[-1].kind == CommentKind.AGENT
    assert stored.comments[-1].content == "Added src/app.ts"

    assert run_git(git_repo, "show", "review:src/app.ts") == "export const app = 1;"
    assert "src/app.ts" not in run_git(git_repo, "ls-tree", "-r", "--name-only", "main")
    mapping = executor.orchestrator.get_mappings(task.id)[0]
    assert mapping.merged_to == "review"
    log = (config.state_dir(git_repo) / "runs" / "run-1-TSK-0001.log").read_text()
    assert "run-1 TSK-0001: Add app" in log


@pytest.mark.asyncio
async def test_success_without_review_merge(git_repo, store, config, run_git):
    task = store.create_task("Add app")
    provider = ScriptedProvider([
        _tool("write_file", path="src/app.ts", content="x\n"),
        _tool("task_complete", summary="done"),
    ])
    executor = _executor(git_repo, store, provider, config)
    result = await executor.execute(task, run_id="run-1", policy=default_policy(), merge_to_review=False)

    assert result.outcome == TaskOutcome.COMPLETED
    assert run_git(git_repo, "branch", "--list", "review") == ""
    mapping = executor.orchestrator.get_active_mapping(task.id)
    assert mapping.head_commit_hash != mapping.base_commit_hash


@pytest.mark.asyncio
async def test_blocked_records_question(git_repo, store, config):
    task = store.create_task("Pick a database")
    provider = ScriptedProvider([_tool("task_blocked", reason="Two options", question="Postgres or SQLite?")])
    result = await _executor(git_repo, store, provider, config).execute(task, run_id="run-1", policy=default_policy())

    assert result.outcome == TaskOutcome.BLOCKED
    assert result.summary == "Postgres or SQLite?"
    stored = store.get_task(task.id)
    assert stored.status == TaskStatus.BLOCKED
    assert stored.runtime.blocked_question == "Postgres or SQLite?"
    assert stored.runtime.blocked_reason == "Two options"
    assert stored.has_unresolved_question


@pytest.mark.asyncio
async def test_iteration_limit_fails_task(git_repo, store, config):
    task = store.create_task("Loop forever")
    provider = ScriptedProvider([_tool("read_file", path="src/missing.ts")])
    result = await _executor(git_repo, store, provider, config).execute(task, run_id="run-1", policy=default_policy())

    assert result.outcome == TaskOutcome.FAILED
    assert result.error == "Maximum iterations (5) reached without completion"
    stored = store.get_task(task.id)
    assert stored.status == TaskStatus.FAILED
    assert stored.runtime.failure_count == 1
    failure = [c for c in stored.comments if c.kind == CommentKind.FAILURE][0]
    assert failure.content.startswith("**Run ID:** run-1")
    assert "**Reason:** Maximum iterations (5)" in failure.content


@pytest.mark.asyncio
async def test_answer_without_completion_fails(git_repo, store, config):
    task = store.create_task("Chat only")
    provider = ScriptedProvider([CompletionResult(content="I looked around but did nothing.")])
    result = await _executor(git_repo, store, provider, config).execute(task, run_id="run-1", policy=default_policy())
    assert result.outcome == TaskOutcome.FAILED
    assert result.error == "Agent stopped without completing the task"
    agent = [c for c in store.get_task(task.id).comments if c.kind == CommentKind.AGENT]
    assert agent[0].content == "I looked around but did nothing."


@pytest.mark.asyncio
async def test_limit_exceeded_fails_only_this_task(git_repo, store, config):
    task = store.create_task("Too many steps")
    policy = Policy(allowed_commands=[], limits=PolicyLimits(max_steps_per_run=1))
    provider = ScriptedProvider([CompletionResult(tool_calls=[
        ToolCall(name="read_file", arguments={"path": "file.txt"}),
        ToolCall(name="read_file", arguments={"path": "file.txt"}),
    ])])
    result = await _executor(git_repo, store, provider, config).execute(task, run_id="run-1", policy=policy)

    assert result.outcome == TaskOutcome.FAILED
    failure = [c for c in store.get_task(task.id).comments if c.kind == CommentKind.FAILURE][0]
    assert "Limit: max_steps_per_run (current 2" in failure.content


@pytest.mark.asyncio
async def test_cancelled_returns_task_to_todo(git_repo, store, config):
    task = store.create_task("Cancel me")
    token = CancellationToken()
    token.cancel("stopped by user")
    provider = ScriptedProvider([CompletionResult(content="never")])
    result = await _executor(git_repo, store, provider, config).execute(
        task, run_id="run-1", policy=default_policy(), cancel_token=token,
    )

    assert result.outcome == TaskOutcome.CANCELLED
    stored = store.get_task(task.id)
    assert stored.status == TaskStatus.TODO
    assert stored.runtime.status == RuntimeStatus.CANCELLED
    assert stored.comments[-1].content == CANCELLED_COMMENT
    assert provider.prompts == []


@pytest.mark.asyncio
async def test_no_branch_when_code_changes_not_required(git_repo, store, config):
    task = store.create_task("Research", requires_code_changes=False)
    provider = ScriptedProvider([_tool("task_complete", summary="Findings")])
    executor = _executor(git_repo, store, provider, config)
    result = await executor.execute(task, run_id="run-1", policy=default_policy())

    assert result.outcome == TaskOutcome.COMPLETED
    assert result.branch_name is None
    assert executor.orchestrator.get_mappings() == []


# ---- With a mocked orchestrator ----

@pytest.mark.asyncio
async def test_review_merge_conflict_is_aborted(store, config, project):
    task = store.create_task("A")
    conflicted = MergeResult(
        success=False, source_branch="task/TSK-0001-a", target_branch="review",
        had_conflicts=True, conflicts=[ConflictInfo(file_path="src/app.ts")],
    )
    orchestrator = _mock_orchestrator(merge=conflicted)
    provider = ScriptedProvider([_tool("task_complete", summary="done")])
    executor = _executor(project, store, provider, config, orchestrator)

    result = await executor.execute(task, run_id="run-1", policy=default_policy())

    assert result.outcome == TaskOutcome.COMPLETED
    assert result.merge_conflicts == ["src/app.ts"]
    orchestrator.abort_merge.assert_awaited_once()
    stored = store.get_task(task.id)
    assert stored.status == TaskStatus.REVIEW
    assert "src/app.ts" in stored.comments[-1].content
    orchestrator.create_task_branch.assert_awaited_once()
    assert orchestrator.create_task_branch.await_args.kwargs["base_ref"] == "main"


@pytest.mark.asyncio
async def test_branch_failure_fails_task(store, config, project):
    task = store.create_task("A")
    orchestrator = _mock_orchestrator()
    orchestrator.create_task_branch = AsyncMock(
        return_value=BranchResult(success=False, error="fatal: bad ref", stderr="fatal: bad ref"),
    )
    provider = ScriptedProvider([_tool("task_complete", summary="done")])
    result = await _executor(project, store, provider, config, orchestrator).execute(
        task, run_id="run-1", policy=default_policy(),
    )
    assert result.outcome == TaskOutcome.FAILED
    assert "Could not create task branch" in result.error
    assert provider.prompts == []
    assert store.get_task(task.id).status == TaskStatus.FAILED


@pytest.mark.asyncio
async def test_provider_error_fails_task(store, config, project):
    task = store.create_task("A")
    provider = ScriptedProvider([CompletionResult(finish_reason=FinishReason.ERROR, error="Usage limit reached")])
    result = await _executor(project, store, provider, config, _mock_orchestrator()).execute(
        task, run_id="run-1", policy=default_policy(),
    )
    assert result.outcome == TaskOutcome.FAILED
    assert result.error == "Usage limit reached"
    failure = [c for c in store.get_task(task.id).comments if c.kind == CommentKind.FAILURE][0]
    assert "Provider failure: Usage limit reached" in failure.content


@pytest.mark.asyncio
async def test_retry_prompt_after_failure(store, config, project):
    task = store.create_task("A")
    provider = ScriptedProvider([CompletionResult(content="nothing")])
    executor = _executor(project, store, provider, config, _mock_orchestrator())
    await executor.execute(task, run_id="run-1", policy=default_policy())

    store.move_task(task.id, TaskStatus.TODO)
    await executor.execute(store.get_task(task.id), run_id="run-2", policy=default_policy())
    assert "Retry Context (Attempt 2)" in provider.prompts[-1]
    assert "Agent stopped without completing the task" in provider.prompts[-1]
    assert store.get_task(task.id).runtime.run_count == 2
