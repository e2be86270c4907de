"""Tests for TaskStore persistence and runner queries."""

from datetime import datetime, timedelta

import pytest

from foreman.autonomous import (
    CommentKind,
    RuntimeStatus,
    Strategy,
    TaskPriority,
    TaskStatus,
    TaskStore,
)
from foreman.exceptions import TaskStoreError


@pytest.fixture
def store(tmp_path):
    return TaskStore(tmp_path / ".foreman")


def _ids(tasks):
    return [t.id for t in tasks]


def test_create_assigns_sequential_ids(store, tmp_path):
    first = store.create_task("First")
    second = store.create_task("Second", "details", priority=TaskPriority.HIGH)
    assert (first.id, second.id) == ("TSK-0001", "TSK-0002")
    assert second.order == first.order + 1

    reopened = TaskStore(tmp_path / ".foreman")
    assert _ids(reopened.list_tasks()) == ["TSK-0001", "TSK-0002"]
    assert reopened.get_task("TSK-0002").priority == TaskPriority.HIGH


def test_ids_not_reused_after_delete(store):
    store.create_task("A")
    store.delete_task("TSK-0001")
    assert store.create_task("B").id == "TSK-0002"


def test_missing_task_raises(store):
    assert store.get_task("TSK-9999") is None
    with pytest.raises(TaskStoreError):
        store.require_task("TSK-9999")
    with pytest.raises(TaskStoreError):
        store.move_task("TSK-9999", TaskStatus.DONE)


def test_move_and_update(store):
    task = store.create_task("A")
    store.move_task(task.id, TaskStatus.DOING)
    updated = store.update_task(task.id, title="Renamed", acceptance_criteria=["builds"])
    assert updated.status == TaskStatus.DOING
    assert store.get_task(task.id).title == "Renamed"
    assert store.list_tasks(TaskStatus.DOING)[0].acceptance_criteria == ["builds"]


def test_delete_drops_dependency_references(store):
    a = store.create_task("A")
    b = store.create_task("B", depends_on=[a.id])
    assert store.delete_task(a.id)
    assert store.get_task(b.id).depends_on == []
    assert store.delete_task(a.id) is False


def test_comments_are_redacted(store):
    task = store.create_task("A")
    store.add_typed_comment(task.id, CommentKind.NOTE, "operator", "use api_key=abc123 for staging")
    comment = store.get_task(task.id).comments[0]
    assert "abc123" not in comment.content
    assert "[REDACTED]" in comment.content


def test_fifo_strategy(store):
    store.create_task("A", priority=TaskPriority.LOW)
    store.create_task("B", priority=TaskPriority.CRITICAL)
    store.create_task("C", status=TaskStatus.BACKLOG)
    store.create_task("D", status=TaskStatus.DONE)
    assert _ids(store.get_pending_tasks(Strategy.FIFO)) == ["TSK-0001", "TSK-0002", "TSK-0003"]


def test_priority_strategy(store):
    store.create_task("low", priority=TaskPriority.LOW)
    store.create_task("high", priority=TaskPriority.HIGH)
    store.create_task("critical", priority=TaskPriority.CRITICAL)
    store.create_task("high too", priority=TaskPriority.HIGH)
    assert _ids(store.get_pending_tasks(Strategy.PRIORITY)) == ["TSK-0003", "TSK-0002", "TSK-0004", "TSK-0001"]


def test_dependency_strategy(store):
    c = store.create_task("C")
    b = store.create_task("B")
    a = store.create_task("A")
    store.update_task(c.id, depends_on=[b.id])
    store.update_task(b.id, depends_on=[a.id])
    assert _ids(store.get_pending_tasks(Strategy.DEPENDENCY)) == [a.id, b.id, c.id]


def test_cycle_members_excluded(store):
    a = store.create_task("A")
    b = store.create_task("B", depends_on=[a.id])
    free = store.create_task("Free")
    store.update_task(a.id, depends_on=[b.id])
    assert _ids(store.get_pending_tasks(Strategy.FIFO)) == [free.id]
    assert _ids(store.get_pending_tasks(Strategy.DEPENDENCY)) == [free.id]


def test_next_runnable_waits_for_finished_dependencies(store):
    a = store.create_task("A")
    b = store.create_task("B", depends_on=[a.id])
    assert store.next_runnable_task(Strategy.FIFO).id == a.id
    assert store.next_runnable_task(Strategy.FIFO, exclude=[a.id]) is None

    store.move_task(a.id, TaskStatus.DOING)
    assert store.next_runnable_task(Strategy.FIFO) is None
    store.move_task(a.id, TaskStatus.FAILED)
    assert store.next_runnable_task(Strategy.FIFO) is None
    store.move_task(a.id, TaskStatus.REVIEW)
    assert store.next_runnable_task(Strategy.FIFO).id == b.id
    store.move_task(a.id, TaskStatus.DONE)
    assert store.next_runnable_task(Strategy.FIFO).id == b.id


def test_missing_dependency_is_unmet(store):
    store.create_task("Orphan", depends_on=["TSK-0404"])
    assert len(store.get_pending_tasks()) == 1
    assert store.next_runnable_task() is None


def test_open_question_excludes_until_instruction(store):
    task = store.create_task("A")
    asked = datetime.now() - timedelta(seconds=5)
    task.runtime.blocked_question = "Which database?"
    task.runtime.blocked_at = asked
    store.save_task(task)
    store.move_task(task.id, TaskStatus.TODO)
    assert store.get_pending_tasks() == []

    store.add_typed_comment(task.id, CommentKind.NOTE, "operator", "thinking about it")
    assert store.get_pending_tasks() == []

    store.add_typed_comment(task.id, CommentKind.INSTRUCTION, "operator", "Use Postgres")
    assert _ids(store.get_pending_tasks()) == [task.id]


def test_recover_orphaned_tasks(store):
    stuck = store.create_task("Stuck")
    store.create_task("Fine")
    stuck.status = TaskStatus.DOING
    stuck.current_run_id = "run-1"
    stuck.runtime.status = RuntimeStatus.RUNNING
    store.save_task(stuck)

    assert store.recover_orphaned_tasks() == 1
    recovered = store.get_task(stuck.id)
    assert recovered.status == TaskStatus.TODO
    assert recovered.runtime.status == RuntimeStatus.IDLE
    assert recovered.current_run_id is None
    assert recovered.comments[-1].kind == CommentKind.SYSTEM
    assert store.recover_orphaned_tasks() == 0
