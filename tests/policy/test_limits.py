"""Tests for LimitTracker."""

import pytest

from foreman.exceptions import LimitExceeded
from foreman.policy import LimitTracker, PolicyLimits, count_diff_lines


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_steps_raise_past_maximum():
    tracker = LimitTracker(PolicyLimits(max_steps_per_run=2))
    tracker.record_step()
    tracker.record_step()
    with pytest.raises(LimitExceeded) as exc_info:
        tracker.record_step()
    assert exc_info.value.limit_name == "max_steps_per_run"
    assert exc_info.value.current == 3
    assert exc_info.value.maximum == 2
    assert tracker.steps == 2


def test_limit_exceeded_is_not_retryable():
    tracker = LimitTracker(PolicyLimits(max_steps_per_run=1))
    tracker.record_step()
    with pytest.raises(LimitExceeded) as exc_info:
        tracker.record_step()
    assert exc_info.value.is_retryable is False


def test_runtime_limit_uses_clock():
    clock = FakeClock()
    tracker = LimitTracker(PolicyLimits(max_runtime_minutes=1), clock=clock)
    tracker.check_runtime()
    clock.now = 61
    with pytest.raises(LimitExceeded) as exc_info:
        tracker.check_runtime()
    assert exc_info.value.limit_name == "max_runtime_minutes"


def test_files_limit_counts_distinct_paths():
    tracker = LimitTracker(PolicyLimits(max_files_per_run=1))
    tracker.check_write("a.txt", 1)
    tracker.record_write("a.txt", 1)
    tracker.check_write("a.txt", 1)
    with pytest.raises(LimitExceeded) as exc_info:
        tracker.check_write("b.txt", 1)
    assert exc_info.value.limit_name == "max_files_per_run"


def test_diff_lines_limit():
    tracker = LimitTracker(PolicyLimits(max_diff_lines_per_run=5))
    tracker.record_write("a.txt", 4)
    with pytest.raises(LimitExceeded) as exc_info:
        tracker.check_write("a.txt", 2)
    assert exc_info.value.limit_name == "max_diff_lines_per_run"
    assert exc_info.value.current == 6


def test_count_diff_lines():
    assert count_diff_lines("", "a\nb\n") == 2
    assert count_diff_lines("a\nb\n", "a\nc\n") == 2
    assert count_diff_lines("same\n", "same\n") == 0


def test_snapshot():
    tracker = LimitTracker(PolicyLimits())
    tracker.record_step()
    tracker.record_write("x", 3)
    snap = tracker.snapshot()
    assert snap["steps"] == 1
    assert snap["files_modified"] == 1
    assert snap["diff_lines"] == 3
