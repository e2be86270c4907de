"""Caller-side enforcement of a policy's numeric limits.

The gate is stateless, so the running counters live here. One
``LimitTracker`` is created per task run; the tool executor records
each step and each write, and every check raises ``LimitExceeded`` the
moment a counter would pass its maximum.
"""

import difflib
import time
from typing import Dict, Optional, Set

import structlog

from ..exceptions import LimitExceeded
from .models import PolicyLimits

logger = structlog.get_logger("foreman.policy")


def count_diff_lines(old: str, new: str) -> int:
    """Added plus removed lines between two file contents."""
    changed = 0
    for line in difflib.unified_diff(old.splitlines(), new.splitlines(), lineterm="", n=0):
        if line.startswith(("+++", "---", "@@")):
            continue
        if line.startswith(("+", "-")):
            changed += 1
    return changed


class LimitTracker:
    """Running counters for one task run, checked against PolicyLimits."""

    def __init__(self, limits: PolicyLimits, clock=time.monotonic):
        self.limits = limits
        self._clock = clock
        self._started_at = clock()
        self.steps = 0
        self.diff_lines = 0
        self.files_modified: Set[str] = set()

    @property
    def elapsed_minutes(self) -> float:
        return (self._clock() - self._started_at) / 60

    def _exceeded(self, limit_name: str, current: float, maximum: float) -> LimitExceeded:
        logger.warning(
            "policy_limit_exceeded",
            limit=limit_name,
            current=current,
            maximum=maximum,
        )
        return LimitExceeded(limit_name=limit_name, current=current, maximum=maximum)

    def check_runtime(self) -> None:
        """Raise if the run has been going longer than max_runtime_minutes."""
        elapsed = round(self.elapsed_minutes, 2)
        if elapsed > self.limits.max_runtime_minutes:
            raise self._exceeded("max_runtime_minutes", elapsed, self.limits.max_runtime_minutes)

    def record_step(self) -> None:
        """Count one agent operation; raises before the limit is passed."""
        self.check_runtime()
        if self.steps + 1 > self.limits.max_steps_per_run:
            raise self._exceeded("max_steps_per_run", self.steps + 1, self.limits.max_steps_per_run)
        self.steps += 1

    def check_write(self, path: str, diff_lines: int) -> None:
        """Raise if writing ``path`` would exceed the file or diff budget.

        Counters are not updated; call ``record_write`` after the write
        actually happened.
        """
        files = len(self.files_modified | {path})
        if files > self.limits.max_files_per_run:
            raise self._exceeded("max_files_per_run", files, self.limits.max_files_per_run)
        lines = self.diff_lines + diff_lines
        if lines > self.limits.max_diff_lines_per_run:
            raise self._exceeded("max_diff_lines_per_run", lines, self.limits.max_diff_lines_per_run)

    def record_write(self, path: str, diff_lines: int) -> None:
        self.files_modified.add(path)
        self.diff_lines += diff_lines

    def snapshot(self) -> Dict[str, Optional[float]]:
        """Counter values for failure comments and logs."""
        return {
            "steps": self.steps,
            "files_modified": len(self.files_modified),
            "diff_lines": self.diff_lines,
            "elapsed_minutes": round(self.elapsed_minutes, 2),
        }
