"""Custom exception hierarchy for foreman.

Provides precise error classification across all subsystems, enabling
targeted error handling, retry decisions, and failure comments that can
be read without external logs.

Merge conflicts are deliberately absent: a conflicted merge is a
``MergeResult`` state, not an exception.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    """Classification of errors for retry decisions."""
    TRANSIENT = "transient"          # Worth retrying (lock contention, timeout)
    PERMANENT = "permanent"          # Not worth retrying (denied, limit hit)
    INFRASTRUCTURE = "infrastructure"  # Binary not found, env issues


class ForemanError(Exception):
    """Base exception for all foreman errors.

    Attributes:
        message: Human-readable error description.
        category: Error classification for retry/escalation decisions.
        module: Originating module name (e.g. "git.orchestrator").
        context: Arbitrary key-value pairs for structured logging.
    """

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.message = message
        self.category = category
        self.module = module
        self.context = context
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether this error is worth retrying."""
        return self.category == ErrorCategory.TRANSIENT

    def __str__(self) -> str:
        parts = [self.message or self.__class__.__name__]
        if self.module:
            parts.append(f"[module={self.module}]")
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"({ctx})")
        return " ".join(parts)

    def __repr__(self) -> str:
        cls = self.__class__.__name__
        return (
            f"{cls}({self.message!r}, category={self.category.value!r}, "
            f"module={self.module!r})"
        )


# ---------------------------------------------------------------------------
# Policy exceptions
# ---------------------------------------------------------------------------

class PolicyViolation(ForemanError):
    """An agent-proposed operation was denied by the policy gate.

    Always recoverable: the denial is reported back to the agent as a
    tool result and never stops the runner.

    Attributes:
        decision: The gate decision ("deny", or "require_confirmation" when
            no operator approved it).
        operation: Description of the denied operation.
        rule: The rule that produced the denial (e.g. "blocked_commands: rm -rf").
    """

    def __init__(
        self,
        message: str = "",
        *,
        decision: str = "deny",
        operation: Optional[str] = None,
        rule: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.decision = decision
        self.operation = operation
        self.rule = rule
        super().__init__(
            message, category=category, module=module or "policy", **context
        )


class LimitExceeded(ForemanError):
    """A numeric policy limit was hit during a task run.

    Fatal to the current task's run and never retried.

    Attributes:
        limit_name: Name of the limit (e.g. "max_steps_per_run").
        current: Counter value that would have exceeded the limit.
        maximum: Configured maximum.
    """

    def __init__(
        self,
        message: str = "",
        *,
        limit_name: str = "",
        current: float = 0,
        maximum: float = 0,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.limit_name = limit_name
        self.current = current
        self.maximum = maximum
        super().__init__(
            message or f"Limit exceeded: {limit_name} ({current} > {maximum})",
            category=category,
            module=module or "policy.limits",
            **context,
        )


# ---------------------------------------------------------------------------
# Git exceptions
# ---------------------------------------------------------------------------

class GitOperationFailure(ForemanError):
    """A git subprocess exited non-zero where the caller needs it to succeed.

    The orchestrator itself never raises this; it returns structured
    results. The task executor raises it when a branch step it depends
    on fails.

    Attributes:
        command: The git command line that failed.
        exit_code: Process exit code (if available).
        stderr: Captured stderr text.
    """

    def __init__(
        self,
        message: str = "",
        *,
        command: Optional[str] = None,
        exit_code: Optional[int] = None,
        stderr: str = "",
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(
            message, category=category, module=module or "git", **context
        )


# ---------------------------------------------------------------------------
# Provider exceptions
# ---------------------------------------------------------------------------

class ProviderFailure(ForemanError):
    """The execution provider errored or was cancelled.

    Attributes:
        partial_output: Streamed text received before the failure.
        cancelled: True when the failure is a cooperative cancellation.
    """

    def __init__(
        self,
        message: str = "",
        *,
        partial_output: str = "",
        cancelled: bool = False,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.partial_output = partial_output
        self.cancelled = cancelled
        super().__init__(
            message, category=category, module=module or "agent.provider", **context
        )


# ---------------------------------------------------------------------------
# Task store exceptions
# ---------------------------------------------------------------------------

class TaskStoreError(ForemanError):
    """Error reading or mutating the task store.

    Attributes:
        task_id: ID of the task involved (if known).
    """

    def __init__(
        self,
        message: str = "",
        *,
        task_id: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.task_id = task_id
        super().__init__(
            message, category=category, module=module or "autonomous.store", **context
        )


# ---------------------------------------------------------------------------
# Configuration exceptions
# ---------------------------------------------------------------------------

class ConfigurationError(ForemanError):
    """Invalid or missing configuration.

    Defaults to INFRASTRUCTURE because config issues are environmental
    and won't resolve by retrying.
    """

    def __init__(
        self,
        message: str = "",
        *,
        setting_name: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.INFRASTRUCTURE,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.setting_name = setting_name
        super().__init__(
            message, category=category, module=module or "config", **context
        )
