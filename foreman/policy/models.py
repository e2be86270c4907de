"""Pydantic models for the policy gate.

Enums:
    OperationKind, Decision

Models:
    PolicyLimits, Policy, Operation, PolicyDecision
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class OperationKind(str, Enum):
    """Kind of side effect an agent proposes."""
    FILE_READ = "file_read"
    FILE_WRITE = "file_write"
    SHELL_COMMAND = "shell_command"


class Decision(str, Enum):
    """Outcome of a policy evaluation."""
    ALLOW = "allow"
    DENY = "deny"
    REQUIRE_CONFIRMATION = "require_confirmation"


class PolicyLimits(BaseModel):
    """Numeric ceilings for a single task run.

    Everything except ``max_file_size_bytes`` is enforced by the caller
    through ``LimitTracker``; file size is checked per write by the gate.
    """

    max_steps_per_run: int = Field(default=100, ge=1, description="Tool calls per task run")
    max_files_per_run: int = Field(default=50, ge=1, description="Distinct files written per run")
    max_diff_lines_per_run: int = Field(
        default=5000, ge=1, description="Added plus removed lines per run"
    )
    max_runtime_minutes: float = Field(default=30, gt=0, description="Wall clock per run")
    max_file_size_bytes: int = Field(
        default=10 * 1024 * 1024, ge=1, description="Largest single file write"
    )


class Policy(BaseModel):
    """Declarative rule set gating every agent action in one project.

    Path globs are POSIX-style and relative to the project root.
    ``blocked_patterns`` are matched against the basename as well as
    the full path, so ``*.pem`` blocks key files anywhere.
    """

    model_config = ConfigDict(frozen=True)

    allowed_paths: List[str] = Field(default_factory=list, description="Allow-list globs")
    blocked_paths: List[str] = Field(default_factory=list, description="Block-list globs")
    blocked_patterns: List[str] = Field(
        default_factory=list, description="Basename globs that are always blocked"
    )
    allowed_commands: List[str] = Field(
        default_factory=list, description="Programs (or command prefixes) the agent may run"
    )
    blocked_commands: List[str] = Field(
        default_factory=list, description="Substrings that always deny a command"
    )
    confirm_commands: List[str] = Field(
        default_factory=list, description="Command prefixes that need operator approval"
    )
    limits: PolicyLimits = Field(default_factory=PolicyLimits)


class Operation(BaseModel):
    """A single side effect proposed by the agent."""

    model_config = ConfigDict(frozen=True)

    kind: OperationKind
    target: str = Field(..., description="Project-relative path or command string")
    size_bytes: Optional[int] = Field(default=None, description="Payload size for writes")


class PolicyDecision(BaseModel):
    """Result of ``evaluate``: the decision plus the rule that produced it."""

    model_config = ConfigDict(frozen=True)

    decision: Decision
    reason: str = ""
    matched_rule: Optional[str] = Field(
        default=None, description="e.g. 'blocked_paths: src/secrets/**'"
    )

    @property
    def allowed(self) -> bool:
        return self.decision == Decision.ALLOW

    @property
    def denied(self) -> bool:
        return self.decision == Decision.DENY
