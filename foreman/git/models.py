"""Pydantic models for the branch orchestrator.

Persisted records (flat tables keyed by id):
    TaskBranchMapping, OperationLogEntry, ReviewBranchRecord, PendingMerge

Results (returned, never raised):
    GitResult, BranchResult, MergeResult, SafetyCheckResult

Snapshots:
    GitStatus, BranchInfo, ConflictInfo
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class ConflictType(str, Enum):
    """How a path collided during a merge."""
    CONTENT = "content"
    BINARY = "binary"
    DELETE_MODIFY = "delete_modify"
    ADD_ADD = "add_add"


class ConflictStatus(str, Enum):
    UNRESOLVED = "unresolved"
    RESOLVED = "resolved"
    SKIPPED = "skipped"


class SafetyOperation(str, Enum):
    """Operations that get a pre-flight safety check."""
    CHECKOUT = "checkout"
    MERGE = "merge"
    DELETE = "delete"
    PUSH = "push"
    FORCE_PUSH = "force_push"
    REBASE = "rebase"


class GitResult(BaseModel):
    """Outcome of one git subprocess call."""

    success: bool
    command: str = Field(..., description="Command line as run, for logs")
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    error: Optional[str] = Field(default=None, description="Failure summary")
    duration_ms: int = 0
    attempts: int = 1


class GitStatus(BaseModel):
    """Snapshot of the working tree."""

    branch: Optional[str] = None
    is_clean: bool = True
    staged: int = 0
    modified: int = 0
    untracked: int = 0
    conflicted: int = 0
    ahead: int = 0
    behind: int = 0
    is_merging: bool = False
    is_rebasing: bool = False


class BranchInfo(BaseModel):
    name: str
    commit: str
    last_commit_date: str = ""
    last_commit_message: str = ""
    is_current: bool = False


class ConflictInfo(BaseModel):
    """One file left unmerged by a conflicted merge."""

    file_path: str
    conflict_type: ConflictType = ConflictType.CONTENT
    ours_content: Optional[str] = None
    theirs_content: Optional[str] = None
    base_content: Optional[str] = None
    suggested_resolution: Optional[str] = Field(
        default=None, description="'ours', 'theirs' or a hint for manual edits"
    )
    status: ConflictStatus = ConflictStatus.UNRESOLVED


class TaskBranchMapping(BaseModel):
    """Persisted link between a task and its branch.

    At most one mapping per task may be unmerged. Merged mappings are
    kept for audit.
    """

    id: str = Field(default_factory=_new_id)
    task_id: str = Field(..., description="Owning task ID")
    branch_name: str
    created_at: datetime = Field(default_factory=datetime.now)
    base_commit_hash: str = Field(..., description="Commit the branch started from")
    head_commit_hash: Optional[str] = None
    is_checked_out: bool = False
    is_merged: bool = False
    merge_commit_hash: Optional[str] = None
    merged_to: Optional[str] = Field(default=None, description="'review' or the main branch")
    merged_at: Optional[datetime] = None


class OperationLogEntry(BaseModel):
    """Immutable record of one state-changing git command."""

    id: str = Field(default_factory=_new_id)
    timestamp: datetime = Field(default_factory=datetime.now)
    operation: str = Field(..., description="Orchestrator verb, e.g. 'merge_task_to_main'")
    command: str
    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    initiator: str = Field(default="system", description="'runner', 'operator' or 'system'")
    duration_ms: int = 0
    task_id: Optional[str] = None


class ReviewBranchRecord(BaseModel):
    """Summary of what has landed on the review branch."""

    name: str
    merged_task_ids: List[str] = Field(default_factory=list)
    head_commit_hash: Optional[str] = None
    last_merge_at: Optional[datetime] = None


class PendingMerge(BaseModel):
    """A conflicted merge waiting for finalize_merge or abort_merge."""

    source_branch: str
    target_branch: str
    task_ids: List[str] = Field(default_factory=list)
    merged_to: str
    started_at: datetime = Field(default_factory=datetime.now)
    conflicted_files: List[str] = Field(default_factory=list)


class BranchResult(BaseModel):
    """Outcome of a non-merge orchestrator verb."""

    success: bool
    mapping: Optional[TaskBranchMapping] = None
    error: Optional[str] = None
    stderr: str = ""


class MergeResult(BaseModel):
    """Outcome of a merge verb.

    ``had_conflicts`` is a state, not an error: ``conflicts`` lists one
    entry per unmerged file and the working tree is left mid-merge.
    """

    success: bool
    source_branch: str
    target_branch: str
    had_conflicts: bool = False
    conflicts: List[ConflictInfo] = Field(default_factory=list)
    merge_commit_hash: Optional[str] = None
    error: Optional[str] = None
    stderr: str = ""


class SafetyCheckResult(BaseModel):
    safe: bool
    warnings: List[str] = Field(default_factory=list)
    blockers: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
