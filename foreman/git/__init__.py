"""Per-task branch orchestration over the git binary."""

from .models import (
    BranchInfo,
    BranchResult,
    ConflictInfo,
    ConflictStatus,
    ConflictType,
    GitResult,
    GitStatus,
    MergeResult,
    OperationLogEntry,
    PendingMerge,
    ReviewBranchRecord,
    SafetyCheckResult,
    SafetyOperation,
    TaskBranchMapping,
)
from .orchestrator import BranchOrchestrator, branch_name_for, slugify
from .runner import GitRunner, is_transient_failure
from .state import GitStateStore

__all__ = [
    "BranchInfo",
    "BranchOrchestrator",
    "BranchResult",
    "ConflictInfo",
    "ConflictStatus",
    "ConflictType",
    "GitResult",
    "GitRunner",
    "GitStateStore",
    "GitStatus",
    "MergeResult",
    "OperationLogEntry",
    "PendingMerge",
    "ReviewBranchRecord",
    "SafetyCheckResult",
    "SafetyOperation",
    "TaskBranchMapping",
    "branch_name_for",
    "is_transient_failure",
    "slugify",
]
