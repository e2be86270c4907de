"""Policy gate: rule set, pure evaluation and caller-side limits."""

from .gate import SHELL_OPERATORS, command_matches_entry, evaluate, match_glob
from .limits import LimitTracker, count_diff_lines
from .loader import default_policy, load_policy, save_policy
from .models import Decision, Operation, OperationKind, Policy, PolicyDecision, PolicyLimits

__all__ = [
    "Decision",
    "LimitTracker",
    "Operation",
    "OperationKind",
    "Policy",
    "PolicyDecision",
    "PolicyLimits",
    "SHELL_OPERATORS",
    "command_matches_entry",
    "count_diff_lines",
    "default_policy",
    "evaluate",
    "load_policy",
    "match_glob",
    "save_policy",
]
