"""Policy gate: the single decision point for agent-proposed operations.

``evaluate`` is a pure function of (operation, policy). It performs no
I/O, keeps no state and is safe to call concurrently. Callers log the
decision; the gate itself does not.

Path precedence:
    1. Paths escaping the project root are denied.
    2. ``blocked_paths`` / ``blocked_patterns`` win over any allow entry.
    3. A non-empty ``allowed_paths`` denies everything it does not match.
    4. Writes larger than ``limits.max_file_size_bytes`` are denied.

Command precedence:
    1. ``blocked_commands`` substring match denies.
    2. Shell control operators deny (commands run without a shell).
    3. A non-empty ``allowed_commands`` denies unmatched programs.
    4. ``confirm_commands`` prefix match requires confirmation.
    5. Otherwise allow.
"""

import fnmatch
import posixpath
from typing import Iterable, List, Optional

from ..security import normalize_relative_path
from .models import Decision, Operation, OperationKind, Policy, PolicyDecision

# Operators a shell would interpret. Commands are exec'd without one.
SHELL_OPERATORS = ("&&", "||", ";", "|", "`", "$(", ">", "<")


def _candidates(path: str) -> List[str]:
    """The path itself plus every parent prefix ("a/b/c" -> a, a/b, a/b/c)."""
    parts = path.split("/")
    return ["/".join(parts[: i + 1]) for i in range(len(parts))]


def match_glob(path: str, pattern: str) -> bool:
    """Match a project-relative POSIX path against a glob.

    ``*`` crosses directory separators (fnmatch semantics), ``dir/**``
    also matches ``dir`` itself, a leading ``**/`` also matches at the
    root, and a pattern matching any parent directory covers everything
    beneath it.
    """
    pattern = pattern.strip().replace("\\", "/").rstrip("/")
    if not pattern:
        return False
    if pattern.endswith("/**") and path == pattern[:-3]:
        return True
    patterns = [pattern]
    if pattern.startswith("**/"):
        patterns.append(pattern[3:])
    for candidate in _candidates(path):
        for p in patterns:
            if fnmatch.fnmatchcase(candidate, p):
                return True
    return False


def _first_match(path: str, patterns: Iterable[str]) -> Optional[str]:
    for pattern in patterns:
        if match_glob(path, pattern):
            return pattern
    return None


def _first_basename_match(path: str, patterns: Iterable[str]) -> Optional[str]:
    basename = posixpath.basename(path)
    for pattern in patterns:
        if fnmatch.fnmatchcase(basename, pattern) or match_glob(path, pattern):
            return pattern
    return None


def _evaluate_path(operation: Operation, policy: Policy) -> PolicyDecision:
    path = normalize_relative_path(operation.target)
    if path is None:
        return PolicyDecision(
            decision=Decision.DENY,
            reason=f"Path '{operation.target}' is outside the project root",
            matched_rule="project_root",
        )

    if path == "":
        if operation.kind == OperationKind.FILE_READ:
            return PolicyDecision(decision=Decision.ALLOW, reason="Project root")
        return PolicyDecision(
            decision=Decision.DENY,
            reason="Cannot write to the project root itself",
            matched_rule="project_root",
        )

    blocked = _first_match(path, policy.blocked_paths)
    if blocked is not None:
        return PolicyDecision(
            decision=Decision.DENY,
            reason=f"Path '{path}' matches blocked path '{blocked}'",
            matched_rule=f"blocked_paths: {blocked}",
        )

    blocked = _first_basename_match(path, policy.blocked_patterns)
    if blocked is not None:
        return PolicyDecision(
            decision=Decision.DENY,
            reason=f"Path '{path}' matches blocked pattern '{blocked}'",
            matched_rule=f"blocked_patterns: {blocked}",
        )

    allowed_rule = None
    if policy.allowed_paths:
        allowed = _first_match(path, policy.allowed_paths)
        if allowed is None:
            return PolicyDecision(
                decision=Decision.DENY,
                reason=f"Path '{path}' is not in allowed paths",
                matched_rule="allowed_paths",
            )
        allowed_rule = f"allowed_paths: {allowed}"

    if (
        operation.kind == OperationKind.FILE_WRITE
        and operation.size_bytes is not None
        and operation.size_bytes > policy.limits.max_file_size_bytes
    ):
        return PolicyDecision(
            decision=Decision.DENY,
            reason=(
                f"Write of {operation.size_bytes} bytes exceeds max file size "
                f"{policy.limits.max_file_size_bytes}"
            ),
            matched_rule="limits: max_file_size_bytes",
        )

    return PolicyDecision(decision=Decision.ALLOW, reason="Path permitted", matched_rule=allowed_rule)


def _normalize_command(command: str) -> str:
    return " ".join(command.split())


def command_matches_entry(command: str, entry: str) -> bool:
    """Whether a normalized command is covered by an allow/confirm entry.

    Single-word entries match the program name (``npm`` covers
    ``npm test`` and ``/usr/bin/npm test``); multi-word entries match as
    a whole-word prefix (``git push`` covers ``git push origin``).
    """
    entry = _normalize_command(entry).lower()
    lowered = command.lower()
    if not entry or not lowered:
        return False
    if " " in entry:
        return lowered == entry or lowered.startswith(entry + " ")
    program = lowered.split(" ", 1)[0]
    return program == entry or program.endswith("/" + entry)


def _evaluate_command(operation: Operation, policy: Policy) -> PolicyDecision:
    command = _normalize_command(operation.target)
    if not command:
        return PolicyDecision(decision=Decision.DENY, reason="Empty command", matched_rule="command")

    lowered = command.lower()
    for entry in policy.blocked_commands:
        needle = _normalize_command(entry).lower()
        if needle and needle in lowered:
            return PolicyDecision(
                decision=Decision.DENY,
                reason=f"Command matches blocked entry '{entry}'",
                matched_rule=f"blocked_commands: {entry}",
            )

    for op in SHELL_OPERATORS:
        if op in command:
            return PolicyDecision(
                decision=Decision.DENY,
                reason=f"Shell operator '{op}' is not supported; run one program per command",
                matched_rule="shell_operators",
            )

    allowed_rule = None
    if policy.allowed_commands:
        allowed = next(
            (a for a in policy.allowed_commands if command_matches_entry(command, a)), None
        )
        if allowed is None:
            program = command.split(" ", 1)[0]
            return PolicyDecision(
                decision=Decision.DENY,
                reason=f"Command '{program}' is not in allowed commands",
                matched_rule="allowed_commands",
            )
        allowed_rule = f"allowed_commands: {allowed}"

    for entry in policy.confirm_commands:
        if command_matches_entry(command, entry):
            return PolicyDecision(
                decision=Decision.REQUIRE_CONFIRMATION,
                reason=f"Command matches '{entry}' and needs operator approval",
                matched_rule=f"confirm_commands: {entry}",
            )

    return PolicyDecision(decision=Decision.ALLOW, reason="Command permitted", matched_rule=allowed_rule)


def evaluate(operation: Operation, policy: Policy) -> PolicyDecision:
    """Decide whether an agent-proposed operation may proceed.

    Args:
        operation: The proposed file read/write or shell command.
        policy: The project's rule set for the current run.

    Returns:
        PolicyDecision with allow, deny or require_confirmation, the
        human-readable reason and the rule that decided it.
    """
    if operation.kind == OperationKind.SHELL_COMMAND:
        return _evaluate_command(operation, policy)
    return _evaluate_path(operation, policy)
