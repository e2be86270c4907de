"""Tool executor: the only code that touches files or runs commands for the agent.

Every file read, file write and shell command is first evaluated by
the policy gate. A denial spawns nothing and comes back to the model
as a ``Policy denied: ...`` tool result. Commands run through
``shlex.split`` and ``create_subprocess_exec`` with the project root as
cwd; no shell is ever involved.

Terminal tools (task_complete, task_blocked, task_failed) have no side
effects; they record a ``TaskSignal`` the loop picks up.
"""

import asyncio
import re
import shlex
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from ..exceptions import PolicyViolation
from ..policy import (
    Decision,
    LimitTracker,
    Operation,
    OperationKind,
    Policy,
    PolicyDecision,
    count_diff_lines,
    evaluate,
)
from ..security import normalize_relative_path, redact_secrets, resolve_within_root
from .cancellation import CancellationToken
from .models import SignalKind, TaskSignal, ToolCall, ToolResult, ToolSpec

logger = structlog.get_logger("foreman.agent")

ConfirmCallback = Callable[[Operation, PolicyDecision], Awaitable[bool]]

DEFAULT_COMMAND_TIMEOUT = 120  # seconds
MAX_READ_CHARS = 100_000
MAX_COMMAND_OUTPUT_CHARS = 20_000
MAX_SEARCH_FILE_BYTES = 1024 * 1024
DEFAULT_LIST_LIMIT = 200
DEFAULT_SEARCH_LIMIT = 50

# Never listed or searched, whatever the policy says
_SKIP_DIRS = {".git", "node_modules", "__pycache__"}

TERMINAL_TOOLS = ("task_complete", "task_blocked", "task_failed")


def _spec(name: str, description: str, properties: Dict[str, Any], required: List[str]) -> ToolSpec:
    return ToolSpec(
        name=name,
        description=description,
        parameters={"type": "object", "properties": properties, "required": required},
    )


TOOL_SPECS: List[ToolSpec] = [
    _spec(
        "list_files",
        "List files matching a glob pattern in the project",
        {
            "glob": {"type": "string", "description": 'Glob pattern, e.g. "src/**/*.ts"'},
            "max_results": {"type": "integer", "description": "Maximum number of results"},
        },
        ["glob"],
    ),
    _spec(
        "read_file",
        "Read the contents of a file",
        {"path": {"type": "string", "description": "Path relative to the project root"}},
        ["path"],
    ),
    _spec(
        "search",
        "Search file contents with a regular expression",
        {
            "query": {"type": "string", "description": "Regex pattern"},
            "glob": {"type": "string", "description": "Optional glob to filter files"},
            "max_results": {"type": "integer", "description": "Maximum number of matches"},
        },
        ["query"],
    ),
    _spec(
        "write_file",
        "Create or overwrite a file",
        {
            "path": {"type": "string", "description": "Path relative to the project root"},
            "content": {"type": "string", "description": "Full new file content"},
        },
        ["path", "content"],
    ),
    _spec(
        "run_command",
        "Run one program in the project root (no shell operators)",
        {
            "command": {"type": "string", "description": 'e.g. "npm test"'},
            "timeout": {"type": "integer", "description": "Seconds before the command is killed"},
        },
        ["command"],
    ),
    _spec(
        "task_complete",
        "Finish the task and report how each acceptance criterion was met",
        {
            "summary": {"type": "string"},
            "acceptance_results": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "criterion": {"type": "string"},
                        "passed": {"type": "boolean"},
                        "evidence": {"type": "string"},
                    },
                },
            },
        },
        ["summary"],
    ),
    _spec(
        "task_blocked",
        "Stop because a human decision is needed",
        {"reason": {"type": "string"}, "question": {"type": "string"}},
        ["reason", "question"],
    ),
    _spec(
        "task_failed",
        "Stop because the task cannot be completed",
        {
            "reason": {"type": "string"},
            "next_steps": {"type": "array", "items": {"type": "string"}},
        },
        ["reason"],
    ),
]


class ToolExecutor:
    """Executes agent tool calls for one task run behind the policy gate.

    Args:
        project_root: Working tree every path and command is confined to.
        policy: The run's policy copy.
        limits: Counters for the run; a fresh tracker if omitted.
        run_log_path: File that receives command transcripts.
        command_timeout: Default seconds before run_command kills a process.
        confirm: Async approver for require_confirmation decisions.
            Without one, such operations are refused.
        state_dir_name: Project-local state directory, hidden from listings.
    """

    def __init__(
        self,
        project_root: Path,
        policy: Policy,
        *,
        limits: Optional[LimitTracker] = None,
        run_log_path: Optional[Path] = None,
        command_timeout: int = DEFAULT_COMMAND_TIMEOUT,
        confirm: Optional[ConfirmCallback] = None,
        state_dir_name: str = ".foreman",
    ):
        self.project_root = Path(project_root).resolve()
        self.policy = policy
        self.limits = limits or LimitTracker(policy.limits)
        self.run_log_path = run_log_path
        self.command_timeout = command_timeout
        self.confirm = confirm
        self.state_dir_name = state_dir_name
        self.signal: Optional[TaskSignal] = None
        self._handlers = {
            "list_files": self._list_files,
            "read_file": self._read_file,
            "search": self._search,
            "write_file": self._write_file,
            "run_command": self._run_command,
            "task_complete": self._task_complete,
            "task_blocked": self._task_blocked,
            "task_failed": self._task_failed,
        }

    @property
    def specs(self) -> List[ToolSpec]:
        return list(TOOL_SPECS)

    async def execute(
        self, call: ToolCall, cancel_token: Optional[CancellationToken] = None,
    ) -> ToolResult:
        """Run one tool call.

        Policy denials and bad arguments come back as failed results.
        ``LimitExceeded`` propagates: it ends the run.
        """
        self.limits.record_step()

        handler = self._handlers.get(call.name)
        if handler is None:
            return ToolResult(
                call_id=call.id, name=call.name, success=False,
                output=f"Unknown tool '{call.name}'. Available: {', '.join(self._handlers)}",
            )

        try:
            output = await handler(call.arguments, cancel_token)
        except PolicyViolation as e:
            logger.info(
                "tool_denied",
                tool=call.name,
                decision=e.decision,
                rule=e.rule,
                operation=e.operation,
            )
            return ToolResult(
                call_id=call.id, name=call.name, success=False, denied=True,
                output=f"Policy denied: {e.message}",
            )
        except (KeyError, TypeError, ValueError) as e:
            return ToolResult(
                call_id=call.id, name=call.name, success=False,
                output=f"Invalid arguments for {call.name}: {e}",
            )
        except OSError as e:
            logger.warning("tool_os_error", tool=call.name, error=str(e))
            return ToolResult(call_id=call.id, name=call.name, success=False, output=f"Error: {e}")

        if isinstance(output, ToolResult):
            return output.model_copy(update={"call_id": call.id, "name": call.name})
        return ToolResult(call_id=call.id, name=call.name, success=True, output=output)

    # ---- Gate ----

    async def _check(
        self, kind: OperationKind, target: str, size_bytes: Optional[int] = None,
    ) -> PolicyDecision:
        operation = Operation(kind=kind, target=target, size_bytes=size_bytes)
        decision = evaluate(operation, self.policy)
        logger.debug(
            "policy_decision",
            kind=kind.value,
            target=target[:200],
            decision=decision.decision.value,
            rule=decision.matched_rule,
        )
        described = f"{kind.value} {target}"
        if decision.decision == Decision.DENY:
            raise PolicyViolation(
                decision.reason, decision="deny", operation=described, rule=decision.matched_rule,
            )
        if decision.decision == Decision.REQUIRE_CONFIRMATION:
            if self.confirm is None:
                raise PolicyViolation(
                    f"{decision.reason}; no operator is available to approve it",
                    decision="require_confirmation",
                    operation=described,
                    rule=decision.matched_rule,
                )
            approved = await self.confirm(operation, decision)
            logger.info("operation_confirmation", target=target[:200], approved=approved)
            if not approved:
                raise PolicyViolation(
                    "Operator declined the operation",
                    decision="require_confirmation",
                    operation=described,
                    rule=decision.matched_rule,
                )
        return decision

    def _resolve(self, rel: str) -> Path:
        resolved = resolve_within_root(self.project_root, rel)
        if resolved is None:
            raise PolicyViolation(
                f"Path '{rel}' resolves outside the project root",
                operation=rel,
                rule="project_root",
            )
        return resolved

    async def _resolve_checked(
        self, rel: str, kind: OperationKind, size_bytes: Optional[int] = None,
    ) -> Path:
        """Resolve ``rel`` and gate the real target when a symlink redirects it."""
        path = self._resolve(rel)
        real = path.relative_to(self.project_root).as_posix()
        if real != rel:
            logger.info("symlink_target_checked", path=rel, target=real)
            await self._check(kind, real, size_bytes=size_bytes)
        return path

    def _relative(self, path: str) -> str:
        rel = normalize_relative_path(path)
        if rel is None:
            raise PolicyViolation(
                f"Path '{path}' is outside the project root", operation=path, rule="project_root",
            )
        return rel

    def _iter_files(self, pattern: str):
        """Project files matching ``pattern`` that the policy lets the agent read."""
        glob = self._relative(pattern or "**/*")
        for path in sorted(self.project_root.glob(glob or "*")):
            rel_parts = path.relative_to(self.project_root).parts
            if any(part in _SKIP_DIRS or part == self.state_dir_name for part in rel_parts):
                continue
            if path.is_symlink() or not path.is_file():
                continue
            rel = "/".join(rel_parts)
            if evaluate(Operation(kind=OperationKind.FILE_READ, target=rel), self.policy).allowed:
                yield rel, path

    def _append_run_log(self, text: str) -> None:
        if self.run_log_path is None:
            return
        self.run_log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.run_log_path, "a", encoding="utf-8") as f:
            f.write(redact_secrets(text))

    # ---- File tools ----

    async def _list_files(self, args: Dict[str, Any], cancel_token) -> str:
        limit = int(args.get("max_results") or DEFAULT_LIST_LIMIT)
        await self._check(OperationKind.FILE_READ, "")
        files = []
        for rel, _ in self._iter_files(args.get("glob", "**/*")):
            files.append(rel)
            if len(files) >= limit:
                break
        if not files:
            return "No files found"
        return "\n".join(files)

    async def _read_file(self, args: Dict[str, Any], cancel_token) -> str:
        rel = self._relative(args["path"])
        await self._check(OperationKind.FILE_READ, rel)
        path = await self._resolve_checked(rel, OperationKind.FILE_READ)
        if not path.is_file():
            return ToolResult(call_id="", name="read_file", success=False, output=f"File not found: {rel}")
        text = path.read_text(encoding="utf-8", errors="replace")
        if len(text) > MAX_READ_CHARS:
            text = text[:MAX_READ_CHARS] + f"\n\n[Truncated at {MAX_READ_CHARS} characters]"
        return text

    async def _search(self, args: Dict[str, Any], cancel_token) -> str:
        try:
            regex = re.compile(args["query"])
        except re.error as e:
            raise ValueError(f"invalid regex: {e}") from e
        limit = int(args.get("max_results") or DEFAULT_SEARCH_LIMIT)
        await self._check(OperationKind.FILE_READ, "")

        matches: List[str] = []
        for rel, path in self._iter_files(args.get("glob") or "**/*"):
            if path.stat().st_size > MAX_SEARCH_FILE_BYTES:
                continue
            text = path.read_text(encoding="utf-8", errors="replace")
            for lineno, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    matches.append(f"{rel}:{lineno}: {line.strip()[:200]}")
                    if len(matches) >= limit:
                        return "\n".join(matches)
        return "\n".join(matches) if matches else "No matches"

    async def _write_file(self, args: Dict[str, Any], cancel_token) -> str:
        rel = self._relative(args["path"])
        content = args["content"]
        if not isinstance(content, str):
            raise TypeError("content must be a string")
        size = len(content.encode("utf-8"))
        await self._check(OperationKind.FILE_WRITE, rel, size_bytes=size)
        path = await self._resolve_checked(rel, OperationKind.FILE_WRITE, size)

        old = path.read_text(encoding="utf-8", errors="replace") if path.is_file() else ""
        diff_lines = count_diff_lines(old, content)
        self.limits.check_write(rel, diff_lines)

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        self.limits.record_write(rel, diff_lines)
        logger.info("file_written", path=rel, bytes=len(content), diff_lines=diff_lines)
        return f"Wrote {len(content)} characters to {rel} ({diff_lines} lines changed)"

    # ---- Commands ----

    async def _run_command(self, args: Dict[str, Any], cancel_token: Optional[CancellationToken]):
        command = str(args["command"]).strip()
        await self._check(OperationKind.SHELL_COMMAND, command)
        argv = shlex.split(command)
        if not argv:
            raise ValueError("empty command")
        timeout = int(args.get("timeout") or self.command_timeout)

        self._append_run_log(f"$ {command}\n")
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(self.project_root),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError:
            self._append_run_log(f"[not found: {argv[0]}]\n")
            return ToolResult(call_id="", name="run_command", success=False, output=f"Command not found: {argv[0]}")

        def kill() -> None:
            if proc.returncode is None:
                proc.kill()

        unregister = cancel_token.add_callback(kill) if cancel_token else (lambda: None)
        try:
            stdout_bytes, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            kill()
            await proc.wait()
            logger.warning("command_timeout", command=command[:200], timeout=timeout)
            self._append_run_log(f"[timed out after {timeout}s]\n")
            return ToolResult(
                call_id="", name="run_command", success=False,
                output=f"Command timed out after {timeout}s",
            )
        finally:
            unregister()

        output = stdout_bytes.decode("utf-8", errors="replace")
        duration_ms = int((time.monotonic() - start) * 1000)
        self._append_run_log(f"{output}\n[exit {proc.returncode}, {duration_ms}ms]\n")

        if cancel_token is not None and cancel_token.cancelled:
            return ToolResult(call_id="", name="run_command", success=False, output="Command cancelled")

        logger.info("command_finished", command=command[:200], exit_code=proc.returncode, duration_ms=duration_ms)
        if len(output) > MAX_COMMAND_OUTPUT_CHARS:
            output = output[-MAX_COMMAND_OUTPUT_CHARS:]
            output = f"[Output truncated to last {MAX_COMMAND_OUTPUT_CHARS} characters]\n{output}"
        text = f"Exit code: {proc.returncode}\n{output}".rstrip()
        return ToolResult(call_id="", name="run_command", success=proc.returncode == 0, output=text)

    # ---- Terminal tools ----

    async def _task_complete(self, args: Dict[str, Any], cancel_token) -> str:
        results = args.get("acceptance_results") or []
        self.signal = TaskSignal(
            kind=SignalKind.COMPLETE,
            summary=str(args.get("summary", "")),
            acceptance_results=[r for r in results if isinstance(r, dict)],
        )
        return "Task marked complete"

    async def _task_blocked(self, args: Dict[str, Any], cancel_token) -> str:
        self.signal = TaskSignal(
            kind=SignalKind.BLOCKED,
            reason=str(args["reason"]),
            question=str(args.get("question") or args["reason"]),
        )
        return "Task marked blocked"

    async def _task_failed(self, args: Dict[str, Any], cancel_token) -> str:
        steps = args.get("next_steps") or []
        self.signal = TaskSignal(
            kind=SignalKind.FAILED,
            reason=str(args["reason"]),
            next_steps=[str(s) for s in steps] if isinstance(steps, list) else [str(steps)],
        )
        return "Task marked failed"
