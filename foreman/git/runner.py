"""Async wrapper around the git binary.

Every call goes through ``GitRunner.run``, which never raises for a
failed command: it returns a ``GitResult`` the caller inspects.
Calls against one project root are serialized by a per-root
``asyncio.Lock`` because git is not safe for concurrent use against
a single working tree. Known-transient failures (index.lock
contention) are retried once.
"""

import asyncio
import os
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import structlog

from .models import BranchInfo, GitResult, GitStatus

logger = structlog.get_logger("foreman.git")

# Serialize git operations per working tree (keyed by resolved root)
_git_locks: Dict[str, asyncio.Lock] = {}

NETWORK_COMMANDS = ("push", "pull", "fetch", "clone")
TRANSIENT_RETRY_DELAY = 0.5  # seconds

_TRANSIENT_PATTERNS = (
    "index.lock",
    ".lock': file exists",
    "another git process",
    "could not lock",
    "cannot lock ref",
    "unable to create",
)

# Porcelain XY codes for unmerged paths
_UNMERGED_CODES = {"DD", "AU", "UD", "UA", "DU", "AA", "UU"}


def _lock_for(project_root: Path) -> asyncio.Lock:
    key = str(project_root.resolve())
    lock = _git_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _git_locks[key] = lock
    return lock


def is_transient_failure(result: GitResult) -> bool:
    """Whether a failed command is worth one retry (lock contention)."""
    if result.success:
        return False
    text = f"{result.stderr}\n{result.error or ''}".lower()
    return any(pattern in text for pattern in _TRANSIENT_PATTERNS)


class GitRunner:
    """Runs git subcommands in one project root.

    Args:
        project_root: Working tree the commands run in.
        command_timeout: Seconds before a local command is killed.
        network_timeout: Seconds before push/pull/fetch is killed.
        git_path: git executable.
    """

    def __init__(
        self,
        project_root: Path,
        command_timeout: int = 30,
        network_timeout: int = 60,
        git_path: str = "git",
    ):
        self.project_root = Path(project_root)
        self.command_timeout = command_timeout
        self.network_timeout = network_timeout
        self.git_path = git_path

    async def run(
        self,
        *args: str,
        timeout: Optional[int] = None,
        retry_transient: bool = True,
    ) -> GitResult:
        """Run ``git <args>`` and return a structured result.

        Retries once, after a short delay, when the failure looks like
        lock contention.
        """
        result = await self._run_once(args, timeout)
        if retry_transient and is_transient_failure(result):
            logger.info(
                "git_transient_retry",
                command=result.command,
                stderr=result.stderr[:200],
            )
            await asyncio.sleep(TRANSIENT_RETRY_DELAY)
            retry = await self._run_once(args, timeout)
            retry.attempts = 2
            return retry
        return result

    async def _run_once(self, args: Sequence[str], timeout: Optional[int]) -> GitResult:
        if timeout is None:
            is_network = bool(args) and args[0] in NETWORK_COMMANDS
            timeout = self.network_timeout if is_network else self.command_timeout

        command = " ".join(["git", *args])
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0", "LC_ALL": "C"}
        start = time.monotonic()

        async with _lock_for(self.project_root):
            try:
                proc = await asyncio.create_subprocess_exec(
                    self.git_path, *args,
                    cwd=str(self.project_root),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=env,
                )
            except FileNotFoundError:
                logger.error("git_not_found", git_path=self.git_path)
                return GitResult(
                    success=False,
                    command=command,
                    exit_code=127,
                    error=f"git executable not found: {self.git_path}",
                )
            except OSError as e:
                logger.error("git_spawn_error", command=command, error=str(e))
                return GitResult(success=False, command=command, error=f"Failed to run git: {e}")

            try:
                stdout_bytes, stderr_bytes = await asyncio.wait_for(
                    proc.communicate(), timeout=timeout,
                )
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                logger.warning("git_timeout", command=command, timeout=timeout)
                return GitResult(
                    success=False,
                    command=command,
                    error=f"git timed out after {timeout}s",
                    duration_ms=int((time.monotonic() - start) * 1000),
                )

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        duration_ms = int((time.monotonic() - start) * 1000)
        success = proc.returncode == 0

        logger.debug(
            "git_command",
            command=command,
            exit_code=proc.returncode,
            duration_ms=duration_ms,
        )
        return GitResult(
            success=success,
            command=command,
            stdout=stdout,
            stderr=stderr,
            exit_code=proc.returncode,
            error=None if success else (stderr.strip() or stdout.strip() or f"exit {proc.returncode}"),
            duration_ms=duration_ms,
        )

    # ---- Read-only queries ----

    async def rev_parse(self, ref: str = "HEAD") -> Optional[str]:
        """Full commit hash for a ref, or None if it does not resolve."""
        result = await self.run("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")
        if not result.success:
            return None
        return result.stdout.strip() or None

    async def branch_exists(self, name: str) -> bool:
        result = await self.run("show-ref", "--verify", "--quiet", f"refs/heads/{name}")
        return result.success

    async def current_branch(self) -> Optional[str]:
        result = await self.run("symbolic-ref", "--quiet", "--short", "HEAD")
        if not result.success:
            return None
        return result.stdout.strip() or None

    async def git_dir(self) -> Path:
        result = await self.run("rev-parse", "--git-dir")
        value = result.stdout.strip() if result.success else ".git"
        path = Path(value)
        return path if path.is_absolute() else self.project_root / path

    async def is_merge_in_progress(self) -> bool:
        return (await self.git_dir() / "MERGE_HEAD").exists()

    async def get_status(self) -> GitStatus:
        """Parse ``git status --porcelain=v1 --branch`` into a GitStatus."""
        result = await self.run("status", "--porcelain=v1", "--branch")
        status = GitStatus()
        if not result.success:
            return status

        for line in result.stdout.splitlines():
            if line.startswith("## "):
                _parse_branch_header(line[3:], status)
                continue
            if len(line) < 3:
                continue
            code = line[:2]
            if code == "??":
                status.untracked += 1
            elif code in _UNMERGED_CODES:
                status.conflicted += 1
            else:
                if code[0] not in (" ", "?"):
                    status.staged += 1
                if code[1] not in (" ", "?"):
                    status.modified += 1

        status.is_clean = not (status.staged or status.modified or status.untracked or status.conflicted)
        git_dir = await self.git_dir()
        status.is_merging = (git_dir / "MERGE_HEAD").exists()
        status.is_rebasing = (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists()
        return status

    async def list_branches(self) -> List[BranchInfo]:
        result = await self.run(
            "for-each-ref",
            "--format=%(refname:short)|%(objectname:short)|%(committerdate:iso)|%(subject)|%(HEAD)",
            "refs/heads/",
        )
        branches: List[BranchInfo] = []
        if not result.success:
            return branches
        for line in result.stdout.splitlines():
            parts = line.split("|")
            if len(parts) < 5:
                continue
            name, commit, date = parts[0], parts[1], parts[2]
            head = parts[-1]
            subject = "|".join(parts[3:-1])
            branches.append(BranchInfo(
                name=name,
                commit=commit,
                last_commit_date=date,
                last_commit_message=subject,
                is_current=head.strip() == "*",
            ))
        return branches

    async def unmerged_files(self) -> List[str]:
        result = await self.run("diff", "--name-only", "--diff-filter=U")
        if not result.success:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def unmerged_stages(self, path: str) -> List[int]:
        """Index stages present for an unmerged path (1=base, 2=ours, 3=theirs)."""
        result = await self.run("ls-files", "-u", "--", path)
        stages = set()
        for line in result.stdout.splitlines():
            # "<mode> <object> <stage>\t<path>"
            meta = line.split("\t", 1)[0].split()
            if len(meta) == 3 and meta[2].isdigit():
                stages.add(int(meta[2]))
        return sorted(stages)

    async def show_stage(self, stage: int, path: str) -> Optional[str]:
        result = await self.run("show", f":{stage}:{path}", retry_transient=False)
        if not result.success:
            return None
        return result.stdout


def _parse_branch_header(header: str, status: GitStatus) -> None:
    """Parse "main...origin/main [ahead 1, behind 2]" style headers."""
    if header.startswith("No commits yet on "):
        status.branch = header[len("No commits yet on "):].strip()
        return
    if header.startswith("HEAD (no branch)"):
        status.branch = None
        return
    branch_part, _, tracking = header.partition(" [")
    status.branch = branch_part.split("...", 1)[0].strip()
    for item in tracking.rstrip("]").split(","):
        item = item.strip()
        if item.startswith("ahead "):
            status.ahead = int(item[6:])
        elif item.startswith("behind "):
            status.behind = int(item[7:])
