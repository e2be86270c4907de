"""Per-task branch lifecycle on top of GitRunner.

State machine per task:
    none → created → (checked out ↔ detached) → merged to review? → merged to main

Every verb returns a result model; none of them raise for git
failures. Every state-changing git command is appended to the
operation log. A conflicted merge is left in the working tree with a
``PendingMerge`` record until the caller runs ``finalize_merge`` or
``abort_merge``; nothing here completes a merge on its own.

Classes:
    BranchOrchestrator: The verbs exposed to the runner and the host.

Functions:
    slugify, branch_name_for
"""

import asyncio
import re
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import structlog

from ..config import Config, get_config
from ..security import normalize_relative_path, resolve_within_root
from .models import (
    BranchInfo,
    BranchResult,
    ConflictInfo,
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
from .runner import GitRunner
from .state import GitStateStore

logger = structlog.get_logger("foreman.git")

MAX_SLUG_LENGTH = 50


def slugify(text: str) -> str:
    """Lowercase, collapse non-alphanumerics to '-', trim, cap at 50 chars."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    slug = slug[:MAX_SLUG_LENGTH].strip("-")
    return slug or "task"


def branch_name_for(convention: str, task_id: str, title: str) -> str:
    """Fill a branch template's {task_id} and {slug} placeholders."""
    safe_id = re.sub(r"[^A-Za-z0-9._-]+", "-", str(task_id)).strip("-") or "task"
    return convention.replace("{task_id}", safe_id).replace("{slug}", slugify(title))


class BranchOrchestrator:
    """Drives git for one project root and persists the task→branch map.

    Args:
        project_root: The repository's working tree.
        config: Config for branch names, protected branches and timeouts.
        runner: Optional GitRunner (tests inject one).
        store: Optional GitStateStore (tests inject one).
    """

    def __init__(
        self,
        project_root: Path,
        config: Optional[Config] = None,
        runner: Optional[GitRunner] = None,
        store: Optional[GitStateStore] = None,
    ):
        self.config = config or get_config()
        self.project_root = Path(project_root)
        self.main_branch = self.config.git_main_branch
        self.review_branch = self.config.git_review_branch
        self.branch_convention = self.config.git_branch_convention
        self.protected_branches = list(self.config.git_protected_branches)

        self.runner = runner or GitRunner(
            self.project_root,
            command_timeout=self.config.git_command_timeout,
            network_timeout=self.config.git_network_timeout,
        )
        state_dir = self.config.state_dir(self.project_root)
        self.store = store or GitStateStore(state_dir)
        self._ensure_state_dir_ignored(state_dir)
        # Multi-command verbs must not interleave against one tree
        self._lock = asyncio.Lock()

    @staticmethod
    def _ensure_state_dir_ignored(state_dir: Path) -> None:
        state_dir.mkdir(parents=True, exist_ok=True)
        gitignore = state_dir / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text("*\n")

    # ---- Helpers ----

    async def _git(
        self,
        operation: str,
        *args: str,
        task_id: Optional[str] = None,
        initiator: str = "system",
    ) -> GitResult:
        """Run a state-changing git command and append it to the operation log."""
        result = await self.runner.run(*args)
        self.store.append_operation(OperationLogEntry(
            operation=operation,
            command=result.command,
            success=result.success,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            initiator=initiator,
            duration_ms=result.duration_ms,
            task_id=task_id,
        ))
        if not result.success:
            logger.warning(
                "git_operation_failed",
                operation=operation,
                command=result.command,
                exit_code=result.exit_code,
                stderr=result.stderr[:300],
                task_id=task_id,
            )
        return result

    def generate_branch_name(self, task_id: str, title: str) -> str:
        return branch_name_for(self.branch_convention, task_id, title)

    def get_active_mapping(self, task_id: str) -> Optional[TaskBranchMapping]:
        return self.store.get_active_mapping(task_id)

    def get_working_mapping(self, task_id: str) -> Optional[TaskBranchMapping]:
        """The active mapping, or one merged to review that has not reached main yet."""
        mapping = self.store.get_active_mapping(task_id)
        if mapping is not None:
            return mapping
        latest = self.store.get_latest_mapping(task_id)
        if latest is not None and latest.merged_to == self.review_branch:
            return latest
        return None

    def get_mappings(self, task_id: Optional[str] = None) -> List[TaskBranchMapping]:
        if task_id is not None:
            return self.store.mappings_for_task(task_id)
        return sorted(self.store.load_mappings().values(), key=lambda m: m.created_at)

    def get_operation_log(
        self, task_id: Optional[str] = None, limit: Optional[int] = 100,
    ) -> List[OperationLogEntry]:
        return self.store.read_operations(task_id=task_id, limit=limit)

    def get_review_record(self) -> Optional[ReviewBranchRecord]:
        return self.store.load_review_record()

    async def get_status(self) -> GitStatus:
        return await self.runner.get_status()

    async def list_branches(self) -> List[BranchInfo]:
        return await self.runner.list_branches()

    # ---- Safety ----

    async def run_safety_check(
        self, operation: SafetyOperation, branch: Optional[str] = None,
    ) -> SafetyCheckResult:
        """Pre-flight check before a destructive or tree-switching operation.

        Any blocker means the operation must not run.
        """
        status = await self.runner.get_status()
        warnings: List[str] = []
        blockers: List[str] = []
        suggestions: List[str] = []

        if status.is_merging:
            blockers.append("A merge is in progress")
            suggestions.append("Resolve conflicts and finalize the merge, or abort it")
        if status.is_rebasing:
            blockers.append("A rebase is in progress")
            suggestions.append("Complete or abort the rebase first")

        if operation in (SafetyOperation.DELETE, SafetyOperation.FORCE_PUSH):
            target = branch or status.branch
            if target in self.protected_branches:
                blockers.append(f"Branch '{target}' is protected")

        if operation in (SafetyOperation.CHECKOUT, SafetyOperation.MERGE) and not status.is_clean:
            warnings.append(
                f"Working tree has uncommitted changes "
                f"({status.staged} staged, {status.modified} modified, {status.untracked} untracked)"
            )
            suggestions.append("Commit or stash changes before switching branches")

        if operation == SafetyOperation.PUSH and status.behind > 0:
            warnings.append(f"Branch is {status.behind} commit(s) behind upstream")
            suggestions.append("Pull before pushing")

        result = SafetyCheckResult(
            safe=not blockers,
            warnings=warnings,
            blockers=blockers,
            suggestions=suggestions,
        )
        if blockers:
            logger.warning(
                "git_safety_blocked",
                operation=operation.value,
                branch=branch,
                blockers=blockers,
            )
        return result

    # ---- Branch lifecycle ----

    async def create_task_branch(
        self,
        task_id: str,
        title: str,
        *,
        force: bool = False,
        base_ref: Optional[str] = None,
        initiator: str = "operator",
    ) -> BranchResult:
        """Create the task's branch and record its mapping.

        Fails fast, without touching git, if the task already has an
        unmerged mapping. Fails if the branch name is taken unless
        ``force``, which resets the existing branch to the base.
        """
        async with self._lock:
            active = self.store.get_active_mapping(task_id)
            if active is not None:
                logger.warning(
                    "task_branch_already_active",
                    task_id=task_id,
                    branch=active.branch_name,
                )
                return BranchResult(
                    success=False,
                    mapping=active,
                    error=f"Task {task_id} already has unmerged branch '{active.branch_name}'",
                )

            name = self.generate_branch_name(task_id, title)
            base = base_ref or "HEAD"
            base_commit = await self.runner.rev_parse(base)
            if base_commit is None:
                return BranchResult(success=False, error=f"Cannot resolve base ref '{base}'")

            exists = await self.runner.branch_exists(name)
            if exists and not force:
                return BranchResult(success=False, error=f"Branch '{name}' already exists")

            args = ["branch", "-f", name, base_commit] if exists else ["branch", name, base_commit]
            result = await self._git(
                "create_task_branch", *args, task_id=task_id, initiator=initiator,
            )
            if not result.success:
                return BranchResult(success=False, error=result.error, stderr=result.stderr)

            mapping = TaskBranchMapping(
                task_id=task_id,
                branch_name=name,
                base_commit_hash=base_commit,
                head_commit_hash=base_commit,
            )
            self.store.save_mapping(mapping)
            logger.info(
                "task_branch_created",
                task_id=task_id,
                branch=name,
                base_commit=base_commit[:12],
                forced=exists,
            )
            return BranchResult(success=True, mapping=mapping)

    async def checkout_task_branch(self, task_id: str, *, initiator: str = "operator") -> BranchResult:
        """Check out the task's active branch; only one mapping is ever checked out."""
        async with self._lock:
            mapping = self.get_working_mapping(task_id)
            if mapping is None:
                return BranchResult(success=False, error=f"Task {task_id} has no active branch")

            safety = await self.run_safety_check(SafetyOperation.CHECKOUT, mapping.branch_name)
            if not safety.safe:
                return BranchResult(
                    success=False, mapping=mapping, error="; ".join(safety.blockers),
                )

            result = await self._git(
                "checkout_task_branch", "checkout", mapping.branch_name,
                task_id=task_id, initiator=initiator,
            )
            if not result.success:
                return BranchResult(
                    success=False, mapping=mapping, error=result.error, stderr=result.stderr,
                )

            changed = []
            for other in self.store.load_mappings().values():
                checked_out = other.id == mapping.id
                if other.is_checked_out != checked_out:
                    other.is_checked_out = checked_out
                    changed.append(other)
            self.store.save_all(changed)
            mapping.is_checked_out = True
            logger.info("task_branch_checked_out", task_id=task_id, branch=mapping.branch_name)
            return BranchResult(success=True, mapping=mapping)

    async def detach_branch_from_task(self, task_id: str, *, initiator: str = "operator") -> BranchResult:
        """Leave the task's branch (switching to main) without deleting it."""
        async with self._lock:
            mapping = self.store.get_active_mapping(task_id) or self.store.get_latest_mapping(task_id)
            if mapping is None:
                return BranchResult(success=False, error=f"Task {task_id} has no branch")
            if not mapping.is_checked_out:
                return BranchResult(success=True, mapping=mapping)

            safety = await self.run_safety_check(SafetyOperation.CHECKOUT, self.main_branch)
            if not safety.safe:
                return BranchResult(success=False, mapping=mapping, error="; ".join(safety.blockers))

            result = await self._git(
                "detach_branch_from_task", "checkout", self.main_branch,
                task_id=task_id, initiator=initiator,
            )
            if not result.success:
                return BranchResult(
                    success=False, mapping=mapping, error=result.error, stderr=result.stderr,
                )
            mapping.is_checked_out = False
            self.store.save_mapping(mapping)
            logger.info("task_branch_detached", task_id=task_id, branch=mapping.branch_name)
            return BranchResult(success=True, mapping=mapping)

    async def commit_task_changes(
        self, task_id: str, message: str, *, initiator: str = "runner",
    ) -> BranchResult:
        """Stage everything and commit on the task's checked-out branch.

        A clean tree is a successful no-op.
        """
        async with self._lock:
            mapping = self.get_working_mapping(task_id)
            if mapping is None:
                return BranchResult(success=False, error=f"Task {task_id} has no active branch")
            current = await self.runner.current_branch()
            if current != mapping.branch_name:
                return BranchResult(
                    success=False,
                    mapping=mapping,
                    error=f"Branch '{mapping.branch_name}' is not checked out (on '{current}')",
                )

            status = await self.runner.get_status()
            if status.is_clean:
                return BranchResult(success=True, mapping=mapping)

            added = await self._git("commit_task_changes", "add", "-A", task_id=task_id, initiator=initiator)
            if not added.success:
                return BranchResult(success=False, mapping=mapping, error=added.error, stderr=added.stderr)
            safe_message = message.replace("\x00", "").strip() or f"Task {task_id}"
            committed = await self._git(
                "commit_task_changes", "commit", "--no-verify", "-m", safe_message,
                task_id=task_id, initiator=initiator,
            )
            if not committed.success:
                return BranchResult(
                    success=False, mapping=mapping, error=committed.error, stderr=committed.stderr,
                )

            mapping.head_commit_hash = await self.runner.rev_parse(mapping.branch_name)
            self.store.save_mapping(mapping)
            logger.info(
                "task_changes_committed",
                task_id=task_id,
                branch=mapping.branch_name,
                head=(mapping.head_commit_hash or "")[:12],
            )
            return BranchResult(success=True, mapping=mapping)

    async def delete_task_branch(
        self, task_id: str, *, force: bool = False, initiator: str = "operator",
    ) -> BranchResult:
        """Delete the task's branch. Refuses if it is checked out or protected.

        An unmerged mapping is dropped with its branch; merged mappings
        stay for audit.
        """
        async with self._lock:
            mapping = self.store.get_active_mapping(task_id) or self.store.get_latest_mapping(task_id)
            if mapping is None:
                return BranchResult(success=False, error=f"Task {task_id} has no branch")

            current = await self.runner.current_branch()
            if mapping.is_checked_out or current == mapping.branch_name:
                return BranchResult(
                    success=False,
                    mapping=mapping,
                    error=f"Branch '{mapping.branch_name}' is checked out; detach it first",
                )

            safety = await self.run_safety_check(SafetyOperation.DELETE, mapping.branch_name)
            if not safety.safe:
                return BranchResult(success=False, mapping=mapping, error="; ".join(safety.blockers))

            result = await self._git(
                "delete_task_branch", "branch", "-D" if force else "-d", mapping.branch_name,
                task_id=task_id, initiator=initiator,
            )
            if not result.success:
                return BranchResult(
                    success=False, mapping=mapping, error=result.error, stderr=result.stderr,
                )
            if not mapping.is_merged:
                self.store.remove_mapping(mapping.id)
            logger.info("task_branch_deleted", task_id=task_id, branch=mapping.branch_name, force=force)
            return BranchResult(success=True, mapping=mapping)

    async def sync_with_git_branches(self) -> List[str]:
        """Reconcile mappings with the repository's actual branches.

        Drops unmerged mappings whose branch has disappeared and
        refreshes ``is_checked_out`` from the current HEAD.

        Returns:
            IDs of the mappings that were dropped.
        """
        async with self._lock:
            names = {b.name for b in await self.runner.list_branches()}
            current = await self.runner.current_branch()
            removed: List[str] = []
            changed: List[TaskBranchMapping] = []

            for mapping in self.store.load_mappings().values():
                if not mapping.is_merged and mapping.branch_name not in names:
                    self.store.remove_mapping(mapping.id)
                    removed.append(mapping.id)
                    logger.info(
                        "stale_mapping_removed",
                        task_id=mapping.task_id,
                        branch=mapping.branch_name,
                    )
                    continue
                checked_out = mapping.branch_name == current
                if mapping.is_checked_out != checked_out:
                    mapping.is_checked_out = checked_out
                    changed.append(mapping)

            if changed:
                self.store.save_all(changed)
            return removed

    # ---- Merging ----

    async def _collect_conflicts(self) -> List[ConflictInfo]:
        conflicts: List[ConflictInfo] = []
        for path in await self.runner.unmerged_files():
            stages = await self.runner.unmerged_stages(path)
            base = await self.runner.show_stage(1, path) if 1 in stages else None
            ours = await self.runner.show_stage(2, path) if 2 in stages else None
            theirs = await self.runner.show_stage(3, path) if 3 in stages else None

            if any(content is not None and "\x00" in content for content in (ours, theirs)):
                conflict_type = ConflictType.BINARY
            elif 1 not in stages and 2 in stages and 3 in stages:
                conflict_type = ConflictType.ADD_ADD
            elif 2 not in stages or 3 not in stages:
                conflict_type = ConflictType.DELETE_MODIFY
            else:
                conflict_type = ConflictType.CONTENT

            if ours is not None and ours == theirs:
                suggestion = "ours"
            elif base is not None and ours == base:
                suggestion = "theirs"
            elif base is not None and theirs == base:
                suggestion = "ours"
            else:
                suggestion = "manual"

            conflicts.append(ConflictInfo(
                file_path=path,
                conflict_type=conflict_type,
                ours_content=ours,
                theirs_content=theirs,
                base_content=base,
                suggested_resolution=suggestion,
            ))
        return conflicts

    async def _merge(
        self,
        operation: str,
        source: str,
        target: str,
        *,
        task_ids: List[str],
        merged_to: str,
        message: str,
        initiator: str,
        create_target_from: Optional[str] = None,
    ) -> MergeResult:
        """Check out ``target`` and ``git merge --no-ff source``.

        On conflict the tree is left mid-merge and a PendingMerge is
        recorded; nothing is committed.
        """
        task_id = task_ids[0] if len(task_ids) == 1 else None

        safety = await self.run_safety_check(SafetyOperation.MERGE, target)
        if not safety.safe:
            return MergeResult(
                success=False, source_branch=source, target_branch=target,
                error="Safety check failed: " + "; ".join(safety.blockers),
            )

        if not await self.runner.branch_exists(target):
            if create_target_from is None:
                return MergeResult(
                    success=False, source_branch=source, target_branch=target,
                    error=f"Target branch '{target}' does not exist",
                )
            created = await self._git(
                operation, "branch", target, create_target_from,
                task_id=task_id, initiator=initiator,
            )
            if not created.success:
                return MergeResult(
                    success=False, source_branch=source, target_branch=target,
                    error=created.error, stderr=created.stderr,
                )
            logger.info("review_branch_created", branch=target, base=create_target_from)

        checkout = await self._git(operation, "checkout", target, task_id=task_id, initiator=initiator)
        if not checkout.success:
            return MergeResult(
                success=False, source_branch=source, target_branch=target,
                error=checkout.error, stderr=checkout.stderr,
            )

        merged = await self._git(
            operation, "merge", "--no-ff", "-m", message, source,
            task_id=task_id, initiator=initiator,
        )
        if merged.success:
            merge_commit = await self.runner.rev_parse("HEAD")
            logger.info(
                "branch_merged",
                source=source,
                target=target,
                merge_commit=(merge_commit or "")[:12],
            )
            return MergeResult(
                success=True, source_branch=source, target_branch=target,
                merge_commit_hash=merge_commit,
            )

        output = f"{merged.stdout}\n{merged.stderr}"
        if "CONFLICT" in output or await self.runner.is_merge_in_progress():
            conflicts = await self._collect_conflicts()
            self.store.save_pending_merge(PendingMerge(
                source_branch=source,
                target_branch=target,
                task_ids=task_ids,
                merged_to=merged_to,
                conflicted_files=[c.file_path for c in conflicts],
            ))
            logger.warning(
                "merge_conflicts",
                source=source,
                target=target,
                files=[c.file_path for c in conflicts],
            )
            return MergeResult(
                success=False,
                source_branch=source,
                target_branch=target,
                had_conflicts=True,
                conflicts=conflicts,
                merge_commit_hash=None,
                stderr=merged.stderr,
            )

        return MergeResult(
            success=False, source_branch=source, target_branch=target,
            error=merged.error, stderr=merged.stderr,
        )

    async def _apply_merge(
        self, task_ids: List[str], source: str, merged_to: str, merge_commit: Optional[str],
    ) -> None:
        """Record a completed merge on the mappings and review record."""
        now = datetime.now()
        source_head = await self.runner.rev_parse(source)
        changed: List[TaskBranchMapping] = []
        for mapping in self.store.load_mappings().values():
            if mapping.task_id not in task_ids:
                continue
            if source == self.review_branch and merged_to != self.review_branch:
                # Landing review on main only touches mappings already on review
                if mapping.merged_to != self.review_branch:
                    continue
            elif mapping.branch_name != source:
                continue
            if mapping.branch_name == source and source_head:
                mapping.head_commit_hash = source_head
            mapping.is_merged = True
            mapping.merged_to = merged_to
            mapping.merge_commit_hash = merge_commit
            mapping.merged_at = now
            mapping.is_checked_out = False
            changed.append(mapping)
        self.store.save_all(changed)

        if merged_to == self.review_branch:
            record = self.store.load_review_record() or ReviewBranchRecord(name=self.review_branch)
            for task_id in task_ids:
                if task_id not in record.merged_task_ids:
                    record.merged_task_ids.append(task_id)
            record.head_commit_hash = merge_commit
            record.last_merge_at = now
            self.store.save_review_record(record)

    async def merge_task_to_review(self, task_id: str, *, initiator: str = "operator") -> MergeResult:
        """Merge the task's active branch into the review branch (created from main if missing)."""
        async with self._lock:
            mapping = self.get_working_mapping(task_id)
            if mapping is None:
                return MergeResult(
                    success=False, source_branch="", target_branch=self.review_branch,
                    error=f"Task {task_id} has no unmerged branch",
                )
            result = await self._merge(
                "merge_task_to_review",
                mapping.branch_name,
                self.review_branch,
                task_ids=[task_id],
                merged_to=self.review_branch,
                message=f"Merge task {task_id} ({mapping.branch_name}) into {self.review_branch}",
                initiator=initiator,
                create_target_from=self.main_branch,
            )
            if result.success:
                await self._apply_merge([task_id], mapping.branch_name, self.review_branch, result.merge_commit_hash)
            return result

    async def merge_task_to_main(self, task_id: str, *, initiator: str = "operator") -> MergeResult:
        """Merge the task's branch straight into the main branch."""
        async with self._lock:
            mapping = self.get_working_mapping(task_id)
            if mapping is None:
                return MergeResult(
                    success=False, source_branch="", target_branch=self.main_branch,
                    error=f"Task {task_id} has no branch awaiting merge to {self.main_branch}",
                )
            result = await self._merge(
                "merge_task_to_main",
                mapping.branch_name,
                self.main_branch,
                task_ids=[task_id],
                merged_to=self.main_branch,
                message=f"Merge task {task_id} ({mapping.branch_name}) into {self.main_branch}",
                initiator=initiator,
            )
            if result.success:
                await self._apply_merge([task_id], mapping.branch_name, self.main_branch, result.merge_commit_hash)
            return result

    async def merge_review_to_main(self, *, initiator: str = "operator") -> MergeResult:
        """Land the review branch on main; every task on review becomes merged to main."""
        async with self._lock:
            record = self.store.load_review_record()
            if record is None or not await self.runner.branch_exists(self.review_branch):
                return MergeResult(
                    success=False, source_branch=self.review_branch, target_branch=self.main_branch,
                    error="No review branch to merge",
                )
            task_ids = list(record.merged_task_ids)
            result = await self._merge(
                "merge_review_to_main",
                self.review_branch,
                self.main_branch,
                task_ids=task_ids,
                merged_to=self.main_branch,
                message=f"Merge {self.review_branch} into {self.main_branch} ({len(task_ids)} task(s))",
                initiator=initiator,
            )
            if result.success:
                await self._apply_merge(task_ids, self.review_branch, self.main_branch, result.merge_commit_hash)
            return result

    async def resolve_conflict(
        self, file_path: str, resolution: str, *, initiator: str = "operator",
    ) -> BranchResult:
        """Resolve one conflicted file and stage it. Never completes the merge.

        Args:
            file_path: Project-relative path of the conflicted file.
            resolution: "ours", "theirs", or literal replacement content.
        """
        async with self._lock:
            rel = normalize_relative_path(file_path)
            if not rel:
                return BranchResult(success=False, error=f"Invalid path: {file_path}")
            if not await self.runner.is_merge_in_progress():
                return BranchResult(success=False, error="No merge in progress")

            pending = self.store.load_pending_merge()
            task_id = pending.task_ids[0] if pending and len(pending.task_ids) == 1 else None

            if resolution in ("ours", "theirs"):
                picked = await self._git(
                    "resolve_conflict", "checkout", f"--{resolution}", "--", rel,
                    task_id=task_id, initiator=initiator,
                )
                if not picked.success:
                    if "does not have" not in picked.stderr:
                        return BranchResult(success=False, error=picked.error, stderr=picked.stderr)
                    # The chosen side deleted the file
                    removed = await self._git(
                        "resolve_conflict", "rm", "--", rel, task_id=task_id, initiator=initiator,
                    )
                    if not removed.success:
                        return BranchResult(success=False, error=removed.error, stderr=removed.stderr)
                    logger.info("conflict_resolved", file=rel, resolution=resolution, deleted=True)
                    return BranchResult(success=True)
            else:
                target = resolve_within_root(self.project_root, rel)
                if target is None:
                    return BranchResult(success=False, error=f"Path outside project root: {file_path}")
                try:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    target.write_text(resolution, encoding="utf-8")
                except OSError as e:
                    return BranchResult(success=False, error=f"Failed to write {rel}: {e}")

            staged = await self._git(
                "resolve_conflict", "add", "--", rel, task_id=task_id, initiator=initiator,
            )
            if not staged.success:
                return BranchResult(success=False, error=staged.error, stderr=staged.stderr)
            logger.info(
                "conflict_resolved",
                file=rel,
                resolution=resolution if resolution in ("ours", "theirs") else "content",
            )
            return BranchResult(success=True)

    async def finalize_merge(
        self, message: Optional[str] = None, *, initiator: str = "operator",
    ) -> MergeResult:
        """Commit a merge whose conflicts have all been resolved."""
        async with self._lock:
            pending = self.store.load_pending_merge()
            source = pending.source_branch if pending else ""
            target = pending.target_branch if pending else (await self.runner.current_branch() or "")

            if not await self.runner.is_merge_in_progress():
                return MergeResult(
                    success=False, source_branch=source, target_branch=target,
                    error="No merge in progress",
                )
            remaining = await self.runner.unmerged_files()
            if remaining:
                return MergeResult(
                    success=False, source_branch=source, target_branch=target,
                    error="Unresolved conflicts remain: " + ", ".join(remaining),
                )

            task_id = pending.task_ids[0] if pending and len(pending.task_ids) == 1 else None
            args = ["commit", "--no-verify", "-m", message] if message else ["commit", "--no-verify", "--no-edit"]
            committed = await self._git("finalize_merge", *args, task_id=task_id, initiator=initiator)
            if not committed.success:
                return MergeResult(
                    success=False, source_branch=source, target_branch=target,
                    error=committed.error, stderr=committed.stderr,
                )

            merge_commit = await self.runner.rev_parse("HEAD")
            if pending:
                await self._apply_merge(pending.task_ids, pending.source_branch, pending.merged_to, merge_commit)
            self.store.clear_pending_merge()
            logger.info("merge_finalized", source=source, target=target, merge_commit=(merge_commit or "")[:12])
            return MergeResult(
                success=True, source_branch=source, target_branch=target, merge_commit_hash=merge_commit,
            )

    async def abort_merge(self, *, initiator: str = "operator") -> BranchResult:
        """Abandon a conflicted merge and restore the pre-merge tree."""
        async with self._lock:
            pending = self.store.load_pending_merge()
            task_id = pending.task_ids[0] if pending and len(pending.task_ids) == 1 else None
            result = await self._git("abort_merge", "merge", "--abort", task_id=task_id, initiator=initiator)
            if not result.success:
                return BranchResult(success=False, error=result.error, stderr=result.stderr)
            self.store.clear_pending_merge()
            logger.info("merge_aborted", task_id=task_id)
            return BranchResult(success=True)

    # ---- Board integration ----

    async def handle_task_status_change(
        self, task_id: str, title: str, old_status: str, new_status: str,
    ):
        """Map a board move to the matching branch action.

        todo/backlog → doing: create (if needed) and check out
        doing → review: commit and merge to review
        review → done: merge to main
        review → doing: check out again

        Returns the verb's result, or None when the move needs no git action.
        """
        if new_status == "doing" and old_status in ("todo", "backlog", "review"):
            if self.store.get_active_mapping(task_id) is None and old_status != "review":
                created = await self.create_task_branch(
                    task_id, title, base_ref=self.main_branch, initiator="system",
                )
                if not created.success:
                    return created
            return await self.checkout_task_branch(task_id, initiator="system")

        if old_status == "doing" and new_status == "review":
            committed = await self.commit_task_changes(task_id, f"Task {task_id}: {title}", initiator="system")
            if not committed.success:
                return committed
            return await self.merge_task_to_review(task_id, initiator="system")

        if old_status == "review" and new_status == "done":
            return await self.merge_task_to_main(task_id, initiator="system")

        return None
