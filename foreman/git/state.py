"""Persisted orchestrator state under ``<state_dir>/git/``.

Layout:
    mappings.json        flat table of TaskBranchMapping keyed by mapping id
    operations.jsonl     append-only operation log, one entry per line
    review_branch.json   ReviewBranchRecord
    pending_merge.json   PendingMerge while a conflicted merge is open
"""

import json
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from ..storage import atomic_write_json, read_json
from .models import OperationLogEntry, PendingMerge, ReviewBranchRecord, TaskBranchMapping

logger = structlog.get_logger("foreman.git")

MAX_LOG_OUTPUT_CHARS = 5000


class GitStateStore:
    """File-backed tables for mappings, the operation log and the review record."""

    def __init__(self, state_dir: Path):
        self.root = Path(state_dir) / "git"
        self.mappings_path = self.root / "mappings.json"
        self.operations_path = self.root / "operations.jsonl"
        self.review_path = self.root / "review_branch.json"
        self.pending_merge_path = self.root / "pending_merge.json"

    # ---- Mappings ----

    def load_mappings(self) -> Dict[str, TaskBranchMapping]:
        raw = read_json(self.mappings_path, {})
        return {mid: TaskBranchMapping.model_validate(data) for mid, data in raw.items()}

    def _save_mappings(self, mappings: Dict[str, TaskBranchMapping]) -> None:
        atomic_write_json(
            self.mappings_path,
            {mid: m.model_dump(mode="json") for mid, m in mappings.items()},
        )

    def save_mapping(self, mapping: TaskBranchMapping) -> None:
        mappings = self.load_mappings()
        mappings[mapping.id] = mapping
        self._save_mappings(mappings)

    def save_all(self, changed: List[TaskBranchMapping]) -> None:
        mappings = self.load_mappings()
        for mapping in changed:
            mappings[mapping.id] = mapping
        self._save_mappings(mappings)

    def remove_mapping(self, mapping_id: str) -> None:
        mappings = self.load_mappings()
        if mappings.pop(mapping_id, None) is not None:
            self._save_mappings(mappings)

    def mappings_for_task(self, task_id: str) -> List[TaskBranchMapping]:
        return sorted(
            (m for m in self.load_mappings().values() if m.task_id == task_id),
            key=lambda m: m.created_at,
        )

    def get_active_mapping(self, task_id: str) -> Optional[TaskBranchMapping]:
        """The task's unmerged mapping, if any."""
        for mapping in self.mappings_for_task(task_id):
            if not mapping.is_merged:
                return mapping
        return None

    def get_latest_mapping(self, task_id: str) -> Optional[TaskBranchMapping]:
        mappings = self.mappings_for_task(task_id)
        return mappings[-1] if mappings else None

    # ---- Operation log ----

    def append_operation(self, entry: OperationLogEntry) -> None:
        """Append one entry; existing lines are never rewritten."""
        data = entry.model_dump(mode="json")
        data["stdout"] = data["stdout"][:MAX_LOG_OUTPUT_CHARS]
        data["stderr"] = data["stderr"][:MAX_LOG_OUTPUT_CHARS]
        self.root.mkdir(parents=True, exist_ok=True)
        with open(self.operations_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(data) + "\n")

    def read_operations(
        self, task_id: Optional[str] = None, limit: Optional[int] = None,
    ) -> List[OperationLogEntry]:
        """Log entries oldest first, optionally filtered by task and trimmed to the newest ``limit``."""
        if not self.operations_path.exists():
            return []
        entries: List[OperationLogEntry] = []
        with open(self.operations_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = OperationLogEntry.model_validate_json(line)
                except ValueError:
                    logger.warning("operation_log_line_invalid", preview=line[:100])
                    continue
                if task_id is None or entry.task_id == task_id:
                    entries.append(entry)
        if limit is not None:
            entries = entries[-limit:]
        return entries

    # ---- Review branch ----

    def load_review_record(self) -> Optional[ReviewBranchRecord]:
        raw = read_json(self.review_path, None)
        return ReviewBranchRecord.model_validate(raw) if raw else None

    def save_review_record(self, record: ReviewBranchRecord) -> None:
        atomic_write_json(self.review_path, record.model_dump(mode="json"))

    # ---- Pending merge ----

    def load_pending_merge(self) -> Optional[PendingMerge]:
        raw = read_json(self.pending_merge_path, None)
        return PendingMerge.model_validate(raw) if raw else None

    def save_pending_merge(self, pending: PendingMerge) -> None:
        atomic_write_json(self.pending_merge_path, pending.model_dump(mode="json"))

    def clear_pending_merge(self) -> None:
        if self.pending_merge_path.exists():
            self.pending_merge_path.unlink()
