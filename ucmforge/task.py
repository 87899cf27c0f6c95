"""
Forge Task State

TaskDag is the per-task record the pipeline mutates: status, selected
pipeline, subtask DAG, stage history, warnings and token usage. Persisted as
<state_dir>/<task_id>/task.json.
"""
from __future__ import annotations

import dataclasses
import datetime as dt
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ForgeError
from .models import TokenUsage
from .utils import load_json, save_json_atomic, short_nonce, utc_now_iso, validate_name


# Task statuses
PENDING = "pending"
RUNNING = "running"
IN_PROGRESS = "in_progress"
DONE = "done"
FAILED = "failed"
REVIEW = "review"
REJECTED = "rejected"
ABORTED = "aborted"


def generate_forge_id() -> str:
    date = dt.datetime.now(dt.timezone.utc).strftime("%Y%m%d")
    return f"forge-{date}-{short_nonce(4)}"


@dataclasses.dataclass
class Subtask:
    id: str
    title: str
    description: str = ""
    blocked_by: List[str] = dataclasses.field(default_factory=list)
    estimated_files: List[str] = dataclasses.field(default_factory=list)
    status: str = PENDING
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Subtask":
        return cls(
            id=str(d["id"]),
            title=str(d.get("title", d["id"])),
            description=str(d.get("description", "") or ""),
            blocked_by=[str(x) for x in d.get("blocked_by", d.get("blockedBy", [])) or []],
            estimated_files=list(d.get("estimated_files", d.get("estimatedFiles", [])) or []),
            status=d.get("status", PENDING),
            started_at=d.get("started_at"),
            completed_at=d.get("completed_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


class TaskDag:
    """Task record plus the subtask dependency graph."""

    def __init__(
        self,
        id: Optional[str] = None,
        status: str = PENDING,
        pipeline: Optional[str] = None,
        title: Optional[str] = None,
        tasks: Optional[List[Subtask]] = None,
        created_at: Optional[str] = None,
        started_at: Optional[str] = None,
        completed_at: Optional[str] = None,
        updated_at: Optional[str] = None,
        token_usage: Optional[TokenUsage] = None,
    ):
        self.id = id or generate_forge_id()
        validate_name(self.id, "task")
        self.status = status
        self.pipeline = pipeline
        self.title = title
        self.tasks: List[Subtask] = list(tasks or [])
        self.created_at = created_at or utc_now_iso()
        self.started_at = started_at
        self.completed_at = completed_at
        self.updated_at = updated_at or self.created_at
        self.current_stage: Optional[str] = None
        self.stage_history: List[Dict[str, Any]] = []
        self.warnings: List[str] = []
        self.feedback: Optional[str] = None
        self.error: Optional[str] = None
        self.token_usage = token_usage or TokenUsage()

    # -- subtasks ------------------------------------------------------------

    def get_task(self, task_id: str) -> Subtask:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise ForgeError(f"task not found: {task_id}")

    def add_task(self, task: Subtask) -> None:
        if any(t.id == task.id for t in self.tasks):
            raise ForgeError(f"duplicate task id: {task.id}")
        existing = {t.id for t in self.tasks}
        unresolved = [d for d in task.blocked_by if d != task.id and d not in existing]
        if unresolved:
            self.warnings.append(f"task {task.id}: unresolved blocked_by refs: {', '.join(unresolved)}")
        self.tasks.append(task)

    def update_task_status(self, task_id: str, status: str) -> None:
        task = self.get_task(task_id)
        task.status = status
        if status == IN_PROGRESS and not task.started_at:
            task.started_at = utc_now_iso()
        if status in (DONE, FAILED):
            task.completed_at = utc_now_iso()

    def get_waves(self) -> List[List[str]]:
        """Group subtask ids into waves; each wave depends only on earlier waves.

        Raises:
            ForgeError: On a dependency cycle
        """
        waves: List[List[str]] = []
        completed: set = set()
        remaining = [t for t in self.tasks]
        while remaining:
            wave = [t.id for t in remaining if all(d in completed for d in t.blocked_by)]
            if not wave:
                ids = ", ".join(t.id for t in remaining)
                raise ForgeError(f"cycle detected in task DAG: {ids}")
            waves.append(wave)
            completed.update(wave)
            remaining = [t for t in remaining if t.id not in completed]
        return waves

    def validate_deps(self) -> None:
        ids = {t.id for t in self.tasks}
        dangling = [f"{t.id} -> {d}" for t in self.tasks for d in t.blocked_by if d not in ids]
        if dangling:
            raise ForgeError(f"dangling blocked_by references: {', '.join(dangling)}")

    # -- accounting ----------------------------------------------------------

    def add_token_usage(self, usage: Optional[TokenUsage]) -> None:
        self.token_usage.add(usage)

    def total_tokens(self) -> int:
        return self.token_usage.total

    def is_over_budget(self, budget: int) -> bool:
        return bool(budget and budget > 0 and self.total_tokens() > budget)

    def record_stage(self, stage: str, status: str, duration_ms: int,
                     usage: Optional[TokenUsage] = None, subtask: Optional[str] = None) -> None:
        entry: Dict[str, Any] = {
            "stage": stage,
            "status": status,
            "duration_ms": duration_ms,
            "timestamp": utc_now_iso(),
            "token_usage": usage.to_dict() if usage else None,
        }
        if subtask:
            entry["subtask"] = subtask
        self.stage_history.append(entry)
        self.updated_at = utc_now_iso()

    def last_failed_stage(self) -> Optional[str]:
        for entry in reversed(self.stage_history):
            if entry.get("status") == "fail":
                return entry["stage"]
        return None

    # -- persistence ---------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "pipeline": self.pipeline,
            "title": self.title,
            "tasks": [t.to_dict() for t in self.tasks],
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "updated_at": self.updated_at,
            "current_stage": self.current_stage,
            "stage_history": self.stage_history,
            "warnings": self.warnings,
            "feedback": self.feedback,
            "error": self.error,
            "token_usage": self.token_usage.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TaskDag":
        dag = cls(
            id=d["id"],
            status=d.get("status", PENDING),
            pipeline=d.get("pipeline"),
            title=d.get("title"),
            tasks=[Subtask.from_dict(t) for t in d.get("tasks", [])],
            created_at=d.get("created_at"),
            started_at=d.get("started_at"),
            completed_at=d.get("completed_at"),
            updated_at=d.get("updated_at"),
            token_usage=TokenUsage.from_dict(d.get("token_usage")),
        )
        dag.current_stage = d.get("current_stage")
        dag.stage_history = list(d.get("stage_history", []))
        dag.warnings = list(d.get("warnings", []))
        dag.feedback = d.get("feedback")
        dag.error = d.get("error")
        return dag

    def save(self, state_dir: Path) -> Path:
        self.updated_at = utc_now_iso()
        path = Path(state_dir) / self.id / "task.json"
        save_json_atomic(path, self.to_dict())
        return path

    @classmethod
    def load(cls, state_dir: Path, task_id: str) -> "TaskDag":
        validate_name(task_id, "task")
        path = Path(state_dir) / task_id / "task.json"
        data = load_json(path, None)
        if data is None:
            raise ForgeError(f"task not found: {task_id}")
        return cls.from_dict(data)
