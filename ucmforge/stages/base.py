"""
Forge Stage Interface

Every stage is a Stage subclass with an async run(ctx) -> StageResult. The
context carries everything a stage may touch; stages never reach global
state.
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from ..artifacts import ArtifactStore, KnowledgeStore, Worktrees, recall
from ..config import ForgeConfig
from ..models import StageResult
from ..runner import AgentRunner
from ..task import Subtask, TaskDag
from ..utils import write_live

logger = logging.getLogger("forge")

QuestionFn = Callable[[Dict[str, Any]], Awaitable[str]]


@dataclasses.dataclass
class StageContext:
    task_id: str
    dag: TaskDag
    config: ForgeConfig
    runner: AgentRunner
    artifacts: ArtifactStore
    project: Optional[str] = None
    subtask: Optional[Subtask] = None
    feedback: Optional[str] = None
    autopilot: bool = False
    token_budget: int = 0
    input_text: str = ""
    on_question: Optional[QuestionFn] = None
    knowledge: Optional[KnowledgeStore] = None
    worktrees: Optional[Worktrees] = None
    on_log: Optional[Callable[[str], None]] = None

    @property
    def suffix(self) -> str:
        """Artifact-name suffix for subtask-scoped outputs."""
        return f"-{self.subtask.id}" if self.subtask else ""

    def log(self, msg: str) -> None:
        logger.info(msg)
        write_live(msg)
        if self.on_log:
            self.on_log(msg)

    def warn(self, msg: str) -> None:
        logger.warning(msg)
        write_live(f"WARNING: {msg}")
        self.dag.warnings.append(msg)

    def load(self, *names: str) -> str:
        """First existing artifact among names, or ""."""
        for name in names:
            content = self.artifacts.load_optional(self.task_id, name, None)
            if content is not None:
                return content
        return ""

    def save(self, name: str, content: Any) -> None:
        self.artifacts.save(self.task_id, name, content)

    def spec_text(self) -> str:
        return self.load("spec.md", "task.md")

    def design_text(self) -> str:
        return self.load(f"design{self.suffix}.md", "design.md")

    def scope_text(self, verb: str = "Work on") -> str:
        if not self.subtask:
            return ""
        s = self.subtask
        files = f"\n- Expected files: {', '.join(s.estimated_files)}" if s.estimated_files else ""
        return (
            f"\n\n## Scope\n{verb} this subtask only:\n"
            f"- ID: {s.id}\n- Title: {s.title}\n- Description: {s.description}{files}"
        )

    def knowledge_text(self, query: str) -> str:
        return recall(self.knowledge, query)


class Stage:
    """Base class for pipeline stages."""

    name = ""

    async def run(self, ctx: StageContext) -> StageResult:
        raise NotImplementedError


def section(title: str, body: Optional[str]) -> str:
    return f"## {title}\n\n{body}\n\n" if body else ""
