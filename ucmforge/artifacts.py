"""
Forge Artifacts and Collaborators

ArtifactStore keeps every stage output as a named file under
<root>/<task_id>/. Worktrees and KnowledgeStore describe the external
services the pipeline talks to; they are supplied by the host application.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .errors import ArtifactNotFound
from .utils import is_subpath, sanitize_content, validate_name, write_text_atomic

logger = logging.getLogger("forge")


class ArtifactStore:
    """Filesystem artifact store. Content is redacted before it is written."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def path(self, task_id: str, name: str) -> Path:
        validate_name(task_id, "task")
        validate_name(name, "artifact")
        path = self.root / task_id / name
        if not is_subpath(path, self.root):
            raise ValueError(f"Artifact path escapes store: {path}")
        return path

    def exists(self, task_id: str, name: str) -> bool:
        return self.path(task_id, name).exists()

    def load(self, task_id: str, name: str) -> str:
        path = self.path(task_id, name)
        if not path.exists():
            raise ArtifactNotFound(task_id, name)
        return path.read_text(encoding="utf-8")

    def load_optional(self, task_id: str, name: str, default: Optional[str] = "") -> Optional[str]:
        try:
            return self.load(task_id, name)
        except ArtifactNotFound:
            return default

    def load_json(self, task_id: str, name: str) -> Any:
        return json.loads(self.load(task_id, name))

    def save(self, task_id: str, name: str, content: Any) -> Path:
        if not isinstance(content, str):
            content = json.dumps(content, indent=2, ensure_ascii=False)
        path = self.path(task_id, name)
        write_text_atomic(path, sanitize_content(content))
        return path

    def init_task(self, task_id: str, task_text: str) -> Path:
        """Seed a task that skips intake with its task.md."""
        return self.save(task_id, "task.md", task_text)

    def list(self, task_id: str) -> List[str]:
        validate_name(task_id, "task")
        task_dir = self.root / task_id
        if not task_dir.exists():
            return []
        return sorted(p.name for p in task_dir.iterdir() if p.is_file())

    def missing(self, task_id: str, names: List[str]) -> List[str]:
        return [n for n in names if not self.exists(task_id, n)]


class Worktrees(Protocol):
    """Git worktree service for a task's workspace."""

    async def load_workspace(self, task_id: str) -> Optional[Dict[str, Any]]:
        """Return {"projects": [{"name", "path", "origin"}...]} or None."""

    async def merge_worktrees(self, task_id: str, projects: List[Dict[str, Any]]) -> None:
        """Merge task worktrees back.

        Conflicts raise MergeConflictError, or any error whose message contains CONFLICT.
        """

    async def get_worktree_diff(self, task_id: str, projects: List[Dict[str, Any]]) -> List[Dict[str, str]]:
        """Return [{"project": name, "diff": text}...]."""


class KnowledgeStore(Protocol):
    """Long-term memory searched for context snippets."""

    def search(self, query: str, limit: int = 3) -> List[Dict[str, Any]]:
        ...


def recall(knowledge: Optional[KnowledgeStore], query: str, limit: int = 3) -> str:
    """Format knowledge hits as a markdown section, or "" when unavailable."""
    if knowledge is None or not query:
        return ""
    try:
        hits = knowledge.search(query, limit=limit) or []
    except Exception as e:
        logger.debug(f"Knowledge search unavailable: {e}")
        return ""
    lines = []
    for hit in hits[:limit]:
        title = hit.get("title") or hit.get("id") or "note"
        body = str(hit.get("body") or hit.get("summary") or "").strip()
        lines.append(f"- **{title}**: {body[:500]}")
    if not lines:
        return ""
    return "## Related knowledge\n\n" + "\n".join(lines)
