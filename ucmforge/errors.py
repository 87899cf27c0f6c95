"""
Forge Errors

Exception hierarchy shared by stages and the pipeline engine. The process
lifecycle layer never raises; everything above it does.
"""
from __future__ import annotations

from typing import List, Optional


class ForgeError(Exception):
    """Base class for all forge errors."""


class LLMError(ForgeError):
    """An agent call finished with a non-done status."""

    def __init__(self, status: str, stderr: str = "", message: Optional[str] = None):
        self.status = status
        self.stderr = stderr
        super().__init__(message or f"LLM call {status}: {stderr[:200]}")


class RateLimitedError(LLMError):
    """Rate limit persisted through every backoff attempt."""

    def __init__(self, attempts: int, stderr: str = ""):
        self.attempts = attempts
        super().__init__(
            "rate_limited", stderr,
            f"RATE_LIMITED: gave up after {attempts} attempts: {stderr[:200]}",
        )


class JsonExtractionError(ForgeError, ValueError):
    """No JSON value could be recovered from agent output."""

    def __init__(self, text: str):
        self.preview = text[:300]
        super().__init__(f"No JSON found in output: {self.preview}")


class ArtifactNotFound(ForgeError, FileNotFoundError):
    """Requested artifact does not exist in the store."""

    def __init__(self, task_id: str, name: str):
        self.task_id = task_id
        self.name = name
        super().__init__(f"Artifact not found: {task_id}/{name}")


class MissingArtifactsError(ForgeError):
    """A stage's required inputs or promised outputs are absent."""

    def __init__(self, stage: str, missing: List[str], kind: str = "required"):
        self.stage = stage
        self.missing = missing
        super().__init__(f"Stage '{stage}' missing {kind} artifacts: {', '.join(missing)}")


class StageError(ForgeError):
    """A stage could not complete its work."""


class BudgetExceededError(ForgeError):
    """Accumulated token usage went over the task budget."""

    def __init__(self, used: int, budget: int):
        self.used = used
        self.budget = budget
        super().__init__(f"Token budget exceeded: {used}/{budget}")


class MergeConflictError(ForgeError):
    """Worktree merge stopped on conflicts."""


class ManualResolutionRequired(ForgeError):
    """Automatic conflict resolution failed; a human must finish the merge."""
