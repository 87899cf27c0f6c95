"""
Deliver: summarize the change and hand it over.

Autopilot runs without warnings merge straight away and finish as done;
everything else waits in review for approve() or reject().
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from ..artifacts import ArtifactStore, Worktrees
from ..errors import ForgeError
from ..models import StageResult, TokenUsage
from ..task import DONE, REJECTED, REVIEW, TaskDag
from .base import Stage, StageContext

logger = logging.getLogger("forge")

SUMMARY_PROMPT = "Summarize the changes below concisely (3-5 lines, Markdown).\n\n{changes}"
NO_CHANGES = "(no changes to summarize)"


async def _diff_text(worktrees: Optional[Worktrees], task_id: str) -> str:
    if worktrees is None:
        return ""
    workspace = await worktrees.load_workspace(task_id)
    if not workspace:
        return ""
    diffs = await worktrees.get_worktree_diff(task_id, workspace.get("projects") or [])
    return "\n\n".join(
        f"### {d.get('project', '')}\n\n```diff\n{d.get('diff', '')[:3000]}\n```" for d in diffs
    )


class DeliverStage(Stage):
    name = "deliver"

    async def run(self, ctx: StageContext) -> StageResult:
        ctx.log("[deliver] generating diff summary...")
        try:
            changes = await _diff_text(ctx.worktrees, ctx.task_id)
        except ForgeError as e:
            ctx.log(f"[deliver] diff unavailable: {e}")
            changes = ""
        if not changes:
            changes = ctx.load("design.md", "spec.md")

        usage = TokenUsage()
        if changes:
            summary, usage = await ctx.runner.text(SUMMARY_PROMPT.format(changes=changes[:5000]), "deliver")
        else:
            summary = NO_CHANGES
        ctx.save("summary.md", summary)

        dag = ctx.dag
        if ctx.autopilot and not dag.warnings:
            try:
                await _merge(ctx.worktrees, ctx.task_id)
                ctx.log("[deliver] auto-merged")
                dag.status = DONE
            except ForgeError as e:
                ctx.warn(f"auto-merge failed: {e}")
                dag.status = REVIEW
        else:
            dag.status = REVIEW

        ctx.log(f"[deliver] status={dag.status}, warnings={len(dag.warnings)}")
        output = {"status": dag.status, "summary": summary, "warnings": list(dag.warnings)}
        return StageResult.passed(output, usage)


async def _merge(worktrees: Optional[Worktrees], task_id: str) -> None:
    if worktrees is None:
        return
    workspace = await worktrees.load_workspace(task_id)
    if workspace:
        await worktrees.merge_worktrees(task_id, workspace.get("projects") or [])


async def approve(task_id: str, *, state_dir: Path, worktrees: Optional[Worktrees] = None) -> Dict[str, Any]:
    """Merge a task waiting in review and mark it done.

    Raises:
        ForgeError: If the task is not in review or the merge fails
    """
    dag = TaskDag.load(state_dir, task_id)
    if dag.status != REVIEW:
        raise ForgeError(f"cannot approve task in status: {dag.status}")
    try:
        await _merge(worktrees, task_id)
    except ForgeError as e:
        raise ForgeError(f"merge failed: {e}") from e
    dag.status = DONE
    dag.save(state_dir)
    logger.info(f"Approved {task_id}")
    return {"status": DONE}


def reject(task_id: str, feedback: str, *, state_dir: Path, artifacts: ArtifactStore) -> Dict[str, Any]:
    """Reject a task in review; the feedback is used by the next resume.

    Raises:
        ForgeError: If the task is not in review
    """
    dag = TaskDag.load(state_dir, task_id)
    if dag.status != REVIEW:
        raise ForgeError(f"cannot reject task in status: {dag.status}")
    artifacts.save(task_id, "rejection-feedback.md", feedback or "")
    dag.status = REJECTED
    dag.warnings.append(f"rejected: {(feedback or 'no feedback')[:100]}")
    dag.save(state_dir)
    logger.info(f"Rejected {task_id}")
    return {"status": REJECTED, "feedback": feedback}
