"""Decompose: split a large task into a subtask DAG."""
from __future__ import annotations

from ..models import StageResult
from ..task import Subtask, TaskDag
from .base import Stage, StageContext, section

DECOMPOSE_PROMPT = """You split software work into subtasks that can be built independently.

## Rules
1. Each subtask must be implementable and testable on its own.
2. State dependencies explicitly in blockedBy.
3. Subtasks without dependencies may run in the same wave.
4. Keep between 2 and 8 subtasks.
5. List the files each subtask is expected to touch.

## Response format (JSON only)
{"tasks": [
  {"id": "t1", "title": "...", "description": "...", "blockedBy": [], "estimatedFiles": ["a.py"]},
  {"id": "t2", "title": "...", "description": "...", "blockedBy": ["t1"], "estimatedFiles": ["b.py"]}
]}"""


class DecomposeStage(Stage):
    name = "decompose"

    async def run(self, ctx: StageContext) -> StageResult:
        if ctx.dag.pipeline != "large":
            ctx.log("[decompose] skipping (not a large pipeline)")
            return StageResult.skipped("not a large pipeline")

        prompt = (
            f"{DECOMPOSE_PROMPT}\n\n"
            + section("Specification", ctx.spec_text())
            + section("Design", ctx.load("design.md"))
        )
        ctx.log("[decompose] analyzing spec for subtasks...")
        data, usage = await ctx.runner.json(
            prompt, "decompose", cwd=ctx.project, allow_tools="Read,Glob,Grep" if ctx.project else "",
        )
        raw_tasks = data.get("tasks") if isinstance(data, dict) else data
        raw_tasks = [t for t in raw_tasks or [] if isinstance(t, dict) and t.get("id") is not None]
        if not raw_tasks:
            ctx.log("[decompose] no subtasks generated, proceeding as a single task")
            return StageResult.skipped("no subtasks generated", usage)

        # Build on a scratch graph so a rejected reply leaves no partial subtasks behind.
        graph = TaskDag(id=ctx.dag.id, pipeline=ctx.dag.pipeline)
        for t in raw_tasks:
            graph.add_task(Subtask(
                id=str(t["id"]),
                title=str(t.get("title") or t["id"]),
                description=str(t.get("description") or ""),
                blocked_by=[str(d) for d in t.get("blockedBy") or []],
                estimated_files=[str(f) for f in t.get("estimatedFiles") or []],
            ))
        graph.validate_deps()
        waves = graph.get_waves()
        ctx.dag.tasks = graph.tasks
        ctx.dag.warnings.extend(graph.warnings)
        ctx.save("tasks.json", [t.to_dict() for t in ctx.dag.tasks])

        ctx.log(f"[decompose] {len(raw_tasks)} subtasks in {len(waves)} wave(s)")
        for i, wave in enumerate(waves, 1):
            titles = ", ".join(f"{tid}: {ctx.dag.get_task(tid).title}" for tid in wave)
            ctx.log(f"  wave {i}: {titles}")
        return StageResult.passed({"tasks": len(raw_tasks), "waves": waves}, usage)
