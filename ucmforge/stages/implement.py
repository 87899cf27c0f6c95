"""Implement: an agent changes the code following the design (or the spec)."""
from __future__ import annotations

from ..errors import StageError
from ..models import InvocationStatus, StageResult
from .base import Stage, StageContext

RULES = """## Rules
1. Make one atomic commit per logical change.
2. Follow the existing code style and patterns.
3. Do not introduce security vulnerabilities (injection, XSS, ...).
4. Do not leave stray comments, debug logging or TODOs.
5. Do not modify files outside the current worktree.
6. Never hardcode API keys, passwords or tokens."""


def build_implement_prompt(ctx: StageContext) -> str:
    design = ctx.design_text()
    spec = ctx.spec_text()
    if design:
        prompt = (
            "You are a software implementation expert. Implement exactly what the design\n"
            "document says; no improvised changes.\n\n"
            f"## Design\n\n{design}\n\n## Specification\n\n{spec}\n\n"
            f"{RULES}\n7. Change only the files the design names."
        )
    else:
        prompt = (
            "You are a software implementation expert. Implement the request below.\n\n"
            f"## Request\n\n{spec}\n\n"
            f"{RULES}\n7. Explore the existing code with Read, Glob and Grep first."
        )
    prompt += ctx.scope_text("Implement")
    query = ctx.subtask.title if ctx.subtask else spec[:200]
    knowledge = ctx.knowledge_text(query)
    if knowledge:
        prompt += f"\n\n{knowledge}"
    if ctx.feedback:
        prompt += f"\n\n## Feedback from the previous verification (must fix)\n\n{ctx.feedback}"
    return prompt


class ImplementStage(Stage):
    name = "implement"

    async def run(self, ctx: StageContext) -> StageResult:
        ctx.log(f"[implement] starting{' with feedback' if ctx.feedback else ''}...")
        result = await ctx.runner.agent(
            build_implement_prompt(ctx), "implement",
            task_id=ctx.task_id, cwd=ctx.project, log_name=f"implement{ctx.suffix}",
        )
        if result.status != InvocationStatus.DONE:
            raise StageError(f"implement failed: {result.status.value} ({result.stderr[:200]})")
        return StageResult.passed(result.stdout, result.token_usage)
