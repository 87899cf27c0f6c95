"""
Clarify: turn a task description into recorded decisions.

Autopilot mode lets the model ask and answer its own questions; interactive
mode puts each question to the caller through ctx.on_question. Both stop when
every fixed area is covered, when the model reports it is done, or after
MAX_ROUNDS. A persistent rate limit ends the loop early and keeps what was
collected.
"""
from __future__ import annotations

from typing import List, Optional, Tuple

from ..errors import ForgeError, RateLimitedError
from ..models import StageResult, TokenUsage
from ..qna import (
    OTHER_AREA, Decision,
    build_autopilot_prompt, build_question_prompt,
    compute_coverage, expected_areas, format_decisions, is_fully_covered,
)
from .base import Stage, StageContext

MAX_ROUNDS = 20

REPO_SCAN_PROMPT = """Scan the local repository and summarize it in Markdown:

- Summary: nature and scope of the project in 3-5 sentences
- Tech Stack: languages, frameworks, build, test and deploy essentials
- Key Files: README, config files, main entry points
- Module/Area Candidates: 8-15 modules, folders or files usable as answer options

Rules:
- Cite the supporting file path in parentheses
- Mark guesses as "(assumed)"
"""


class ClarifyStage(Stage):
    name = "clarify"

    async def run(self, ctx: StageContext) -> StageResult:
        description = ctx.load("task.md")
        brownfield = bool(ctx.project)
        usage = TokenUsage()

        repo_context: Optional[str] = None
        if brownfield:
            ctx.log("[clarify] scanning repo context...")
            try:
                repo_context, scan_usage = await ctx.runner.text(
                    REPO_SCAN_PROMPT, "clarify", cwd=ctx.project, allow_tools="Read,Glob,Grep",
                )
                usage.add(scan_usage)
                ctx.save("repo-context.md", repo_context)
            except ForgeError as e:
                ctx.log(f"[clarify] repo scan failed: {e}")

        if ctx.autopilot or ctx.on_question is None:
            decisions, loop_usage = await self._autopilot(ctx, description, brownfield, repo_context)
        else:
            decisions, loop_usage = await self._interactive(ctx, description, brownfield, repo_context)
        usage.add(loop_usage)

        coverage = compute_coverage(decisions, expected_areas(brownfield))
        ctx.save("decisions.md", format_decisions(decisions, coverage))
        ctx.save("decisions.json", [d.to_dict() for d in decisions])
        ctx.log(f"[clarify] {len(decisions)} decisions recorded")
        return StageResult.passed({"decisions": len(decisions), "coverage": coverage}, usage)

    async def _autopilot(self, ctx: StageContext, description: str, brownfield: bool,
                         repo_context: Optional[str]) -> Tuple[List[Decision], TokenUsage]:
        expected = expected_areas(brownfield)
        title = description.split("\n", 1)[0].lstrip("# ").strip() or "task"
        decisions: List[Decision] = []
        usage = TokenUsage()

        for round_no in range(1, MAX_ROUNDS + 1):
            if is_fully_covered(compute_coverage(decisions, expected)):
                ctx.log("[clarify] all areas covered")
                break
            ctx.log(f"[clarify] autopilot round {round_no}...")
            prompt = build_autopilot_prompt(title, description, decisions, brownfield, repo_context)
            try:
                data, call_usage = await ctx.runner.json(prompt, "clarify")
            except RateLimitedError:
                ctx.log("[clarify] rate limited, saving progress")
                break
            usage.add(call_usage)
            if not isinstance(data, dict) or data.get("done"):
                ctx.log("[clarify] model reports coverage is sufficient")
                break
            if not data.get("question"):
                continue
            decision = Decision.from_dict(data)
            decisions.append(decision)
            ctx.log(f"[clarify] [{decision.area}] {decision.question[:60]}")
        return decisions, usage

    async def _interactive(self, ctx: StageContext, description: str, brownfield: bool,
                           repo_context: Optional[str]) -> Tuple[List[Decision], TokenUsage]:
        expected = expected_areas(brownfield)
        decisions: List[Decision] = []
        usage = TokenUsage()
        tools = "Read,Glob,Grep" if ctx.project and not repo_context else ""

        for round_no in range(1, MAX_ROUNDS + 1):
            if is_fully_covered(compute_coverage(decisions, expected)):
                ctx.log("[clarify] all areas covered")
                break
            ctx.log(f"[clarify] generating question {round_no}...")
            prompt = build_question_prompt(description, decisions, brownfield, repo_context)
            try:
                data, call_usage = await ctx.runner.json(prompt, "clarify", cwd=ctx.project, allow_tools=tools)
            except RateLimitedError:
                ctx.log("[clarify] rate limited, saving progress")
                break
            usage.add(call_usage)
            if not isinstance(data, dict) or data.get("done"):
                ctx.log("[clarify] model reports coverage is sufficient")
                break
            options = [o for o in data.get("options") or [] if isinstance(o, dict)]
            if not data.get("question") or len(options) < 2:
                ctx.log("[clarify] invalid question, retrying...")
                continue

            area = data.get("area") or OTHER_AREA
            answer = await ctx.on_question({"area": area, "question": data["question"], "options": options})
            if not answer or not answer.strip():
                ctx.log("[clarify] empty answer, skipping")
                continue
            chosen = next((o for o in options if o.get("label") == answer), {"label": answer.strip()})
            decisions.append(Decision(
                area=area,
                question=data["question"],
                answer=str(chosen.get("label", "")),
                reason=str(chosen.get("reason", "") or ""),
            ))
        return decisions, usage
