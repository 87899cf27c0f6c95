"""
UX review: a second gate for projects with a UI.

Projects without a detectable frontend, static sites without a dev command
and projects whose dev server will not start are skipped. Otherwise an agent
reviews the running app; the gate passes at score >= 6 with no critical
usability issue.
"""
from __future__ import annotations

from typing import Any, Dict

from ..errors import JsonExtractionError
from ..frontend import detect_frontend, start_dev_server
from ..models import StageResult
from ..parsers import extract_json
from .base import Stage, StageContext

PASS_SCORE = 6

UX_PROMPT = """You are a UX expert reviewing a running web application as a first-time user.

The app is served at {url}. Open it (use any browser tooling available to you,
or fetch pages directly) and try to accomplish the main user goal described in
the specification.

## Specification
{spec}

## Design
{design}{scope}

Evaluate: can the user accomplish the goal, what confuses them, usability
problems with severity, what works well, and whether the app is usable on a
narrow (mobile) viewport.

## Response format (JSON only)
{{"score": 0-10,
  "summary": "...",
  "canUserAccomplishGoal": {{"goal": "...", "result": "yes|partial|no", "blockers": ["..."]}},
  "usabilityIssues": [{{"severity": "critical|major|minor", "description": "...", "where": "...", "fix": "..."}}],
  "confusingElements": ["..."],
  "positives": ["..."],
  "mobile": {{"usable": true, "issues": ["..."]}}}}"""


def _list(value: Any) -> list:
    return value if isinstance(value, list) else []


def parse_ux_review(output: str) -> Dict[str, Any]:
    """Normalize the agent's review; unparseable output is a critical failure."""
    try:
        review = extract_json(output)
    except JsonExtractionError:
        review = None
    if not isinstance(review, dict):
        return {
            "score": 0,
            "summary": "Failed to parse UX review output",
            "canUserAccomplishGoal": {"goal": "", "result": "no", "blockers": ["Review output was not valid JSON"]},
            "usabilityIssues": [{"severity": "critical", "description": "Review output was not valid JSON",
                                 "where": "", "fix": "Re-run the review"}],
            "confusingElements": [],
            "positives": [],
            "mobile": {"usable": True, "issues": []},
        }
    score = review.get("score")
    goal = review.get("canUserAccomplishGoal")
    mobile = review.get("mobile")
    return {
        "score": score if isinstance(score, (int, float)) and not isinstance(score, bool) else 0,
        "summary": review.get("summary") or "",
        "canUserAccomplishGoal": goal if isinstance(goal, dict) else {"goal": "", "result": "no", "blockers": []},
        "usabilityIssues": [i for i in _list(review.get("usabilityIssues")) if isinstance(i, dict)],
        "confusingElements": _list(review.get("confusingElements")),
        "positives": _list(review.get("positives")),
        "mobile": mobile if isinstance(mobile, dict) else {"usable": True, "issues": []},
    }


def format_ux_feedback(review: Dict[str, Any]) -> str:
    parts = []
    for severity, title in (("critical", "Critical Usability Issues"), ("major", "Major Usability Issues")):
        issues = [i for i in review["usabilityIssues"] if i.get("severity") == severity]
        if issues:
            parts.append(f"## {title}\n")
            for issue in issues:
                parts.append(f"- {issue.get('description', '')} ({issue.get('where', '')})")
                if issue.get("fix"):
                    parts.append(f"  Fix: {issue['fix']}")
    goal = review.get("canUserAccomplishGoal") or {}
    if goal.get("result") != "yes":
        parts.append("\n## User Goal Not Met\n")
        parts.append(f"Goal: {goal.get('goal', '')}")
        parts.append(f"Result: {goal.get('result', '')}")
        parts.extend(f"- {b}" for b in goal.get("blockers") or [])
    return "\n".join(parts)


class UxReviewStage(Stage):
    name = "ux-review"

    async def run(self, ctx: StageContext) -> StageResult:
        frontend = detect_frontend(ctx.project)
        if frontend is None:
            ctx.log("[ux-review] not a frontend project, skipping")
            return StageResult.skipped("not a frontend project")
        if frontend.static_only and not frontend.dev_command:
            ctx.log("[ux-review] static project without dev server, skipping")
            return StageResult.skipped("static project without dev server")

        ctx.log(f"[ux-review] frontend detected ({frontend.source}), starting dev server...")
        try:
            server = await start_dev_server(ctx.project, frontend)
        except OSError as e:
            ctx.log(f"[ux-review] dev server failed to start: {e}, skipping")
            return StageResult.skipped("dev server unavailable")

        try:
            prompt = UX_PROMPT.format(
                url=server.url, spec=ctx.spec_text(), design=ctx.design_text(), scope=ctx.scope_text("Review"),
            )
            result = await ctx.runner.agent(
                prompt, "ux-review", task_id=ctx.task_id, cwd=ctx.project, log_name=f"ux-review{ctx.suffix}",
            )
        finally:
            await server.stop()

        review = parse_ux_review(result.stdout)
        ctx.save(f"ux-review{ctx.suffix}.json", review)
        critical = sum(1 for i in review["usabilityIssues"] if i.get("severity") == "critical")
        passed = review["score"] >= PASS_SCORE and critical == 0
        ctx.log(f"[ux-review] result: {'PASS' if passed else 'FAIL'} (score: {review['score']}/10, critical: {critical})")
        if passed:
            return StageResult.passed(review, result.token_usage, review)
        return StageResult.failed(format_ux_feedback(review), review, result.token_usage, review)
