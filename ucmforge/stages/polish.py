"""
Polish: iterative multi-lens review and fix.

Each lens (code quality, design consistency, testing, security) loops
review -> fix -> test gate until the configured number of consecutive clean
rounds, bounded per lens and globally. Polish never fails the task; its
outcome is recorded in polish-summary.json.
"""
from __future__ import annotations

from typing import Any, Dict, List

from ..models import LensReview, PolishIssue, StageResult, TokenUsage
from .base import Stage, StageContext, section
from .verify import run_test_agent

LENS_PROMPTS: Dict[str, Dict[str, str]] = {
    "code_quality": {
        "label": "Code Quality",
        "focus": """Review for code quality:
- Are variable, function and file names clear and consistent?
- Is function complexity reasonable (long functions, deep nesting)?
- Is there duplicated code?
- Is error handling missing or inappropriate anywhere?
- Is the style consistent with the project's conventions?""",
    },
    "design_consistency": {
        "label": "Design Consistency",
        "focus": """Review for design consistency:
- Does the implementation match the design document?
- Are architectural patterns consistent with the existing project?
- Are module dependencies sensible (no cycles, no needless coupling)?
- Are interfaces and APIs consistent and predictable?
- Are concerns well separated?""",
    },
    "testing": {
        "label": "Testing",
        "focus": """Review for testing:
- Is the core logic covered by tests?
- Are edge cases tested?
- Are error paths tested?
- Were tests added or updated for the changed code?
- Are tests stable and independent of external services?""",
    },
    "security": {
        "label": "Security",
        "focus": """Review for security:
- Is user input validated and escaped?
- Any SQL injection, command injection or XSS?
- Any path traversal (user input used in file paths)?
- Hardcoded passwords, API keys or tokens?
- Unsafe deserialization or eval?""",
    },
}

REVIEW_PROMPT = """Review the project's code from the perspective below.
Check the actual files with Read/Glob/Grep and report only concrete issues.
Do not report issues based on guesses or assumptions.

## Review lens: {label}
{focus}

{context}
## Response format (JSON only)
{{"issues": [{{"severity": "major|minor", "description": "...", "file": "path", "line": 0, "suggestion": "..."}}],
  "summary": "..."}}

Return "issues": [] when there is nothing to fix."""

FIX_PROMPT = """Fix the review issues below one by one. Do not break existing behaviour.

## Issues ({lens})
{issues}

When done, briefly report which files you changed and how."""

TEST_FIX_PROMPT = """Tests failed after the latest polish fixes. The regression was most likely
caused by those recent changes.

## Failures
{failures}

Fix the code so the tests pass."""


def format_issues(issues: List[PolishIssue]) -> str:
    lines = []
    for n, issue in enumerate(issues, 1):
        lines.append(
            f"{n}. [{issue.severity}] {issue.file}\n"
            f"   {issue.description}\n"
            f"   Suggestion: {issue.suggestion or 'none'}"
        )
    return "\n\n".join(lines)


class PolishStage(Stage):
    name = "polish"

    def _budget_reached(self, ctx: StageContext, usage: TokenUsage) -> bool:
        budget = ctx.token_budget
        if budget <= 0:
            return False
        used = ctx.dag.total_tokens() + usage.total
        return used / budget >= ctx.config.polish.budget_abort_ratio

    async def run(self, ctx: StageContext) -> StageResult:
        cfg = ctx.config.polish
        usage = TokenUsage()
        context = section("Design", ctx.design_text()) + section("Specification", ctx.spec_text())
        context += ctx.scope_text("Review the changes of").lstrip("\n")

        total_rounds = 0
        total_issues = 0
        lens_results: List[Dict[str, Any]] = []
        budget_stop = False

        ctx.log("[polish] starting multi-lens polish...")
        for lens in cfg.lenses:
            if lens not in LENS_PROMPTS:
                raise ValueError(f"unknown polish lens: {lens}")
            if total_rounds >= cfg.max_total_rounds:
                ctx.log(f"[polish] max total rounds ({cfg.max_total_rounds}) reached, skipping remaining lenses")
                break
            if self._budget_reached(ctx, usage):
                ctx.log("[polish] token budget limit reached, stopping early")
                budget_stop = True
                break

            max_rounds = min(cfg.max_rounds_per_lens, cfg.max_total_rounds - total_rounds)
            rounds = issues_found = clean = 0
            ctx.log(f"[polish:{lens}] starting (max {max_rounds} rounds)")

            for round_no in range(1, max_rounds + 1):
                if self._budget_reached(ctx, usage):
                    ctx.log(f"[polish:{lens}] token budget limit reached, stopping lens")
                    budget_stop = True
                    break
                rounds += 1
                review = await self._review(ctx, lens, round_no, context, usage)
                ctx.save(f"polish-{lens}-round-{round_no}{ctx.suffix}.json", review.to_dict())

                if not review.issues:
                    clean += 1
                    ctx.log(f"[polish:{lens}] round {round_no}: 0 issues (clean {clean}/{cfg.convergence_threshold})")
                    if clean >= cfg.convergence_threshold:
                        ctx.log(f"[polish:{lens}] converged")
                        break
                    continue

                clean = 0
                issues_found += len(review.issues)
                ctx.log(f"[polish:{lens}] round {round_no}: {len(review.issues)} issues found, fixing...")
                fix = await ctx.runner.agent(
                    FIX_PROMPT.format(lens=lens, issues=format_issues(review.issues)), "polish", "fix",
                    task_id=ctx.task_id, cwd=ctx.project,
                    log_name=f"polish-fix-{lens}-{round_no}{ctx.suffix}",
                )
                usage.add(fix.token_usage)
                await self._test_gate(ctx, lens, round_no, usage)

            total_rounds += rounds
            total_issues += issues_found
            lens_results.append({
                "lens": lens,
                "rounds": rounds,
                "issuesFound": issues_found,
                "converged": clean >= cfg.convergence_threshold,
            })
            if budget_stop:
                break

        summary = {
            "lenses": lens_results,
            "totalRounds": total_rounds,
            "totalIssuesFound": total_issues,
            "budgetStop": budget_stop,
        }
        ctx.save(f"polish-summary{ctx.suffix}.json", summary)
        ctx.log(f"[polish] complete: {total_rounds} rounds, {total_issues} issues found "
                f"across {len(lens_results)} lenses")
        return StageResult.passed(summary, usage, summary)

    async def _review(self, ctx: StageContext, lens: str, round_no: int, context: str,
                      usage: TokenUsage) -> LensReview:
        ctx.log(f"[polish:{lens}] round {round_no}: review")
        prompt = REVIEW_PROMPT.format(context=context, **LENS_PROMPTS[lens])
        data, review_usage = await ctx.runner.json(
            prompt, "polish", "review", cwd=ctx.project, allow_tools="Read,Glob,Grep",
        )
        usage.add(review_usage)
        return LensReview.from_dict(lens, round_no, data)

    async def _test_gate(self, ctx: StageContext, lens: str, round_no: int, usage: TokenUsage) -> None:
        ctx.log(f"[polish:{lens}] round {round_no}: test gate")
        passed, failures, process_ran, test_usage = await run_test_agent(
            ctx, "polish", f"polish-test-{lens}-{round_no}{ctx.suffix}",
        )
        usage.add(test_usage)
        # A test runner that never finished is not a regression.
        if not process_ran or passed:
            return
        ctx.log(f"[polish:{lens}] round {round_no}: test gate FAILED, fixing tests...")
        failure_list = "\n".join(f"{n}. {f}" for n, f in enumerate(failures, 1))
        result = await ctx.runner.agent(
            TEST_FIX_PROMPT.format(failures=failure_list), "polish", "fix",
            task_id=ctx.task_id, cwd=ctx.project,
            log_name=f"polish-testfix-{lens}-{round_no}{ctx.suffix}",
        )
        usage.add(result.token_usage)
