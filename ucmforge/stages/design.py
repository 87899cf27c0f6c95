"""Design: an agent reads the codebase and writes an implementation plan."""
from __future__ import annotations

from ..errors import JsonExtractionError, LLMError, RateLimitedError, StageError
from ..models import InvocationStatus, StageResult, TokenUsage
from .base import Stage, StageContext, section

DESIGN_PROMPT = """You are a software design expert. Analyze the specification and the project
code below and write an implementation plan.

{context}## Instructions
1. Explore the codebase with the Read, Glob and Grep tools.
2. Identify the files that must change to satisfy each requirement.
3. Write a design document with concrete changes, implementation order and risks.

## Output format (Markdown, no code fence)
### 1. Affected files
- Per file, a summary of the change
### 2. Implementation order
- Step-by-step plan in dependency order
### 3. Risks
- Potential problems and mitigations
### 4. Test plan
- How to verify and the expected results"""

COVERAGE_PROMPT = """Check that every requirement of the specification is reflected in the design.

## Specification
{spec}

## Design
{design}

## Response format (JSON only)
{{"covered": true, "gaps": ["missing requirement"], "summary": "..."}}"""


class DesignStage(Stage):
    name = "design"

    async def run(self, ctx: StageContext) -> StageResult:
        spec = ctx.spec_text()
        context = (
            section("Specification", spec)
            + section("Decisions", ctx.load("decisions.json"))
            + section("Related knowledge", ctx.knowledge_text(spec[:200]) if ctx.project else "")
        )
        if ctx.subtask:
            context += ctx.scope_text("Design for").lstrip("\n") + (
                "\nStay inside this subtask; do not design other subtasks' areas.\n\n"
            )

        result = await ctx.runner.agent(
            DESIGN_PROMPT.format(context=context), "design",
            task_id=ctx.task_id, cwd=ctx.project, log_name=f"design{ctx.suffix}",
        )
        if result.status != InvocationStatus.DONE:
            raise StageError(f"design failed: {result.status.value} ({result.stderr[:200]})")
        usage = TokenUsage().add(result.token_usage)
        design = result.stdout

        ctx.log("[design] validating design against spec...")
        try:
            validation, val_usage = await ctx.runner.json(
                COVERAGE_PROMPT.format(spec=spec[:3000], design=design[:5000]), "verify",
            )
            usage.add(val_usage)
            if not isinstance(validation, dict):
                validation = {}
            ctx.save(f"design-validation{ctx.suffix}.json", validation)
            gaps = [str(g) for g in validation.get("gaps") or []]
            if not validation.get("covered") and gaps:
                ctx.warn(f"design gaps: {', '.join(gaps)}")
            else:
                ctx.log("[design] validation: all requirements covered")
        except RateLimitedError:
            raise
        except (LLMError, JsonExtractionError) as e:
            ctx.log(f"[design] validation skipped: {e}")

        ctx.save(f"design{ctx.suffix}.md", design)
        return StageResult.passed(design, usage)
