"""
Specify: write spec.md from recorded decisions.

medium and large pipelines fan out three workers and converge their drafts;
smaller pipelines use one call. The draft is then validated up to
MAX_VALIDATION_ATTEMPTS times; each failed validation saves a gap report and
regenerates with the gaps as feedback. Persistent gaps only add a warning.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List, Tuple

from ..errors import ForgeError, JsonExtractionError, LLMError, RateLimitedError
from ..models import StageResult, TokenUsage
from ..parallel import read_survivors
from ..qna import Decision, format_requirements
from .base import Stage, StageContext

MAX_VALIDATION_ATTEMPTS = 2
FAN_OUT_PIPELINES = ("medium", "large")
WORKER_COUNT = 3

SPEC_PROMPT = """Write a requirements specification in Markdown from the decisions below.
Output only the Markdown body, without a code fence.

## Structure

### 1. Overview
- Purpose, target users, scale

### 2. Functional requirements
EARS notation: WHEN [condition/event] THE SYSTEM SHALL [behavior]
For each feature cover the happy path, edge cases (boundaries, empty input,
large data) and failure behavior.

### 3. Non-functional requirements
- Performance, security, compatibility, error-handling policy

### 4. Scope boundaries
- What this project explicitly does not do

### 5. Glossary

## Rules
- Do not add features the decisions do not ask for.
- Mark undecided points as [NEEDS CLARIFICATION: description].
- Do not use tools. Output Markdown text only."""

VALIDATION_PROMPT = """Validate the requirements specification below.

## Criteria
1. Volume: is every behavior specific enough to implement?
2. Edge cases: are failures, boundaries and exceptions stated?
3. Interfaces: are inputs, outputs, signatures and data structures concrete?
4. Scope: is what the project does not do stated?
5. Consistency: no contradictions between features, no term drift?
6. Non-functional: performance, security, compatibility, error policy present?
7. Testability: are success/failure criteria clear enough to write tests?

## Response format (JSON only)
{"pass": true, "gaps": [{"criterion": "criterion name", "detail": "what exactly is missing"}]}

No gaps means pass: true."""

REGENERATE_PROMPT = """The requirements specification below has gaps. Fix them.

## Current specification
{spec}

## Gaps
{gaps}

Write the complete corrected specification in Markdown (the whole document,
not only the fixed parts)."""


def load_decisions(ctx: StageContext) -> List[Decision]:
    raw = ctx.load("decisions.json")
    decisions: List[Decision] = []
    if raw:
        try:
            decisions = [Decision.from_dict(d) for d in json.loads(raw) if isinstance(d, dict)]
        except (json.JSONDecodeError, TypeError):
            decisions = []
    if not decisions:
        text = ctx.load("decisions.md") or ctx.load("task.md")
        if text:
            decisions = [Decision(area="Task goal", question="Requirements", answer=text)]
    return decisions


def decisions_markdown(decisions: List[Decision]) -> str:
    lines = []
    for d in decisions:
        lines.append(f"- **[{d.area}] {d.question}**\n  -> {d.answer}")
        if d.reason:
            lines.append(f"  (why: {d.reason})")
    return "\n".join(lines)


def format_gap_report(gaps: List[Dict[str, Any]]) -> str:
    md = "# Gap Report\n\nValidation found the following gaps.\n\n"
    for gap in gaps:
        md += f"- **{gap.get('criterion', '?')}**: {gap.get('detail', '')}\n"
    return md


class SpecifyStage(Stage):
    name = "specify"

    async def run(self, ctx: StageContext) -> StageResult:
        decisions = load_decisions(ctx)
        prompt = (
            f"{SPEC_PROMPT}\n\n## Decisions\n\n{decisions_markdown(decisions)}\n\n"
            + format_requirements(decisions)
        )
        usage = TokenUsage()

        if ctx.dag.pipeline in FAN_OUT_PIPELINES:
            spec, gen_usage = await self._generate_fan_out(ctx, prompt)
        else:
            ctx.log("[specify] generating spec (single)...")
            spec, gen_usage = await ctx.runner.text(prompt, "specify", "worker")
        usage.add(gen_usage)

        spec, val_usage = await self._validate(ctx, spec)
        usage.add(val_usage)

        ctx.save("spec.md", spec)
        ctx.log("[specify] spec saved")
        return StageResult.passed(spec, usage)

    async def _generate_fan_out(self, ctx: StageContext, prompt: str) -> Tuple[str, TokenUsage]:
        ctx.log(f"[specify] generating spec with {WORKER_COUNT} workers + converge...")
        output_dir = ctx.artifacts.root / ctx.task_id / "rsa-spec"

        def progress(event: Dict[str, Any]) -> None:
            if event["type"] in ("done", "failed", "timeout", "rate_limited"):
                ctx.log(f"[specify] worker {event['id']} {event['type']}")

        batch = await ctx.runner.fan_out(
            prompt, "specify", "worker", count=WORKER_COUNT, cwd=ctx.project,
            output_dir=output_dir, on_progress=progress,
        )
        usage = TokenUsage().add(batch.token_usage)
        survivors = read_survivors(batch)
        if not survivors:
            raise ForgeError("all spec workers failed")
        ctx.log(f"[specify] converging {len(survivors)} drafts...")
        text, merge_usage = await ctx.runner.converge(prompt, survivors, "specify", "converge")
        return text, usage.add(merge_usage)

    async def _validate(self, ctx: StageContext, spec: str) -> Tuple[str, TokenUsage]:
        usage = TokenUsage()
        tools = "Read,Glob,Grep" if ctx.project else ""
        for attempt in range(1, MAX_VALIDATION_ATTEMPTS + 1):
            ctx.log(f"[specify] validating spec (attempt {attempt})...")
            try:
                data, val_usage = await ctx.runner.json(
                    f"{VALIDATION_PROMPT}\n\n## Specification\n\n{spec}",
                    "specify", "worker", cwd=ctx.project, allow_tools=tools,
                )
            except RateLimitedError:
                raise
            except (LLMError, JsonExtractionError) as e:
                ctx.log(f"[specify] validation error: {e}")
                break
            usage.add(val_usage)
            if not isinstance(data, dict):
                data = {}
            if data.get("pass"):
                ctx.log("[specify] validation passed")
                ctx.save("validation.json", data)
                break

            gaps = [g for g in data.get("gaps") or [] if isinstance(g, dict)]
            ctx.log(f"[specify] validation failed: {len(gaps)} gaps")
            ctx.save(f"gap-report-{attempt}.md", format_gap_report(gaps))
            if attempt < MAX_VALIDATION_ATTEMPTS:
                ctx.log("[specify] regenerating spec with gap feedback...")
                gap_text = "\n".join(f"- {g.get('criterion', '?')}: {g.get('detail', '')}" for g in gaps)
                spec, regen_usage = await ctx.runner.text(
                    REGENERATE_PROMPT.format(spec=spec, gaps=gap_text),
                    "specify", "converge", cwd=ctx.project, allow_tools=tools,
                )
                usage.add(regen_usage)
            else:
                ctx.warn(f"spec validation failed after {MAX_VALIDATION_ATTEMPTS} attempts")
        return spec, usage
