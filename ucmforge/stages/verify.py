"""
Verify: the implement gate.

Two checks: an agent runs the project's tests and reports JSON, then a
self-review compares the code with spec and design against a fixed security
checklist. The gate passes only when tests pass, the review passes and no
issue is critical. Otherwise the failures become one feedback document for the
next implement attempt.
"""
from __future__ import annotations

from typing import Any, Dict, List, Tuple

from ..errors import JsonExtractionError
from ..models import InvocationStatus, StageResult, TokenUsage
from ..parsers import extract_json
from .base import Stage, StageContext

TEST_PROMPT = """Run the project's tests.

1. If the project defines a test command (package.json script, Makefile, pytest, ...) run it.
2. Otherwise run any test files you find.
3. If there are none, check basic health (lint, type check, build).

Report JSON only:
{"testsPassed": true, "summary": "test result summary", "failures": ["failure 1", "failure 2"]}"""

REVIEW_PROMPT = """Review the implementation against the specification and design below.

## Specification
{spec}

## Design
{design}{scope}

## Criteria
1. Every requirement in the specification is implemented.
2. The changes in the design are reflected.
3. Edge cases are handled.
4. Security checklist:
   - SQL injection, command injection, XSS
   - hardcoded passwords or API keys
   - missing input validation
   - path traversal
   - unsafe deserialization
5. Code quality (readability, consistency).

## Response format (JSON only)
{{"passed": true, "issues": [{{"severity": "critical|major|minor", "description": "...", "file": "path"}}], "summary": "..."}}"""


async def run_test_agent(ctx: StageContext, stage: str, log_name: str) -> Tuple[bool, List[str], bool, TokenUsage]:
    """Return (tests_passed, failures, process_ran, usage).

    A process that never reaches done counts as failed tests here; callers
    that treat runner failure as a pass check process_ran.
    """
    result = await ctx.runner.agent(TEST_PROMPT, stage, task_id=ctx.task_id, cwd=ctx.project, log_name=log_name)
    process_ran = result.status == InvocationStatus.DONE
    passed, failures = process_ran, []
    if process_ran:
        try:
            parsed = extract_json(result.stdout)
        except JsonExtractionError:
            parsed = None
        if isinstance(parsed, dict):
            passed = parsed.get("testsPassed") is not False
            failures = [str(f) for f in parsed.get("failures") or []]
    elif result.stderr:
        failures = [f"test run {result.status.value}: {result.stderr[:200]}"]
    return passed, failures, process_ran, result.token_usage


def build_feedback(tests_passed: bool, failures: List[str], review_failed: bool,
                   issues: List[Dict[str, Any]]) -> str:
    parts = []
    if not tests_passed:
        parts.append("## Test failures\n" + "\n".join(failures))
    if review_failed:
        lines = [f"- [{i.get('severity', '?')}] {i.get('description', '')} ({i.get('file', '')})" for i in issues]
        parts.append("## Review issues\n" + "\n".join(lines))
    return "\n\n".join(parts)


class VerifyStage(Stage):
    name = "verify"

    async def run(self, ctx: StageContext) -> StageResult:
        usage = TokenUsage()

        ctx.log("[verify] running tests...")
        tests_passed, failures, _, test_usage = await run_test_agent(ctx, "verify", f"verify-test{ctx.suffix}")
        usage.add(test_usage)

        ctx.log("[verify] running self-review...")
        review, review_usage = await ctx.runner.json(
            REVIEW_PROMPT.format(
                spec=ctx.spec_text(), design=ctx.design_text(), scope=ctx.scope_text("Review"),
            ),
            "verify", cwd=ctx.project, allow_tools="Read,Glob,Grep",
        )
        usage.add(review_usage)
        if not isinstance(review, dict):
            review = {}
        issues = [i for i in review.get("issues") or [] if isinstance(i, dict)]
        review_passed = review.get("passed") is not False
        critical = [i for i in issues if str(i.get("severity", "")).lower() == "critical"]
        passed = tests_passed and review_passed and not critical

        report = {
            "passed": passed,
            "testsPassed": tests_passed,
            "reviewPassed": review_passed,
            "testFailures": failures,
            "issues": issues,
            "summary": review.get("summary", ""),
        }
        ctx.save(f"verify{ctx.suffix}.json", report)
        ctx.log(f"[verify] result: {'PASS' if passed else 'FAIL'}")

        if passed:
            return StageResult.passed(report, usage, report)
        feedback = build_feedback(tests_passed, failures, not review_passed or bool(critical), issues)
        return StageResult.failed(feedback, report, usage, report)
