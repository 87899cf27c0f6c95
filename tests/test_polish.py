from __future__ import annotations

import asyncio
import dataclasses
import json

import pytest

from conftest import FakeRunner
from ucmforge.config import PolishConfig
from ucmforge.models import InvocationResult, InvocationStatus, TokenUsage
from ucmforge.stages.polish import PolishStage
from ucmforge.task import Subtask

ISSUE = {"severity": "major", "description": "duplicated parser", "file": "app.py", "suggestion": "extract"}


def _polish_ctx(make_ctx, config, runner, **polish):
    cfg = dataclasses.replace(config, polish=PolishConfig(**{"lenses": ("code_quality",), **polish}))
    ctx = make_ctx(runner)
    ctx.config = cfg
    return ctx


def test_lens_converges_after_two_clean_rounds(make_ctx, config) -> None:
    runner = FakeRunner(json={("polish", "review"): {"issues": []}})
    ctx = _polish_ctx(make_ctx, config, runner)
    result = asyncio.run(PolishStage().run(ctx))

    assert result.is_pass
    assert result.output["lenses"] == [{"lens": "code_quality", "rounds": 2, "issuesFound": 0, "converged": True}]
    assert runner.kinds("agent") == []
    assert json.loads(ctx.load("polish-summary.json"))["totalRounds"] == 2


def test_lens_with_issues_every_round_stops_at_the_cap(make_ctx, config) -> None:
    runner = FakeRunner(json={("polish", "review"): {"issues": [ISSUE]}})
    ctx = _polish_ctx(make_ctx, config, runner)
    result = asyncio.run(PolishStage().run(ctx))

    lens = result.output["lenses"][0]
    assert lens == {"lens": "code_quality", "rounds": 5, "issuesFound": 5, "converged": False}
    # one fix and one test run per round
    assert len(runner.kinds("agent")) == 10
    assert ctx.load("polish-code_quality-round-5.json")
    assert result.output["budgetStop"] is False


def test_failed_test_gate_triggers_test_fix(make_ctx, config) -> None:
    def agent(prompt):
        if prompt.startswith("Run the project's tests"):
            return '{"testsPassed": false, "failures": ["test_parse"]}'
        return "fixed"

    reviews = iter([{"issues": [ISSUE]}, {"issues": []}, {"issues": []}])
    runner = FakeRunner(json={("polish", "review"): lambda p: next(reviews)}, agent={"polish": agent})
    ctx = _polish_ctx(make_ctx, config, runner)
    ctx.subtask = Subtask(id="t2", title="Parser")
    result = asyncio.run(PolishStage().run(ctx))

    prompts = [p for kind, _, _, p in runner.calls if kind == "agent"]
    assert prompts[0].startswith("Fix the review issues")
    assert prompts[2].startswith("Tests failed after the latest polish fixes")
    assert "1. test_parse" in prompts[2]
    assert result.output["lenses"][0]["converged"] is True
    assert ctx.load("polish-summary-t2.json")


@pytest.mark.parametrize("status", [InvocationStatus.TIMEOUT, InvocationStatus.FAILED])
def test_test_runner_that_never_finishes_counts_as_passed(make_ctx, config, status) -> None:
    def agent(prompt):
        if prompt.startswith("Run the project's tests"):
            return InvocationResult(status, stderr="runner died", exit_code=-1)
        return "fixed"

    reviews = iter([{"issues": [ISSUE]}, {"issues": []}, {"issues": []}])
    runner = FakeRunner(json={("polish", "review"): lambda p: next(reviews)}, agent={"polish": agent})
    ctx = _polish_ctx(make_ctx, config, runner)
    result = asyncio.run(PolishStage().run(ctx))

    prompts = [p for kind, _, _, p in runner.calls if kind == "agent"]
    assert len(prompts) == 2
    assert not any(p.startswith("Tests failed after the latest polish fixes") for p in prompts)
    assert result.output["lenses"] == [{"lens": "code_quality", "rounds": 3, "issuesFound": 1, "converged": True}]


def test_total_round_cap_skips_remaining_lenses(make_ctx, config) -> None:
    runner = FakeRunner(json={("polish", "review"): {"issues": [ISSUE]}})
    ctx = _polish_ctx(
        make_ctx, config, runner,
        lenses=("code_quality", "design_consistency", "testing", "security"),
        max_total_rounds=12,
    )
    result = asyncio.run(PolishStage().run(ctx))
    assert [(entry["lens"], entry["rounds"]) for entry in result.output["lenses"]] == [
        ("code_quality", 5), ("design_consistency", 5), ("testing", 2),
    ]
    assert result.output["totalRounds"] == 12


def test_budget_stop(make_ctx, config) -> None:
    runner = FakeRunner(json={("polish", "review"): {"issues": []}})
    ctx = _polish_ctx(make_ctx, config, runner)
    ctx.token_budget = 100
    ctx.dag.add_token_usage(TokenUsage(90, 0))
    result = asyncio.run(PolishStage().run(ctx))

    # the first review costs 5 tokens, which reaches 95% of the budget
    assert result.is_pass
    assert result.output["budgetStop"] is True
    assert result.output["lenses"] == [{"lens": "code_quality", "rounds": 1, "issuesFound": 0, "converged": False}]


def test_unknown_lens_is_rejected(make_ctx, config) -> None:
    ctx = _polish_ctx(make_ctx, config, FakeRunner(), lenses=("vibes",))
    with pytest.raises(ValueError):
        asyncio.run(PolishStage().run(ctx))
