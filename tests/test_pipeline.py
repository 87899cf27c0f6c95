from __future__ import annotations

import asyncio
from typing import Callable, Dict, List, Optional

import pytest

from conftest import FakeRunner
from ucmforge.config import STAGE_ORDER
from ucmforge.errors import StageError
from ucmforge.models import StageResult, TokenUsage
from ucmforge.pipeline import ForgePipeline
from ucmforge.stages import Stage, StageContext, reject
from ucmforge.stages.decompose import DecomposeStage
from ucmforge.task import ABORTED, DONE, FAILED, REVIEW, Subtask

Behavior = Callable[[StageContext], Optional[StageResult]]


class FakeStage(Stage):
    """Writes whatever its contract promises and returns a scripted result."""

    def __init__(self, name: str, executed: List[str], behavior: Optional[Behavior] = None,
                 write_outputs: bool = True):
        self.name = name
        self.executed = executed
        self.behavior = behavior
        self.write_outputs = write_outputs
        self.feedback: List[Optional[str]] = []

    async def run(self, ctx: StageContext) -> StageResult:
        self.executed.append(f"{self.name}{ctx.suffix}")
        self.feedback.append(ctx.feedback)
        result = self.behavior(ctx) if self.behavior else None
        result = result or StageResult.passed({"stage": self.name})
        if self.write_outputs and result.is_pass:
            for name in ctx.config.contract(self.name).produced_names(ctx.suffix):
                ctx.save(name, f"{self.name} output")
        return result


class Harness:
    def __init__(self, config, tmp_path, **behaviors: Behavior):
        self.executed: List[str] = []
        self.events: List[Dict] = []
        self.stages = {
            name: FakeStage(name, self.executed, behaviors.get(name.replace("-", "_")))
            for name in ("intake",) + STAGE_ORDER
        }
        self.state_dir = tmp_path / "tasks"
        self.pipeline = ForgePipeline(
            config, runner=FakeRunner(), state_dir=self.state_dir, stages=self.stages,
            on_event=lambda name, data: self.events.append({"type": name, **data}),
        )

    def run(self, text: str = "Fix the typo", **kwargs):
        return asyncio.run(self.pipeline.run(text, **kwargs))

    def resume(self, task_id: str, from_stage: Optional[str] = None, **kwargs):
        return asyncio.run(self.pipeline.resume(task_id, from_stage, **kwargs))

    def event_types(self) -> List[str]:
        return [e["type"] for e in self.events]


def _history(dag) -> Dict[str, List[str]]:
    statuses: Dict[str, List[str]] = {}
    for entry in dag.stage_history:
        statuses.setdefault(entry["stage"], []).append(entry["status"])
    return statuses


# ============================================================================
# Stage selection
# ============================================================================


def test_trivial_pipeline_runs_exactly_its_stages(config, tmp_path) -> None:
    h = Harness(config, tmp_path)
    dag = h.run(pipeline="trivial")

    assert h.executed == ["implement", "verify", "deliver"]
    assert dag.status == DONE
    history = _history(dag)
    for stage in ("clarify", "specify", "decompose", "design", "ux-review", "polish", "integrate"):
        assert history[stage] == ["skip"]
        assert h.pipeline.results[stage].output["skipped"] is True
    assert h.pipeline.artifacts.load(dag.id, "task.md") == "Fix the typo"
    assert h.pipeline.artifacts.load(dag.id, "verify-iter-1.json")


def test_intake_chooses_pipeline_when_none_given(config, tmp_path) -> None:
    h = Harness(config, tmp_path, intake=lambda ctx: StageResult.passed({"complexity": "small"}))
    dag = h.run("Add a settings page")
    assert h.executed == ["intake", "design", "implement", "verify", "deliver"]
    assert dag.pipeline == "small"


def test_custom_stage_list(config, tmp_path) -> None:
    h = Harness(config, tmp_path)
    dag = h.run(pipeline="design,implement")
    assert h.executed == ["design", "implement", "deliver"]
    assert dag.status == DONE


def test_unknown_pipeline_label_raises_before_running(config, tmp_path) -> None:
    h = Harness(config, tmp_path)
    with pytest.raises(ValueError):
        h.run(pipeline="gigantic")
    assert h.executed == []


def test_deliver_review_status_is_kept(config, tmp_path) -> None:
    def deliver(ctx):
        ctx.dag.status = REVIEW
        return None

    dag = Harness(config, tmp_path, deliver=deliver).run(pipeline="trivial")
    assert dag.status == REVIEW


# ============================================================================
# Large pipelines and subtasks
# ============================================================================


def test_large_without_subtasks_runs_as_single_task(config, tmp_path) -> None:
    h = Harness(config, tmp_path, decompose=lambda ctx: StageResult.skipped("no subtasks generated"))
    dag = h.run(pipeline="large")

    assert h.pipeline.results["decompose"].output["skipped"] is True
    assert h.executed == list(STAGE_ORDER)
    assert dag.tasks == []
    assert dag.status == DONE


def test_large_with_subtasks_runs_them_in_wave_order(config, tmp_path) -> None:
    def decompose(ctx):
        ctx.dag.add_task(Subtask(id="t2", title="UI", blocked_by=["t1"]))
        ctx.dag.add_task(Subtask(id="t1", title="API"))
        return None

    h = Harness(config, tmp_path, decompose=decompose)
    dag = h.run(pipeline="large")

    per_subtask = ["design", "implement", "verify", "ux-review", "polish"]
    assert h.executed == (
        ["clarify", "specify", "decompose"]
        + [f"{s}-t1" for s in per_subtask]
        + [f"{s}-t2" for s in per_subtask]
        + ["integrate", "deliver"]
    )
    assert [t.status for t in dag.tasks] == [DONE, DONE]
    assert "verify-t2" in h.pipeline.results
    assert "subtask:complete" in h.event_types()


def test_failed_subtask_does_not_stop_the_others(config, tmp_path) -> None:
    def decompose(ctx):
        ctx.dag.add_task(Subtask(id="t1", title="API"))
        ctx.dag.add_task(Subtask(id="t2", title="UI"))
        return None

    calls = []

    def design(ctx):
        calls.append(ctx.subtask.id)
        if ctx.subtask.id == "t1":
            raise StageError("design failed: timeout")
        return None

    h = Harness(config, tmp_path, decompose=decompose, design=design)
    dag = h.run(pipeline="large")

    assert calls == ["t1", "t2"]
    assert dag.get_task("t1").status == FAILED
    assert dag.get_task("t2").status == DONE
    assert any("subtask t1 failed" in w for w in dag.warnings)
    assert h.executed[-2:] == ["integrate", "deliver"]


# ============================================================================
# Contracts
# ============================================================================


def test_unmet_requirement_fails_before_stage_runs(config, tmp_path) -> None:
    h = Harness(config, tmp_path)
    dag = h.run(pipeline="decompose")

    assert h.executed == []
    assert dag.status == FAILED
    assert "spec.md" in dag.error
    assert dag.stage_history[-1]["stage"] == "decompose"
    assert dag.stage_history[-1]["status"] == "fail"


def test_missing_produced_artifact_fails_the_task(config, tmp_path) -> None:
    h = Harness(config, tmp_path)
    h.stages["verify"].write_outputs = False
    dag = h.run(pipeline="trivial")

    assert dag.status == FAILED
    assert "verify.json" in dag.error
    assert "deliver" not in h.executed


def test_stage_exception_marks_task_failed(config, tmp_path) -> None:
    def implement(ctx):
        raise RuntimeError("disk full")

    h = Harness(config, tmp_path, implement=implement)
    dag = h.run(pipeline="trivial")

    assert dag.status == FAILED
    assert dag.error == "disk full"
    assert "pipeline:error" in h.event_types()
    assert dag.current_stage is None


# ============================================================================
# Gate loop
# ============================================================================


def test_gate_feeds_verify_failure_back_into_implement(config, tmp_path) -> None:
    verdicts = iter([StageResult.failed("## Test failures\ntest_a"), None])
    h = Harness(config, tmp_path, verify=lambda ctx: next(verdicts))
    dag = h.run(pipeline="trivial")

    assert h.executed == ["implement", "verify", "implement", "verify", "deliver"]
    assert h.stages["implement"].feedback == [None, "## Test failures\ntest_a"]
    assert dag.status == DONE


def test_gate_gives_up_after_max_iterations(config, tmp_path) -> None:
    h = Harness(config, tmp_path, verify=lambda ctx: StageResult.failed("## Test failures\ntest_a"))
    dag = h.run(pipeline="trivial")

    assert h.executed == ["implement", "verify"] * 3
    assert dag.status == FAILED
    assert dag.feedback == "## Test failures\ntest_a"
    assert any("verify loop exhausted after 3 iterations (test_failures)" in w for w in dag.warnings)
    assert dag.last_failed_stage() == "implement"
    assert h.pipeline.artifacts.load_json(dag.id, "verify-iter-3.json")["passed"] is False
    assert h.event_types().count("gate:iteration") == 3


def test_ux_review_failure_loops_back(config, tmp_path) -> None:
    ux = iter([StageResult.failed("## Critical Usability Issues\n- no submit button"), None])
    h = Harness(config, tmp_path, ux_review=lambda ctx: next(ux))
    dag = h.run(pipeline="implement,verify,ux-review")

    assert h.executed == ["implement", "verify", "ux-review", "implement", "verify", "ux-review", "deliver"]
    assert h.stages["implement"].feedback[1].startswith("## Critical Usability Issues")
    assert dag.status == DONE


# ============================================================================
# Budget, abort, resume
# ============================================================================


def test_budget_exceeded_stops_the_task(config, tmp_path) -> None:
    def expensive(ctx):
        return StageResult.passed(token_usage=TokenUsage(10, 10))

    h = Harness(config, tmp_path, implement=expensive, verify=expensive)
    dag = h.run(pipeline="trivial", token_budget=25)

    assert h.executed == ["implement", "verify"]
    assert dag.status == FAILED
    assert dag.total_tokens() == 40
    assert "notice:budget" in h.event_types()
    assert "warning:budget" in h.event_types()
    assert any("token budget exceeded" in w for w in dag.warnings)


def test_abort_stops_before_next_stage(config, tmp_path) -> None:
    h = Harness(config, tmp_path)

    def implement(ctx):
        h.pipeline.abort()
        return None

    h.stages["implement"].behavior = implement
    dag = h.run(pipeline="small")
    assert h.executed == ["design", "implement"]
    assert dag.status == ABORTED


def test_resume_after_rejection_reuses_feedback(config, tmp_path) -> None:
    def deliver(ctx):
        ctx.dag.status = REVIEW
        return None

    h = Harness(config, tmp_path, deliver=deliver)
    first = h.run(pipeline="small")
    reject(first.id, "Use the existing button styles", state_dir=h.state_dir, artifacts=h.pipeline.artifacts)

    h.executed.clear()
    resumed = h.resume(first.id)
    assert h.executed == ["implement", "verify", "deliver"]
    assert h.stages["implement"].feedback[-1] == "Use the existing button styles"
    assert resumed.status == REVIEW


def test_resume_starts_at_last_failed_stage(config, tmp_path) -> None:
    attempts = {"verify": 0}

    def verify(ctx):
        attempts["verify"] += 1
        return StageResult.failed("## Review issues\n- [major] naming") if attempts["verify"] <= 3 else None

    h = Harness(config, tmp_path, verify=verify)
    failed = h.run(pipeline="small")
    assert failed.status == FAILED

    h.executed.clear()
    resumed = h.resume(failed.id)
    assert h.executed == ["implement", "verify", "deliver"]
    assert resumed.status == DONE
    assert resumed.error is None


def test_resume_after_rejected_decomposition_rebuilds_subtasks(config, tmp_path) -> None:
    replies = [
        {"tasks": [{"id": "t1", "title": "API"}, {"id": "t2", "title": "UI", "blockedBy": ["ghost"]}]},
        {"tasks": [{"id": "t1", "title": "API"}, {"id": "t2", "title": "UI", "blockedBy": ["t1"]}]},
    ]
    h = Harness(config, tmp_path)
    h.pipeline.stages["decompose"] = DecomposeStage()
    h.pipeline.runner.json_replies["decompose"] = lambda prompt: replies.pop(0)

    failed = h.run(pipeline="large")
    assert failed.status == FAILED
    assert "dangling" in failed.error
    assert failed.tasks == []

    h.executed.clear()
    resumed = h.resume(failed.id)
    assert resumed.status == DONE
    assert [t.id for t in resumed.tasks] == ["t1", "t2"]
    assert [t.status for t in resumed.tasks] == [DONE, DONE]
    assert h.executed[:2] == ["design-t1", "implement-t1"]


def test_resume_rejects_stage_outside_pipeline(config, tmp_path) -> None:
    h = Harness(config, tmp_path)
    dag = h.run(pipeline="trivial")
    with pytest.raises(ValueError):
        h.resume(dag.id, "polish")
