from __future__ import annotations

import asyncio
import json

import pytest

from conftest import FakeRunner
from ucmforge.errors import ForgeError, ManualResolutionRequired, MergeConflictError, StageError
from ucmforge.models import InvocationResult, InvocationStatus, StageStatus
from ucmforge.stages import STAGES, approve, reject
from ucmforge.stages.clarify import ClarifyStage
from ucmforge.stages.decompose import DecomposeStage
from ucmforge.stages.deliver import DeliverStage
from ucmforge.stages.design import DesignStage
from ucmforge.stages.implement import ImplementStage
from ucmforge.stages.integrate import IntegrateStage
from ucmforge.stages.intake import IntakeStage
from ucmforge.stages.specify import SpecifyStage
from ucmforge.stages.ux_review import UxReviewStage, format_ux_feedback, parse_ux_review
from ucmforge.stages.verify import VerifyStage
from ucmforge.task import DONE, FAILED, REJECTED, REVIEW, Subtask, TaskDag


class FakeWorktrees:
    def __init__(self, merge_error=None):
        self.merge_error = merge_error
        self.merged = 0

    async def load_workspace(self, task_id):
        return {"projects": [{"project": "app", "origin": "/tmp/origin"}]}

    async def get_worktree_diff(self, task_id, projects):
        return [{"project": "app", "diff": "+print('hi')"}]

    async def merge_worktrees(self, task_id, projects):
        self.merged += 1
        if self.merge_error:
            raise self.merge_error


def test_registry_covers_every_stage() -> None:
    assert set(STAGES) == {
        "intake", "clarify", "specify", "decompose", "design", "implement",
        "verify", "ux-review", "polish", "integrate", "deliver",
    }


# ============================================================================
# intake / clarify / decompose
# ============================================================================


def test_intake_normalizes_unknown_complexity(make_ctx) -> None:
    runner = FakeRunner(json={"intake": {"complexity": "enormous", "title": "Login"}})
    ctx = make_ctx(runner, input_text="Add a login form")
    result = asyncio.run(IntakeStage().run(ctx))
    assert result.output["complexity"] == "small"
    assert result.output["kind"] == "feature"
    assert ctx.load("task.md").startswith("# Login")
    assert ctx.dag.title == "Login"


def test_intake_reads_markdown_input_file(make_ctx, tmp_path) -> None:
    request = tmp_path / "request.md"
    request.write_text("Fix the typo in README", encoding="utf-8")
    runner = FakeRunner(json={"intake": {"complexity": "trivial"}})
    ctx = make_ctx(runner, input_text=str(request))
    result = asyncio.run(IntakeStage().run(ctx))
    assert result.output["complexity"] == "trivial"
    assert "Fix the typo in README" in runner.calls[0][3]


def test_clarify_autopilot_stops_when_model_is_done(make_ctx) -> None:
    answers = iter([
        {"area": "Scope", "question": "Mobile?", "answer": "No", "reason": "desktop only"},
        {"done": True},
    ])
    runner = FakeRunner(json={"clarify": lambda prompt: next(answers)})
    ctx = make_ctx(runner, autopilot=True)
    ctx.save("task.md", "# Dashboard\n\nbuild it")
    result = asyncio.run(ClarifyStage().run(ctx))
    assert result.output["decisions"] == 1
    assert result.output["coverage"]["Scope"] == pytest.approx(1 / 3)
    saved = json.loads(ctx.load("decisions.json"))
    assert saved[0]["answer"] == "No"
    assert "Mobile?" in ctx.load("decisions.md")


def test_specify_regenerates_after_validation_gaps(make_ctx) -> None:
    verdicts = iter([
        {"pass": False, "gaps": [{"criterion": "Edge cases", "detail": "empty input not covered"}]},
        {"pass": True},
    ])
    runner = FakeRunner(
        json={("specify", "worker"): lambda prompt: next(verdicts)},
        text={("specify", "worker"): "draft spec", ("specify", "converge"): "fixed spec"},
    )
    ctx = make_ctx(runner)
    ctx.dag.pipeline = "small"
    ctx.save("decisions.json", [{"area": "Scope", "question": "Offline?", "answer": "Online only"}])
    result = asyncio.run(SpecifyStage().run(ctx))

    assert result.output == "fixed spec"
    assert ctx.load("spec.md") == "fixed spec"
    assert "empty input not covered" in ctx.load("gap-report-1.md")
    assert "### Scope\n\n- Online only" in runner.calls[0][3]
    assert ctx.load("validation.json")


def test_decompose_skips_unless_large(make_ctx) -> None:
    ctx = make_ctx(FakeRunner())
    ctx.dag.pipeline = "medium"
    result = asyncio.run(DecomposeStage().run(ctx))
    assert result.status == StageStatus.SKIP
    assert result.output == {"skipped": True, "reason": "not a large pipeline"}


def test_decompose_builds_subtasks(make_ctx) -> None:
    runner = FakeRunner(json={"decompose": {"tasks": [
        {"id": "t1", "title": "API", "estimatedFiles": ["api.py"]},
        {"id": "t2", "title": "UI", "blockedBy": ["t1"]},
    ]}})
    ctx = make_ctx(runner)
    ctx.dag.pipeline = "large"
    ctx.save("spec.md", "# Spec")
    result = asyncio.run(DecomposeStage().run(ctx))
    assert result.is_pass
    assert result.output["waves"] == [["t1"], ["t2"]]
    assert [t["id"] for t in json.loads(ctx.load("tasks.json"))] == ["t1", "t2"]


def test_decompose_with_no_subtasks_is_a_skip(make_ctx) -> None:
    ctx = make_ctx(FakeRunner(json={"decompose": {"tasks": []}}))
    ctx.dag.pipeline = "large"
    result = asyncio.run(DecomposeStage().run(ctx))
    assert result.output["skipped"] is True
    assert ctx.dag.tasks == []


def test_decompose_rejected_graph_leaves_no_subtasks_and_can_rerun(make_ctx) -> None:
    replies = [
        {"tasks": [{"id": "t1", "title": "API"}, {"id": "t2", "title": "UI", "blockedBy": ["ghost"]}]},
        {"tasks": [{"id": "t1", "title": "API"}, {"id": "t2", "title": "UI", "blockedBy": ["t1"]}]},
    ]
    ctx = make_ctx(FakeRunner(json={"decompose": lambda prompt: replies.pop(0)}))
    ctx.dag.pipeline = "large"

    with pytest.raises(ForgeError, match="dangling"):
        asyncio.run(DecomposeStage().run(ctx))
    assert ctx.dag.tasks == []
    assert ctx.load("tasks.json") == ""

    result = asyncio.run(DecomposeStage().run(ctx))
    assert result.is_pass
    assert result.output["waves"] == [["t1"], ["t2"]]
    assert [t.id for t in ctx.dag.tasks] == ["t1", "t2"]


# ============================================================================
# design / implement
# ============================================================================


def test_design_saves_plan_and_warns_on_gaps(make_ctx) -> None:
    runner = FakeRunner(
        agent={"design": "### 1. Affected files\n- api.py"},
        json={"verify": {"covered": False, "gaps": ["rate limiting"]}},
    )
    ctx = make_ctx(runner, subtask=Subtask(id="t1", title="API"))
    ctx.save("task.md", "# API")
    result = asyncio.run(DesignStage().run(ctx))
    assert result.is_pass
    assert ctx.load("design-t1.md").startswith("### 1. Affected files")
    assert "design gaps: rate limiting" in ctx.dag.warnings
    assert "- ID: t1" in runner.calls[0][3]


def test_design_agent_failure_raises(make_ctx) -> None:
    runner = FakeRunner(agent={"design": InvocationResult(InvocationStatus.TIMEOUT, stderr="idle")})
    with pytest.raises(StageError, match="timeout"):
        asyncio.run(DesignStage().run(make_ctx(runner)))


def test_implement_prompt_carries_feedback_and_design(make_ctx) -> None:
    runner = FakeRunner()
    ctx = make_ctx(runner, feedback="## Test failures\ntest_login")
    ctx.save("spec.md", "# Login spec")
    ctx.save("design.md", "change auth.py")
    result = asyncio.run(ImplementStage().run(ctx))
    prompt = runner.calls[0][3]
    assert result.is_pass
    assert "## Design\n\nchange auth.py" in prompt
    assert prompt.endswith("## Feedback from the previous verification (must fix)\n\n## Test failures\ntest_login")


def test_implement_failure_raises(make_ctx) -> None:
    runner = FakeRunner(agent={"implement": InvocationResult(InvocationStatus.FAILED, stderr="crash", exit_code=1)})
    with pytest.raises(StageError):
        asyncio.run(ImplementStage().run(make_ctx(runner)))


# ============================================================================
# verify / ux-review
# ============================================================================


def test_verify_passes_on_green_tests_and_clean_review(make_ctx) -> None:
    runner = FakeRunner(
        agent={"verify": '{"testsPassed": true, "failures": []}'},
        json={"verify": {"passed": True, "issues": [{"severity": "minor", "description": "naming"}]}},
    )
    ctx = make_ctx(runner)
    result = asyncio.run(VerifyStage().run(ctx))
    assert result.is_pass
    assert json.loads(ctx.load("verify.json"))["passed"] is True


def test_verify_fails_with_test_and_critical_feedback(make_ctx) -> None:
    runner = FakeRunner(
        agent={"verify": '{"testsPassed": false, "failures": ["test_login: 500"]}'},
        json={"verify": {"passed": True, "issues": [
            {"severity": "CRITICAL", "description": "SQL injection", "file": "db.py"},
        ]}},
    )
    ctx = make_ctx(runner, subtask=Subtask(id="t1", title="DB"))
    result = asyncio.run(VerifyStage().run(ctx))
    assert result.status == StageStatus.FAIL
    assert "## Test failures\ntest_login: 500" in result.feedback
    assert "[CRITICAL] SQL injection (db.py)" in result.feedback
    assert ctx.load("verify-t1.json")


def test_verify_treats_crashed_test_run_as_failure(make_ctx) -> None:
    crashed = InvocationResult(InvocationStatus.FAILED, stderr="boom", exit_code=2)
    runner = FakeRunner(agent={"verify": crashed}, json={"verify": {"passed": True}})
    result = asyncio.run(VerifyStage().run(make_ctx(runner)))
    assert result.status == StageStatus.FAIL
    assert "test run failed: boom" in result.feedback


def test_ux_review_skips_non_frontend_project(make_ctx, tmp_path) -> None:
    project = tmp_path / "lib"
    project.mkdir()
    (project / "setup.cfg").write_text("[metadata]\n", encoding="utf-8")
    runner = FakeRunner()
    result = asyncio.run(UxReviewStage().run(make_ctx(runner, project=str(project))))
    assert result.status == StageStatus.SKIP
    assert result.output["reason"] == "not a frontend project"
    assert runner.calls == []


def test_ux_review_skips_when_dev_server_cannot_start(make_ctx, tmp_path, monkeypatch) -> None:
    (tmp_path / "vite.config.ts").write_text("export default {}", encoding="utf-8")

    async def refuse(project, frontend, timeout=30.0):
        raise OSError("port busy")

    monkeypatch.setattr("ucmforge.stages.ux_review.start_dev_server", refuse)
    result = asyncio.run(UxReviewStage().run(make_ctx(FakeRunner(), project=str(tmp_path))))
    assert result.output == {"skipped": True, "reason": "dev server unavailable"}


def test_ux_review_scores_agent_output(make_ctx, tmp_path, monkeypatch) -> None:
    (tmp_path / "vite.config.ts").write_text("export default {}", encoding="utf-8")

    class Server:
        url = "http://localhost:5173"
        stopped = False

        async def stop(self):
            Server.stopped = True

    async def start(project, frontend, timeout=30.0):
        return Server()

    monkeypatch.setattr("ucmforge.stages.ux_review.start_dev_server", start)
    review = {"score": 5, "canUserAccomplishGoal": {"goal": "log in", "result": "yes"}, "usabilityIssues": []}
    runner = FakeRunner(agent={"ux-review": json.dumps(review)})
    ctx = make_ctx(runner, project=str(tmp_path))
    result = asyncio.run(UxReviewStage().run(ctx))
    assert Server.stopped
    assert result.status == StageStatus.FAIL
    assert "http://localhost:5173" in runner.calls[0][3]
    assert json.loads(ctx.load("ux-review.json"))["score"] == 5


def test_unparseable_ux_review_is_critical() -> None:
    review = parse_ux_review("The page looks fine to me.")
    assert review["score"] == 0
    assert [i["severity"] for i in review["usabilityIssues"]] == ["critical"]
    feedback = format_ux_feedback(review)
    assert "## Critical Usability Issues" in feedback
    assert "## User Goal Not Met" in feedback


def test_ux_feedback_lists_major_issues_and_fixes() -> None:
    review = parse_ux_review(json.dumps({
        "score": 7,
        "canUserAccomplishGoal": {"goal": "checkout", "result": "yes"},
        "usabilityIssues": [{"severity": "major", "description": "tiny button", "where": "cart", "fix": "enlarge"}],
    }))
    feedback = format_ux_feedback(review)
    assert "## Major Usability Issues" in feedback
    assert "  Fix: enlarge" in feedback
    assert "User Goal Not Met" not in feedback


# ============================================================================
# integrate
# ============================================================================


def _decomposed_dag(*statuses) -> TaskDag:
    dag = TaskDag(id="forge-20260101-test", pipeline="large")
    for i, status in enumerate(statuses, 1):
        dag.add_task(Subtask(id=f"t{i}", title=f"T{i}", status=status))
    return dag


def test_integrate_skips_single_task(make_ctx) -> None:
    ctx = make_ctx(FakeRunner(), dag=_decomposed_dag(DONE), worktrees=FakeWorktrees())
    result = asyncio.run(IntegrateStage().run(ctx))
    assert result.output["reason"] == "single task"


def test_integrate_merges_and_records_failed_subtasks(make_ctx) -> None:
    worktrees = FakeWorktrees()
    runner = FakeRunner()
    ctx = make_ctx(runner, dag=_decomposed_dag(DONE, FAILED), worktrees=worktrees)
    result = asyncio.run(IntegrateStage().run(ctx))
    assert result.is_pass
    assert worktrees.merged == 1
    assert result.output == {"merged": True, "testStatus": "done", "failedSubtasks": ["t2"]}
    assert any("failed subtasks" in w for w in ctx.dag.warnings)


def test_integrate_resolves_conflicts_with_an_agent(make_ctx) -> None:
    runner = FakeRunner()
    ctx = make_ctx(runner, dag=_decomposed_dag(DONE, DONE),
                   worktrees=FakeWorktrees(MergeConflictError("CONFLICT in app.py")))
    result = asyncio.run(IntegrateStage().run(ctx))
    assert result.is_pass
    assert runner.kinds("agent") == ["integrate", "verify"]


def test_integrate_unresolved_conflict_needs_manual_work(make_ctx) -> None:
    runner = FakeRunner(agent={"integrate": InvocationResult(InvocationStatus.FAILED, exit_code=1)})
    ctx = make_ctx(runner, dag=_decomposed_dag(DONE, DONE),
                   worktrees=FakeWorktrees(ForgeError("merge failed: CONFLICT")))
    with pytest.raises(ManualResolutionRequired, match="forge resume"):
        asyncio.run(IntegrateStage().run(ctx))


def test_integrate_resolves_conflicts_raised_as_any_error_type(make_ctx) -> None:
    runner = FakeRunner()
    ctx = make_ctx(runner, dag=_decomposed_dag(DONE, DONE),
                   worktrees=FakeWorktrees(RuntimeError("CONFLICT (content): app.py")))
    result = asyncio.run(IntegrateStage().run(ctx))
    assert result.is_pass
    assert runner.kinds("agent") == ["integrate", "verify"]


def test_integrate_reraises_non_conflict_errors_of_any_type(make_ctx) -> None:
    runner = FakeRunner()
    ctx = make_ctx(runner, dag=_decomposed_dag(DONE, DONE),
                   worktrees=FakeWorktrees(OSError("permission denied")))
    with pytest.raises(OSError, match="permission denied"):
        asyncio.run(IntegrateStage().run(ctx))
    assert runner.kinds("agent") == []


def test_integrate_reraises_other_merge_errors(make_ctx) -> None:
    ctx = make_ctx(FakeRunner(), dag=_decomposed_dag(DONE, DONE),
                   worktrees=FakeWorktrees(ForgeError("worktree missing")))
    with pytest.raises(ForgeError, match="worktree missing"):
        asyncio.run(IntegrateStage().run(ctx))


# ============================================================================
# deliver / approve / reject
# ============================================================================


def test_deliver_waits_for_review_by_default(make_ctx) -> None:
    runner = FakeRunner(text={"deliver": "Added login."})
    ctx = make_ctx(runner, worktrees=FakeWorktrees())
    result = asyncio.run(DeliverStage().run(ctx))
    assert result.output["status"] == REVIEW
    assert ctx.dag.status == REVIEW
    assert ctx.load("summary.md") == "Added login."
    assert "+print('hi')" in runner.calls[0][3]


def test_deliver_autopilot_merges_when_clean(make_ctx) -> None:
    worktrees = FakeWorktrees()
    ctx = make_ctx(FakeRunner(), autopilot=True, worktrees=worktrees)
    result = asyncio.run(DeliverStage().run(ctx))
    assert result.output["status"] == DONE
    assert worktrees.merged == 1


def test_deliver_autopilot_with_warnings_goes_to_review(make_ctx) -> None:
    worktrees = FakeWorktrees()
    ctx = make_ctx(FakeRunner(), autopilot=True, worktrees=worktrees)
    ctx.dag.warnings.append("design gaps: auth")
    result = asyncio.run(DeliverStage().run(ctx))
    assert result.output["status"] == REVIEW
    assert worktrees.merged == 0


def test_deliver_without_anything_to_summarize(make_ctx) -> None:
    runner = FakeRunner()
    ctx = make_ctx(runner)
    asyncio.run(DeliverStage().run(ctx))
    assert ctx.load("summary.md") == "(no changes to summarize)"
    assert runner.calls == []


def test_approve_and_reject_require_review(config, store) -> None:
    state_dir = config.home / "tasks"
    dag = TaskDag(id="forge-20260101-rev1", status=REVIEW)
    dag.save(state_dir)

    assert reject(dag.id, "button is blue", state_dir=state_dir, artifacts=store)["status"] == REJECTED
    assert store.load(dag.id, "rejection-feedback.md") == "button is blue"
    with pytest.raises(ForgeError):
        reject(dag.id, "again", state_dir=state_dir, artifacts=store)
    with pytest.raises(ForgeError):
        asyncio.run(approve(dag.id, state_dir=state_dir))

    other = TaskDag(id="forge-20260101-rev2", status=REVIEW)
    other.save(state_dir)
    worktrees = FakeWorktrees()
    assert asyncio.run(approve(other.id, state_dir=state_dir, worktrees=worktrees)) == {"status": DONE}
    assert worktrees.merged == 1
    assert TaskDag.load(state_dir, other.id).status == DONE
