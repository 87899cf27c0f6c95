"""
Forge Pipeline Engine

Runs a task through its pipeline: intake (when no pipeline is given), then
each stage of the declaration in canonical order. The engine owns the stage
contracts (requires/produces), the implement -> verify (-> ux-review) gate
loop, per-subtask execution in wave order, token budget enforcement and
resume. Stage exceptions stop at this boundary: the task is marked failed and
its dag and artifacts are kept for resume.
"""
from __future__ import annotations

import dataclasses
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from .artifacts import ArtifactStore, KnowledgeStore, Worktrees
from .config import STAGE_ORDER, ForgeConfig, PipelineDeclaration, get_config
from .errors import BudgetExceededError, ForgeError, MissingArtifactsError, StageError
from .models import StageResult, StageStatus
from .runner import AgentRunner
from .stages import STAGES, Stage, StageContext
from .stages.base import QuestionFn
from .stages.intake import read_input
from .task import ABORTED, DONE, FAILED, IN_PROGRESS, RUNNING, Subtask, TaskDag
from .utils import utc_now_iso, write_live

logger = logging.getLogger("forge")

EventFn = Callable[[str, Dict[str, Any]], None]

# Stages that run once per subtask when the task was decomposed
SUBTASK_STAGES = ("design", "implement", "verify", "ux-review", "polish")
# Stages driven by implement's gate loop
GATE_STAGES = ("verify", "ux-review")

BUDGET_NOTICE = 70
BUDGET_WARNING = 90


@dataclasses.dataclass
class RunState:
    """Mutable state of one pipeline run."""
    dag: TaskDag
    declaration: Optional[PipelineDeclaration]
    project: Optional[str] = None
    autopilot: bool = False
    token_budget: int = 0
    input_text: str = ""
    pending_feedback: Optional[str] = None
    gate_ran: bool = False
    results: Dict[str, StageResult] = dataclasses.field(default_factory=dict)

    def in_pipeline(self, stage: str) -> bool:
        return self.declaration is not None and stage in self.declaration.stages


class ForgePipeline:
    def __init__(
        self,
        config: Optional[ForgeConfig] = None,
        *,
        runner: Optional[AgentRunner] = None,
        artifacts: Optional[ArtifactStore] = None,
        state_dir: Optional[Path] = None,
        knowledge: Optional[KnowledgeStore] = None,
        worktrees: Optional[Worktrees] = None,
        on_event: Optional[EventFn] = None,
        on_question: Optional[QuestionFn] = None,
        stages: Optional[Mapping[str, Stage]] = None,
    ):
        self.config = config or get_config()
        self.state_dir = Path(state_dir) if state_dir else self.config.home / "tasks"
        self.artifacts = artifacts or ArtifactStore(self.state_dir)
        self.runner = runner or AgentRunner(self.config, log_dir=self.config.home / "logs")
        self.knowledge = knowledge
        self.worktrees = worktrees
        self.on_event = on_event
        self.on_question = on_question
        self.stages = dict(stages or STAGES)
        self.results: Dict[str, StageResult] = {}
        self._aborted = False

    # =========================================================================
    # Entry points
    # =========================================================================

    async def run(
        self,
        input_text: str,
        *,
        project: Optional[str] = None,
        pipeline: Optional[str] = None,
        autopilot: bool = False,
        token_budget: Optional[int] = None,
        task_id: Optional[str] = None,
    ) -> TaskDag:
        """Run a new task. Without a pipeline label intake chooses one.

        Raises:
            ValueError: If pipeline names neither a known pipeline nor a stage list
        """
        declaration = self.config.pipeline(pipeline) if pipeline else None
        dag = TaskDag(id=task_id, status=RUNNING, pipeline=pipeline)
        dag.started_at = utc_now_iso()
        state = RunState(
            dag=dag,
            declaration=declaration,
            project=project,
            autopilot=autopilot,
            token_budget=self.config.token_budget if token_budget is None else token_budget,
            input_text=input_text,
        )
        return await self._drive(state, start=None)

    async def resume(
        self,
        task_id: str,
        from_stage: Optional[str] = None,
        *,
        project: Optional[str] = None,
        autopilot: bool = False,
        token_budget: Optional[int] = None,
    ) -> TaskDag:
        """Restart a stored task at from_stage (default: last failed stage, else implement).

        Raises:
            ForgeError: If the task does not exist
            ValueError: If the stage is not part of the task's pipeline
        """
        dag = TaskDag.load(self.state_dir, task_id)
        if not dag.pipeline:
            raise ValueError(f"task {task_id} has no pipeline to resume")
        declaration = self.config.pipeline(dag.pipeline)
        start = from_stage or dag.last_failed_stage() or "implement"
        if start not in declaration.stages:
            raise ValueError(f"resume stage '{start}' not in pipeline: {', '.join(declaration.stages)}")

        dag.status = RUNNING
        dag.error = None
        dag.feedback = None
        state = RunState(
            dag=dag,
            declaration=declaration,
            project=project,
            autopilot=autopilot,
            token_budget=self.config.token_budget if token_budget is None else token_budget,
            pending_feedback=self.artifacts.load_optional(task_id, "rejection-feedback.md", None),
        )
        if state.pending_feedback:
            logger.info(f"Resuming {task_id} with rejection feedback")
        return await self._drive(state, start=start)

    def abort(self) -> None:
        """Stop before the next stage starts."""
        self._aborted = True

    # =========================================================================
    # Orchestration
    # =========================================================================

    async def _drive(self, state: RunState, start: Optional[str]) -> TaskDag:
        dag = state.dag
        self.results = state.results
        self.emit(dag, "pipeline:start", {"pipeline": dag.pipeline, "resumeFrom": start})
        write_live("=" * 60)
        write_live(f"FORGE: {dag.id}" + (f" (resume from {start})" if start else ""))
        write_live("=" * 60)
        try:
            if start is None:
                if state.declaration is None:
                    intake = await self._run_stage(state, "intake")
                    state.declaration = self.config.pipeline(intake.output["complexity"])
                else:
                    self.artifacts.init_task(dag.id, read_input(state.input_text))
            dag.pipeline = state.declaration.name
            dag.save(self.state_dir)
            logger.info(f"Pipeline {dag.pipeline}: {', '.join(state.declaration.stages)}")

            await self._execute(state, start)

            if self._aborted:
                dag.status = ABORTED
                self.emit(dag, "pipeline:abort", {})
            else:
                # deliver sets done or review
                if dag.status == RUNNING:
                    dag.status = DONE
                dag.completed_at = utc_now_iso()
                self.emit(dag, "pipeline:complete", {"status": dag.status})
        except Exception as e:
            logger.error(f"Task {dag.id} failed: {e}")
            write_live(f"FAILED: {e}")
            dag.status = FAILED
            dag.error = str(e)
            if str(e) not in dag.warnings:
                dag.warnings.append(str(e))
            self.emit(dag, "pipeline:error", {"error": str(e)})
        finally:
            dag.current_stage = None
            dag.save(self.state_dir)
        return dag

    async def _execute(self, state: RunState, start: Optional[str]) -> None:
        skipping = start is not None
        subtasks_ran = False
        for stage in STAGE_ORDER:
            if self._aborted:
                return
            if not state.in_pipeline(stage):
                if start is None:
                    self._record_skip(state, stage, "not in pipeline")
                continue
            if skipping:
                if stage != start:
                    continue
                skipping = False

            if stage in SUBTASK_STAGES and state.dag.tasks:
                if not subtasks_ran:
                    await self._run_subtasks(state)
                    subtasks_ran = True
                continue

            if stage == "implement":
                result = await self._run_gate(state, None)
            elif stage in GATE_STAGES and state.gate_ran:
                continue
            else:
                result = await self._run_stage(state, stage)

            if result.status == StageStatus.FAIL:
                state.dag.feedback = result.feedback
                if result.feedback:
                    state.dag.warnings.append(f"{stage} feedback: {result.feedback[:500]}")
                raise StageError(f"stage {stage} failed")

    async def _run_stage(self, state: RunState, stage: str, subtask: Optional[Subtask] = None,
                         feedback: Optional[str] = None) -> StageResult:
        dag = state.dag
        suffix = f"-{subtask.id}" if subtask else ""
        contract = self.config.contract(stage)
        sub_id = subtask.id if subtask else None
        dag.current_stage = stage
        dag.save(self.state_dir)

        missing = self.artifacts.missing(dag.id, contract.required_names(suffix))
        if missing:
            dag.record_stage(stage, StageStatus.FAIL.value, 0, subtask=sub_id)
            raise MissingArtifactsError(stage, missing)

        self.emit(dag, "stage:start", {"stage": stage, "subtask": sub_id})
        logger.info(f"Stage {stage}{suffix} starting")
        started = time.monotonic()
        ctx = self._context(state, stage, subtask, feedback)
        try:
            result = await self.stages[stage].run(ctx)
        except Exception:
            duration_ms = int((time.monotonic() - started) * 1000)
            dag.record_stage(stage, StageStatus.FAIL.value, duration_ms, subtask=sub_id)
            self.emit(dag, "stage:complete", {"stage": stage, "status": "fail", "durationMs": duration_ms})
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        dag.add_token_usage(result.token_usage)
        dag.record_stage(stage, result.status.value, duration_ms, result.token_usage, sub_id)
        state.results[f"{stage}{suffix}"] = result
        dag.save(self.state_dir)
        self.emit(dag, "stage:complete", {"stage": stage, "status": result.status.value, "durationMs": duration_ms})
        logger.info(f"Stage {stage}{suffix} {result.status.value} ({duration_ms / 1000:.1f}s)")

        if result.is_pass:
            missing = self.artifacts.missing(dag.id, contract.produced_names(suffix))
            if missing:
                raise MissingArtifactsError(stage, missing, "produced")
        self._check_budget(state)
        return result

    def _record_skip(self, state: RunState, stage: str, reason: str) -> None:
        result = StageResult.skipped(reason)
        state.results[stage] = result
        state.dag.record_stage(stage, result.status.value, 0)
        self.emit(state.dag, "stage:skip", {"stage": stage, "reason": reason})

    # =========================================================================
    # Implement gate
    # =========================================================================

    async def _run_gate(self, state: RunState, subtask: Optional[Subtask]) -> StageResult:
        """implement -> verify (-> ux-review), feeding failures back into implement."""
        dag = state.dag
        suffix = f"-{subtask.id}" if subtask else ""
        max_iterations = self.config.gate_max_iterations
        feedback = state.pending_feedback
        state.pending_feedback = None
        state.gate_ran = True

        for iteration in range(1, max_iterations + 1):
            self.emit(dag, "gate:iteration", {"stage": "implement", "iteration": iteration,
                                              "maxIterations": max_iterations})
            write_live(f"--- gate iteration {iteration}/{max_iterations}{suffix} ---")
            await self._run_stage(state, "implement", subtask, feedback)
            if self._aborted:
                return StageResult.skipped("aborted")

            if state.in_pipeline("verify"):
                verify = await self._run_stage(state, "verify", subtask)
            else:
                verify = StageResult.passed()
            self.emit(dag, "gate:result", {"gate": "verify", "result": verify.status.value, "iteration": iteration})
            self.artifacts.save(dag.id, f"verify-iter-{iteration}{suffix}.json", {
                "iteration": iteration,
                "passed": verify.is_pass,
                "feedback": verify.feedback,
                "report": verify.report,
            })
            if verify.status == StageStatus.FAIL:
                feedback = verify.feedback
                continue

            if state.in_pipeline("ux-review"):
                ux = await self._run_stage(state, "ux-review", subtask)
                if ux.status == StageStatus.FAIL:
                    self.emit(dag, "gate:result", {"gate": "ux-review", "result": "fail", "iteration": iteration})
                    feedback = ux.feedback
                    continue
            return StageResult.passed({"iterations": iteration})

        last = feedback or ""
        if "critical" in last.lower():
            severity = "critical"
        elif "## Test failures" in last:
            severity = "test_failures"
        else:
            severity = "review_issues"
        dag.warnings.append(
            f"verify loop exhausted after {max_iterations} iterations ({severity}). "
            f"Last feedback: {last[:200]}"
        )
        dag.record_stage("implement", StageStatus.FAIL.value, 0, subtask=subtask.id if subtask else None)
        return StageResult.failed(last, {"iterations": max_iterations, "severity": severity})

    # =========================================================================
    # Subtasks
    # =========================================================================

    async def _run_subtasks(self, state: RunState) -> None:
        """Per-subtask stages in wave order; subtasks share one tree so they run sequentially."""
        dag = state.dag
        for wave in dag.get_waves():
            if self._aborted:
                return
            pending = [dag.get_task(tid) for tid in wave if dag.get_task(tid).status != DONE]
            if not pending:
                continue
            for subtask in pending:
                dag.update_task_status(subtask.id, IN_PROGRESS)
            dag.save(self.state_dir)

            for subtask in pending:
                if self._aborted:
                    return
                self.emit(dag, "subtask:start", {"subtaskId": subtask.id, "title": subtask.title})
                try:
                    await self._run_subtask(state, subtask)
                except BudgetExceededError:
                    dag.update_task_status(subtask.id, FAILED)
                    raise
                except ForgeError as e:
                    dag.update_task_status(subtask.id, FAILED)
                    dag.warnings.append(f"subtask {subtask.id} failed: {e}")
                    logger.warning(f"Subtask {subtask.id} failed: {e}")
                    self.emit(dag, "subtask:complete", {"subtaskId": subtask.id, "status": FAILED})
                else:
                    dag.update_task_status(subtask.id, DONE)
                    self.emit(dag, "subtask:complete", {"subtaskId": subtask.id, "status": DONE})
                dag.save(self.state_dir)

    async def _run_subtask(self, state: RunState, subtask: Subtask) -> None:
        if state.in_pipeline("design"):
            await self._run_stage(state, "design", subtask)
        if state.in_pipeline("implement"):
            result = await self._run_gate(state, subtask)
            if result.status == StageStatus.FAIL:
                raise StageError(f"gate failed after {result.output['iterations']} iterations")
        else:
            for stage in GATE_STAGES:
                if state.in_pipeline(stage):
                    result = await self._run_stage(state, stage, subtask)
                    if result.status == StageStatus.FAIL:
                        raise StageError(f"{stage} failed")
        if state.in_pipeline("polish") and not self._aborted:
            await self._run_stage(state, "polish", subtask)

    # =========================================================================
    # Budget, context and events
    # =========================================================================

    def _check_budget(self, state: RunState) -> None:
        budget = state.token_budget
        if budget <= 0:
            return
        dag = state.dag
        used = dag.total_tokens()
        percent = round(used / budget * 100)
        data = {"used": used, "budget": budget, "percent": percent}
        if dag.is_over_budget(budget):
            dag.warnings.append(f"token budget exceeded: {used}/{budget}")
            self.emit(dag, "warning:budget", data)
            raise BudgetExceededError(used, budget)
        if percent >= BUDGET_WARNING:
            logger.warning(f"Token budget at {percent}% ({used}/{budget})")
            self.emit(dag, "warning:budget", data)
        elif percent >= BUDGET_NOTICE:
            logger.info(f"Token budget at {percent}% ({used}/{budget})")
            self.emit(dag, "notice:budget", data)

    def _context(self, state: RunState, stage: str, subtask: Optional[Subtask],
                 feedback: Optional[str]) -> StageContext:
        dag = state.dag

        def on_log(msg: str) -> None:
            self.emit(dag, "agent:output", {"stage": stage, "chunk": msg})

        return StageContext(
            task_id=dag.id,
            dag=dag,
            config=self.config,
            runner=self.runner,
            artifacts=self.artifacts,
            project=state.project,
            subtask=subtask,
            feedback=feedback,
            autopilot=state.autopilot,
            token_budget=state.token_budget,
            input_text=state.input_text,
            on_question=self.on_question,
            knowledge=self.knowledge,
            worktrees=self.worktrees,
            on_log=on_log,
        )

    def emit(self, dag: TaskDag, name: str, data: Dict[str, Any]) -> None:
        if self.on_event:
            self.on_event(name, {"taskId": dag.id, **data})
