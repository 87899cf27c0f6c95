"""
Integrate: merge subtask worktrees and run the whole test suite once.

Only meaningful for decomposed tasks with a workspace. Conflicts get one
automatic resolution attempt; if that fails the task stops with a runbook
for finishing the merge by hand.
"""
from __future__ import annotations

from ..errors import ManualResolutionRequired, MergeConflictError
from ..models import InvocationStatus, StageResult, TokenUsage
from ..task import DONE, FAILED
from .base import Stage, StageContext

RESOLVE_PROMPT = """A git merge stopped on conflicts. Resolve them.

1. Run git status to find the conflicted files.
2. Read each conflicted file and work out what both sides intended.
3. Resolve the conflicts.
4. Stage the resolved files with git add.
5. Finish the merge with git commit."""

INTEGRATION_TEST_PROMPT = "Run the project's full test suite and report the results."


def is_conflict(error: Exception) -> bool:
    if isinstance(error, MergeConflictError):
        return True
    message = str(error)
    return "CONFLICT" in message or "merge failed" in message


class IntegrateStage(Stage):
    name = "integrate"

    async def run(self, ctx: StageContext) -> StageResult:
        dag = ctx.dag
        if len(dag.tasks) <= 1:
            ctx.log("[integrate] skipping (single task or no subtasks)")
            return StageResult.skipped("single task")

        workspace = await ctx.worktrees.load_workspace(ctx.task_id) if ctx.worktrees else None
        if not workspace:
            ctx.log("[integrate] no workspace found, skipping merge")
            return StageResult.skipped("no workspace")

        failed = [t.id for t in dag.tasks if t.status == FAILED]
        done = [t.id for t in dag.tasks if t.status == DONE]
        if not done:
            ctx.warn(f"all subtasks failed: {', '.join(failed)}")
            return StageResult.skipped("all subtasks failed")
        if failed:
            ctx.warn(f"integrating with failed subtasks: {', '.join(failed)}")

        projects = workspace.get("projects") or []
        usage = TokenUsage()
        ctx.log("[integrate] merging worktrees...")
        try:
            await ctx.worktrees.merge_worktrees(ctx.task_id, projects)
            ctx.log("[integrate] merge complete")
        except Exception as e:
            # Any merge error that reads like a conflict goes to the resolver.
            if not is_conflict(e):
                raise
            ctx.log("[integrate] merge conflict detected, attempting agent resolution...")
            origin = (projects[0].get("origin") if projects else None) or ctx.project
            result = await ctx.runner.agent(
                RESOLVE_PROMPT, "integrate", task_id=ctx.task_id, cwd=origin, log_name="integrate-resolve",
            )
            usage.add(result.token_usage)
            if result.status != InvocationStatus.DONE:
                self._manual_runbook(ctx, f"conflict resolution failed: {result.status.value}")
            ctx.log("[integrate] conflict resolution complete")

        ctx.log("[integrate] running integration tests...")
        test = await ctx.runner.agent(
            INTEGRATION_TEST_PROMPT, "verify", task_id=ctx.task_id, cwd=ctx.project, log_name="integrate-test",
        )
        usage.add(test.token_usage)
        if test.status != InvocationStatus.DONE:
            ctx.warn(f"integration tests may have issues ({test.status.value})")

        report = {"merged": True, "testStatus": test.status.value, "failedSubtasks": failed}
        ctx.save("integrate-result.json", report)
        return StageResult.passed(report, usage, report)

    def _manual_runbook(self, ctx: StageContext, reason: str) -> None:
        ctx.warn(f"merge conflict unresolved: {reason}")
        ctx.log("[integrate] manual resolution needed:")
        ctx.log(f"  1. cd {ctx.project}")
        ctx.log("  2. git status  # find the conflicted files")
        ctx.log("  3. resolve, then: git add <files> && git commit")
        ctx.log(f"  4. forge resume {ctx.task_id} --from integrate")
        raise ManualResolutionRequired(
            f"merge conflict requires manual resolution in {ctx.project}. "
            f"After resolving: forge resume {ctx.task_id} --from integrate"
        )
