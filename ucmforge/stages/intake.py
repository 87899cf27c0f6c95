"""Intake: classify a request and pick its pipeline."""
from __future__ import annotations

from pathlib import Path

from ..config import PIPELINE_NAMES
from ..errors import StageError
from ..models import StageResult
from .base import Stage, StageContext

INTAKE_PROMPT = """Analyze and classify the following work request.

complexity:
  trivial - single-file change, simple bug fix, README update
  small - a few files, clearly scoped feature or change
  medium - feature spanning several files, needs design decisions
  large - large feature across modules, architectural change

kind:
  feature - new functionality
  bugfix - fixing a defect
  refactor - structural improvement
  research - investigation or analysis

Respond with JSON only:
{"complexity": "trivial|small|medium|large", "kind": "feature|bugfix|refactor|research", "title": "short title", "summary": "1-2 sentence summary"}

## Request

"""


def read_input(text: str) -> str:
    """Inline text, or the contents of a .md file when the input names one."""
    if text and text.strip().endswith(".md"):
        path = Path(text.strip()).expanduser()
        if path.is_file():
            try:
                return path.read_text(encoding="utf-8")
            except OSError as e:
                raise StageError(f"Cannot read input file {path}: {e}")
    return text


def task_markdown(title: str, summary: str, body: str) -> str:
    return f"# {title}\n\n{summary}\n\n---\n\n{body}"


class IntakeStage(Stage):
    name = "intake"

    async def run(self, ctx: StageContext) -> StageResult:
        text = read_input(ctx.input_text)
        ctx.log("[intake] classifying input...")
        data, usage = await ctx.runner.json(INTAKE_PROMPT + text, "intake")
        if not isinstance(data, dict):
            data = {}

        complexity = data.get("complexity") or "small"
        if complexity not in PIPELINE_NAMES:
            complexity = "small"
        result = {
            "complexity": complexity,
            "kind": data.get("kind") or "feature",
            "title": data.get("title") or text[:80],
            "summary": data.get("summary") or text[:200],
        }
        ctx.log(f"[intake] complexity={complexity} kind={result['kind']} title=\"{result['title']}\"")

        ctx.save("task.md", task_markdown(result["title"], result["summary"], text))
        ctx.save("intake.json", result)
        ctx.dag.title = result["title"]
        return StageResult.passed(result, usage)
