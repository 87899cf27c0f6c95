"""
Forge command line.

    forge run <input> [--project DIR] [--pipeline NAME|a,b,c] [--autopilot] [--budget N]
    forge resume <task> [--from STAGE] [--project DIR]
    forge approve <task>
    forge reject <task> [--feedback TEXT]
    forge prl --prompt FILE [--count N] [--refine]

Exit codes: 0 ok, 1 error, 10 task waiting in review.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .artifacts import ArtifactStore
from .config import ForgeConfig, get_config, load_config
from .errors import ForgeError
from .parallel import classify_and_aggregate
from .pipeline import ForgePipeline
from .stages import approve, reject
from .task import DONE, REVIEW, TaskDag
from .utils import set_live_log, write_live

logger = logging.getLogger("forge")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_REVIEW = 10


def print_event(name: str, data: Dict[str, Any]) -> None:
    if name == "agent:output":
        return
    if name in ("stage:start", "stage:complete", "stage:skip"):
        status = f" {data['status']}" if "status" in data else ""
        sub = f" [{data['subtask']}]" if data.get("subtask") else ""
        logger.info(f"{name} {data.get('stage')}{sub}{status}")
    elif name in ("warning:budget", "notice:budget"):
        logger.info(f"token budget {data['percent']}% ({data['used']}/{data['budget']})")
    else:
        logger.debug(f"{name} {data}")


async def ask_stdin(question: Dict[str, Any]) -> str:
    """Interactive clarify: print options and read the answer from stdin."""
    print(f"\n[{question.get('area', '')}] {question['question']}")
    options = question.get("options") or []
    for n, option in enumerate(options, 1):
        reason = f" - {option['reason']}" if option.get("reason") else ""
        print(f"  {n}. {option.get('label', '')}{reason}")
    loop = asyncio.get_running_loop()
    answer = (await loop.run_in_executor(None, input, "> ")).strip()
    if answer.isdigit() and 1 <= int(answer) <= len(options):
        return str(options[int(answer) - 1].get("label", ""))
    return answer


def status_exit_code(dag: TaskDag) -> int:
    if dag.status == DONE:
        return EXIT_OK
    if dag.status == REVIEW:
        return EXIT_REVIEW
    return EXIT_ERROR


def report(dag: TaskDag) -> None:
    logger.info(f"Task {dag.id}: {dag.status} ({dag.total_tokens()} tokens)")
    for warning in dag.warnings:
        logger.warning(f"  {warning}")
    if dag.status == REVIEW:
        logger.info(f"Review with: forge approve {dag.id} | forge reject {dag.id} --feedback ...")


def _open_live_log(config: ForgeConfig) -> Any:
    path = config.home / "live.log"
    path.parent.mkdir(parents=True, exist_ok=True)
    live_log = open(path, "a", encoding="utf-8")
    set_live_log(live_log)
    return live_log


async def cmd_run(args: argparse.Namespace, config: ForgeConfig) -> int:
    pipeline = ForgePipeline(
        config,
        on_event=print_event,
        on_question=None if args.autopilot else ask_stdin,
    )
    dag = await pipeline.run(
        args.input,
        project=args.project,
        pipeline=args.pipeline,
        autopilot=args.autopilot,
        token_budget=args.budget,
    )
    report(dag)
    return status_exit_code(dag)


async def cmd_resume(args: argparse.Namespace, config: ForgeConfig) -> int:
    pipeline = ForgePipeline(config, on_event=print_event, on_question=None if args.autopilot else ask_stdin)
    dag = await pipeline.resume(
        args.task, args.from_stage, project=args.project, autopilot=args.autopilot, token_budget=args.budget,
    )
    report(dag)
    return status_exit_code(dag)


async def cmd_approve(args: argparse.Namespace, config: ForgeConfig) -> int:
    result = await approve(args.task, state_dir=config.home / "tasks")
    logger.info(f"Task {args.task}: {result['status']}")
    return EXIT_OK


async def cmd_reject(args: argparse.Namespace, config: ForgeConfig) -> int:
    state_dir = config.home / "tasks"
    feedback = args.feedback
    if args.feedback_file:
        feedback = Path(args.feedback_file).read_text(encoding="utf-8")
    result = reject(args.task, feedback or "", state_dir=state_dir, artifacts=ArtifactStore(state_dir))
    logger.info(f"Task {args.task}: {result['status']} (resume with: forge resume {args.task})")
    return EXIT_OK


async def cmd_prl(args: argparse.Namespace, config: ForgeConfig) -> int:
    prompt = Path(args.prompt).read_text(encoding="utf-8")

    def progress(event: Dict[str, Any]) -> None:
        logger.info(f"[prl] #{event.get('id')}: {event.get('type')}")

    result = await classify_and_aggregate(
        prompt,
        count=args.count,
        provider=config.provider,
        cwd=args.project,
        output_dir=Path(args.output_dir) if args.output_dir else None,
        refine=args.refine,
        on_progress=progress,
    )
    logger.info(f"[prl] strategy={result.classification.strategy} output={result.output_dir}")
    print(result.text)
    return EXIT_OK


COMMANDS = {
    "run": cmd_run,
    "resume": cmd_resume,
    "approve": cmd_approve,
    "reject": cmd_reject,
    "prl": cmd_prl,
}


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="forge", description="Agent CLI pipeline orchestrator")
    ap.add_argument("--config", help="User config YAML merged over the defaults")
    ap.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = ap.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a new task")
    run.add_argument("input", help="Request text or path to a .md file")
    run.add_argument("--project", help="Project directory the agents work in")
    run.add_argument("--pipeline", help="trivial|small|medium|large or a comma-separated stage list")
    run.add_argument("--autopilot", action="store_true", help="No questions; auto-merge when clean")
    run.add_argument("--budget", type=int, default=None, help="Token budget (0 = unlimited)")

    resume = sub.add_parser("resume", help="Resume a failed or rejected task")
    resume.add_argument("task")
    resume.add_argument("--from", dest="from_stage", help="Stage to restart at")
    resume.add_argument("--project")
    resume.add_argument("--autopilot", action="store_true")
    resume.add_argument("--budget", type=int, default=None)

    approve_p = sub.add_parser("approve", help="Merge a task waiting in review")
    approve_p.add_argument("task")

    reject_p = sub.add_parser("reject", help="Reject a task waiting in review")
    reject_p.add_argument("task")
    reject_p.add_argument("--feedback", default="")
    reject_p.add_argument("--feedback-file")

    prl = sub.add_parser("prl", help="Fan out a prompt and aggregate the answers")
    prl.add_argument("--prompt", required=True, help="Prompt file")
    prl.add_argument("--count", type=int, default=3)
    prl.add_argument("--refine", action="store_true", help="Run a second refinement round")
    prl.add_argument("--project", help="Working directory for the agents")
    prl.add_argument("--output-dir")
    return ap


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        config = load_config(Path(args.config)) if args.config else get_config()
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Config error: {e}")
        return EXIT_ERROR

    live_log = _open_live_log(config)
    try:
        return asyncio.run(COMMANDS[args.command](args, config))
    except (ForgeError, ValueError, OSError) as e:
        logger.error(str(e))
        return EXIT_ERROR
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_ERROR
    finally:
        write_live("=" * 60)
        live_log.close()
        set_live_log(None)


if __name__ == "__main__":
    raise SystemExit(main())
