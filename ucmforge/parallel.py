"""
Forge Fan-out and Convergence

Runs N independent agent instances on the same prompt, then merges the
surviving outputs with one convergence call.

Strategies:
    converge - keep what the workers agree on, drop outliers
    diverge  - synthesize a higher-level view from the disagreements
    refine   - critique and improve a single draft (second round)
"""
from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import logging
import tempfile
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .errors import ForgeError
from .llm import llm_json, llm_text
from .models import FanOutBatch, InvocationRequest, InvocationStatus, TokenUsage
from .process import invoke
from .utils import read_text, save_json_atomic, short_nonce, write_live, write_text_atomic

logger = logging.getLogger("forge")

DEFAULT_TIMEOUT = 30 * 60  # seconds
MAX_RETRIES = 1
MAX_COUNT = 10

MODEL_MAP = {
    "claude": {"light": "sonnet", "heavy": "opus"},
    "codex": {"light": "medium", "heavy": "high"},
}

ProgressFn = Callable[[Dict[str, Any]], None]
InvokeFn = Callable[..., Awaitable[Any]]


def model_for(provider: str, complexity: str) -> Optional[str]:
    return MODEL_MAP.get(provider, {}).get(complexity)


def _default_output_dir() -> Path:
    run_id = dt.datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
    return Path(tempfile.gettempdir()) / f"prl-{run_id}-{short_nonce(6)}"


async def run_parallel(
    prompt: str,
    *,
    count: int = 3,
    model: Optional[str] = None,
    provider: str = "claude",
    cwd: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT,
    output_dir: Optional[Path] = None,
    on_progress: Optional[ProgressFn] = None,
    invoke_fn: InvokeFn = invoke,
) -> FanOutBatch:
    """Spawn `count` concurrent instances (clamped to 1..10).

    Each instance writes its result to <output_dir>/<id>.md. Failed
    instances are retried once; timeouts and rate limits are not.
    """
    count = max(1, min(MAX_COUNT, int(count or 1)))
    output_dir = Path(output_dir) if output_dir else _default_output_dir()
    log_dir = output_dir / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    batch = FanOutBatch(output_dir=output_dir, total=count)
    request = InvocationRequest(provider=provider, model=model, cwd=cwd, timeout=timeout)
    started = time.monotonic()

    def progress(event: Dict[str, Any]) -> None:
        write_live(f"{event['type']} #{event['id']}", prefix="prl: ")
        if on_progress:
            on_progress(event)

    async def run_instance(instance_id: str) -> None:
        text = f"{prompt}\n\nWrite your result to the file {batch.output_path(instance_id)}."
        retries_left = MAX_RETRIES
        while True:
            instance_started = time.monotonic()
            result = await invoke_fn(text, request)
            if result.stdout:
                write_text_atomic(log_dir / f"{instance_id}.stdout.log", result.stdout)
            if result.stderr:
                write_text_atomic(log_dir / f"{instance_id}.stderr.log", result.stderr)
            batch.token_usage.add(result.token_usage)
            batch.results[instance_id] = result
            elapsed = round(time.monotonic() - instance_started, 1)

            if result.status == InvocationStatus.DONE:
                batch.done_ids.append(instance_id)
                progress({"type": "done", "id": instance_id, "elapsed": elapsed})
            elif result.status == InvocationStatus.TIMEOUT:
                batch.timed_out_ids.append(instance_id)
                progress({"type": "timeout", "id": instance_id, "elapsed": elapsed})
            elif result.status == InvocationStatus.RATE_LIMITED:
                batch.rate_limited_ids.append(instance_id)
                progress({"type": "rate_limited", "id": instance_id, "elapsed": elapsed})
            elif retries_left > 0:
                retries_left -= 1
                progress({"type": "retry", "id": instance_id, "error": result.stderr[:200]})
                continue
            else:
                batch.failed_ids.append(instance_id)
                progress({"type": "failed", "id": instance_id, "elapsed": elapsed,
                          "error": result.stderr[:200]})
            return

    ids = [str(i + 1) for i in range(count)]
    for instance_id in ids:
        progress({"type": "spawn", "id": instance_id})
    await asyncio.gather(*(run_instance(i) for i in ids))

    for id_list in (batch.done_ids, batch.failed_ids, batch.rate_limited_ids, batch.timed_out_ids):
        id_list.sort(key=int)
    batch.elapsed = time.monotonic() - started
    save_json_atomic(output_dir / "status.json", {**batch.to_dict(), "finished": True})
    logger.info(
        f"Fan-out finished: {len(batch.done_ids)}/{count} done, {len(batch.failed_ids)} failed, "
        f"{len(batch.rate_limited_ids)} rate limited, {len(batch.timed_out_ids)} timed out "
        f"({batch.elapsed:.1f}s)"
    )
    return batch


# =============================================================================
# Convergence
# =============================================================================

STRATEGY_RULES = {
    "converge": """You are an editor merging several independent attempts at the same task into one.

Method:
1. Read every attempt and map its structure and content.
2. Content that appears in several attempts is high confidence: keep it.
3. Content that appears in only one attempt stays only if it is well supported.
4. Where attempts conflict, take the side with the more concrete support.
5. Pick the best wording and structure from each attempt.
6. The result must serve the purpose of the original instructions.

Rules:
- Do not add content that none of the attempts contain.
- Do not drop details while merging.
- Do not label sources; write one coherent document.""",

    "diverge": """You are a synthesizer turning several independent attempts at the same task into something better than any of them.

Method:
1. Read every attempt and identify its core claims and perspective.
2. Find where the attempts conflict. These tensions are the main material.
3. Do not just pick a side: derive a higher-level view that accounts for both.
4. Add insights that no attempt states but that follow from combining them.
5. The result must be deeper and more complete than any single attempt.

Rules:
- Do not simply concatenate; restructure around the new perspective.
- Stay within the purpose of the original instructions.
- Do not label sources; write one coherent document.""",

    "refine": """You are an editor reviewing and improving a draft.

Method:
1. Judge the draft against the purpose of the original instructions.
2. Fill in missing content and fix logical or structural weaknesses.
3. Remove repetition and verbosity.
4. Apply more precise wording or better structure where available.

Rules:
- Keep what is already good.
- Stay within the purpose of the original instructions.
- Output only the improved result, without explaining the changes.""",
}

CLASSIFY_PROMPT = """Classify the task below on two axes.

complexity:
  light - plain text generation, summaries, translation, format conversion
  heavy - code analysis, architecture design, complex reasoning, multi-step decisions

strategy:
  converge - analysis, documentation, fact-based work (keep common ground, drop outliers)
  diverge - design, strategy, creative work (thesis-antithesis-synthesis, new perspectives)

Output JSON only: {{"complexity": "light|heavy", "strategy": "converge|diverge"}}

Task:
{prompt}"""


@dataclasses.dataclass
class Classification:
    complexity: str
    strategy: str


@dataclasses.dataclass
class AggregateResult:
    text: str
    classification: Classification
    output_dir: Path
    batches: List[FanOutBatch] = dataclasses.field(default_factory=list)
    token_usage: TokenUsage = dataclasses.field(default_factory=TokenUsage)


async def classify(
    prompt: str,
    *,
    provider: str = "claude",
    cwd: Optional[str] = None,
    invoke_fn: InvokeFn = invoke,
) -> Tuple[Classification, TokenUsage]:
    """Pick complexity tier and merge strategy for a prompt.

    Raises:
        ForgeError: If the model returns values outside the allowed sets
    """
    request = InvocationRequest(
        provider=provider,
        model=model_for(provider, "light"),
        cwd=cwd,
        allow_tools="" if provider == "claude" else None,
    )
    data, usage = await llm_json(CLASSIFY_PROMPT.format(prompt=prompt), request, invoke_fn=invoke_fn)
    if not isinstance(data, dict):
        raise ForgeError(f"classify failed: expected object, got {type(data).__name__}")
    complexity, strategy = data.get("complexity"), data.get("strategy")
    if complexity not in ("light", "heavy"):
        raise ForgeError(f"classify failed: invalid complexity: {complexity}")
    if strategy not in ("converge", "diverge"):
        raise ForgeError(f"classify failed: invalid strategy: {strategy}")
    return Classification(complexity, strategy), usage


def read_survivors(batch: FanOutBatch) -> List[Tuple[str, str]]:
    """(id, text) for every done instance whose output file is non-empty."""
    survivors = []
    for instance_id in batch.done_ids:
        text = read_text(batch.output_path(instance_id)).strip()
        if text:
            survivors.append((instance_id, text))
        else:
            logger.warning(f"Worker {instance_id} finished without writing {batch.output_path(instance_id)}")
    return survivors


def build_converge_prompt(prompt: str, outputs: List[Tuple[str, str]], strategy: str) -> str:
    if strategy not in STRATEGY_RULES:
        raise ValueError(f"Unknown strategy: {strategy}")
    blocks = "\n\n---\n\n".join(f"### Worker {wid}\n\n{text}" for wid, text in outputs)
    return (
        f"{STRATEGY_RULES[strategy]}\n\n"
        f"## Original instructions\n\n{prompt}\n\n"
        f"## Attempts\n\n{blocks}\n\n"
        f"Output only the final merged result."
    )


async def converge(
    prompt: str,
    outputs: List[Tuple[str, str]],
    *,
    strategy: str = "converge",
    request: Optional[InvocationRequest] = None,
    invoke_fn: InvokeFn = invoke,
) -> Tuple[str, TokenUsage]:
    """Merge survivor outputs with one call. Raises ForgeError with no survivors."""
    if not outputs:
        raise ForgeError("No surviving worker outputs to converge")
    return await llm_text(build_converge_prompt(prompt, outputs, strategy), request, invoke_fn=invoke_fn)


async def classify_and_aggregate(
    prompt: str,
    *,
    count: int = 3,
    provider: str = "claude",
    cwd: Optional[str] = None,
    output_dir: Optional[Path] = None,
    refine: bool = False,
    timeout: float = DEFAULT_TIMEOUT,
    on_progress: Optional[ProgressFn] = None,
    invoke_fn: InvokeFn = invoke,
) -> AggregateResult:
    """classify -> fan-out -> converge, with an optional refine round."""
    usage = TokenUsage()
    classification, classify_usage = await classify(prompt, provider=provider, cwd=cwd, invoke_fn=invoke_fn)
    usage.add(classify_usage)
    model = model_for(provider, classification.complexity)
    logger.info(f"Aggregate: complexity={classification.complexity} strategy={classification.strategy} model={model}")

    output_dir = Path(output_dir) if output_dir else _default_output_dir()
    merge_request = InvocationRequest(provider=provider, model=model, cwd=cwd)

    batch = await run_parallel(
        prompt, count=count, model=model, provider=provider, cwd=cwd, timeout=timeout,
        output_dir=output_dir / "round-1", on_progress=on_progress, invoke_fn=invoke_fn,
    )
    usage.add(batch.token_usage)
    text, merge_usage = await converge(
        prompt, read_survivors(batch), strategy=classification.strategy,
        request=merge_request, invoke_fn=invoke_fn,
    )
    usage.add(merge_usage)
    write_text_atomic(output_dir / "merged.md", text + "\n")
    result = AggregateResult(text, classification, output_dir, [batch], usage)

    if refine:
        draft_path = output_dir / "merged.md"
        refine_prompt = (
            f"{STRATEGY_RULES['refine']}\n\n## Draft\n\nRead the draft at {draft_path}.\n\n"
            f"## Original instructions\n\n{prompt}"
        )
        refine_batch = await run_parallel(
            refine_prompt, count=count, model=model, provider=provider, cwd=cwd, timeout=timeout,
            output_dir=output_dir / "round-2", on_progress=on_progress, invoke_fn=invoke_fn,
        )
        usage.add(refine_batch.token_usage)
        refined, refine_usage = await converge(
            prompt, read_survivors(refine_batch), strategy="converge",
            request=merge_request, invoke_fn=invoke_fn,
        )
        usage.add(refine_usage)
        write_text_atomic(output_dir / "refined.md", refined + "\n")
        result.text = refined
        result.batches.append(refine_batch)
    return result
