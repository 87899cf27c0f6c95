"""
Forge Process Lifecycle

Runs one agent CLI process per call:

- builds the provider command line (claude / codex)
- strips the environment down to an allow-list
- starts the child in its own session so the whole tree can be signalled
- supervises single, idle and hard timeouts
- kills with SIGTERM, then SIGKILL after a grace period, and resolves the
  call from a safety deadline even if the exit is never observed
- scans stream-json stdout incrementally

invoke() never raises: every outcome is an InvocationResult.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .models import (
    InvocationRequest, InvocationResult, InvocationStatus,
    OUTPUT_STREAM_JSON, TokenUsage,
)
from .parsers import StreamScanner, describe_tool_use
from .utils import append_text, sanitize_content, truncate, utc_now_iso

logger = logging.getLogger("forge")

KILL_GRACE = 1.2        # seconds between SIGTERM and SIGKILL
SAFETY_TIMEOUT = 3.0    # seconds from kill start until the call resolves regardless
READER_DRAIN = 1.0      # seconds to collect trailing output after exit
READ_CHUNK = 65536

RATE_LIMIT_PATTERN = re.compile(r"rate.limit|429|quota|overloaded", re.IGNORECASE)
REASONING_EFFORTS = frozenset({"minimal", "low", "medium", "high", "xhigh"})

ENV_ALLOW = frozenset({
    "PATH", "HOME", "USER", "SHELL", "LANG", "TERM", "HOSTNAME", "LOGNAME",
    "EDITOR", "VISUAL", "DISPLAY", "TMPDIR", "TMP", "TEMP", "TZ",
    "GOPATH", "GOROOT", "CARGO_HOME", "RUSTUP_HOME", "JAVA_HOME", "ANDROID_HOME",
    "VIRTUAL_ENV", "ANTHROPIC_API_KEY", "OPENAI_API_KEY",
    "HTTP_PROXY", "HTTPS_PROXY", "NO_PROXY", "ALL_PROXY",
    "http_proxy", "https_proxy", "no_proxy", "all_proxy",
})
ENV_ALLOW_PREFIXES = (
    "LC_", "NODE_", "NPM_", "NVM_", "GIT_", "XDG_", "SSH_", "GPG_",
    "FORGE_", "CLAUDE_", "CODEX_", "ANTHROPIC_", "OPENAI_",
    "CONDA_", "PYENV_", "DBUS_",
)


def build_command(request: InvocationRequest) -> List[str]:
    """Build the CLI argv for a provider.

    Raises:
        ValueError: If the provider is unknown
    """
    if request.provider == "claude":
        cmd = ["claude", "-p"]
        if request.skip_permissions:
            cmd.append("--dangerously-skip-permissions")
        if not request.session_persistence:
            cmd.append("--no-session-persistence")
        cmd += ["--output-format", request.output_mode]
        if request.output_mode == OUTPUT_STREAM_JSON:
            cmd.append("--verbose")
        if request.model:
            cmd += ["--model", request.model]
        if request.allow_tools is not None:
            cmd += ["--allowedTools", request.allow_tools]
        return cmd

    if request.provider == "codex":
        cmd = ["codex", "exec", "--dangerously-bypass-approvals-and-sandbox"]
        if request.model in REASONING_EFFORTS:
            cmd += ["-c", f"model_reasoning_effort={request.model}"]
        elif request.model:
            cmd += ["--model", request.model]
        if request.cwd:
            cmd += ["--cd", request.cwd]
        cmd.append("-")
        return cmd

    raise ValueError(f"Unknown provider: {request.provider}")


def sanitize_env(env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Copy only allow-listed variables from env (default os.environ)."""
    source = os.environ if env is None else env
    return {
        k: v for k, v in source.items()
        if k in ENV_ALLOW or k.startswith(ENV_ALLOW_PREFIXES)
    }


def kill_process_tree(proc: asyncio.subprocess.Process, sig: int) -> None:
    """Signal the child's process group and the child itself."""
    if hasattr(os, "killpg"):
        try:
            os.killpg(proc.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass
    try:
        proc.send_signal(sig)
    except ProcessLookupError:
        pass


async def _terminate(proc: asyncio.subprocess.Process, waiter: "asyncio.Future[int]") -> bool:
    """Two-phase kill. Returns False when the exit was never observed.

    The group is SIGKILLed once the grace window ends even if the child
    already exited: descendants that ignore SIGTERM keep the group alive.
    """
    loop = asyncio.get_running_loop()
    started = loop.time()
    kill_process_tree(proc, signal.SIGTERM)
    done, _ = await asyncio.wait({waiter}, timeout=KILL_GRACE)
    if not done:
        logger.warning(f"pid {proc.pid} ignored SIGTERM, sending SIGKILL")
    grace_left = KILL_GRACE - (loop.time() - started)
    if grace_left > 0:
        await asyncio.sleep(grace_left)
    kill_process_tree(proc, signal.SIGKILL)
    if done:
        return True
    remaining = SAFETY_TIMEOUT - (loop.time() - started)
    done, _ = await asyncio.wait({waiter}, timeout=max(remaining, 0.0))
    return bool(done)


async def _write_stdin(proc: asyncio.subprocess.Process, text: str) -> None:
    if proc.stdin is None:
        return
    try:
        proc.stdin.write(text.encode("utf-8"))
        await proc.stdin.drain()
        proc.stdin.close()
        await proc.stdin.wait_closed()
    except (BrokenPipeError, ConnectionResetError) as e:
        # Child exited before reading its prompt; the exit status tells the story.
        logger.debug(f"stdin closed early for pid {proc.pid}: {e}")


async def _cancel(tasks: List["asyncio.Future[Any]"]) -> None:
    for t in tasks:
        if not t.done():
            t.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


async def invoke(
    prompt: str,
    request: InvocationRequest,
    *,
    on_text: Optional[Callable[[str], None]] = None,
    on_tool_use: Optional[Callable[[str, Dict[str, Any]], None]] = None,
) -> InvocationResult:
    """Run one agent process to completion or timeout."""
    loop = asyncio.get_running_loop()
    started = loop.time()

    def elapsed_ms() -> int:
        return int((loop.time() - started) * 1000)

    try:
        cmd = build_command(request)
    except ValueError as e:
        return InvocationResult(InvocationStatus.FAILED, stderr=str(e), exit_code=-1)

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=request.cwd or None,
            env=sanitize_env(),
            start_new_session=True,
        )
    except OSError as e:
        logger.error(f"Failed to spawn {cmd[0]}: {e}")
        return InvocationResult(
            InvocationStatus.FAILED, stderr=str(e), exit_code=-1, duration_ms=elapsed_ms(),
        )

    scanner = (
        StreamScanner(on_text=on_text, on_tool_use=on_tool_use)
        if request.output_mode == OUTPUT_STREAM_JSON else None
    )
    stdout_chunks: List[bytes] = []
    stderr_chunks: List[bytes] = []
    last_activity = started

    async def pump_stdout() -> None:
        nonlocal last_activity
        while True:
            chunk = await proc.stdout.read(READ_CHUNK)
            if not chunk:
                break
            last_activity = loop.time()
            stdout_chunks.append(chunk)
            if scanner is not None:
                scanner.feed(chunk)

    async def pump_stderr() -> None:
        while True:
            chunk = await proc.stderr.read(READ_CHUNK)
            if not chunk:
                break
            stderr_chunks.append(chunk)

    readers = [asyncio.ensure_future(pump_stdout()), asyncio.ensure_future(pump_stderr())]
    writer = asyncio.ensure_future(_write_stdin(proc, prompt))
    waiter = asyncio.ensure_future(proc.wait())

    timeout_kind: Optional[str] = None
    while not waiter.done():
        deadlines = []
        if request.timeout:
            deadlines.append((started + request.timeout, "single"))
        if request.hard_timeout:
            deadlines.append((started + request.hard_timeout, "hard"))
        if request.idle_timeout:
            deadlines.append((last_activity + request.idle_timeout, "idle"))
        delay = None
        if deadlines:
            when, kind = min(deadlines)
            delay = when - loop.time()
            if delay <= 0:
                timeout_kind = kind
                break
        await asyncio.wait({waiter}, timeout=delay)

    forced = False
    if timeout_kind is not None:
        logger.warning(f"{cmd[0]} pid {proc.pid} hit {timeout_kind} timeout after {elapsed_ms()}ms")
        forced = not await _terminate(proc, waiter)
        if forced:
            logger.error(f"pid {proc.pid} exit not observed; resolving call anyway")

    if forced:
        await _cancel(readers + [writer, waiter])
    else:
        _, pending = await asyncio.wait(readers, timeout=READER_DRAIN)
        if pending:
            # Descendants still hold the pipes open.
            kill_process_tree(proc, signal.SIGKILL)
        await _cancel(list(pending) + [writer])

    raw_stdout = b"".join(stdout_chunks).decode("utf-8", errors="replace")
    stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace")
    exit_code = None if forced else proc.returncode

    if scanner is not None:
        scanner.close()
        stdout = scanner.result_text or raw_stdout
        usage = scanner.token_usage
    else:
        stdout = raw_stdout
        usage = TokenUsage()

    if timeout_kind is not None:
        status = InvocationStatus.TIMEOUT
    elif exit_code == 0:
        status = InvocationStatus.DONE
    elif RATE_LIMIT_PATTERN.search(stderr):
        status = InvocationStatus.RATE_LIMITED
    else:
        status = InvocationStatus.FAILED

    return InvocationResult(
        status=status,
        stdout=stdout,
        stderr=stderr,
        exit_code=exit_code,
        timeout_kind=timeout_kind,
        token_usage=usage,
        duration_ms=elapsed_ms(),
        forced=forced,
    )


# =============================================================================
# Logging variant
# =============================================================================

class AgentLog:
    """Tee of one agent run into <log_dir>/<task>.log and <log_dir>/<task>/<stage>.log."""

    def __init__(self, log_dir: Path, task_id: str, stage: str):
        self.task_path = log_dir / f"{task_id}.log"
        self.stage_path = log_dir / task_id / f"{stage}.log"
        self.stage = stage

    def write(self, line: str) -> None:
        text = sanitize_content(line.rstrip("\n")) + "\n"
        append_text(self.task_path, text)
        append_text(self.stage_path, text)


async def invoke_agent(
    prompt: str,
    request: InvocationRequest,
    *,
    task_id: str,
    stage: str,
    log_dir: Path,
    on_log: Optional[Callable[[str], None]] = None,
    on_tool_use: Optional[Callable[[str, str], None]] = None,
    invoke_fn: Optional[Callable[..., Any]] = None,
) -> InvocationResult:
    """invoke() in stream-json mode with a per-task/per-stage transcript."""
    log = AgentLog(Path(log_dir), task_id, stage)
    request = request.with_(output_mode=OUTPUT_STREAM_JSON)

    def emit(line: str) -> None:
        log.write(line)
        if on_log:
            on_log(sanitize_content(line))

    def handle_text(text: str) -> None:
        emit(truncate(text.strip(), 200))

    def handle_tool(name: str, tool_input: Dict[str, Any]) -> None:
        detail = describe_tool_use(name, tool_input)
        emit(f"[tool] {name}: {detail}" if detail else f"[tool] {name}")
        if on_tool_use:
            on_tool_use(name, detail)

    emit(f"=== {stage} start {utc_now_iso()} model={request.model or 'default'} ===")
    result = await (invoke_fn or invoke)(prompt, request, on_text=handle_text, on_tool_use=handle_tool)
    emit(
        f"=== {stage} end {utc_now_iso()} status={result.status.value} "
        f"exit={result.exit_code} tokens={result.token_usage.total} "
        f"duration={result.duration_ms}ms ==="
    )
    if result.status != InvocationStatus.DONE and result.stderr:
        emit(f"[stderr] {truncate(result.stderr.strip(), 500)}")
    return result
