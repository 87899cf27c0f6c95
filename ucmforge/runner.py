"""
Forge Agent Runner

Single entry point stages use to reach the agent CLI. Holds the provider,
config (models, timeouts) and transcript directory so stage code only says
which stage/role it is running.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

from .config import ForgeConfig
from .llm import llm_json, llm_text
from .models import FanOutBatch, InvocationRequest, InvocationResult, TokenUsage
from .parallel import ProgressFn, converge, run_parallel
from .process import invoke_agent

logger = logging.getLogger("forge")


class AgentRunner:
    def __init__(
        self,
        config: ForgeConfig,
        *,
        log_dir: Optional[Path] = None,
        provider: Optional[str] = None,
        on_log: Optional[Callable[[str, str], None]] = None,
    ):
        self.config = config
        self.provider = provider or config.provider
        self.log_dir = Path(log_dir) if log_dir else config.home / "logs"
        self.on_log = on_log

    def request(
        self,
        stage: str,
        role: Optional[str] = None,
        *,
        cwd: Optional[str] = None,
        allow_tools: Optional[str] = None,
        model: Optional[str] = None,
    ) -> InvocationRequest:
        idle, hard = self.config.timeouts_for(stage)
        return InvocationRequest(
            provider=self.provider,
            model=model or self.config.model_for(stage, role),
            cwd=cwd,
            allow_tools=allow_tools,
            idle_timeout=idle,
            hard_timeout=hard,
        )

    async def text(self, prompt: str, stage: str, role: Optional[str] = None,
                   *, cwd: Optional[str] = None, allow_tools: str = "") -> Tuple[str, TokenUsage]:
        """Text answer; no tools unless allow_tools names some."""
        return await llm_text(prompt, self.request(stage, role, cwd=cwd, allow_tools=allow_tools))

    async def json(self, prompt: str, stage: str, role: Optional[str] = None,
                   *, cwd: Optional[str] = None, allow_tools: str = "") -> Tuple[Any, TokenUsage]:
        """Answer parsed as JSON; no tools unless allow_tools names some."""
        return await llm_json(prompt, self.request(stage, role, cwd=cwd, allow_tools=allow_tools))

    async def agent(self, prompt: str, stage: str, role: Optional[str] = None,
                    *, task_id: str, cwd: Optional[str] = None,
                    log_name: Optional[str] = None) -> InvocationResult:
        """Full agent run with tools, logged to the task transcript.

        log_name names the per-stage transcript file (defaults to the stage).
        """
        def forward(line: str) -> None:
            if self.on_log:
                self.on_log(stage, line)

        return await invoke_agent(
            prompt,
            self.request(stage, role, cwd=cwd),
            task_id=task_id,
            stage=log_name or stage,
            log_dir=self.log_dir,
            on_log=forward,
        )

    async def fan_out(self, prompt: str, stage: str, role: Optional[str] = None,
                      *, count: int = 3, cwd: Optional[str] = None,
                      output_dir: Optional[Path] = None,
                      on_progress: Optional[ProgressFn] = None) -> FanOutBatch:
        _, hard = self.config.timeouts_for(stage)
        return await run_parallel(
            prompt,
            count=count,
            model=self.config.model_for(stage, role),
            provider=self.provider,
            cwd=cwd,
            timeout=hard,
            output_dir=output_dir,
            on_progress=on_progress,
        )

    async def converge(self, prompt: str, outputs: List[Tuple[str, str]], stage: str,
                       role: Optional[str] = None, *, strategy: str = "converge",
                       cwd: Optional[str] = None) -> Tuple[str, TokenUsage]:
        return await converge(
            prompt, outputs, strategy=strategy,
            request=self.request(stage, role, cwd=cwd, allow_tools=""),
        )
