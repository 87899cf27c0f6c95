from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from ucmforge.artifacts import ArtifactStore
from ucmforge.config import ForgeConfig, load_config
from ucmforge.models import InvocationResult, InvocationStatus, TokenUsage
from ucmforge.stages.base import StageContext
from ucmforge.task import TaskDag

Reply = Any  # literal value, or callable(prompt) -> value


def done(stdout: str = "ok", tokens: Tuple[int, int] = (10, 5)) -> InvocationResult:
    return InvocationResult(InvocationStatus.DONE, stdout=stdout, exit_code=0, token_usage=TokenUsage(*tokens))


class FakeRunner:
    """Scripted stand-in for AgentRunner.

    Replies are looked up by (stage, role) and then by stage. A callable
    reply is called with the prompt, which lets a test return a different
    answer per call.
    """

    def __init__(
        self,
        json: Optional[Dict[Any, Reply]] = None,
        text: Optional[Dict[Any, Reply]] = None,
        agent: Optional[Dict[Any, Reply]] = None,
    ):
        self.json_replies = json or {}
        self.text_replies = text or {}
        self.agent_replies = agent or {}
        self.calls: List[Tuple[str, str, Optional[str], str]] = []

    def _reply(self, table: Dict[Any, Reply], stage: str, role: Optional[str], prompt: str, default: Any) -> Any:
        for key in ((stage, role), stage):
            if key in table:
                reply = table[key]
                return reply(prompt) if callable(reply) else reply
        return default

    def kinds(self, kind: str) -> List[str]:
        return [stage for k, stage, _, _ in self.calls if k == kind]

    async def json(self, prompt: str, stage: str, role: Optional[str] = None, *, cwd=None, allow_tools=""):
        self.calls.append(("json", stage, role, prompt))
        return self._reply(self.json_replies, stage, role, prompt, {}), TokenUsage(3, 2)

    async def text(self, prompt: str, stage: str, role: Optional[str] = None, *, cwd=None, allow_tools=""):
        self.calls.append(("text", stage, role, prompt))
        return self._reply(self.text_replies, stage, role, prompt, "summary"), TokenUsage(3, 2)

    async def agent(self, prompt: str, stage: str, role: Optional[str] = None, *, task_id, cwd=None, log_name=None):
        self.calls.append(("agent", stage, role, prompt))
        reply = self._reply(self.agent_replies, stage, role, prompt, None)
        if reply is None:
            return done()
        if isinstance(reply, InvocationResult):
            return reply
        return done(str(reply))


@pytest.fixture()
def config(tmp_path: Path) -> ForgeConfig:
    return load_config(env={"FORGE_HOME": str(tmp_path / "home")})


@pytest.fixture()
def store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "home" / "tasks")


@pytest.fixture()
def make_ctx(config, store) -> Callable[..., StageContext]:
    def _make(runner: FakeRunner, **kwargs: Any) -> StageContext:
        dag = kwargs.pop("dag", None) or TaskDag(id="forge-20260101-test")
        return StageContext(
            task_id=dag.id, dag=dag, config=config, runner=runner, artifacts=store, **kwargs,
        )

    return _make
