"""
Forge Data Models

Dataclasses passed between the process layer, fan-out and stages.
"""
from __future__ import annotations

import dataclasses
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


class InvocationStatus(str, Enum):
    DONE = "done"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


class StageStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"


OUTPUT_TEXT = "text"
OUTPUT_STREAM_JSON = "stream-json"


@dataclasses.dataclass
class TokenUsage:
    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output

    def add(self, other: Optional["TokenUsage"]) -> "TokenUsage":
        """Accumulate in place and return self."""
        if other is not None:
            self.input += other.input
            self.output += other.output
        return self

    def to_dict(self) -> Dict[str, int]:
        return {"input": self.input, "output": self.output}

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "TokenUsage":
        d = d or {}
        return cls(input=int(d.get("input", 0)), output=int(d.get("output", 0)))


@dataclasses.dataclass(frozen=True)
class InvocationRequest:
    """How to run one agent process. The prompt travels separately on stdin."""
    provider: str = "claude"
    model: Optional[str] = None
    cwd: Optional[str] = None
    output_mode: str = OUTPUT_TEXT
    allow_tools: Optional[str] = None   # None = provider default, "" = no tools
    idle_timeout: Optional[float] = None
    hard_timeout: Optional[float] = None
    timeout: Optional[float] = None     # single absolute timeout
    skip_permissions: bool = True
    session_persistence: bool = False

    def with_(self, **changes: Any) -> "InvocationRequest":
        return dataclasses.replace(self, **changes)


@dataclasses.dataclass
class InvocationResult:
    status: InvocationStatus
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    timeout_kind: Optional[str] = None  # idle | hard | single
    token_usage: TokenUsage = dataclasses.field(default_factory=TokenUsage)
    duration_ms: int = 0
    forced: bool = False                # resolved by the safety timer

    @property
    def ok(self) -> bool:
        return self.status == InvocationStatus.DONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "exitCode": self.exit_code,
            "timeoutKind": self.timeout_kind,
            "tokenUsage": self.token_usage.to_dict(),
            "durationMs": self.duration_ms,
            "forced": self.forced,
        }


@dataclasses.dataclass
class FanOutBatch:
    """Outcome of one parallel fan-out."""
    output_dir: Path
    total: int
    results: Dict[str, InvocationResult] = dataclasses.field(default_factory=dict)
    token_usage: TokenUsage = dataclasses.field(default_factory=TokenUsage)
    done_ids: List[str] = dataclasses.field(default_factory=list)
    failed_ids: List[str] = dataclasses.field(default_factory=list)
    rate_limited_ids: List[str] = dataclasses.field(default_factory=list)
    timed_out_ids: List[str] = dataclasses.field(default_factory=list)
    elapsed: float = 0.0

    def output_path(self, instance_id: str) -> Path:
        return self.output_dir / f"{instance_id}.md"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outputDir": str(self.output_dir),
            "total": self.total,
            "done": self.done_ids,
            "failed": self.failed_ids,
            "rateLimited": self.rate_limited_ids,
            "timedOut": self.timed_out_ids,
            "tokenUsage": self.token_usage.to_dict(),
            "elapsed": round(self.elapsed, 2),
            "instances": {k: v.to_dict() for k, v in self.results.items()},
        }


@dataclasses.dataclass
class StageResult:
    status: StageStatus
    output: Any = None
    feedback: Optional[str] = None
    token_usage: TokenUsage = dataclasses.field(default_factory=TokenUsage)
    report: Optional[Dict[str, Any]] = None

    @classmethod
    def passed(cls, output: Any = None, token_usage: Optional[TokenUsage] = None,
               report: Optional[Dict[str, Any]] = None) -> "StageResult":
        return cls(StageStatus.PASS, output, None, token_usage or TokenUsage(), report)

    @classmethod
    def failed(cls, feedback: str, output: Any = None, token_usage: Optional[TokenUsage] = None,
               report: Optional[Dict[str, Any]] = None) -> "StageResult":
        return cls(StageStatus.FAIL, output, feedback, token_usage or TokenUsage(), report)

    @classmethod
    def skipped(cls, reason: str = "", token_usage: Optional[TokenUsage] = None) -> "StageResult":
        return cls(StageStatus.SKIP, {"skipped": True, "reason": reason}, None,
                   token_usage or TokenUsage())

    @property
    def is_pass(self) -> bool:
        return self.status == StageStatus.PASS

    @property
    def is_skip(self) -> bool:
        return self.status == StageStatus.SKIP


@dataclasses.dataclass
class PolishIssue:
    severity: str  # critical | major | minor
    description: str
    file: str = ""
    suggestion: str = ""

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PolishIssue":
        return cls(
            severity=str(d.get("severity", "minor")).lower(),
            description=str(d.get("description", "")),
            file=str(d.get("file", "") or ""),
            suggestion=str(d.get("suggestion", "") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclasses.dataclass
class LensReview:
    """One polish review round for one lens."""
    lens: str
    round: int
    issues: List[PolishIssue] = dataclasses.field(default_factory=list)
    summary: str = ""

    @classmethod
    def from_dict(cls, lens: str, round_no: int, d: Any) -> "LensReview":
        if isinstance(d, list):
            d = {"issues": d}
        if not isinstance(d, dict):
            d = {}
        return cls(
            lens=lens,
            round=round_no,
            issues=[PolishIssue.from_dict(i) for i in d.get("issues", []) if isinstance(i, dict)],
            summary=str(d.get("summary", "")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lens": self.lens,
            "round": self.round,
            "issues": [i.to_dict() for i in self.issues],
            "summary": self.summary,
        }
