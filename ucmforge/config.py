"""
Forge Configuration Loading

Pipeline declarations, stage contracts, timeouts and model tiers.

Defaults ship as defaults.yaml next to this module. An optional user YAML is
merged over them, then environment overrides are applied:

    FORGE_PROVIDER              claude | codex
    FORGE_TOKEN_BUDGET          integer, 0 = unlimited
    FORGE_HOME                  state/artifact root (default ~/.forge)
    FORGE_MODEL_<STAGE>         model for a single-model stage
    FORGE_MODEL_<STAGE>_<ROLE>  model for one role of a multi-model stage

The resolved config is memoized by get_config(); declarations are immutable
once loaded.
"""
from __future__ import annotations

import copy
import dataclasses
import functools
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

logger = logging.getLogger("forge")

DEFAULTS_PATH = Path(__file__).with_name("defaults.yaml")
ENV_PREFIX = "FORGE_"

# Canonical stage order; pipelines are ordered subsets of it.
STAGE_ORDER = (
    "clarify", "specify", "decompose", "design", "implement",
    "verify", "ux-review", "polish", "integrate", "deliver",
)
PIPELINE_NAMES = ("trivial", "small", "medium", "large")


@dataclasses.dataclass(frozen=True)
class StageContract:
    """Artifacts a stage needs and promises, plus its timeouts (seconds)."""
    name: str
    requires: Tuple[str, ...] = ()
    produces: Tuple[str, ...] = ()
    idle_timeout: float = 300
    hard_timeout: float = 1200

    @classmethod
    def from_dict(cls, name: str, d: Mapping[str, Any], defaults: Mapping[str, Any]) -> "StageContract":
        return cls(
            name=name,
            requires=tuple(d.get("requires") or ()),
            produces=tuple(d.get("produces") or ()),
            idle_timeout=float(d.get("idle_timeout", defaults.get("idle_timeout", 300))),
            hard_timeout=float(d.get("hard_timeout", defaults.get("hard_timeout", 1200))),
        )

    def produced_names(self, suffix: str = "") -> List[str]:
        return [p.format(suffix=suffix) for p in self.produces]

    def required_names(self, suffix: str = "") -> List[str]:
        return [r.format(suffix=suffix) for r in self.requires]


@dataclasses.dataclass(frozen=True)
class PipelineDeclaration:
    """Named, ordered list of stages with their contracts."""
    name: str
    stages: Tuple[str, ...]
    contracts: Mapping[str, StageContract]

    def contract(self, stage: str) -> StageContract:
        return self.contracts[stage]


@dataclasses.dataclass(frozen=True)
class PolishConfig:
    lenses: Tuple[str, ...] = ("code_quality", "design_consistency", "testing", "security")
    max_rounds_per_lens: int = 5
    max_total_rounds: int = 15
    convergence_threshold: int = 2
    budget_abort_ratio: float = 0.95

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "PolishConfig":
        return cls(
            lenses=tuple(d.get("lenses", cls.lenses)),
            max_rounds_per_lens=int(d.get("max_rounds_per_lens", 5)),
            max_total_rounds=int(d.get("max_total_rounds", 15)),
            convergence_threshold=int(d.get("convergence_threshold", 2)),
            budget_abort_ratio=float(d.get("budget_abort_ratio", 0.95)),
        )


@dataclasses.dataclass(frozen=True)
class ForgeConfig:
    """Resolved forge configuration."""
    provider: str
    token_budget: int
    gate_max_iterations: int
    home: Path
    pipelines: Mapping[str, Tuple[str, ...]]
    contracts: Mapping[str, StageContract]
    default_contract: StageContract
    models: Mapping[str, Union[str, Mapping[str, str]]]
    polish: PolishConfig

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ForgeConfig":
        default_timeouts = d.get("default_timeouts") or {}
        contracts = {
            name: StageContract.from_dict(name, spec or {}, default_timeouts)
            for name, spec in (d.get("stages") or {}).items()
        }
        pipelines = {name: tuple(stages) for name, stages in (d.get("pipelines") or {}).items()}
        for name, stages in pipelines.items():
            unknown = [s for s in stages if s not in STAGE_ORDER]
            if unknown:
                raise ValueError(f"Pipeline '{name}' lists unknown stages: {unknown}")
        home = d.get("home") or Path.home() / ".forge"
        return cls(
            provider=str(d.get("provider", "claude")),
            token_budget=int(d.get("token_budget", 0) or 0),
            gate_max_iterations=int(d.get("gate_max_iterations", 3)),
            home=Path(home).expanduser(),
            pipelines=pipelines,
            contracts=contracts,
            default_contract=StageContract.from_dict("default", {}, default_timeouts),
            models=copy.deepcopy(dict(d.get("models") or {})),
            polish=PolishConfig.from_dict(d.get("polish") or {}),
        )

    def contract(self, stage: str) -> StageContract:
        return self.contracts.get(stage) or dataclasses.replace(self.default_contract, name=stage)

    def timeouts_for(self, stage: str) -> Tuple[float, float]:
        """Return (idle_timeout, hard_timeout) in seconds."""
        c = self.contract(stage)
        return c.idle_timeout, c.hard_timeout

    def model_for(self, stage: str, role: Optional[str] = None) -> Optional[str]:
        entry = self.models.get(stage)
        if isinstance(entry, Mapping):
            if role is None:
                return next(iter(entry.values()), None)
            return entry.get(role)
        return entry

    def pipeline(self, label: str) -> PipelineDeclaration:
        """Resolve a named pipeline or a comma-separated stage list."""
        if label in self.pipelines:
            stages = self.pipelines[label]
        elif "," in label or label in STAGE_ORDER:
            stages = tuple(s.strip() for s in label.split(",") if s.strip())
            unknown = [s for s in stages if s not in STAGE_ORDER]
            if unknown:
                raise ValueError(f"Unknown stages in custom pipeline: {unknown}")
            if "deliver" not in stages:
                stages = stages + ("deliver",)
        else:
            raise ValueError(
                f"Unknown pipeline '{label}' (expected one of {', '.join(self.pipelines)} "
                f"or a comma-separated stage list)"
            )
        return PipelineDeclaration(
            name=label,
            stages=stages,
            contracts={s: self.contract(s) for s in stages},
        )


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursive dict merge; lists and scalars in override replace base."""
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(result.get(key), Mapping):
            result[key] = _merge(dict(result[key]), value)
        else:
            result[key] = value
    return result


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Forge config not found: {path}")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Invalid YAML in forge config {path}: {e}")
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"Forge config must be a YAML dict, got: {type(raw).__name__}")
    return raw


def _env_key(stage: str) -> str:
    return stage.upper().replace("-", "_")


def apply_env_overrides(raw: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    raw = copy.deepcopy(raw)
    if env.get(f"{ENV_PREFIX}PROVIDER"):
        raw["provider"] = env[f"{ENV_PREFIX}PROVIDER"]
    if env.get(f"{ENV_PREFIX}HOME"):
        raw["home"] = env[f"{ENV_PREFIX}HOME"]
    if env.get(f"{ENV_PREFIX}TOKEN_BUDGET"):
        try:
            raw["token_budget"] = int(env[f"{ENV_PREFIX}TOKEN_BUDGET"])
        except ValueError:
            raise ValueError(f"{ENV_PREFIX}TOKEN_BUDGET must be an integer")

    models = raw.setdefault("models", {})
    for stage, entry in list(models.items()):
        key = f"{ENV_PREFIX}MODEL_{_env_key(stage)}"
        if isinstance(entry, dict):
            for role in list(entry):
                role_key = f"{key}_{role.upper()}"
                if env.get(role_key):
                    entry[role] = env[role_key]
        elif env.get(key):
            models[stage] = env[key]
    return raw


def load_config(path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> ForgeConfig:
    """Load defaults, merge an optional user YAML and apply env overrides.

    Raises:
        FileNotFoundError: If path is given and doesn't exist
        yaml.YAMLError: If a config file has invalid YAML
        ValueError: If the config has invalid structure
    """
    raw = _read_yaml(DEFAULTS_PATH)
    if path is not None:
        raw = _merge(raw, _read_yaml(path))
        logger.info(f"Loaded forge config from {path}")
    raw = apply_env_overrides(raw, os.environ if env is None else env)
    config = ForgeConfig.from_dict(raw)
    logger.debug(f"  provider: {config.provider}")
    logger.debug(f"  token_budget: {config.token_budget}")
    return config


@functools.lru_cache(maxsize=1)
def get_config() -> ForgeConfig:
    """Process-wide config, resolved once."""
    user_file = os.environ.get(f"{ENV_PREFIX}CONFIG")
    return load_config(Path(user_file) if user_file else None)


def reset_config() -> None:
    get_config.cache_clear()
