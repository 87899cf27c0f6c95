"""Forge pipeline stages, keyed by stage name."""
from __future__ import annotations

from typing import Dict

from .base import Stage, StageContext
from .clarify import ClarifyStage
from .decompose import DecomposeStage
from .deliver import DeliverStage, approve, reject
from .design import DesignStage
from .implement import ImplementStage
from .intake import IntakeStage
from .integrate import IntegrateStage
from .polish import PolishStage
from .specify import SpecifyStage
from .ux_review import UxReviewStage
from .verify import VerifyStage

STAGES: Dict[str, Stage] = {
    stage.name: stage
    for stage in (
        IntakeStage(),
        ClarifyStage(),
        SpecifyStage(),
        DecomposeStage(),
        DesignStage(),
        ImplementStage(),
        VerifyStage(),
        UxReviewStage(),
        PolishStage(),
        IntegrateStage(),
        DeliverStage(),
    )
}

__all__ = ["STAGES", "Stage", "StageContext", "approve", "reject"]
