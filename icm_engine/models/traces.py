# models/traces.py - Execution traces and trajectory cards
"""
Explainability records produced by the evaluator and the trajectory engine.

An ExecutionTrace answers "why is this number what it is" for one
(entity, component) pair, including the zero-payout paths.
"""
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class TraceStatus(str, Enum):
    COMPUTED = "computed"
    NO_MATCH = "no_match"
    MISSING_DATA = "missing_data"
    DISABLED = "disabled"
    ERROR = "error"


class TraceInput(BaseModel):
    """A metric consumed by a component, with the value actually used."""
    model_config = ConfigDict(frozen=True)

    name: str
    source: str
    value: float
    present: bool = True


class LookupResolution(BaseModel):
    """Which boundary of a tier/band/condition ladder matched (index -1 = none)."""
    model_config = ConfigDict(frozen=True)

    axis: str
    index: int
    label: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None

    @property
    def matched(self) -> bool:
        return self.index >= 0


class Modifier(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    before: float
    after: float


class ExecutionTrace(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_id: Optional[str] = None
    component_id: str
    component_name: str
    component_type: str
    inputs: List[TraceInput] = []
    lookups: List[LookupResolution] = []
    modifiers: List[Modifier] = []
    outcome: float = 0.0
    status: TraceStatus = TraceStatus.COMPUTED
    confidence: float = 1.0
    message: str = ""

    @property
    def is_missing_data(self) -> bool:
        return self.status == TraceStatus.MISSING_DATA


class EntityTrace(BaseModel):
    """All component traces for one entity in one batch."""
    entity_id: str
    entity_name: str = ""
    group_id: Optional[str] = None
    variant: Optional[str] = None
    metrics: Dict[str, float] = {}
    components: List[ExecutionTrace] = []
    total: float = 0.0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def component_outcomes(self) -> Dict[str, float]:
        return {c.component_id: c.outcome for c in self.components}


class TrajectoryCard(BaseModel):
    component_id: str
    component_name: str
    component_type: str
    current_value: float
    current_tier: str
    next_tier: str
    next_tier_threshold: float
    distance_to_next_tier: float
    current_payout: float
    next_tier_payout: float
    incremental_value: float
    progress_percent: float


class EntityTrajectory(BaseModel):
    entity_id: str
    trajectories: List[TrajectoryCard] = []
    best_opportunity: Optional[TrajectoryCard] = None
    total_potential: float = 0.0
