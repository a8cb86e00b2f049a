# models/reports.py - Read-time aggregates: calculation summary and reconciliation report
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel


class ComponentTotal(BaseModel):
    component_id: str
    component_name: str
    total: float
    entity_count: int


class GroupTotal(BaseModel):
    group_id: str
    total: float
    entity_count: int


class VariantGroup(BaseModel):
    variant: str
    count: int
    total_payout: float
    avg_payout: float


class Outlier(BaseModel):
    entity_id: str
    entity_name: str = ""
    group_id: Optional[str] = None
    total: float
    z_score: float


class CalculationSummary(BaseModel):
    batch_id: Optional[str] = None
    tenant_id: Optional[str] = None
    period_id: Optional[str] = None
    total_payout: float = 0.0
    entity_count: int = 0
    average_payout: float = 0.0
    mean: float = 0.0
    std_dev: float = 0.0
    component_totals: List[ComponentTotal] = []
    group_totals: List[GroupTotal] = []
    variant_distribution: List[VariantGroup] = []
    outliers: List[Outlier] = []
    failed_entities: List[str] = []
    generated_at: datetime


class MatchClass(str, Enum):
    TRUE_MATCH = "true_match"
    COINCIDENTAL_MATCH = "coincidental_match"
    MISMATCH = "mismatch"


class Population(str, Enum):
    MATCHED = "matched"
    ENGINE_ONLY = "engine_only"
    GROUND_TRUTH_ONLY = "ground_truth_only"


class DeltaFlag(str, Enum):
    EXACT = "exact"
    TOLERANCE = "tolerance"
    AMBER = "amber"
    RED = "red"


class ComponentDelta(BaseModel):
    component: str
    engine_value: float
    expected_value: float
    delta: float
    matches: bool


class EntityReconciliation(BaseModel):
    entity_id: str
    population: Population
    classification: Optional[MatchClass] = None
    engine_total: Optional[float] = None
    expected_total: Optional[float] = None
    delta: float = 0.0
    delta_flag: Optional[DeltaFlag] = None
    components_checked: bool = False
    component_deltas: List[ComponentDelta] = []


class ReconciliationReport(BaseModel):
    entities: List[EntityReconciliation] = []
    counts: Dict[str, int] = {}
    engine_total: float = 0.0
    expected_total: float = 0.0
    total_delta: float = 0.0
    total_epsilon: float
    component_epsilon: float

    def by_classification(self, classification: MatchClass) -> List[EntityReconciliation]:
        return [e for e in self.entities if e.classification == classification]

    def get(self, entity_id: str) -> Optional[EntityReconciliation]:
        for entry in self.entities:
            if entry.entity_id == entity_id:
                return entry
        return None
