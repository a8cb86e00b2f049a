# models/schemas.py - Pydantic models for rule-set configuration and imported rows
"""
Input-side models consumed read-only by the engine.

  Row           : one committed record from an imported file/sheet
  DerivationRule: declarative sum / count / ratio metric definition
  PlanComponent : closed union: tier_lookup | matrix_lookup | percentage | conditional_percentage
  RuleSet       : derivation rules + plan components for one plan
  EntityRef     : the entity being compensated (employee, store, ...)
  GroundTruthRow: externally supplied expected payouts for reconciliation

Component field names are snake_case with camelCase aliases, so tenant JSON
(``appliedTo``, ``rowBands`` ...) validates directly.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

INFINITY = float("inf")


class Row(BaseModel):
    """A committed row. ``data_type`` identifies the source table/sheet."""
    model_config = ConfigDict(frozen=True)

    data_type: str
    entity_id: Optional[str] = None
    period_id: Optional[str] = None
    fields: Dict[str, Any] = {}


class RowFilter(BaseModel):
    """Row filter applied after source-pattern matching."""
    field: str
    operator: Literal["eq", "neq", "contains"] = "eq"
    value: Any = None


class DerivationRule(BaseModel):
    """One metric derivation.

    ``sum``/``count`` scan rows whose ``data_type`` matches ``source_pattern``
    (case-insensitive regex). ``ratio`` divides two already-derived metrics and
    multiplies by ``scale_factor``.
    """
    model_config = ConfigDict(populate_by_name=True)

    metric: str
    operation: Literal["sum", "count", "ratio"]
    source_pattern: Optional[str] = Field(default=None, alias="sourcePattern")
    source_field: Optional[str] = Field(default=None, alias="sourceField")
    filters: List[RowFilter] = []
    numerator_metric: Optional[str] = Field(default=None, alias="numeratorMetric")
    denominator_metric: Optional[str] = Field(default=None, alias="denominatorMetric")
    scale_factor: Optional[float] = Field(default=None, alias="scaleFactor")


class Band(BaseModel):
    """Half-open numeric interval [min, max)."""
    min: float
    max: float = INFINITY
    label: str = ""


class Tier(Band):
    """A band that maps to a payout value."""
    value: float = 0.0


class Condition(Band):
    """A conditional-percentage rate, selected when ``metric`` falls in [min, max)."""
    metric: str
    rate: float


class ComponentBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = ""
    enabled: bool = True
    description: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.id


class TierLookupComponent(ComponentBase):
    type: Literal["tier_lookup"] = "tier_lookup"
    metric: str
    tiers: List[Tier]


class MatrixLookupComponent(ComponentBase):
    type: Literal["matrix_lookup"] = "matrix_lookup"
    row_metric: str = Field(alias="rowMetric")
    column_metric: str = Field(alias="columnMetric")
    row_bands: List[Band] = Field(alias="rowBands")
    column_bands: List[Band] = Field(alias="columnBands")
    values: List[List[float]]


class PercentageComponent(ComponentBase):
    type: Literal["percentage"] = "percentage"
    applied_to: str = Field(alias="appliedTo")
    rate: float
    min_threshold: Optional[float] = Field(default=None, alias="minThreshold")
    max_payout: Optional[float] = Field(default=None, alias="maxPayout")


class ConditionalPercentageComponent(ComponentBase):
    type: Literal["conditional_percentage"] = "conditional_percentage"
    applied_to: str = Field(alias="appliedTo")
    conditions: List[Condition] = []


PlanComponent = Annotated[
    Union[
        TierLookupComponent,
        MatrixLookupComponent,
        PercentageComponent,
        ConditionalPercentageComponent,
    ],
    Field(discriminator="type"),
]


class RuleSet(BaseModel):
    """Everything the engine needs to evaluate one plan."""
    model_config = ConfigDict(populate_by_name=True)

    rule_set_id: str = Field(alias="ruleSetId")
    name: str = ""
    derivation_rules: List[DerivationRule] = Field(default=[], alias="derivationRules")
    components: List[PlanComponent] = []

    @property
    def enabled_components(self) -> List[ComponentBase]:
        return [c for c in self.components if c.enabled]


class EntityRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    entity_id: str = Field(alias="entityId")
    name: str = ""
    group_id: Optional[str] = Field(default=None, alias="groupId")
    variant: Optional[str] = None


class GroundTruthRow(BaseModel):
    """Expected payout for one entity, supplied by an external reference file."""
    model_config = ConfigDict(populate_by_name=True)

    entity_id: str = Field(alias="entityId")
    period_id: Optional[str] = Field(default=None, alias="periodId")
    expected_total: float = Field(alias="expectedTotal")
    expected_components: Optional[Dict[str, float]] = Field(
        default=None, alias="expectedComponentBreakdown"
    )
