from .schemas import (
    Band,
    ComponentBase,
    Condition,
    ConditionalPercentageComponent,
    DerivationRule,
    EntityRef,
    GroundTruthRow,
    MatrixLookupComponent,
    PercentageComponent,
    PlanComponent,
    Row,
    RowFilter,
    RuleSet,
    Tier,
    TierLookupComponent,
)
from .traces import (
    EntityTrace,
    EntityTrajectory,
    ExecutionTrace,
    LookupResolution,
    Modifier,
    TraceInput,
    TraceStatus,
    TrajectoryCard,
)
from .batch import AuditEntry, AuditRecord, CalculationBatch, LifecycleState
from .reports import (
    ComponentDelta,
    CalculationSummary,
    ComponentTotal,
    DeltaFlag,
    EntityReconciliation,
    GroupTotal,
    MatchClass,
    Outlier,
    Population,
    ReconciliationReport,
    VariantGroup,
)
