# core/evaluator.py
"""
Component Evaluator: turns derived metrics into a payout per plan component.

Supported component types (closed set, see models.schemas.PlanComponent):
  tier_lookup            : payout of the tier containing the metric
  matrix_lookup          : 2-D table indexed by a row band and a column band
  percentage             : metric * rate, with optional threshold and cap
  conditional_percentage : metric * rate of the first matching condition

Band semantics everywhere: inclusive at min, exclusive at max, and the top band
of a ladder is also open above (a value >= its min always matches it).

Missing metrics evaluate as 0 and mark the trace MISSING_DATA; they never raise.
Every call returns a trace, including zero-payout paths.
"""
import logging
from dataclasses import dataclass
from typing import AbstractSet, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, get_args

from ..errors import ConfigurationError
from ..models.schemas import (
    Band,
    ConditionalPercentageComponent,
    MatrixLookupComponent,
    PercentageComponent,
    PlanComponent,
    TierLookupComponent,
)
from ..models.traces import ExecutionTrace, LookupResolution, Modifier, TraceInput, TraceStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Evaluation:
    value: float
    trace: ExecutionTrace


def find_band_index(bands: Sequence[Band], value: float) -> int:
    """Index of the band containing ``value``, or -1 when below every band or in a gap."""
    for i, band in enumerate(bands):
        if band.min <= value < band.max:
            return i
    if bands and value >= bands[-1].min:
        return len(bands) - 1
    return -1


def next_band_index(bands: Sequence[Band], value: float) -> int:
    """Index of the first band starting above ``value``, or len(bands) when none does."""
    for i, band in enumerate(bands):
        if band.min > value:
            return i
    return len(bands)


def _unmatched_band_message(bands: Sequence[Band], value: float) -> str:
    upper = next_band_index(bands, value)
    if upper == 0:
        return f"is below first tier min {bands[0].min:g}"
    lower = bands[upper - 1]
    lower_label = lower.label or f"Tier {upper}"
    upper_label = bands[upper].label or f"Tier {upper + 1}"
    return (
        f"falls between tiers '{lower_label}' and '{upper_label}' "
        f"(gap [{lower.max:g}, {bands[upper].min:g}))"
    )


def resolve_band(axis: str, bands: Sequence[Band], value: float) -> LookupResolution:
    index = find_band_index(bands, value)
    if index < 0:
        return LookupResolution(axis=axis, index=-1)
    band = bands[index]
    return LookupResolution(axis=axis, index=index, label=band.label, min=band.min, max=band.max)


def _read_metric(metrics: Mapping[str, float], name: str, unmatched: AbstractSet[str]) -> TraceInput:
    if name not in metrics:
        return TraceInput(name=name, source="absent", value=0.0, present=False)
    value = float(metrics[name])
    if name in unmatched:
        return TraceInput(name=name, source="no_matching_rows", value=value, present=False)
    return TraceInput(name=name, source="derived", value=value)


def _status(inputs: Sequence[TraceInput], matched: bool) -> TraceStatus:
    if any(not i.present for i in inputs):
        return TraceStatus.MISSING_DATA
    if not matched:
        return TraceStatus.NO_MATCH
    return TraceStatus.COMPUTED


def _missing_message(inputs: Sequence[TraceInput]) -> str:
    missing = [i.name for i in inputs if not i.present]
    return f"no data for {', '.join(missing)}; treated as 0" if missing else ""


def _evaluate_tier(
    component: TierLookupComponent, metrics: Mapping[str, float], unmatched: AbstractSet[str]
) -> Tuple[float, Dict]:
    metric = _read_metric(metrics, component.metric, unmatched)
    lookup = resolve_band("tier", component.tiers, metric.value)
    if lookup.matched:
        value = component.tiers[lookup.index].value
        message = f"{metric.name}={metric.value:g} matched tier '{lookup.label}'"
    else:
        value = 0.0
        message = (
            f"no tier matched: {metric.name}={metric.value:g} "
            + _unmatched_band_message(component.tiers, metric.value)
        )
    return value, {
        "inputs": [metric],
        "lookups": [lookup],
        "matched": lookup.matched,
        "message": _missing_message([metric]) or message,
    }


def _evaluate_matrix(
    component: MatrixLookupComponent, metrics: Mapping[str, float], unmatched: AbstractSet[str]
) -> Tuple[float, Dict]:
    row_input = _read_metric(metrics, component.row_metric, unmatched)
    col_input = _read_metric(metrics, component.column_metric, unmatched)
    row = resolve_band("row", component.row_bands, row_input.value)
    col = resolve_band("column", component.column_bands, col_input.value)
    matched = row.matched and col.matched
    if matched:
        value = component.values[row.index][col.index]
        message = f"matrix cell [{row.index}][{col.index}] ('{row.label}' x '{col.label}')"
    else:
        value = 0.0
        axes = [a.axis for a in (row, col) if not a.matched]
        message = f"no band matched on {' and '.join(axes)} axis"
    inputs = [row_input, col_input]
    return value, {
        "inputs": inputs,
        "lookups": [row, col],
        "matched": matched,
        "message": _missing_message(inputs) or message,
    }


def _evaluate_percentage(
    component: PercentageComponent, metrics: Mapping[str, float], unmatched: AbstractSet[str]
) -> Tuple[float, Dict]:
    base = _read_metric(metrics, component.applied_to, unmatched)
    value = base.value * component.rate
    modifiers: List[Modifier] = []
    if component.min_threshold is not None and base.value < component.min_threshold:
        modifiers.append(Modifier(name="min_threshold", before=value, after=0.0))
        value = 0.0
    if component.max_payout is not None and value > component.max_payout:
        modifiers.append(Modifier(name="max_payout", before=value, after=component.max_payout))
        value = component.max_payout
    return value, {
        "inputs": [base],
        "modifiers": modifiers,
        "matched": True,
        "message": _missing_message([base]) or f"{base.name}={base.value:g} x rate {component.rate:g}",
    }


def _evaluate_conditional(
    component: ConditionalPercentageComponent, metrics: Mapping[str, float], unmatched: AbstractSet[str]
) -> Tuple[float, Dict]:
    base = _read_metric(metrics, component.applied_to, unmatched)
    inputs = [base]
    condition_inputs: Dict[str, TraceInput] = {}
    for condition in component.conditions:
        if condition.metric not in condition_inputs:
            condition_inputs[condition.metric] = _read_metric(metrics, condition.metric, unmatched)
    inputs.extend(i for name, i in condition_inputs.items() if name != base.name)

    for i, condition in enumerate(component.conditions):
        observed = condition_inputs[condition.metric].value
        if condition.min <= observed < condition.max:
            lookup = LookupResolution(
                axis="condition", index=i, label=condition.label,
                min=condition.min, max=condition.max,
            )
            return base.value * condition.rate, {
                "inputs": inputs,
                "lookups": [lookup],
                "matched": True,
                "message": _missing_message(inputs)
                or f"{condition.metric}={observed:g} selected rate {condition.rate:g}",
            }

    return 0.0, {
        "inputs": inputs,
        "lookups": [LookupResolution(axis="condition", index=-1)],
        "matched": False,
        "message": _missing_message(inputs) or "no condition matched",
    }


_EVALUATORS: Dict[type, Callable] = {
    TierLookupComponent: _evaluate_tier,
    MatrixLookupComponent: _evaluate_matrix,
    PercentageComponent: _evaluate_percentage,
    ConditionalPercentageComponent: _evaluate_conditional,
}

_unhandled = set(get_args(get_args(PlanComponent)[0])) - set(_EVALUATORS)
if _unhandled:
    raise ImportError(f"No evaluator registered for {sorted(t.__name__ for t in _unhandled)}")


def evaluate(
    metrics: Mapping[str, float],
    component,
    unmatched: AbstractSet[str] = frozenset(),
    entity_id: Optional[str] = None,
) -> Evaluation:
    """Evaluate one component against an entity's derived metrics.

    ``unmatched`` names metrics that derived to 0 because no rows matched,
    so the trace can say "no data" instead of "earned nothing".
    """
    base = {
        "entity_id": entity_id,
        "component_id": component.id,
        "component_name": component.display_name,
        "component_type": component.type,
    }
    if not component.enabled:
        trace = ExecutionTrace(**base, status=TraceStatus.DISABLED, message="component disabled")
        return Evaluation(0.0, trace)

    handler = _EVALUATORS.get(type(component))
    if handler is None:
        raise ConfigurationError(
            f"Unsupported component type: {type(component).__name__}", rule=component.id
        )

    value, details = handler(component, metrics, unmatched)
    inputs = details["inputs"]
    trace = ExecutionTrace(
        **base,
        inputs=inputs,
        lookups=details.get("lookups", []),
        modifiers=details.get("modifiers", []),
        outcome=value,
        status=_status(inputs, details["matched"]),
        message=details["message"],
    )
    return Evaluation(value, trace)


def evaluate_all(
    metrics: Mapping[str, float],
    components: Sequence,
    unmatched: AbstractSet[str] = frozenset(),
    entity_id: Optional[str] = None,
) -> List[Evaluation]:
    """Evaluate every enabled component; disabled ones are skipped entirely."""
    return [
        evaluate(metrics, component, unmatched, entity_id)
        for component in components
        if component.enabled
    ]
