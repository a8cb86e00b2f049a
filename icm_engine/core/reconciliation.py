# core/reconciliation.py
"""
Ground-truth reconciliation.

Engine traces and an external expected-payout table are joined on entity id
into three populations (matched, engine_only, ground_truth_only). Matched
entities are classified:

  true_match          totals agree and so does every component
  coincidental_match  totals agree but the component breakdown does not
  mismatch            totals disagree

Ground truth is read only; nothing is written back.
"""
import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from ..config.settings import EngineSettings
from ..models.reports import (
    ComponentDelta,
    DeltaFlag,
    EntityReconciliation,
    MatchClass,
    Population,
    ReconciliationReport,
)
from ..models.schemas import GroundTruthRow
from ..models.traces import EntityTrace, TraceStatus

logger = logging.getLogger(__name__)

TOTAL_MATCH_EPSILON = 0.01
COMPONENT_MATCH_EPSILON = 0.01
TOLERANCE_PCT = 5.0
AMBER_PCT = 15.0

_POPULATIONS = {
    "both": Population.MATCHED,
    "left_only": Population.ENGINE_ONLY,
    "right_only": Population.GROUND_TRUTH_ONLY,
}


def delta_flag(
    engine_total: float,
    expected_total: float,
    epsilon: float = TOTAL_MATCH_EPSILON,
    tolerance_pct: float = TOLERANCE_PCT,
    amber_pct: float = AMBER_PCT,
) -> DeltaFlag:
    delta = abs(engine_total - expected_total)
    if delta < epsilon:
        return DeltaFlag.EXACT
    if expected_total == 0:
        return DeltaFlag.RED
    pct = delta / abs(expected_total) * 100
    if pct <= tolerance_pct:
        return DeltaFlag.TOLERANCE
    if pct <= amber_pct:
        return DeltaFlag.AMBER
    return DeltaFlag.RED


def compare_components(
    trace: EntityTrace, expected: Mapping[str, float], epsilon: float = COMPONENT_MATCH_EPSILON
) -> List[ComponentDelta]:
    """Per-component deltas. Expected keys match a component id first, then its name.

    A component missing on either side counts as 0.
    """
    components = [c for c in trace.components if c.status != TraceStatus.DISABLED]
    by_id = {c.component_id: c for c in components}
    by_name = {c.component_name: c for c in components}

    deltas: List[ComponentDelta] = []
    used = set()
    for key, expected_value in expected.items():
        component = by_id.get(key) or by_name.get(key)
        engine_value = 0.0
        if component is not None:
            engine_value = component.outcome
            used.add(component.component_id)
        delta = engine_value - float(expected_value)
        deltas.append(ComponentDelta(
            component=key,
            engine_value=engine_value,
            expected_value=float(expected_value),
            delta=delta,
            matches=abs(delta) < epsilon,
        ))

    for component in components:
        if component.component_id in used or component.outcome == 0:
            continue
        deltas.append(ComponentDelta(
            component=component.component_id,
            engine_value=component.outcome,
            expected_value=0.0,
            delta=component.outcome,
            matches=abs(component.outcome) < epsilon,
        ))
    return deltas


def classify(
    trace: EntityTrace,
    truth: GroundTruthRow,
    total_epsilon: float = TOTAL_MATCH_EPSILON,
    component_epsilon: float = COMPONENT_MATCH_EPSILON,
) -> Tuple[MatchClass, List[ComponentDelta]]:
    if abs(trace.total - truth.expected_total) >= total_epsilon:
        deltas = (
            compare_components(trace, truth.expected_components, component_epsilon)
            if truth.expected_components is not None else []
        )
        return MatchClass.MISMATCH, deltas
    if truth.expected_components is None:
        return MatchClass.TRUE_MATCH, []
    deltas = compare_components(trace, truth.expected_components, component_epsilon)
    if all(d.matches for d in deltas):
        return MatchClass.TRUE_MATCH, deltas
    return MatchClass.COINCIDENTAL_MATCH, deltas


def reconcile(
    traces: Sequence[EntityTrace],
    ground_truth: Sequence[GroundTruthRow],
    total_epsilon: float = TOTAL_MATCH_EPSILON,
    component_epsilon: float = COMPONENT_MATCH_EPSILON,
    tolerance_pct: float = TOLERANCE_PCT,
    amber_pct: float = AMBER_PCT,
    period_id: Optional[str] = None,
) -> ReconciliationReport:
    """Join engine traces with ground truth and classify every matched entity.

    Errored entity traces carry no trustworthy total and are left out of the
    engine side. Ground-truth rows for another period are ignored when
    ``period_id`` is given.
    """
    engine: Dict[str, EntityTrace] = {t.entity_id: t for t in traces if t.succeeded}
    truth: Dict[str, GroundTruthRow] = {}
    for row in ground_truth:
        if period_id is not None and row.period_id not in (None, period_id):
            continue
        if row.entity_id in truth:
            logger.warning(f"Duplicate ground-truth row for {row.entity_id}; keeping the last one")
        truth[row.entity_id] = row

    joined = pd.merge(
        pd.DataFrame({"entity_id": list(engine)}, dtype=object),
        pd.DataFrame({"entity_id": list(truth)}, dtype=object),
        on="entity_id",
        how="outer",
        indicator="side",
    )

    entries: List[EntityReconciliation] = []
    for row in joined.itertuples(index=False):
        entity_id = row.entity_id
        population = _POPULATIONS[row.side]
        trace = engine.get(entity_id)
        expected = truth.get(entity_id)

        if population != Population.MATCHED:
            entries.append(EntityReconciliation(
                entity_id=entity_id,
                population=population,
                engine_total=trace.total if trace else None,
                expected_total=expected.expected_total if expected else None,
            ))
            continue

        classification, deltas = classify(trace, expected, total_epsilon, component_epsilon)
        entries.append(EntityReconciliation(
            entity_id=entity_id,
            population=population,
            classification=classification,
            engine_total=trace.total,
            expected_total=expected.expected_total,
            delta=trace.total - expected.expected_total,
            delta_flag=delta_flag(
                trace.total, expected.expected_total, total_epsilon, tolerance_pct, amber_pct
            ),
            components_checked=expected.expected_components is not None,
            component_deltas=deltas,
        ))

    counts: Dict[str, int] = {c.value: 0 for c in MatchClass}
    counts.update({p.value: 0 for p in Population})
    for entry in entries:
        counts[entry.population.value] += 1
        if entry.classification is not None:
            counts[entry.classification.value] += 1

    engine_total = float(sum(t.total for t in engine.values()))
    expected_total = float(sum(r.expected_total for r in truth.values()))
    report = ReconciliationReport(
        entities=entries,
        counts=counts,
        engine_total=engine_total,
        expected_total=expected_total,
        total_delta=engine_total - expected_total,
        total_epsilon=total_epsilon,
        component_epsilon=component_epsilon,
    )
    logger.info(
        f"Reconciled {len(entries)} entities: {counts[MatchClass.TRUE_MATCH.value]} true, "
        f"{counts[MatchClass.COINCIDENTAL_MATCH.value]} coincidental, "
        f"{counts[MatchClass.MISMATCH.value]} mismatched"
    )
    return report


def reconcile_with_settings(
    traces: Sequence[EntityTrace],
    ground_truth: Sequence[GroundTruthRow],
    settings: Optional[EngineSettings] = None,
    period_id: Optional[str] = None,
) -> ReconciliationReport:
    """reconcile() with epsilons and flag thresholds from the ``reconciliation`` config section."""
    section = (settings or EngineSettings()).reconciliation
    return reconcile(
        traces,
        ground_truth,
        total_epsilon=section.total_epsilon,
        component_epsilon=section.component_epsilon,
        tolerance_pct=section.tolerance_pct,
        amber_pct=section.amber_pct,
        period_id=period_id,
    )
