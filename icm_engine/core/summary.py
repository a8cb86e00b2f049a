# core/summary.py
"""
Read-time aggregation of a batch's entity traces.

Errored entities are listed in ``failed_entities`` and left out of every
statistic, so a half-failed run does not drag the averages toward zero.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

import pandas as pd

from ..models.reports import CalculationSummary, ComponentTotal, GroupTotal, Outlier, VariantGroup
from ..models.traces import EntityTrace, TraceStatus

logger = logging.getLogger(__name__)

OUTLIER_SIGMA = 3.0
# z-scores are compared with this slack so an exact 3-sigma deviation is flagged
Z_TOLERANCE = 1e-9

UNKNOWN_GROUP = "unknown"
DEFAULT_VARIANT = "Default"


def _entity_frame(traces: Sequence[EntityTrace]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "entity_id": t.entity_id,
                "entity_name": t.entity_name,
                "group_id": t.group_id or UNKNOWN_GROUP,
                "variant": t.variant or DEFAULT_VARIANT,
                "total": float(t.total),
            }
            for t in traces
        ],
        columns=["entity_id", "entity_name", "group_id", "variant", "total"],
    )


def _component_frame(traces: Sequence[EntityTrace]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "component_id": c.component_id,
                "component_name": c.component_name,
                "outcome": float(c.outcome),
            }
            for t in traces
            for c in t.components
            if c.status != TraceStatus.DISABLED
        ],
        columns=["component_id", "component_name", "outcome"],
    )


def component_totals(traces: Sequence[EntityTrace]) -> List[ComponentTotal]:
    """Totals per component; entity_count only counts non-zero outputs."""
    frame = _component_frame(traces)
    if frame.empty:
        return []
    grouped = frame.groupby("component_id", sort=False).agg(
        component_name=("component_name", "first"),
        total=("outcome", "sum"),
        entity_count=("outcome", lambda s: int((s != 0).sum())),
    )
    return [
        ComponentTotal(
            component_id=component_id,
            component_name=row.component_name,
            total=float(row.total),
            entity_count=int(row.entity_count),
        )
        for component_id, row in grouped.iterrows()
    ]


def find_outliers(entities: pd.DataFrame, sigma: float = OUTLIER_SIGMA) -> List[Outlier]:
    """Entities whose total sits ``sigma`` population standard deviations off the mean."""
    if entities.empty:
        return []
    totals = entities["total"]
    mean = float(totals.mean())
    std = float(totals.std(ddof=0))
    if std <= 0:
        return []

    scored = entities.assign(z_score=(totals - mean) / std)
    flagged = scored[scored["z_score"].abs() >= sigma - Z_TOLERANCE]
    flagged = flagged.reindex(
        flagged["z_score"].abs().sort_values(ascending=False, kind="mergesort").index
    )
    return [
        Outlier(
            entity_id=row.entity_id,
            entity_name=row.entity_name,
            group_id=None if row.group_id == UNKNOWN_GROUP else row.group_id,
            total=float(row.total),
            z_score=float(row.z_score),
        )
        for row in flagged.itertuples(index=False)
    ]


def summarize(
    traces: Sequence[EntityTrace],
    batch_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    period_id: Optional[str] = None,
    outlier_sigma: float = OUTLIER_SIGMA,
) -> CalculationSummary:
    succeeded = [t for t in traces if t.succeeded]
    failed = [t.entity_id for t in traces if not t.succeeded]
    if failed:
        logger.warning(f"Summary excludes {len(failed)} failed entities: {failed[:10]}")

    summary = CalculationSummary(
        batch_id=batch_id,
        tenant_id=tenant_id,
        period_id=period_id,
        failed_entities=failed,
        generated_at=datetime.now(timezone.utc),
    )
    entities = _entity_frame(succeeded)
    if entities.empty:
        return summary

    totals = entities["total"]
    summary.entity_count = len(entities)
    summary.total_payout = float(totals.sum())
    summary.average_payout = summary.total_payout / summary.entity_count
    summary.mean = float(totals.mean())
    summary.std_dev = float(totals.std(ddof=0))
    summary.component_totals = component_totals(succeeded)

    groups = entities.groupby("group_id").agg(
        total=("total", "sum"), entity_count=("entity_id", "count")
    )
    summary.group_totals = [
        GroupTotal(group_id=group_id, total=float(row.total), entity_count=int(row.entity_count))
        for group_id, row in groups.iterrows()
    ]

    variants = entities.groupby("variant").agg(
        count=("entity_id", "count"),
        total_payout=("total", "sum"),
        avg_payout=("total", "mean"),
    )
    summary.variant_distribution = [
        VariantGroup(
            variant=variant,
            count=int(row["count"]),
            total_payout=float(row.total_payout),
            avg_payout=float(row.avg_payout),
        )
        for variant, row in variants.iterrows()
    ]

    summary.outliers = find_outliers(entities, outlier_sigma)
    logger.info(
        f"Summarized {summary.entity_count} entities: total {summary.total_payout:,.2f}, "
        f"{len(summary.outliers)} outliers"
    )
    return summary
