# core/trajectory.py
"""
Trajectory Engine: distance and incremental payout to the next tier.

Works on tier_lookup components and on the row axis of matrix_lookup
components. Percentage components have no ladder and produce no card.
Nothing here reads the row store or mutates anything.
"""
import logging
from typing import List, Mapping, Optional, Sequence

from ..models.schemas import Band, MatrixLookupComponent, TierLookupComponent
from ..models.traces import EntityTrajectory, TrajectoryCard
from .evaluator import evaluate, find_band_index, next_band_index

logger = logging.getLogger(__name__)


def _band_label(bands: Sequence[Band], index: int) -> str:
    if index < 0:
        return "None"
    return bands[index].label or f"Tier {index + 1}"


def _progress(value: float, current_min: float, next_min: float) -> float:
    span = next_min - current_min
    if span <= 0:
        return 0.0
    return max(0.0, min(100.0, (value - current_min) / span * 100))


def _ladder_card(
    component,
    bands: Sequence[Band],
    payouts: Sequence[float],
    value: float,
    current_payout: float,
) -> Optional[TrajectoryCard]:
    index = find_band_index(bands, value)
    # Below the ladder or inside a gap, the target is the first band above the value.
    next_index = index + 1 if index >= 0 else next_band_index(bands, value)
    if next_index >= len(bands):
        return None

    next_band = bands[next_index]
    distance = next_band.min - value
    if distance <= 0:
        logger.debug(
            f"Component '{component.display_name}': non-positive distance {distance:g} "
            f"to '{_band_label(bands, next_index)}', skipped"
        )
        return None

    if index >= 0:
        current_min = bands[index].min
    elif next_index > 0:
        current_min = bands[next_index - 1].max
    else:
        current_min = 0.0
    return TrajectoryCard(
        component_id=component.id,
        component_name=component.display_name,
        component_type=component.type,
        current_value=value,
        current_tier=_band_label(bands, index),
        next_tier=_band_label(bands, next_index),
        next_tier_threshold=next_band.min,
        distance_to_next_tier=distance,
        current_payout=current_payout,
        next_tier_payout=payouts[next_index],
        incremental_value=payouts[next_index] - current_payout,
        progress_percent=_progress(value, current_min, next_band.min),
    )


def compute_trajectory(
    component,
    metrics: Mapping[str, float],
    current_payout: Optional[float] = None,
) -> Optional[TrajectoryCard]:
    """Trajectory card for one component, or None when there is nothing to climb.

    ``current_payout`` is the already-evaluated outcome; it is recomputed
    from ``metrics`` when not supplied.
    """
    if not component.enabled:
        return None
    if current_payout is None and isinstance(component, (TierLookupComponent, MatrixLookupComponent)):
        current_payout = evaluate(metrics, component).value

    if isinstance(component, TierLookupComponent):
        value = float(metrics.get(component.metric, 0.0))
        payouts = [tier.value for tier in component.tiers]
        return _ladder_card(component, component.tiers, payouts, value, current_payout)

    if isinstance(component, MatrixLookupComponent):
        value = float(metrics.get(component.row_metric, 0.0))
        column = find_band_index(
            component.column_bands, float(metrics.get(component.column_metric, 0.0))
        )
        if column < 0:
            column = len(component.column_bands) // 2
        payouts = [row[column] for row in component.values]
        return _ladder_card(component, component.row_bands, payouts, value, current_payout)

    return None


def compute_entity_trajectory(
    entity_id: str,
    components: Sequence,
    metrics: Mapping[str, float],
    outcomes: Optional[Mapping[str, float]] = None,
) -> EntityTrajectory:
    """All opportunities for one entity, best first.

    Ties on incremental value keep declaration order (sorted() is stable).
    """
    outcomes = outcomes or {}
    cards: List[TrajectoryCard] = []
    for component in components:
        card = compute_trajectory(component, metrics, outcomes.get(component.id))
        if card is not None and card.incremental_value > 0:
            cards.append(card)

    cards = sorted(cards, key=lambda c: c.incremental_value, reverse=True)
    return EntityTrajectory(
        entity_id=entity_id,
        trajectories=cards,
        best_opportunity=cards[0] if cards else None,
        total_potential=sum(c.incremental_value for c in cards),
    )
