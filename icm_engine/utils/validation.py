"""
Rule-set validation utilities for the calculation engine.

Authoring defects raise ConfigurationError before any entity is processed.
Soft problems (a component reading a metric no rule derives) are returned as
warning strings, the same way cross-reference checks report them.
"""

import logging
import re
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from pydantic import ValidationError

from ..errors import ConfigurationError
from ..models.schemas import (
    Band,
    ConditionalPercentageComponent,
    DerivationRule,
    MatrixLookupComponent,
    PercentageComponent,
    RuleSet,
    TierLookupComponent,
)

# Set up module logger
logger = logging.getLogger(__name__)


def load_rule_set(raw: Mapping[str, Any]) -> RuleSet:
    """Build a RuleSet from stored JSON, reporting schema errors as ConfigurationError."""
    try:
        return RuleSet.model_validate(raw)
    except ValidationError as e:
        name = raw.get("name") or raw.get("rule_set_id") or raw.get("ruleSetId")
        raise ConfigurationError(f"Malformed rule set: {e}", rule=name) from e


def validate_ladder(bands: Sequence[Band], owner: str) -> None:
    """A ladder must be non-empty, ascending, non-overlapping, with min < max per band.

    Gaps between bands are allowed; a value inside one matches no band.
    """
    if not bands:
        raise ConfigurationError("Ladder has no tiers/bands", rule=owner)
    for i, band in enumerate(bands):
        if band.min >= band.max:
            raise ConfigurationError(
                f"Band {i} has min {band.min} >= max {band.max}", rule=owner
            )
        if i > 0:
            previous = bands[i - 1]
            if band.min < previous.min:
                raise ConfigurationError(f"Band {i} is not sorted ascending by min", rule=owner)
            if band.min < previous.max:
                raise ConfigurationError(
                    f"Band {i} [{band.min}, {band.max}) overlaps band {i - 1} "
                    f"[{previous.min}, {previous.max})",
                    rule=owner,
                )


def validate_component(component) -> None:
    owner = component.display_name
    if isinstance(component, TierLookupComponent):
        validate_ladder(component.tiers, owner)
    elif isinstance(component, MatrixLookupComponent):
        validate_ladder(component.row_bands, f"{owner}.rowBands")
        validate_ladder(component.column_bands, f"{owner}.columnBands")
        if len(component.values) != len(component.row_bands):
            raise ConfigurationError(
                f"Matrix has {len(component.values)} value rows for "
                f"{len(component.row_bands)} row bands",
                rule=owner,
            )
        for i, row in enumerate(component.values):
            if len(row) != len(component.column_bands):
                raise ConfigurationError(
                    f"Matrix value row {i} has {len(row)} columns for "
                    f"{len(component.column_bands)} column bands",
                    rule=owner,
                )
    elif isinstance(component, ConditionalPercentageComponent):
        for i, condition in enumerate(component.conditions):
            if condition.min >= condition.max:
                raise ConfigurationError(
                    f"Condition {i} has min {condition.min} >= max {condition.max}", rule=owner
                )
    elif isinstance(component, PercentageComponent):
        if component.max_payout is not None and component.max_payout < 0:
            raise ConfigurationError("max_payout cannot be negative", rule=owner)
    else:
        raise ConfigurationError(f"Unsupported component type: {type(component).__name__}", rule=owner)


def compile_source_pattern(rule: DerivationRule) -> "re.Pattern[str]":
    if not rule.source_pattern:
        raise ConfigurationError(f"'{rule.operation}' rule needs a source_pattern", rule=rule.metric)
    try:
        return re.compile(rule.source_pattern, re.IGNORECASE)
    except re.error as e:
        raise ConfigurationError(
            f"Invalid source_pattern '{rule.source_pattern}': {e}", rule=rule.metric
        ) from e


def effective_rules(rules: Sequence[DerivationRule]) -> List[DerivationRule]:
    """Collapse redefinitions: the last declaration of a metric wins.

    The surviving rule takes the position of its last declaration.
    """
    latest: Dict[str, DerivationRule] = {}
    for rule in rules:
        if rule.metric in latest:
            logger.debug(f"Metric '{rule.metric}' redefined; last declaration wins")
            del latest[rule.metric]
        latest[rule.metric] = rule
    return list(latest.values())


def order_derivation_rules(
    rules: Sequence[DerivationRule],
) -> Tuple[List[DerivationRule], List[DerivationRule]]:
    """Split rules into (non_ratio, ratio) with ratio rules in dependency order.

    Ratio rules keep declaration order unless a ratio reads another ratio
    declared after it. Undefined references and cycles raise ConfigurationError.
    """
    rules = effective_rules(rules)
    non_ratio: List[DerivationRule] = []
    ratios: Dict[str, DerivationRule] = {}

    for rule in rules:
        if rule.operation == "ratio":
            if not rule.numerator_metric or not rule.denominator_metric:
                raise ConfigurationError(
                    "ratio rule needs numerator_metric and denominator_metric", rule=rule.metric
                )
            ratios[rule.metric] = rule
        else:
            if rule.operation == "sum" and not rule.source_field:
                raise ConfigurationError("sum rule needs a source_field", rule=rule.metric)
            non_ratio.append(rule)

    defined = {r.metric for r in non_ratio} | set(ratios)
    for rule in ratios.values():
        for ref in (rule.numerator_metric, rule.denominator_metric):
            if ref not in defined:
                raise ConfigurationError(f"ratio references undefined metric '{ref}'", rule=rule.metric)

    ordered: List[DerivationRule] = []
    state: Dict[str, str] = {}

    def visit(metric: str, path: List[str]) -> None:
        if state.get(metric) == "done":
            return
        if state.get(metric) == "visiting":
            cycle = " -> ".join(path + [metric])
            raise ConfigurationError(f"Cyclic ratio dependency: {cycle}", rule=metric)
        state[metric] = "visiting"
        rule = ratios[metric]
        for ref in (rule.numerator_metric, rule.denominator_metric):
            if ref in ratios:
                visit(ref, path + [metric])
        state[metric] = "done"
        ordered.append(rule)

    for metric in ratios:
        visit(metric, [])

    return non_ratio, ordered


def validate_rule_set(rule_set: RuleSet) -> List[str]:
    """Validate a whole rule set. Raises on defects, returns soft warnings."""
    non_ratio, ratios = order_derivation_rules(rule_set.derivation_rules)
    for rule in non_ratio:
        compile_source_pattern(rule)

    seen_ids = set()
    for component in rule_set.components:
        if component.id in seen_ids:
            raise ConfigurationError(f"Duplicate component id '{component.id}'", rule=component.id)
        seen_ids.add(component.id)
        validate_component(component)

    warnings: List[str] = []
    derived = {r.metric for r in non_ratio} | {r.metric for r in ratios}
    if rule_set.derivation_rules:
        for component in rule_set.enabled_components:
            for metric in component_metrics(component):
                if metric not in derived:
                    warnings.append(
                        f"Component '{component.display_name}' reads metric '{metric}' "
                        f"which no derivation rule produces"
                    )
    for warning in warnings:
        logger.warning(warning)
    return warnings


def component_metrics(component) -> List[str]:
    """Metric names a component consumes, in evaluation order."""
    if isinstance(component, TierLookupComponent):
        return [component.metric]
    if isinstance(component, MatrixLookupComponent):
        return [component.row_metric, component.column_metric]
    if isinstance(component, PercentageComponent):
        return [component.applied_to]
    if isinstance(component, ConditionalPercentageComponent):
        names = [component.applied_to]
        for condition in component.conditions:
            if condition.metric not in names:
                names.append(condition.metric)
        return names
    raise ConfigurationError(f"Unsupported component type: {type(component).__name__}")
