# core/derivation.py
"""
Metric Derivation Engine: binds heterogeneous imported rows to canonical metrics.

Rules come in two passes:
  1. sum / count : scan the entity's rows once; a row contributes to a rule when
                    its data_type matches the rule's source_pattern (case-insensitive
                    regex) and it passes the rule's filters.
  2. ratio       : divide two already-derived metrics, in dependency order.

The output is a pure function of (rows, rules); the only memo is which rules
a data_type selects, so two calls on identical input return identical maps.
"""
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence

from ..models.schemas import DerivationRule, Row, RowFilter
from ..utils.validation import compile_source_pattern, order_derivation_rules

logger = logging.getLogger(__name__)


class MetricStatus(str, Enum):
    MATCHED = "matched"
    MATCHED_EMPTY = "matched_empty"  # rows matched but none carried a numeric source_field
    NO_MATCH = "no_match"            # no row matched the pattern/filters
    ZERO_DENOMINATOR = "zero_denominator"


@dataclass(frozen=True)
class MetricDiagnostic:
    metric: str
    operation: str
    status: MetricStatus
    value: float
    matched_rows: int = 0


@dataclass
class DerivationResult:
    metrics: Dict[str, float] = field(default_factory=dict)
    diagnostics: Dict[str, MetricDiagnostic] = field(default_factory=dict)

    @property
    def unmatched(self) -> FrozenSet[str]:
        """Metrics whose value is zero because no source data existed."""
        return frozenset(
            name for name, diag in self.diagnostics.items() if diag.status == MetricStatus.NO_MATCH
        )


def to_number(value: Any) -> Optional[float]:
    """Parse a field value as a number; None means absent (never zero)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _passes_filter(row: Row, row_filter: RowFilter) -> bool:
    if row_filter.field not in row.fields or row.fields[row_filter.field] is None:
        return row_filter.operator == "neq"
    actual = str(row.fields[row_filter.field]).strip().lower()
    target = str(row_filter.value if row_filter.value is not None else "").strip().lower()
    if row_filter.operator == "eq":
        return actual == target
    if row_filter.operator == "neq":
        return actual != target
    return target in actual


def _passes_filters(row: Row, filters: Sequence[RowFilter]) -> bool:
    return all(_passes_filter(row, f) for f in filters)


class MetricDerivationEngine:
    """Compiled derivation rules for one rule set.

    Construction validates the rules (undefined ratio references, cycles, bad
    patterns) and raises ConfigurationError, so a broken rule set fails before
    any entity is touched.
    """

    def __init__(self, rules: Sequence[DerivationRule]):
        self.non_ratio_rules, self.ratio_rules = order_derivation_rules(rules)
        self._patterns = {rule.metric: compile_source_pattern(rule) for rule in self.non_ratio_rules}

    @property
    def metric_names(self) -> List[str]:
        return [r.metric for r in self.non_ratio_rules] + [r.metric for r in self.ratio_rules]

    def _rules_for(self, data_type: str, memo: Dict[str, List[DerivationRule]]) -> List[DerivationRule]:
        matched = memo.get(data_type)
        if matched is None:
            matched = [
                rule for rule in self.non_ratio_rules
                if self._patterns[rule.metric].search(data_type)
            ]
            memo[data_type] = matched
        return matched

    def derive(self, rows: Iterable[Row]) -> Dict[str, float]:
        return self.derive_with_diagnostics(rows).metrics

    def derive_with_diagnostics(self, rows: Iterable[Row]) -> DerivationResult:
        totals = {rule.metric: 0.0 for rule in self.non_ratio_rules}
        matched = {rule.metric: 0 for rule in self.non_ratio_rules}
        numeric = {rule.metric: 0 for rule in self.non_ratio_rules}
        # Per-call memo: the engine itself is shared read-only across worker threads.
        rules_by_type: Dict[str, List[DerivationRule]] = {}

        # Single pass so paged/streamed row iterators are consumed once.
        for row in rows:
            for rule in self._rules_for(row.data_type, rules_by_type):
                if rule.filters and not _passes_filters(row, rule.filters):
                    continue
                matched[rule.metric] += 1
                if rule.operation == "count":
                    totals[rule.metric] += 1
                    numeric[rule.metric] += 1
                    continue
                number = to_number(row.fields.get(rule.source_field))
                if number is not None:
                    totals[rule.metric] += number
                    numeric[rule.metric] += 1

        result = DerivationResult()
        for rule in self.non_ratio_rules:
            name = rule.metric
            if matched[name] == 0:
                status = MetricStatus.NO_MATCH
                logger.debug(f"Metric '{name}': no rows matched pattern '{rule.source_pattern}'")
            elif numeric[name] == 0:
                status = MetricStatus.MATCHED_EMPTY
                logger.debug(
                    f"Metric '{name}': {matched[name]} rows matched but none had "
                    f"a numeric '{rule.source_field}'"
                )
            else:
                status = MetricStatus.MATCHED
            result.metrics[name] = totals[name]
            result.diagnostics[name] = MetricDiagnostic(
                metric=name, operation=rule.operation, status=status,
                value=totals[name], matched_rows=matched[name],
            )

        for rule in self.ratio_rules:
            numerator = result.metrics[rule.numerator_metric]
            denominator = result.metrics[rule.denominator_metric]
            scale = rule.scale_factor if rule.scale_factor is not None else 1.0
            if denominator == 0:
                value = 0.0
            else:
                value = numerator / denominator * scale

            dependencies = (
                result.diagnostics[rule.numerator_metric],
                result.diagnostics[rule.denominator_metric],
            )
            if any(d.status == MetricStatus.NO_MATCH for d in dependencies):
                status = MetricStatus.NO_MATCH
            elif denominator == 0:
                status = MetricStatus.ZERO_DENOMINATOR
                logger.debug(f"Metric '{rule.metric}': denominator '{rule.denominator_metric}' is 0")
            else:
                status = MetricStatus.MATCHED
            result.metrics[rule.metric] = value
            result.diagnostics[rule.metric] = MetricDiagnostic(
                metric=rule.metric, operation="ratio", status=status, value=value,
                matched_rows=min(d.matched_rows for d in dependencies),
            )

        return result


def derive(entity_rows: Iterable[Row], rules: Sequence[DerivationRule]) -> Dict[str, float]:
    """Derive the metric map for one entity's rows."""
    return MetricDerivationEngine(rules).derive(entity_rows)
