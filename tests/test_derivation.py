"""Tests for the metric derivation engine."""
import copy
import math

import pytest

from icm_engine.core.derivation import MetricDerivationEngine, MetricStatus, derive, to_number
from icm_engine.errors import ConfigurationError
from icm_engine.models import DerivationRule, Row, RowFilter


def _sample_rows():
    """Rows for one entity spread over three differently-named sheets."""
    return [
        Row(data_type="Sales_Transactions", entity_id="E1", fields={"amount": 1000, "status": "Closed"}),
        Row(data_type="sales_transactions", entity_id="E1", fields={"amount": "2,500.50", "status": "open"}),
        Row(data_type="Sales_Transactions", entity_id="E1", fields={"amount": "n/a", "status": "closed"}),
        Row(data_type="Quota", entity_id="E1", fields={"target": 5000}),
        Row(data_type="Customer_Visits", entity_id="E1", fields={}),
        Row(data_type="Customer_Visits", entity_id="E1", fields={}),
    ]


def _sample_rules():
    return [
        DerivationRule(metric="revenue", operation="sum", source_pattern="sales", source_field="amount"),
        DerivationRule(metric="quota", operation="sum", source_pattern="^quota$", source_field="target"),
        DerivationRule(metric="visits", operation="count", source_pattern="visit"),
        DerivationRule(
            metric="attainment", operation="ratio",
            numerator_metric="revenue", denominator_metric="quota", scale_factor=100,
        ),
    ]


class TestSumCountRatio:
    def test_derives_all_metrics(self):
        metrics = derive(_sample_rows(), _sample_rules())
        assert metrics["revenue"] == pytest.approx(3500.5)
        assert metrics["quota"] == 5000
        assert metrics["visits"] == 2
        assert metrics["attainment"] == pytest.approx(70.01)

    def test_pattern_is_case_insensitive(self):
        rules = [DerivationRule(metric="rows", operation="count", source_pattern="SALES_TRANSACTIONS")]
        assert derive(_sample_rows(), rules)["rows"] == 3

    def test_non_numeric_values_are_absent_not_zero(self):
        result = MetricDerivationEngine(_sample_rules()).derive_with_diagnostics(_sample_rows())
        diag = result.diagnostics["revenue"]
        assert diag.matched_rows == 3
        assert diag.status == MetricStatus.MATCHED

    def test_ratio_without_scale_factor(self):
        rules = _sample_rules()[:2] + [
            DerivationRule(metric="ratio", operation="ratio", numerator_metric="quota", denominator_metric="revenue"),
        ]
        assert derive(_sample_rows(), rules)["ratio"] == pytest.approx(5000 / 3500.5)

    def test_accepts_streamed_rows(self):
        engine = MetricDerivationEngine(_sample_rules())
        streamed = engine.derive(row for row in _sample_rows())
        assert streamed == engine.derive(_sample_rows())


class TestZeroDenominator:
    def test_missing_denominator_yields_zero(self):
        rows = [r for r in _sample_rows() if r.data_type != "Quota"]
        result = MetricDerivationEngine(_sample_rules()).derive_with_diagnostics(rows)
        assert result.metrics["attainment"] == 0
        assert not math.isnan(result.metrics["attainment"])
        assert not math.isinf(result.metrics["attainment"])
        assert result.diagnostics["attainment"].status == MetricStatus.NO_MATCH

    def test_zero_valued_denominator(self):
        rows = [r for r in _sample_rows() if r.data_type != "Quota"]
        rows.append(Row(data_type="Quota", entity_id="E1", fields={"target": 0}))
        result = MetricDerivationEngine(_sample_rules()).derive_with_diagnostics(rows)
        assert result.metrics["attainment"] == 0
        assert result.diagnostics["attainment"].status == MetricStatus.ZERO_DENOMINATOR


class TestDiagnostics:
    def test_no_match_vs_matched_empty(self):
        rules = [
            DerivationRule(metric="bonus", operation="sum", source_pattern="bonus", source_field="amount"),
            DerivationRule(metric="visit_amount", operation="sum", source_pattern="visit", source_field="amount"),
        ]
        result = MetricDerivationEngine(rules).derive_with_diagnostics(_sample_rows())
        assert result.metrics == {"bonus": 0.0, "visit_amount": 0.0}
        assert result.diagnostics["bonus"].status == MetricStatus.NO_MATCH
        assert result.diagnostics["visit_amount"].status == MetricStatus.MATCHED_EMPTY
        assert result.unmatched == frozenset({"bonus"})


class TestIdempotence:
    def test_repeated_calls_identical(self):
        engine = MetricDerivationEngine(_sample_rules())
        first = engine.derive(_sample_rows())
        second = engine.derive(_sample_rows())
        assert first == second
        assert derive(_sample_rows(), _sample_rules()) == first

    def test_derive_leaves_engine_state_untouched(self):
        engine = MetricDerivationEngine(_sample_rules())
        before = {name: copy.copy(value) for name, value in vars(engine).items()}
        engine.derive(_sample_rows())
        assert vars(engine) == before


class TestRuleOrdering:
    def test_ratio_reading_later_ratio(self):
        rules = _sample_rules()[:2] + [
            DerivationRule(metric="per_quota", operation="ratio", numerator_metric="fraction", denominator_metric="quota"),
            DerivationRule(metric="fraction", operation="ratio", numerator_metric="revenue", denominator_metric="quota"),
        ]
        metrics = derive(_sample_rows(), rules)
        assert metrics["fraction"] == pytest.approx(3500.5 / 5000)
        assert metrics["per_quota"] == pytest.approx(3500.5 / 5000 / 5000)

    def test_undefined_reference_is_configuration_error(self):
        rules = [DerivationRule(metric="x", operation="ratio", numerator_metric="ghost", denominator_metric="ghost")]
        with pytest.raises(ConfigurationError, match="ghost"):
            MetricDerivationEngine(rules)

    def test_cycle_is_configuration_error(self):
        rules = [
            DerivationRule(metric="a", operation="ratio", numerator_metric="b", denominator_metric="b"),
            DerivationRule(metric="b", operation="ratio", numerator_metric="a", denominator_metric="a"),
        ]
        with pytest.raises(ConfigurationError, match="Cyclic"):
            derive(_sample_rows(), rules)

    def test_redefinition_last_declaration_wins(self):
        rules = [
            DerivationRule(metric="revenue", operation="sum", source_pattern="sales", source_field="amount"),
            DerivationRule(metric="revenue", operation="count", source_pattern="sales"),
        ]
        assert derive(_sample_rows(), rules) == {"revenue": 3.0}

    def test_invalid_regex(self):
        rules = [DerivationRule(metric="bad", operation="count", source_pattern="(")]
        with pytest.raises(ConfigurationError, match="bad"):
            MetricDerivationEngine(rules)

    def test_sum_needs_source_field(self):
        rules = [DerivationRule(metric="revenue", operation="sum", source_pattern="sales")]
        with pytest.raises(ConfigurationError):
            MetricDerivationEngine(rules)


class TestFilters:
    def _rule(self, operator, value):
        return DerivationRule(
            metric="revenue", operation="sum", source_pattern="sales", source_field="amount",
            filters=[RowFilter(field="status", operator=operator, value=value)],
        )

    def test_eq_is_case_insensitive(self):
        assert derive(_sample_rows(), [self._rule("eq", "CLOSED")])["revenue"] == 1000

    def test_neq(self):
        assert derive(_sample_rows(), [self._rule("neq", "closed")])["revenue"] == pytest.approx(2500.5)

    def test_contains(self):
        assert derive(_sample_rows(), [self._rule("contains", "pe")])["revenue"] == pytest.approx(2500.5)

    def test_missing_field_passes_only_neq(self):
        rows = [Row(data_type="Sales", fields={"amount": 10})]
        assert derive(rows, [self._rule("eq", "closed")])["revenue"] == 0
        assert derive(rows, [self._rule("neq", "closed")])["revenue"] == 10


class TestToNumber:
    def test_parsing(self):
        assert to_number(5) == 5.0
        assert to_number(" 1,234.5 ") == 1234.5
        assert to_number("abc") is None
        assert to_number("") is None
        assert to_number(None) is None
        assert to_number(True) is None
        assert to_number(float("nan")) is None
        assert to_number(float("inf")) is None
