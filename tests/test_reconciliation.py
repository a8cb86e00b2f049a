"""Tests for ground-truth reconciliation."""
import pytest

from icm_engine.config.settings import EngineSettings, ReconciliationSection
from icm_engine.core.reconciliation import (
    COMPONENT_MATCH_EPSILON,
    TOTAL_MATCH_EPSILON,
    delta_flag,
    reconcile,
    reconcile_with_settings,
)
from icm_engine.models import (
    DeltaFlag,
    EntityTrace,
    ExecutionTrace,
    GroundTruthRow,
    MatchClass,
    Population,
)


def _trace(entity_id, outcomes, error=None):
    components = [
        ExecutionTrace(
            component_id=cid,
            component_name=f"{cid.title()} Plan",
            component_type="percentage",
            outcome=value,
        )
        for cid, value in outcomes.items()
    ]
    return EntityTrace(
        entity_id=entity_id,
        components=components,
        total=sum(outcomes.values()),
        error=error,
    )


def _sample_traces():
    return [
        _trace("E1", {"bonus": 300.0, "commission": 200.0}),
        _trace("E2", {"bonus": 300.0, "commission": 200.0}),
        _trace("E3", {"bonus": 300.0, "commission": 200.0}),
        _trace("E4", {"bonus": 10.0}),
    ]


def _sample_ground_truth():
    return [
        # right total, right breakdown
        GroundTruthRow(entity_id="E1", expected_total=500.0,
                       expected_components={"bonus": 300.0, "commission": 200.0}),
        # right total, wrong reasons
        GroundTruthRow(entity_id="E2", expected_total=500.0,
                       expected_components={"bonus": 200.0, "commission": 300.0}),
        # wrong total
        GroundTruthRow(entity_id="E3", expected_total=650.0),
        GroundTruthRow(entity_id="E9", expected_total=75.0),
    ]


class TestClassification:
    def test_three_way_classification(self):
        report = reconcile(_sample_traces(), _sample_ground_truth())
        assert report.get("E1").classification == MatchClass.TRUE_MATCH
        assert report.get("E2").classification == MatchClass.COINCIDENTAL_MATCH
        assert report.get("E3").classification == MatchClass.MISMATCH

    def test_coincidental_match_reports_component_deltas(self):
        entry = reconcile(_sample_traces(), _sample_ground_truth()).get("E2")
        assert entry.components_checked
        assert entry.delta == 0
        mismatched = {d.component: d.delta for d in entry.component_deltas if not d.matches}
        assert mismatched == {"bonus": 100.0, "commission": -100.0}

    def test_total_match_without_breakdown_is_true_match(self):
        report = reconcile([_trace("E1", {"bonus": 500.0})], [GroundTruthRow(entity_id="E1", expected_total=500)])
        entry = report.get("E1")
        assert entry.classification == MatchClass.TRUE_MATCH
        assert entry.components_checked is False

    def test_components_matched_by_name(self):
        truth = [GroundTruthRow(entity_id="E1", expected_total=500.0,
                                expected_components={"Bonus Plan": 300.0, "Commission Plan": 200.0})]
        report = reconcile(_sample_traces()[:1], truth)
        assert report.get("E1").classification == MatchClass.TRUE_MATCH

    def test_component_missing_on_engine_side_counts_as_zero(self):
        truth = [GroundTruthRow(entity_id="E1", expected_total=500.0,
                                expected_components={"bonus": 300.0, "commission": 150.0, "spiff": 50.0})]
        entry = reconcile(_sample_traces()[:1], truth).get("E1")
        spiff = next(d for d in entry.component_deltas if d.component == "spiff")
        assert spiff.engine_value == 0
        assert entry.classification == MatchClass.COINCIDENTAL_MATCH

    def test_epsilon_is_a_named_constant(self):
        assert TOTAL_MATCH_EPSILON == 0.01
        assert COMPONENT_MATCH_EPSILON == 0.01
        within = reconcile([_trace("E1", {"bonus": 100.005})], [GroundTruthRow(entity_id="E1", expected_total=100)])
        outside = reconcile([_trace("E1", {"bonus": 100.02})], [GroundTruthRow(entity_id="E1", expected_total=100)])
        assert within.get("E1").classification == MatchClass.TRUE_MATCH
        assert outside.get("E1").classification == MatchClass.MISMATCH

    def test_epsilon_can_be_widened(self):
        report = reconcile(
            [_trace("E1", {"bonus": 100.5})], [GroundTruthRow(entity_id="E1", expected_total=100)],
            total_epsilon=1.0,
        )
        assert report.get("E1").classification == MatchClass.TRUE_MATCH
        assert report.total_epsilon == 1.0

    def test_thresholds_from_settings(self):
        settings = EngineSettings(reconciliation=ReconciliationSection(total_epsilon=1.0, component_epsilon=1.0))
        report = reconcile_with_settings(
            [_trace("E1", {"bonus": 100.5})], [GroundTruthRow(entity_id="E1", expected_total=100)], settings
        )
        assert report.get("E1").classification == MatchClass.TRUE_MATCH
        assert report.component_epsilon == 1.0

    def test_default_settings_match_named_constants(self):
        report = reconcile_with_settings(
            [_trace("E1", {"bonus": 100.5})], [GroundTruthRow(entity_id="E1", expected_total=100)]
        )
        assert report.get("E1").classification == MatchClass.MISMATCH
        assert report.total_epsilon == TOTAL_MATCH_EPSILON


class TestPopulations:
    def test_engine_only_and_ground_truth_only(self):
        report = reconcile(_sample_traces(), _sample_ground_truth())
        assert report.get("E4").population == Population.ENGINE_ONLY
        assert report.get("E4").classification is None
        assert report.get("E9").population == Population.GROUND_TRUTH_ONLY
        assert report.get("E9").engine_total is None

    def test_counts_and_totals(self):
        report = reconcile(_sample_traces(), _sample_ground_truth())
        assert report.counts["matched"] == 3
        assert report.counts["engine_only"] == 1
        assert report.counts["ground_truth_only"] == 1
        assert report.counts["true_match"] == 1
        assert report.counts["coincidental_match"] == 1
        assert report.counts["mismatch"] == 1
        assert report.engine_total == 1510
        assert report.expected_total == 1725
        assert report.total_delta == -215
        assert len(report.by_classification(MatchClass.MISMATCH)) == 1

    def test_failed_entities_are_not_engine_results(self):
        traces = [_trace("E1", {"bonus": 0.0}, error="RuntimeError: boom")]
        report = reconcile(traces, [GroundTruthRow(entity_id="E1", expected_total=10)])
        assert report.get("E1").population == Population.GROUND_TRUTH_ONLY

    def test_other_period_rows_ignored(self):
        truth = [GroundTruthRow(entity_id="E1", period_id="2024-12", expected_total=1)]
        report = reconcile(_sample_traces()[:1], truth, period_id="2025-01")
        assert report.get("E1").population == Population.ENGINE_ONLY


class TestDeltaFlag:
    @pytest.mark.parametrize("engine,expected,flag", [
        (100.0, 100.0, DeltaFlag.EXACT),
        (104.0, 100.0, DeltaFlag.TOLERANCE),
        (110.0, 100.0, DeltaFlag.AMBER),
        (120.0, 100.0, DeltaFlag.RED),
        (5.0, 0.0, DeltaFlag.RED),
    ])
    def test_thresholds(self, engine, expected, flag):
        assert delta_flag(engine, expected) == flag
