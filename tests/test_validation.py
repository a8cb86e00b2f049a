"""Tests for rule-set validation."""
import pytest

from icm_engine.errors import ConfigurationError
from icm_engine.models import (
    Band,
    Condition,
    ConditionalPercentageComponent,
    MatrixLookupComponent,
    PercentageComponent,
    RuleSet,
    Tier,
    TierLookupComponent,
)
from icm_engine.utils.validation import (
    component_metrics,
    load_rule_set,
    validate_component,
    validate_ladder,
    validate_rule_set,
)


def _sample_rule_set_json():
    return {
        "ruleSetId": "rs1",
        "name": "Plan",
        "derivationRules": [
            {"metric": "revenue", "operation": "sum", "sourcePattern": "sales", "sourceField": "amount"},
        ],
        "components": [
            {"type": "percentage", "id": "commission", "appliedTo": "revenue", "rate": 0.1},
        ],
    }


class TestLadders:
    def test_valid_ladder(self):
        validate_ladder([Band(min=0, max=10), Band(min=10)], "ok")

    def test_empty_ladder(self):
        with pytest.raises(ConfigurationError, match="no tiers"):
            validate_ladder([], "empty")

    def test_min_not_below_max(self):
        with pytest.raises(ConfigurationError, match="min 10.0 >= max 10.0"):
            validate_ladder([Band(min=10, max=10)], "flat")

    def test_unsorted(self):
        with pytest.raises(ConfigurationError, match="not sorted"):
            validate_ladder([Band(min=10, max=20), Band(min=0, max=5)], "unsorted")

    def test_overlap(self):
        with pytest.raises(ConfigurationError, match="overlaps"):
            validate_ladder([Band(min=0, max=20), Band(min=10, max=30)], "overlap")

    def test_gap_between_bands_is_allowed(self):
        validate_ladder([Band(min=0, max=50), Band(min=60, max=100)], "gapped")


class TestComponents:
    def test_matrix_shape(self):
        matrix = MatrixLookupComponent(
            id="m", row_metric="a", column_metric="b",
            row_bands=[Band(min=0, max=1), Band(min=1)], column_bands=[Band(min=0)],
            values=[[1]],
        )
        with pytest.raises(ConfigurationError, match="2 row bands"):
            validate_component(matrix)

    def test_condition_interval(self):
        component = ConditionalPercentageComponent(
            id="c", applied_to="a", conditions=[Condition(metric="a", min=5, max=1, rate=0.1)]
        )
        with pytest.raises(ConfigurationError, match="Condition 0"):
            validate_component(component)

    def test_negative_cap(self):
        with pytest.raises(ConfigurationError, match="max_payout"):
            validate_component(PercentageComponent(id="p", applied_to="a", rate=0.1, max_payout=-1))

    def test_error_names_component(self):
        component = TierLookupComponent(id="bonus", name="Attainment Bonus", metric="a", tiers=[])
        with pytest.raises(ConfigurationError) as exc_info:
            validate_component(component)
        assert exc_info.value.rule == "Attainment Bonus"
        assert "(rule: Attainment Bonus)" in str(exc_info.value)

    def test_component_metrics(self):
        component = ConditionalPercentageComponent(
            id="c", applied_to="revenue",
            conditions=[Condition(metric="attainment", min=0, rate=0.1), Condition(metric="revenue", min=0, rate=1)],
        )
        assert component_metrics(component) == ["revenue", "attainment"]


class TestRuleSet:
    def test_load_from_tenant_json(self):
        rule_set = load_rule_set(_sample_rule_set_json())
        assert rule_set.rule_set_id == "rs1"
        assert rule_set.derivation_rules[0].source_pattern == "sales"
        assert validate_rule_set(rule_set) == []

    def test_malformed_json(self):
        raw = _sample_rule_set_json()
        raw["components"][0]["type"] = "lottery"
        with pytest.raises(ConfigurationError, match="Malformed rule set"):
            load_rule_set(raw)

    def test_duplicate_component_ids(self):
        raw = _sample_rule_set_json()
        raw["components"].append(dict(raw["components"][0]))
        with pytest.raises(ConfigurationError, match="Duplicate component id"):
            validate_rule_set(load_rule_set(raw))

    def test_warns_on_underived_metric(self):
        raw = _sample_rule_set_json()
        raw["components"].append({"type": "percentage", "id": "spiff", "appliedTo": "units", "rate": 5})
        warnings = validate_rule_set(load_rule_set(raw))
        assert len(warnings) == 1
        assert "units" in warnings[0]

    def test_disabled_components_are_not_checked_for_metrics(self):
        raw = _sample_rule_set_json()
        raw["components"].append(
            {"type": "percentage", "id": "spiff", "appliedTo": "units", "rate": 5, "enabled": False}
        )
        assert validate_rule_set(load_rule_set(raw)) == []
        assert [c.id for c in RuleSet.model_validate(raw).enabled_components] == ["commission"]
