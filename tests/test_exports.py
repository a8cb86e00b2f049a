"""Tests for payroll CSV and results workbook exports."""
from io import BytesIO, StringIO

import pandas as pd
from openpyxl import load_workbook

from icm_engine.core.exports import export_payroll_csv, results_frame, write_results_workbook
from icm_engine.core.reconciliation import reconcile
from icm_engine.core.summary import summarize
from icm_engine.models import EntityTrace, ExecutionTrace, GroundTruthRow, TraceStatus


def _component(component_id, name, outcome, status=TraceStatus.COMPUTED):
    return ExecutionTrace(
        component_id=component_id,
        component_name=name,
        component_type="tier_lookup",
        outcome=outcome,
        status=status,
    )


def _sample_traces():
    return [
        EntityTrace(
            entity_id="E1", entity_name="Ana", group_id="S1", variant="Certified",
            components=[_component("bonus", "Attainment Bonus", 5000), _component("comm", "Commission", 100)],
            total=5100,
        ),
        EntityTrace(
            entity_id="E2", entity_name="Ben", group_id="S2",
            components=[_component("bonus", "Attainment Bonus", 0), _component("comm", "Commission", 250.5)],
            total=250.5,
        ),
        EntityTrace(entity_id="E3", entity_name="Cy", error="PersistenceFailure: timeout"),
    ]


class TestResultsFrame:
    def test_one_column_per_component(self):
        frame = results_frame(_sample_traces())
        assert list(frame.columns) == [
            "Entity ID", "Entity Name", "Group", "Variant",
            "Attainment Bonus", "Commission", "Total", "Status",
        ]
        assert frame.loc[2, "Status"] == "ERROR"
        assert frame.loc[2, "Commission"] == 0

    def test_duplicate_component_names_fall_back_to_ids(self):
        traces = [EntityTrace(
            entity_id="E1",
            components=[_component("a", "Bonus", 1), _component("b", "Bonus", 2), _component("c", "Total", 3)],
            total=6,
        )]
        assert list(results_frame(traces).columns)[4:7] == ["Bonus", "b", "c"]


class TestPayrollCsv:
    def test_rows_and_summary_block(self):
        text = export_payroll_csv(
            _sample_traces(), {"tenant": "t1", "period": "2025-01", "state": "APPROVED", "currency": "USD"}
        )
        body, block = text.split("\n\n", 1)

        rows = pd.read_csv(StringIO(body))
        assert len(rows) == 3
        assert rows.loc[0, "Total"] == 5100
        assert rows.loc[1, "Commission"] == 250.5

        assert block.startswith("SUMMARY")
        assert "Total Payout,5350.50" in block
        assert "Failed Entities,1" in block
        assert "Currency,USD" in block


class TestResultsWorkbook:
    def test_sheets(self, tmp_path):
        traces = _sample_traces()
        summary = summarize(traces)
        report = reconcile(traces, [GroundTruthRow(entity_id="E1", expected_total=5100)])
        output = tmp_path / "out" / "results.xlsx"

        data = write_results_workbook(traces, summary, report, output_path=output)

        assert output.exists()
        assert output.read_bytes() == data
        wb = load_workbook(BytesIO(data))
        assert wb.sheetnames == ["Results", "Components", "Groups", "Outliers", "Reconciliation"]
        assert wb["Results"]["A2"].value == "E1"
        assert wb["Reconciliation"]["C2"].value == "true_match"

    def test_without_reconciliation(self):
        traces = _sample_traces()
        wb = load_workbook(BytesIO(write_results_workbook(traces, summarize(traces))))
        assert "Reconciliation" not in wb.sheetnames
