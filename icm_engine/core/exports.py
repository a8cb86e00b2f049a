# core/exports.py
"""
File exports for a calculated batch: a payroll CSV and an xlsx results pack.
"""
import logging
from datetime import datetime, timezone
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pandas as pd

from ..models.reports import CalculationSummary, ReconciliationReport
from ..models.traces import EntityTrace, TraceStatus

logger = logging.getLogger(__name__)


def _component_columns(traces: Sequence[EntityTrace]) -> Dict[str, str]:
    """component_id -> column header, in first-seen order."""
    columns: Dict[str, str] = {}
    reserved = {"Entity ID", "Entity Name", "Group", "Variant", "Total", "Status"}
    for trace in traces:
        for component in trace.components:
            if component.status == TraceStatus.DISABLED or component.component_id in columns:
                continue
            header = component.component_name
            if header in reserved or header in columns.values():
                header = component.component_id
            columns[component.component_id] = header
    return columns


def results_frame(traces: Sequence[EntityTrace]) -> pd.DataFrame:
    """One row per entity with a column per component and the total."""
    columns = _component_columns(traces)
    records: List[Dict[str, Any]] = []
    for trace in traces:
        outcomes = trace.component_outcomes()
        record: Dict[str, Any] = {
            "Entity ID": trace.entity_id,
            "Entity Name": trace.entity_name,
            "Group": trace.group_id or "",
            "Variant": trace.variant or "",
        }
        for component_id, header in columns.items():
            record[header] = outcomes.get(component_id, 0.0)
        record["Total"] = trace.total
        record["Status"] = "ERROR" if trace.error else "OK"
        records.append(record)
    headers = ["Entity ID", "Entity Name", "Group", "Variant", *columns.values(), "Total", "Status"]
    return pd.DataFrame(records, columns=headers)


def export_payroll_csv(traces: Sequence[EntityTrace], metadata: Optional[Mapping[str, Any]] = None) -> str:
    """Payroll CSV: entity rows followed by a summary block.

    ``metadata`` may carry tenant, period, state and currency.
    """
    metadata = metadata or {}
    frame = results_frame(traces)
    body = frame.to_csv(index=False, float_format="%.2f")

    succeeded = [t for t in traces if t.succeeded]
    summary_rows = [
        ("Tenant", metadata.get("tenant", "")),
        ("Period", metadata.get("period", "")),
        ("Lifecycle State", metadata.get("state", "")),
        ("Entity Count", len(traces)),
        ("Failed Entities", len(traces) - len(succeeded)),
        ("Total Payout", f"{sum(t.total for t in succeeded):.2f}"),
        ("Currency", metadata.get("currency", "")),
        ("Exported At", datetime.now(timezone.utc).isoformat()),
    ]
    block = pd.DataFrame([("SUMMARY", "")] + summary_rows).to_csv(index=False, header=False)
    return body + "\n" + block


def _reconciliation_frame(report: ReconciliationReport) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "Entity ID": e.entity_id,
                "Population": e.population.value,
                "Classification": e.classification.value if e.classification else "",
                "Engine Total": e.engine_total,
                "Expected Total": e.expected_total,
                "Delta": e.delta,
                "Flag": e.delta_flag.value if e.delta_flag else "",
                "Components Checked": e.components_checked,
                "Component Mismatches": ", ".join(d.component for d in e.component_deltas if not d.matches),
            }
            for e in report.entities
        ]
    )


def build_result_sheets(
    traces: Sequence[EntityTrace],
    summary: CalculationSummary,
    reconciliation: Optional[ReconciliationReport] = None,
) -> Dict[str, pd.DataFrame]:
    sheets = {
        "Results": results_frame(traces),
        "Components": pd.DataFrame(
            [c.model_dump() for c in summary.component_totals],
            columns=["component_id", "component_name", "total", "entity_count"],
        ),
        "Groups": pd.DataFrame(
            [g.model_dump() for g in summary.group_totals],
            columns=["group_id", "total", "entity_count"],
        ),
        "Outliers": pd.DataFrame(
            [o.model_dump() for o in summary.outliers],
            columns=["entity_id", "entity_name", "group_id", "total", "z_score"],
        ),
    }
    if reconciliation is not None:
        sheets["Reconciliation"] = _reconciliation_frame(reconciliation)
    return sheets


def write_results_workbook(
    traces: Sequence[EntityTrace],
    summary: CalculationSummary,
    reconciliation: Optional[ReconciliationReport] = None,
    output_path: Optional[Path] = None,
) -> bytes:
    """
    Write the results pack to an Excel workbook.

    Returns:
        bytes of the Excel workbook
    """
    sheets = build_result_sheets(traces, summary, reconciliation)
    buffer = BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        for sheet_name, df in sheets.items():
            df.to_excel(writer, sheet_name=sheet_name, index=False)

        # Currency columns get a fixed two-decimal format
        for sheet_name, ws in writer.sheets.items():
            header_row = next(ws.rows, ())
            for i, cell in enumerate(header_row):
                if cell.value in ("Total", "total", "Engine Total", "Expected Total", "Delta"):
                    for row in ws.iter_rows(min_row=2, min_col=i + 1, max_col=i + 1):
                        for c in row:
                            c.number_format = "#,##0.00"

    workbook_bytes = buffer.getvalue()

    if output_path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(workbook_bytes)
        logger.info("Results workbook written to %s", output_path)

    return workbook_bytes
