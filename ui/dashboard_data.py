"""Transform forecast sessions into dashboard-ready DataFrames."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

import pandas as pd

from metric_engine.cells import year_months
from metric_engine.definitions import MetricSchema, format_value
from metric_engine.session import ForecastSession, ResolvedCell

RESOLVED_COLUMNS = [
    "period",
    "metric",
    "label",
    "value",
    "comparison",
    "variance",
    "status",
    "source",
    "locked",
    "display",
]


@dataclass
class DashboardSnapshot:
    resolved: pd.DataFrame
    monthly_grid: pd.DataFrame
    weights: pd.DataFrame
    sub_metrics: pd.DataFrame
    status_counts: pd.DataFrame


def resolved_to_df(rows: List[ResolvedCell], schema: MetricSchema) -> pd.DataFrame:
    if not rows:
        return pd.DataFrame(columns=RESOLVED_COLUMNS)
    records = []
    for row in rows:
        definition = schema.get(row.metric_key)
        records.append(
            {
                "period": row.period,
                "metric": row.metric_key,
                "label": definition.label,
                "value": row.value,
                "comparison": row.comparison,
                "variance": row.variance,
                "status": row.status,
                "source": row.comparison_source,
                "locked": row.is_locked,
                "display": format_value(definition, row.value),
            }
        )
    return pd.DataFrame(records, columns=RESOLVED_COLUMNS)


def monthly_grid_df(session: ForecastSession) -> pd.DataFrame:
    """Metrics as rows, months as columns, in schema order."""
    months = year_months(session.year)
    rows = []
    for definition in session.schema.definitions:
        row = {"metric": definition.key, "label": definition.label}
        for period in months:
            row[period] = session.snapshot.value(period, definition.key)
        rows.append(row)
    return pd.DataFrame(rows, columns=["metric", "label"] + months)


def weights_df(session: ForecastSession) -> pd.DataFrame:
    rows = [
        {
            "month": entry.month,
            "month_name": entry.month_name,
            "original_weight": entry.original_weight,
            "adjusted_weight": entry.adjusted_weight,
            "locked": entry.is_locked,
        }
        for entry in session.weights.entries
    ]
    return pd.DataFrame(rows)


def sub_metrics_df(session: ForecastSession) -> pd.DataFrame:
    annual = session.annual_values()
    overrides = session.overrides
    rows = []
    for parent in session.schema.parents():
        for child in session.schema.children(parent.key):
            rows.append(
                {
                    "parent": parent.key,
                    "sub_metric": child.key,
                    "label": child.label,
                    "annual": annual.get(child.key),
                    "parent_annual": annual.get(parent.key),
                    "overridden": child.key in overrides,
                }
            )
    if not rows:
        return pd.DataFrame(
            columns=["parent", "sub_metric", "label", "annual", "parent_annual", "overridden", "share_pct"]
        )
    data = pd.DataFrame(rows)
    data["share_pct"] = data.apply(
        lambda row: (row["annual"] / row["parent_annual"] * 100)
        if row["parent_annual"] and pd.notna(row["annual"]) else None,
        axis=1,
    )
    return data


def _status_counts(resolved: pd.DataFrame) -> pd.DataFrame:
    if resolved.empty:
        return pd.DataFrame(columns=["period", "green", "yellow", "red", "none"])
    counts = (
        resolved.groupby(["period", "status"]).size().unstack(fill_value=0)
        .reindex(columns=["green", "yellow", "red", "none"], fill_value=0)
        .reset_index()
    )
    counts.columns.name = None
    return counts


def build_snapshot(session: ForecastSession, resolution: Optional[str] = "month") -> DashboardSnapshot:
    resolved = resolved_to_df(session.resolve(resolution), session.schema)
    return DashboardSnapshot(
        resolved=resolved,
        monthly_grid=monthly_grid_df(session),
        weights=weights_df(session),
        sub_metrics=sub_metrics_df(session),
        status_counts=_status_counts(resolved),
    )
