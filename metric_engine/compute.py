# =============================================================================
# FORECAST METRIC ENGINE - FORECAST COMPUTE
# =============================================================================
# Pure cascade from drivers + baseline + weights into monthly cells.
#
# FORMULAS:
# Annual[driver metric]   = driver forward rule, else annual override,
#                           else prior-year baseline
# Month[sum metric]       = Annual * weight[m] / 100
# Month[average metric]   = Annual (percentages are never weight-scaled)
# Month[derived metric]   = formula over sibling cells of the same month
#
# Locked cells keep their stored value verbatim. Null/zero denominators
# give None, never an exception.
# =============================================================================

from typing import Dict, Mapping, Optional

from .cells import Baseline, CellKey, MetricCell, MONTHS, month_key
from .definitions import MetricSchema
from .drivers import DriverSet, driver_for_metric
from .weights import WeightTable


def compute_annual_targets(
    schema: MetricSchema,
    drivers: DriverSet,
    baseline: Baseline,
    annual_overrides: Optional[Mapping[str, float]] = None
) -> Dict[str, Optional[float]]:
    """
    Annual value of every driver-role metric.

    Derived metrics are not listed: they only exist per period.
    """
    annual_overrides = annual_overrides or {}
    targets: Dict[str, Optional[float]] = {}

    for definition in schema.top_level():
        if not definition.is_driver:
            continue
        key = definition.key
        if key in annual_overrides:
            targets[key] = float(annual_overrides[key])
            continue
        spec = driver_for_metric(key)
        if spec is not None:
            targets[key] = drivers.annual_value(spec, baseline)
        else:
            targets[key] = baseline.annual_value(key, definition.aggregation)

    return targets


def _fill_calculated(schema: MetricSchema, values: Dict[str, Optional[float]]) -> None:
    """Fill gaps left by missing actuals: formulas first, then ratio percentages."""
    for definition in schema.definitions:
        if values.get(definition.key) is None and definition.formula is not None:
            values[definition.key] = definition.formula.evaluate(values)
    for definition in schema.definitions:
        if values.get(definition.key) is None and definition.ratio is not None:
            values[definition.key] = definition.ratio.evaluate(values)


def baseline_month_values(
    schema: MetricSchema,
    baseline: Baseline,
    original_weights: Mapping[int, float],
    month: int
) -> Dict[str, Optional[float]]:
    """
    Prior-year comparison value of every metric for one month.

    Uses the month's actual when the baseline has monthly data, otherwise
    spreads the annual actual with the original (historical) weights.
    Metrics with no recorded actual fall back to their formula.
    """
    values: Dict[str, Optional[float]] = {}
    for definition in schema.definitions:
        key = definition.key
        if baseline.has_monthly(key):
            values[key] = baseline.month_value(month, key)
            continue
        annual = baseline.annual_value(key, definition.aggregation)
        if annual is None:
            values[key] = None
        elif definition.is_weight_distributed:
            values[key] = annual * original_weights.get(month, 0.0) / 100
        else:
            values[key] = annual
    _fill_calculated(schema, values)
    return values


def actual_month_values(
    schema: MetricSchema,
    baseline: Baseline,
    month: int
) -> Dict[str, Optional[float]]:
    """Recorded prior-year monthly actuals only; no spreading of annual figures."""
    values: Dict[str, Optional[float]] = {
        definition.key: baseline.month_value(month, definition.key)
        for definition in schema.definitions
    }
    _fill_calculated(schema, values)
    return values


def compute_month(
    schema: MetricSchema,
    period: str,
    weight: float,
    targets: Mapping[str, Optional[float]],
    locked: Mapping[CellKey, Optional[float]],
    baseline_values: Mapping[str, Optional[float]]
) -> Dict[str, MetricCell]:
    """Cells of every top-level metric for one month, in schema order."""
    values: Dict[str, Optional[float]] = {}
    cells: Dict[str, MetricCell] = {}

    for definition in schema.top_level():
        key = definition.key
        is_locked = (period, key) in locked
        if is_locked:
            value = locked[(period, key)]
        elif definition.is_derived:
            value = definition.formula.evaluate(values)
        else:
            annual = targets.get(key)
            if annual is None:
                value = None
            elif definition.is_weight_distributed:
                value = annual * weight / 100
            else:
                value = annual
        values[key] = value
        cells[key] = MetricCell(
            value=value,
            baseline_value=baseline_values.get(key),
            is_locked=is_locked,
        )

    return cells


def compute_monthly_cells(
    schema: MetricSchema,
    year: int,
    targets: Mapping[str, Optional[float]],
    weights: WeightTable,
    locked: Mapping[CellKey, Optional[float]],
    baseline: Baseline
) -> Dict[CellKey, MetricCell]:
    """
    Main cascade: monthly cells of every top-level metric for the year.

    Sub-metric cells are produced afterwards by the sub-metric engine.
    """
    original = weights.original()
    result: Dict[CellKey, MetricCell] = {}
    for month in MONTHS:
        period = month_key(year, month)
        month_cells = compute_month(
            schema,
            period,
            weights.weight(month),
            targets,
            locked,
            baseline_month_values(schema, baseline, original, month),
        )
        for key, cell in month_cells.items():
            result[(period, key)] = cell
    return result
