# =============================================================================
# FORECAST METRIC ENGINE - FORECAST SESSION
# =============================================================================
# One editable forecast per (department, year).
#
# The session owns the mutable state (weights, drivers, cell locks,
# sub-metric overrides). Every commit runs exactly one full recompute and
# publishes a complete new snapshot; readers never see a half-updated tree.
#
# Execution order of a recompute:
# 1. Annual targets from drivers / overrides / baseline
# 2. Monthly cascade (locked cells kept verbatim)
# 3. Sub-metric reconciliation for every parent
# 4. Validation (weights, parent/child totals)
# =============================================================================

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .aggregation import AggregationResolver, month_values_to_cells, values_of
from .cells import (
    Baseline, CellKey, MetricCell, MONTHS,
    month_key, parse_month, parse_quarter, quarter_label, quarter_month_numbers,
    quarter_months, rolling_quarters, year_months, ANNUAL, QUARTERS,
)
from .collaborators import (
    BaselineSource, CellStore, HistoricalSalesSource, TargetEntry, TargetRegistry,
)
from .compute import (
    actual_month_values, baseline_month_values,
    compute_annual_targets, compute_monthly_cells,
)
from .definitions import DEFAULT_SCHEMA, MetricSchema
from .drivers import DriverSet, reverse_driver_for
from .submetrics import SubMetricOverride, SubMetricOverrideEngine, check_reconciled
from .variance import NONE, VarianceClassifier
from .weights import WeightTable

logger = logging.getLogger(__name__)

# Resolutions
MONTH = "month"
QUARTER = "quarter"
TREND = "trend"
RESOLUTIONS = (MONTH, QUARTER, ANNUAL, TREND)

TREND_WINDOW = 8


@dataclass
class SessionState:
    """Everything a recompute reads besides the schema and the baseline."""
    weights: WeightTable
    drivers: DriverSet
    locked: Dict[CellKey, Optional[float]] = field(default_factory=dict)
    overrides: Dict[str, SubMetricOverride] = field(default_factory=dict)
    annual_overrides: Dict[str, float] = field(default_factory=dict)
    child_annual: Dict[str, Optional[float]] = field(default_factory=dict)


@dataclass
class ForecastSnapshot:
    """Complete, read-only result of one recompute."""
    version: int
    cells: Dict[CellKey, MetricCell]
    annual_targets: Dict[str, Optional[float]]
    overrides: Dict[str, SubMetricOverride]
    child_annual: Dict[str, Optional[float]]
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def cell(self, period: str, metric_key: str) -> MetricCell:
        return self.cells[(period, metric_key)]

    def value(self, period: str, metric_key: str) -> Optional[float]:
        cell = self.cells.get((period, metric_key))
        return cell.value if cell is not None else None


@dataclass(frozen=True)
class ResolvedCell:
    """One row of an outbound view."""
    period: str
    metric_key: str
    value: Optional[float]
    comparison: Optional[float]
    variance: Optional[float]
    status: str
    comparison_source: str = "baseline"
    is_locked: bool = False


def child_weights(
    schema: MetricSchema,
    baseline: Baseline,
    weights: WeightTable,
    parent_key: str
) -> Dict[str, Dict[int, float]]:
    """A child's own month weights: its prior-year shape, else the session weights."""
    result = {}
    for child in schema.children(parent_key):
        shares = baseline.monthly_shares(child.key)
        result[child.key] = shares if shares is not None else weights.adjusted()
    return result


def recompute(
    schema: MetricSchema,
    year: int,
    baseline: Baseline,
    state: SessionState,
    version: int = 0
) -> ForecastSnapshot:
    """
    Full deterministic pass over the metric tree.

    Pure: reads `state`, never mutates it.
    """
    targets = compute_annual_targets(schema, state.drivers, baseline, state.annual_overrides)
    cells = compute_monthly_cells(
        schema, year, targets, state.weights, state.locked, baseline
    )

    periods = year_months(year)
    original = state.weights.original()
    baseline_by_month = {
        month: baseline_month_values(schema, baseline, original, month) for month in MONTHS
    }

    engine = SubMetricOverrideEngine(schema)
    overrides = dict(state.overrides)
    child_annual: Dict[str, Optional[float]] = {}
    warnings: List[str] = []

    for parent in schema.parents():
        parent_values = {period: cells[(period, parent.key)].value for period in periods}
        children = schema.children(parent.key)
        result = engine.reconcile(
            parent.key,
            periods,
            parent_values,
            overrides,
            child_weights(schema, baseline, state.weights, parent.key),
            state.child_annual,
            {child.key: baseline.annual_value(child.key) for child in children},
        )
        overrides = result.overrides
        for (period, key), value in result.values.items():
            _, month = parse_month(period)
            cells[(period, key)] = MetricCell(
                value=value,
                baseline_value=baseline_by_month[month].get(key),
                is_locked=False,
            )
        child_annual.update(result.annual)

        present = [v for v in parent_values.values() if v is not None]
        parent_annual = sum(present) if present else None
        warnings.extend(check_reconciled(parent.key, parent_annual, result.annual))

    return ForecastSnapshot(
        version=version,
        cells=cells,
        annual_targets=targets,
        overrides=overrides,
        child_annual=child_annual,
        errors=state.weights.validation_errors(),
        warnings=warnings,
    )


def changed_cells(
    before: Mapping[CellKey, MetricCell],
    after: Mapping[CellKey, MetricCell]
) -> Dict[CellKey, MetricCell]:
    return {key: cell for key, cell in after.items() if before.get(key) != cell}


class ForecastSession:
    """
    Editable forecast for one department and year.

    Usage:
        session = ForecastSession("service", 2026, store, history, baselines)
        session.set_driver("growth_percent", 10)
        rows = session.resolve("quarter")
    """

    def __init__(
        self,
        department: str,
        year: int,
        cell_store: CellStore,
        sales_history: HistoricalSalesSource,
        baseline_source: BaselineSource,
        target_registry: Optional[TargetRegistry] = None,
        schema: MetricSchema = DEFAULT_SCHEMA,
        drivers: Optional[DriverSet] = None
    ):
        schema_errors = schema.validate()
        if schema_errors:
            raise ValueError("Invalid metric schema: " + "; ".join(schema_errors))

        self.department = department
        self.year = int(year)
        self.schema = schema
        self.cell_store = cell_store
        self.target_registry = target_registry
        self.resolver = AggregationResolver(schema)
        self.classifier = VarianceClassifier(schema)
        self.submetric_engine = SubMetricOverrideEngine(schema)

        self.baseline = baseline_source.load_baseline(department, self.year - 1)
        weights = WeightTable.from_sales(sales_history.monthly_sales(department, self.year - 1))

        stored = cell_store.load_cells(department, self.year)
        locked = {
            key: cell.value
            for key, cell in stored.items()
            if cell.is_locked and key[1] in schema and not schema.get(key[1]).is_sub_metric
        }

        self.state = SessionState(
            weights=weights,
            drivers=drivers or DriverSet.from_baseline(self.baseline),
            locked=locked,
        )
        self._stored = stored
        self._snapshot: Optional[ForecastSnapshot] = None
        self._publish("open")

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def key(self) -> Tuple[str, int]:
        return (self.department, self.year)

    @property
    def snapshot(self) -> ForecastSnapshot:
        return self._snapshot

    @property
    def weights(self) -> WeightTable:
        return self.state.weights

    @property
    def drivers(self) -> DriverSet:
        return self.state.drivers

    @property
    def locked_cells(self) -> Dict[CellKey, Optional[float]]:
        return dict(self.state.locked)

    @property
    def overrides(self) -> Dict[str, SubMetricOverride]:
        return dict(self.state.overrides)

    def _publish(self, reason: str) -> ForecastSnapshot:
        version = self._snapshot.version + 1 if self._snapshot else 1
        snapshot = recompute(self.schema, self.year, self.baseline, self.state, version)

        before = self._snapshot.cells if self._snapshot else self._stored
        changed = changed_cells(before, snapshot.cells)

        self.state.overrides = dict(snapshot.overrides)
        self.state.child_annual = dict(snapshot.child_annual)
        self._snapshot = snapshot

        if changed:
            self.cell_store.save_cells(self.department, self.year, changed)
        logger.debug(
            "%s/%s v%d %s: %d cells changed",
            self.department, self.year, version, reason, len(changed),
        )
        for message in snapshot.errors + snapshot.warnings:
            logger.warning("%s/%s: %s", self.department, self.year, message)
        return snapshot

    def recompute(self) -> ForecastSnapshot:
        """Recompute without any new edit."""
        return self._publish("recompute")

    # -------------------------------------------------------------------------
    # Drivers and weights
    # -------------------------------------------------------------------------

    def set_driver(self, key: str, value: float) -> ForecastSnapshot:
        self.state.drivers = self.state.drivers.with_value(key, value)
        return self._publish(f"driver {key}={value}")

    def set_weight(self, month: int, value: float) -> ForecastSnapshot:
        self.state.weights.set_adjusted_weight(month, value)
        return self._publish(f"weight {month}={value}")

    def toggle_weight_lock(self, month: int) -> ForecastSnapshot:
        locked = self.state.weights.toggle_lock(month)
        return self._publish(f"weight {month} {'locked' if locked else 'unlocked'}")

    def reset_weights(self) -> ForecastSnapshot:
        self.state.weights.reset_to_original()
        return self._publish("weights reset")

    # -------------------------------------------------------------------------
    # Cell edits
    # -------------------------------------------------------------------------

    def _check_cell(self, period: str, metric_key: str) -> None:
        year, _ = parse_month(period)
        if year != self.year:
            raise ValueError(f"{period} is outside forecast year {self.year}")
        definition = self.schema.get(metric_key)
        if definition.is_sub_metric:
            raise ValueError(f"{metric_key} is a sub-metric; edit its annual value")

    def toggle_cell_lock(self, period: str, metric_key: str) -> ForecastSnapshot:
        self._check_cell(period, metric_key)
        key = (period, metric_key)
        if key in self.state.locked:
            del self.state.locked[key]
        else:
            self.state.locked[key] = self._snapshot.value(period, metric_key)
        return self._publish(f"lock toggled {period} {metric_key}")

    def edit_month(self, period: str, metric_key: str, value: float) -> ForecastSnapshot:
        """Direct edit of one month; the cell becomes locked at the new value."""
        self._check_cell(period, metric_key)
        self.state.locked[(period, metric_key)] = float(value)
        return self._publish(f"edit {period} {metric_key}={value}")

    def edit_quarter(self, quarter, metric_key: str, value: float) -> ForecastSnapshot:
        """
        Direct edit of a quarter.

        Sum metrics are spread over the quarter's months by their weights;
        average metrics set every month to the value. All three months lock.
        """
        quarter = parse_quarter(quarter)
        definition = self.schema.get(metric_key)
        if definition.is_sub_metric:
            raise ValueError(f"{metric_key} is a sub-metric; edit its annual value")

        if definition.is_weight_distributed:
            by_month = self.state.weights.distribute_quarter(quarter, float(value))
        else:
            by_month = {month: float(value) for month in quarter_month_numbers(quarter)}

        for month, month_value in by_month.items():
            self.state.locked[(month_key(self.year, month), metric_key)] = month_value
        return self._publish(f"edit {quarter_label(quarter)} {metric_key}={value}")

    def edit_annual(self, metric_key: str, value: float) -> ForecastSnapshot:
        """
        Direct edit of an annual figure.

        Sub-metrics become overridden and the parent follows the sum of its
        children. Parents with sub-metrics are only editable when
        bidirectional (GP %, GP Net). Everything else is translated into its
        driver, or kept as an annual override for baseline-carried metrics.
        """
        definition = self.schema.get(metric_key)

        if definition.is_sub_metric:
            overrides, parent_total = self.submetric_engine.apply_child_edit(
                metric_key, value, self.state.overrides, self._snapshot.child_annual
            )
            drivers, annual_overrides = self._annual_source(definition.parent_key, parent_total)
            self.state.overrides = overrides
        else:
            if self.schema.has_children(metric_key) and not definition.bidirectional:
                raise ValueError(
                    f"{metric_key} is the sum of its sub-metrics; edit a sub-metric instead"
                )
            drivers, annual_overrides = self._annual_source(metric_key, float(value))

        self.state.drivers = drivers
        self.state.annual_overrides = annual_overrides
        return self._publish(f"edit annual {metric_key}={value}")

    def clear_sub_metric_override(self, metric_key: str) -> ForecastSnapshot:
        if not self.schema.get(metric_key).is_sub_metric:
            raise ValueError(f"{metric_key} is not a sub-metric")
        self.state.overrides = self.submetric_engine.clear_override(
            metric_key, self.state.overrides
        )
        return self._publish(f"override cleared {metric_key}")

    def _annual_source(self, metric_key: str, value: float) -> Tuple[DriverSet, Dict[str, float]]:
        """
        New (drivers, annual overrides) that make `metric_key` total `value`.

        The reverse rule gives a first estimate that assumes every month
        follows the weights; `_solve_annual` corrects it for locked months.
        """
        annual_overrides = dict(self.state.annual_overrides)
        spec = reverse_driver_for(metric_key)
        if spec is not None:
            estimate = spec.reverse(metric_key, value, self.baseline, self.annual_values())
            if estimate is not None:
                annual_overrides.pop(metric_key, None)
                annual_overrides.pop(spec.target_key, None)

                def with_driver(x: float) -> Tuple[DriverSet, Dict[str, float]]:
                    return replace(self.state.drivers, **{spec.key: x}), annual_overrides

                driver_value = self._solve_annual(metric_key, value, estimate, with_driver)
                return self.state.drivers.with_value(spec.key, driver_value), annual_overrides

        if not self.schema.get(metric_key).is_driver:
            raise ValueError(f"{metric_key} is calculated and cannot be set directly")

        def with_override(x: float) -> Tuple[DriverSet, Dict[str, float]]:
            return self.state.drivers, dict(annual_overrides, **{metric_key: x})

        annual_overrides[metric_key] = self._solve_annual(
            metric_key, float(value), float(value), with_override
        )
        return self.state.drivers, annual_overrides

    def _trial_annual(
        self,
        metric_key: str,
        drivers: DriverSet,
        annual_overrides: Dict[str, float]
    ) -> Optional[float]:
        state = replace(self.state, drivers=drivers, annual_overrides=annual_overrides)
        snapshot = recompute(self.schema, self.year, self.baseline, state)
        return self.resolver.aggregate_metric(
            self.schema.get(metric_key), values_of(snapshot.cells), year_months(self.year)
        )

    def _solve_annual(
        self,
        metric_key: str,
        value: float,
        estimate: float,
        source: Callable[[float], Tuple[DriverSet, Dict[str, float]]]
    ) -> float:
        """
        Source value that lands the published annual of `metric_key` on `value`.

        Locked months are constants and every other month is linear in the
        source, so two trial recomputes give the exact answer.
        """
        first = self._trial_annual(metric_key, *source(estimate))
        if first is None or math.isclose(first, value, rel_tol=1e-12, abs_tol=1e-9):
            return estimate

        step = max(abs(estimate), 1.0)
        second = self._trial_annual(metric_key, *source(estimate + step))
        slope = (second - first) / step
        if abs(slope) < 1e-12:
            raise ValueError(
                f"Every month of {metric_key} is locked; unlock a month to change its annual value"
            )
        return estimate + (value - first) / slope

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def annual_values(self) -> Dict[str, Optional[float]]:
        return self.resolver.annual(values_of(self._snapshot.cells), self.year)

    def _row(
        self,
        period: str,
        metric_key: str,
        value: Optional[float],
        comparison: Optional[float],
        source: str,
        direction: Optional[str] = None,
        is_locked: bool = False
    ) -> ResolvedCell:
        result = self.classifier.classify(metric_key, value, comparison, direction)
        return ResolvedCell(
            period=period,
            metric_key=metric_key,
            value=value,
            comparison=comparison,
            variance=result.variance,
            status=result.status,
            comparison_source=source if comparison is not None else NONE,
            is_locked=is_locked,
        )

    def _target(self, metric_key: str, year: int, quarter: Optional[int]) -> Optional[TargetEntry]:
        if self.target_registry is None:
            return None
        return self.target_registry.get_target(metric_key, year, quarter)

    def resolve(self, resolution: str = MONTH, window: int = TREND_WINDOW) -> List[ResolvedCell]:
        """
        Read-only table for one resolution.

        month/quarter/annual compare against a registered target when one
        exists, otherwise against the prior-year baseline. trend compares
        each quarter with the same quarter a year earlier.
        """
        if resolution not in RESOLUTIONS:
            raise ValueError(f"Unknown resolution: {resolution}")

        cells = self._snapshot.cells
        values = values_of(cells)
        baselines = values_of(cells, "baseline_value")
        rows: List[ResolvedCell] = []

        if resolution == MONTH:
            for period in year_months(self.year):
                for key in self.schema.keys():
                    cell = cells[(period, key)]
                    rows.append(self._row(
                        period, key, cell.value, cell.baseline_value, "baseline",
                        is_locked=cell.is_locked,
                    ))
            return rows

        if resolution == TREND:
            return self._resolve_trend(values, window)

        groups = [(quarter_label(q), q, quarter_months(self.year, q)) for q in QUARTERS]
        if resolution == ANNUAL:
            groups = [(ANNUAL, None, year_months(self.year))]

        for label, quarter, periods in groups:
            forecast = self.resolver.aggregate(values, periods)
            prior = self.resolver.aggregate(baselines, periods)
            for key in self.schema.keys():
                target = self._target(key, self.year, quarter)
                is_locked = any(cells[(p, key)].is_locked for p in periods)
                if target is not None:
                    rows.append(self._row(
                        label, key, forecast[key], target.value, "target",
                        target.direction, is_locked,
                    ))
                else:
                    rows.append(self._row(
                        label, key, forecast[key], prior[key], "baseline", is_locked=is_locked,
                    ))
        return rows

    def _resolve_trend(self, values: Mapping[CellKey, Optional[float]], window: int) -> List[ResolvedCell]:
        combined = dict(values)
        prior_year = self.year - 1
        combined.update(month_values_to_cells(
            prior_year,
            {m: actual_month_values(self.schema, self.baseline, m) for m in MONTHS},
        ))

        quarters = rolling_quarters(self.year, 4, window)
        # one extra year back so every quarter has a year-ago comparison slot
        trend = self.resolver.trend(combined, rolling_quarters(self.year, 4, window + 4))

        rows = []
        for year, quarter in quarters:
            label = f"{year}-{quarter_label(quarter)}"
            for definition in self.schema.definitions:
                key = definition.key
                value = trend[(year, quarter)][key]
                target = self._target(key, year, quarter)
                if target is not None:
                    comparison = target.value
                    if definition.is_weight_distributed and definition.ratio is None:
                        comparison = comparison / 3
                    rows.append(self._row(label, key, value, comparison, "target", target.direction))
                else:
                    comparison = trend.get((year - 1, quarter), {}).get(key)
                    rows.append(self._row(label, key, value, comparison, "prior_year"))
        return rows

    # -------------------------------------------------------------------------
    # Targets
    # -------------------------------------------------------------------------

    def quarterly_targets(self, include_annual: bool = True) -> List[TargetEntry]:
        """Forecast figures shaped as target entries, one per metric and quarter."""
        values = values_of(self._snapshot.cells)
        entries = []
        groups = [(q, quarter_months(self.year, q)) for q in QUARTERS]
        if include_annual:
            groups.append((None, year_months(self.year)))
        for quarter, periods in groups:
            aggregated = self.resolver.aggregate(values, periods)
            for key in self.schema.keys():
                if aggregated[key] is None:
                    continue
                entries.append(TargetEntry(
                    metric_key=key,
                    year=self.year,
                    quarter=quarter,
                    value=aggregated[key],
                    direction=self.schema.resolve_direction(key),
                ))
        return entries

    def push_targets(self) -> List[TargetEntry]:
        """Write the forecast's quarterly figures to the target registry."""
        if self.target_registry is None:
            raise ValueError("No target registry configured for this session")
        entries = self.quarterly_targets()
        self.target_registry.save_targets(entries)
        logger.info(
            "%s/%s: pushed %d forecast targets", self.department, self.year, len(entries)
        )
        return entries


class SessionRegistry:
    """Hands out one independent session per (department, year)."""

    def __init__(
        self,
        cell_store: CellStore,
        sales_history: HistoricalSalesSource,
        baseline_source: BaselineSource,
        target_registry: Optional[TargetRegistry] = None,
        schema: MetricSchema = DEFAULT_SCHEMA
    ):
        self.cell_store = cell_store
        self.sales_history = sales_history
        self.baseline_source = baseline_source
        self.target_registry = target_registry
        self.schema = schema
        self._sessions: Dict[Tuple[str, int], ForecastSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def open(self, department: str, year: int) -> ForecastSession:
        key = (department, int(year))
        if key not in self._sessions:
            self._sessions[key] = ForecastSession(
                department,
                int(year),
                self.cell_store,
                self.sales_history,
                self.baseline_source,
                self.target_registry,
                self.schema,
            )
        return self._sessions[key]

    def close(self, department: str, year: int) -> None:
        self._sessions.pop((department, int(year)), None)
