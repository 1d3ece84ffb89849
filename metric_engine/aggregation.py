# =============================================================================
# FORECAST METRIC ENGINE - AGGREGATION RESOLVER
# =============================================================================
# Rolls monthly values up to quarter, annual and trend-window figures.
# Nothing here is stored: every roll-up is computed on read.
#
# RULES:
# - sum metrics:     total of the months present
# - average metrics: mean over months with data (missing months excluded)
# - ratio metrics:   sum numerator and denominator over months where both
#                    exist, divide once
# - trend windows:   sum metrics become monthly averages, divided by the
#                    number of months that actually contributed
# =============================================================================

from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .cells import CellKey, month_key, quarter_months, year_months, MONTHS
from .definitions import AVERAGE, MetricDefinition, MetricSchema


def _present(values: Mapping[CellKey, Optional[float]], key: str, periods: Sequence[str]) -> List[float]:
    result = []
    for period in periods:
        value = values.get((period, key))
        if value is not None:
            result.append(value)
    return result


class AggregationResolver:
    """Schema-driven roll-ups over a {(month, metric): value} mapping."""

    def __init__(self, schema: MetricSchema):
        self.schema = schema

    def aggregate_metric(
        self,
        definition: MetricDefinition,
        values: Mapping[CellKey, Optional[float]],
        periods: Sequence[str],
        monthly_average: bool = False
    ) -> Optional[float]:
        if definition.ratio is not None:
            ratio = definition.ratio
            pairs = [
                (values.get((period, ratio.numerator)), values.get((period, ratio.denominator)))
                for period in periods
            ]
            # a month counts only when both components are present
            pairs = [(n, d) for n, d in pairs if n is not None and d is not None]
            if not pairs:
                return None
            return ratio.evaluate({
                ratio.numerator: sum(n for n, _ in pairs),
                ratio.denominator: sum(d for _, d in pairs),
            })

        present = _present(values, definition.key, periods)
        if not present:
            return None
        if definition.aggregation == AVERAGE or monthly_average:
            return sum(present) / len(present)
        return sum(present)

    def aggregate(
        self,
        values: Mapping[CellKey, Optional[float]],
        periods: Sequence[str],
        monthly_average: bool = False
    ) -> Dict[str, Optional[float]]:
        return {
            definition.key: self.aggregate_metric(definition, values, periods, monthly_average)
            for definition in self.schema.definitions
        }

    def month(self, values: Mapping[CellKey, Optional[float]], period: str) -> Dict[str, Optional[float]]:
        return self.aggregate(values, [period])

    def quarter(
        self,
        values: Mapping[CellKey, Optional[float]],
        year: int,
        quarter: int
    ) -> Dict[str, Optional[float]]:
        return self.aggregate(values, quarter_months(year, quarter))

    def annual(self, values: Mapping[CellKey, Optional[float]], year: int) -> Dict[str, Optional[float]]:
        return self.aggregate(values, year_months(year))

    def trend(
        self,
        values: Mapping[CellKey, Optional[float]],
        quarters: Sequence[Tuple[int, int]]
    ) -> Dict[Tuple[int, int], Dict[str, Optional[float]]]:
        """
        Per-quarter monthly averages across a multi-quarter window.

        A partial quarter divides by the months it actually has, so two
        months of data give a true two-month average.
        """
        return {
            (year, quarter): self.aggregate(
                values, quarter_months(year, quarter), monthly_average=True
            )
            for year, quarter in quarters
        }


def values_of(cells: Mapping[CellKey, object], attribute: str = "value") -> Dict[CellKey, Optional[float]]:
    """Project a MetricCell mapping onto one numeric attribute."""
    return {key: getattr(cell, attribute) for key, cell in cells.items()}


def month_values_to_cells(
    year: int,
    values_by_month: Mapping[int, Mapping[str, Optional[float]]]
) -> Dict[CellKey, Optional[float]]:
    """{month_number: {metric: value}} -> {(month_key, metric): value}."""
    result: Dict[CellKey, Optional[float]] = {}
    for month in MONTHS:
        for key, value in values_by_month.get(month, {}).items():
            result[(month_key(year, month), key)] = value
    return result
