# =============================================================================
# FORECAST METRIC ENGINE - CELLS, PERIODS AND BASELINE
# =============================================================================
# The month-level cell is the only stored unit. Quarters, years and trend
# windows are always derived from months.
#
# Period keys:
# - month:   "YYYY-MM"
# - quarter: "Q1".."Q4" (within a forecast year)
# - annual:  "annual"
# =============================================================================

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .definitions import AVERAGE

ANNUAL = "annual"
QUARTERS = (1, 2, 3, 4)
MONTHS = tuple(range(1, 13))

# (period, metric_key)
CellKey = Tuple[str, str]


@dataclass
class MetricCell:
    """Forecast value of one metric in one month."""
    value: Optional[float]
    baseline_value: Optional[float] = None
    is_locked: bool = False


def parse_month(period: str) -> Tuple[int, int]:
    parts = period.split("-")
    if len(parts) != 2:
        raise ValueError(f"Invalid month format: {period}")
    year = int(parts[0])
    month = int(parts[1])
    if month < 1 or month > 12:
        raise ValueError(f"Invalid month value: {period}")
    return year, month


def month_key(year: int, month: int) -> str:
    if month < 1 or month > 12:
        raise ValueError(f"Invalid month value: {month}")
    return f"{year:04d}-{month:02d}"


def year_months(year: int) -> List[str]:
    """All 12 month keys of a year."""
    return [month_key(year, month) for month in MONTHS]


def quarter_of(month: int) -> int:
    return (month - 1) // 3 + 1


def quarter_label(quarter: int) -> str:
    return f"Q{quarter}"


def parse_quarter(label) -> int:
    """Accept 1..4 or "Q1".."Q4"."""
    text = str(label).upper().lstrip("Q")
    try:
        quarter = int(text)
    except ValueError:
        raise ValueError(f"Invalid quarter: {label}")
    if quarter not in QUARTERS:
        raise ValueError(f"Invalid quarter: {label}")
    return quarter


def quarter_month_numbers(quarter: int) -> List[int]:
    start = (quarter - 1) * 3 + 1
    return [start, start + 1, start + 2]


def quarter_months(year: int, quarter: int) -> List[str]:
    return [month_key(year, month) for month in quarter_month_numbers(quarter)]


def rolling_quarters(end_year: int, end_quarter: int, count: int = 8) -> List[Tuple[int, int]]:
    """
    The `count` quarters ending at (end_year, end_quarter), oldest first.

    With the default of 8 the window covers two calendar years.
    """
    result = []
    year, quarter = end_year, end_quarter
    for _ in range(count):
        result.append((year, quarter))
        quarter -= 1
        if quarter == 0:
            quarter = 4
            year -= 1
    return list(reversed(result))


# =============================================================================
# BASELINE
# =============================================================================

@dataclass
class Baseline:
    """
    Prior-year actuals.

    `annual` holds one figure per metric; `monthly` optionally holds the
    month-by-month actuals keyed by (month_number, metric_key).
    """
    year: int
    annual: Dict[str, float] = field(default_factory=dict)
    monthly: Dict[Tuple[int, str], float] = field(default_factory=dict)

    def annual_value(self, key: str, aggregation: str = "sum") -> Optional[float]:
        if key in self.annual and self.annual[key] is not None:
            return float(self.annual[key])
        values = [v for (m, k), v in self.monthly.items() if k == key and v is not None]
        if not values:
            return None
        if aggregation == AVERAGE:
            return sum(values) / len(values)
        return float(sum(values))

    def month_value(self, month: int, key: str) -> Optional[float]:
        value = self.monthly.get((month, key))
        return float(value) if value is not None else None

    def has_monthly(self, key: str) -> bool:
        return any(k == key for (_, k) in self.monthly.keys())

    def monthly_shares(self, key: str) -> Optional[Dict[int, float]]:
        """Percentage share of each month in the metric's prior-year total."""
        values = {m: self.monthly.get((m, key)) or 0.0 for m in MONTHS}
        total = sum(values.values())
        if not self.has_monthly(key) or total == 0:
            return None
        return {m: value / total * 100 for m, value in values.items()}
