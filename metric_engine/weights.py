# =============================================================================
# FORECAST METRIC ENGINE - WEIGHT TABLE
# =============================================================================
# Percentage share of an annual figure allocated to each month.
#
# RULES:
# - 12 entries, adjusted weights sum to 100 (+/- 0.1) whenever feasible
# - Editing one month rescales the other UNLOCKED months proportionally
# - Locked weights keep their value and still count toward the 100% total
# - An infeasible edit still applies; the table reports itself invalid
# =============================================================================

from dataclasses import dataclass, replace
from typing import Dict, List, Mapping, Optional

from .cells import MONTHS, quarter_month_numbers

EQUAL_WEIGHT = 100 / 12
WEIGHT_TOLERANCE = 0.1

MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]


@dataclass(frozen=True)
class WeightEntry:
    month: int
    original_weight: float
    adjusted_weight: float
    is_locked: bool = False

    @property
    def month_name(self) -> str:
        return MONTH_NAMES[self.month - 1]


def _check_month(month: int) -> None:
    if month not in MONTHS:
        raise ValueError(f"Invalid month number: {month}")


def weights_from_sales(sales_by_month: Optional[Mapping[int, float]]) -> Dict[int, float]:
    """
    Seed weights from prior-year monthly sales.

    weight[m] = sales[m] / total * 100, rounded to 2 decimals.
    No history (or a zero total) gives every month 100/12.
    """
    sales = {m: float((sales_by_month or {}).get(m) or 0.0) for m in MONTHS}
    total = sum(sales.values())
    if total == 0:
        return {m: EQUAL_WEIGHT for m in MONTHS}
    return {m: round(value / total * 100, 2) for m, value in sales.items()}


class WeightTable:
    """Mutable month-weight table owned by one forecast session."""

    def __init__(self, entries: List[WeightEntry]):
        by_month = {entry.month: entry for entry in entries}
        self._entries: Dict[int, WeightEntry] = {}
        for month in MONTHS:
            if month in by_month:
                self._entries[month] = by_month[month]
            else:
                self._entries[month] = WeightEntry(month, EQUAL_WEIGHT, EQUAL_WEIGHT)
        self.infeasible = False

    @classmethod
    def from_weights(cls, weights: Mapping[int, float]) -> "WeightTable":
        return cls([
            WeightEntry(m, float(weights[m]), float(weights[m])) for m in MONTHS if m in weights
        ])

    @classmethod
    def from_sales(cls, sales_by_month: Optional[Mapping[int, float]]) -> "WeightTable":
        return cls.from_weights(weights_from_sales(sales_by_month))

    @classmethod
    def uniform(cls) -> "WeightTable":
        return cls.from_weights({m: EQUAL_WEIGHT for m in MONTHS})

    def copy(self) -> "WeightTable":
        table = WeightTable(list(self._entries.values()))
        table.infeasible = self.infeasible
        return table

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @property
    def entries(self) -> List[WeightEntry]:
        return [self._entries[m] for m in MONTHS]

    def entry(self, month: int) -> WeightEntry:
        _check_month(month)
        return self._entries[month]

    def weight(self, month: int) -> float:
        return self.entry(month).adjusted_weight

    def adjusted(self) -> Dict[int, float]:
        return {m: self._entries[m].adjusted_weight for m in MONTHS}

    def original(self) -> Dict[int, float]:
        return {m: self._entries[m].original_weight for m in MONTHS}

    def locked_months(self) -> List[int]:
        return [m for m in MONTHS if self._entries[m].is_locked]

    def total(self) -> float:
        return sum(entry.adjusted_weight for entry in self._entries.values())

    def is_valid(self) -> bool:
        return abs(self.total() - 100) < WEIGHT_TOLERANCE and not self.infeasible

    def validation_errors(self) -> List[str]:
        errors = []
        total = self.total()
        if abs(total - 100) >= WEIGHT_TOLERANCE:
            errors.append(f"Weights must sum to 100%: total is {total:.1f}%")
        if self.infeasible:
            errors.append("Locked weights leave no room to redistribute the remaining months")
        return errors

    # -------------------------------------------------------------------------
    # Edits
    # -------------------------------------------------------------------------

    def set_adjusted_weight(self, month: int, value: float) -> None:
        """
        Set one month's weight and rescale the other unlocked months.

        The other unlocked months share 100 - value - sum(locked weights) in
        proportion to their current weights. When nothing is left to share
        (or the locked months already use it up) the edit still applies and
        the table is flagged infeasible.
        """
        _check_month(month)
        if value < 0 or value > 100:
            raise ValueError(f"Weight must be between 0 and 100: {value}")

        others = [
            m for m in MONTHS if m != month and not self._entries[m].is_locked
        ]
        locked_total = sum(
            self._entries[m].adjusted_weight
            for m in MONTHS
            if m != month and self._entries[m].is_locked
        )
        remaining = 100 - value - locked_total

        self._entries[month] = replace(self._entries[month], adjusted_weight=float(value))

        if not others:
            self.infeasible = abs(remaining) >= WEIGHT_TOLERANCE
            return

        if remaining < 0:
            for m in others:
                self._entries[m] = replace(self._entries[m], adjusted_weight=0.0)
            self.infeasible = True
            return

        others_total = sum(self._entries[m].adjusted_weight for m in others)
        for m in others:
            if others_total > 0:
                share = self._entries[m].adjusted_weight / others_total
            else:
                share = 1 / len(others)
            self._entries[m] = replace(self._entries[m], adjusted_weight=remaining * share)
        self.infeasible = False

    def toggle_lock(self, month: int) -> bool:
        """Flip the lock flag; weights are untouched. Returns the new flag."""
        entry = self.entry(month)
        self._entries[month] = replace(entry, is_locked=not entry.is_locked)
        return not entry.is_locked

    def reset_to_original(self) -> None:
        for m in MONTHS:
            entry = self._entries[m]
            self._entries[m] = replace(
                entry, adjusted_weight=entry.original_weight, is_locked=False
            )
        self.infeasible = False

    # -------------------------------------------------------------------------
    # Distribution
    # -------------------------------------------------------------------------

    def distribute(self, annual_value: Optional[float]) -> Dict[int, Optional[float]]:
        """Monthly share of an annual figure: annual * weight / 100."""
        if annual_value is None:
            return {m: None for m in MONTHS}
        return {m: annual_value * self.weight(m) / 100 for m in MONTHS}

    def distribute_quarter(self, quarter: int, quarter_value: float) -> Dict[int, float]:
        """Spread a quarter figure over its months by weights normalized within the quarter."""
        months = quarter_month_numbers(quarter)
        weights = [self.weight(m) for m in months]
        total = sum(weights)
        if total == 0:
            return {m: quarter_value / len(months) for m in months}
        return {m: quarter_value * w / total for m, w in zip(months, weights)}
