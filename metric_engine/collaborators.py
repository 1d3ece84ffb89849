# =============================================================================
# FORECAST METRIC ENGINE - COLLABORATORS
# =============================================================================
# Interfaces of the services around the engine, plus in-memory versions
# used by the CLI and the tests.
#
# - CellStore:             monthly cells per (department, year)
# - HistoricalSalesSource: prior-year monthly sales (seeds the weights)
# - BaselineSource:        prior-year actuals per metric
# - TargetRegistry:        explicit targets per (metric, year, quarter)
# =============================================================================

from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from .cells import Baseline, CellKey, MetricCell


@dataclass(frozen=True)
class TargetEntry:
    """Explicit target; quarter None means the annual target."""
    metric_key: str
    year: int
    quarter: Optional[int]
    value: float
    direction: str


class CellStore(Protocol):
    def load_cells(self, department: str, year: int) -> Dict[CellKey, MetricCell]:
        ...

    def save_cells(self, department: str, year: int, cells: Mapping[CellKey, MetricCell]) -> None:
        ...


class HistoricalSalesSource(Protocol):
    def monthly_sales(self, department: str, year: int) -> Dict[int, float]:
        ...


class BaselineSource(Protocol):
    def load_baseline(self, department: str, year: int) -> Baseline:
        ...


class TargetRegistry(Protocol):
    def get_target(self, metric_key: str, year: int, quarter: Optional[int]) -> Optional[TargetEntry]:
        ...

    def save_targets(self, entries: Iterable[TargetEntry]) -> None:
        ...


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryCellStore:
    def __init__(self):
        self._cells: Dict[Tuple[str, int], Dict[CellKey, MetricCell]] = {}
        self.writes: List[Tuple[str, int, int]] = []

    def load_cells(self, department: str, year: int) -> Dict[CellKey, MetricCell]:
        stored = self._cells.get((department, year), {})
        return {key: replace(cell) for key, cell in stored.items()}

    def save_cells(self, department: str, year: int, cells: Mapping[CellKey, MetricCell]) -> None:
        stored = self._cells.setdefault((department, year), {})
        for key, cell in cells.items():
            stored[key] = replace(cell)
        self.writes.append((department, year, len(cells)))


class StaticSalesHistory:
    def __init__(self, sales: Optional[Mapping[Tuple[str, int], Mapping[int, float]]] = None):
        self._sales = {key: dict(value) for key, value in (sales or {}).items()}

    def monthly_sales(self, department: str, year: int) -> Dict[int, float]:
        return dict(self._sales.get((department, year), {}))


class StaticBaselineSource:
    def __init__(self, baselines: Optional[Mapping[Tuple[str, int], Baseline]] = None):
        self._baselines = dict(baselines or {})

    def load_baseline(self, department: str, year: int) -> Baseline:
        baseline = self._baselines.get((department, year))
        if baseline is None:
            return Baseline(year=year)
        return baseline


class InMemoryTargetRegistry:
    def __init__(self, entries: Iterable[TargetEntry] = ()):
        self._entries: Dict[Tuple[str, int, Optional[int]], TargetEntry] = {}
        self.save_targets(entries)

    def get_target(self, metric_key: str, year: int, quarter: Optional[int]) -> Optional[TargetEntry]:
        return self._entries.get((metric_key, year, quarter))

    def save_targets(self, entries: Iterable[TargetEntry]) -> None:
        for entry in entries:
            self._entries[(entry.metric_key, entry.year, entry.quarter)] = entry

    def all_targets(self) -> List[TargetEntry]:
        return list(self._entries.values())
