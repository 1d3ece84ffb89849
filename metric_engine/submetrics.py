# =============================================================================
# FORECAST METRIC ENGINE - SUB-METRIC OVERRIDE ENGINE
# =============================================================================
# Keeps parent metrics and their child breakdowns reconciled.
#
# PARENT -> CHILDREN:
#   Overridden children keep their annual target, spread by their own weights.
#   Residual[m] = Parent[m] - sum(overridden children[m]) is split across the
#   non-overridden children by their prior share of the residual.
#
# CHILD -> PARENT:
#   Editing a child creates/updates its override; the parent's new annual
#   value is the sum of all children.
#
# INVARIANT: sum(children annual) = parent annual (+/- 0.01)
# =============================================================================

from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .cells import CellKey, parse_month
from .definitions import MetricSchema

RECONCILE_TOLERANCE = 0.01


@dataclass(frozen=True)
class SubMetricOverride:
    """User-set annual value that decouples a child from proportional scaling."""
    sub_metric_key: str
    annual_target: float
    is_overridden: bool = True


@dataclass
class ReconcileResult:
    values: Dict[CellKey, Optional[float]] = field(default_factory=dict)
    annual: Dict[str, Optional[float]] = field(default_factory=dict)
    overrides: Dict[str, SubMetricOverride] = field(default_factory=dict)


def _sum_present(values) -> Optional[float]:
    present = [v for v in values if v is not None]
    if not present:
        return None
    return sum(present)


class SubMetricOverrideEngine:
    """Reconciles every parent of a schema with its sub-metrics."""

    def __init__(self, schema: MetricSchema):
        self.schema = schema

    def active_overrides(
        self,
        parent_key: str,
        overrides: Mapping[str, SubMetricOverride]
    ) -> Dict[str, SubMetricOverride]:
        keys = [child.key for child in self.schema.children(parent_key)]
        return {
            key: overrides[key]
            for key in keys
            if key in overrides and overrides[key].is_overridden
        }

    def shares(
        self,
        floating: Sequence[str],
        previous: Mapping[str, Optional[float]],
        baseline_annual: Mapping[str, Optional[float]]
    ) -> Dict[str, float]:
        """
        Split ratio of the residual among non-overridden children.

        Prior annual values first, then prior-year baseline, then equal.
        """
        if not floating:
            return {}
        for source in (previous, baseline_annual):
            values = {key: source.get(key) or 0.0 for key in floating}
            total = sum(values.values())
            if abs(total) > 1e-9:
                return {key: value / total for key, value in values.items()}
        return {key: 1 / len(floating) for key in floating}

    def reconcile(
        self,
        parent_key: str,
        periods: Sequence[str],
        parent_values: Mapping[str, Optional[float]],
        overrides: Mapping[str, SubMetricOverride],
        child_weights: Mapping[str, Mapping[int, float]],
        previous: Mapping[str, Optional[float]],
        baseline_annual: Mapping[str, Optional[float]]
    ) -> ReconcileResult:
        """
        Monthly values of every child of `parent_key`.

        Args:
            periods: Month keys of the forecast year
            parent_values: Parent value per month key (already cascaded)
            overrides: Current override set (all parents)
            child_weights: Month weights per child (percent, normalized here)
            previous: Child annual values from the previous snapshot
            baseline_annual: Child prior-year annual actuals
        """
        children = [child.key for child in self.schema.children(parent_key)]
        active = self.active_overrides(parent_key, overrides)
        floating = [key for key in children if key not in active]

        result = ReconcileResult(overrides=dict(overrides))

        parent_annual = _sum_present(parent_values.get(p) for p in periods)
        if not floating and active and parent_annual is not None:
            active = self._rescale_all_overridden(active, parent_annual)
            result.overrides.update(active)

        shares = self.shares(floating, previous, baseline_annual)
        weight_totals = {key: sum(child_weights[key].values()) for key in active}

        for period in periods:
            _, month = parse_month(period)
            parent_value = parent_values.get(period)
            if parent_value is None:
                for key in children:
                    result.values[(period, key)] = None
                continue

            fixed_total = 0.0
            for key, override in active.items():
                # rounded weights may not total exactly 100
                total = weight_totals[key]
                if total:
                    share = child_weights[key].get(month, 0.0) / total
                else:
                    share = 1 / len(periods)
                value = override.annual_target * share
                result.values[(period, key)] = value
                fixed_total += value

            residual = parent_value - fixed_total
            for key in floating:
                result.values[(period, key)] = residual * shares[key]

        for key in children:
            result.annual[key] = _sum_present(result.values.get((p, key)) for p in periods)
        return result

    def _rescale_all_overridden(
        self,
        active: Mapping[str, SubMetricOverride],
        parent_annual: float
    ) -> Dict[str, SubMetricOverride]:
        """With no free child left, a parent change scales every override alike."""
        overridden_total = sum(o.annual_target for o in active.values())
        if abs(parent_annual - overridden_total) <= RECONCILE_TOLERANCE:
            return dict(active)
        if overridden_total:
            ratio = parent_annual / overridden_total
            return {
                key: replace(o, annual_target=o.annual_target * ratio)
                for key, o in active.items()
            }
        equal = parent_annual / len(active)
        return {key: replace(o, annual_target=equal) for key, o in active.items()}

    def apply_child_edit(
        self,
        child_key: str,
        annual_value: float,
        overrides: Mapping[str, SubMetricOverride],
        current_annual: Mapping[str, Optional[float]]
    ) -> Tuple[Dict[str, SubMetricOverride], float]:
        """
        Record a direct edit of a child's annual value.

        Returns the updated override set and the parent's new annual value
        (sum of overridden targets and the other children's current values).
        """
        definition = self.schema.get(child_key)
        if not definition.is_sub_metric:
            raise ValueError(f"{child_key} is not a sub-metric")

        updated = dict(overrides)
        updated[child_key] = SubMetricOverride(child_key, float(annual_value))

        parent_total = 0.0
        for child in self.schema.children(definition.parent_key):
            override = updated.get(child.key)
            if override is not None and override.is_overridden:
                parent_total += override.annual_target
            else:
                parent_total += current_annual.get(child.key) or 0.0
        return updated, parent_total

    def clear_override(
        self,
        child_key: str,
        overrides: Mapping[str, SubMetricOverride]
    ) -> Dict[str, SubMetricOverride]:
        updated = dict(overrides)
        updated.pop(child_key, None)
        return updated


def check_reconciled(
    parent_key: str,
    parent_annual: Optional[float],
    children_annual: Mapping[str, Optional[float]]
) -> List[str]:
    """Warn when the children no longer add up to the parent."""
    children_total = _sum_present(children_annual.values())
    if parent_annual is None or children_total is None:
        return []
    if abs(parent_annual - children_total) > RECONCILE_TOLERANCE:
        return [
            f"Sub-metrics of {parent_key} sum to {children_total:,.2f}, "
            f"parent is {parent_annual:,.2f}"
        ]
    return []
