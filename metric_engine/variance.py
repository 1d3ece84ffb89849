# =============================================================================
# FORECAST METRIC ENGINE - VARIANCE CLASSIFIER
# =============================================================================
# Variance of a forecast/actual against its baseline or target, and a
# three-level status for display.
#
# FORMULAS:
# percent metrics: variance = actual - target            (points)
# other metrics:   variance = (actual - target) / |target| * 100
#
# STATUS (band = 10):
# above: v >= 0 green | -10 <= v < 0 yellow | v < -10 red
# below: v <= 0 green | 0 < v <= 10 yellow  | v > 10 red
# =============================================================================

from dataclasses import dataclass
from typing import Optional

from .definitions import ABOVE, BELOW, PERCENT, MetricSchema

GREEN = "green"
YELLOW = "yellow"
RED = "red"
NONE = "none"

YELLOW_BAND = 10.0


@dataclass(frozen=True)
class VarianceResult:
    variance: Optional[float]
    status: str


def calculate_variance(
    actual: Optional[float],
    target: Optional[float],
    value_type: str
) -> Optional[float]:
    """None when either side is missing or the target is zero."""
    if actual is None or target is None or target == 0:
        return None
    if value_type == PERCENT:
        return actual - target
    return (actual - target) / abs(target) * 100


def classify_status(variance: Optional[float], direction: str) -> str:
    if variance is None:
        return NONE
    if direction == BELOW:
        if variance <= 0:
            return GREEN
        if variance <= YELLOW_BAND:
            return YELLOW
        return RED
    if variance >= 0:
        return GREEN
    if variance >= -YELLOW_BAND:
        return YELLOW
    return RED


def classify(
    actual: Optional[float],
    target: Optional[float],
    value_type: str,
    direction: str = ABOVE
) -> VarianceResult:
    variance = calculate_variance(actual, target, value_type)
    return VarianceResult(variance=variance, status=classify_status(variance, direction))


class VarianceClassifier:
    """Schema-aware classifier: value type and direction come from the definition."""

    def __init__(self, schema: MetricSchema):
        self.schema = schema

    def classify(
        self,
        metric_key: str,
        actual: Optional[float],
        target: Optional[float],
        direction: Optional[str] = None
    ) -> VarianceResult:
        """
        Classify one figure.

        An explicit `direction` (e.g. from a registered target) overrides
        the metric's own direction.
        """
        definition = self.schema.get(metric_key)
        effective = direction or self.schema.resolve_direction(metric_key)
        return classify(actual, target, definition.value_type, effective)
