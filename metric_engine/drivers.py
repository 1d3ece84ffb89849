# =============================================================================
# FORECAST METRIC ENGINE - DRIVERS
# =============================================================================
# User-adjustable scalars that seed the forecast cascade.
#
# Each driver declares the metric whose annual value it sets and the
# outputs it is authoritative for. Annual edits of those outputs are
# translated back into the driver (reverse calculation). Reverse rules
# assume every month follows the weights; the session corrects for locks.
#
# DRIVERS:
# growth_percent        -> Total Sales = baseline Total Sales * (1 + g/100)
# gp_percent            -> GP % (GP Net = Total Sales * GP% / 100)
# sales_expense_dollars -> Sales Expense (flat annual dollars)
# fixed_expense_dollars -> Fixed Expense (flat annual dollars)
# =============================================================================

from dataclasses import dataclass, fields, replace
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .cells import Baseline


@dataclass(frozen=True)
class DriverSpec:
    key: str
    label: str
    minimum: float
    maximum: float
    target_key: str
    authoritative_for: Tuple[str, ...]
    forward: Callable[[Optional[float], Baseline], Optional[float]]
    reverse: Callable[[str, float, Baseline, Mapping[str, Optional[float]]], Optional[float]]


def _growth_forward(value: Optional[float], baseline: Baseline) -> Optional[float]:
    base_sales = baseline.annual_value("total_sales")
    if base_sales is None:
        return None
    return base_sales * (1 + (value or 0.0) / 100)


def _growth_reverse(
    metric_key: str,
    value: float,
    baseline: Baseline,
    annual_values: Mapping[str, Optional[float]]
) -> Optional[float]:
    base_sales = baseline.annual_value("total_sales")
    if not base_sales:
        return None
    return (value / base_sales - 1) * 100


def _flat_forward(value: Optional[float], baseline: Baseline) -> Optional[float]:
    return value


def _flat_reverse(
    metric_key: str,
    value: float,
    baseline: Baseline,
    annual_values: Mapping[str, Optional[float]]
) -> Optional[float]:
    return value


def _gp_percent_reverse(
    metric_key: str,
    value: float,
    baseline: Baseline,
    annual_values: Mapping[str, Optional[float]]
) -> Optional[float]:
    if metric_key == "gp_percent":
        return value
    total_sales = annual_values.get("total_sales")
    if not total_sales:
        return None
    return value / total_sales * 100


DRIVER_SPECS: Dict[str, DriverSpec] = {
    "growth_percent": DriverSpec(
        key="growth_percent",
        label="Sales Growth %",
        minimum=-100.0,
        maximum=1000.0,
        target_key="total_sales",
        authoritative_for=("total_sales", "gp_net"),
        forward=_growth_forward,
        reverse=_growth_reverse,
    ),
    "gp_percent": DriverSpec(
        key="gp_percent",
        label="GP %",
        minimum=0.0,
        maximum=100.0,
        target_key="gp_percent",
        authoritative_for=("gp_percent", "gp_net"),
        forward=_flat_forward,
        reverse=_gp_percent_reverse,
    ),
    "sales_expense_dollars": DriverSpec(
        key="sales_expense_dollars",
        label="Sales Expense $",
        minimum=0.0,
        maximum=1e12,
        target_key="sales_expense",
        authoritative_for=("sales_expense",),
        forward=_flat_forward,
        reverse=_flat_reverse,
    ),
    "fixed_expense_dollars": DriverSpec(
        key="fixed_expense_dollars",
        label="Fixed Expense $",
        minimum=0.0,
        maximum=1e12,
        target_key="total_fixed_expense",
        authoritative_for=("total_fixed_expense",),
        forward=_flat_forward,
        reverse=_flat_reverse,
    ),
}

# Annual edits of these metrics move the listed driver. GP Net moves GP %
# so that Total Sales stays put.
REVERSE_DRIVERS: Dict[str, str] = {
    "total_sales": "growth_percent",
    "gp_percent": "gp_percent",
    "gp_net": "gp_percent",
    "sales_expense": "sales_expense_dollars",
    "total_fixed_expense": "fixed_expense_dollars",
}


def get_driver_spec(key: str) -> DriverSpec:
    if key not in DRIVER_SPECS:
        raise ValueError(f"Unknown driver: {key}")
    return DRIVER_SPECS[key]


def driver_for_metric(metric_key: str) -> Optional[DriverSpec]:
    """Driver whose forward rule sets this metric's annual value."""
    for spec in DRIVER_SPECS.values():
        if spec.target_key == metric_key:
            return spec
    return None


def reverse_driver_for(metric_key: str) -> Optional[DriverSpec]:
    driver_key = REVERSE_DRIVERS.get(metric_key)
    if driver_key is None:
        return None
    return DRIVER_SPECS[driver_key]


def validate_driver_value(key: str, value: float) -> float:
    """Raise ValueError when a driver value is outside its bounds."""
    spec = get_driver_spec(key)
    if value is None:
        raise ValueError(f"{key} requires a value")
    value = float(value)
    if value < spec.minimum or value > spec.maximum:
        raise ValueError(
            f"{key} out of range: {value} (allowed {spec.minimum} to {spec.maximum})"
        )
    return value


def validate_drivers(drivers: Mapping[str, Optional[float]]) -> List[str]:
    """Validate a raw driver mapping. Returns list of errors."""
    errors = []
    for key, value in drivers.items():
        if key not in DRIVER_SPECS:
            errors.append(f"Unknown driver: {key}")
            continue
        if value is None:
            continue
        try:
            validate_driver_value(key, value)
        except (TypeError, ValueError) as exc:
            errors.append(str(exc))
    return errors


@dataclass(frozen=True)
class DriverSet:
    growth_percent: float = 0.0
    gp_percent: Optional[float] = None
    sales_expense_dollars: Optional[float] = None
    fixed_expense_dollars: Optional[float] = None

    @classmethod
    def from_baseline(cls, baseline: Baseline) -> "DriverSet":
        """Drivers that reproduce the prior year: no growth, prior GP %, prior expenses."""
        gp_percent = baseline.annual_value("gp_percent")
        if gp_percent is None:
            total_sales = baseline.annual_value("total_sales")
            gp_net = baseline.annual_value("gp_net")
            if total_sales and gp_net is not None:
                gp_percent = gp_net / total_sales * 100
        return cls(
            growth_percent=0.0,
            gp_percent=gp_percent,
            sales_expense_dollars=baseline.annual_value("sales_expense"),
            fixed_expense_dollars=baseline.annual_value("total_fixed_expense"),
        )

    @classmethod
    def from_mapping(cls, values: Mapping[str, Optional[float]], baseline: Baseline) -> "DriverSet":
        """Baseline defaults, overridden by whichever drivers are given."""
        drivers = cls.from_baseline(baseline)
        for key, value in (values or {}).items():
            if value is not None:
                drivers = drivers.with_value(key, value)
        return drivers

    def get(self, key: str) -> Optional[float]:
        get_driver_spec(key)
        return getattr(self, key)

    def with_value(self, key: str, value: float) -> "DriverSet":
        return replace(self, **{key: validate_driver_value(key, value)})

    def as_dict(self) -> Dict[str, Optional[float]]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def annual_value(self, spec: DriverSpec, baseline: Baseline) -> Optional[float]:
        return spec.forward(self.get(spec.key), baseline)
