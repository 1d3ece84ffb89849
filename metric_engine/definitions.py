# =============================================================================
# FORECAST METRIC ENGINE - METRIC DEFINITIONS
# =============================================================================
# Declares every metric the engine knows about and how it behaves.
#
# ROLES:
# - Driver: annual value set by a driver (or carried from the baseline),
#           then spread across months
# - Derived: per-period formula over sibling cells of the same period
# - SubMetric: editable child breakdown of a parent metric
#
# Format, aggregation mode and target direction live on the definition;
# nothing is inferred from display labels.
# =============================================================================

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple, Union

# Value types
CURRENCY = "currency"
PERCENT = "percent"
COUNT = "count"
VALUE_TYPES = (CURRENCY, PERCENT, COUNT)

# Target directions
ABOVE = "above"
BELOW = "below"
DIRECTIONS = (ABOVE, BELOW)

# Aggregation modes
SUM = "sum"
AVERAGE = "average"
AGGREGATIONS = (SUM, AVERAGE)


# =============================================================================
# FORMULAS
# =============================================================================

@dataclass(frozen=True)
class Ratio:
    """numerator / denominator * scale; None when the denominator is null or zero."""
    numerator: str
    denominator: str
    scale: float = 100.0

    def inputs(self) -> Tuple[str, ...]:
        return (self.numerator, self.denominator)

    def evaluate(self, values: Mapping[str, Optional[float]]) -> Optional[float]:
        numerator = values.get(self.numerator)
        denominator = values.get(self.denominator)
        if numerator is None or not denominator:
            return None
        return numerator / denominator * self.scale


@dataclass(frozen=True)
class Product:
    """left * right * scale; None when either side is missing."""
    left: str
    right: str
    scale: float = 1.0

    def inputs(self) -> Tuple[str, ...]:
        return (self.left, self.right)

    def evaluate(self, values: Mapping[str, Optional[float]]) -> Optional[float]:
        left = values.get(self.left)
        right = values.get(self.right)
        if left is None or right is None:
            return None
        return left * right * self.scale


@dataclass(frozen=True)
class Difference:
    """base - sum(deductions) + sum(additions); missing terms count as zero."""
    base: str
    deductions: Tuple[str, ...] = ()
    additions: Tuple[str, ...] = ()

    def inputs(self) -> Tuple[str, ...]:
        return (self.base,) + tuple(self.deductions) + tuple(self.additions)

    def evaluate(self, values: Mapping[str, Optional[float]]) -> Optional[float]:
        base = values.get(self.base)
        if base is None:
            return None
        deducted = sum(values.get(key) or 0.0 for key in self.deductions)
        added = sum(values.get(key) or 0.0 for key in self.additions)
        return base - deducted + added


Formula = Union[Ratio, Product, Difference]


# =============================================================================
# ROLES
# =============================================================================

@dataclass(frozen=True)
class Driver:
    """Annual value owned by a driver or carried from the baseline."""


@dataclass(frozen=True)
class Derived:
    formula: Formula


@dataclass(frozen=True)
class SubMetric:
    parent_key: str


Role = Union[Driver, Derived, SubMetric]


@dataclass(frozen=True)
class MetricDefinition:
    """
    One metric of the forecast schema.

    `ratio` marks a percentage that must be recomputed from summed
    components when rolled up, instead of being averaged. `bidirectional`
    metrics stay directly editable after they gain sub-metrics.
    """
    key: str
    label: str
    value_type: str = CURRENCY
    role: Role = field(default_factory=Driver)
    direction: Optional[str] = None
    aggregation: str = SUM
    ratio: Optional[Ratio] = None
    is_expense: bool = False
    bidirectional: bool = False
    decimals: int = 0

    @property
    def is_driver(self) -> bool:
        return isinstance(self.role, Driver)

    @property
    def is_derived(self) -> bool:
        return isinstance(self.role, Derived)

    @property
    def is_sub_metric(self) -> bool:
        return isinstance(self.role, SubMetric)

    @property
    def parent_key(self) -> Optional[str]:
        if isinstance(self.role, SubMetric):
            return self.role.parent_key
        return None

    @property
    def formula(self) -> Optional[Formula]:
        if isinstance(self.role, Derived):
            return self.role.formula
        return None

    @property
    def is_weight_distributed(self) -> bool:
        """Sum metrics follow the month weights; averaged ones hold the annual value."""
        return self.aggregation == SUM


def sub_metric(
    key: str,
    label: str,
    parent: MetricDefinition,
    direction: Optional[str] = None
) -> MetricDefinition:
    """Build a child definition that shares its parent's format and aggregation."""
    return MetricDefinition(
        key=key,
        label=label,
        value_type=parent.value_type,
        role=SubMetric(parent.key),
        direction=direction,
        aggregation=parent.aggregation,
        decimals=parent.decimals,
    )


# =============================================================================
# SCHEMA
# =============================================================================

class MetricSchema:
    """Ordered metric definitions; formulas only reference earlier metrics."""

    def __init__(self, definitions: List[MetricDefinition]):
        self.definitions = list(definitions)
        self._by_key: Dict[str, MetricDefinition] = {d.key: d for d in self.definitions}

    def __contains__(self, key: str) -> bool:
        return key in self._by_key

    def __iter__(self):
        return iter(self.definitions)

    def get(self, key: str) -> MetricDefinition:
        if key not in self._by_key:
            raise ValueError(f"Unknown metric: {key}")
        return self._by_key[key]

    def keys(self) -> List[str]:
        return [d.key for d in self.definitions]

    def top_level(self) -> List[MetricDefinition]:
        return [d for d in self.definitions if not d.is_sub_metric]

    def children(self, parent_key: str) -> List[MetricDefinition]:
        return [d for d in self.definitions if d.parent_key == parent_key]

    def parents(self) -> List[MetricDefinition]:
        """Metrics with at least one sub-metric, in schema order."""
        parent_keys = {d.parent_key for d in self.definitions if d.is_sub_metric}
        return [d for d in self.definitions if d.key in parent_keys]

    def has_children(self, key: str) -> bool:
        return any(d.parent_key == key for d in self.definitions)

    def resolve_direction(self, key: str) -> str:
        """
        Effective target direction.

        Explicit direction wins; expenses default to "below"; sub-metrics
        inherit from their parent; everything else is "above".
        """
        definition = self.get(key)
        if definition.direction:
            return definition.direction
        if definition.is_expense:
            return BELOW
        if definition.is_sub_metric:
            return self.resolve_direction(definition.parent_key)
        return ABOVE

    def dependents(self, key: str) -> List[str]:
        """Derived metrics that (transitively) read `key`."""
        affected = {key}
        result = []
        for definition in self.definitions:
            formula = definition.formula
            if formula is not None and affected.intersection(formula.inputs()):
                affected.add(definition.key)
                result.append(definition.key)
        return result

    def validate(self) -> List[str]:
        """Check structural rules of the schema. Returns list of errors."""
        errors: List[str] = []
        seen = set()
        for definition in self.definitions:
            if definition.value_type not in VALUE_TYPES:
                errors.append(f"{definition.key}: invalid value type {definition.value_type}")
            if definition.aggregation not in AGGREGATIONS:
                errors.append(f"{definition.key}: invalid aggregation {definition.aggregation}")
            if definition.direction is not None and definition.direction not in DIRECTIONS:
                errors.append(f"{definition.key}: invalid direction {definition.direction}")

            formula = definition.formula
            if formula is not None:
                for name in formula.inputs():
                    if name not in seen:
                        errors.append(
                            f"{definition.key}: formula input {name} must be defined earlier"
                        )

            parent_key = definition.parent_key
            if parent_key is not None:
                if parent_key not in self._by_key:
                    errors.append(f"{definition.key}: unknown parent {parent_key}")
                else:
                    parent = self._by_key[parent_key]
                    if parent.is_sub_metric:
                        errors.append(f"{definition.key}: nested sub-metrics are not supported")
                    if parent.aggregation != SUM:
                        errors.append(
                            f"{definition.key}: parent {parent_key} must be a sum metric"
                        )
            seen.add(definition.key)

        if len(seen) != len(self.definitions):
            errors.append("Duplicate metric keys in schema")
        return errors


# =============================================================================
# DEFAULT DEPARTMENT SCHEMA
# =============================================================================

TOTAL_SALES = MetricDefinition("total_sales", "Total Sales")
GP_PERCENT = MetricDefinition(
    "gp_percent", "GP %", value_type=PERCENT, aggregation=AVERAGE,
    ratio=Ratio("gp_net", "total_sales"), bidirectional=True, decimals=1,
)
GP_NET = MetricDefinition(
    "gp_net", "GP Net", role=Derived(Product("total_sales", "gp_percent", 0.01)),
    bidirectional=True,
)
SALES_EXPENSE = MetricDefinition("sales_expense", "Sales Expense", is_expense=True)
SALES_EXPENSE_PERCENT = MetricDefinition(
    "sales_expense_percent", "Sales Exp %", value_type=PERCENT,
    role=Derived(Ratio("sales_expense", "gp_net")), aggregation=AVERAGE,
    ratio=Ratio("sales_expense", "gp_net"), is_expense=True, decimals=1,
)
SEMI_FIXED_EXPENSE = MetricDefinition("semi_fixed_expense", "Semi-Fixed Exp", is_expense=True)
NET_SELLING_GROSS = MetricDefinition(
    "net_selling_gross", "Net Selling Gross",
    role=Derived(Difference("gp_net", ("sales_expense", "semi_fixed_expense"))),
)
TOTAL_FIXED_EXPENSE = MetricDefinition("total_fixed_expense", "Fixed Expense", is_expense=True)
DEPARTMENT_PROFIT = MetricDefinition(
    "department_profit", "Dept Profit",
    role=Derived(Difference(
        "gp_net", ("sales_expense", "semi_fixed_expense", "total_fixed_expense")
    )),
)
PARTS_TRANSFER = MetricDefinition("parts_transfer", "Parts Transfer")
NET_OPERATING_PROFIT = MetricDefinition(
    "net_operating_profit", "Net Operating",
    role=Derived(Difference("department_profit", additions=("parts_transfer",))),
)
RETURN_ON_GROSS = MetricDefinition(
    "return_on_gross", "Return on Gross", value_type=PERCENT,
    role=Derived(Ratio("department_profit", "gp_net")), aggregation=AVERAGE,
    ratio=Ratio("department_profit", "gp_net"), decimals=1,
)
HEADCOUNT = MetricDefinition("headcount", "Headcount", value_type=COUNT, aggregation=AVERAGE)

DEFAULT_DEFINITIONS: List[MetricDefinition] = [
    TOTAL_SALES,
    GP_PERCENT,
    GP_NET,
    SALES_EXPENSE,
    SALES_EXPENSE_PERCENT,
    SEMI_FIXED_EXPENSE,
    NET_SELLING_GROSS,
    TOTAL_FIXED_EXPENSE,
    DEPARTMENT_PROFIT,
    PARTS_TRANSFER,
    NET_OPERATING_PROFIT,
    RETURN_ON_GROSS,
    HEADCOUNT,
    sub_metric("new_vehicle_sales", "New Vehicle Sales", TOTAL_SALES),
    sub_metric("used_vehicle_sales", "Used Vehicle Sales", TOTAL_SALES),
    sub_metric("parts_sales", "Parts Sales", TOTAL_SALES),
    sub_metric("service_sales", "Service Sales", TOTAL_SALES),
    sub_metric("other_sales", "Other Sales", TOTAL_SALES),
    sub_metric("new_vehicle_gp", "New Vehicle GP", GP_NET),
    sub_metric("used_vehicle_gp", "Used Vehicle GP", GP_NET),
    sub_metric("fixed_ops_gp", "Fixed Ops GP", GP_NET),
    sub_metric("salesperson_expense", "Salesperson Expense", SALES_EXPENSE),
    sub_metric("sales_management_expense", "Sales Management Expense", SALES_EXPENSE),
    sub_metric("other_sales_expense", "Other Sales Expense", SALES_EXPENSE),
]

DEFAULT_SCHEMA = MetricSchema(DEFAULT_DEFINITIONS)


# =============================================================================
# DISPLAY
# =============================================================================

def format_value(definition: MetricDefinition, value: Optional[float]) -> str:
    """Render a cell for display; missing values show as "-"."""
    if value is None:
        return "-"
    if definition.value_type == PERCENT:
        return f"{value:,.{definition.decimals}f}%"
    if definition.value_type == CURRENCY:
        text = f"{abs(value):,.{definition.decimals}f}"
        return f"-${text}" if value < 0 else f"${text}"
    return f"{value:,.{definition.decimals}f}"
