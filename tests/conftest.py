# =============================================================================
# FORECAST METRIC ENGINE - PYTEST CONFIGURATION
# =============================================================================
# Shared fixtures and configuration for all tests.
# =============================================================================

import pytest
import sys
import os
from pathlib import Path

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from metric_engine.cells import Baseline
from metric_engine.collaborators import (
    InMemoryCellStore, InMemoryTargetRegistry, StaticBaselineSource, StaticSalesHistory,
)
from metric_engine.definitions import (
    DEFAULT_SCHEMA, MetricSchema, SALES_EXPENSE, sub_metric,
)

# Prior-year monthly Total Sales used by most session tests (sums to 1.2M)
PRIOR_SALES = {
    1: 80000, 2: 85000, 3: 100000, 4: 105000, 5: 110000, 6: 115000,
    7: 110000, 8: 105000, 9: 100000, 10: 100000, 11: 95000, 12: 95000,
}

BASELINE_ANNUAL = {
    "total_sales": 1200000,
    "gp_net": 360000,
    "sales_expense": 100000,
    "semi_fixed_expense": 40000,
    "total_fixed_expense": 120000,
    "parts_transfer": 15000,
    "headcount": 12,
    "new_vehicle_sales": 500000,
    "used_vehicle_sales": 400000,
    "parts_sales": 150000,
    "service_sales": 100000,
    "other_sales": 50000,
    "new_vehicle_gp": 120000,
    "used_vehicle_gp": 100000,
    "fixed_ops_gp": 140000,
    "salesperson_expense": 60000,
    "sales_management_expense": 30000,
    "other_sales_expense": 10000,
}


@pytest.fixture
def project_root():
    """Get project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def assumptions_dir(project_root):
    """Get assumptions directory."""
    return project_root / "assumptions"


@pytest.fixture
def schema():
    return DEFAULT_SCHEMA


@pytest.fixture
def top_level_schema():
    """Default metrics without any sub-metric breakdown."""
    return MetricSchema(DEFAULT_SCHEMA.top_level())


@pytest.fixture
def expense_schema():
    """Sales Expense split into Advertising and Other."""
    return MetricSchema([
        SALES_EXPENSE,
        sub_metric("advertising", "Advertising", SALES_EXPENSE),
        sub_metric("other_expense", "Other Expense", SALES_EXPENSE),
    ])


@pytest.fixture
def uniform_weights():
    from metric_engine.weights import WeightTable
    return WeightTable.uniform()


@pytest.fixture
def baseline():
    return Baseline(
        year=2025,
        annual=dict(BASELINE_ANNUAL),
        monthly={(m, "total_sales"): float(v) for m, v in PRIOR_SALES.items()},
    )


@pytest.fixture
def make_session():
    """
    Factory for sessions with in-memory collaborators.

    Usage:
        session = make_session(annual={...}, sales=None, schema=...)
    """
    from metric_engine.session import ForecastSession

    def _make(
        annual=None,
        monthly=None,
        sales=None,
        schema=DEFAULT_SCHEMA,
        targets=(),
        drivers=None,
        store=None,
        department="service",
        year=2026,
    ):
        baseline = Baseline(
            year=year - 1,
            annual=dict(annual if annual is not None else BASELINE_ANNUAL),
            monthly=dict(monthly or {}),
        )
        history = {(department, year - 1): sales} if sales is not None else {}
        return ForecastSession(
            department,
            year,
            store if store is not None else InMemoryCellStore(),
            StaticSalesHistory(history),
            StaticBaselineSource({(department, year - 1): baseline}),
            InMemoryTargetRegistry(targets),
            schema,
            drivers,
        )

    return _make


@pytest.fixture
def session(make_session, baseline):
    """Default-schema session seeded from PRIOR_SALES with 5% growth."""
    from metric_engine.drivers import DriverSet
    from metric_engine.collaborators import TargetEntry

    drivers = DriverSet.from_mapping(
        {"growth_percent": 5, "gp_percent": 30, "sales_expense_dollars": 105000},
        baseline,
    )
    targets = [
        TargetEntry("total_sales", 2026, 1, 280000, "above"),
        TargetEntry("total_sales", 2026, None, 1260000, "above"),
        TargetEntry("sales_expense", 2026, None, 100000, "below"),
    ]
    return make_session(
        monthly=baseline.monthly, sales=PRIOR_SALES, targets=targets, drivers=drivers,
    )


@pytest.fixture
def base_assumptions(assumptions_dir):
    """Load base assumptions for testing."""
    from metric_engine.assumptions import load_yaml_file
    return load_yaml_file(assumptions_dir / "base.yaml")
