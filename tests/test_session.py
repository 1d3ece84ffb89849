# =============================================================================
# FORECAST METRIC ENGINE - FORECAST SESSION TESTS
# =============================================================================
# End-to-end behavior of one editable forecast: edits, locks, sub-metric
# overrides, views and target push.
# =============================================================================

import logging
import random

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import PRIOR_SALES
from metric_engine.collaborators import (
    InMemoryCellStore, StaticBaselineSource, StaticSalesHistory,
)
from metric_engine.session import ForecastSession, SessionRegistry
from metric_engine.variance import GREEN, NONE, YELLOW

EXPENSE_BASELINE = {"sales_expense": 100000, "advertising": 40000, "other_expense": 60000}


class RecordingStore(InMemoryCellStore):
    """Cell store that remembers which keys each save touched."""

    def __init__(self):
        super().__init__()
        self.saved_keys = []

    def save_cells(self, department, year, cells):
        self.saved_keys.append(set(cells.keys()))
        super().save_cells(department, year, cells)


def _rows(rows, period, metric_key):
    return next(r for r in rows if r.period == period and r.metric_key == metric_key)


# =============================================================================
# RECOMPUTE
# =============================================================================

class TestRecompute:
    """Tests for snapshot publication."""

    def test_open_publishes_snapshot(self, session):
        snapshot = session.snapshot
        assert snapshot.version == 1
        assert snapshot.errors == []
        assert snapshot.warnings == []
        assert len(snapshot.cells) == 12 * len(session.schema.keys())

    def test_annual_values(self, session):
        annual = session.annual_values()
        assert annual["total_sales"] == pytest.approx(1260000)
        assert annual["gp_net"] == pytest.approx(378000)
        assert annual["gp_percent"] == pytest.approx(30)
        assert annual["sales_expense"] == pytest.approx(105000)

    def test_month_follows_seeded_weights(self, session):
        assert session.weights.weight(1) == 6.67
        assert session.snapshot.value("2026-01", "total_sales") == pytest.approx(84042)

    def test_recompute_is_idempotent(self, session):
        before = session.snapshot
        after = session.recompute()
        assert after.version == before.version + 1
        for key, cell in before.cells.items():
            if cell.value is None:
                assert after.cells[key].value is None
            else:
                assert after.cells[key].value == pytest.approx(cell.value)

    def test_uniform_weights_without_history(self, make_session, top_level_schema):
        """1.2M prior year, 10% growth, no sales history: January is 110k."""
        session = make_session(schema=top_level_schema)
        session.set_driver("growth_percent", 10)
        assert session.annual_values()["total_sales"] == pytest.approx(1320000)
        assert session.snapshot.value("2026-01", "total_sales") == pytest.approx(110000)

    def test_invalid_schema_rejected(self, make_session):
        from metric_engine.definitions import MetricSchema, TOTAL_SALES
        with pytest.raises(ValueError):
            make_session(schema=MetricSchema([TOTAL_SALES, TOTAL_SALES]))


# =============================================================================
# DRIVERS AND WEIGHTS
# =============================================================================

class TestDriversAndWeights:
    """Tests for driver and weight edits through the session."""

    def test_set_driver(self, session):
        snapshot = session.set_driver("growth_percent", 10)
        assert snapshot.version == 2
        assert session.annual_values()["total_sales"] == pytest.approx(1320000)

    def test_invalid_driver_leaves_state(self, session):
        with pytest.raises(ValueError):
            session.set_driver("gp_percent", 120)
        assert session.drivers.gp_percent == 30
        assert session.snapshot.version == 1

    def test_set_weight(self, session):
        session.set_weight(1, 20)
        assert session.snapshot.value("2026-01", "total_sales") == pytest.approx(252000)
        assert session.annual_values()["total_sales"] == pytest.approx(1260000)
        assert session.snapshot.errors == []

    def test_infeasible_weights_reported(self, session, caplog):
        session.set_weight(1, 50)
        session.toggle_weight_lock(1)
        with caplog.at_level(logging.WARNING, logger="metric_engine.session"):
            session.set_weight(2, 60)
        assert len(session.snapshot.errors) == 2
        assert "no room" in caplog.text

    def test_reset_weights(self, session):
        session.set_weight(1, 50)
        session.toggle_weight_lock(1)
        session.reset_weights()
        assert session.weights.weight(1) == 6.67
        assert session.weights.locked_months() == []


# =============================================================================
# CELL EDITS
# =============================================================================

class TestCellEdits:
    """Tests for month, quarter and annual edits."""

    def test_edit_month_locks(self, session):
        session.edit_month("2026-03", "total_sales", 123456)
        session.set_driver("growth_percent", 20)
        cell = session.snapshot.cell("2026-03", "total_sales")
        assert cell.value == 123456
        assert cell.is_locked
        assert session.snapshot.value("2026-03", "gp_net") == pytest.approx(37036.8)
        assert ("2026-03", "total_sales") in session.locked_cells

    def test_toggle_cell_lock(self, session):
        february = session.snapshot.value("2026-02", "total_sales")
        session.toggle_cell_lock("2026-02", "total_sales")
        session.set_driver("growth_percent", 20)
        assert session.snapshot.value("2026-02", "total_sales") == pytest.approx(february)

        session.toggle_cell_lock("2026-02", "total_sales")
        assert session.snapshot.value("2026-02", "total_sales") == pytest.approx(1440000 * 0.0708)
        assert not session.snapshot.cell("2026-02", "total_sales").is_locked

    @pytest.mark.parametrize("period,metric", [
        ("2026-01", "parts_sales"),
        ("2025-12", "total_sales"),
        ("2026-01", "no_such_metric"),
    ])
    def test_edit_month_rejected(self, session, period, metric):
        with pytest.raises(ValueError):
            session.edit_month(period, metric, 1)

    def test_edit_quarter_sum_metric(self, session):
        session.edit_quarter("Q1", "total_sales", 300000)
        months = ["2026-01", "2026-02", "2026-03"]
        values = [session.snapshot.value(p, "total_sales") for p in months]
        assert sum(values) == pytest.approx(300000)
        assert values[0] == pytest.approx(300000 * 6.67 / 22.08)
        assert all(session.snapshot.cell(p, "total_sales").is_locked for p in months)

    def test_edit_quarter_average_metric(self, session):
        session.edit_quarter(2, "headcount", 14)
        for period in ["2026-04", "2026-05", "2026-06"]:
            assert session.snapshot.value(period, "headcount") == 14
        assert session.snapshot.value("2026-07", "headcount") == 12

    def test_edit_annual_parent_with_sub_metrics_rejected(self, session):
        with pytest.raises(ValueError):
            session.edit_annual("total_sales", 1300000)

    def test_edit_annual_calculated_rejected(self, session):
        with pytest.raises(ValueError):
            session.edit_annual("department_profit", 1)

    def test_edit_annual_bidirectional_parent(self, session):
        session.edit_annual("gp_net", 400000)
        annual = session.annual_values()
        assert session.drivers.gp_percent == pytest.approx(400000 / 1260000 * 100)
        assert annual["gp_net"] == pytest.approx(400000)
        children = ["new_vehicle_gp", "used_vehicle_gp", "fixed_ops_gp"]
        assert sum(annual[k] for k in children) == pytest.approx(400000)
        assert session.snapshot.warnings == []


class TestReverseCalculation:
    """Tests for annual edits translated back into drivers."""

    @pytest.fixture
    def flat(self, make_session, top_level_schema):
        return make_session(schema=top_level_schema)

    def test_total_sales_moves_growth(self, flat):
        flat.edit_annual("total_sales", 1320000)
        assert flat.drivers.growth_percent == pytest.approx(10)
        assert flat.snapshot.value("2026-01", "total_sales") == pytest.approx(110000)

    def test_gp_net_moves_gp_percent(self, flat):
        flat.edit_annual("gp_net", 396000)
        assert flat.drivers.gp_percent == pytest.approx(33)
        assert flat.annual_values()["total_sales"] == pytest.approx(1200000)
        assert flat.annual_values()["gp_net"] == pytest.approx(396000)

    def test_gp_percent(self, flat):
        flat.edit_annual("gp_percent", 35)
        assert flat.drivers.gp_percent == 35

    def test_expense_dollars(self, flat):
        flat.edit_annual("sales_expense", 90000)
        flat.edit_annual("total_fixed_expense", 130000)
        assert flat.drivers.sales_expense_dollars == 90000
        assert flat.drivers.fixed_expense_dollars == 130000

    def test_baseline_carried_metric_override(self, flat):
        flat.edit_annual("parts_transfer", 18000)
        assert flat.annual_values()["parts_transfer"] == pytest.approx(18000)
        assert flat.snapshot.value("2026-06", "parts_transfer") == pytest.approx(1500)

    def test_out_of_range_reverse(self, flat):
        with pytest.raises(ValueError):
            flat.edit_annual("gp_net", 2400000)

    def test_annual_edit_respects_locked_month(self, flat):
        flat.edit_month("2026-01", "total_sales", 200000)
        flat.edit_annual("total_sales", 1320000)

        assert flat.annual_values()["total_sales"] == pytest.approx(1320000)
        assert flat.snapshot.value("2026-01", "total_sales") == 200000
        assert flat.snapshot.value("2026-02", "total_sales") == pytest.approx(1120000 / 11)

    def test_gp_net_edit_respects_locked_gp_percent(self, flat):
        flat.edit_month("2026-01", "gp_percent", 20)
        flat.edit_annual("gp_net", 396000)
        assert flat.annual_values()["gp_net"] == pytest.approx(396000)
        assert flat.snapshot.value("2026-01", "gp_percent") == 20

    def test_override_respects_locked_month(self, flat):
        flat.edit_month("2026-06", "parts_transfer", 4000)
        flat.edit_annual("parts_transfer", 18000)
        assert flat.annual_values()["parts_transfer"] == pytest.approx(18000)
        assert flat.snapshot.value("2026-07", "parts_transfer") == pytest.approx(14000 / 11)

    def test_every_month_locked(self, flat):
        for quarter in (1, 2, 3, 4):
            flat.edit_quarter(quarter, "sales_expense", 25000)
        with pytest.raises(ValueError, match="locked"):
            flat.edit_annual("sales_expense", 120000)
        assert flat.annual_values()["sales_expense"] == pytest.approx(100000)


# =============================================================================
# SUB-METRICS
# =============================================================================

class TestSubMetricOverrides:
    """Tests for sub-metric overrides through the session."""

    @pytest.fixture
    def expenses(self, make_session, expense_schema):
        return make_session(annual=EXPENSE_BASELINE, schema=expense_schema)

    def test_children_follow_baseline_mix(self, expenses):
        annual = expenses.annual_values()
        assert annual["advertising"] == pytest.approx(40000)
        assert annual["other_expense"] == pytest.approx(60000)

    def test_override_holds_when_parent_changes(self, expenses):
        """Sales Expense 100k to 120k with Advertising held at 40k: Other becomes 80k."""
        expenses.edit_annual("advertising", 40000)
        expenses.set_driver("sales_expense_dollars", 120000)

        annual = expenses.annual_values()
        assert annual["sales_expense"] == pytest.approx(120000)
        assert annual["advertising"] == pytest.approx(40000)
        assert annual["other_expense"] == pytest.approx(80000)
        assert expenses.snapshot.warnings == []

    def test_child_edit_moves_parent(self, expenses):
        expenses.edit_annual("advertising", 50000)
        assert expenses.drivers.sales_expense_dollars == pytest.approx(110000)
        assert expenses.annual_values()["sales_expense"] == pytest.approx(110000)
        assert expenses.overrides["advertising"].annual_target == 50000

    def test_all_overridden_rescale(self, expenses):
        expenses.edit_annual("advertising", 40000)
        expenses.edit_annual("other_expense", 60000)
        expenses.set_driver("sales_expense_dollars", 120000)

        annual = expenses.annual_values()
        assert annual["advertising"] == pytest.approx(48000)
        assert annual["other_expense"] == pytest.approx(72000)
        assert expenses.overrides["other_expense"].annual_target == pytest.approx(72000)

    def test_child_edit_with_locked_parent_month(self, expenses):
        expenses.edit_month("2026-01", "sales_expense", 20000)
        assert expenses.annual_values()["other_expense"] == pytest.approx(67000)

        expenses.edit_annual("advertising", 50000)

        annual = expenses.annual_values()
        assert annual["advertising"] == pytest.approx(50000)
        assert annual["other_expense"] == pytest.approx(67000)
        assert annual["sales_expense"] == pytest.approx(117000)
        assert expenses.snapshot.warnings == []

    def test_all_overridden_with_locked_parent_month(self, expenses):
        expenses.edit_month("2026-01", "sales_expense", 20000)
        expenses.edit_annual("other_expense", 67000)
        expenses.edit_annual("advertising", 50000)

        assert expenses.overrides["advertising"].annual_target == pytest.approx(50000)
        assert expenses.overrides["other_expense"].annual_target == pytest.approx(67000)
        assert expenses.annual_values()["sales_expense"] == pytest.approx(117000)

    def test_default_schema_child_edit(self, session):
        session.edit_annual("new_vehicle_sales", 600000)
        annual = session.annual_values()
        assert session.drivers.growth_percent == pytest.approx(11.25)
        assert annual["total_sales"] == pytest.approx(1335000)
        assert annual["new_vehicle_sales"] == pytest.approx(600000)
        assert annual["used_vehicle_sales"] == pytest.approx(420000)

        session.set_driver("growth_percent", 20)
        annual = session.annual_values()
        assert annual["new_vehicle_sales"] == pytest.approx(600000)
        assert annual["used_vehicle_sales"] == pytest.approx(480000)

    def test_clear_override(self, session):
        session.edit_annual("new_vehicle_sales", 600000)
        session.clear_sub_metric_override("new_vehicle_sales")
        assert session.overrides == {}
        assert session.annual_values()["new_vehicle_sales"] == pytest.approx(600000)

        session.set_driver("growth_percent", 0)
        assert session.annual_values()["new_vehicle_sales"] == pytest.approx(600000 / 1335000 * 1200000)

    def test_clear_override_rejects_parent(self, session):
        with pytest.raises(ValueError):
            session.clear_sub_metric_override("total_sales")


# =============================================================================
# EDIT SEQUENCES
# =============================================================================

class TestEditSequences:
    """Random mixes of parent and child edits keep every parent reconciled."""

    def _assert_reconciled(self, session):
        annual = session.annual_values()
        for parent in session.schema.parents():
            children = [annual[child.key] for child in session.schema.children(parent.key)]
            assert sum(children) == pytest.approx(annual[parent.key], abs=0.01)
        assert session.snapshot.warnings == []

    def _run(self, session, parent_key, driver_key, driver_range, seed):
        rng = random.Random(seed)
        children = [child.key for child in session.schema.children(parent_key)]

        for _ in range(60):
            action = rng.random()
            period = f"{session.year}-{rng.randint(1, 12):02d}"
            try:
                if action < 0.15:
                    session.set_driver(driver_key, rng.uniform(*driver_range))
                elif action < 0.3:
                    current = session.snapshot.value(period, parent_key)
                    session.edit_month(period, parent_key, current * rng.uniform(0.5, 1.5))
                elif action < 0.4:
                    session.toggle_cell_lock(period, parent_key)
                elif action < 0.5:
                    session.set_weight(rng.randint(1, 12), rng.uniform(2, 15))
                elif action < 0.6:
                    session.clear_sub_metric_override(rng.choice(children))
                else:
                    child = rng.choice(children)
                    current = session.annual_values()[child] or 10000.0
                    value = abs(current) * rng.uniform(0.5, 1.5)
                    session.edit_annual(child, value)
                    assert session.annual_values()[child] == pytest.approx(value, abs=0.01)
            except ValueError:
                # infeasible edits are rejected and leave the session as it was
                pass
            self._assert_reconciled(session)

    @pytest.mark.parametrize("seed", [3, 11, 29])
    def test_expense_breakdown(self, make_session, expense_schema, seed):
        session = make_session(annual=EXPENSE_BASELINE, schema=expense_schema)
        self._run(session, "sales_expense", "sales_expense_dollars", (60000, 140000), seed)

    @pytest.mark.parametrize("seed", [5, 17])
    def test_sales_breakdown(self, session, seed):
        self._run(session, "total_sales", "growth_percent", (-20, 20), seed)


# =============================================================================
# VIEWS
# =============================================================================

class TestResolve:
    """Tests for month, quarter, annual and trend views."""

    def test_month(self, session):
        rows = session.resolve("month")
        assert len(rows) == 12 * len(session.schema.keys())
        row = _rows(rows, "2026-01", "total_sales")
        assert row.comparison == 80000
        assert row.comparison_source == "baseline"
        assert row.variance == pytest.approx((84042 - 80000) / 80000 * 100)
        assert row.status == GREEN

    def test_quarter_against_target(self, session):
        rows = session.resolve("quarter")
        assert len(rows) == 4 * len(session.schema.keys())
        row = _rows(rows, "Q1", "total_sales")
        assert row.comparison == 280000
        assert row.comparison_source == "target"
        assert row.value == pytest.approx(278208)
        assert row.status == YELLOW

    def test_quarter_falls_back_to_baseline(self, session):
        row = _rows(session.resolve("quarter"), "Q2", "total_sales")
        assert row.comparison_source == "baseline"
        assert row.comparison == pytest.approx(330000)

    def test_quarter_locked_flag(self, session):
        session.edit_month("2026-05", "total_sales", 100000)
        rows = session.resolve("quarter")
        assert _rows(rows, "Q2", "total_sales").is_locked
        assert not _rows(rows, "Q1", "total_sales").is_locked

    def test_annual_target_direction(self, session):
        rows = session.resolve("annual")
        assert len(rows) == len(session.schema.keys())
        row = _rows(rows, "annual", "sales_expense")
        assert row.comparison == 100000
        assert row.variance == pytest.approx(5)
        assert row.status == YELLOW
        assert _rows(rows, "annual", "total_sales").variance == pytest.approx(0, abs=1e-6)

    def test_trend(self, session):
        rows = session.resolve("trend")
        assert len(rows) == 8 * len(session.schema.keys())
        assert {r.period for r in rows} == {
            "2025-Q1", "2025-Q2", "2025-Q3", "2025-Q4",
            "2026-Q1", "2026-Q2", "2026-Q3", "2026-Q4",
        }

        prior = _rows(rows, "2025-Q1", "total_sales")
        assert prior.value == pytest.approx(265000 / 3)
        assert prior.comparison is None
        assert prior.status == NONE

        targeted = _rows(rows, "2026-Q1", "total_sales")
        assert targeted.comparison_source == "target"
        assert targeted.comparison == pytest.approx(280000 / 3)

        year_ago = _rows(rows, "2026-Q2", "total_sales")
        assert year_ago.comparison_source == "prior_year"
        assert year_ago.comparison == pytest.approx(110000)
        assert year_ago.value == pytest.approx(115500)
        assert year_ago.variance == pytest.approx(5)

    def test_trend_window(self, session):
        rows = session.resolve("trend", window=4)
        assert {r.period for r in rows} == {"2026-Q1", "2026-Q2", "2026-Q3", "2026-Q4"}

    def test_unknown_resolution(self, session):
        with pytest.raises(ValueError):
            session.resolve("weekly")


# =============================================================================
# TARGETS
# =============================================================================

class TestPushTargets:
    """Tests for writing forecast figures to the target registry."""

    def test_push_targets(self, session):
        entries = session.push_targets()
        q1 = session.target_registry.get_target("total_sales", 2026, 1)
        assert q1.value == pytest.approx(278208)
        assert any(e.quarter is None and e.metric_key == "total_sales" for e in entries)
        expense = session.target_registry.get_target("sales_expense", 2026, None)
        assert expense.value == pytest.approx(105000)
        assert expense.direction == "below"

    def test_quarterly_targets_without_annual(self, session):
        entries = session.quarterly_targets(include_annual=False)
        assert {e.quarter for e in entries} == {1, 2, 3, 4}

    def test_push_without_registry(self, baseline):
        session = ForecastSession(
            "service",
            2026,
            InMemoryCellStore(),
            StaticSalesHistory(),
            StaticBaselineSource({("service", 2025): baseline}),
        )
        with pytest.raises(ValueError):
            session.push_targets()


# =============================================================================
# PERSISTENCE AND REGISTRY
# =============================================================================

class TestPersistence:
    """Tests for the cell store contract."""

    def test_open_writes_every_cell(self, make_session):
        store = InMemoryCellStore()
        session = make_session(store=store, sales=PRIOR_SALES)
        assert store.writes == [("service", 2026, 12 * len(session.schema.keys()))]

    def test_only_changed_cells_written(self, make_session):
        store = RecordingStore()
        session = make_session(store=store, sales=PRIOR_SALES)
        session.set_driver("fixed_expense_dollars", 130000)

        written = store.saved_keys[-1]
        assert ("2026-01", "total_fixed_expense") in written
        assert ("2026-01", "department_profit") in written
        metrics = {metric for _, metric in written}
        assert "total_sales" not in metrics
        assert "gp_net" not in metrics
        assert "headcount" not in metrics

    def test_locks_survive_reopen(self, make_session):
        store = InMemoryCellStore()
        first = make_session(store=store, sales=PRIOR_SALES)
        first.edit_month("2026-04", "total_sales", 99000)

        second = make_session(store=store, sales=PRIOR_SALES)
        assert second.locked_cells == {("2026-04", "total_sales"): 99000}
        assert second.snapshot.value("2026-04", "total_sales") == 99000


class TestSessionRegistry:
    """Tests for one session per (department, year)."""

    @pytest.fixture
    def registry(self, baseline):
        return SessionRegistry(
            InMemoryCellStore(),
            StaticSalesHistory({("service", 2025): PRIOR_SALES}),
            StaticBaselineSource({("service", 2025): baseline, ("parts", 2025): baseline}),
        )

    def test_same_key_same_session(self, registry):
        assert registry.open("service", 2026) is registry.open("service", 2026)
        assert len(registry) == 1

    def test_sessions_are_independent(self, registry):
        service = registry.open("service", 2026)
        parts = registry.open("parts", 2026)
        service.set_driver("growth_percent", 50)
        assert parts.drivers.growth_percent == 0.0
        assert parts.annual_values()["total_sales"] == pytest.approx(1200000)
        assert len(registry) == 2

    def test_close(self, registry):
        first = registry.open("service", 2026)
        registry.close("service", 2026)
        assert len(registry) == 0
        assert registry.open("service", 2026) is not first


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
