"""Assumptions loading, validation and session construction."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Tuple
import copy

import yaml

from .cells import Baseline, parse_month
from .collaborators import (
    InMemoryCellStore, InMemoryTargetRegistry, StaticBaselineSource,
    StaticSalesHistory, TargetEntry,
)
from .definitions import DEFAULT_SCHEMA, DIRECTIONS, MetricSchema
from .drivers import DriverSet, validate_drivers

REQUIRED_SECTIONS = ["session", "baseline"]


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override into base; lists are replaced, not merged."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def load_yaml_file(path: Path) -> dict:
    """Load a YAML file and return an object (empty dict for empty files)."""
    with open(path, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def load_scenario_assumptions(scenario_id: str, assumptions_dir: Path) -> dict:
    """Load base assumptions and merge scenario override if present."""
    base = load_yaml_file(assumptions_dir / "base.yaml")
    if scenario_id == "base":
        return base

    override_path = assumptions_dir / f"{scenario_id}.yaml"
    if override_path.exists():
        return deep_merge(base, load_yaml_file(override_path))
    return base


def _month_number(value) -> int:
    month = int(value)
    if month < 1 or month > 12:
        raise ValueError(f"Invalid month number: {value}")
    return month


def parse_baseline(section: dict, year: int) -> Baseline:
    """Build a Baseline from the `baseline` section (annual + optional monthly)."""
    annual = {key: float(value) for key, value in (section.get("annual") or {}).items()
              if value is not None}
    monthly: Dict[Tuple[int, str], float] = {}
    for key, by_month in (section.get("monthly") or {}).items():
        for month, value in (by_month or {}).items():
            if value is not None:
                monthly[(_month_number(month), key)] = float(value)
    return Baseline(year=year, annual=annual, monthly=monthly)


def prior_year_sales(assumptions: dict) -> Dict[int, float]:
    """Explicit `prior_year_sales`, else the baseline's monthly Total Sales."""
    sales = assumptions.get("prior_year_sales")
    if sales is None:
        sales = (assumptions.get("baseline", {}).get("monthly") or {}).get("total_sales") or {}
    return {_month_number(month): float(value or 0.0) for month, value in sales.items()}


def parse_targets(assumptions: dict, default_year: int) -> List[TargetEntry]:
    entries = []
    for item in assumptions.get("targets") or []:
        quarter = item.get("quarter")
        entries.append(TargetEntry(
            metric_key=item["metric"],
            year=int(item.get("year", default_year)),
            quarter=int(quarter) if quarter is not None else None,
            value=float(item["value"]),
            direction=item.get("direction", "above"),
        ))
    return entries


def validate_assumptions(assumptions: Dict, schema: MetricSchema = DEFAULT_SCHEMA) -> List[str]:
    """
    Validate assumptions structure and key constraints.

    Returns a list of errors; never raises.
    """
    errors: List[str] = []

    for section in REQUIRED_SECTIONS:
        if section not in assumptions:
            errors.append(f"Missing required section: {section}")

    session = assumptions.get("session", {}) or {}
    year = session.get("forecast_year")
    if "session" in assumptions:
        if not session.get("department"):
            errors.append("session.department is required")
        if not isinstance(year, int):
            errors.append(f"session.forecast_year must be an integer: {year}")

    baseline = assumptions.get("baseline", {}) or {}
    for key in list((baseline.get("annual") or {}).keys()) + list((baseline.get("monthly") or {}).keys()):
        if key not in schema:
            errors.append(f"Unknown metric in baseline: {key}")
    for key, by_month in (baseline.get("monthly") or {}).items():
        for month in (by_month or {}):
            try:
                _month_number(month)
            except (TypeError, ValueError):
                errors.append(f"Invalid month in baseline.monthly.{key}: {month}")

    for month in (assumptions.get("prior_year_sales") or {}):
        try:
            _month_number(month)
        except (TypeError, ValueError):
            errors.append(f"Invalid month in prior_year_sales: {month}")

    errors.extend(validate_drivers(assumptions.get("drivers") or {}))

    for item in assumptions.get("targets") or []:
        metric = item.get("metric")
        if metric not in schema:
            errors.append(f"Unknown metric in targets: {metric}")
        if item.get("direction", "above") not in DIRECTIONS:
            errors.append(f"Invalid target direction for {metric}: {item.get('direction')}")
        quarter = item.get("quarter")
        if quarter is not None and quarter not in (1, 2, 3, 4):
            errors.append(f"Invalid target quarter for {metric}: {quarter}")
        if item.get("value") is None:
            errors.append(f"Target value missing for {metric}")

    for key in (assumptions.get("sub_metric_overrides") or {}):
        if key not in schema:
            errors.append(f"Unknown metric in sub_metric_overrides: {key}")
        elif not schema.get(key).is_sub_metric:
            errors.append(f"{key} is not a sub-metric")

    for item in assumptions.get("locked_cells") or []:
        metric = item.get("metric")
        if metric not in schema:
            errors.append(f"Unknown metric in locked_cells: {metric}")
        try:
            locked_year, _ = parse_month(str(item.get("month")))
            if isinstance(year, int) and locked_year != year:
                errors.append(f"Locked cell {item.get('month')} is outside forecast year {year}")
        except ValueError as exc:
            errors.append(str(exc))

    return errors


def build_session(assumptions: dict, schema: MetricSchema = DEFAULT_SCHEMA, cell_store=None):
    """
    Construct a ForecastSession with in-memory collaborators.

    Locked cells and sub-metric overrides from the assumptions are applied
    as ordinary edits, in that order.
    """
    from .session import ForecastSession

    department = assumptions["session"]["department"]
    year = int(assumptions["session"]["forecast_year"])
    prior_year = year - 1

    baseline = parse_baseline(assumptions.get("baseline") or {}, prior_year)
    registry = InMemoryTargetRegistry(parse_targets(assumptions, year))
    session = ForecastSession(
        department,
        year,
        cell_store if cell_store is not None else InMemoryCellStore(),
        StaticSalesHistory({(department, prior_year): prior_year_sales(assumptions)}),
        StaticBaselineSource({(department, prior_year): baseline}),
        registry,
        schema,
        DriverSet.from_mapping(assumptions.get("drivers") or {}, baseline),
    )

    for item in assumptions.get("locked_cells") or []:
        session.edit_month(str(item["month"]), item["metric"], float(item["value"]))
    for key, value in (assumptions.get("sub_metric_overrides") or {}).items():
        session.edit_annual(key, float(value))

    return session


def load_session(
    scenario_id: str,
    assumptions_dir: Path,
    schema: MetricSchema = DEFAULT_SCHEMA
):
    """Load, validate and build a session. Raises ValueError on invalid assumptions."""
    assumptions = load_scenario_assumptions(scenario_id, assumptions_dir)
    errors = validate_assumptions(assumptions, schema)
    if errors:
        raise ValueError("Invalid assumptions:\n  - " + "\n  - ".join(errors))
    return build_session(assumptions, schema)
