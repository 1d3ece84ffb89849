# =============================================================================
# FORECAST METRIC ENGINE - PACKAGE
# =============================================================================
# Calculation engines behind the department forecast and scorecard views.
#
# Modules:
# - definitions: Metric schema (drivers, derived formulas, sub-metrics)
# - drivers: User-adjustable drivers and the outputs they own
# - weights: Month-weight distribution of annual figures
# - cells: Monthly cells, period keys and prior-year baseline
# - compute: Driver cascade into monthly cells
# - submetrics: Parent/child sub-metric reconciliation
# - variance: Variance and green/yellow/red status
# - aggregation: Quarter, annual and trend-window roll-ups
# - collaborators: Store/registry interfaces and in-memory implementations
# - session: Forecast session per (department, year)
# - assumptions: YAML configuration loading and validation
# =============================================================================

__version__ = "0.1.0"
