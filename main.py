# =============================================================================
# FORECAST METRIC ENGINE - MAIN ENTRY POINT
# =============================================================================
# Command-line interface for running a department forecast.
#
# Usage:
#   python main.py run --scenario base --resolution quarter
#   python main.py validate
#   python main.py export --output forecast.csv
#   python main.py push-targets
# =============================================================================

import argparse
import logging
from pathlib import Path

from metric_engine.assumptions import (
    load_scenario_assumptions, validate_assumptions, build_session,
)
from metric_engine.definitions import format_value
from metric_engine.session import RESOLUTIONS
from ui.dashboard_data import build_snapshot


def load(scenario_id: str, assumptions_dir: Path):
    """Load assumptions and build a session; returns None on validation errors."""
    assumptions = load_scenario_assumptions(scenario_id, assumptions_dir)
    errors = validate_assumptions(assumptions)
    if errors:
        print("\nERRORS:")
        for error in errors:
            print(f"  - {error}")
        return None
    return build_session(assumptions)


def run_forecast(scenario_id: str, assumptions_dir: Path, resolution: str):
    """Run one scenario and print the resolved table."""
    print(f"\nRunning scenario: {scenario_id}")
    print("-" * 40)

    session = load(scenario_id, assumptions_dir)
    if session is None:
        return None

    snapshot = session.snapshot
    if snapshot.errors:
        print("\nERRORS:")
        for error in snapshot.errors:
            print(f"  - {error}")
    if snapshot.warnings:
        print("\nWARNINGS:")
        for warning in snapshot.warnings:
            print(f"  - {warning}")

    annual = session.annual_values()
    print("\nKEY METRICS:")
    for key in ["total_sales", "gp_net", "gp_percent", "department_profit", "net_operating_profit"]:
        definition = session.schema.get(key)
        print(f"  {definition.label:<20} {format_value(definition, annual.get(key)):>16}")

    dashboard = build_snapshot(session, resolution)
    table = dashboard.resolved[["period", "label", "display", "variance", "status"]]
    print(f"\n{resolution.upper()} VIEW:")
    print(table.to_string(index=False))
    return session


def run_validation(scenario_id: str, assumptions_dir: Path):
    print("\n" + "=" * 60)
    print("RUNNING VALIDATION")
    print("=" * 60)

    assumptions = load_scenario_assumptions(scenario_id, assumptions_dir)
    errors = validate_assumptions(assumptions)
    if errors:
        print("\nFAILED:")
        for error in errors:
            print(f"  - {error}")
        return errors

    session = build_session(assumptions)
    problems = session.snapshot.errors + session.snapshot.warnings
    if problems:
        print("\nFAILED:")
        for problem in problems:
            print(f"  - {problem}")
    else:
        print("\nPASSED - Assumptions valid, weights sum to 100%, sub-metrics reconcile")
    return problems


def export_grid(scenario_id: str, assumptions_dir: Path, output: Path):
    session = load(scenario_id, assumptions_dir)
    if session is None:
        return
    dashboard = build_snapshot(session)
    output.parent.mkdir(parents=True, exist_ok=True)
    dashboard.monthly_grid.to_csv(output, index=False)
    print(f"Wrote monthly forecast grid to: {output}")


def push_targets(scenario_id: str, assumptions_dir: Path):
    session = load(scenario_id, assumptions_dir)
    if session is None:
        return
    entries = session.push_targets()
    print(f"\nPushed {len(entries)} targets for {session.department} {session.year}:")
    for entry in entries:
        definition = session.schema.get(entry.metric_key)
        period = f"Q{entry.quarter}" if entry.quarter else "annual"
        print(
            f"  {definition.label:<26} {period:<7} "
            f"{format_value(definition, entry.value):>14}  ({entry.direction})"
        )


def main():
    parser = argparse.ArgumentParser(description="Forecast Metric Engine")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", help="Run a forecast scenario")
    run_parser.add_argument("--scenario", "-s", default="base", help="Scenario ID to run")
    run_parser.add_argument("--dir", "-d", default="assumptions", help="Assumptions directory")
    run_parser.add_argument(
        "--resolution", "-r", default="quarter", choices=RESOLUTIONS,
        help="View resolution",
    )

    val_parser = subparsers.add_parser("validate", help="Validate assumptions")
    val_parser.add_argument("--scenario", "-s", default="base", help="Scenario ID")
    val_parser.add_argument("--dir", "-d", default="assumptions", help="Assumptions directory")

    export_parser = subparsers.add_parser("export", help="Write the monthly grid as CSV")
    export_parser.add_argument("--scenario", "-s", default="base", help="Scenario ID")
    export_parser.add_argument("--dir", "-d", default="assumptions", help="Assumptions directory")
    export_parser.add_argument("--output", "-o", default="output/forecast.csv", help="CSV path")

    push_parser = subparsers.add_parser("push-targets", help="Print forecast quarterly targets")
    push_parser.add_argument("--scenario", "-s", default="base", help="Scenario ID")
    push_parser.add_argument("--dir", "-d", default="assumptions", help="Assumptions directory")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    assumptions_dir = Path(args.dir if hasattr(args, "dir") else "assumptions")

    if args.command == "run":
        run_forecast(args.scenario, assumptions_dir, args.resolution)
    elif args.command == "validate":
        run_validation(args.scenario, assumptions_dir)
    elif args.command == "export":
        export_grid(args.scenario, assumptions_dir, Path(args.output))
    elif args.command == "push-targets":
        push_targets(args.scenario, assumptions_dir)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
