"""
Command-line entry point.

Two sub-commands:

- ``loadcheck run SCENARIO`` executes a scenario, writes the JSON
  summary, prints the summary table and exits with the verdict.
- ``loadcheck check SUMMARY --scenario SCENARIO`` re-evaluates a
  scenario's thresholds against a previously written summary without
  generating any traffic (handy for tightening limits after the fact).

Exit codes let CI tell "thresholds breached" apart from "bad config":

- ``0`` -- all thresholds passed
- ``1`` -- at least one threshold was breached
- ``2`` -- configuration error (nothing was run, or thresholds could
  not be resolved)
- ``3`` -- the run was aborted by the operator (Ctrl-C)
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from loadcheck import __version__
from loadcheck.config import get_config
from loadcheck.exceptions import ConfigError
from loadcheck.runner import Runner
from loadcheck.scenario import load_file
from loadcheck.summary import (
    TABLE_WIDTH,
    build_summary,
    metrics_from_summary,
    read_summary,
    render_text,
    render_thresholds,
    write_summary,
)
from loadcheck.thresholds import ThresholdEvaluator, all_passed

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_CONFIG_ERROR = 2
EXIT_ABORTED = 3

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        prog="loadcheck",
        description="Run HTTP load scenarios and gate on performance thresholds.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--env",
        default=None,
        help="Configuration environment (development, testing, production)",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Only log warnings and errors",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Execute a scenario")
    run_parser.add_argument("scenario", type=Path, help="Path to a YAML or JSON scenario")
    run_parser.add_argument(
        "--summary-export",
        type=Path,
        default=None,
        help="Where to write the JSON summary (default: performance-results.json)",
    )
    run_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Per-request timeout in seconds",
    )
    run_parser.add_argument(
        "--graceful-stop",
        type=float,
        default=None,
        help="Seconds to wait for in-flight virtual users at the end of the run",
    )
    run_parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed for reproducible think-times",
    )

    check_parser = subparsers.add_parser(
        "check", help="Re-evaluate thresholds against an existing summary"
    )
    check_parser.add_argument("summary", type=Path, help="Path to a summary JSON file")
    check_parser.add_argument(
        "--scenario",
        required=True,
        type=Path,
        help="Scenario whose thresholds are applied",
    )
    return parser.parse_args(argv)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _run(args: argparse.Namespace, settings: Any) -> int:
    scenario = load_file(args.scenario)
    runner = Runner(
        scenario,
        settings=settings,
        timeout=args.timeout,
        graceful_stop=args.graceful_stop,
        seed=args.seed,
    )

    def _handle_interrupt(signum, _frame):
        # A second Ctrl-C falls back to the default handler and kills the process.
        signal.signal(signum, signal.SIG_DFL)
        runner.cancel()

    previous_handler = signal.signal(signal.SIGINT, _handle_interrupt)
    try:
        result = runner.run()
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    summary = build_summary(result)
    summary_path = args.summary_export or scenario.options.summary_export or settings.SUMMARY_PATH
    write_summary(summary, summary_path)
    print(render_text(summary))

    if result.aborted:
        return EXIT_ABORTED
    return EXIT_PASS if result.passed else EXIT_THRESHOLD_BREACH


def _check(args: argparse.Namespace) -> int:
    scenario = load_file(args.scenario)
    try:
        summary = read_summary(args.summary)
        metrics = metrics_from_summary(summary)
    except (OSError, ValueError, KeyError) as exc:
        raise ConfigError(f"Cannot read summary {args.summary}: {exc}") from exc

    results = ThresholdEvaluator(scenario.thresholds).evaluate(metrics)

    rows = [
        (result.threshold.metric, result.threshold.expression, result.actual, result.ok)
        for result in results
    ]
    print("\n".join(render_thresholds(rows)))
    print("=" * TABLE_WIDTH)
    passed = all_passed(results)
    print(f"Overall: {'PASS' if passed else 'FAIL'}")
    return EXIT_PASS if passed else EXIT_THRESHOLD_BREACH


def main(argv: list[str] | None = None) -> int:
    """
    Entry point: parse arguments, dispatch, and map errors to exit codes.

    Returns:
        ``EXIT_PASS``, ``EXIT_THRESHOLD_BREACH``, ``EXIT_CONFIG_ERROR`` or
        ``EXIT_ABORTED``.
    """
    args = parse_args(argv)
    settings = get_config(args.env)
    _configure_logging("WARNING" if args.quiet else settings.LOG_LEVEL)

    try:
        if args.command == "run":
            return _run(args, settings)
        return _check(args)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
