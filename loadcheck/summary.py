"""
Run summary reporting.

Turns a finalized :class:`~loadcheck.runner.RunResult` into:

1. a JSON document written once to ``performance-results.json`` (or a
   configured path) for CI artefacts and later comparison, and
2. a condensed text table printed to stdout for humans reading CI logs.

Both are produced only after every virtual user has stopped, so
reporting never competes with the metric pipeline.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loadcheck.durations import format_duration
from loadcheck.metrics import MetricKind, MetricSummary

if TYPE_CHECKING:
    from loadcheck.runner import RunResult

logger = logging.getLogger(__name__)

TABLE_WIDTH = 78

# Order in which trend aggregates are shown in the console table.
_TREND_KEYS = ("avg", "min", "med", "max", "p(90)", "p(95)", "p(99)")

_DURATION_METRICS = {"http_req_duration", "iteration_duration"}


def build_summary(result: RunResult) -> dict[str, Any]:
    """
    Build the serialisable summary document for a finished run.

    Returns:
        A dict with ``scenario``, ``state``, ``metrics``, ``checks``,
        ``totals`` and ``verdict`` keys.
    """
    metrics: dict[str, Any] = {}
    for name, summary in result.metrics.items():
        entry = summary.to_dict()
        verdicts = {
            outcome.threshold.expression: {"ok": outcome.ok, "actual": outcome.actual}
            for outcome in result.thresholds
            if outcome.threshold.metric == name
        }
        if verdicts:
            entry["thresholds"] = verdicts
        metrics[name] = entry

    requests_issued = result.metrics["http_reqs"].values.get("count", 0.0)
    requests_failed = result.metrics["http_req_failed"].values.get("hits", 0.0)

    return {
        "scenario": result.scenario,
        "state": {
            "testRunDurationMs": result.duration * 1000.0,
            "aborted": result.aborted,
            "vusAbandoned": result.vus_abandoned,
        },
        "metrics": metrics,
        "checks": [
            {"name": check.name, "passes": check.passes, "fails": check.fails}
            for check in result.checks
        ],
        "totals": {
            "requests": int(requests_issued),
            "failedRequests": int(requests_failed),
        },
        "verdict": "pass" if result.passed else "fail",
    }


def write_summary(summary: Mapping[str, Any], path: str | Path) -> Path:
    """Write the summary as JSON, creating parent directories as needed."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(summary, handle, indent=2, sort_keys=True)
        handle.write("\n")
    logger.info("Summary written to %s", path)
    return path


def read_summary(path: str | Path) -> dict[str, Any]:
    """Load a summary document previously written by :func:`write_summary`."""
    with Path(path).open("r", encoding="utf-8") as handle:
        return json.load(handle)


def metrics_from_summary(summary: Mapping[str, Any]) -> dict[str, MetricSummary]:
    """Rebuild :class:`MetricSummary` objects from a summary document."""
    return {
        name: MetricSummary.from_dict(name, entry)
        for name, entry in summary["metrics"].items()
    }


def _format_value(metric: str, kind: MetricKind, key: str, value: float) -> str:
    if kind is MetricKind.RATE and key == "rate":
        return f"{value * 100:.2f}%"
    if kind is MetricKind.COUNTER and key == "rate":
        return f"{value:.2f}/s"
    if metric in _DURATION_METRICS:
        return f"{value:.2f}ms"
    if float(value).is_integer():
        return f"{int(value)}"
    return f"{value:.4g}"


def _metric_line(name: str, entry: Mapping[str, Any]) -> str:
    kind = MetricKind(entry["type"])
    values = entry["values"]
    if entry["count"] == 0 or not values:
        return f"  {name:<24}(no samples)"

    if kind is MetricKind.TREND:
        keys = [key for key in _TREND_KEYS if key in values]
    elif kind is MetricKind.RATE:
        keys = ["rate", "hits", "total"]
    elif kind is MetricKind.COUNTER:
        keys = ["count", "rate"]
    else:
        keys = ["value", "min", "max"]

    rendered = " ".join(f"{key}={_format_value(name, kind, key, values[key])}" for key in keys)
    return f"  {name:<24}{rendered}"


def render_thresholds(rows: Iterable[tuple[str, str, float | None, bool]]) -> list[str]:
    """
    Render the threshold table shared by ``run`` and ``check`` output.

    Args:
        rows: ``(metric, expression, actual, ok)`` tuples.  An ``actual``
            of ``None`` marks a threshold that was not evaluated.

    Returns:
        The header, a separator and one line per threshold.
    """
    lines = [
        f"{'Metric':<24}{'Threshold':<20}{'Actual':>18}{'Status':>12}",
        "-" * TABLE_WIDTH,
    ]
    for metric, expression, actual, ok in rows:
        if actual is None:
            lines.append(f"{metric:<24}{expression:<20}{'n/a':>18}{'SKIP':>12}")
            continue
        status = "PASS" if ok else "FAIL"
        lines.append(f"{metric:<24}{expression:<20}{actual:>18.4f}{status:>12}")
    return lines


def render_text(summary: Mapping[str, Any]) -> str:
    """
    Render the condensed human-readable table for a summary document.

    The last line is always ``Overall: PASS`` or ``Overall: FAIL``.
    """
    state = summary["state"]
    lines = [
        f"Scenario: {summary['scenario']}",
        f"Duration: {format_duration(state['testRunDurationMs'] / 1000.0)}"
        f"   Aborted: {'yes' if state['aborted'] else 'no'}",
        "=" * TABLE_WIDTH,
    ]

    if summary["checks"]:
        lines.append(f"{'Check':<50}{'Passes':>12}{'Fails':>12}")
        lines.append("-" * TABLE_WIDTH)
        for check in summary["checks"]:
            lines.append(f"{check['name'][:49]:<50}{check['passes']:>12}{check['fails']:>12}")
        lines.append("=" * TABLE_WIDTH)

    lines.append("Metrics")
    lines.append("-" * TABLE_WIDTH)
    for name in sorted(summary["metrics"]):
        lines.append(_metric_line(name, summary["metrics"][name]))
    lines.append("=" * TABLE_WIDTH)

    threshold_rows = [
        (name, expression, verdict["actual"], verdict["ok"])
        for name, entry in summary["metrics"].items()
        for expression, verdict in entry.get("thresholds", {}).items()
    ]
    if threshold_rows:
        lines.extend(render_thresholds(threshold_rows))
        lines.append("=" * TABLE_WIDTH)

    totals = summary["totals"]
    lines.append(
        f"Requests: {totals['requests']}   Failed: {totals['failedRequests']}"
    )
    lines.append(f"Overall: {'PASS' if summary['verdict'] == 'pass' else 'FAIL'}")
    return "\n".join(lines)
