"""
Threshold parsing and evaluation.

Thresholds are declared per metric as a list of predicate strings::

    thresholds:
      http_req_duration: ["p(95)<500", "avg<200"]
      errors: ["rate<0.1"]

Grammar: ``<aggregate>[(<arg>)] <op> <value>`` with ops ``<``, ``<=``,
``>``, ``>=``, ``==`` and ``!=``.  Which aggregates are valid depends on
the metric kind:

- trend: ``p(N)``, ``avg``, ``min``, ``med``, ``max``
- rate: ``rate``
- counter: ``count``, ``rate`` (per second)
- gauge: ``value``, ``min``, ``max``

Parsing happens when the scenario is loaded, so a typo aborts the run
before any traffic is generated.  Evaluation is a pure function of the
finalized metrics: running it twice gives the same verdicts.

A threshold on a metric that received no samples is ambiguous (there is
nothing to compare) and raises ``ConfigError`` rather than silently
passing or failing.  The one exception is a run the operator aborted:
there the threshold is reported as not evaluated (``actual`` is
``None``) and counts as failed.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from loadcheck.checks import OPERATORS
from loadcheck.exceptions import ConfigError
from loadcheck.metrics import MetricKind, MetricSummary

logger = logging.getLogger(__name__)

_THRESHOLD_RE = re.compile(
    r"^\s*(?P<aggregate>[a-z]+)\s*(?:\(\s*(?P<argument>\d+(?:\.\d+)?)\s*\))?"
    r"\s*(?P<op><=|>=|==|!=|<|>)\s*(?P<value>-?\d+(?:\.\d+)?(?:[eE]-?\d+)?)\s*$"
)

AGGREGATES_BY_KIND: dict[MetricKind, frozenset[str]] = {
    MetricKind.TREND: frozenset({"p", "avg", "min", "med", "max"}),
    MetricKind.RATE: frozenset({"rate"}),
    MetricKind.COUNTER: frozenset({"count", "rate"}),
    MetricKind.GAUGE: frozenset({"value", "min", "max"}),
}


@dataclass(frozen=True)
class Threshold:
    """One parsed threshold expression bound to a metric."""

    metric: str
    expression: str
    aggregate: str
    argument: float | None
    operator: str
    value: float

    def test(self, actual: float) -> bool:
        return OPERATORS[self.operator](actual, self.value)


@dataclass(frozen=True)
class ThresholdResult:
    """Verdict for one threshold; ``actual`` is ``None`` when it was not evaluated."""

    threshold: Threshold
    actual: float | None
    ok: bool

    @property
    def evaluated(self) -> bool:
        return self.actual is not None


def parse_threshold(metric: str, expression: str, kind: MetricKind) -> Threshold:
    """
    Parse a single threshold expression for a metric of the given kind.

    Raises:
        ConfigError: On bad grammar or an aggregate the metric kind lacks.
    """
    if not isinstance(expression, str):
        raise ConfigError(f"Threshold for {metric!r} must be a string, got {expression!r}")

    match = _THRESHOLD_RE.match(expression)
    if match is None:
        raise ConfigError(f"Invalid threshold for {metric!r}: {expression!r}")

    aggregate = match.group("aggregate")
    raw_argument = match.group("argument")

    if aggregate not in AGGREGATES_BY_KIND[kind]:
        raise ConfigError(
            f"Aggregate {aggregate!r} is not available on {kind.value} metric {metric!r}"
        )
    if aggregate == "p":
        if raw_argument is None:
            raise ConfigError(f"Threshold {expression!r} needs a percentile, e.g. p(95)")
        argument = float(raw_argument)
        if argument > 100:
            raise ConfigError(f"Percentile out of range in {expression!r}")
    elif raw_argument is not None:
        raise ConfigError(f"Aggregate {aggregate!r} takes no argument in {expression!r}")
    else:
        argument = None

    return Threshold(
        metric=metric,
        expression=expression.strip(),
        aggregate=aggregate,
        argument=argument,
        operator=match.group("op"),
        value=float(match.group("value")),
    )


def parse_thresholds(
    definitions: Mapping[str, Iterable[str]],
    metric_kinds: Mapping[str, MetricKind],
) -> list[Threshold]:
    """
    Parse the ``thresholds`` section of a scenario.

    Args:
        definitions: Mapping of metric name to a list of expressions (a
            single string is accepted as a one-item list).
        metric_kinds: Kinds of every metric the run will produce.

    Returns:
        Parsed thresholds in declaration order.

    Raises:
        ConfigError: If a metric is unknown or an expression is invalid.
    """
    if not isinstance(definitions, Mapping):
        raise ConfigError("'thresholds' must be a mapping of metric name to expressions")

    thresholds: list[Threshold] = []
    for metric, expressions in definitions.items():
        kind = metric_kinds.get(metric)
        if kind is None:
            raise ConfigError(f"Threshold references unknown metric {metric!r}")
        if isinstance(expressions, str):
            expressions = [expressions]
        if not isinstance(expressions, list):
            raise ConfigError(f"Thresholds for {metric!r} must be a list of strings")
        for expression in expressions:
            thresholds.append(parse_threshold(metric, expression, kind))
    return thresholds


class ThresholdEvaluator:
    """Evaluate parsed thresholds against finalized metrics."""

    def __init__(self, thresholds: Iterable[Threshold]):
        self.thresholds = tuple(thresholds)

    def evaluate(
        self,
        metrics: Mapping[str, MetricSummary],
        skip_empty: bool = False,
    ) -> tuple[ThresholdResult, ...]:
        """
        Resolve and test every threshold.

        Args:
            metrics: Finalized summaries keyed by metric name.
            skip_empty: Report thresholds on metrics without samples as
                not evaluated instead of raising.  Used for aborted runs.

        Returns:
            One result per threshold, in declaration order.

        Raises:
            ConfigError: If a referenced metric is missing or received
                zero samples and ``skip_empty`` is false.
        """
        results = []
        for threshold in self.thresholds:
            summary = metrics.get(threshold.metric)
            if summary is None:
                raise ConfigError(f"Threshold references unknown metric {threshold.metric!r}")
            if summary.count == 0:
                if skip_empty:
                    logger.warning(
                        "Threshold %s %s not evaluated: the metric received no samples",
                        threshold.metric,
                        threshold.expression,
                    )
                    results.append(ThresholdResult(threshold=threshold, actual=None, ok=False))
                    continue
                raise ConfigError(
                    f"Threshold {threshold.expression!r} on {threshold.metric!r} "
                    "cannot be evaluated: the metric received no samples"
                )

            try:
                actual = summary.aggregate(threshold.aggregate, threshold.argument)
            except KeyError as exc:
                raise ConfigError(
                    f"Aggregate for {threshold.expression!r} is unavailable on {threshold.metric!r}"
                ) from exc

            ok = threshold.test(actual)
            if not ok:
                logger.info(
                    "Threshold %s %s breached (actual %.4f)",
                    threshold.metric,
                    threshold.expression,
                    actual,
                )
            results.append(ThresholdResult(threshold=threshold, actual=actual, ok=ok))
        return tuple(results)


def all_passed(results: Iterable[ThresholdResult]) -> bool:
    """Overall verdict: ``True`` only if every threshold passed."""
    return all(result.ok for result in results)
