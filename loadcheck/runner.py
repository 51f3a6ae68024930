"""
Single-run orchestration.

``Runner`` wires the scheduler, aggregator, threshold evaluator and
reporter together.  The run's phases are strictly ordered: scheduling
(concurrent), then finalize, evaluate and report (single-threaded,
after every VU has stopped).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import requests

from loadcheck.config import Config, get_config
from loadcheck.metrics import CheckSummary, MetricsAggregator, MetricSummary
from loadcheck.scenario import Scenario
from loadcheck.scheduler import Scheduler
from loadcheck.thresholds import ThresholdEvaluator, ThresholdResult, all_passed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunResult:
    """
    Finalized outcome of one run.

    Attributes:
        scenario: Scenario name.
        metrics: Finalized summaries keyed by metric name.
        checks: Per-check pass/fail counts.
        thresholds: Threshold verdicts in declaration order.
        duration: Wall-clock run duration in seconds.
        aborted: ``True`` if the operator cancelled the run.
        vus_abandoned: VUs still running when the graceful stop expired.
    """

    scenario: str
    metrics: Mapping[str, MetricSummary]
    checks: tuple[CheckSummary, ...]
    thresholds: tuple[ThresholdResult, ...]
    duration: float
    aborted: bool = False
    vus_abandoned: int = 0

    @property
    def passed(self) -> bool:
        return all_passed(self.thresholds)


class Runner:
    """
    Execute a scenario end to end.

    Settings are resolved as: explicit argument, then scenario
    ``options``, then the configuration class.

    Args:
        scenario: The validated scenario.
        settings: Configuration class; defaults to ``get_config()``.
        session_factory: Builds one HTTP session per VU.
        timeout: Per-request timeout override in seconds.
        graceful_stop: Graceful stop override in seconds.
        seed: Optional seed for reproducible think-times.
    """

    def __init__(
        self,
        scenario: Scenario,
        settings: type[Config] | None = None,
        session_factory: Callable[[], Any] = requests.Session,
        timeout: float | None = None,
        graceful_stop: float | None = None,
        seed: int | None = None,
    ):
        settings = settings or get_config()
        options = scenario.options
        self.scenario = scenario
        self.aggregator = MetricsAggregator(scenario.metrics)
        self.scheduler = Scheduler(
            scenario,
            self.aggregator,
            session_factory=session_factory,
            timeout=_first(timeout, options.timeout, settings.REQUEST_TIMEOUT),
            tick=settings.SCHEDULER_TICK,
            graceful_stop=_first(graceful_stop, options.graceful_stop, settings.GRACEFUL_STOP),
            seed=seed,
        )
        self.evaluator = ThresholdEvaluator(scenario.thresholds)

    def cancel(self) -> None:
        self.scheduler.cancel()

    def run(self) -> RunResult:
        """
        Run the scenario and evaluate its thresholds.

        Thresholds on metrics without samples are reported as not
        evaluated when the run was aborted.

        Raises:
            ConfigError: If a threshold references a metric that
                received no samples in a run that was not aborted.
        """
        stats = self.scheduler.run()
        snapshot = self.aggregator.finalize(stats.duration)
        verdicts = self.evaluator.evaluate(snapshot.metrics, skip_empty=stats.aborted)

        result = RunResult(
            scenario=self.scenario.name,
            metrics=snapshot.metrics,
            checks=snapshot.checks,
            thresholds=verdicts,
            duration=stats.duration,
            aborted=stats.aborted,
            vus_abandoned=stats.vus_abandoned,
        )
        logger.info(
            "Run %s: %d/%d thresholds passed",
            "passed" if result.passed else "failed",
            sum(1 for verdict in verdicts if verdict.ok),
            len(verdicts),
        )
        return result


def _first(*values: float | None) -> float:
    for value in values:
        if value is not None:
            return value
    raise ValueError("no value provided")
