"""
Unit tests for threshold parsing and evaluation.
"""

import pytest

from loadcheck.exceptions import ConfigError
from loadcheck.metrics import BUILTIN_METRICS, MetricKind, MetricsAggregator
from loadcheck.thresholds import ThresholdEvaluator, all_passed, parse_threshold, parse_thresholds

pytestmark = pytest.mark.unit

KINDS = dict(BUILTIN_METRICS, errors=MetricKind.RATE)


def _metrics(durations=(), errors=()):
    aggregator = MetricsAggregator({"errors": MetricKind.RATE})
    shard = aggregator.new_shard()
    for value in durations:
        shard.add("http_req_duration", value)
    for value in errors:
        shard.add("errors", value)
    return aggregator.finalize(duration=1.0).metrics


@pytest.mark.parametrize(
    ("expression", "aggregate", "argument", "op", "value"),
    [
        ("p(95)<500", "p", 95.0, "<", 500.0),
        ("p(99.9) <= 1500", "p", 99.9, "<=", 1500.0),
        ("avg>=10", "avg", None, ">=", 10.0),
        ("max > 0", "max", None, ">", 0.0),
    ],
)
def test_parse_trend_thresholds(expression, aggregate, argument, op, value):
    threshold = parse_threshold("http_req_duration", expression, MetricKind.TREND)

    assert (threshold.aggregate, threshold.argument, threshold.operator, threshold.value) == (
        aggregate,
        argument,
        op,
        value,
    )


@pytest.mark.parametrize(
    ("metric", "expression"),
    [
        ("http_req_duration", "rate<0.1"),
        ("errors", "p(95)<500"),
        ("http_req_duration", "p<500"),
        ("http_req_duration", "avg(5)<500"),
        ("http_req_duration", "p(101)<500"),
        ("errors", "rate <> 0.1"),
        ("errors", "rate<"),
    ],
)
def test_invalid_thresholds_are_config_errors(metric, expression):
    with pytest.raises(ConfigError):
        parse_thresholds({metric: [expression]}, KINDS)


def test_single_string_is_accepted_as_list():
    thresholds = parse_thresholds({"errors": "rate<0.1"}, KINDS)

    assert [t.expression for t in thresholds] == ["rate<0.1"]


def test_passing_and_failing_verdicts():
    # Arrange
    thresholds = parse_thresholds(
        {"http_req_duration": ["p(95)<500", "max<100"], "errors": ["rate<0.1"]},
        KINDS,
    )
    metrics = _metrics(durations=[50, 60, 70, 200], errors=[0, 0, 0, 0])

    # Act
    results = ThresholdEvaluator(thresholds).evaluate(metrics)

    # Assert
    assert [result.ok for result in results] == [True, False, True]
    assert results[1].actual == 200
    assert all_passed(results) is False


def test_error_rate_breach_fails():
    thresholds = parse_thresholds({"errors": ["rate<0.1"]}, KINDS)

    results = ThresholdEvaluator(thresholds).evaluate(_metrics(errors=[1, 1, 1]))

    assert results[0].ok is False
    assert results[0].actual == 1.0


def test_metric_with_zero_samples_is_config_error():
    thresholds = parse_thresholds({"http_req_duration": ["p(95)<500"]}, KINDS)

    with pytest.raises(ConfigError, match="no samples"):
        ThresholdEvaluator(thresholds).evaluate(_metrics(errors=[0]))


def test_metric_with_zero_samples_is_skipped_when_requested():
    thresholds = parse_thresholds({"http_req_duration": ["p(95)<500"], "errors": ["rate<0.1"]}, KINDS)

    results = ThresholdEvaluator(thresholds).evaluate(_metrics(errors=[0]), skip_empty=True)

    assert [(r.evaluated, r.actual, r.ok) for r in results] == [(False, None, False), (True, 0.0, True)]
    assert all_passed(results) is False


def test_evaluation_is_idempotent():
    thresholds = parse_thresholds(
        {"http_req_duration": ["p(95)<500", "p(50)<60"], "errors": ["rate<0.5"]}, KINDS
    )
    metrics = _metrics(durations=range(1, 101), errors=[0, 1, 0])
    evaluator = ThresholdEvaluator(thresholds)

    first = evaluator.evaluate(metrics)
    second = evaluator.evaluate(metrics)

    assert first == second
