"""
Request executor.

Performs exactly one HTTP call per :meth:`RequestExecutor.execute`,
times it, runs the step's checks and reports everything to the virtual
user's metric shard in a single batch.

Transport failures never escape: a ``requests.Timeout`` becomes a
:class:`~loadcheck.exceptions.RequestTimeoutError` on the record and any
other ``requests.RequestException`` becomes a
:class:`~loadcheck.exceptions.NetworkError`.  The record then has no
status and no headers, so every check on it fails.  ``http_req_duration``
still receives the time spent until the failure, while ``duration``
checks on such a record fail.  There are no retries:
a retried request would hide the real failure rate of the target.

Key Concepts Demonstrated:
- Catching ``requests.Timeout`` before the broader ``RequestException``
- One ``requests.Session`` per virtual user for connection reuse
- Check failures reported as metric samples, not exceptions
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import requests
from requests.structures import CaseInsensitiveDict

from loadcheck.exceptions import NetworkError, RequestTimeoutError
from loadcheck.metrics import MetricShard
from loadcheck.scenario import ScenarioStep

logger = logging.getLogger(__name__)

# Status codes outside this range count towards ``http_req_failed``.
EXPECTED_STATUS_RANGE = range(200, 400)


@dataclass(frozen=True)
class ExecutionRecord:
    """
    Outcome of one request.

    Attributes:
        status: HTTP status code, or ``None`` if no response arrived.
        duration: Elapsed time in milliseconds, from sending the request
            to receiving the full response (or the failure).
        headers: Response headers, or ``None`` if no response arrived.
        error: The transport error, if any.
    """

    status: int | None
    duration: float
    headers: Mapping[str, str] | None
    error: NetworkError | None = None

    @property
    def failed(self) -> bool:
        """``True`` for transport errors and unexpected status codes."""
        return self.error is not None or self.status not in EXPECTED_STATUS_RANGE


@dataclass(frozen=True)
class CheckOutcome:
    name: str
    metric: str
    passed: bool


class RequestExecutor:
    """
    Execute scenario steps over a ``requests`` session.

    Args:
        session: A ``requests.Session`` (or anything exposing a compatible
            ``request`` method).  Owned by a single virtual user.
        shard: Metric shard receiving this executor's samples.
        timeout: Per-request timeout in seconds.
        clock: Monotonic clock in seconds; injectable for tests.
    """

    def __init__(
        self,
        session: requests.Session,
        shard: MetricShard,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.session = session
        self.shard = shard
        self.timeout = timeout
        self._clock = clock

    def execute(self, step: ScenarioStep) -> ExecutionRecord:
        """
        Issue the step's request, run its checks and record metrics.

        Args:
            step: The scenario step to execute.

        Returns:
            The execution record.  Never raises for transport errors.
        """
        record = self._send(step)
        outcomes = [
            CheckOutcome(name=check.name, metric=check.metric, passed=check.evaluate(record))
            for check in step.checks
        ]
        self._report(record, outcomes)
        return record

    def _send(self, step: ScenarioStep) -> ExecutionRecord:
        kwargs: dict[str, Any] = {
            "method": step.method,
            "url": step.url,
            "headers": dict(step.headers),
            "timeout": self.timeout,
        }
        if isinstance(step.body, (dict, list)):
            kwargs["json"] = step.body
        elif step.body is not None:
            kwargs["data"] = str(step.body)

        started = self._clock()
        try:
            response = self.session.request(**kwargs)
            # Reading the body here keeps its download inside the timing.
            _ = response.content
        except requests.Timeout as exc:
            duration = (self._clock() - started) * 1000.0
            logger.debug("%s %s timed out after %.1fms", step.method, step.url, duration)
            return ExecutionRecord(
                status=None,
                duration=duration,
                headers=None,
                error=RequestTimeoutError(f"{step.method} {step.url} timed out: {exc}"),
            )
        except requests.RequestException as exc:
            duration = (self._clock() - started) * 1000.0
            logger.debug("%s %s failed: %s", step.method, step.url, exc)
            return ExecutionRecord(
                status=None,
                duration=duration,
                headers=None,
                error=NetworkError(f"{step.method} {step.url} failed: {exc}"),
            )

        duration = (self._clock() - started) * 1000.0
        return ExecutionRecord(
            status=response.status_code,
            duration=duration,
            headers=CaseInsensitiveDict(response.headers),
        )

    def _report(self, record: ExecutionRecord, outcomes: list[CheckOutcome]) -> None:
        # Failed requests still report the time spent until the failure.
        samples: list[tuple[str, float]] = [
            ("http_reqs", 1),
            ("http_req_failed", 1 if record.failed else 0),
            ("http_req_duration", record.duration),
        ]

        for outcome in outcomes:
            # Bound metric counts failures; ``checks`` counts successes.
            samples.append((outcome.metric, 0 if outcome.passed else 1))
            samples.append(("checks", 1 if outcome.passed else 0))

        self.shard.record(samples, [(outcome.name, outcome.passed) for outcome in outcomes])
