"""
Virtual-user scheduler.

Stages describe a piecewise-linear ramp of the desired number of
virtual users (VUs) over time::

    stages = [Stage(120, 10), Stage(300, 10), Stage(120, 0)]
    # 0 -> 10 VUs over 2 minutes, hold 10 for 5 minutes, ramp down to 0

The :class:`Scheduler` runs a supervisory loop on a fixed tick.  Every
tick it computes the desired VU count for the elapsed time and
reconciles: it spawns new :class:`VirtualUser` threads when there are
too few, and asks the newest ones to stop when there are too many.  A
stopped VU always finishes the step it is executing; in-flight requests
are never interrupted.

When the last stage ends, or :meth:`Scheduler.cancel` is called, every
VU is signalled and the scheduler waits up to ``graceful_stop`` seconds
for them.  VUs still running after that are abandoned (they are daemon
threads) and reported in :class:`SchedulerStats`.

Key Concepts Demonstrated:
- Supervisory tick loop instead of busy polling
- Cooperative cancellation with ``threading.Event``
- Interruptible think-time via ``Event.wait(timeout)``
"""

from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import requests

from loadcheck.executor import RequestExecutor
from loadcheck.metrics import MetricsAggregator, MetricShard
from loadcheck.scenario import Scenario, ScenarioStep, Stage

logger = logging.getLogger(__name__)

# Guards ``floor`` against values like 4.999999999 at stage boundaries.
_TARGET_EPSILON = 1e-9


def target_at(stages: Sequence[Stage], elapsed: float, start: int = 0) -> float:
    """
    Return the ramp's (fractional) VU target at *elapsed* seconds.

    Each stage interpolates linearly from the previous stage's target
    (or *start* for the first stage) to its own target.  At a stage's
    end the value is exactly that stage's target; after the final stage
    it stays at the final target.  A zero-duration stage jumps straight
    to its target.
    """
    previous = float(start)
    boundary = 0.0
    if elapsed <= 0:
        return previous

    for stage in stages:
        end = boundary + stage.duration
        if elapsed < end:
            fraction = (elapsed - boundary) / stage.duration
            return previous + (stage.target - previous) * fraction
        previous = float(stage.target)
        boundary = end
    return previous


def desired_vus(stages: Sequence[Stage], elapsed: float, start: int = 0) -> int:
    """Whole number of VUs that should be running at *elapsed* seconds."""
    return max(0, math.floor(target_at(stages, elapsed, start) + _TARGET_EPSILON))


def stage_index_at(stages: Sequence[Stage], elapsed: float) -> int:
    """Index of the stage active at *elapsed*, or ``len(stages)`` once all have ended."""
    boundary = 0.0
    for index, stage in enumerate(stages):
        boundary += stage.duration
        if elapsed < boundary:
            return index
    return len(stages)


class VirtualUser(threading.Thread):
    """
    One simulated client looping over the scenario steps in order.

    The loop checks for a stop signal before every step, never during
    one.  Think-time waits on the VU's own stop event, so a stop request
    ends the pause immediately without affecting any other VU.

    Attributes:
        steps_executed: Number of steps this VU has run.
        iterations: Number of complete passes over all steps.
    """

    def __init__(
        self,
        vu_id: int,
        steps: Sequence[ScenarioStep],
        executor: RequestExecutor,
        run_stop: threading.Event,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        super().__init__(name=f"vu-{vu_id}", daemon=True)
        self.vu_id = vu_id
        self.steps = tuple(steps)
        self.executor = executor
        self.steps_executed = 0
        self.iterations = 0
        self._run_stop = run_stop
        self._stop_event = threading.Event()
        self._rng = rng or random.Random()
        self._clock = clock

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set() or self._run_stop.is_set()

    def stop(self) -> None:
        """Ask the VU to exit after its current step."""
        self._stop_event.set()

    def run(self) -> None:
        logger.debug("Virtual user %s started", self.vu_id)
        try:
            while not self.stopping:
                self._iterate()
        except Exception:
            logger.exception("Virtual user %s crashed", self.vu_id)
        finally:
            close = getattr(self.executor.session, "close", None)
            if close is not None:
                close()
            logger.debug(
                "Virtual user %s stopped after %d steps", self.vu_id, self.steps_executed
            )

    def _iterate(self) -> None:
        started = self._clock()
        completed_steps = 0

        for step in self.steps:
            if self.stopping:
                break
            self.executor.execute(step)
            self.steps_executed += 1
            completed_steps += 1

            delay = step.think_time.sample(self._rng)
            if delay > 0 and self._stop_event.wait(delay):
                break

        if completed_steps == len(self.steps):
            self.iterations += 1
            self.executor.shard.record(
                [
                    ("iterations", 1),
                    ("iteration_duration", (self._clock() - started) * 1000.0),
                ]
            )


@dataclass(frozen=True)
class SchedulerStats:
    """What the scheduler observed over one run."""

    duration: float
    aborted: bool
    vus_spawned: int
    vus_max: int
    vus_abandoned: int


class Scheduler:
    """
    Drive virtual users through the scenario's stages.

    Args:
        scenario: The validated scenario.
        aggregator: Receives one shard per VU plus one for VU gauges.
        session_factory: Builds the HTTP session each VU owns.
        timeout: Per-request timeout in seconds.
        tick: Seconds between reconciliation passes.
        graceful_stop: Seconds to wait for VUs after the run ends.
        seed: Optional seed for reproducible think-times.
        clock: Monotonic clock in seconds.
    """

    def __init__(
        self,
        scenario: Scenario,
        aggregator: MetricsAggregator,
        session_factory: Callable[[], Any] = requests.Session,
        timeout: float = 30.0,
        tick: float = 0.5,
        graceful_stop: float = 30.0,
        seed: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.scenario = scenario
        self.aggregator = aggregator
        self.session_factory = session_factory
        self.timeout = timeout
        self.tick = tick
        self.graceful_stop = graceful_stop
        self._seed_rng = random.Random(seed)
        self._clock = clock
        self._run_stop = threading.Event()
        self._aborted = False
        self._finished = False
        self._state_lock = threading.Lock()
        self._users: list[VirtualUser] = []
        self._next_vu_id = 1
        self._vus_max = 0

    def cancel(self) -> None:
        """
        Operator abort: stop spawning now and wind down every VU.

        Once the final stage has ended the run is no longer aborted by a
        cancel; the graceful drain simply continues.
        """
        with self._state_lock:
            if self._finished:
                logger.info("Cancel requested after the final stage; still draining")
                return
            if not self._aborted:
                logger.warning("Run cancelled; stopping virtual users")
            self._aborted = True
        self._run_stop.set()

    @property
    def cancelled(self) -> bool:
        return self._aborted

    def run(self) -> SchedulerStats:
        """
        Execute the full ramp and wait for every VU to stop.

        Returns:
            Run statistics.  ``aborted`` is ``True`` if :meth:`cancel`
            was called before the final stage ended.
        """
        stages = self.scenario.stages
        total = self.scenario.total_duration
        gauge_shard = self.aggregator.new_shard()
        started = self._clock()
        current_stage = -1

        logger.info(
            "Starting scenario %r: %d stages over %.1fs",
            self.scenario.name,
            len(stages),
            total,
        )

        try:
            while not self._run_stop.is_set():
                elapsed = self._clock() - started
                if elapsed >= total:
                    break

                stage = stage_index_at(stages, elapsed)
                if stage != current_stage:
                    current_stage = stage
                    logger.info(
                        "Stage %d/%d: target %d VUs",
                        stage + 1,
                        len(stages),
                        stages[stage].target,
                    )

                desired = desired_vus(stages, elapsed, self.scenario.start_vus)
                self._reconcile(desired, gauge_shard)
                self._run_stop.wait(self.tick)
        finally:
            with self._state_lock:
                self._finished = True
            self._run_stop.set()
            for user in self._users:
                user.stop()
            abandoned = self._drain()
            gauge_shard.record([("vus", 0)])

        duration = self._clock() - started
        logger.info(
            "Scenario %r finished in %.1fs (%d VUs spawned, max %d)",
            self.scenario.name,
            duration,
            self._next_vu_id - 1,
            self._vus_max,
        )
        return SchedulerStats(
            duration=duration,
            aborted=self._aborted,
            vus_spawned=self._next_vu_id - 1,
            vus_max=self._vus_max,
            vus_abandoned=abandoned,
        )

    def _reconcile(self, desired: int, gauge_shard: MetricShard) -> None:
        self._users = [user for user in self._users if user.is_alive()]
        active = [user for user in self._users if not user.stopping]

        if len(active) < desired:
            for _ in range(desired - len(active)):
                active.append(self._spawn())
        elif len(active) > desired:
            excess = len(active) - desired
            for user in active[-excess:]:
                logger.debug("Retiring virtual user %s", user.vu_id)
                user.stop()
            active = active[:desired]

        self._vus_max = max(self._vus_max, len(active))
        gauge_shard.record([("vus", len(active)), ("vus_max", self._vus_max)])

    def _spawn(self) -> VirtualUser:
        executor = RequestExecutor(
            self.session_factory(),
            self.aggregator.new_shard(),
            timeout=self.timeout,
        )
        user = VirtualUser(
            self._next_vu_id,
            self.scenario.steps,
            executor,
            self._run_stop,
            rng=random.Random(self._seed_rng.random()),
        )
        self._next_vu_id += 1
        self._users.append(user)
        user.start()
        logger.debug("Spawned virtual user %s", user.vu_id)
        return user

    def _drain(self) -> int:
        deadline = self._clock() + self.graceful_stop
        for user in self._users:
            user.join(timeout=max(0.0, deadline - self._clock()))

        stragglers = [user for user in self._users if user.is_alive()]
        if stragglers:
            logger.warning(
                "Abandoning %d virtual users still running after %.1fs graceful stop",
                len(stragglers),
                self.graceful_stop,
            )
        return len(stragglers)
