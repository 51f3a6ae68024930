"""
Scenario model.

A scenario is a plain mapping (usually loaded from YAML or JSON) that
describes *what* to run: the virtual-user ramp, the ordered HTTP steps
each virtual user loops over, the checks applied to every response and
the thresholds that decide the verdict.  :func:`load` validates the
whole document up front so a bad scenario fails with ``ConfigError``
before a single request is sent.

Example::

    name: mail-baseline
    baseUrl: https://mail.example.com
    stages:
      - {duration: 2m, target: 10}
      - {duration: 5m, target: 10}
      - {duration: 2m, target: 0}
    steps:
      - name: Homepage
        path: /
        checks:
          - {name: Homepage status is 200, predicate: status == 200}
        thinkTimeMs: 1000
    thresholds:
      http_req_duration: ["p(95)<500"]
      errors: ["rate<0.1"]

Key Concepts Demonstrated:
- Validation at the boundary, immutable objects afterwards
- ``from_dict`` constructors that raise ``ConfigError`` with context
"""

from __future__ import annotations

import random
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any
from urllib.parse import ParseResult, urljoin, urlparse

import yaml

from loadcheck.checks import Check
from loadcheck.durations import parse_duration
from loadcheck.exceptions import ConfigError
from loadcheck.metrics import BUILTIN_METRICS, MetricKind
from loadcheck.thresholds import Threshold, parse_thresholds

HTTP_METHODS = {"GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"}

DEFAULT_BASE = "default"


@dataclass(frozen=True)
class Stage:
    """One segment of the virtual-user ramp: reach *target* over *duration* seconds."""

    duration: float
    target: int

    @classmethod
    def from_dict(cls, data: Any, index: int) -> Stage:
        if not isinstance(data, Mapping):
            raise ConfigError(f"Stage {index} must be a mapping, got {data!r}")
        if "duration" not in data or "target" not in data:
            raise ConfigError(f"Stage {index} must define 'duration' and 'target'")

        duration = parse_duration(data["duration"], f"stage {index} duration")
        target = data["target"]
        if isinstance(target, bool) or not isinstance(target, int):
            raise ConfigError(f"Stage {index} target must be an integer, got {target!r}")
        if target < 0:
            raise ConfigError(f"Stage {index} target must be non-negative, got {target}")
        return cls(duration=duration, target=target)


@dataclass(frozen=True)
class ThinkTime:
    """Pause after a step, drawn uniformly from ``[minimum, maximum]`` seconds."""

    minimum: float = 0.0
    maximum: float = 0.0

    @classmethod
    def from_value(cls, value: Any, step_name: str) -> ThinkTime:
        """
        Parse ``thinkTimeMs``: a number (fixed) or ``{min, max}`` (random).

        Raises:
            ConfigError: On negative values or ``min > max``.
        """
        if value is None:
            return cls()

        if isinstance(value, Mapping):
            low = value.get("min", 0)
            high = value.get("max", low)
        else:
            low = high = value

        for bound in (low, high):
            if isinstance(bound, bool) or not isinstance(bound, (int, float)):
                raise ConfigError(f"Step {step_name!r} thinkTimeMs must be numeric, got {value!r}")
        if low < 0 or high < 0:
            raise ConfigError(f"Step {step_name!r} thinkTimeMs must be non-negative")
        if low > high:
            raise ConfigError(f"Step {step_name!r} thinkTimeMs min ({low}) exceeds max ({high})")
        return cls(minimum=low / 1000.0, maximum=high / 1000.0)

    def sample(self, rng: random.Random | None = None) -> float:
        if self.maximum == self.minimum:
            return self.minimum
        return (rng or random).uniform(self.minimum, self.maximum)


@dataclass(frozen=True)
class ScenarioStep:
    """
    One HTTP request template plus the checks applied to its response.

    Attributes:
        name: Label used for logging; defaults to ``"<METHOD> <path>"``.
        method: Upper-case HTTP method.
        url: Fully resolved request URL.
        body: Optional body; mappings and lists are sent as JSON.
        headers: Extra request headers.
        checks: Checks run against every response, in order.
        think_time: Pause after the step completes.
    """

    name: str
    method: str
    url: str
    body: Any = None
    headers: Mapping[str, str] = field(default_factory=dict)
    checks: tuple[Check, ...] = ()
    think_time: ThinkTime = ThinkTime()

    @classmethod
    def from_dict(cls, data: Any, index: int, bases: Mapping[str, str]) -> ScenarioStep:
        if not isinstance(data, Mapping):
            raise ConfigError(f"Step {index} must be a mapping, got {data!r}")

        method = str(data.get("method", "GET")).upper()
        if method not in HTTP_METHODS:
            raise ConfigError(f"Step {index} has unsupported method {method!r}")

        path = data.get("path")
        if not isinstance(path, str):
            raise ConfigError(f"Step {index} must define a string 'path'")

        name = data.get("name") or f"{method} {path}"
        url = _resolve_url(path, data.get("base"), bases, name)

        headers = data.get("headers") or {}
        if not isinstance(headers, Mapping):
            raise ConfigError(f"Step {name!r} headers must be a mapping")

        raw_checks = data.get("checks") or []
        if not isinstance(raw_checks, list):
            raise ConfigError(f"Step {name!r} checks must be a list")

        return cls(
            name=name,
            method=method,
            url=url,
            body=data.get("body"),
            headers=MappingProxyType({str(k): str(v) for k, v in headers.items()}),
            checks=tuple(Check.from_dict(check) for check in raw_checks),
            think_time=ThinkTime.from_value(data.get("thinkTimeMs"), name),
        )


@dataclass(frozen=True)
class ScenarioOptions:
    """Run options carried by the scenario; ``None`` defers to the engine config."""

    timeout: float | None = None
    graceful_stop: float | None = None
    summary_export: str | None = None


@dataclass(frozen=True)
class Scenario:
    """A fully validated, read-only scenario."""

    name: str
    stages: tuple[Stage, ...]
    steps: tuple[ScenarioStep, ...]
    start_vus: int = 0
    thresholds: tuple[Threshold, ...] = ()
    metrics: Mapping[str, MetricKind] = field(default_factory=dict)
    options: ScenarioOptions = ScenarioOptions()

    @property
    def total_duration(self) -> float:
        return sum(stage.duration for stage in self.stages)


def _within_base(target: ParseResult, base: str) -> bool:
    """Same scheme and host as *base*, and under its path if it has one."""
    root = urlparse(base)
    if (target.scheme.lower(), target.netloc.lower()) != (root.scheme.lower(), root.netloc.lower()):
        return False
    prefix = root.path.rstrip("/")
    return not prefix or target.path == prefix or target.path.startswith(prefix + "/")


def _resolve_url(path: str, base_name: Any, bases: Mapping[str, str], step_name: str) -> str:
    parsed = urlparse(path)
    if parsed.scheme and parsed.netloc:
        if not any(_within_base(parsed, base) for base in bases.values()):
            raise ConfigError(
                f"Step {step_name!r} uses absolute URL {path!r} outside the declared base URLs"
            )
        return path

    key = DEFAULT_BASE if base_name is None else str(base_name)
    if key not in bases:
        raise ConfigError(f"Step {step_name!r} references undefined base URL {key!r}")
    return urljoin(bases[key].rstrip("/") + "/", path.lstrip("/"))


def _load_bases(definition: Mapping[str, Any]) -> dict[str, str]:
    bases: dict[str, str] = {}

    extra = definition.get("baseUrls") or {}
    if not isinstance(extra, Mapping):
        raise ConfigError("'baseUrls' must be a mapping of name to URL")
    for name, url in extra.items():
        bases[str(name)] = _validate_base_url(url, f"baseUrls.{name}")

    if definition.get("baseUrl") is not None:
        bases[DEFAULT_BASE] = _validate_base_url(definition["baseUrl"], "baseUrl")
    return bases


def _validate_base_url(url: Any, field_name: str) -> str:
    if not isinstance(url, str):
        raise ConfigError(f"{field_name} must be a string")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(f"{field_name} must be an absolute http(s) URL, got {url!r}")
    return url


def _load_metric_kinds(definition: Mapping[str, Any], steps: tuple[ScenarioStep, ...]) -> dict[str, MetricKind]:
    declared = definition.get("metrics") or {}
    if not isinstance(declared, Mapping):
        raise ConfigError("'metrics' must be a mapping of name to kind")

    kinds: dict[str, MetricKind] = {}
    for name, kind in declared.items():
        try:
            kinds[str(name)] = MetricKind(kind)
        except ValueError as exc:
            raise ConfigError(f"Metric {name!r} has unknown kind {kind!r}") from exc
        builtin = BUILTIN_METRICS.get(str(name))
        if builtin is not None and builtin is not kinds[str(name)]:
            raise ConfigError(f"Metric {name!r} is built in as a {builtin.value}")

    for step in steps:
        for check in step.checks:
            kind = kinds.setdefault(check.metric, BUILTIN_METRICS.get(check.metric, MetricKind.RATE))
            if kind is not MetricKind.RATE:
                raise ConfigError(
                    f"Check {check.name!r} reports to {check.metric!r}, which is not a rate metric"
                )
    return kinds


def _load_options(definition: Mapping[str, Any]) -> ScenarioOptions:
    options = definition.get("options") or {}
    if not isinstance(options, Mapping):
        raise ConfigError("'options' must be a mapping")

    timeout = options.get("timeout")
    graceful_stop = options.get("gracefulStop")
    summary_export = options.get("summaryExport")
    if summary_export is not None and not isinstance(summary_export, str):
        raise ConfigError("options.summaryExport must be a path string")

    return ScenarioOptions(
        timeout=None if timeout is None else parse_duration(timeout, "options.timeout"),
        graceful_stop=(
            None if graceful_stop is None else parse_duration(graceful_stop, "options.gracefulStop")
        ),
        summary_export=summary_export,
    )


def load(definition: Mapping[str, Any]) -> Scenario:
    """
    Validate a scenario definition and build a :class:`Scenario`.

    Args:
        definition: The parsed scenario document.

    Returns:
        The immutable scenario.

    Raises:
        ConfigError: If stages are malformed (negative duration or
            target), a step references an undefined base URL, or any
            check, metric, threshold or option is invalid.
    """
    if not isinstance(definition, Mapping):
        raise ConfigError("Scenario definition must be a mapping")

    raw_stages = definition.get("stages")
    if not isinstance(raw_stages, list) or not raw_stages:
        raise ConfigError("Scenario must define a non-empty 'stages' list")
    stages = tuple(Stage.from_dict(stage, index) for index, stage in enumerate(raw_stages))

    start_vus = definition.get("startVUs", 0)
    if isinstance(start_vus, bool) or not isinstance(start_vus, int) or start_vus < 0:
        raise ConfigError(f"'startVUs' must be a non-negative integer, got {start_vus!r}")

    bases = _load_bases(definition)
    raw_steps = definition.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise ConfigError("Scenario must define a non-empty 'steps' list")
    steps = tuple(ScenarioStep.from_dict(step, index, bases) for index, step in enumerate(raw_steps))

    metrics = _load_metric_kinds(definition, steps)
    known = dict(BUILTIN_METRICS)
    known.update(metrics)
    thresholds = parse_thresholds(definition.get("thresholds") or {}, known)

    return Scenario(
        name=str(definition.get("name") or "scenario"),
        stages=stages,
        steps=steps,
        start_vus=start_vus,
        thresholds=tuple(thresholds),
        metrics=MappingProxyType(metrics),
        options=_load_options(definition),
    )


def load_file(path: str | Path) -> Scenario:
    """
    Read a YAML or JSON scenario file and :func:`load` it.

    Raises:
        ConfigError: If the file cannot be read or parsed, or is invalid.
    """
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as handle:
            definition = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigError(f"Cannot read scenario file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Scenario file {path} is not valid YAML/JSON: {exc}") from exc

    return load(definition or {})
