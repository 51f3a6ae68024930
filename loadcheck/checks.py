"""
Check predicates over a single HTTP response.

A check is a named assertion written as data rather than code, e.g.::

    checks:
      - name: Homepage status is 200
        predicate: status == 200
      - name: Homepage load time < 500ms
        predicate: duration < 500
      - name: Static asset cached
        predicate: header[Cache-Control] exists

Supported predicates:

- ``status <op> <int>`` and ``status in <int>, <int>, ...``
- ``duration <op> <number>`` (milliseconds)
- ``header[<Name>] exists`` / ``header[<Name>] absent``
- ``header[<Name>] == <text>`` / ``header[<Name>] != <text>``

where ``<op>`` is one of ``==``, ``!=``, ``<``, ``<=``, ``>``, ``>=``.

A check that cannot be evaluated because the response is missing the
data it needs (no status or headers after a network failure, no
duration after a timeout) counts as a failure instead of raising.

Key Concepts Demonstrated:
- Small regex-based grammar compiled once at load time
- Failing closed on missing data so network errors never look healthy
"""

from __future__ import annotations

import operator
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from loadcheck.exceptions import ConfigError

DEFAULT_CHECK_METRIC = "errors"

OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<=": operator.le,
    ">=": operator.ge,
    "<": operator.lt,
    ">": operator.gt,
}

_OP_PATTERN = r"(==|!=|<=|>=|<|>)"
_NUMBER_PATTERN = r"(-?\d+(?:\.\d+)?)"

_STATUS_COMPARE_RE = re.compile(rf"^status\s*{_OP_PATTERN}\s*(\d{{3}})$")
_STATUS_IN_RE = re.compile(r"^status\s+in\s+(\d{3}(?:\s*,\s*\d{3})*)$")
_DURATION_RE = re.compile(rf"^duration\s*{_OP_PATTERN}\s*{_NUMBER_PATTERN}$")
_HEADER_PRESENCE_RE = re.compile(r"^header\[([^\]]+)\]\s+(exists|absent)$")
_HEADER_COMPARE_RE = re.compile(r"^header\[([^\]]+)\]\s*(==|!=)\s*(.+)$")


class MissingResponseData(LookupError):
    """The record lacks the field a predicate needs."""


def _status(record: Any) -> int:
    if record.status is None:
        raise MissingResponseData("response has no status")
    return record.status


def _duration(record: Any) -> float:
    if record.error is not None or record.duration is None:
        raise MissingResponseData("response has no duration")
    return record.duration


def _header(record: Any, name: str) -> str | None:
    if record.headers is None:
        raise MissingResponseData("response has no headers")
    wanted = name.lower()
    for key, value in record.headers.items():
        if key.lower() == wanted:
            return value
    return None


def _unquote(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1]
    return text


def compile_predicate(predicate: str) -> Callable[[Any], bool]:
    """
    Compile a predicate string into a callable over an execution record.

    Args:
        predicate: Predicate text, see the module docstring.

    Returns:
        A function taking a record and returning ``True`` when it passes.
        The function may raise :class:`MissingResponseData`.

    Raises:
        ConfigError: If the predicate does not match the grammar.
    """
    text = predicate.strip() if isinstance(predicate, str) else ""

    match = _STATUS_COMPARE_RE.match(text)
    if match:
        compare = OPERATORS[match.group(1)]
        expected = int(match.group(2))
        return lambda record: compare(_status(record), expected)

    match = _STATUS_IN_RE.match(text)
    if match:
        allowed = frozenset(int(code) for code in match.group(1).split(","))
        return lambda record: _status(record) in allowed

    match = _DURATION_RE.match(text)
    if match:
        compare = OPERATORS[match.group(1)]
        bound = float(match.group(2))
        return lambda record: compare(_duration(record), bound)

    match = _HEADER_PRESENCE_RE.match(text)
    if match:
        name = match.group(1).strip()
        if match.group(2) == "exists":
            return lambda record: _header(record, name) is not None
        return lambda record: _header(record, name) is None

    match = _HEADER_COMPARE_RE.match(text)
    if match:
        name = match.group(1).strip()
        compare = OPERATORS[match.group(2)]
        expected_text = _unquote(match.group(3))
        return lambda record: compare(_header(record, name), expected_text)

    raise ConfigError(f"Unrecognised check predicate: {predicate!r}")


@dataclass(frozen=True)
class Check:
    """
    A named boolean assertion over one execution record.

    Attributes:
        name: Human-readable label reported in the summary.
        predicate: The original predicate text.
        metric: Name of the rate metric that receives this check's
            failure samples (``1`` on failure, ``0`` on success).
    """

    name: str
    predicate: str
    metric: str = DEFAULT_CHECK_METRIC
    _test: Callable[[Any], bool] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_test", compile_predicate(self.predicate))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Check:
        """
        Build a check from its scenario definition.

        Raises:
            ConfigError: If the name is missing or the predicate is invalid.
        """
        if not isinstance(data, Mapping):
            raise ConfigError(f"Check definition must be a mapping, got {data!r}")

        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ConfigError("Check 'name' is required")

        predicate = data.get("predicate")
        metric = data.get("metric", DEFAULT_CHECK_METRIC)
        if not isinstance(metric, str) or not metric.strip():
            raise ConfigError(f"Check {name!r} has an invalid metric name: {metric!r}")

        return cls(
            name=name.strip(),
            predicate=predicate,
            metric=metric.strip(),
        )

    def evaluate(self, record: Any) -> bool:
        """Return ``True`` if the record passes; missing data counts as a failure."""
        try:
            return bool(self._test(record))
        except (MissingResponseData, TypeError):
            return False
