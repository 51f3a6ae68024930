"""
Exception taxonomy for loadcheck.

Only :class:`ConfigError` ever reaches the top level: it is raised while
loading a scenario or resolving thresholds and aborts the process before
(or instead of) a verdict.  :class:`NetworkError` and
:class:`RequestTimeoutError` are never raised out of the request
executor; they are attached to an ``ExecutionRecord`` so the failure
shows up as metric samples instead of stopping the run.
"""

from __future__ import annotations


class ConfigError(ValueError):
    """Malformed scenario, check or threshold definition."""


class NetworkError(Exception):
    """Transport-level failure for a single request (DNS, refused, TLS...)."""


class RequestTimeoutError(NetworkError):
    """The request did not complete within the configured timeout."""
