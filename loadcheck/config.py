"""
Engine configuration.

Defines configuration classes for the environments loadcheck runs in.
Each value can be overridden through an environment variable, and the
``get_config`` factory picks the class based on ``LOADCHECK_ENV`` (or an
explicit key).  Scenario ``options`` and CLI flags take precedence over
anything set here.

Key Concepts Demonstrated:
- Class-based configuration with inheritance for shared defaults
- Environment-variable overrides for CI deployability
- A testing configuration with a fast scheduler tick and short timeouts
"""

from __future__ import annotations

import os


class Config:
    """
    Base configuration shared by every environment.

    All values are read once at import time, following 12-factor app
    conventions.
    """

    # Per-request timeout in seconds.  A request exceeding it is recorded
    # as a failed request; it is never retried.
    REQUEST_TIMEOUT: float = float(os.environ.get("LOADCHECK_REQUEST_TIMEOUT", "30"))

    # Seconds between scheduler reconciliation passes.
    SCHEDULER_TICK: float = float(os.environ.get("LOADCHECK_SCHEDULER_TICK", "0.5"))

    # Seconds to wait for in-flight virtual users after the last stage ends
    # or the run is cancelled.
    GRACEFUL_STOP: float = float(os.environ.get("LOADCHECK_GRACEFUL_STOP", "30"))

    # Where the machine-readable run summary is written.
    SUMMARY_PATH: str = os.environ.get("LOADCHECK_SUMMARY_PATH", "performance-results.json")

    LOG_LEVEL: str = os.environ.get("LOADCHECK_LOG_LEVEL", "INFO")


class DevelopmentConfig(Config):
    """Local runs against a developer's own stack."""

    LOG_LEVEL: str = os.environ.get("LOADCHECK_LOG_LEVEL", "DEBUG")


class TestingConfig(Config):
    """
    Test-suite overrides.

    A 10 ms tick lets scheduler tests finish in well under a second, and
    short timeouts keep simulated slow targets from stalling the suite.
    """

    REQUEST_TIMEOUT: float = float(os.environ.get("TEST_LOADCHECK_REQUEST_TIMEOUT", "2"))
    SCHEDULER_TICK: float = float(os.environ.get("TEST_LOADCHECK_SCHEDULER_TICK", "0.01"))
    GRACEFUL_STOP: float = float(os.environ.get("TEST_LOADCHECK_GRACEFUL_STOP", "2"))


class ProductionConfig(Config):
    """CI / pipeline runs; every value is expected from the environment."""

    LOG_LEVEL: str = os.environ.get("LOADCHECK_LOG_LEVEL", "INFO")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": ProductionConfig,
}


def get_config(env: str | None = None) -> type[Config]:
    """
    Return the configuration class for the given environment.

    Args:
        env: One of ``"development"``, ``"testing"`` or ``"production"``.
            When *None*, the ``LOADCHECK_ENV`` environment variable is
            consulted, falling back to ``"production"`` if unset.

    Returns:
        The ``Config`` subclass for the environment, or
        ``ProductionConfig`` if the key is unrecognised.
    """
    if env is None:
        env = os.environ.get("LOADCHECK_ENV", "production")
    return config.get(env, config["default"])
