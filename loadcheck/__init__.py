"""
loadcheck: HTTP load generation with pass/fail thresholds.

Scenarios are plain YAML or JSON documents describing a ramp of virtual
users, an ordered list of HTTP steps with checks, and thresholds over
the aggregated metrics.  ``loadcheck run scenario.yml`` drives the
scenario, writes a JSON summary and exits non-zero when a threshold is
breached.
"""

__version__ = "0.1.0"
