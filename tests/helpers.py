"""
Test doubles for the HTTP layer.

:class:`FakeSession` stands in for ``requests.Session`` so executor,
scheduler and runner tests never open a socket.  Each instance answers
every request with the same configured response (or raises the
configured exception), optionally after a fixed delay.
"""

from __future__ import annotations

import threading
import time
from typing import Any

class FakeResponse:
    """Minimal stand-in for ``requests.Response``."""

    def __init__(self, status_code: int = 200, headers: dict[str, str] | None = None):
        self.status_code = status_code
        self.headers = headers or {}
        self.content = b"ok"


class FakeSession:
    """
    Configurable stand-in for ``requests.Session``.

    Args:
        status_code: Status returned for every request.
        headers: Response headers.
        delay: Seconds to sleep before answering, to model latency.
        error: Exception instance raised instead of answering.
    """

    instances: list[FakeSession] = []
    _instances_lock = threading.Lock()

    def __init__(
        self,
        status_code: int = 200,
        headers: dict[str, str] | None = None,
        delay: float = 0.0,
        error: Exception | None = None,
    ):
        self.status_code = status_code
        self.headers = headers or {}
        self.delay = delay
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self.closed = False
        with FakeSession._instances_lock:
            FakeSession.instances.append(self)

    def request(self, **kwargs: Any) -> FakeResponse:
        self.calls.append(kwargs)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return FakeResponse(self.status_code, dict(self.headers))

    def close(self) -> None:
        self.closed = True


def session_factory(**kwargs: Any):
    """Return a zero-argument factory producing ``FakeSession(**kwargs)``."""
    return lambda: FakeSession(**kwargs)


class StepClock:
    """Deterministic clock advancing by *step* seconds on every call."""

    def __init__(self, step: float):
        self.step = step
        self.now = 0.0

    def __call__(self) -> float:
        current = self.now
        self.now += self.step
        return current
