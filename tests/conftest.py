"""
Shared pytest fixtures for the loadcheck test suite.

Fixtures follow the Arrange-Act-Assert (AAA) pattern and keep every
test isolated: unit tests talk to :class:`~tests.helpers.FakeSession`
objects, while integration tests share one live Flask target server
started in a background thread.

Key Concepts Demonstrated:
- Fixture scopes (function vs. session)
- Scenario definition factory for concise test setup
- Live server fixture built on werkzeug's ``make_server``
"""

import os
import threading
from collections.abc import Generator
from typing import Any

import pytest
from faker import Faker
from flask import Flask, Response, jsonify
from werkzeug.serving import make_server

# Set testing environment before importing loadcheck
os.environ["LOADCHECK_ENV"] = "testing"

from loadcheck.config import get_config
from loadcheck.scenario import Scenario, load
from tests.helpers import FakeSession

fake = Faker()


# -----------------------------------------------------------------------------
# Configuration Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture(scope="session")
def settings():
    """Testing configuration class (10 ms scheduler tick, short timeouts)."""
    return get_config("testing")


@pytest.fixture(autouse=True)
def reset_fake_sessions():
    """Forget sessions created by previous tests."""
    FakeSession.instances.clear()
    yield
    FakeSession.instances.clear()


# -----------------------------------------------------------------------------
# Scenario Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def scenario_definition() -> dict[str, Any]:
    """
    Provide a minimal valid scenario definition.

    One virtual user from the start, a single short stage and one step
    with a status check, mirroring the homepage step of a baseline run.

    Returns:
        A mutable dict tests can tweak before calling ``load``.
    """
    return {
        "name": fake.slug(),
        "baseUrl": "http://target.test",
        "startVUs": 1,
        "stages": [{"duration": 0.3, "target": 1}],
        "steps": [
            {
                "name": "Homepage",
                "path": "/",
                "checks": [
                    {"name": "Homepage status is 200", "predicate": "status == 200"},
                    {"name": "Homepage load time < 500ms", "predicate": "duration < 500"},
                ],
                "thinkTimeMs": 10,
            }
        ],
        "thresholds": {
            "http_req_duration": ["p(95)<500"],
            "errors": ["rate<0.1"],
        },
    }


@pytest.fixture
def scenario_factory(scenario_definition):
    """
    Factory fixture for building validated scenarios.

    Keyword arguments replace top-level keys of the default definition.

    Example:
        def test_something(scenario_factory):
            scenario = scenario_factory(stages=[{"duration": 1, "target": 2}])
    """

    def _create_scenario(**overrides: Any) -> Scenario:
        definition = dict(scenario_definition)
        definition.update(overrides)
        return load(definition)

    return _create_scenario


# -----------------------------------------------------------------------------
# Live Target Server
# -----------------------------------------------------------------------------

def create_target_app() -> Flask:
    """
    Build the Flask app used as the load target in integration tests.

    Routes mirror a small web application: an HTML homepage, a JSON
    version endpoint, a cacheable static asset and an endpoint that
    always fails.
    """
    app = Flask(__name__)

    @app.route("/")
    def homepage() -> Response:
        return Response("<html><body>Mail</body></html>", mimetype="text/html")

    @app.route("/api/v1/get/status/version")
    def version() -> tuple[Response, int]:
        return jsonify({"version": "2024-01"}), 200

    @app.route("/css/app.css")
    def stylesheet() -> Response:
        response = Response("body { margin: 0; }", mimetype="text/css")
        response.headers["Cache-Control"] = "public, max-age=3600"
        return response

    @app.route("/broken")
    def broken() -> tuple[Response, int]:
        return jsonify({"error": "boom"}), 500

    return app


@pytest.fixture(scope="session")
def live_target() -> Generator[str, None, None]:
    """
    Start the target app on an ephemeral port in a background thread.

    Yields:
        str: Base URL of the running server.
    """
    server = make_server("127.0.0.1", 0, create_target_app(), threaded=True)
    server_thread = threading.Thread(target=server.serve_forever, daemon=True)
    server_thread.start()

    yield f"http://127.0.0.1:{server.server_port}"

    server.shutdown()
    server_thread.join(timeout=5)
