"""
Unit tests for the command-line entry point and its exit codes.

``Runner`` is swapped for a partial bound to fake sessions, so the CLI
is exercised end to end without network traffic.
"""

import functools
import threading

import pytest
import requests
import yaml

from loadcheck import cli
from loadcheck.runner import Runner
from loadcheck.summary import read_summary
from tests.helpers import FakeSession, session_factory

pytestmark = pytest.mark.unit


@pytest.fixture
def install_fake_target(monkeypatch):
    """Make the CLI's runner use fake sessions configured by the test."""

    def _install(**session_kwargs):
        monkeypatch.setattr(
            "loadcheck.cli.Runner",
            functools.partial(Runner, session_factory=session_factory(**session_kwargs)),
        )

    return _install


@pytest.fixture
def scenario_file(tmp_path, scenario_definition):
    path = tmp_path / "scenario.yml"
    path.write_text(yaml.safe_dump(scenario_definition), encoding="utf-8")
    return path


def test_passing_run_exits_zero_and_writes_summary(install_fake_target, scenario_file, tmp_path, capsys):
    # Arrange
    install_fake_target(delay=0.05)
    summary_path = tmp_path / "results" / "summary.json"

    # Act
    exit_code = cli.main(["run", str(scenario_file), "--summary-export", str(summary_path)])

    # Assert
    assert exit_code == cli.EXIT_PASS
    assert summary_path.exists()
    assert capsys.readouterr().out.rstrip().endswith("Overall: PASS")


def test_failing_run_exits_threshold_breach(install_fake_target, scenario_file, tmp_path, capsys):
    install_fake_target(status_code=500)

    exit_code = cli.main(["run", str(scenario_file), "--summary-export", str(tmp_path / "s.json")])

    assert exit_code == cli.EXIT_THRESHOLD_BREACH
    output = capsys.readouterr().out
    assert "rate<0.1" in output
    assert output.rstrip().endswith("Overall: FAIL")


def test_malformed_scenario_exits_before_any_request(install_fake_target, tmp_path, capsys):
    # Arrange
    install_fake_target()
    path = tmp_path / "bad.yml"
    path.write_text(
        "baseUrl: http://target.test\nstages: [{duration: -1, target: 5}]\nsteps: [{path: /}]\n",
        encoding="utf-8",
    )
    summary_path = tmp_path / "summary.json"

    # Act
    exit_code = cli.main(["run", str(path), "--summary-export", str(summary_path)])

    # Assert
    assert exit_code == cli.EXIT_CONFIG_ERROR
    assert FakeSession.instances == []
    assert not summary_path.exists()
    assert "Configuration error" in capsys.readouterr().err


def test_summary_path_from_scenario_options(install_fake_target, tmp_path, scenario_definition):
    install_fake_target()
    summary_path = tmp_path / "from-options.json"
    scenario_definition["options"] = {"summaryExport": str(summary_path)}
    path = tmp_path / "scenario.yml"
    path.write_text(yaml.safe_dump(scenario_definition), encoding="utf-8")

    cli.main(["--quiet", "run", str(path)])

    assert summary_path.exists()


def test_check_re_evaluates_saved_summary(install_fake_target, scenario_file, tmp_path, scenario_definition, capsys):
    # Arrange: a passing run, then a stricter latency limit
    install_fake_target(delay=0.05)
    summary_path = tmp_path / "summary.json"
    assert cli.main(["run", str(scenario_file), "--summary-export", str(summary_path)]) == cli.EXIT_PASS
    scenario_definition["thresholds"] = {"http_req_duration": ["p(95)<1"]}
    strict_path = tmp_path / "strict.yml"
    strict_path.write_text(yaml.safe_dump(scenario_definition), encoding="utf-8")
    capsys.readouterr()

    # Act
    exit_code = cli.main(["check", str(summary_path), "--scenario", str(strict_path)])

    # Assert
    assert exit_code == cli.EXIT_THRESHOLD_BREACH
    assert "p(95)<1" in capsys.readouterr().out


def test_check_with_missing_summary_is_config_error(scenario_file, tmp_path):
    exit_code = cli.main(["check", str(tmp_path / "missing.json"), "--scenario", str(scenario_file)])

    assert exit_code == cli.EXIT_CONFIG_ERROR


def test_aborted_run_exits_aborted(monkeypatch, scenario_file, tmp_path):
    """An operator abort is reported distinctly even though a summary is written."""

    class _CancellingRunner(Runner):
        def run(self):
            threading.Timer(0.1, self.cancel).start()
            return super().run()

    monkeypatch.setattr(
        "loadcheck.cli.Runner",
        functools.partial(_CancellingRunner, session_factory=session_factory()),
    )
    summary_path = tmp_path / "summary.json"

    exit_code = cli.main(["run", str(scenario_file), "--summary-export", str(summary_path)])

    assert exit_code == cli.EXIT_ABORTED
    assert summary_path.exists()


def test_unreachable_target_is_a_breach_with_summary(install_fake_target, scenario_file, tmp_path, capsys):
    """A target that refuses every connection fails thresholds; it is not a config error."""
    # Arrange
    install_fake_target(error=requests.ConnectionError("connection refused"))
    summary_path = tmp_path / "summary.json"

    # Act
    exit_code = cli.main(["run", str(scenario_file), "--summary-export", str(summary_path)])

    # Assert
    assert exit_code == cli.EXIT_THRESHOLD_BREACH
    summary = read_summary(summary_path)
    assert summary["totals"]["requests"] == summary["totals"]["failedRequests"] > 0
    assert summary["metrics"]["http_req_duration"]["count"] == summary["totals"]["requests"]
    assert summary["metrics"]["http_req_duration"]["thresholds"]["p(95)<500"]["ok"] is True
    assert summary["metrics"]["errors"]["thresholds"]["rate<0.1"]["ok"] is False
    assert capsys.readouterr().out.rstrip().endswith("Overall: FAIL")


def test_abort_before_first_sample_still_writes_summary(monkeypatch, tmp_path, scenario_definition, capsys):
    class _ImmediatelyCancelledRunner(Runner):
        def run(self):
            self.cancel()
            return super().run()

    # Arrange
    monkeypatch.setattr(
        "loadcheck.cli.Runner",
        functools.partial(_ImmediatelyCancelledRunner, session_factory=session_factory()),
    )
    scenario_definition["startVUs"] = 0
    path = tmp_path / "scenario.yml"
    path.write_text(yaml.safe_dump(scenario_definition), encoding="utf-8")
    summary_path = tmp_path / "summary.json"

    # Act
    exit_code = cli.main(["run", str(path), "--summary-export", str(summary_path)])

    # Assert
    assert exit_code == cli.EXIT_ABORTED
    summary = read_summary(summary_path)
    assert summary["state"]["aborted"] is True
    assert summary["metrics"]["http_req_duration"]["thresholds"]["p(95)<500"] == {
        "ok": False,
        "actual": None,
    }
    assert "SKIP" in capsys.readouterr().out


def test_run_and_check_print_the_same_threshold_table(install_fake_target, scenario_file, tmp_path, capsys):
    # Arrange
    install_fake_target(delay=0.01)
    summary_path = tmp_path / "summary.json"
    cli.main(["run", str(scenario_file), "--summary-export", str(summary_path)])
    run_lines = set(capsys.readouterr().out.splitlines())

    # Act
    exit_code = cli.main(["check", str(summary_path), "--scenario", str(scenario_file)])
    check_lines = capsys.readouterr().out.splitlines()

    # Assert
    assert exit_code == cli.EXIT_PASS
    threshold_lines = [line for line in check_lines if "p(95)<500" in line or "rate<0.1" in line]
    assert len(threshold_lines) == 2
    assert set(threshold_lines) <= run_lines
    assert check_lines[0] in run_lines
