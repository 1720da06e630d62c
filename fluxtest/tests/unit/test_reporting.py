"""Unit tests for reporters and the exception hierarchy."""

from __future__ import annotations

import pytest
from structlog.testing import capture_logs

from fluxtest.errors import (
    ConvergenceError,
    ExecutionError,
    HarnessError,
    NotConverged,
    PollingTimeoutError,
    SetupError,
    ToolOutputError,
)
from fluxtest.reporting import PytestReporter, SuiteReporter


class TestSuiteReporter:
    """Tests for SuiteReporter."""

    def test_fatal_raises_setup_error(self) -> None:
        """Test a suite failure becomes SetupError chained to its cause."""
        cause = ExecutionError("minikube", ["ip"], "", 1)
        with pytest.raises(SetupError, match="cluster unreachable") as exc_info:
            SuiteReporter().fatal("cluster unreachable", cause)
        assert exc_info.value.__cause__ is cause

    def test_error_is_fatal(self) -> None:
        """Test setup has no non-fatal failures."""
        with pytest.raises(SetupError):
            SuiteReporter().error("known_hosts empty")

    def test_bind_keeps_kind(self) -> None:
        bound = SuiteReporter().bind(step="bootstrap")
        assert isinstance(bound, SuiteReporter)


class TestPytestReporter:
    """Tests for PytestReporter."""

    def test_error_records_and_continues(self) -> None:
        """Test error() records the failure without raising."""
        reporter = PytestReporter()
        reporter.error("old sidecar port 30031 still open")
        assert reporter.errors == ["old sidecar port 30031 still open"]

    def test_check_fails_with_all_errors(self) -> None:
        """Test check() fails the test listing every recorded error."""
        reporter = PytestReporter()
        reporter.error("first")
        reporter.error("second")
        with pytest.raises(pytest.fail.Exception, match="2 error") as exc_info:
            reporter.check()
        assert "- first" in str(exc_info.value)
        assert "- second" in str(exc_info.value)

    def test_check_passes_without_errors(self) -> None:
        PytestReporter().check()

    def test_fatal_fails_immediately(self) -> None:
        with pytest.raises(pytest.fail.Exception, match="sync timed out"):
            PytestReporter().fatal("sync timed out")

    def test_bound_copies_share_errors(self) -> None:
        """Test errors recorded through a bound copy reach the original."""
        reporter = PytestReporter()
        reporter.bind(harness="test_chart").error("release not deployed")
        assert reporter.errors == ["release not deployed"]

    def test_for_test_binds_node_id(self) -> None:
        """Test log lines carry the test's node id."""
        with capture_logs() as logs:
            reporter = PytestReporter.for_test("tests/e2e/test_sync_e2e.py::TestSync::test_sync")
            reporter.log.info("pushing", ref="HEAD")

        assert logs[0]["test"] == "tests/e2e/test_sync_e2e.py::TestSync::test_sync"
        assert logs[0]["ref"] == "HEAD"


class TestErrors:
    """Tests for the exception hierarchy."""

    def test_hierarchy(self) -> None:
        assert issubclass(SetupError, HarnessError)
        assert issubclass(ExecutionError, HarnessError)
        assert issubclass(ToolOutputError, HarnessError)
        assert issubclass(NotConverged, ConvergenceError)
        assert issubclass(PollingTimeoutError, ConvergenceError)
        assert issubclass(PollingTimeoutError, TimeoutError)

    def test_execution_error_message(self) -> None:
        """Test the message names the command and carries its output."""
        err = ExecutionError("git", ["push", "-u", "origin", "master"], "fatal: no remote\n", 128)
        assert str(err) == (
            "error running ['git', 'push', '-u', 'origin', 'master']: exit status 128\n"
            "Output:\nfatal: no remote\n"
        )

    def test_execution_error_with_exception_cause(self) -> None:
        err = ExecutionError("helm", ["history"], "", TimeoutError("deadline exceeded"))
        assert err.returncode is None
        assert "deadline exceeded" in str(err)

    def test_not_converged_message(self) -> None:
        err = NotConverged("sync tag flux-sync", "abc123", "def456")
        assert str(err) == "sync tag flux-sync is 'def456', expected 'abc123'"

    def test_polling_timeout_without_last_error(self) -> None:
        err = PollingTimeoutError("release deployed", 120.0)
        assert str(err) == "Timeout waiting for release deployed after 120.0s"
