"""Unit tests for the polling engine.

Tests for fluxtest.polling including PollingConfig, until(),
wait_for_condition() and tcp_check().
"""

from __future__ import annotations

import socket
import time
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from fluxtest.deadline import Deadline
from fluxtest.errors import NotConverged
from fluxtest.polling import (
    PollingConfig,
    PollingTimeoutError,
    tcp_check,
    until,
    wait_for_condition,
)


class TestPollingConfig:
    """Tests for PollingConfig Pydantic model."""

    def test_default_values(self) -> None:
        """Test PollingConfig has sensible defaults."""
        config = PollingConfig()
        assert config.timeout == pytest.approx(30.0)
        assert config.interval == pytest.approx(1.0)
        assert config.description == "condition"

    def test_frozen_model(self) -> None:
        """Test PollingConfig is immutable."""
        config = PollingConfig()
        with pytest.raises(ValidationError):
            config.timeout = 100.0

    def test_validation_timeout_non_negative(self) -> None:
        """Test timeout must be non-negative."""
        with pytest.raises(ValueError):
            PollingConfig(timeout=-1.0)

    def test_validation_interval_minimum(self) -> None:
        """Test interval has a minimum value."""
        with pytest.raises(ValueError):
            PollingConfig(interval=0.001)


class TestUntil:
    """Tests for until()."""

    def test_first_evaluation_is_immediate(self) -> None:
        """Test a predicate that succeeds at once is called exactly once, without sleeping."""
        calls = 0

        def predicate() -> str:
            nonlocal calls
            calls += 1
            return "abc123"

        with patch("fluxtest.polling.time.sleep") as sleep:
            result = until(predicate, 5.0, interval=1.0)

        assert result == "abc123"
        assert calls == 1
        sleep.assert_not_called()

    def test_returns_predicate_value_after_retries(self) -> None:
        """Test until keeps polling while the predicate raises, then returns its value."""
        calls = 0

        def predicate() -> int:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise NotConverged("revision", 3, calls)
            return calls

        assert until(predicate, 5.0, interval=0.01) == 3
        assert calls == 3

    def test_any_exception_is_retried(self) -> None:
        """Test errors other than NotConverged are retried too."""
        outcomes = iter([ConnectionError("refused"), KeyError("info"), "ok"])

        def predicate() -> str:
            outcome = next(outcomes)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        assert until(predicate, 5.0, interval=0.01) == "ok"

    def test_timeout_carries_last_error(self) -> None:
        """Test the timeout error reports the last divergence observed."""

        def predicate() -> None:
            raise NotConverged("sync tag flux-sync", "abc123", "def456")

        with pytest.raises(PollingTimeoutError) as exc_info:
            until(predicate, 0.2, interval=0.05, description="flux sync")

        err = exc_info.value
        assert "def456" in str(err)
        assert "flux sync" in str(err)
        assert isinstance(err.last_error, NotConverged)
        assert err.__cause__ is err.last_error
        assert err.timeout == pytest.approx(0.2)

    def test_timeout_is_a_timeout_error(self) -> None:
        """Test PollingTimeoutError can be caught as the builtin TimeoutError."""
        with pytest.raises(TimeoutError):
            until(lambda: 1 / 0, 0.05, interval=0.01)

    def test_respects_deadline(self) -> None:
        """Test polling stops within one interval of the deadline."""
        start = time.monotonic()
        with pytest.raises(PollingTimeoutError):
            until(lambda: 1 / 0, 0.3, interval=0.1)
        elapsed = time.monotonic() - start
        assert elapsed >= 0.3
        assert elapsed < 0.3 + 0.1 + 0.2

    def test_sleep_clamped_to_remaining_time(self) -> None:
        """Test a long interval does not overshoot a short deadline."""
        start = time.monotonic()
        with pytest.raises(PollingTimeoutError):
            until(lambda: 1 / 0, 0.2, interval=10.0)
        assert time.monotonic() - start < 1.0

    def test_interval_is_constant(self) -> None:
        """Test every sleep uses the same interval."""

        calls = 0

        def predicate() -> int:
            nonlocal calls
            calls += 1
            if calls < 5:
                raise NotConverged("x", 5, calls)
            return calls

        with patch("fluxtest.polling.time.sleep") as sleep:
            until(predicate, 60.0, interval=0.25)

        delays = [c.args[0] for c in sleep.call_args_list]
        assert delays == [pytest.approx(0.25)] * 4

    def test_accepts_shared_deadline(self) -> None:
        """Test a Deadline object is used as-is rather than restarted."""
        deadline = Deadline.after(0.2)
        time.sleep(0.2)
        with pytest.raises(PollingTimeoutError):
            until(lambda: 1 / 0, deadline, interval=0.01)

    def test_expired_deadline_still_evaluates_once(self) -> None:
        """Test the predicate gets one evaluation even on an expired deadline."""
        deadline = Deadline.after(0.0)
        assert until(lambda: "ready", deadline) == "ready"

    def test_uses_config_defaults(self) -> None:
        """Test config supplies timeout, interval and description."""
        config = PollingConfig(timeout=0.1, interval=0.02, description="release deployed")
        with pytest.raises(PollingTimeoutError, match="release deployed"):
            until(lambda: 1 / 0, config=config)


class TestConvergence:
    """Sync-tag convergence as the harness polls it."""

    def test_converged_tag_returns_within_one_interval(self) -> None:
        """Test HEAD and sync tag already equal returns on the first evaluation."""
        refs = {"HEAD": "abc123", "flux-sync": "abc123"}

        def synced() -> str:
            if refs["flux-sync"] != refs["HEAD"]:
                raise NotConverged("sync tag flux-sync", refs["HEAD"], refs["flux-sync"])
            return refs["flux-sync"]

        start = time.monotonic()
        assert until(synced, 2.0, interval=0.5) == "abc123"
        assert time.monotonic() - start < 0.5

    def test_diverged_tag_times_out_naming_last_revision(self) -> None:
        """Test a tag stuck on another commit yields a timeout naming it."""
        refs = {"HEAD": "abc123", "flux-sync": "def456"}

        def synced() -> str:
            if refs["flux-sync"] != refs["HEAD"]:
                raise NotConverged("sync tag flux-sync", refs["HEAD"], refs["flux-sync"])
            return refs["flux-sync"]

        with pytest.raises(PollingTimeoutError, match="def456"):
            until(synced, 0.2, interval=0.05)

    def test_tag_catching_up_converges(self) -> None:
        """Test a tag that moves to HEAD mid-poll converges."""
        refs = {"HEAD": "abc123", "flux-sync": None}
        polls = 0

        def synced() -> str:
            nonlocal polls
            polls += 1
            if polls == 3:
                refs["flux-sync"] = "abc123"
            if refs["flux-sync"] != refs["HEAD"]:
                raise NotConverged("sync tag flux-sync", refs["HEAD"], refs["flux-sync"])
            return refs["flux-sync"]

        assert until(synced, 2.0, interval=0.01) == "abc123"
        assert polls == 3


class TestWaitForCondition:
    """Tests for wait_for_condition() function."""

    def test_returns_immediately_when_condition_true(self) -> None:
        """Test wait_for_condition returns immediately when condition is True."""
        call_count = 0

        def condition() -> bool:
            nonlocal call_count
            call_count += 1
            return True

        assert wait_for_condition(condition, timeout=5.0) is True
        assert call_count == 1

    def test_polls_until_condition_true(self) -> None:
        """Test wait_for_condition polls until condition becomes True."""
        call_count = 0

        def condition() -> bool:
            nonlocal call_count
            call_count += 1
            return call_count >= 3

        assert wait_for_condition(condition, timeout=5.0, interval=0.05) is True
        assert call_count == 3

    def test_raises_timeout_error(self) -> None:
        """Test wait_for_condition raises PollingTimeoutError on timeout."""
        with pytest.raises(PollingTimeoutError) as exc_info:
            wait_for_condition(lambda: False, timeout=0.2, interval=0.05, description="never true")

        assert "never true" in str(exc_info.value)
        assert exc_info.value.timeout == pytest.approx(0.2)

    def test_no_raise_on_timeout_returns_false(self) -> None:
        """Test wait_for_condition returns False when raise_on_timeout=False."""
        result = wait_for_condition(
            lambda: False,
            timeout=0.1,
            interval=0.05,
            raise_on_timeout=False,
        )
        assert result is False

    def test_condition_exceptions_count_as_not_met(self) -> None:
        """Test exceptions from the condition are retried and reported."""

        def condition() -> bool:
            raise ConnectionError("connection refused")

        with pytest.raises(PollingTimeoutError, match="connection refused"):
            wait_for_condition(condition, timeout=0.1, interval=0.05)


class TestTcpCheck:
    """Tests for tcp_check()."""

    def test_open_port(self) -> None:
        """Test a listening socket is reported open."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
            server.bind(("127.0.0.1", 0))
            server.listen(1)
            port = server.getsockname()[1]
            assert tcp_check("127.0.0.1", port, timeout=1.0) is True

    def test_closed_port(self) -> None:
        """Test a port nobody listens on is reported closed."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
            probe.bind(("127.0.0.1", 0))
            port = probe.getsockname()[1]
        assert tcp_check("127.0.0.1", port, timeout=1.0) is False
