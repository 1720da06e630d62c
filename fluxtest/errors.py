"""Exception hierarchy for the fluxtest harness.

All harness exceptions inherit from HarnessError, so a test or fixture can
catch every harness failure with a single except clause.

Exception Hierarchy:
    HarnessError (base)
    ├── SetupError            # Suite setup failed, the whole run aborts
    ├── ExecutionError        # External command failed or timed out
    ├── ToolOutputError       # Tool output could not be parsed
    ├── ControllerAPIError    # Controller HTTP API unreachable or malformed
    └── ConvergenceError      # Observed state does not match the target
        ├── NotConverged      # Predicate-level "not yet", retried by polling
        └── PollingTimeoutError (also a TimeoutError)

Absence (a missing ref, an unknown release, an already deleted resource)
is never an exception: capabilities return None or an empty list.

Example:
    >>> from fluxtest.errors import ExecutionError
    >>> raise ExecutionError("git", ["push"], "fatal: no remote", 128)
    Traceback (most recent call last):
        ...
    ExecutionError: error running ['git', 'push']: exit status 128
    Output:
    fatal: no remote
"""

from __future__ import annotations

from collections.abc import Sequence


class HarnessError(Exception):
    """Base exception for all harness errors."""

    pass


class SetupError(HarnessError):
    """Raised when one-time suite setup fails.

    A SetupError is never a per-test failure. The session fixture turns it
    into ``pytest.exit`` so no test runs against a half-built environment.
    """

    pass


class ExecutionError(HarnessError):
    """Raised when an external command fails.

    The captured combined output is preserved so the failure can be
    diagnosed without re-running the command.

    Attributes:
        command: Program name.
        args: Arguments passed to the program.
        output: Combined stdout and stderr captured before the failure.
        cause: Exit status, or the exception that stopped the process
            (timeout, program not found).
    """

    def __init__(
        self,
        command: str,
        args: Sequence[str],
        output: str,
        cause: int | BaseException,
    ) -> None:
        """Initialize ExecutionError.

        Args:
            command: Program name.
            args: Arguments passed to the program.
            output: Combined output captured so far.
            cause: Exit status or underlying exception.
        """
        self.command = command
        self.args_list = list(args)
        self.output = output
        self.cause = cause
        if isinstance(cause, int):
            reason = f"exit status {cause}"
        else:
            reason = str(cause) or type(cause).__name__
        argv = [command, *self.args_list]
        super().__init__(f"error running {argv}: {reason}\nOutput:\n{output}")

    @property
    def returncode(self) -> int | None:
        """Exit status, or None if the process never exited on its own."""
        return self.cause if isinstance(self.cause, int) else None


class ToolOutputError(HarnessError):
    """Raised when a tool returns output the harness cannot parse."""

    def __init__(self, tool: str, reason: str, output: str) -> None:
        self.tool = tool
        self.reason = reason
        self.output = output
        preview = output.strip()[:200]
        super().__init__(f"{tool} returned {reason}\nOutput preview: {preview}")


class ControllerAPIError(HarnessError):
    """Raised when the GitOps controller's HTTP API can't be read.

    Attributes:
        url: URL that was requested.
        reason: Transport error, HTTP status, or decoding problem.
    """

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"controller API request to {url} failed: {reason}")


class ConvergenceError(HarnessError):
    """Base for observed state not matching the expected target."""

    pass


class NotConverged(ConvergenceError):
    """Raised by a convergence predicate whose target is not reached yet.

    Attributes:
        what: What is being compared (e.g. "sync tag flux-sync").
        expected: Target value.
        observed: Last observed value, None if nothing was observed.
    """

    def __init__(self, what: str, expected: object, observed: object) -> None:
        self.what = what
        self.expected = expected
        self.observed = observed
        super().__init__(f"{what} is {observed!r}, expected {expected!r}")


class PollingTimeoutError(TimeoutError, ConvergenceError):
    """Raised when a polling deadline elapses before convergence.

    The message carries the last predicate error, so a timed-out test
    reports the last divergence it saw rather than a bare timeout.

    Attributes:
        description: What was being waited for.
        timeout: How long we waited, in seconds.
        last_error: Last exception raised by the predicate, if any.
    """

    def __init__(
        self,
        description: str,
        timeout: float,
        last_error: BaseException | None = None,
    ) -> None:
        self.description = description
        self.timeout = timeout
        self.last_error = last_error
        message = f"Timeout waiting for {description} after {timeout:.1f}s"
        if last_error is not None:
            message += f" (last error: {last_error})"
        super().__init__(message)


__all__ = [
    "ControllerAPIError",
    "ConvergenceError",
    "ExecutionError",
    "HarnessError",
    "NotConverged",
    "PollingTimeoutError",
    "SetupError",
    "ToolOutputError",
]
