"""Logger and failure channel threaded through every harness component.

There is no module-level logger in the harness's data path. Setup, each
Harness, and each capability hold a Reporter, which pairs a structlog bound
logger with a way to fail the current unit of work:

- SuiteReporter: used during one-time suite setup. ``fatal`` raises
  SetupError, which aborts the whole run.
- PytestReporter: bound to a single test. ``error`` records a failure and
  lets the test continue, ``fatal`` fails the test immediately, and
  ``check`` fails the test at teardown if any errors were recorded.

Example:
    >>> reporter = PytestReporter.for_test(request.node.nodeid)
    >>> reporter.log.info("pushing", ref="HEAD")
    >>> reporter.error("old sidecar port 30031 still open")
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, NoReturn

import pytest
import structlog

from fluxtest.errors import SetupError

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger


class Reporter(ABC):
    """Logger plus failure channel for one unit of work.

    Attributes:
        log: structlog bound logger all components of the unit log through.
    """

    def __init__(self, log: FilteringBoundLogger | None = None) -> None:
        self.log = log if log is not None else structlog.get_logger("fluxtest")

    @abstractmethod
    def fatal(self, message: str, cause: BaseException | None = None) -> NoReturn:
        """Fail the enclosing unit of work; never returns."""
        ...

    def error(self, message: str) -> None:
        """Record a failure without stopping.

        The default treats every failure as fatal. Reporters for units of
        work that can keep going after a failure override this.
        """
        self.fatal(message)

    def bind(self, **context: Any) -> Reporter:
        """Return a reporter of the same kind whose logger carries context."""
        clone = self._copy()
        clone.log = self.log.bind(**context)
        return clone

    @abstractmethod
    def _copy(self) -> Reporter: ...


class SuiteReporter(Reporter):
    """Reporter for process-wide suite setup and teardown."""

    def fatal(self, message: str, cause: BaseException | None = None) -> NoReturn:
        self.log.error("setup_failed", reason=message)
        raise SetupError(message) from cause

    def _copy(self) -> SuiteReporter:
        return SuiteReporter(self.log)


class PytestReporter(Reporter):
    """Reporter bound to a single pytest test function.

    Failures recorded with ``error`` are shared between a reporter and the
    copies made by ``bind``, so capabilities rebound to the test report into
    the same list.

    Attributes:
        errors: Failure messages recorded so far.
    """

    def __init__(
        self,
        log: FilteringBoundLogger | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(log)
        self.errors = errors if errors is not None else []

    @classmethod
    def for_test(cls, nodeid: str) -> PytestReporter:
        """Create a reporter whose log lines carry the test's node id."""
        return cls(structlog.get_logger("fluxtest").bind(test=nodeid))

    def fatal(self, message: str, cause: BaseException | None = None) -> NoReturn:
        self.log.error("test_failed", reason=message)
        pytest.fail(message, pytrace=False)

    def error(self, message: str) -> None:
        self.log.error("test_error", reason=message)
        self.errors.append(message)

    def check(self) -> None:
        """Fail the test if any errors were recorded."""
        if self.errors:
            summary = "\n".join(f"- {e}" for e in self.errors)
            pytest.fail(f"{len(self.errors)} error(s) recorded:\n{summary}", pytrace=False)

    def _copy(self) -> PytestReporter:
        return PytestReporter(self.log, self.errors)


__all__ = ["PytestReporter", "Reporter", "SuiteReporter"]
