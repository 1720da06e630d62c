"""Command execution for harness tool wrappers.

CommandRunner is the only place the harness starts processes. Every
invocation is logged through the caller's reporter before it runs, output
is captured with stderr folded into stdout, and failures become
ExecutionError carrying the program, arguments and captured output.

Three flavours cover every call site:

- ``run``: return output, raise ExecutionError on failure.
- ``must``: return output, fail the enclosing unit of work on failure.
- ``ignore_errors``: return output, or the partial output on failure. For
  idempotent "delete if exists" calls where absence is not an error.

Example:
    >>> runner = CommandRunner(SuiteReporter())
    >>> runner.must("ssh-keygen", "-t", "rsa", "-N", "", "-f", key_path)
    >>> runner.ignore_errors("kubectl", "delete", "secret", "flux-git-deploy")
"""

from __future__ import annotations

import copy
import os
import subprocess
from collections.abc import Mapping

from fluxtest.deadline import Deadline, DeadlineLike
from fluxtest.errors import ExecutionError
from fluxtest.reporting import Reporter

# Applied when a caller passes no deadline; no call in the harness is unbounded
DEFAULT_COMMAND_TIMEOUT = 900.0


def _decode(output: str | bytes | None) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


class CommandRunner:
    """Run external commands on behalf of one unit of work.

    Attributes:
        reporter: Where invocations are logged and ``must`` failures go.
        env: Environment overrides applied to every command this runner
            starts, on top of the inherited process environment.
    """

    def __init__(
        self,
        reporter: Reporter,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.reporter = reporter
        self.env = dict(env or {})

    def with_reporter(self, reporter: Reporter) -> CommandRunner:
        clone = copy.copy(self)
        clone.reporter = reporter
        return clone

    def with_env(self, **env: str) -> CommandRunner:
        """Return a copy whose commands also get ``env``."""
        clone = copy.copy(self)
        clone.env = {**self.env, **env}
        return clone

    def run(
        self,
        program: str,
        *args: str,
        deadline: DeadlineLike | None = None,
        env: Mapping[str, str] | None = None,
        stdin: str | None = None,
    ) -> str:
        """Run a command and return its combined output.

        Args:
            program: Program to run, resolved on PATH.
            *args: Program arguments.
            deadline: Deadline or timeout in seconds bounding the whole
                call, process start included.
            env: Environment overrides for this call only.
            stdin: Text fed to the process's standard input.

        Returns:
            Combined stdout and stderr.

        Raises:
            ExecutionError: On non-zero exit, deadline exceedance, or if
                the program cannot be started.
        """
        effective = Deadline.resolve(deadline, DEFAULT_COMMAND_TIMEOUT)
        argv = [program, *args]
        self.reporter.log.info("running", argv=argv)

        overrides = {**self.env, **(env or {})}
        full_env = {**os.environ, **overrides} if overrides else None

        if effective.expired:
            raise ExecutionError(
                program, args, "", TimeoutError(f"deadline expired before starting {program}")
            )
        try:
            completed = subprocess.run(
                argv,
                input=stdin,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=full_env,
                timeout=effective.remaining(),
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ExecutionError(program, args, _decode(exc.output), exc) from exc
        except OSError as exc:
            raise ExecutionError(program, args, "", exc) from exc

        output = _decode(completed.stdout)
        if completed.returncode != 0:
            raise ExecutionError(program, args, output, completed.returncode)
        return output

    def must(
        self,
        program: str,
        *args: str,
        deadline: DeadlineLike | None = None,
        env: Mapping[str, str] | None = None,
        stdin: str | None = None,
    ) -> str:
        """Like ``run``, but any failure fails the enclosing unit of work."""
        try:
            return self.run(program, *args, deadline=deadline, env=env, stdin=stdin)
        except ExecutionError as exc:
            self.reporter.fatal(str(exc), exc)

    def ignore_errors(
        self,
        program: str,
        *args: str,
        deadline: DeadlineLike | None = None,
        env: Mapping[str, str] | None = None,
        stdin: str | None = None,
    ) -> str:
        """Like ``run``, but a failure returns the partial output."""
        try:
            return self.run(program, *args, deadline=deadline, env=env, stdin=stdin)
        except ExecutionError as exc:
            self.reporter.log.debug(
                "ignored_command_failure",
                argv=[program, *args],
                returncode=exc.returncode,
            )
            return exc.output


__all__ = ["DEFAULT_COMMAND_TIMEOUT", "CommandRunner"]
