"""Eventual-consistency polling for convergence checks.

Everything the suite asserts about the system under test converges
asynchronously: the sync tag catches up with HEAD, a Helm release reaches
``deployed``, a service starts answering with the new message. Every one of
those checks goes through ``until``.

Functions:
    until: Evaluate a predicate until it stops raising or a deadline passes
    wait_for_condition: Boolean adapter over ``until``

Cadence:
    The predicate is evaluated once immediately, then once per interval.
    The interval is constant (no backoff): convergence windows are a few
    seconds and polling resolution matters most near the end of them.
    A predicate call in flight is never interrupted; predicates bound their
    own commands with short deadlines.

Example:
    from fluxtest.polling import until
    from fluxtest.errors import NotConverged

    def synced() -> str:
        git.fetch_tags()
        head, tag = git.revision("HEAD"), git.revision("flux-sync")
        if tag != head:
            raise NotConverged("sync tag flux-sync", head, tag)
        return tag

    until(synced, Deadline.after(120.0), description="flux sync")
"""

from __future__ import annotations

import socket
import time
from collections.abc import Callable
from typing import TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field

from fluxtest.deadline import Deadline, DeadlineLike
from fluxtest.errors import PollingTimeoutError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_INTERVAL = 1.0


class PollingConfig(BaseModel):
    """Configuration for polling utilities.

    Attributes:
        timeout: Maximum wait time in seconds. Defaults to 30.0.
        interval: Poll interval in seconds. Defaults to 1.0.
        description: Description for error messages. Defaults to "condition".

    Example:
        config = PollingConfig(timeout=60.0, interval=5.0)
        until(release_deployed, config=config)
    """

    model_config = ConfigDict(frozen=True)

    timeout: float = Field(
        default=30.0,
        ge=0.0,
        description="Maximum wait time in seconds",
    )
    interval: float = Field(
        default=DEFAULT_INTERVAL,
        ge=0.01,
        description="Poll interval in seconds",
    )
    description: str = Field(
        default="condition",
        min_length=1,
        description="Description for error messages",
    )


def until(
    predicate: Callable[[], T],
    deadline: DeadlineLike | None = None,
    *,
    interval: float | None = None,
    description: str | None = None,
    config: PollingConfig | None = None,
) -> T:
    """Evaluate ``predicate`` until it returns or the deadline passes.

    A predicate signals "not converged yet" by raising. Any exception is
    retried: the engine does not tell transient errors from permanent ones.
    The last exception is kept and attached to the timeout error.

    Args:
        predicate: Zero-argument callable. Returning normally is success.
        deadline: Deadline or timeout in seconds. Defaults to the config's
            timeout (30s without a config).
        interval: Seconds between evaluations. Overrides the config.
        description: What is being waited for, used in the timeout message.
        config: Optional PollingConfig supplying defaults.

    Returns:
        Whatever the successful predicate call returned.

    Raises:
        PollingTimeoutError: If the deadline passes without success. Its
            ``last_error`` (and ``__cause__``) is the last predicate error.
    """
    cfg = config or PollingConfig()
    effective = Deadline.resolve(deadline, cfg.timeout)
    step = interval if interval is not None else cfg.interval
    what = description or cfg.description
    last_error: Exception | None = None
    attempts = 0

    while True:
        attempts += 1
        try:
            result = predicate()
        except Exception as e:  # noqa: BLE001
            last_error = e
        else:
            if attempts > 1:
                logger.debug("converged", description=what, attempts=attempts)
            return result

        remaining = effective.remaining()
        if remaining <= 0:
            logger.debug(
                "polling_timed_out",
                description=what,
                attempts=attempts,
                last_error=str(last_error),
            )
            raise PollingTimeoutError(what, effective.timeout, last_error) from last_error

        # Sleep for interval, but don't overshoot the deadline
        time.sleep(min(step, remaining))


def wait_for_condition(
    condition: Callable[[], bool],
    timeout: float = 30.0,
    interval: float = DEFAULT_INTERVAL,
    description: str = "condition",
    *,
    raise_on_timeout: bool = True,
) -> bool:
    """Poll until condition is True or timeout.

    Args:
        condition: Callable returning True when the condition is met.
            Exceptions raised by it count as "not yet".
        timeout: Maximum wait time in seconds. Defaults to 30.0.
        interval: Poll interval in seconds. Defaults to 1.0.
        description: Description for error messages. Defaults to "condition".
        raise_on_timeout: If True, raise PollingTimeoutError on timeout.
            If False, return False on timeout. Defaults to True.

    Returns:
        True if condition was met within timeout.
        False if raise_on_timeout=False and timeout occurred.

    Raises:
        PollingTimeoutError: If condition not met within timeout and
            raise_on_timeout=True.
    """

    def check() -> bool:
        if not condition():
            msg = f"{description} not met"
            raise AssertionError(msg)
        return True

    try:
        return until(check, timeout, interval=interval, description=description)
    except PollingTimeoutError:
        if raise_on_timeout:
            raise
        return False


def tcp_check(host: str, port: int, timeout: float = 5.0) -> bool:
    """Check if a TCP connection can be established.

    Args:
        host: Hostname or IP address.
        port: Port number.
        timeout: Connection timeout in seconds.

    Returns:
        True if connection successful, False otherwise.
    """
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


__all__ = [
    "DEFAULT_INTERVAL",
    "PollingConfig",
    "PollingTimeoutError",
    "tcp_check",
    "until",
    "wait_for_condition",
]
