"""Absolute deadlines for blocking harness operations.

Every blocking call in the harness (command execution, polling) takes a
deadline. A Deadline is fixed at creation against the monotonic clock, so
one deadline can be shared by a chain of operations, e.g. push a commit and
then wait for the sync tag within the same budget.

Example:
    >>> deadline = Deadline.after(120.0)
    >>> git.add_commit_push(["."], "Deploy helloworld", deadline=deadline)
    >>> harness.wait_for_sync("HEAD", deadline=deadline)
"""

from __future__ import annotations

import time
from typing import Union


class Deadline:
    """A point on the monotonic clock after which work must stop.

    Attributes:
        timeout: The budget in seconds the deadline was created with.
    """

    __slots__ = ("_expires_at", "timeout")

    def __init__(self, timeout: float) -> None:
        if timeout < 0:
            msg = f"deadline timeout must be non-negative, got {timeout}"
            raise ValueError(msg)
        self.timeout = float(timeout)
        self._expires_at = time.monotonic() + self.timeout

    @classmethod
    def after(cls, seconds: float) -> Deadline:
        """Create a deadline ``seconds`` from now."""
        return cls(seconds)

    @classmethod
    def resolve(cls, value: DeadlineLike | None, default: float) -> Deadline:
        """Normalize a Deadline, a number of seconds, or None.

        Args:
            value: Existing deadline, timeout in seconds, or None.
            default: Timeout in seconds to use when value is None.

        Returns:
            ``value`` itself if it is already a Deadline, else a new one.
        """
        if isinstance(value, Deadline):
            return value
        return cls(default if value is None else float(value))

    def remaining(self) -> float:
        """Seconds left before expiry, never negative."""
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self._expires_at

    def __repr__(self) -> str:
        return f"Deadline(timeout={self.timeout:.1f}, remaining={self.remaining():.1f})"


DeadlineLike = Union[Deadline, float, int]

__all__ = ["Deadline", "DeadlineLike"]
