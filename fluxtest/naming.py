"""Unique names for per-test resources.

Tests never lock shared resources; they avoid interference by giving every
resource they create (working directory, remote repository, release) a name
nobody else uses. Names follow the DNS-1123 label rules so the same value
works as a directory name, a repository path component, a Helm release
name and a Kubernetes object name.

Example:
    >>> name = unique_name("test_chart_update_via_git")
    >>> name  # doctest: +SKIP
    'test-chart-update-via-git-a1b2c3d4'
"""

from __future__ import annotations

import re
import uuid

# DNS-1123 label constraints
MAX_NAME_LENGTH = 53  # Helm release names are capped below the 63-char label limit
NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


class InvalidNameError(ValueError):
    """Raised when a generated name is not a valid DNS-1123 label."""

    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"Invalid name '{name}': {reason}")


def unique_name(prefix: str = "test") -> str:
    """Generate a unique DNS-1123 name from ``prefix``.

    The prefix is lowercased, underscores become hyphens, anything else
    outside ``[a-z0-9-]`` is dropped, and an 8-character random suffix is
    appended. Long prefixes are truncated to fit MAX_NAME_LENGTH.

    Args:
        prefix: Usually the test function name.

    Returns:
        Unique name such as "test-chart-a1b2c3d4".

    Raises:
        InvalidNameError: If the result is not a valid name.
    """
    normalized = prefix.lower().replace("_", "-")
    normalized = re.sub(r"[^a-z0-9-]", "", normalized)
    normalized = re.sub(r"-{2,}", "-", normalized).strip("-")

    suffix = uuid.uuid4().hex[:8]
    max_prefix_length = MAX_NAME_LENGTH - len(suffix) - 1
    if len(normalized) > max_prefix_length:
        normalized = normalized[:max_prefix_length].rstrip("-")

    if not normalized:
        normalized = "test"

    name = f"{normalized}-{suffix}"
    if not validate_name(name):
        raise InvalidNameError(name, "does not match DNS-1123 label rules")
    return name


def validate_name(name: str) -> bool:
    """Check whether ``name`` is a valid DNS-1123 label within MAX_NAME_LENGTH."""
    if not name or len(name) > MAX_NAME_LENGTH:
        return False
    return bool(NAME_PATTERN.match(name))


__all__ = ["InvalidNameError", "MAX_NAME_LENGTH", "unique_name", "validate_name"]
