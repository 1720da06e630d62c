"""Version-Control capability: a local working copy bound to one remote.

Each Harness owns its own Git instance, so tests never share working-copy
state. ``revision`` and ``commits_between`` return None for refs that do
not exist yet: before the controller's first sync the sync tag is simply
absent, and polling must treat that as "not converged", not as an error.
"""

from __future__ import annotations

import copy
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path

from fluxtest.deadline import DeadlineLike
from fluxtest.errors import ExecutionError, ToolOutputError
from fluxtest.reporting import Reporter
from fluxtest.runner import CommandRunner

GIT = "git"
DEFAULT_BRANCH = "master"

# What `git rev-list` prints for a ref that doesn't resolve
_UNKNOWN_REF = re.compile(r"unknown revision|bad revision|ambiguous argument|invalid (object|revision)")


class VersionControlAPI(ABC):
    """What the harness needs from git."""

    @abstractmethod
    def init(self, remote_url: str, deadline: DeadlineLike | None = None) -> None:
        """Create the working copy and point ``origin`` at ``remote_url``."""
        ...

    @abstractmethod
    def add_commit_push(
        self,
        paths: Sequence[str | Path],
        message: str,
        deadline: DeadlineLike | None = None,
    ) -> None:
        """Stage ``paths``, commit them, and push the branch upstream."""
        ...

    @abstractmethod
    def fetch_tags(self, deadline: DeadlineLike | None = None) -> None:
        """Fetch remote tags, moving local tags the remote has moved."""
        ...

    @abstractmethod
    def revision(self, ref: str, deadline: DeadlineLike | None = None) -> str | None:
        """Return the commit id ``ref`` points at, None if it doesn't exist."""
        ...

    @abstractmethod
    def commits_between(
        self,
        base: str,
        ref: str,
        deadline: DeadlineLike | None = None,
    ) -> int | None:
        """Count commits in ``base..ref``, None if either ref is unknown."""
        ...

    @abstractmethod
    def with_reporter(self, reporter: Reporter) -> VersionControlAPI: ...


class Git(VersionControlAPI):
    """VersionControlAPI backed by the git CLI over SSH.

    Attributes:
        runner: Command runner, carrying GIT_SSH_COMMAND when a key is set.
        repodir: Local working copy.
        branch: Branch pushed to the remote.
    """

    def __init__(
        self,
        runner: CommandRunner,
        repodir: Path,
        *,
        ssh_key: Path | None = None,
        known_hosts: Path | None = None,
        branch: str = DEFAULT_BRANCH,
    ) -> None:
        if ssh_key is not None:
            ssh = f"ssh -i {ssh_key}"
            if known_hosts is not None:
                ssh += f" -o UserKnownHostsFile={known_hosts}"
            runner = runner.with_env(GIT_SSH_COMMAND=ssh)
        self.runner = runner
        self.repodir = repodir
        self.branch = branch

    def with_reporter(self, reporter: Reporter) -> Git:
        clone = copy.copy(self)
        clone.runner = self.runner.with_reporter(reporter)
        return clone

    def _git(self, *args: str, deadline: DeadlineLike | None = None) -> str:
        return self.runner.run(GIT, "-C", str(self.repodir), *args, deadline=deadline)

    def init(
        self,
        remote_url: str,
        deadline: DeadlineLike | None = None,
        *,
        user: str = "fluxtest",
        email: str = "fluxtest@example.com",
    ) -> None:
        self.runner.run(GIT, "init", str(self.repodir), deadline=deadline)
        self._git("symbolic-ref", "HEAD", f"refs/heads/{self.branch}", deadline=deadline)
        self._git("config", "user.name", user, deadline=deadline)
        self._git("config", "user.email", email, deadline=deadline)
        self._git("remote", "add", "origin", remote_url, deadline=deadline)

    def add_commit_push(
        self,
        paths: Sequence[str | Path],
        message: str,
        deadline: DeadlineLike | None = None,
    ) -> None:
        self._git("add", "--", *(str(p) for p in paths), deadline=deadline)
        self._git("commit", "-m", message, deadline=deadline)
        self._git("push", "-u", "origin", self.branch, deadline=deadline)

    def fetch_tags(self, deadline: DeadlineLike | None = None) -> None:
        # --force: the sync tag moves, and git refuses to clobber tags without it
        self._git("fetch", "--tags", "--force", deadline=deadline)

    def revision(self, ref: str, deadline: DeadlineLike | None = None) -> str | None:
        try:
            out = self._git("rev-list", "-n", "1", ref, "--", deadline=deadline)
        except ExecutionError as exc:
            if _UNKNOWN_REF.search(exc.output):
                return None
            raise
        return out.strip() or None

    def commits_between(
        self,
        base: str,
        ref: str,
        deadline: DeadlineLike | None = None,
    ) -> int | None:
        try:
            out = self._git("rev-list", "--count", f"{base}..{ref}", "--", deadline=deadline)
        except ExecutionError as exc:
            if _UNKNOWN_REF.search(exc.output):
                return None
            raise
        try:
            return int(out.strip())
        except ValueError as exc:
            raise ToolOutputError("git rev-list --count", "non-numeric output", out) from exc


__all__ = ["DEFAULT_BRANCH", "GIT", "Git", "VersionControlAPI"]
