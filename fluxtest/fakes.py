"""In-memory fakes of the tool capabilities.

Each fake implements the same ABC as its production counterpart and keeps
its state in plain dicts and lists, so the polling engine and the harness
lifecycle can be exercised without a cluster. Copies made by
``with_reporter`` share those containers with the original, like a rebound
production capability talks to the same cluster. Plain attributes such as
FakeRepository's refs and fetch count belong to the instance they were set on.

Example:
    >>> repo = FakeRepository()
    >>> repo.add_commit_push(["releases"], "Deploy helloworld")
    >>> repo.revision("flux-sync") is None
    True
    >>> repo.move_remote_tag("flux-sync")  # what the controller does on sync
    >>> repo.fetch_tags()
    >>> repo.revision("flux-sync") == repo.revision("HEAD")
    True
"""

from __future__ import annotations

import copy
import itertools
import hashlib
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from fluxtest.deadline import DeadlineLike
from fluxtest.errors import ExecutionError
from fluxtest.reporting import Reporter, SuiteReporter
from fluxtest.tools.cluster import ClusterAPI
from fluxtest.tools.git import DEFAULT_BRANCH, VersionControlAPI
from fluxtest.tools.helm import DEFAULT_ROLLBACK_TIMEOUT, ReleaseManagerAPI, ReleaseRevision
from fluxtest.tools.kubectl import OrchestratorAPI

_EPOCH = datetime(2018, 8, 1, tzinfo=timezone.utc)


class _Fake:
    reporter: Reporter

    def with_reporter(self, reporter: Reporter) -> Any:
        clone = copy.copy(self)
        clone.reporter = reporter
        return clone


class FakeCluster(_Fake, ClusterAPI):
    """ClusterAPI fake.

    Attributes:
        address: What ``node_address`` returns.
        images: Images imported so far.
        commands: Shell commands run on the node, in order.
        responses: Canned output per node command.
    """

    def __init__(self, address: str = "192.168.99.100", reporter: Reporter | None = None) -> None:
        self.reporter = reporter or SuiteReporter()
        self.address = address
        self.images: set[str] = set()
        self.commands: list[str] = []
        self.responses: dict[str, str] = {}

    def node_address(self, deadline: DeadlineLike | None = None) -> str:
        return self.address

    def import_image(self, name: str, deadline: DeadlineLike | None = None) -> None:
        self.images.add(name)

    def exec_on_node(self, command: str, deadline: DeadlineLike | None = None) -> str:
        self.reporter.log.info("running", argv=["ssh", command])
        self.commands.append(command)
        return self.responses.get(command, "")


class FakeOrchestrator(_Fake, OrchestratorAPI):
    """OrchestratorAPI fake keyed by (namespace, kind, name)."""

    def __init__(self, reporter: Reporter | None = None) -> None:
        self.reporter = reporter or SuiteReporter()
        self.resources: dict[tuple[str, str, str], tuple[str, ...]] = {}
        self.applied: list[tuple[Path, str]] = []
        self.deleted: list[tuple[str, str, str]] = []

    @property
    def deletes(self) -> int:
        return len(self.deleted)

    def create(
        self,
        namespace: str,
        kind: str,
        name: str,
        *opts: str,
        deadline: DeadlineLike | None = None,
    ) -> None:
        self.resources.setdefault((namespace, kind, name), opts)

    def delete(
        self,
        namespace: str,
        kind: str,
        name: str,
        deadline: DeadlineLike | None = None,
    ) -> None:
        self.deleted.append((namespace, kind, name))
        self.resources.pop((namespace, kind, name), None)

    def apply(self, path: Path, namespace: str = "", deadline: DeadlineLike | None = None) -> None:
        self.applied.append((path, namespace))

    def exists(self, namespace: str, kind: str, name: str) -> bool:
        return (namespace, kind, name) in self.resources


class FakeReleaseManager(_Fake, ReleaseManagerAPI):
    """ReleaseManagerAPI fake with Helm's revision bookkeeping.

    Every operation appends a revision; the previously deployed one becomes
    "superseded". Timestamps come from a fake clock advancing one second per
    operation, so ``updated`` never decreases with the revision number.

    Attributes:
        releases: Revision history per release name.
        values: User-supplied values per (release, revision).
        namespaces: Namespace each release was installed into.
    """

    def __init__(self, reporter: Reporter | None = None) -> None:
        self.reporter = reporter or SuiteReporter()
        self.releases: dict[str, list[ReleaseRevision]] = {}
        self.values: dict[tuple[str, int], dict[str, Any]] = {}
        self.namespaces: dict[str, str] = {}
        self.charts: dict[str, str] = {}
        self._clock = itertools.count(1)

    def _now(self) -> str:
        # One clock, shared with copies made by with_reporter
        return (_EPOCH + timedelta(seconds=next(self._clock))).isoformat()

    def _append(
        self,
        name: str,
        chart: str,
        values: dict[str, Any],
        description: str,
        status: str = "deployed",
    ) -> ReleaseRevision:
        history = self.releases.setdefault(name, [])
        history[:] = [
            r.model_copy(update={"status": "superseded"}) if r.deployed else r for r in history
        ]
        revision = ReleaseRevision(
            revision=len(history) + 1,
            status=status,
            chart=chart,
            description=description,
            updated=self._now(),
        )
        history.append(revision)
        self.values[(name, revision.revision)] = values
        self.charts[name] = chart
        return revision

    def install(
        self,
        name: str,
        namespace: str,
        chart: str,
        values: Mapping[str, str] | None = None,
        deadline: DeadlineLike | None = None,
    ) -> None:
        if name in self.releases:
            raise ExecutionError(
                "helm",
                ["install", name, chart],
                "Error: cannot re-use a name that is still in use",
                1,
            )
        self.namespaces[name] = namespace
        self._append(name, chart, dict(values or {}), "Install complete")

    def upgrade(
        self,
        name: str,
        chart: str,
        values: Mapping[str, str] | None = None,
        *,
        reuse_values: bool = True,
        namespace: str | None = None,
        deadline: DeadlineLike | None = None,
    ) -> None:
        if name not in self.releases:
            raise ExecutionError(
                "helm",
                ["upgrade", name, chart],
                f'Error: UPGRADE FAILED: "{name}" has no deployed releases',
                1,
            )
        merged = dict(self.get_values(name)) if reuse_values else {}
        merged.update(values or {})
        self._append(name, chart, merged, "Upgrade complete")

    def history(
        self,
        name: str,
        *,
        namespace: str | None = None,
        deadline: DeadlineLike | None = None,
    ) -> list[ReleaseRevision]:
        return list(self.releases.get(name, []))

    def delete(
        self,
        name: str,
        purge: bool = True,
        *,
        namespace: str | None = None,
        deadline: DeadlineLike | None = None,
    ) -> None:
        self.releases.pop(name, None)
        self.namespaces.pop(name, None)
        for key in [k for k in self.values if k[0] == name]:
            del self.values[key]

    def get_values(
        self,
        name: str,
        revision: int | None = None,
        *,
        namespace: str | None = None,
        deadline: DeadlineLike | None = None,
    ) -> dict[str, Any]:
        history = self.releases.get(name)
        if not history:
            raise ExecutionError("helm", ["get", "values", name], "Error: release: not found", 1)
        rev = revision if revision is not None else history[-1].revision
        return dict(self.values.get((name, rev), {}))

    def status(
        self,
        name: str,
        *,
        namespace: str | None = None,
        deadline: DeadlineLike | None = None,
    ) -> dict[str, Any] | None:
        history = self.releases.get(name)
        if not history:
            return None
        last = history[-1]
        return {"name": name, "info": {"status": last.status}, "version": last.revision}

    def rollback(
        self,
        name: str,
        revision: int,
        timeout: str = DEFAULT_ROLLBACK_TIMEOUT,
        *,
        namespace: str | None = None,
        deadline: DeadlineLike | None = None,
    ) -> None:
        target = self.get_values(name, revision)
        self._append(name, self.charts[name], target, f"Rollback to {revision}")

    def set_status(self, name: str, status: str) -> None:
        """Overwrite the status of the latest revision, e.g. "pending-upgrade"."""
        history = self.releases[name]
        history[-1] = history[-1].model_copy(update={"status": status})


class FakeRepository(_Fake, VersionControlAPI):
    """VersionControlAPI fake with a linear history and a separate remote.

    Commits get deterministic ids. The remote's tags only become visible
    locally after ``fetch_tags``, as with a real clone. ``on_fetch`` runs at
    the start of every fetch and is where a test plays the controller, e.g.
    moving the sync tag after a given number of fetches.

    Attributes:
        history: Every commit id ever created, oldest first.
        remote_tags: Tags as the remote sees them.
        tags: Tags as the working copy sees them.
        fetches: Number of ``fetch_tags`` calls so far.
    """

    def __init__(
        self,
        reporter: Reporter | None = None,
        branch: str = DEFAULT_BRANCH,
        on_fetch: Callable[[FakeRepository], None] | None = None,
    ) -> None:
        self.reporter = reporter or SuiteReporter()
        self.branch = branch
        self.on_fetch = on_fetch
        self.history: list[str] = []
        self.head: str | None = None
        self.remote_head: str | None = None
        self.tracking_head: str | None = None
        self.remote_tags: dict[str, str] = {}
        self.tags: dict[str, str] = {}
        self.pushes: list[list[str]] = []
        self.fetches = 0
        self.remote_url: str | None = None

    def init(self, remote_url: str, deadline: DeadlineLike | None = None) -> None:
        self.remote_url = remote_url

    def _commit(self, message: str) -> str:
        seed = f"{len(self.history)}:{message}".encode()
        commit = hashlib.sha1(seed).hexdigest()  # noqa: S324
        self.history.append(commit)
        return commit

    def add_commit_push(
        self,
        paths: Sequence[str | Path],
        message: str,
        deadline: DeadlineLike | None = None,
    ) -> None:
        self.head = self._commit(message)
        self.remote_head = self.head
        self.tracking_head = self.head
        self.pushes.append([str(p) for p in paths])

    def fetch_tags(self, deadline: DeadlineLike | None = None) -> None:
        self.fetches += 1
        if self.on_fetch is not None:
            self.on_fetch(self)
        self.tags = dict(self.remote_tags)
        self.tracking_head = self.remote_head

    def revision(self, ref: str, deadline: DeadlineLike | None = None) -> str | None:
        if ref in ("HEAD", self.branch, f"refs/heads/{self.branch}"):
            return self.head
        if ref in (f"origin/{self.branch}", f"refs/remotes/origin/{self.branch}"):
            return self.tracking_head
        if ref in self.tags:
            return self.tags[ref]
        if ref in self.history:
            return ref
        return None

    def commits_between(
        self,
        base: str,
        ref: str,
        deadline: DeadlineLike | None = None,
    ) -> int | None:
        base_rev, ref_rev = self.revision(base), self.revision(ref)
        if base_rev is None or ref_rev is None:
            return None
        return max(0, self.history.index(ref_rev) - self.history.index(base_rev))

    # Controller side

    def move_remote_tag(self, tag: str, ref: str = "HEAD") -> None:
        """Point a remote tag at what ``ref`` resolves to locally."""
        rev = self.revision(ref)
        if rev is None:
            msg = f"cannot tag unknown ref {ref!r}"
            raise ValueError(msg)
        self.remote_tags[tag] = rev

    def push_upstream_commit(self, message: str) -> str:
        """Commit directly on the remote, as an automated controller does."""
        self.remote_head = self._commit(message)
        return self.remote_head


__all__ = [
    "FakeCluster",
    "FakeOrchestrator",
    "FakeReleaseManager",
    "FakeRepository",
]
