"""Per-test harness: drive Flux through git and Helm, then assert convergence.

A Harness is created for each test function. It owns an isolated working
directory, a local git clone bound to a remote repository on the cluster
node that no other test uses, and its own Git capability. It borrows the
Setup's cluster, kubectl and Helm capabilities, rebound to the test's
reporter so every command is logged against the test that ran it.

Sync convergence:
    After a push the sync tag is Diverged from the target ref until Flux
    has applied the commit and moved the tag. ``wait_for_sync`` polls
    ``fetch_tags(); revision(tag) == revision(target)`` until Converged, or
    raises PollingTimeoutError (TimedOut) naming the last tag revision it
    saw. A converged tag says nothing about other observers, so checks of
    the controller API or of Helm releases are separate polls chained after
    it.

Failures:
    ``fatal`` ends the test immediately. ``error`` records a failure and
    lets the test go on collecting evidence; recorded errors fail the test
    when the fixture tears it down.

Example:
    def test_sync(harness: Harness) -> None:
        harness.setup_git_remote()
        harness.init_git_repo_local()
        harness.push_repo()
        harness.verify_sync_and_services("HEAD", EXPECTED_IMAGES)
"""

from __future__ import annotations

import shutil
from collections.abc import Mapping
from pathlib import Path
from typing import Any, NoReturn

import httpx
import yaml

from fluxtest.deadline import Deadline, DeadlineLike
from fluxtest.errors import NotConverged, PollingTimeoutError
from fluxtest.fluxapi import FluxClient
from fluxtest.naming import unique_name
from fluxtest.polling import tcp_check, until
from fluxtest.reporting import Reporter
from fluxtest.runner import CommandRunner
from fluxtest.suite import Setup
from fluxtest.tools.git import Git, VersionControlAPI
from fluxtest.tools.helm import ReleaseRevision

REPO_DIR = "repo"
APP_NAMESPACE = "default"


def get_path(document: Mapping[str, Any], dotted: str) -> Any:
    """Look up ``a.b.c`` in nested mappings, None if any key is missing."""
    node: Any = document
    for key in dotted.split("."):
        if not isinstance(node, Mapping) or key not in node:
            return None
        node = node[key]
    return node


def set_path(document: dict[str, Any], dotted: str, value: Any) -> None:
    """Set ``a.b.c`` in nested dicts, creating intermediate mappings."""
    keys = dotted.split(".")
    node = document
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[keys[-1]] = value


class Harness:
    """Per-test view of the suite.

    Attributes:
        setup: The suite Setup this harness borrows from.
        reporter: The test's logger and failure channel.
        name: Unique name shared by the test's directory, repo and releases.
        workdir: Isolated directory under the Setup root.
        repodir: Local git working copy.
        remote_repo_path: Bare repository path on the cluster node.
        git: Version-Control capability owned by this harness.
        flux: Client for the controller's HTTP API.
    """

    def __init__(
        self,
        setup: Setup,
        test_name: str,
        reporter: Reporter,
        *,
        git: VersionControlAPI | None = None,
        flux: FluxClient | None = None,
    ) -> None:
        self.setup = setup
        self.settings = setup.settings
        self.reporter = reporter.bind(harness=test_name)
        self.name = unique_name(test_name)
        self.cluster_ip = setup.cluster_ip

        self.workdir = setup.testroot / self.name
        self.workdir.mkdir(parents=True, exist_ok=False)
        self.repodir = self.workdir / REPO_DIR
        self.remote_repo_path = f"{self.settings.node_repo_root}/{self.name}.git"

        self.runner = CommandRunner(self.reporter)
        self.cluster = setup.cluster.with_reporter(self.reporter)
        self.kubectl = setup.kubectl.with_reporter(self.reporter)
        self.helm = setup.helm.with_reporter(self.reporter)
        self.git = git if git is not None else Git(
            self.runner,
            self.repodir,
            ssh_key=setup.ssh_key_private,
            known_hosts=setup.known_hosts_path,
        )
        self.flux = flux if flux is not None else FluxClient(
            self.flux_api_url(), self.reporter
        )

    def close(self) -> None:
        self.flux.close()

    # Failure channel

    def error(self, message: str) -> None:
        self.reporter.error(message)

    def fatal(self, message: str, cause: BaseException | None = None) -> NoReturn:
        self.reporter.fatal(message, cause)

    # Git remote and working copy

    def git_url(self) -> str:
        return f"ssh://{self.settings.node_user}@{self.cluster_ip}{self.remote_repo_path}"

    def flux_api_url(self) -> str:
        return self.settings.flux_api_url(self.cluster_ip)

    def setup_git_remote(self) -> None:
        """Create an empty bare repository for this test on the node."""
        self.cluster.exec_on_node(
            f'set -e; dir="{self.remote_repo_path}"; '
            f'if [ -d "$dir" ]; then rm -rf "$dir"; fi; git init --bare "$dir"',
            deadline=self.settings.deadline("git"),
        )

    def init_git_repo_local(self) -> None:
        self.git.init(self.git_url(), deadline=self.settings.deadline("git"))

    def push_repo(self, source: Path | None = None, message: str = "Deploy helloworld") -> str:
        """Copy a fixture tree into the working copy, push it, wait for sync.

        Returns:
            The commit the sync tag converged on.
        """
        src = source if source is not None else self.settings.repo_fixture
        shutil.copytree(src, self.repodir, dirs_exist_ok=True)
        return self.add_commit_push_sync(message)

    def add_commit_push_sync(self, message: str = "Deploy helloworld") -> str:
        """Commit everything, push, and wait for Flux to sync the push.

        The push and the wait share one sync deadline.
        """
        deadline = self.settings.deadline("sync")
        self.git.add_commit_push(["."], message, deadline=deadline)
        return self.wait_for_sync("HEAD", deadline=deadline)

    def update_git_yaml(self, relpath: str, dotted_path: str, value: str) -> None:
        """Set a value in a YAML file of the working copy.

        ``value`` is parsed as YAML, so "30033" is written as a number.
        """
        path = self.repodir / relpath
        document = yaml.safe_load(path.read_text()) or {}
        set_path(document, dotted_path, yaml.safe_load(value))
        path.write_text(yaml.safe_dump(document, sort_keys=False))
        self.reporter.log.info("yaml_updated", file=relpath, path=dotted_path, value=value)

    # Sync convergence

    def wait_for_sync(
        self,
        target_ref: str = "HEAD",
        deadline: DeadlineLike | None = None,
    ) -> str:
        """Wait until the sync tag points at the same commit as ``target_ref``.

        Returns:
            The commit both refs resolve to.

        Raises:
            PollingTimeoutError: If the deadline passes first. The message
                carries the last revision the sync tag was seen at.
        """
        tag = self.settings.sync_tag

        def synced() -> str:
            self.git.fetch_tags(deadline=self.settings.deadline("git"))
            target = self.git.revision(target_ref)
            marker = self.git.revision(tag)
            if target is None or marker != target:
                raise NotConverged(f"sync tag {tag}", target, marker)
            return marker

        return until(
            synced,
            Deadline.resolve(deadline, self.settings.sync_timeout),
            interval=self.settings.poll_interval,
            description=f"sync tag {tag} to reach {target_ref}",
        )

    def wait_for_upstream_commits(
        self,
        min_count: int,
        deadline: DeadlineLike | None = None,
    ) -> int:
        """Wait until the sync tag is at least ``min_count`` commits past HEAD.

        Used after enabling automation: Flux commits image updates upstream
        and tags what it applied.
        """
        tag = self.settings.sync_tag

        def enough_commits() -> int:
            self.git.fetch_tags(deadline=self.settings.deadline("git"))
            count = self.git.commits_between("HEAD", tag)
            if count is None or count < min_count:
                raise NotConverged(f"commits in HEAD..{tag}", f">= {min_count}", count)
            return count

        return until(
            enough_commits,
            Deadline.resolve(deadline, self.settings.sync_timeout),
            interval=self.settings.poll_interval,
            description=f"at least {min_count} upstream commits",
        )

    # Controller API

    def services(
        self,
        namespace: str,
        controller_id: str,
        deadline: DeadlineLike | None = None,
    ) -> dict[str, str]:
        """Ask Flux which image each container of a workload runs.

        Polls until the API answers. If it never does, records an error and
        returns {}.
        """
        try:
            return until(
                lambda: self.flux.container_images(namespace, controller_id),
                Deadline.resolve(deadline, self.settings.sync_timeout),
                interval=self.settings.poll_interval,
                description="controller API",
            )
        except PollingTimeoutError as exc:
            self.error(f"failed to fetch controllers from flux agent: {exc}")
            return {}

    def verify_sync_and_services(
        self,
        target_ref: str,
        expected: Mapping[str, str],
        *,
        namespace: str = APP_NAMESPACE,
        controller_id: str = f"{APP_NAMESPACE}:deployment/helloworld",
    ) -> None:
        """Wait for sync, then for Flux to report ``expected`` images.

        Both polls share one sync deadline. A sync timeout is fatal; an
        image mismatch is recorded as an error.
        """
        deadline = self.settings.deadline("sync")
        try:
            self.wait_for_sync(target_ref, deadline=deadline)
        except PollingTimeoutError as exc:
            self.fatal(f"Failed to sync to revision of {target_ref}: {exc}", exc)

        want = dict(expected)

        def images_match() -> dict[str, str]:
            got = self.flux.container_images(namespace, controller_id)
            if got != want:
                raise NotConverged(f"images of {controller_id}", want, got)
            return got

        try:
            until(
                images_match,
                deadline,
                interval=self.settings.poll_interval,
                description=f"images of {controller_id}",
            )
        except PollingTimeoutError as exc:
            self.error(str(exc))

    def automate(self, controller_id: str) -> None:
        """Turn on image automation for a workload through fluxctl."""
        self.runner.must(
            "fluxctl",
            "--url",
            self.flux_api_url(),
            "automate",
            f"--controller={controller_id}",
        )

    # Flux chart and Helm releases

    def install_flux_chart(
        self,
        poll_interval: float,
        stale_releases: tuple[str, ...] = (),
    ) -> None:
        """Install Flux plus the Helm operator, pointed at this test's repo."""
        release, ns = self.settings.flux_release, self.settings.flux_namespace
        self.helm.delete(release, purge=True, namespace=ns)
        for stale in stale_releases:
            self.helm.delete(stale, purge=True)
        self.helm.install(
            release,
            ns,
            self.settings.flux_chart,
            {
                "helmOperator.create": "true",
                "git.url": self.git_url(),
                "git.chartsPath": "charts",
                "image.tag": "latest",
                "helmOperator.tag": "latest",
                "git.pollInterval": f"{poll_interval:g}s",
            },
        )

    def last_release(self, name: str) -> ReleaseRevision | None:
        """Latest revision of a release, None if Helm doesn't list it yet."""
        history = self.helm.history(name)
        return history[-1] if history else None

    @staticmethod
    def check_release_deployed(
        rev: ReleaseRevision | None,
        name: str,
        min_revision: int,
    ) -> ReleaseRevision:
        """Raise NotConverged unless ``rev`` is deployed at ``min_revision`` or later."""
        if rev is None:
            raise NotConverged(f"helm release {name}", "deployed", None)
        if rev.revision < min_revision:
            raise NotConverged(f"helm release revision of {name}", f">= {min_revision}", rev.revision)
        if not rev.deployed:
            raise NotConverged(f"helm release status of {name}", "deployed", rev.status)
        return rev

    def release_has_value(self, name: str, min_revision: int, key: str, value: Any) -> None:
        """Raise NotConverged unless the deployed release has ``key`` == ``value``.

        ``value`` None means the key is not among the user-supplied values.
        """
        rev = self.check_release_deployed(self.last_release(name), name, min_revision)
        got = get_path(self.helm.get_values(name, rev.revision), key)
        if got != value:
            raise NotConverged(f"value {key!r} of {name}", value, got)

    def assert_release_deployed(
        self,
        name: str,
        min_revision: int,
        timeout: float | None = None,
    ) -> int:
        """Wait for a deployed revision >= ``min_revision``; fatal on timeout.

        Returns:
            The deployed revision number.
        """
        try:
            rev = until(
                lambda: self.check_release_deployed(self.last_release(name), name, min_revision),
                Deadline.resolve(timeout, self.settings.release_timeout),
                interval=self.settings.poll_interval,
                description=f"helm release {name} deployed",
            )
        except PollingTimeoutError as exc:
            self.fatal(str(exc), exc)
        return rev.revision

    def assert_release_has_value(
        self,
        name: str,
        min_revision: int,
        key: str,
        value: Any,
        timeout: float | None = None,
    ) -> None:
        try:
            until(
                lambda: self.release_has_value(name, min_revision, key, value),
                Deadline.resolve(timeout, self.settings.release_timeout),
                interval=self.settings.poll_interval,
                description=f"helm release {name} value {key}",
            )
        except PollingTimeoutError as exc:
            self.fatal(str(exc), exc)

    # Services exposed by the deployed charts

    def service_url(self, port: int) -> str:
        return f"http://{self.cluster_ip}:{port}"

    def service_returns(self, port: int, expected: str, timeout: float | None = None) -> str:
        """Wait until the NodePort service on ``port`` answers ``expected``."""
        url = self.service_url(port)

        def answers() -> str:
            response = httpx.get(url, timeout=5.0)
            if response.text != expected:
                raise NotConverged(f"service check on {port}", expected, response.text)
            return response.text

        return until(
            answers,
            Deadline.resolve(timeout, self.settings.service_timeout),
            interval=self.settings.poll_interval,
            description=f"service on port {port}",
        )

    def assert_service_returns(self, port: int, expected: str) -> None:
        try:
            self.service_returns(port, expected)
        except PollingTimeoutError as exc:
            self.error(str(exc))

    def port_open(self, port: int) -> bool:
        return tcp_check(self.cluster_ip, port)


__all__ = ["APP_NAMESPACE", "Harness", "get_path", "set_path"]
