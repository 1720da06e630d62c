"""Cluster capability: node discovery, image import, remote shell.

The suite runs against a single-node minikube cluster. Test code only sees
ClusterAPI; Minikube is the production implementation and
``fluxtest.fakes.FakeCluster`` the in-memory one.
"""

from __future__ import annotations

import copy
import shlex
from abc import ABC, abstractmethod

from fluxtest.deadline import DeadlineLike
from fluxtest.errors import SetupError
from fluxtest.reporting import Reporter
from fluxtest.runner import CommandRunner

MINIKUBE = "minikube"


class ClusterAPI(ABC):
    """What the harness needs from the cluster it runs against."""

    @abstractmethod
    def node_address(self, deadline: DeadlineLike | None = None) -> str:
        """Return the node's IP address.

        Not cached: callers that need a stable value keep their own copy.
        """
        ...

    @abstractmethod
    def import_image(self, name: str, deadline: DeadlineLike | None = None) -> None:
        """Make a locally built or pulled image available on the node.

        Safe to call repeatedly with the same image.
        """
        ...

    @abstractmethod
    def exec_on_node(self, command: str, deadline: DeadlineLike | None = None) -> str:
        """Run a shell command on the node and return its output."""
        ...

    @abstractmethod
    def with_reporter(self, reporter: Reporter) -> ClusterAPI: ...


class Minikube(ClusterAPI):
    """ClusterAPI backed by the ``minikube`` CLI.

    Attributes:
        runner: Command runner the CLI is invoked through.
        profile: minikube profile; also the kubectl context name.
    """

    def __init__(self, runner: CommandRunner, profile: str = "minikube") -> None:
        self.runner = runner
        self.profile = profile

    def with_reporter(self, reporter: Reporter) -> Minikube:
        clone = copy.copy(self)
        clone.runner = self.runner.with_reporter(reporter)
        return clone

    def _common(self) -> list[str]:
        return ["--profile", self.profile]

    def _minikube(self, *args: str, deadline: DeadlineLike | None = None) -> str:
        return self.runner.run(MINIKUBE, *self._common(), *args, deadline=deadline)

    def version(self) -> str:
        return self._minikube("version").strip()

    def verify_version(self, expected: str) -> None:
        """Fail setup unless minikube reports exactly ``expected``.

        Raises:
            SetupError: If the installed minikube is another version.
        """
        got = self.version()
        if got != f"minikube version: {expected}":
            msg = f"`minikube version` returned {got!r}, but these tests only support version {expected}"
            raise SetupError(msg)

    def start(
        self,
        driver: str = "",
        k8s_version: str = "",
        deadline: DeadlineLike | None = None,
    ) -> None:
        args = ["start", "--bootstrapper", "kubeadm", "--keep-context"]
        if driver:
            args += ["--vm-driver", driver]
        if k8s_version:
            args += ["--kubernetes-version", k8s_version]
        self._minikube(*args, deadline=deadline)

    def delete(self) -> None:
        # Deleting a profile that doesn't exist is fine
        self.runner.ignore_errors(MINIKUBE, *self._common(), "delete")

    def node_address(self, deadline: DeadlineLike | None = None) -> str:
        return self._minikube("ip", deadline=deadline).strip()

    def import_image(self, name: str, deadline: DeadlineLike | None = None) -> None:
        docker_env = " ".join(shlex.quote(a) for a in [MINIKUBE, *self._common(), "docker-env"])
        shcmd = f"docker save {shlex.quote(name)} | (eval $({docker_env}) && docker load)"
        self.runner.run("sh", "-c", shcmd, deadline=deadline)

    def exec_on_node(self, command: str, deadline: DeadlineLike | None = None) -> str:
        return self._minikube("ssh", "--", command, deadline=deadline)


__all__ = ["ClusterAPI", "MINIKUBE", "Minikube"]
