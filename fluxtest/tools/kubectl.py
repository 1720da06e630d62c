"""Orchestrator-CLI capability: create and delete cluster resources.

Creation is idempotent (an existing resource is not an error) and deletion
is best-effort (a missing resource is not an error), which is all the
suite's setup steps need.
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from pathlib import Path

from fluxtest.deadline import DeadlineLike
from fluxtest.errors import ExecutionError
from fluxtest.reporting import Reporter
from fluxtest.runner import CommandRunner

KUBECTL = "kubectl"


class OrchestratorAPI(ABC):
    """What the harness needs from kubectl."""

    @abstractmethod
    def create(
        self,
        namespace: str,
        kind: str,
        name: str,
        *opts: str,
        deadline: DeadlineLike | None = None,
    ) -> None:
        """Create a resource; an already existing one counts as created."""
        ...

    @abstractmethod
    def delete(
        self,
        namespace: str,
        kind: str,
        name: str,
        deadline: DeadlineLike | None = None,
    ) -> None:
        """Delete a resource; absence and deletion look the same."""
        ...

    @abstractmethod
    def apply(self, path: Path, namespace: str = "", deadline: DeadlineLike | None = None) -> None:
        ...

    @abstractmethod
    def with_reporter(self, reporter: Reporter) -> OrchestratorAPI: ...


class Kubectl(OrchestratorAPI):
    """OrchestratorAPI backed by the ``kubectl`` CLI.

    Attributes:
        runner: Command runner the CLI is invoked through.
        context: kubeconfig context every call targets.
    """

    def __init__(self, runner: CommandRunner, context: str) -> None:
        self.runner = runner
        self.context = context

    def with_reporter(self, reporter: Reporter) -> Kubectl:
        clone = copy.copy(self)
        clone.runner = self.runner.with_reporter(reporter)
        return clone

    def _args(self, namespace: str, *args: str) -> list[str]:
        common = ["--context", self.context]
        if namespace:
            common += ["--namespace", namespace]
        return [*common, *args]

    def create(
        self,
        namespace: str,
        kind: str,
        name: str,
        *opts: str,
        deadline: DeadlineLike | None = None,
    ) -> None:
        try:
            self.runner.run(
                KUBECTL, *self._args(namespace, "create", kind, name, *opts), deadline=deadline
            )
        except ExecutionError as exc:
            if "AlreadyExists" not in exc.output:
                raise
            self.runner.reporter.log.debug(
                "resource_exists", kind=kind, name=name, namespace=namespace
            )

    def delete(
        self,
        namespace: str,
        kind: str,
        name: str,
        deadline: DeadlineLike | None = None,
    ) -> None:
        self.runner.run(
            KUBECTL,
            *self._args(namespace, "delete", kind, name, "--ignore-not-found=true"),
            deadline=deadline,
        )

    def apply(self, path: Path, namespace: str = "", deadline: DeadlineLike | None = None) -> None:
        self.runner.run(KUBECTL, *self._args(namespace, "apply", "-f", str(path)), deadline=deadline)


__all__ = ["KUBECTL", "Kubectl", "OrchestratorAPI"]
