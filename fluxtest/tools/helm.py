"""Release-Manager capability: Helm releases and their revision history.

Provides the ReleaseManagerAPI interface, the Helm CLI implementation, and
shared logic for recovering releases left stuck by an earlier run
(pending-upgrade, pending-install, pending-rollback, failed).

An unknown release is a normal state while the Helm operator is still
converging: ``history`` returns an empty list, ``status`` returns None and
``delete`` returns quietly. Only process failures raise ExecutionError.
"""

from __future__ import annotations

import copy
import json
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from fluxtest.deadline import DeadlineLike
from fluxtest.errors import ExecutionError, HarnessError, ToolOutputError
from fluxtest.reporting import Reporter
from fluxtest.runner import CommandRunner

HELM = "helm"

# Helm release states that indicate a stuck release requiring recovery
STUCK_STATES = ("pending-upgrade", "pending-install", "pending-rollback", "failed")

# Default rollback timeout
DEFAULT_ROLLBACK_TIMEOUT = "5m"

# Release absence only. Helm 3: Error: release: not found; Helm 2: Error: release: "cd" not found
_RELEASE_NOT_FOUND = re.compile(r'\brelease:? (?:"[^"]*" )?not found', re.IGNORECASE)


class ReleaseRevision(BaseModel):
    """One entry of ``helm history -o json``.

    Attributes:
        revision: Incrementing revision number.
        status: Helm status, e.g. "deployed", "superseded".
        chart: Chart name and version.
        app_version: Application version of the chart.
        description: Helm's description of the operation.
        updated: Timestamp of the operation, as reported by Helm.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    revision: int = Field(..., ge=1)
    status: str = ""
    chart: str = ""
    app_version: str = ""
    description: str = ""
    updated: str = ""

    @property
    def deployed(self) -> bool:
        # Helm 2 reports DEPLOYED, Helm 3 deployed
        return self.status.lower() == "deployed"


def _is_not_found(exc: ExecutionError) -> bool:
    return _RELEASE_NOT_FOUND.search(exc.output) is not None


def _parse_json(tool: str, stdout: str) -> Any:
    stripped = stdout.strip()
    if not stripped:
        raise ToolOutputError(tool, "empty output", stdout)
    try:
        return json.loads(stripped)
    except json.JSONDecodeError as exc:
        raise ToolOutputError(tool, f"invalid JSON: {exc}", stdout) from exc


def parse_history(stdout: str) -> list[ReleaseRevision]:
    """Parse ``helm history -o json`` into revisions, oldest first.

    Raises:
        ToolOutputError: If the output is empty, not JSON, or not a list of
            revision objects.
    """
    raw = _parse_json("helm history", stdout)
    if not isinstance(raw, list):
        raise ToolOutputError("helm history", "a non-list JSON document", stdout)
    try:
        revisions = [ReleaseRevision.model_validate(entry) for entry in raw]
    except ValidationError as exc:
        raise ToolOutputError("helm history", f"unexpected entries: {exc}", stdout) from exc
    return sorted(revisions, key=lambda r: r.revision)


def parse_helm_status(stdout: str) -> dict[str, Any]:
    """Parse JSON output from ``helm status -o json``.

    Raises:
        ToolOutputError: If stdout is empty or not a JSON object.
    """
    result = _parse_json("helm status", stdout)
    if not isinstance(result, dict):
        raise ToolOutputError("helm status", "a non-object JSON document", stdout)
    return result


class ReleaseManagerAPI(ABC):
    """What the harness needs from Helm.

    Operations on an existing release take an optional ``namespace``; when
    omitted, the implementation uses the namespace the release was
    installed into, or its default.
    """

    @abstractmethod
    def install(
        self,
        name: str,
        namespace: str,
        chart: str,
        values: Mapping[str, str] | None = None,
        deadline: DeadlineLike | None = None,
    ) -> None: ...

    @abstractmethod
    def upgrade(
        self,
        name: str,
        chart: str,
        values: Mapping[str, str] | None = None,
        *,
        reuse_values: bool = True,
        namespace: str | None = None,
        deadline: DeadlineLike | None = None,
    ) -> None: ...

    @abstractmethod
    def history(
        self,
        name: str,
        *,
        namespace: str | None = None,
        deadline: DeadlineLike | None = None,
    ) -> list[ReleaseRevision]:
        """Return revisions in ascending order, [] for an unknown release.

        The last entry reflects the last completed operation. An operation
        still in flight may not be listed yet.
        """
        ...

    @abstractmethod
    def delete(
        self,
        name: str,
        purge: bool = True,
        *,
        namespace: str | None = None,
        deadline: DeadlineLike | None = None,
    ) -> None:
        """Delete a release; deleting an unknown release is not an error."""
        ...

    @abstractmethod
    def get_values(
        self,
        name: str,
        revision: int | None = None,
        *,
        namespace: str | None = None,
        deadline: DeadlineLike | None = None,
    ) -> dict[str, Any]:
        """Return the user-supplied values of a release revision."""
        ...

    @abstractmethod
    def status(
        self,
        name: str,
        *,
        namespace: str | None = None,
        deadline: DeadlineLike | None = None,
    ) -> dict[str, Any] | None:
        """Return ``helm status`` as a dict, None for an unknown release."""
        ...

    @abstractmethod
    def rollback(
        self,
        name: str,
        revision: int,
        timeout: str = DEFAULT_ROLLBACK_TIMEOUT,
        *,
        namespace: str | None = None,
        deadline: DeadlineLike | None = None,
    ) -> None: ...

    @abstractmethod
    def with_reporter(self, reporter: Reporter) -> ReleaseManagerAPI: ...


class Helm(ReleaseManagerAPI):
    """ReleaseManagerAPI backed by the Helm 3 CLI.

    Attributes:
        runner: Command runner the CLI is invoked through.
        kube_context: kubeconfig context every call targets.
        namespace: Default namespace for releases not installed through
            this instance.
    """

    def __init__(
        self,
        runner: CommandRunner,
        kube_context: str,
        namespace: str = "default",
    ) -> None:
        self.runner = runner
        self.kube_context = kube_context
        self.namespace = namespace
        self._installed: dict[str, str] = {}

    def with_reporter(self, reporter: Reporter) -> Helm:
        clone = copy.copy(self)
        clone.runner = self.runner.with_reporter(reporter)
        clone._installed = dict(self._installed)
        return clone

    def _helm(
        self,
        name: str,
        namespace: str | None,
        *args: str,
        deadline: DeadlineLike | None = None,
    ) -> str:
        ns = namespace or self._installed.get(name, self.namespace)
        return self.runner.run(
            HELM,
            *args,
            "--kube-context",
            self.kube_context,
            "--namespace",
            ns,
            deadline=deadline,
        )

    @staticmethod
    def _set_args(values: Mapping[str, str] | None) -> list[str]:
        args: list[str] = []
        for key, value in (values or {}).items():
            args += ["--set", f"{key}={value}"]
        return args

    def install(
        self,
        name: str,
        namespace: str,
        chart: str,
        values: Mapping[str, str] | None = None,
        deadline: DeadlineLike | None = None,
    ) -> None:
        self._installed[name] = namespace
        self._helm(
            name, namespace, "install", name, chart, *self._set_args(values), deadline=deadline
        )

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
        args = ["upgrade", name, chart]
        if reuse_values:
            args.append("--reuse-values")
        self._helm(name, namespace, *args, *self._set_args(values), deadline=deadline)

    def history(
        self,
        name: str,
        *,
        namespace: str | None = None,
        deadline: DeadlineLike | None = None,
    ) -> list[ReleaseRevision]:
        try:
            out = self._helm(name, namespace, "history", name, "-o", "json", deadline=deadline)
        except ExecutionError as exc:
            if _is_not_found(exc):
                return []
            raise
        return parse_history(out)

    def delete(
        self,
        name: str,
        purge: bool = True,
        *,
        namespace: str | None = None,
        deadline: DeadlineLike | None = None,
    ) -> None:
        args = ["uninstall", name]
        if not purge:
            args.append("--keep-history")
        try:
            self._helm(name, namespace, *args, deadline=deadline)
        except ExecutionError as exc:
            if not _is_not_found(exc):
                raise
            self.runner.reporter.log.debug("release_absent", release=name)
        self._installed.pop(name, None)

    def get_values(
        self,
        name: str,
        revision: int | None = None,
        *,
        namespace: str | None = None,
        deadline: DeadlineLike | None = None,
    ) -> dict[str, Any]:
        args = ["get", "values", name, "-o", "json"]
        if revision is not None:
            args += ["--revision", str(revision)]
        out = self._helm(name, namespace, *args, deadline=deadline)
        values = _parse_json("helm get values", out)
        # A release without user-supplied values prints null
        if values is None:
            return {}
        if not isinstance(values, dict):
            raise ToolOutputError("helm get values", "a non-object JSON document", out)
        return values

    def status(
        self,
        name: str,
        *,
        namespace: str | None = None,
        deadline: DeadlineLike | None = None,
    ) -> dict[str, Any] | None:
        try:
            out = self._helm(name, namespace, "status", name, "-o", "json", deadline=deadline)
        except ExecutionError as exc:
            if _is_not_found(exc):
                return None
            raise
        return parse_helm_status(out)

    def rollback(
        self,
        name: str,
        revision: int,
        timeout: str = DEFAULT_ROLLBACK_TIMEOUT,
        *,
        namespace: str | None = None,
        deadline: DeadlineLike | None = None,
    ) -> None:
        self._helm(
            name,
            namespace,
            "rollback",
            name,
            str(revision),
            "--wait",
            "--timeout",
            timeout,
            deadline=deadline,
        )


def recover_stuck_release(
    helm: ReleaseManagerAPI,
    release: str,
    reporter: Reporter,
    *,
    namespace: str | None = None,
    rollback_timeout: str = DEFAULT_ROLLBACK_TIMEOUT,
) -> bool:
    """Detect and recover from stuck Helm release states.

    Checks for pending-upgrade, pending-install, pending-rollback, and failed
    states and performs rollback to the last known good revision.

    Args:
        helm: Release manager to inspect and roll back through.
        release: Helm release name.
        reporter: Where the recovery is logged.
        namespace: Namespace of the release, if not the manager's default.
        rollback_timeout: Timeout for helm rollback (e.g., "5m", "3m").

    Returns:
        True if recovery was performed, False if release was healthy or
        did not exist.

    Raises:
        HarnessError: If rollback fails after detecting stuck state.
        ToolOutputError: If helm status output is not usable.
    """
    current = helm.status(release, namespace=namespace)
    if current is None:
        # Release doesn't exist, nothing to recover
        return False

    release_status = current.get("info", {}).get("status", "")
    if release_status not in STUCK_STATES:
        return False

    current_revision = current.get("version", 1)
    if not isinstance(current_revision, int):
        raise ToolOutputError(
            "helm status",
            f"a non-integer 'version' ({type(current_revision).__name__})",
            json.dumps(current),
        )

    rollback_revision = max(1, current_revision - 1)
    if current_revision == 1:
        reporter.log.warning(
            "helm_rollback_same_revision",
            release=release,
            hint=f"if this fails, try: helm uninstall {release}",
        )
    reporter.log.warning(
        "helm_release_stuck",
        release=release,
        status=release_status,
        rollback_to=rollback_revision,
    )

    try:
        helm.rollback(release, rollback_revision, rollback_timeout, namespace=namespace)
    except ExecutionError as exc:
        msg = (
            f"Helm rollback failed: {exc.output}\n"
            f"Release stuck in '{release_status}'. Manual intervention required:\n"
            f"  helm rollback {release} {rollback_revision}\n"
            f"  # or: helm uninstall {release} && re-deploy"
        )
        raise HarnessError(msg) from exc

    reporter.log.info("helm_release_recovered", release=release, revision=rollback_revision)
    return True


__all__ = [
    "DEFAULT_ROLLBACK_TIMEOUT",
    "HELM",
    "Helm",
    "ReleaseManagerAPI",
    "ReleaseRevision",
    "STUCK_STATES",
    "parse_helm_status",
    "parse_history",
    "recover_stuck_release",
]
