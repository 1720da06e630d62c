"""Process-wide suite setup for the fluxtest harness.

Setup is created once per pytest session, before any test runs. It does the
one-time environment preparation (working directory, SSH deploy key,
known_hosts, cluster, namespace, credentials) and exposes the capabilities
every Harness borrows.

Construction is fail-fast: any failure raises SetupError and the session
fixture aborts the run. After construction Setup is read-only; tests only
mutate resources named after themselves.

Example:
    settings = HarnessSettings()
    setup = Setup.create(settings, SuiteReporter())
    try:
        ...  # run tests
    finally:
        setup.teardown()
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path

from fluxtest.config import HarnessSettings
from fluxtest.errors import HarnessError, SetupError
from fluxtest.reporting import Reporter
from fluxtest.runner import CommandRunner
from fluxtest.tools.cluster import ClusterAPI, Minikube
from fluxtest.tools.helm import Helm, ReleaseManagerAPI, recover_stuck_release
from fluxtest.tools.kubectl import Kubectl, OrchestratorAPI

SSH_DIR = "ssh"
PRIVATE_KEY = "id_rsa"
KNOWN_HOSTS = "ssh-known-hosts"


def prepend_bin_to_path(bin_dir: Path) -> str:
    """Put pinned prerequisites (e.g. a specific helm) first on PATH."""
    bin_path = str(bin_dir.resolve())
    current = os.environ.get("PATH", "")
    os.environ["PATH"] = f"{bin_path}{os.pathsep}{current}" if current else bin_path
    return os.environ["PATH"]


class Setup:
    """State shared by every test in the run.

    Attributes:
        settings: Harness settings for the run.
        reporter: Suite-level reporter (failures abort the run).
        testroot: Root working directory; each Harness gets a subdirectory.
        cluster_ip: Node address, resolved once during setup.
        cluster: Cluster capability.
        kubectl: Orchestrator-CLI capability.
        helm: Release-Manager capability.
    """

    def __init__(
        self,
        settings: HarnessSettings,
        reporter: Reporter,
        testroot: Path,
        cluster_ip: str,
        cluster: ClusterAPI,
        kubectl: OrchestratorAPI,
        helm: ReleaseManagerAPI,
    ) -> None:
        if not cluster_ip:
            msg = "cluster address is empty"
            raise SetupError(msg)
        self.settings = settings
        self.reporter = reporter
        self.testroot = testroot
        self.cluster_ip = cluster_ip
        self.cluster = cluster
        self.kubectl = kubectl
        self.helm = helm

    @property
    def ssh_dir(self) -> Path:
        return self.testroot / SSH_DIR

    @property
    def ssh_key_private(self) -> Path:
        return self.ssh_dir / PRIVATE_KEY

    @property
    def ssh_key_public(self) -> Path:
        return self.ssh_key_private.with_name(PRIVATE_KEY + ".pub")

    @property
    def known_hosts_path(self) -> Path:
        return self.ssh_dir / KNOWN_HOSTS

    @classmethod
    def create(cls, settings: HarnessSettings, reporter: Reporter) -> Setup:
        """Prepare the environment against a real cluster.

        Raises:
            SetupError: If any step fails. The message carries the failing
                command and its output.
        """
        reporter.log.info(
            "suite_setup",
            keep_workdir=settings.keep_workdir,
            start_minikube=settings.start_minikube,
            minikube_driver=settings.minikube_driver,
            minikube_profile=settings.minikube_profile,
        )
        prepend_bin_to_path(settings.bin_dir)
        runner = CommandRunner(reporter)
        testroot = Path(tempfile.mkdtemp(prefix="fluxtest"))
        try:
            return cls._create(settings, reporter, runner, testroot)
        except SetupError:
            cls._remove(testroot, settings.keep_workdir)
            raise
        except HarnessError as exc:
            cls._remove(testroot, settings.keep_workdir)
            raise SetupError(str(exc)) from exc

    @classmethod
    def _create(
        cls,
        settings: HarnessSettings,
        reporter: Reporter,
        runner: CommandRunner,
        testroot: Path,
    ) -> Setup:
        ssh_dir = testroot / SSH_DIR
        ssh_dir.mkdir(mode=0o700)
        key = ssh_dir / PRIVATE_KEY
        runner.must("ssh-keygen", "-t", "rsa", "-N", "", "-f", str(key))

        minikube = Minikube(runner, settings.minikube_profile)
        minikube.verify_version(settings.minikube_version)
        if settings.start_minikube:
            minikube.delete()
            minikube.start(
                settings.minikube_driver,
                settings.k8s_version,
                deadline=settings.deadline("setup"),
            )
        cluster_ip = minikube.node_address()

        kubectl = Kubectl(runner, settings.minikube_profile)
        helm = Helm(runner, settings.minikube_profile)
        setup = cls(settings, reporter, testroot, cluster_ip, minikube, kubectl, helm)

        setup.write_known_hosts(runner)
        setup.authorize_key_on_node()
        if settings.minikube_driver != "none":
            for image in (settings.flux_image, settings.operator_image):
                minikube.import_image(image, deadline=settings.deadline("setup"))
        setup.bootstrap_namespace()
        setup.reset_flux_release()
        return setup

    def write_known_hosts(self, runner: CommandRunner) -> None:
        content = runner.must("ssh-keyscan", self.cluster_ip)
        self.known_hosts_path.write_text(content)
        self.known_hosts_path.chmod(0o600)

    def bootstrap_namespace(self) -> None:
        """Create the Flux namespace and its git credentials.

        The deploy-key secret and known_hosts configmap are recreated so a
        key from a previous run never lingers.
        """
        ns = self.settings.flux_namespace
        self.kubectl.create("", "namespace", ns)
        self.kubectl.delete(ns, "secret", self.settings.git_secret)
        self.kubectl.create(
            ns,
            "secret",
            self.settings.git_secret,
            "generic",
            "--from-file",
            f"identity={self.ssh_key_private}",
        )
        self.kubectl.delete(ns, "configmap", self.settings.known_hosts_configmap)
        self.kubectl.create(
            ns,
            "configmap",
            self.settings.known_hosts_configmap,
            "--from-file",
            f"known_hosts={self.known_hosts_path}",
        )

    def reset_flux_release(self) -> None:
        """Make sure a Flux release left by a failed run can't interfere."""
        release, ns = self.settings.flux_release, self.settings.flux_namespace
        recover_stuck_release(self.helm, release, self.reporter, namespace=ns)
        self.helm.delete(release, purge=True, namespace=ns)

    def authorize_key_on_node(self) -> None:
        """Allow the deploy key to push to repositories on the node."""
        pubkey = self.ssh_key_public.read_text().strip()
        self.cluster.exec_on_node(
            f"mkdir -p ~/.ssh && grep -qxF '{pubkey}' ~/.ssh/authorized_keys 2>/dev/null"
            f" || echo '{pubkey}' >> ~/.ssh/authorized_keys"
        )

    def teardown(self) -> None:
        """Remove the working directory unless asked to keep it."""
        self._remove(self.testroot, self.settings.keep_workdir)
        if self.settings.keep_workdir:
            self.reporter.log.info("workdir_kept", path=str(self.testroot))

    @staticmethod
    def _remove(path: Path, keep: bool) -> None:
        if not keep:
            shutil.rmtree(path, ignore_errors=True)


__all__ = ["KNOWN_HOSTS", "Setup", "prepend_bin_to_path"]
