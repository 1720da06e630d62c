"""Suite configuration for the fluxtest harness.

Settings come from ``FLUXTEST_*`` environment variables (or a ``.env``
file) and can be overridden per run by the pytest command-line options
registered in the root ``conftest.py``.

Environment Variables:
    FLUXTEST_KEEP_WORKDIR: Don't delete the working directory on exit
    FLUXTEST_START_MINIKUBE: Delete and start minikube before the suite
    FLUXTEST_MINIKUBE_DRIVER: minikube VM driver ("none" skips image import)
    FLUXTEST_MINIKUBE_PROFILE: minikube profile, also the kube context
    ...one variable per field below.

Example:
    >>> settings = HarnessSettings(sync_timeout=60.0)
    >>> settings.deadline("sync")
    Deadline(timeout=60.0, remaining=60.0)
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from fluxtest.deadline import Deadline

TimeoutName = Literal["sync", "release", "service", "setup", "git"]


class HarnessSettings(BaseSettings):
    """Settings shared by Setup and every Harness."""

    model_config = SettingsConfigDict(
        env_prefix="FLUXTEST_",
        env_file=".env",
        extra="ignore",
        frozen=True,
    )

    # Suite bootstrap
    keep_workdir: bool = Field(default=False, description="Don't delete workdir on exit")
    start_minikube: bool = Field(
        default=False,
        description="Start minikube (or delete and start if it already exists)",
    )
    minikube_driver: str = Field(default="", description="minikube driver to use")
    minikube_profile: str = Field(default="minikube", description="minikube profile to use")
    minikube_version: str = Field(default="v0.28.1", description="Required minikube version")
    k8s_version: str = Field(default="v1.10.6", description="Kubernetes version to start")
    bin_dir: Path = Field(
        default=Path("bin"),
        description="Directory of pinned prerequisites, prepended to PATH",
    )

    # System under test
    flux_image: str = Field(default="quay.io/weaveworks/flux:latest")
    operator_image: str = Field(default="quay.io/weaveworks/helm-operator:latest")
    flux_namespace: str = Field(default="flux")
    flux_release: str = Field(default="cd", description="Helm release name of Flux itself")
    flux_chart: str = Field(
        default="weaveworks/flux",
        description="Flux chart reference or path, installed with the Helm operator enabled",
    )
    flux_port: int = Field(default=30080, ge=1, le=65535)
    repo_fixture: Path = Field(
        default=Path("helm/repo"),
        description="Directory copied into each test's git repository",
    )
    sync_tag: str = Field(default="flux-sync", min_length=1)
    git_secret: str = Field(default="flux-git-deploy")
    known_hosts_configmap: str = Field(default="ssh-known-hosts")
    node_user: str = Field(default="docker", description="SSH user on the cluster node")
    node_repo_root: str = Field(default="/home/docker", description="Parent of remote repos")

    # Timing, all in seconds
    poll_interval: float = Field(default=1.0, gt=0.0)
    setup_timeout: float = Field(default=600.0, gt=0.0)
    git_timeout: float = Field(default=10.0, gt=0.0)
    sync_timeout: float = Field(default=120.0, gt=0.0)
    release_timeout: float = Field(default=120.0, gt=0.0)
    service_timeout: float = Field(default=10.0, gt=0.0)

    def deadline(self, name: TimeoutName) -> Deadline:
        """Start a fresh deadline from the named timeout setting."""
        return Deadline.after(getattr(self, f"{name}_timeout"))

    def flux_api_url(self, node_address: str) -> str:
        """Base URL of the controller's HTTP API on the cluster node."""
        return f"http://{node_address}:{self.flux_port}/api/flux"


__all__ = ["HarnessSettings", "TimeoutName"]
