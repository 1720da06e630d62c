"""Tool capabilities: narrow interfaces over the external CLIs.

Each capability has one production implementation here and one in-memory
fake in ``fluxtest.fakes``:

    ClusterAPI          Minikube   / FakeCluster
    OrchestratorAPI     Kubectl    / FakeOrchestrator
    ReleaseManagerAPI   Helm       / FakeReleaseManager
    VersionControlAPI   Git        / FakeRepository
"""

from __future__ import annotations

from fluxtest.tools.cluster import ClusterAPI, Minikube
from fluxtest.tools.git import Git, VersionControlAPI
from fluxtest.tools.helm import (
    Helm,
    ReleaseManagerAPI,
    ReleaseRevision,
    recover_stuck_release,
)
from fluxtest.tools.kubectl import Kubectl, OrchestratorAPI

__all__ = [
    "ClusterAPI",
    "Git",
    "Helm",
    "Kubectl",
    "Minikube",
    "OrchestratorAPI",
    "ReleaseManagerAPI",
    "ReleaseRevision",
    "VersionControlAPI",
    "recover_stuck_release",
]
