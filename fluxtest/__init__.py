"""End-to-end test harness for the Flux GitOps controller.

fluxtest drives Flux through a real Kubernetes cluster and checks that
changes pushed to git converge to observable cluster state in bounded time.

Components:
    runner: CommandRunner, the one place processes are started
    tools: Cluster, Orchestrator-CLI, Release-Manager and Version-Control
        capabilities (minikube, kubectl, helm, git)
    fakes: In-memory fakes of every capability
    polling: ``until``, the polling engine every convergence check uses
    fluxapi: Client for the controller's HTTP API
    suite: Setup, created once per run
    harness: Harness, created once per test
    plugin: pytest options and fixtures wiring the two together

Usage:
    from fluxtest.harness import Harness

    @pytest.mark.e2e
    def test_sync(harness: Harness) -> None:
        harness.setup_git_remote()
        harness.init_git_repo_local()
        harness.push_repo()
"""

from __future__ import annotations

__version__ = "0.1.0"
