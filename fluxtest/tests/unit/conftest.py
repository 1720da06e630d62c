"""Shared fixtures for fluxtest unit tests.

Everything here runs without a cluster: Setup and Harness are built from
the in-memory fakes, and the controller API is served by httpx.MockTransport.
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import httpx
import pytest

from fluxtest.config import HarnessSettings
from fluxtest.fakes import FakeCluster, FakeOrchestrator, FakeReleaseManager, FakeRepository
from fluxtest.fluxapi import FluxClient
from fluxtest.harness import Harness
from fluxtest.reporting import PytestReporter, SuiteReporter
from fluxtest.suite import Setup

HELLOWORLD_ID = "default:deployment/helloworld"
HELLOWORLD_IMAGES = {
    "helloworld": "quay.io/weaveworks/helloworld:master-a000001",
    "sidecar": "quay.io/weaveworks/sidecar:master-a000001",
}


def services_payload(images: dict[str, str], controller_id: str = HELLOWORLD_ID) -> list[dict[str, Any]]:
    """Build a ``/v6/services`` response body for one workload."""
    return [
        {
            "ID": controller_id,
            "Status": "ready",
            "Containers": [{"Name": name, "Current": {"ID": ref}} for name, ref in images.items()],
        }
    ]


@pytest.fixture
def settings() -> HarnessSettings:
    """Settings with timeouts short enough for unit tests."""
    return HarnessSettings(
        poll_interval=0.02,
        git_timeout=1.0,
        sync_timeout=0.5,
        release_timeout=0.5,
        service_timeout=0.3,
    )


@pytest.fixture
def reporter() -> PytestReporter:
    return PytestReporter()


@pytest.fixture
def fake_setup(settings: HarnessSettings, tmp_path: Path) -> Setup:
    """Setup wired to fake capabilities, rooted in tmp_path."""
    return Setup(
        settings,
        SuiteReporter(),
        tmp_path,
        "192.168.99.100",
        FakeCluster(),
        FakeOrchestrator(),
        FakeReleaseManager(),
    )


@pytest.fixture
def repo() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def flux_images() -> dict[str, str]:
    """Images the mock controller reports; tests mutate this to simulate rollouts."""
    return dict(HELLOWORLD_IMAGES)


@pytest.fixture
def flux_transport(flux_images: dict[str, str]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/v6/services"):
            return httpx.Response(200, json=services_payload(flux_images))
        return httpx.Response(404)

    return httpx.MockTransport(handler)


@pytest.fixture
def make_harness(
    fake_setup: Setup,
    reporter: PytestReporter,
    repo: FakeRepository,
    flux_transport: httpx.MockTransport,
) -> Generator[Callable[..., Harness], None, None]:
    """Factory for harnesses over fakes; all are closed at teardown."""
    created: list[Harness] = []

    def factory(name: str = "test_unit", **kwargs: Any) -> Harness:
        kwargs.setdefault("git", repo)
        if "flux" not in kwargs:
            client = httpx.Client(transport=flux_transport)
            kwargs["flux"] = FluxClient(fake_setup.settings.flux_api_url("192.168.99.100"), reporter, client=client)
        h = Harness(fake_setup, name, reporter, **kwargs)
        created.append(h)
        return h

    yield factory
    for h in created:
        h.close()


@pytest.fixture
def fake_harness(make_harness: Callable[..., Harness]) -> Harness:
    return make_harness()
