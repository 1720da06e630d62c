"""pytest plugin wiring Setup and Harness into fixtures.

Registered from the root ``conftest.py``. Adds the suite's command-line
options, a session-scoped ``suite`` fixture that builds the Setup once
(aborting the run if that fails) and a function-scoped ``harness`` fixture
bound to the requesting test.

Options:
    --keep-workdir       Don't delete the working directory on exit
    --start-minikube     Start minikube (or delete and start it) first
    --minikube-driver    minikube VM driver to use
    --minikube-profile   minikube profile to use
"""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

import pytest
import structlog

from fluxtest.config import HarnessSettings
from fluxtest.errors import SetupError
from fluxtest.harness import Harness
from fluxtest.reporting import PytestReporter, SuiteReporter
from fluxtest.suite import Setup

logger = structlog.get_logger(__name__)


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("fluxtest", "Flux end-to-end harness")
    group.addoption(
        "--keep-workdir",
        action="store_true",
        default=None,
        help="don't delete workdir on exit",
    )
    group.addoption(
        "--start-minikube",
        action="store_true",
        default=None,
        help="start minikube (or delete and start if it already exists)",
    )
    group.addoption("--minikube-driver", default=None, help="minikube driver to use")
    group.addoption("--minikube-profile", default=None, help="minikube profile to use")


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "e2e: End-to-end tests requiring a minikube cluster and the Flux charts",
    )


def settings_from_options(config: pytest.Config) -> HarnessSettings:
    """Build settings from the environment, overridden by explicit options."""
    overrides: dict[str, Any] = {}
    for option in ("keep_workdir", "start_minikube", "minikube_driver", "minikube_profile"):
        value = config.getoption(option)
        if value is not None:
            overrides[option] = value
    return HarnessSettings(**overrides)


@pytest.fixture(scope="session")
def harness_settings(pytestconfig: pytest.Config) -> HarnessSettings:
    return settings_from_options(pytestconfig)


@pytest.fixture(scope="session")
def suite(harness_settings: HarnessSettings) -> Generator[Setup, None, None]:
    """One-time suite setup; a failure aborts the whole run."""
    reporter = SuiteReporter(logger)
    try:
        setup = Setup.create(harness_settings, reporter)
    except SetupError as exc:
        pytest.exit(f"suite setup failed: {exc}", returncode=pytest.ExitCode.INTERNAL_ERROR)
    yield setup
    setup.teardown()


@pytest.fixture
def harness(suite: Setup, request: pytest.FixtureRequest) -> Generator[Harness, None, None]:
    """Harness bound to the requesting test.

    Errors the test recorded without failing fast are reported when the
    test returns.
    """
    reporter = PytestReporter.for_test(request.node.nodeid)
    h = Harness(suite, request.node.name, reporter)
    yield h
    h.close()
    reporter.check()
