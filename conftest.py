"""Root pytest configuration: load the fluxtest plugin."""

from __future__ import annotations

pytest_plugins = ["fluxtest.plugin"]
