"""Shared fixtures for the deployment test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from invoice_deploy.config import get_default_config
from tests.helpers.fakes import PROD_SERVICES, STAGING_SERVICES, FakeOrchestrator


@pytest.fixture
def config(tmp_path: Path) -> dict:
    """Default config rooted in a temp dir with every wait set to zero."""
    cfg = get_default_config()
    cfg["project"]["root"] = str(tmp_path)
    cfg["health"]["grace_seconds"] = 0
    cfg["health"]["stabilize_seconds"] = 0
    cfg["health"]["retry_interval_seconds"] = 0
    cfg["router"]["grace_seconds"] = 0
    return cfg


@pytest.fixture
def prod_orchestrator() -> FakeOrchestrator:
    """Blue live with the router up, green not deployed yet."""
    return FakeOrchestrator(PROD_SERVICES, running=["backend-blue", "webui-blue", "router"])


@pytest.fixture
def staging_orchestrator() -> FakeOrchestrator:
    return FakeOrchestrator(STAGING_SERVICES, running=STAGING_SERVICES)
