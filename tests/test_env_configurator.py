"""Tests for the UI pointer file."""

from __future__ import annotations

import pytest

from invoice_deploy.env_configurator import EnvironmentConfigurator
from invoice_deploy.errors import ConfigurationError
from invoice_deploy.models import Color, Environment


@pytest.fixture
def configurator(tmp_path) -> EnvironmentConfigurator:
    return EnvironmentConfigurator(tmp_path / "ui" / ".env")


@pytest.mark.asyncio
async def test_staging_points_at_shared_backend(configurator) -> None:
    address = await configurator.configure(Environment.STAGING)

    assert address == "http://backend:5000"
    assert configurator.env_file.read_text() == "VITE_SERVER_ADDRESS=http://backend:5000\n"


@pytest.mark.asyncio
async def test_production_points_at_color_backend(configurator) -> None:
    await configurator.configure(Environment.PRODUCTION, Color.GREEN)
    assert configurator.env_file.read_text() == "VITE_SERVER_ADDRESS=http://backend-green:5000\n"


@pytest.mark.asyncio
async def test_rewrites_previous_value(configurator) -> None:
    await configurator.configure(Environment.PRODUCTION, Color.GREEN)
    await configurator.configure(Environment.PRODUCTION, Color.BLUE)
    assert configurator.env_file.read_text().splitlines() == ["VITE_SERVER_ADDRESS=http://backend-blue:5000"]


@pytest.mark.asyncio
async def test_production_requires_color(configurator) -> None:
    with pytest.raises(ConfigurationError):
        await configurator.configure(Environment.PRODUCTION)
    assert not configurator.env_file.exists()


def test_custom_key_and_port(tmp_path) -> None:
    configurator = EnvironmentConfigurator(tmp_path / ".env", address_key="API_URL",
                                           backend_service="api", backend_port=8080)
    assert configurator.backend_address(Environment.PRODUCTION, Color.BLUE) == "http://api-blue:8080"
