"""UI pointer file that tells the web front-end which backend to call"""

import logging
from pathlib import Path
from typing import Optional

import aiofiles

from .errors import ConfigurationError
from .models import Color, Environment

logger = logging.getLogger('invoice_deploy.env_configurator')


class EnvironmentConfigurator:
    """Writes the single ``KEY=address`` line consumed by the UI build"""

    def __init__(self, env_file: Path, address_key: str = 'VITE_SERVER_ADDRESS',
                 backend_service: str = 'backend', backend_port: int = 5000):
        self.env_file = Path(env_file)
        self.address_key = address_key
        self.backend_service = backend_service
        self.backend_port = backend_port

    def backend_address(self, environment: Environment, color: Optional[Color] = None) -> str:
        if environment == Environment.STAGING:
            return f"http://{self.backend_service}:{self.backend_port}"

        if color is None:
            raise ConfigurationError("Color must be specified for production deployment")
        return f"http://{self.backend_service}-{color.value}:{self.backend_port}"

    async def configure(self, environment: Environment, color: Optional[Color] = None) -> str:
        """Point the UI at the backend for this environment and color"""
        logger.info("Updating UI environment configuration...")
        address = self.backend_address(environment, color)

        self.env_file.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(self.env_file, 'w') as f:
            await f.write(f"{self.address_key}={address}\n")

        if environment == Environment.STAGING:
            logger.info(f"UI configured for staging ({address})")
        else:
            logger.info(f"UI configured for production {color.value} ({address})")
        return address
