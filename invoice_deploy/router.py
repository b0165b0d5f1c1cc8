"""Reverse proxy restart with a new active color"""

import asyncio
import logging

from .compose import ComposeOrchestrator
from .errors import OrchestratorError, TrafficSwitchFailure
from .models import Color

logger = logging.getLogger('invoice_deploy.router')


class TrafficRouter:
    """Router service that reads the active color once, at start-up"""

    def __init__(self, orchestrator: ComposeOrchestrator, service: str = 'router',
                 color_variable: str = 'ACTIVE_VERSION', grace_seconds: float = 3):
        self.orchestrator = orchestrator
        self.service = service
        self.color_variable = color_variable
        self.grace_seconds = grace_seconds

    async def restart(self, color: Color):
        """Stop the router and start it again pointing at ``color``"""
        logger.info(f"Reloading {self.service} with {self.color_variable}={color.value}...")

        try:
            await self.orchestrator.stop([self.service])
            await self.orchestrator.start([self.service], env={self.color_variable: color.value})
        except OrchestratorError as e:
            raise TrafficSwitchFailure(f"Failed to restart {self.service}: {e}") from e

        await asyncio.sleep(self.grace_seconds)

        if not await self.is_running():
            raise TrafficSwitchFailure(f"Failed to reload {self.service}!")

    async def is_running(self) -> bool:
        try:
            statuses = await self.orchestrator.list_status()
        except OrchestratorError as e:
            logger.error(f"Cannot query {self.service} status: {e}")
            return False
        status = statuses.get(self.service)
        return status is not None and status.running
