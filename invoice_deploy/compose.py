"""
Docker Compose adapter

Runs ``docker compose`` against one environment's compose file. Every call is
awaited to completion before the next one starts; long builds block the run.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .errors import BuildFailure, ConfigurationError, ContainerStartupFailure, OrchestratorError
from .models import ServiceStatus

logger = logging.getLogger('invoice_deploy.compose')

STATUS_FORMAT = '{{.Service}}\t{{.State}}\t{{.Status}}'


@dataclass
class CommandResult:
    """Completed subprocess"""
    args: List[str]
    returncode: Optional[int]
    stdout: str = ''
    stderr: str = ''

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return (self.stderr or self.stdout).strip()


class ComposeOrchestrator:
    """Builds, starts, stops and lists the services of one compose project"""

    def __init__(self, compose_file: Path, command: Sequence[str] = ('docker', 'compose'),
                 timeout_seconds: float = 1800):
        self.compose_file = Path(compose_file)
        self.command = list(command)
        self.timeout_seconds = timeout_seconds

    def ensure_compose_file(self):
        if not self.compose_file.is_file():
            raise ConfigurationError(f"Docker compose file not found: {self.compose_file}")

    async def _run_command(self, args: Sequence[str], env: Optional[Dict[str, str]] = None) -> CommandResult:
        """Run a compose subcommand asynchronously"""
        self.ensure_compose_file()
        cmd = [*self.command, '-f', str(self.compose_file), *args]
        process_env = {**os.environ, **env} if env else None

        logger.debug(f"Running command: {' '.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(self.compose_file.parent),
                env=process_env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            return CommandResult(args=cmd, returncode=None, stderr=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return CommandResult(
                args=cmd,
                returncode=None,
                stderr=f"Command timed out after {self.timeout_seconds:.0f}s"
            )

        return CommandResult(
            args=cmd,
            returncode=process.returncode,
            stdout=stdout.decode('utf-8', errors='replace') if stdout else '',
            stderr=stderr.decode('utf-8', errors='replace') if stderr else ''
        )

    @staticmethod
    def _names(names: Optional[Sequence[str]]) -> List[str]:
        return list(names) if names else []

    async def build(self, names: Optional[Sequence[str]] = None, no_cache: bool = True):
        args = ['build']
        if no_cache:
            args.append('--no-cache')
        result = await self._run_command(args + self._names(names))
        if not result.ok:
            raise BuildFailure(
                f"Image build failed for {', '.join(names) if names else 'all services'}",
                returncode=result.returncode,
                output=result.output
            )

    async def stop(self, names: Optional[Sequence[str]] = None):
        result = await self._run_command(['stop'] + self._names(names))
        if not result.ok:
            raise OrchestratorError("Failed to stop containers", result.returncode, result.output)

    async def remove(self, names: Optional[Sequence[str]] = None):
        result = await self._run_command(['rm', '-f'] + self._names(names))
        if not result.ok:
            raise OrchestratorError("Failed to remove containers", result.returncode, result.output)

    async def down(self):
        result = await self._run_command(['down'])
        if not result.ok:
            raise OrchestratorError("Failed to stop environment", result.returncode, result.output)

    async def start(self, names: Optional[Sequence[str]] = None, env: Optional[Dict[str, str]] = None):
        result = await self._run_command(['up', '-d'] + self._names(names), env=env)
        if not result.ok:
            raise ContainerStartupFailure(
                f"Failed to start {', '.join(names) if names else 'containers'}",
                returncode=result.returncode,
                output=result.output
            )

    async def list_status(self) -> Dict[str, ServiceStatus]:
        """Per-service state from ``compose ps``"""
        result = await self._run_command(['ps', '--all', '--format', STATUS_FORMAT])
        if not result.ok:
            raise OrchestratorError("Failed to list containers", result.returncode, result.output)
        return parse_status_listing(result.stdout)

    async def ps_listing(self) -> str:
        result = await self._run_command(['ps', '--all'])
        if not result.ok:
            raise OrchestratorError("Failed to list containers", result.returncode, result.output)
        return result.stdout

    async def defined_services(self) -> List[str]:
        result = await self._run_command(['config', '--services'])
        if not result.ok:
            raise ConfigurationError(f"Invalid compose file {self.compose_file}: {result.output}")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def parse_status_listing(text: str) -> Dict[str, ServiceStatus]:
    """Parse tab separated ``service, state, status`` rows"""
    statuses = {}
    for line in text.splitlines():
        if not line.strip():
            continue
        fields = line.split('\t')
        name = fields[0].strip()
        state = fields[1].strip() if len(fields) > 1 else ''
        status_text = fields[2].strip() if len(fields) > 2 else ''

        # A service scaled to several containers counts as running if any replica is
        existing = statuses.get(name)
        if existing is not None and existing.running:
            continue
        statuses[name] = ServiceStatus(name=name, state=state, status_text=status_text)
    return statuses
