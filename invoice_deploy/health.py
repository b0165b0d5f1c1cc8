"""
Readiness probes for a freshly started color.

A probe answers one question about a deployment target. ``run_probes`` waits
the grace period, then evaluates every probe under a timeout and retry
policy. The default configuration keeps a single process-state probe that
checks the compose listing, with one attempt.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from .compose import ComposeOrchestrator
from .errors import ConfigurationError, OrchestratorError
from .models import DeploymentTarget

logger = logging.getLogger('invoice_deploy.health')


@dataclass
class ProbeResult:
    probe: str
    healthy: bool
    detail: str = ""
    attempts: int = 1
    response_time_ms: Optional[int] = None


@dataclass
class ProbePolicy:
    """Timing for one round of probes"""
    initial_delay: float = 10
    retries: int = 1
    interval: float = 5
    timeout: float = 30


class HealthProbe(ABC):
    """One readiness check against a deployment target"""

    name = "probe"

    @abstractmethod
    async def check(self, target: DeploymentTarget) -> ProbeResult:
        ...


class ComposeStatusProbe(HealthProbe):
    """Every service of the target must be listed as running"""

    name = "compose"

    def __init__(self, orchestrator: ComposeOrchestrator, backend: str = 'backend', webui: str = 'webui'):
        self.orchestrator = orchestrator
        self.backend = backend
        self.webui = webui

    async def check(self, target: DeploymentTarget) -> ProbeResult:
        statuses = await self.orchestrator.list_status()
        down = []
        for service in target.services(self.backend, self.webui):
            status = statuses.get(service)
            if status is None or not status.running:
                down.append(service)

        if down:
            return ProbeResult(self.name, False, f"Not running: {', '.join(down)}")
        return ProbeResult(self.name, True, "All containers running")


def _expand(template: str, target: DeploymentTarget, ports: Dict[str, int], backend: str) -> str:
    color = target.color.value if target.color else ''
    return template.format(
        color=color,
        suffix=f"-{color}" if color else '',
        service=target.service_name(backend),
        port=ports.get(color or 'default', ports.get('default', ''))
    )


class HttpProbe(HealthProbe):
    """GET a URL and compare the response status"""

    name = "http"

    def __init__(self, url: str, expected_status: int = 200, ports: Optional[Dict[str, int]] = None,
                 backend: str = 'backend'):
        self.url = url
        self.expected_status = expected_status
        self.ports = ports or {}
        self.backend = backend

    async def check(self, target: DeploymentTarget) -> ProbeResult:
        url = _expand(self.url, target, self.ports, self.backend)
        start_time = time.time()
        async with aiohttp.ClientSession() as session:
            async with session.get(url, allow_redirects=False) as response:
                response_time = int((time.time() - start_time) * 1000)
                if response.status == self.expected_status:
                    return ProbeResult(self.name, True, f"{url} returned {response.status}",
                                       response_time_ms=response_time)
                return ProbeResult(
                    self.name, False,
                    f"{url} returned {response.status}, expected {self.expected_status}",
                    response_time_ms=response_time
                )


class TcpProbe(HealthProbe):
    """Open a TCP connection to the target"""

    name = "tcp"

    def __init__(self, host: str, port: Any, ports: Optional[Dict[str, int]] = None, backend: str = 'backend'):
        self.host = host
        self.port = port
        self.ports = ports or {}
        self.backend = backend

    async def check(self, target: DeploymentTarget) -> ProbeResult:
        host = _expand(self.host, target, self.ports, self.backend)
        port = int(_expand(str(self.port), target, self.ports, self.backend))
        reader, writer = await asyncio.open_connection(host, port)
        writer.close()
        await writer.wait_closed()
        return ProbeResult(self.name, True, f"{host}:{port} accepted connection")


async def _attempt(probe: HealthProbe, target: DeploymentTarget, timeout: float) -> ProbeResult:
    try:
        return await asyncio.wait_for(probe.check(target), timeout=timeout)
    except asyncio.TimeoutError:
        return ProbeResult(probe.name, False, f"Timed out after {timeout:.0f}s")
    except (OSError, aiohttp.ClientError, OrchestratorError) as e:
        return ProbeResult(probe.name, False, str(e))


async def run_probes(probes: List[HealthProbe], target: DeploymentTarget, policy: ProbePolicy) -> List[ProbeResult]:
    """Wait the grace period, then run every probe with retries"""
    if policy.initial_delay > 0:
        logger.info(f"Waiting for {target} containers to be healthy ({policy.initial_delay:.0f} seconds)...")
    await asyncio.sleep(policy.initial_delay)

    attempts = max(1, policy.retries)
    results = []
    for probe in probes:
        result = None
        for attempt in range(1, attempts + 1):
            result = await _attempt(probe, target, policy.timeout)
            result.attempts = attempt
            if result.healthy:
                break
            if attempt < attempts:
                logger.warning(f"{probe.name} probe failed for {target} ({result.detail}), retrying in {policy.interval:.0f}s")
                await asyncio.sleep(policy.interval)

        if result.healthy:
            logger.info(f"{probe.name} probe passed for {target}: {result.detail}")
        else:
            logger.error(f"{probe.name} probe failed for {target}: {result.detail}")
        results.append(result)

    return results


def build_probes(config: Dict[str, Any], orchestrator: ComposeOrchestrator) -> List[HealthProbe]:
    """Construct the probe list from the ``health.probes`` config section"""
    services = config.get('services', {})
    backend = services.get('backend', 'backend')
    webui = services.get('webui', 'webui')

    probes = []
    for probe_config in config.get('health', {}).get('probes') or [{'type': 'compose'}]:
        probe_type = probe_config.get('type')
        ports = probe_config.get('ports', {})

        if probe_type == 'compose':
            probes.append(ComposeStatusProbe(orchestrator, backend=backend, webui=webui))
        elif probe_type == 'http':
            if 'url' not in probe_config:
                raise ConfigurationError("HTTP probe requires a 'url'")
            probes.append(HttpProbe(
                url=probe_config['url'],
                expected_status=int(probe_config.get('expected_status', 200)),
                ports=ports,
                backend=backend
            ))
        elif probe_type == 'tcp':
            if 'port' not in probe_config:
                raise ConfigurationError("TCP probe requires a 'port'")
            probes.append(TcpProbe(
                host=probe_config.get('host', '127.0.0.1'),
                port=probe_config['port'],
                ports=ports,
                backend=backend
            ))
        else:
            raise ConfigurationError(f"Unknown health probe type: {probe_type}")

    return probes


def probe_policy(config: Dict[str, Any]) -> ProbePolicy:
    health = config.get('health', {})
    return ProbePolicy(
        initial_delay=float(health.get('grace_seconds', 10)),
        retries=int(health.get('retries', 1)),
        interval=float(health.get('retry_interval_seconds', 5)),
        timeout=float(health.get('timeout_seconds', 30))
    )
