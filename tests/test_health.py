"""Tests for readiness probes and the probe retry policy."""

from __future__ import annotations

import asyncio

import pytest
from aiohttp import web

from invoice_deploy.config import get_default_config
from invoice_deploy.errors import ConfigurationError
from invoice_deploy.health import (
    ComposeStatusProbe,
    HealthProbe,
    HttpProbe,
    ProbePolicy,
    ProbeResult,
    TcpProbe,
    build_probes,
    probe_policy,
    run_probes,
)
from invoice_deploy.models import Color, DeploymentTarget, Environment
from tests.helpers.fakes import PROD_SERVICES, FakeOrchestrator

GREEN = DeploymentTarget(Environment.PRODUCTION, Color.GREEN)
FAST = ProbePolicy(initial_delay=0, retries=3, interval=0, timeout=1)


class FlakyProbe(HealthProbe):
    """Fails a fixed number of times, then passes."""

    name = "flaky"

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def check(self, target: DeploymentTarget) -> ProbeResult:
        self.calls += 1
        if self.calls <= self.failures:
            return ProbeResult(self.name, False, "not yet")
        return ProbeResult(self.name, True, "ok")


class HangingProbe(HealthProbe):
    name = "hanging"

    async def check(self, target: DeploymentTarget) -> ProbeResult:
        await asyncio.sleep(10)
        return ProbeResult(self.name, True)


class TestRunProbes:

    @pytest.mark.asyncio
    async def test_retries_until_healthy(self) -> None:
        probe = FlakyProbe(failures=2)
        results = await run_probes([probe], GREEN, FAST)

        assert results[0].healthy is True
        assert results[0].attempts == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self) -> None:
        probe = FlakyProbe(failures=5)
        results = await run_probes([probe], GREEN, FAST)

        assert results[0].healthy is False
        assert probe.calls == 3

    @pytest.mark.asyncio
    async def test_single_attempt_policy(self) -> None:
        probe = FlakyProbe(failures=1)
        results = await run_probes([probe], GREEN, ProbePolicy(initial_delay=0, retries=1, interval=0))

        assert results[0].healthy is False
        assert probe.calls == 1

    @pytest.mark.asyncio
    async def test_timeout_marks_unhealthy(self) -> None:
        policy = ProbePolicy(initial_delay=0, retries=1, interval=0, timeout=0.05)
        results = await run_probes([HangingProbe()], GREEN, policy)

        assert results[0].healthy is False
        assert "Timed out" in results[0].detail


class TestComposeStatusProbe:

    @pytest.mark.asyncio
    async def test_all_running(self) -> None:
        orchestrator = FakeOrchestrator(PROD_SERVICES, running=["backend-green", "webui-green"])
        result = await ComposeStatusProbe(orchestrator).check(GREEN)
        assert result.healthy is True

    @pytest.mark.asyncio
    async def test_reports_stopped_service(self) -> None:
        orchestrator = FakeOrchestrator(PROD_SERVICES, running=["backend-green"])
        result = await ComposeStatusProbe(orchestrator).check(GREEN)

        assert result.healthy is False
        assert "webui-green" in result.detail
        assert "backend-green" not in result.detail


class TestNetworkProbes:

    @pytest.mark.asyncio
    async def test_tcp_probe_connects(self) -> None:
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            probe = TcpProbe(host="127.0.0.1", port="{port}", ports={"green": port})
            result = await probe.check(GREEN)
        finally:
            server.close()
            await server.wait_closed()

        assert result.healthy is True

    @pytest.mark.asyncio
    async def test_tcp_probe_refused(self) -> None:
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        results = await run_probes([TcpProbe(host="127.0.0.1", port=port)], GREEN,
                                   ProbePolicy(initial_delay=0, retries=1, interval=0, timeout=1))
        assert results[0].healthy is False

    @pytest.mark.asyncio
    async def test_http_probe_status(self) -> None:
        seen = []

        async def health(request: web.Request) -> web.Response:
            seen.append(request.path)
            return web.Response(text="ok")

        app = web.Application()
        app.router.add_get("/green/health", health)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "127.0.0.1", 0)
        await site.start()
        port = runner.addresses[0][1]
        try:
            ok = await HttpProbe(f"http://127.0.0.1:{port}/{{color}}/health").check(GREEN)
            missing = await HttpProbe(f"http://127.0.0.1:{port}/{{service}}/health").check(GREEN)
        finally:
            await runner.cleanup()

        assert ok.healthy is True
        assert missing.healthy is False
        assert "404" in missing.detail
        assert seen == ["/green/health"]


class TestBuildProbes:

    def test_default_is_compose_probe(self) -> None:
        orchestrator = FakeOrchestrator(PROD_SERVICES)
        probes = build_probes(get_default_config(), orchestrator)

        assert len(probes) == 1
        assert isinstance(probes[0], ComposeStatusProbe)

    def test_configured_probes(self) -> None:
        config = get_default_config()
        config["health"]["probes"] = [
            {"type": "compose"},
            {"type": "http", "url": "http://localhost:{port}/health", "ports": {"blue": 5001, "green": 5002}},
            {"type": "tcp", "host": "localhost", "port": 5432},
        ]
        probes = build_probes(config, FakeOrchestrator(PROD_SERVICES))

        assert [type(p) for p in probes] == [ComposeStatusProbe, HttpProbe, TcpProbe]

    def test_unknown_probe_type(self) -> None:
        config = get_default_config()
        config["health"]["probes"] = [{"type": "carrier-pigeon"}]
        with pytest.raises(ConfigurationError):
            build_probes(config, FakeOrchestrator(PROD_SERVICES))

    def test_policy_from_config(self) -> None:
        policy = probe_policy(get_default_config())
        assert policy.initial_delay == 10
        assert policy.retries == 1
