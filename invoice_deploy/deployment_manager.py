"""
Invoice Service Deployment Manager

Blue-green deployment controller. Production runs two colors side by side:
the inactive color is built, started and probed while the active color keeps
serving, then traffic moves by restarting the router with the new color.
Staging has a single slot and is simply rebuilt in place.

Every mutating operation walks the phase machine below and is written to the
deployment history. Failures are fail-fast: the phase moves to ``failed``,
the error is recorded and re-raised, and nothing is compensated
automatically.

    idle -> preparing -> building -> deploying -> health_checking
         -> awaiting_confirmation -> switching -> done
"""

import asyncio
import logging
import sqlite3
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from .color_state import ColorStateStore
from .compose import ComposeOrchestrator
from .config import EnvironmentSettings, environment_settings
from .env_configurator import EnvironmentConfigurator
from .errors import (
    ConfigurationError,
    ContainerStartupFailure,
    InvalidTransition,
    ValidationError,
)
from .health import ComposeStatusProbe, HealthProbe, ProbePolicy, build_probes, probe_policy, run_probes
from .history import DeploymentHistory
from .models import (
    TERMINAL_PHASES,
    Color,
    DeploymentPhase,
    DeploymentRecord,
    DeploymentResult,
    DeploymentTarget,
    Environment,
    PendingSwitch,
    RecordStatus,
    StatusReport,
    complement,
)
from .router import TrafficRouter

logger = logging.getLogger('invoice_deploy.deployment_manager')

Confirm = Callable[[str], bool]

TRANSITIONS = {
    DeploymentPhase.IDLE: {DeploymentPhase.PREPARING},
    DeploymentPhase.PREPARING: {
        DeploymentPhase.BUILDING,
        DeploymentPhase.DEPLOYING,
        DeploymentPhase.SWITCHING,
        DeploymentPhase.IDLE,
    },
    DeploymentPhase.BUILDING: {DeploymentPhase.DEPLOYING},
    DeploymentPhase.DEPLOYING: {DeploymentPhase.HEALTH_CHECKING, DeploymentPhase.SWITCHING},
    DeploymentPhase.HEALTH_CHECKING: {DeploymentPhase.AWAITING_CONFIRMATION, DeploymentPhase.DONE},
    DeploymentPhase.AWAITING_CONFIRMATION: {DeploymentPhase.SWITCHING, DeploymentPhase.IDLE},
    DeploymentPhase.SWITCHING: {DeploymentPhase.DONE},
    DeploymentPhase.DONE: set(),
    DeploymentPhase.FAILED: set(),
}


def deny(question: str) -> bool:
    return False


def auto_approve(question: str) -> bool:
    logger.info(f"{question} (auto-approved)")
    return True


class DeploymentController:
    """Drives one environment through deploy, switch and rollback"""

    def __init__(self, settings: EnvironmentSettings, orchestrator: ComposeOrchestrator,
                 configurator: EnvironmentConfigurator, router: TrafficRouter,
                 store: Optional[ColorStateStore] = None,
                 probes: Optional[List[HealthProbe]] = None,
                 policy: Optional[ProbePolicy] = None,
                 history: Optional[DeploymentHistory] = None,
                 confirm: Confirm = deny,
                 initiated_by: str = "system"):
        self.settings = settings
        self.environment = settings.environment
        self.orchestrator = orchestrator
        self.configurator = configurator
        self.router = router
        self.store = store
        if probes is None:
            probes = [ComposeStatusProbe(orchestrator, settings.backend_service, settings.webui_service)]
        if not probes:
            raise ConfigurationError("At least one health probe is required")
        self.probes = list(probes)
        self.policy = policy or ProbePolicy()
        self.history = history
        self.confirm = confirm
        self.initiated_by = initiated_by

        self._phase = DeploymentPhase.IDLE
        self._pending: Dict[str, PendingSwitch] = {}

        if self.environment == Environment.PRODUCTION and self.store is None:
            raise ConfigurationError("Production requires a color state store")

    @classmethod
    def from_config(cls, config: Dict[str, Any], environment: Environment,
                    confirm: Confirm = deny, initiated_by: str = "system") -> "DeploymentController":
        """Wire the controller and its collaborators from the merged config"""
        settings = environment_settings(config, environment)
        orchestrator = ComposeOrchestrator(
            settings.compose_file,
            command=settings.compose_command,
            timeout_seconds=settings.compose_timeout_seconds
        )
        orchestrator.ensure_compose_file()

        store = None
        if environment == Environment.PRODUCTION:
            store = ColorStateStore(settings.state_file)

        history = None
        if settings.history_database is not None:
            history = DeploymentHistory(settings.history_database)

        return cls(
            settings=settings,
            orchestrator=orchestrator,
            configurator=EnvironmentConfigurator(
                settings.ui_env_file,
                address_key=settings.address_key,
                backend_service=settings.backend_service,
                backend_port=settings.backend_port
            ),
            router=TrafficRouter(
                orchestrator,
                service=settings.router_service,
                color_variable=settings.router_color_variable,
                grace_seconds=settings.router_grace_seconds
            ),
            store=store,
            probes=build_probes(config, orchestrator),
            policy=probe_policy(config),
            history=history,
            confirm=confirm,
            initiated_by=initiated_by
        )

    @property
    def phase(self) -> DeploymentPhase:
        return self._phase

    def _transition(self, phase: DeploymentPhase):
        if phase not in TRANSITIONS[self._phase]:
            raise InvalidTransition(f"Cannot move from {self._phase.value} to {phase.value}")
        logger.debug(f"Phase {self._phase.value} -> {phase.value}")
        self._phase = phase

    def _require(self, environment: Environment, operation: str):
        if self.environment != environment:
            label = "production" if environment == Environment.PRODUCTION else environment.value
            raise ValidationError(f"{operation} is only available for {label}")

    def _target(self, color: Optional[Color] = None) -> DeploymentTarget:
        return DeploymentTarget(self.environment, color)

    def _services(self, target: DeploymentTarget) -> List[str]:
        return target.services(self.settings.backend_service, self.settings.webui_service)

    @asynccontextmanager
    async def _operation(self, name: str, target_color: Optional[Color] = None,
                         previous_color: Optional[Color] = None):
        """Run one operation from idle, recording its outcome"""
        if self._phase in TERMINAL_PHASES:
            self._phase = DeploymentPhase.IDLE
        if self._phase != DeploymentPhase.IDLE:
            raise InvalidTransition(f"Cannot start {name} while {self._phase.value}")

        record = None
        if self.history is not None:
            try:
                record = self.history.start(
                    self.environment, name,
                    target_color=target_color,
                    previous_color=previous_color,
                    initiated_by=self.initiated_by
                )
            except (OSError, sqlite3.Error) as e:
                logger.warning(f"Deployment history unavailable, continuing without it: {e}")

        self._transition(DeploymentPhase.PREPARING)
        try:
            yield record
        except Exception as e:
            failed_in = self._phase
            self._phase = DeploymentPhase.FAILED
            logger.error(f"{name.capitalize()} failed during {failed_in.value}: {e}")
            self._finish(record, RecordStatus.FAILED, failed_in, str(e))
            raise
        except BaseException as e:
            # interrupted or cancelled
            failed_in = self._phase
            self._phase = DeploymentPhase.FAILED
            logger.error(f"{name.capitalize()} interrupted during {failed_in.value}")
            self._finish(record, RecordStatus.FAILED, failed_in, f"Interrupted ({type(e).__name__})")
            raise
        else:
            status = RecordStatus.COMPLETED
            if self._phase == DeploymentPhase.IDLE:
                status = RecordStatus.CANCELLED
            self._finish(record, status, self._phase)

    def _finish(self, record: Optional[DeploymentRecord], status: RecordStatus,
                phase: DeploymentPhase, error: Optional[str] = None):
        if record is None:
            return
        try:
            self.history.finish(record, status, phase, error)
        except Exception as e:
            logger.warning(f"Could not record deployment outcome: {e}")

    async def _verify_services(self, target: DeploymentTarget):
        """The compose file must define every service of the target, and the router in production"""
        defined = await self.orchestrator.defined_services()
        required = self._services(target)
        if self.environment == Environment.PRODUCTION:
            required.append(self.settings.router_service)
        missing = [name for name in required if name not in defined]
        if missing:
            raise ConfigurationError(f"Service definition missing from compose file: {', '.join(missing)}")

    async def _stopped_services(self, target: DeploymentTarget) -> List[str]:
        statuses = await self.orchestrator.list_status()
        return [
            name for name in self._services(target)
            if name not in statuses or not statuses[name].running
        ]

    def switch_command(self, color: Color) -> str:
        return f"invoice-deploy --env {self.environment.value} --switch --color {color.value}"

    async def deploy_staging(self) -> DeploymentResult:
        """Rebuild and restart the single staging slot"""
        self._require(Environment.STAGING, "Staging deployment")
        target = self._target()

        async with self._operation('deploy') as record:
            logger.info("Deploying to staging environment...")
            await self._verify_services(target)
            await self.configurator.configure(Environment.STAGING)

            self._transition(DeploymentPhase.BUILDING)
            logger.info("Building images...")
            await self.orchestrator.build(no_cache=True)

            self._transition(DeploymentPhase.DEPLOYING)
            logger.info("Stopping existing containers...")
            await self.orchestrator.down()
            logger.info("Starting new containers...")
            await self.orchestrator.start()

            self._transition(DeploymentPhase.HEALTH_CHECKING)
            logger.info(f"Waiting {self.settings.stabilize_seconds:.0f} seconds for containers to stabilize...")
            await asyncio.sleep(self.settings.stabilize_seconds)
            stopped = await self._stopped_services(target)
            for name in stopped:
                logger.warning(f"Service {name} is not running after staging deployment")

            self._transition(DeploymentPhase.DONE)
            logger.info("Staging deployment completed successfully!")
            return DeploymentResult(
                operation='deploy',
                target=target,
                phase=self._phase,
                message="Staging deployment completed",
                deployment_id=record.deployment_id if record else None
            )

    async def deploy_production(self, target_color: Union[Color, str, None] = None) -> DeploymentResult:
        """Deploy to the inactive (or given) color and offer the traffic switch"""
        self._require(Environment.PRODUCTION, "Production deployment")
        state = self.store.read()
        active = state.active

        async with self._operation('deploy', previous_color=active) as record:
            if target_color is None:
                color = complement(active)
                logger.info(f"Auto-detected inactive version: {color.value}")
            elif isinstance(target_color, Color):
                color = target_color
            else:
                color = Color.parse(target_color)

            target = self._target(color)
            if record is not None:
                record.target_color = color
            deployment_id = record.deployment_id if record else None

            if color == active:
                logger.warning(f"Deploying to currently active version: {color.value}")
                if not self.confirm("This will cause downtime. Continue?"):
                    self._transition(DeploymentPhase.IDLE)
                    logger.info("Deployment cancelled")
                    return DeploymentResult('deploy', target, self._phase,
                                            message="Deployment cancelled",
                                            deployment_id=deployment_id)

            logger.info(f"Deploying to production {color.value} environment...")
            logger.info(f"Current active version: {active.value}")

            await self._verify_services(target)
            await self.configurator.configure(Environment.PRODUCTION, color)
            services = self._services(target)

            self._transition(DeploymentPhase.BUILDING)
            logger.info(f"Building {color.value} images...")
            await self.orchestrator.build(services, no_cache=True)

            self._transition(DeploymentPhase.DEPLOYING)
            logger.info(f"Stopping {color.value} containers...")
            await self.orchestrator.stop(services)
            await self.orchestrator.remove(services)
            logger.info(f"Starting {color.value} containers...")
            await self.orchestrator.start(services)

            self._transition(DeploymentPhase.HEALTH_CHECKING)
            results = await run_probes(self.probes, target, self.policy)
            failures = [f"{r.probe}: {r.detail}" for r in results if not r.healthy]
            if failures:
                raise ContainerStartupFailure(
                    f"{color.value} containers failed health checks ({'; '.join(failures)})"
                )
            logger.info(f"{color.value} containers are running")

            pending = self.plan_switch(color, base_revision=state.revision)
            self._transition(DeploymentPhase.AWAITING_CONFIRMATION)
            logger.warning(f"Ready to switch traffic from {active.value} to {color.value}")

            if not self.confirm("Proceed with traffic switch?"):
                self._transition(DeploymentPhase.IDLE)
                command = self.switch_command(color)
                logger.info(f"Traffic switch cancelled. {color.value} is running but not active.")
                logger.info(f"To manually switch, run: {command}")
                return DeploymentResult(
                    'deploy', target, self._phase,
                    message=f"{color.value} is running but not active. To switch, run: {command}",
                    deployment_id=deployment_id,
                    pending=pending
                )

            await self.confirm_switch(pending)
            return DeploymentResult('deploy', target, self._phase, switched=True,
                                    message=f"Traffic switched to {color.value}",
                                    deployment_id=deployment_id)

    def plan_switch(self, color: Color, base_revision: Optional[int] = None) -> PendingSwitch:
        """Issue a one-shot token for switching traffic to ``color``"""
        self._require(Environment.PRODUCTION, "Traffic switching")
        state = self.store.read()
        pending = PendingSwitch(
            token=uuid.uuid4().hex,
            environment=self.environment,
            target=color,
            previous=state.active,
            base_revision=state.revision if base_revision is None else base_revision,
            created_at=datetime.now()
        )
        self._pending[pending.token] = pending
        logger.debug(f"Planned switch {pending.token} to {color.value} at revision {pending.base_revision}")
        return pending

    async def confirm_switch(self, pending: PendingSwitch):
        """Execute a planned switch unless the active color changed since planning"""
        if self._pending.pop(pending.token, None) is None:
            raise ValidationError(f"Unknown or already used switch token: {pending.token}")

        if self._phase == DeploymentPhase.AWAITING_CONFIRMATION:
            await self._switch(pending.target, expected_revision=pending.base_revision)
            return

        async with self._operation('switch', target_color=pending.target, previous_color=pending.previous):
            await self._switch(pending.target, expected_revision=pending.base_revision)

    async def _switch(self, new_color: Color, expected_revision: Optional[int] = None):
        self._transition(DeploymentPhase.SWITCHING)
        old_color = self.store.get_active()
        logger.info(f"Switching traffic from {old_color.value} to {new_color.value}...")

        self.store.set_active(new_color, expected_revision=expected_revision)
        await self.router.restart(new_color)

        self._transition(DeploymentPhase.DONE)
        logger.info(f"Traffic switched to {new_color.value} successfully!")
        if old_color != new_color:
            logger.info(f"Old version ({old_color.value}) is still running for quick rollback if needed")

    async def switch_traffic(self, new_color: Union[Color, str],
                             expected_revision: Optional[int] = None) -> DeploymentResult:
        """Persist ``new_color`` and restart the router with it"""
        self._require(Environment.PRODUCTION, "Traffic switching")
        color = new_color if isinstance(new_color, Color) else Color.parse(new_color)
        previous = self.store.get_active()

        async with self._operation('switch', target_color=color, previous_color=previous) as record:
            await self._switch(color, expected_revision=expected_revision)
            return DeploymentResult('switch', self._target(color), self._phase, switched=True,
                                    message=f"Traffic switched to {color.value}",
                                    deployment_id=record.deployment_id if record else None)

    async def promote(self, new_color: Union[Color, str]) -> DeploymentResult:
        """Switch traffic to an already running inactive color"""
        self._require(Environment.PRODUCTION, "Promotion")
        color = new_color if isinstance(new_color, Color) else Color.parse(new_color)
        state = self.store.read()
        if color == state.active:
            raise ValidationError(f"{color.value} is already the active version")

        async with self._operation('promote', target_color=color, previous_color=state.active) as record:
            target = self._target(color)
            await self._verify_services(target)
            stopped = await self._stopped_services(target)
            if stopped:
                raise ContainerStartupFailure(
                    f"Cannot switch to {color.value}: {', '.join(stopped)} not running; deploy it first"
                )
            await self._switch(color, expected_revision=state.revision)
            return DeploymentResult('promote', target, self._phase, switched=True,
                                    message=f"Traffic switched to {color.value}",
                                    deployment_id=record.deployment_id if record else None)

    async def rollback(self) -> DeploymentResult:
        """Switch back to the previous color, starting it first if needed"""
        self._require(Environment.PRODUCTION, "Rollback")
        state = self.store.read()
        current = state.active
        previous = complement(current)

        async with self._operation('rollback', target_color=previous, previous_color=current) as record:
            logger.warning(f"Rolling back from {current.value} to {previous.value}...")
            target = self._target(previous)
            await self._verify_services(target)

            stopped = await self._stopped_services(target)
            if stopped:
                logger.error(f"Previous version ({previous.value}) is not running: {', '.join(stopped)}")
                logger.info(f"Starting {previous.value} containers first...")
                self._transition(DeploymentPhase.DEPLOYING)
                await self.orchestrator.start(self._services(target))
                await asyncio.sleep(self.policy.initial_delay)

            await self._switch(previous, expected_revision=state.revision)
            logger.info("Rollback completed successfully!")
            return DeploymentResult('rollback', target, self._phase, switched=True,
                                    message=f"Rolled back to {previous.value}",
                                    deployment_id=record.deployment_id if record else None)

    async def status(self, history_limit: int = 5) -> StatusReport:
        """Read-only report of colors, containers and recent runs"""
        report = StatusReport(environment=self.environment)
        report.services = await self.orchestrator.list_status()
        report.listing = await self.orchestrator.ps_listing()

        if self.environment == Environment.PRODUCTION:
            state = self.store.read()
            report.active = state.active
            report.inactive = complement(state.active)
            report.revision = state.revision
            expected = self._services(self._target(state.active))
        else:
            expected = self._services(self._target())

        stopped = [name for name in expected
                   if name not in report.services or not report.services[name].running]
        if stopped:
            if self.environment == Environment.PRODUCTION:
                report.warnings.append(
                    f"Active version {report.active.value} has services not running: {', '.join(stopped)}; "
                    f"persisted state may not match running containers"
                )
            else:
                report.warnings.append(f"Services not running: {', '.join(stopped)}")

        if self.environment == Environment.PRODUCTION:
            router = report.services.get(self.settings.router_service)
            if router is None or not router.running:
                report.warnings.append(f"Router {self.settings.router_service} is not running")

        if self.history is not None:
            report.history = self.history.recent(self.environment, history_limit)

        return report
