"""
Invoice Service Deployment Models

Enums and records shared by the deployment controller, the color state store
and the container adapters.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ValidationError


class Environment(Enum):
    """Deployment environments"""
    STAGING = "staging"
    PRODUCTION = "prod"

    @classmethod
    def parse(cls, value: str) -> "Environment":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"Environment must be 'staging' or 'prod', got '{value}'")


class Color(Enum):
    """Production deployment slots"""
    BLUE = "blue"
    GREEN = "green"

    @classmethod
    def parse(cls, value: str) -> "Color":
        try:
            return cls(value.strip().lower())
        except (ValueError, AttributeError):
            raise ValidationError(f"Color must be 'blue' or 'green', got '{value}'")


DEFAULT_COLOR = Color.BLUE


def complement(color: Color) -> Color:
    """Return the other deployment slot"""
    return Color.GREEN if color == Color.BLUE else Color.BLUE


class DeploymentPhase(Enum):
    """Controller state machine phases"""
    IDLE = "idle"
    PREPARING = "preparing"
    BUILDING = "building"
    DEPLOYING = "deploying"
    HEALTH_CHECKING = "health_checking"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    SWITCHING = "switching"
    DONE = "done"
    FAILED = "failed"


TERMINAL_PHASES = {DeploymentPhase.DONE, DeploymentPhase.FAILED}


class RecordStatus(Enum):
    """History record status"""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class DeploymentState:
    """Persisted active color with its write revision"""
    active: Color
    revision: int = 0
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class DeploymentTarget:
    """Service group an operation acts on"""
    environment: Environment
    color: Optional[Color] = None

    def service_name(self, base: str) -> str:
        if self.color is None:
            return base
        return f"{base}-{self.color.value}"

    def services(self, backend: str = "backend", webui: str = "webui") -> List[str]:
        return [self.service_name(backend), self.service_name(webui)]

    def __str__(self) -> str:
        if self.color is None:
            return self.environment.value
        return f"{self.environment.value}/{self.color.value}"


@dataclass
class ServiceStatus:
    """One row of the orchestrator status listing"""
    name: str
    state: str
    status_text: str = ""

    @property
    def running(self) -> bool:
        return self.state.lower() == "running" or self.status_text.startswith("Up")


@dataclass(frozen=True)
class PendingSwitch:
    """Planned traffic switch awaiting confirmation"""
    token: str
    environment: Environment
    target: Color
    previous: Color
    base_revision: int
    created_at: datetime


@dataclass
class DeploymentResult:
    """Outcome of one controller operation"""
    operation: str
    target: DeploymentTarget
    phase: DeploymentPhase
    switched: bool = False
    message: str = ""
    deployment_id: Optional[str] = None
    pending: Optional[PendingSwitch] = None


@dataclass
class DeploymentRecord:
    """Deployment history entry"""
    deployment_id: str
    environment: Environment
    operation: str
    status: RecordStatus
    phase: DeploymentPhase
    started_at: datetime
    target_color: Optional[Color] = None
    previous_color: Optional[Color] = None
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    initiated_by: str = "system"
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'deployment_id': self.deployment_id,
            'environment': self.environment.value,
            'operation': self.operation,
            'status': self.status.value,
            'phase': self.phase.value,
            'target_color': self.target_color.value if self.target_color else None,
            'previous_color': self.previous_color.value if self.previous_color else None,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration_seconds': self.duration_seconds,
            'initiated_by': self.initiated_by,
            'error_message': self.error_message
        }


@dataclass
class StatusReport:
    """Read-only snapshot of an environment"""
    environment: Environment
    active: Optional[Color] = None
    inactive: Optional[Color] = None
    revision: Optional[int] = None
    services: Dict[str, ServiceStatus] = field(default_factory=dict)
    listing: str = ""
    warnings: List[str] = field(default_factory=list)
    history: List[DeploymentRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'environment': self.environment.value,
            'active': self.active.value if self.active else None,
            'inactive': self.inactive.value if self.inactive else None,
            'revision': self.revision,
            'services': {
                name: {'state': svc.state, 'status': svc.status_text, 'running': svc.running}
                for name, svc in self.services.items()
            },
            'warnings': list(self.warnings),
            'history': [record.to_dict() for record in self.history]
        }
