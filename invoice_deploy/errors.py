"""Deployment error taxonomy"""

from typing import Optional


class DeploymentError(Exception):
    """Base class for every failure that aborts a deployment run"""


class ValidationError(DeploymentError):
    """Bad or missing command-line input"""


class ConfigurationError(DeploymentError):
    """Missing compose file, service definition or required color"""


class OrchestratorError(DeploymentError):
    """A container runtime command exited non-zero"""

    def __init__(self, message: str, returncode: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class BuildFailure(OrchestratorError):
    """Image build failed; the live color was not touched"""


class ContainerStartupFailure(OrchestratorError):
    """Containers failed to start or failed their health probes"""


class TrafficSwitchFailure(DeploymentError):
    """Router did not come back after a switch; persisted color already changed"""


class StaleStateError(DeploymentError):
    """Persisted state changed since it was read"""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Active color was modified concurrently (expected revision {expected}, found {actual})"
        )
        self.expected = expected
        self.actual = actual


class InvalidTransition(DeploymentError):
    """Controller asked to move between phases that are not connected"""
