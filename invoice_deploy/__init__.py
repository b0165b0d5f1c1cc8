"""Blue-green deployment orchestrator for the Invoice Service."""

__version__ = "1.0.0"
