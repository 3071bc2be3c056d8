"""InfraDesk backend: database GUI services and the Kubernetes port-forward manager."""

__version__ = "0.3.0"
