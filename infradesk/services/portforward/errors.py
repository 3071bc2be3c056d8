"""
Port Forward Errors

Every failure the tunnel manager reports to callers derives from
PortForwardError, so routers and background loops can catch one type.
"""


class PortForwardError(Exception):
    """Base class for port-forward failures."""


class ResourceExhausted(PortForwardError):
    """No free local port left in the configured range."""

    def __init__(self, port_min: int, port_max: int):
        self.port_min = port_min
        self.port_max = port_max
        super().__init__(f"no available ports in range {port_min}-{port_max}")


class NoReadyBackend(PortForwardError):
    """The target Service has no running, ready pod."""

    def __init__(self, namespace: str, service_name: str, reason: str = ""):
        self.namespace = namespace
        self.service_name = service_name
        message = f"no ready pods found for service {namespace}/{service_name}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ForwardTimeout(PortForwardError):
    """Tunnel creation exceeded its deadline."""

    def __init__(self, deadline: float):
        self.deadline = deadline
        super().__init__(f"timeout waiting for port forward to be ready after {deadline:g}s")


class StreamBroken(PortForwardError):
    """A tunnel that was active lost its upstream stream."""


class TunnelError(PortForwardError):
    """Tunnel could not be opened (bind failure, API error, rejected stream)."""


class ForwardNotFound(PortForwardError):
    """No forward with the given id or connection."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"forward not found: {key}")


class ConnectionNotFound(PortForwardError):
    """The connection descriptor does not exist."""

    def __init__(self, connection_ref: str):
        self.connection_ref = connection_ref
        super().__init__(f"connection not found: {connection_ref}")


class NotClusterBacked(PortForwardError):
    """The connection descriptor has no namespace/service/port to forward to."""

    def __init__(self, connection_ref: str):
        self.connection_ref = connection_ref
        super().__init__(f"connection {connection_ref} is not backed by a Kubernetes service")
