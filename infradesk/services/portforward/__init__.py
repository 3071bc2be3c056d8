"""
Port Forward Module - On-demand Kubernetes tunnels for database connections

This module turns "the database lives at namespace X, service Y, port Z" into
a live 127.0.0.1:<port> endpoint:
- PortAllocator: Leases local ports from a bounded range
- ForwardRegistry: Concurrency-safe table of forwards (by id and by connection)
- KubernetesClient: Resolves services to ready pods, opens port-forward streams
- TunnelEstablisher / Tunnel: Local listener relaying over port-forward streams
- PortForwardManager: Get-or-create broker with per-connection single-flight
- HealthMonitor / IdleReaper: Background loops demoting dead and reaping idle tunnels

Forward lifecycle:
    (none) -> pending -> active -> idle -> (none)
              pending -> error, active -> error
              error/idle -> pending (reconnect or new request)

Usage:
    from infradesk.services.portforward import build_port_forward_manager

    manager = build_port_forward_manager(settings, store=store)
    forward = await manager.create("conn-7", "backup", "mysql", 3306)
    # connect the driver to 127.0.0.1:forward.local_port
"""

from .errors import (
    PortForwardError,
    ResourceExhausted,
    NoReadyBackend,
    ForwardTimeout,
    StreamBroken,
    TunnelError,
    ForwardNotFound,
    ConnectionNotFound,
    NotClusterBacked,
)
from .models import Forward, ForwardStatus, ForwardTarget
from .ports import PortAllocator
from .registry import ForwardRegistry
from .locks import KeyedLock
from .tunnel import Tunnel, TunnelEstablisher
from .manager import PortForwardManager
from .monitor import HealthMonitor, IdleReaper, ForwardMonitor, tcp_probe
from .factory import build_port_forward_manager, build_forward_monitor

__all__ = [
    # Errors
    "PortForwardError",
    "ResourceExhausted",
    "NoReadyBackend",
    "ForwardTimeout",
    "StreamBroken",
    "TunnelError",
    "ForwardNotFound",
    "ConnectionNotFound",
    "NotClusterBacked",
    # Model
    "Forward",
    "ForwardStatus",
    "ForwardTarget",
    # Building blocks
    "PortAllocator",
    "ForwardRegistry",
    "KeyedLock",
    "Tunnel",
    "TunnelEstablisher",
    # Broker
    "PortForwardManager",
    # Background loops
    "HealthMonitor",
    "IdleReaper",
    "ForwardMonitor",
    "tcp_probe",
    # Factory
    "build_port_forward_manager",
    "build_forward_monitor",
]
