"""
Port Forward Factory

Builds a manager and its monitor from Settings. Instances are not cached
here; the application owns their lifetime (see main.py), so tests can build
as many independent managers as they need.
"""

import logging
from typing import Optional

from .manager import PortForwardManager
from .monitor import ForwardMonitor, HealthMonitor, IdleReaper
from .ports import PortAllocator
from .registry import ForwardRegistry
from .tunnel import TunnelEstablisher

logger = logging.getLogger(__name__)


def build_port_forward_manager(settings, store=None, cluster=None) -> PortForwardManager:
    """
    Create a PortForwardManager wired from settings.

    Args:
        settings: Settings instance (see config.py)
        store: Optional connection store receiving descriptor updates
        cluster: Cluster client (default: the global KubernetesClient)
    """
    if cluster is None:
        from .client import get_k8s_client
        cluster = get_k8s_client(settings.kubeconfig_path, settings.kube_context)

    establisher = TunnelEstablisher(
        cluster,
        local_host=settings.port_forward_local_host,
        liveness_interval=settings.port_forward_liveness_interval_seconds
    )
    allocator = PortAllocator(
        settings.port_forward_port_min,
        settings.port_forward_port_max,
        host=settings.port_forward_local_host
    )
    return PortForwardManager(
        establisher,
        registry=ForwardRegistry(),
        allocator=allocator,
        store=store,
        creation_timeout=settings.port_forward_creation_timeout_seconds,
        local_host=settings.port_forward_local_host
    )


def build_forward_monitor(manager: PortForwardManager, settings) -> ForwardMonitor:
    """Create the health/reaper loops for a manager from settings."""
    health = HealthMonitor(
        manager,
        interval=settings.port_forward_health_interval_seconds,
        probe_timeout=settings.port_forward_probe_timeout_seconds
    )
    error_retention: Optional[float] = settings.port_forward_error_retention_seconds or None
    reaper = IdleReaper(
        manager,
        interval=settings.port_forward_cleanup_interval_seconds,
        idle_timeout=settings.port_forward_idle_timeout_seconds,
        error_retention=error_retention
    )
    return ForwardMonitor(health, reaper)
