"""
Port Forward Data Model

Forward records are owned by the ForwardRegistry; everything handed out to
callers is a copy.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


LOCAL_HOST = "127.0.0.1"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ForwardStatus(str, Enum):
    """Forward lifecycle states"""
    PENDING = "pending"
    ACTIVE = "active"
    ERROR = "error"
    IDLE = "idle"
    STOPPED = "stopped"


# Statuses that hold the connection's single live slot
LIVE_STATUSES = frozenset({ForwardStatus.PENDING, ForwardStatus.ACTIVE})


@dataclass(frozen=True)
class ForwardTarget:
    """Cluster-side endpoint a forward points at."""
    namespace: str
    service_name: str
    remote_port: int

    @property
    def remote_host(self) -> str:
        """In-cluster DNS name of the service."""
        return f"{self.service_name}.{self.namespace}.svc.cluster.local"

    def __str__(self) -> str:
        return f"{self.namespace}/{self.service_name}:{self.remote_port}"


@dataclass
class Forward:
    """A local TCP port mapped onto a port of a pod behind a Service."""
    connection_ref: str
    namespace: str
    service_name: str
    remote_port: int
    local_port: int
    status: ForwardStatus = ForwardStatus.PENDING
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)
    status_changed_at: datetime = field(default_factory=utcnow)
    last_error: Optional[str] = None
    pod_name: Optional[str] = None

    @classmethod
    def for_target(cls, connection_ref: str, target: ForwardTarget, local_port: int) -> "Forward":
        return cls(
            connection_ref=connection_ref,
            namespace=target.namespace,
            service_name=target.service_name,
            remote_port=target.remote_port,
            local_port=local_port,
        )

    @property
    def target(self) -> ForwardTarget:
        return ForwardTarget(self.namespace, self.service_name, self.remote_port)

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def copy(self) -> "Forward":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        """Convert forward to dictionary for API responses"""
        return {
            "id": self.id,
            "connection_id": self.connection_ref,
            "namespace": self.namespace,
            "service_name": self.service_name,
            "local_host": LOCAL_HOST,
            "local_port": self.local_port,
            "remote_host": self.target.remote_host,
            "remote_port": self.remote_port,
            "pod_name": self.pod_name,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat(),
            "error_message": self.last_error,
        }
