"""
Connection Store

Narrow view of the saved-connection table used by the port-forward manager:
read a connection's Kubernetes target, and record which forward (if any)
currently serves it.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy import select

from ..models import Connection
from .portforward.errors import ConnectionNotFound, NotClusterBacked
from .portforward.models import Forward, ForwardTarget

logger = logging.getLogger(__name__)


class BaseConnectionStore(ABC):
    """Interface the port-forward manager consumes."""

    @abstractmethod
    async def get_target(self, connection_ref: str) -> ForwardTarget:
        """
        Kubernetes target of a connection.

        Raises:
            ConnectionNotFound: no such connection
            NotClusterBacked: connection has no namespace/service/port
        """
        pass

    @abstractmethod
    async def update_forward(self, connection_ref: str, forward: Forward, local_host: str) -> None:
        """Point the connection at a forward's local endpoint and record its status."""
        pass

    @abstractmethod
    async def clear_forward(self, connection_ref: str, target: ForwardTarget, forward_id: Optional[str] = None) -> None:
        """Drop forward info and restore the in-cluster host/port."""
        pass


class SQLConnectionStore(BaseConnectionStore):
    """Connection store backed by the SQLAlchemy `connections` table."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _load(self, session, connection_ref: str) -> Optional[Connection]:
        try:
            connection_id = int(connection_ref)
        except (TypeError, ValueError):
            return None
        result = await session.execute(select(Connection).where(Connection.id == connection_id))
        return result.scalar_one_or_none()

    async def get_target(self, connection_ref: str) -> ForwardTarget:
        async with self.session_factory() as session:
            connection = await self._load(session, connection_ref)
            if connection is None:
                raise ConnectionNotFound(connection_ref)
            if not connection.is_cluster_backed:
                raise NotClusterBacked(connection_ref)
            return ForwardTarget(connection.namespace, connection.service_name, connection.service_port)

    async def update_forward(self, connection_ref: str, forward: Forward, local_host: str) -> None:
        async with self.session_factory() as session:
            connection = await self._load(session, connection_ref)
            if connection is None:
                logger.debug(f"[STORE] Connection {connection_ref} not found, skipping forward update")
                return

            connection.forward_id = forward.id
            connection.forward_local_port = forward.local_port
            connection.forward_status = forward.status.value
            if forward.is_live:
                # Drivers dial the local end of the tunnel
                connection.host = local_host
                connection.port = forward.local_port
            await session.commit()

    async def clear_forward(self, connection_ref: str, target: ForwardTarget, forward_id: Optional[str] = None) -> None:
        async with self.session_factory() as session:
            connection = await self._load(session, connection_ref)
            if connection is None:
                return
            # A newer forward already took over this connection
            if forward_id and connection.forward_id and connection.forward_id != forward_id:
                logger.debug(f"[STORE] Connection {connection_ref} now served by {connection.forward_id}, not clearing")
                return

            connection.forward_id = None
            connection.forward_local_port = None
            connection.forward_status = None
            connection.host = target.remote_host
            connection.port = target.remote_port
            await session.commit()
