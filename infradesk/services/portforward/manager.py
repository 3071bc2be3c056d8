"""
Port Forward Manager

Get-or-create broker for Kubernetes port-forward tunnels. Every database
request for a cluster-backed connection goes through get_or_create(), which
hands back a live local port, creating the tunnel on first use.

Per connection there is at most one pending/active forward:
- Concurrent callers for the same connection share one creation attempt
  (single-flight) and all receive its result or its error.
- Creation, stop, reconnect and reaping of one connection are serialized by a
  per-connection lock; different connections proceed in parallel.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from .errors import ForwardNotFound, ForwardTimeout, PortForwardError, StreamBroken
from .locks import KeyedLock
from .models import Forward, ForwardStatus, ForwardTarget, LOCAL_HOST, utcnow
from .ports import PortAllocator
from .registry import ForwardRegistry

logger = logging.getLogger(__name__)

# Slack on top of the establisher's own deadline before the broker gives up on it
DEADLINE_GRACE_SECONDS = 1.0


class PortForwardManager:
    """
    Connection broker over the registry, port allocator and tunnel establisher.

    The connection store is optional; when present it receives best-effort
    updates of each connection's host/port/forward fields.
    """

    def __init__(
        self,
        establisher,
        registry: Optional[ForwardRegistry] = None,
        allocator: Optional[PortAllocator] = None,
        store=None,
        creation_timeout: float = 30.0,
        local_host: str = LOCAL_HOST
    ):
        self.establisher = establisher
        self.registry = registry or ForwardRegistry()
        self.allocator = allocator or PortAllocator(host=local_host)
        self.store = store
        self.creation_timeout = creation_timeout
        self.local_host = local_host

        self._locks = KeyedLock()
        self._inflight: Dict[Tuple[str, ForwardTarget], asyncio.Task] = {}  # (connection_ref, target) -> creation task
        self._leases: Dict[str, int] = {}  # forward_id -> local port still held from the allocator
        self._tunnels: Dict[str, object] = {}  # forward_id -> Tunnel
        self._background: Set[asyncio.Task] = set()

        logger.info(
            f"[PORT-FORWARD] Manager initialized - ports {self.allocator.port_min}-{self.allocator.port_max}, "
            f"creation timeout {creation_timeout:g}s"
        )

    # =========================================================================
    # GET-OR-CREATE
    # =========================================================================

    async def get_or_create(self, connection_ref: str, target: ForwardTarget) -> Forward:
        """Return an active forward for the connection, creating one if needed."""
        existing = self.registry.get_by_connection(connection_ref)
        if existing and existing.status == ForwardStatus.ACTIVE and existing.target == target:
            touched = self.registry.touch(existing.id)
            if touched is not None:
                logger.debug(
                    f"[PORT-FORWARD] ♻️ Reusing forward {existing.id} for connection {connection_ref} "
                    f"(local port {existing.local_port})"
                )
                return touched

        if existing and existing.status != ForwardStatus.ACTIVE:
            logger.info(
                f"[PORT-FORWARD] Forward {existing.id} for connection {connection_ref} is "
                f"{existing.status.value}, creating a new one"
            )

        # Callers asking for a different target run their own attempt; the
        # connection lock orders it after this one and it replaces the result
        key = (connection_ref, target)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._create_locked(connection_ref, target))
            self._inflight[key] = task
            task.add_done_callback(lambda t, key=key: self._clear_inflight(key, t))
        else:
            logger.debug(f"[PORT-FORWARD] Joining in-flight creation for connection {connection_ref}")

        # Shielded: a caller giving up must not abort the attempt others wait on
        return await asyncio.shield(task)

    async def create(self, connection_ref: str, namespace: str, service_name: str, remote_port: int) -> Forward:
        """Create (or reuse) the forward for a connection."""
        return await self.get_or_create(connection_ref, ForwardTarget(namespace, service_name, int(remote_port)))

    async def resolve(self, connection_ref: str) -> Forward:
        """
        Forward serving a cluster-backed connection.

        Reads the target from the connection store and ensures a tunnel exists.
        """
        if self.store is None:
            raise RuntimeError("resolving a connection requires a connection store")
        target = await self.store.get_target(connection_ref)
        return await self.get_or_create(connection_ref, target)

    async def resolve_endpoint(self, connection_ref: str) -> Tuple[str, int]:
        """Local (host, port) the database driver should dial for a connection."""
        forward = await self.resolve(connection_ref)
        return self.local_host, forward.local_port

    def _clear_inflight(self, key: Tuple[str, ForwardTarget], task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Errors are delivered to the awaiting callers; mark retrieved for the
        # case where every caller was cancelled
        if not task.cancelled():
            task.exception()

    async def _create_locked(self, connection_ref: str, target: ForwardTarget) -> Forward:
        async with self._locks(connection_ref):
            existing = self.registry.get_by_connection(connection_ref)
            if existing and existing.status == ForwardStatus.ACTIVE and existing.target == target:
                return self.registry.touch(existing.id) or existing

            preferred_port = None
            if existing is not None:
                await self._dispose(existing)
                preferred_port = existing.local_port

            return await self._establish(connection_ref, target, preferred_port)

    async def _establish(self, connection_ref: str, target: ForwardTarget, preferred_port: Optional[int]) -> Forward:
        """Allocate, register pending, open the tunnel. Caller holds the connection lock."""
        if preferred_port is not None and self.allocator.reserve(preferred_port):
            local_port = preferred_port
        else:
            local_port = self.allocator.allocate()

        forward = self.registry.put(Forward.for_target(connection_ref, target, local_port))
        self._leases[forward.id] = local_port
        logger.info(
            f"[PORT-FORWARD] 🔧 Creating forward {forward.id} for connection {connection_ref} "
            f"({target}) on local port {local_port}"
        )

        try:
            tunnel = await asyncio.wait_for(
                self.establisher.establish(
                    target,
                    local_port,
                    self.creation_timeout,
                    on_broken=lambda reason, forward_id=forward.id: self._on_tunnel_broken(forward_id, reason)
                ),
                timeout=self.creation_timeout + DEADLINE_GRACE_SECONDS
            )
        except asyncio.TimeoutError as e:
            error = ForwardTimeout(self.creation_timeout)
            await self._fail_creation(forward, error)
            raise error from e
        except PortForwardError as e:
            await self._fail_creation(forward, e)
            raise
        except Exception as e:
            await self._fail_creation(forward, e)
            raise PortForwardError(f"failed to create port forward: {e}") from e
        except asyncio.CancelledError:
            await self._fail_creation(forward, "creation cancelled")
            raise

        self._tunnels[forward.id] = tunnel
        self.registry.set_pod(forward.id, getattr(tunnel, "pod_name", None))
        active = self.registry.set_status(forward.id, ForwardStatus.ACTIVE, expected=ForwardStatus.PENDING)
        if active is None:
            # Broken before we could publish it; the callback already recorded the error
            self._tunnels.pop(forward.id, None)
            await tunnel.close()
            self._release_port(forward.id)
            current = self.registry.get(forward.id)
            reason = current.last_error if current else "tunnel closed during creation"
            raise StreamBroken(reason)

        logger.info(f"[PORT-FORWARD] ✅ Forward {forward.id} active: {self.local_host}:{local_port} -> {target}")
        await self._push_descriptor(active)
        return active

    async def _fail_creation(self, forward: Forward, error) -> None:
        self._release_port(forward.id)
        failed = self.registry.set_status(forward.id, ForwardStatus.ERROR, last_error=str(error))
        logger.error(f"[PORT-FORWARD] ❌ Failed to create forward {forward.id} for {forward.target}: {error}")
        if failed is not None:
            await self._push_descriptor(failed)

    # =========================================================================
    # LOOKUP
    # =========================================================================

    def get(self, forward_id: str) -> Forward:
        forward = self.registry.get(forward_id)
        if forward is None:
            raise ForwardNotFound(forward_id)
        return forward

    def get_by_connection(self, connection_ref: str) -> Forward:
        forward = self.registry.get_by_connection(connection_ref)
        if forward is None:
            raise ForwardNotFound(f"connection {connection_ref}")
        return forward

    def list(self) -> List[Forward]:
        return self.registry.list()

    def stats(self) -> Dict[str, int]:
        return self.registry.count_by_status()

    def touch(self, forward_id: str) -> Forward:
        """Refresh last_used_at so the reaper leaves the forward alone."""
        forward = self.registry.touch(forward_id)
        if forward is None:
            raise ForwardNotFound(forward_id)
        return forward

    # =========================================================================
    # STOP / RECONNECT
    # =========================================================================

    async def stop(self, forward_id: str) -> Optional[Forward]:
        """
        Stop a forward and release its port.

        Stopping an unknown or already stopped forward is a no-op returning None.
        """
        forward = self.registry.get(forward_id)
        if forward is None:
            return None

        async with self._locks(forward.connection_ref):
            current = self.registry.get(forward_id)
            if current is None:
                return None
            await self._dispose(current)

        logger.info(f"[PORT-FORWARD] Stopped forward {forward_id} (connection {current.connection_ref})")
        await self._clear_descriptor(current)
        current.status = ForwardStatus.STOPPED
        return current

    async def reconnect(self, forward_id: str, new_port: bool = False) -> Forward:
        """Replace a forward with a fresh tunnel, on the same local port unless new_port."""
        forward = self.registry.get(forward_id)
        if forward is None:
            raise ForwardNotFound(forward_id)

        connection_ref = forward.connection_ref
        async with self._locks(connection_ref):
            current = self.registry.get(forward_id)
            if current is None:
                raise ForwardNotFound(forward_id)
            logger.info(f"[PORT-FORWARD] Reconnecting forward {forward_id} (connection {connection_ref})")
            await self._dispose(current)
            preferred_port = None if new_port else current.local_port
            return await self._establish(connection_ref, current.target, preferred_port)

    async def shutdown(self) -> None:
        """Stop every forward."""
        logger.info("[PORT-FORWARD] Stopping all port forwards...")
        for forward in self.registry.list():
            try:
                await self.stop(forward.id)
            except Exception as e:
                logger.error(f"[PORT-FORWARD] Error stopping forward {forward.id}: {e}")

        for task in list(self._background):
            task.cancel()
        logger.info("[PORT-FORWARD] All port forwards stopped")

    async def _dispose(self, forward: Forward) -> None:
        """Close the tunnel, release the port and drop the record. Caller holds the lock."""
        tunnel = self._tunnels.pop(forward.id, None)
        if tunnel is not None:
            try:
                await tunnel.close()
            except Exception as e:
                logger.warning(f"[PORT-FORWARD] Error closing tunnel for forward {forward.id}: {e}")
        self._release_port(forward.id)
        self.registry.delete(forward.id)

    def _release_port(self, forward_id: str) -> None:
        # A failed creation already gave its port back; the error record keeps
        # local_port only for display and must not release it a second time
        port = self._leases.pop(forward_id, None)
        if port is not None:
            self.allocator.release(port)

    # =========================================================================
    # BACKGROUND TRANSITIONS (health monitor / idle reaper)
    # =========================================================================

    async def mark_error(self, forward_id: str, reason: str) -> Optional[Forward]:
        """Demote an active forward to error. No-op unless it is still active."""
        failed = self.registry.set_status(
            forward_id, ForwardStatus.ERROR, last_error=reason, expected=ForwardStatus.ACTIVE
        )
        if failed is not None:
            logger.warning(f"[PORT-FORWARD] ⚠️ Forward {forward_id} (port {failed.local_port}) -> error: {reason}")
            await self._push_descriptor(failed)
        return failed

    async def reap(
        self,
        forward_id: str,
        idle_timeout: timedelta,
        error_retention: Optional[timedelta] = None,
        now: Optional[datetime] = None
    ) -> Optional[Forward]:
        """
        Remove a forward if it is still eligible once its connection lock is held.

        Active/idle forwards are eligible when unused for longer than
        idle_timeout; error forwards when they have been in error for longer
        than error_retention (None disables error reaping).
        """
        forward = self.registry.get(forward_id)
        if forward is None:
            return None

        async with self._locks(forward.connection_ref):
            current = self.registry.get(forward_id)
            now = now or utcnow()
            if current is None or not self._reapable(current, idle_timeout, error_retention, now):
                return None

            if current.status == ForwardStatus.ACTIVE:
                self.registry.set_status(forward_id, ForwardStatus.IDLE, expected=ForwardStatus.ACTIVE, now=now)
            await self._dispose(current)

        await self._clear_descriptor(current)
        current.status = ForwardStatus.STOPPED
        return current

    @staticmethod
    def _reapable(
        forward: Forward,
        idle_timeout: timedelta,
        error_retention: Optional[timedelta],
        now: datetime
    ) -> bool:
        if forward.status in (ForwardStatus.ACTIVE, ForwardStatus.IDLE):
            return now - forward.last_used_at > idle_timeout
        if forward.status == ForwardStatus.ERROR and error_retention is not None:
            return now - forward.status_changed_at > error_retention
        return False

    def _on_tunnel_broken(self, forward_id: str, reason: str) -> None:
        message = f"stream broken: {reason}"
        # Still pending: creation is in progress and will observe the error itself
        failed = self.registry.set_status(forward_id, ForwardStatus.ERROR, last_error=message, expected=ForwardStatus.ACTIVE)
        if failed is None:
            self.registry.set_status(forward_id, ForwardStatus.ERROR, last_error=message, expected=ForwardStatus.PENDING)
            return
        logger.warning(f"[PORT-FORWARD] ⚠️ Forward {forward_id} (port {failed.local_port}) -> error: {message}")
        task = asyncio.ensure_future(self._push_descriptor(failed))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # =========================================================================
    # CONNECTION DESCRIPTOR UPDATES (best effort)
    # =========================================================================

    async def _push_descriptor(self, forward: Forward) -> None:
        if self.store is None:
            return
        try:
            await self.store.update_forward(forward.connection_ref, forward, self.local_host)
        except Exception as e:
            logger.warning(f"[PORT-FORWARD] Failed to update connection {forward.connection_ref} with forward info: {e}")

    async def _clear_descriptor(self, forward: Forward) -> None:
        if self.store is None:
            return
        try:
            await self.store.clear_forward(forward.connection_ref, forward.target, forward.id)
        except Exception as e:
            logger.warning(f"[PORT-FORWARD] Failed to clear forward info on connection {forward.connection_ref}: {e}")
