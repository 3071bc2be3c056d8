"""
Port Forward Monitor

Two background loops over the forward registry:
- HealthMonitor: probes every active forward's local port and demotes
  unreachable ones to error.
- IdleReaper: stops forwards nobody has touched within the idle timeout (and
  error forwards past their retention window), releasing their ports.

Each loop works from a registry snapshot and never holds a lock while probing.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from .manager import PortForwardManager
from .models import Forward, ForwardStatus, LOCAL_HOST

logger = logging.getLogger(__name__)

Prober = Callable[[str, int, float], Awaitable[None]]


async def tcp_probe(host: str, port: int, timeout: float) -> None:
    """Open and close a TCP connection. Raises on failure."""
    _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError):
        pass


class HealthMonitor:
    """Periodic reachability check of active forwards."""

    def __init__(
        self,
        manager: PortForwardManager,
        interval: float = 30.0,
        probe_timeout: float = 2.0,
        prober: Prober = tcp_probe
    ):
        self.manager = manager
        self.interval = interval
        self.probe_timeout = probe_timeout
        self.prober = prober

    async def run_once(self) -> List[Forward]:
        """Probe all active forwards once. Returns the forwards demoted to error."""
        active = [f for f in self.manager.list() if f.status == ForwardStatus.ACTIVE]
        if not active:
            return []

        results = await asyncio.gather(
            *(self._probe(forward) for forward in active),
            return_exceptions=True
        )

        demoted = []
        for forward, result in zip(active, results):
            if result is None:
                continue
            try:
                failed = await self.manager.mark_error(forward.id, f"Health check failed: {result}")
            except Exception as e:
                logger.error(f"[PF:HEALTH] Failed to record error for forward {forward.id}: {e}", exc_info=True)
                continue
            if failed is not None:
                demoted.append(failed)

        if demoted:
            logger.info(f"[PF:HEALTH] Health check completed: {len(demoted)} of {len(active)} forward(s) failed")
        else:
            logger.debug(f"[PF:HEALTH] Health check completed: {len(active)} forward(s) healthy")
        return demoted

    async def _probe(self, forward: Forward) -> None:
        try:
            await self.prober(self.manager.local_host or LOCAL_HOST, forward.local_port, self.probe_timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(f"no answer on port {forward.local_port} within {self.probe_timeout:g}s")

    async def run_forever(self) -> None:
        logger.info(f"[PF:HEALTH] Health monitor started (every {self.interval:g}s)")
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"[PF:HEALTH] Health check error: {e}", exc_info=True)


class IdleReaper:
    """Periodic reclamation of unused forwards."""

    def __init__(
        self,
        manager: PortForwardManager,
        interval: float = 300.0,
        idle_timeout: float = 600.0,
        error_retention: Optional[float] = 1800.0
    ):
        self.manager = manager
        self.interval = interval
        self.idle_timeout = timedelta(seconds=idle_timeout)
        # 0 or None keeps errored forwards until reconnect/stop
        self.error_retention = timedelta(seconds=error_retention) if error_retention else None

    async def run_once(self, now: Optional[datetime] = None) -> List[Forward]:
        """Reap every eligible forward once. Returns the removed forwards."""
        reaped = []
        for forward in self.manager.list():
            try:
                removed = await self.manager.reap(
                    forward.id,
                    self.idle_timeout,
                    error_retention=self.error_retention,
                    now=now
                )
            except Exception as e:
                logger.error(f"[PF:REAPER] ❌ Failed to reap forward {forward.id}: {e}", exc_info=True)
                continue

            if removed is not None:
                logger.info(
                    f"[PF:REAPER] 🧹 Cleaned up forward {removed.id} "
                    f"(service: {removed.namespace}/{removed.service_name}, port {removed.local_port})"
                )
                reaped.append(removed)

        if reaped:
            logger.info(f"[PF:REAPER] Cleaned up {len(reaped)} port forward(s)")
        return reaped

    async def run_forever(self) -> None:
        logger.info(
            f"[PF:REAPER] Idle reaper started (every {self.interval:g}s, "
            f"idle timeout {self.idle_timeout.total_seconds():g}s)"
        )
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"[PF:REAPER] Cleanup error: {e}", exc_info=True)


class ForwardMonitor:
    """Owns the health and reaper tasks for one manager."""

    def __init__(self, health: HealthMonitor, reaper: IdleReaper):
        self.health = health
        self.reaper = reaper
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        logger.info("[PORT-FORWARD] Starting port forward monitor service")
        self._tasks = [
            asyncio.create_task(self.health.run_forever(), name="port-forward-health"),
            asyncio.create_task(self.reaper.run_forever(), name="port-forward-reaper"),
        ]

    async def stop(self) -> None:
        if not self._tasks:
            return
        logger.info("[PORT-FORWARD] Stopping port forward monitor service")
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
