"""
Tunnel Establisher

Opens a local TCP listener and relays every accepted connection over its own
Kubernetes port-forward stream to a pod pinned at creation time. A supervisor
task watches the pod; when it disappears (or an upstream stream cannot be
opened) the tunnel shuts its listener and reports itself broken exactly once.
"""

import asyncio
import logging
import socket
from contextlib import suppress
from typing import Callable, Optional, Set

from .errors import ForwardTimeout, TunnelError
from .models import ForwardTarget, LOCAL_HOST

logger = logging.getLogger(__name__)

BUFFER_SIZE = 64 * 1024
LISTEN_BACKLOG = 100
CLOSE_TIMEOUT = 5.0

BrokenCallback = Callable[[str], None]


class Tunnel:
    """A running local listener bound to one pod port."""

    def __init__(
        self,
        cluster,
        target: ForwardTarget,
        pod_name: str,
        local_port: int,
        local_host: str = LOCAL_HOST,
        liveness_interval: float = 10.0,
        on_broken: Optional[BrokenCallback] = None
    ):
        self.cluster = cluster
        self.target = target
        self.pod_name = pod_name
        self.local_host = local_host
        self.local_port = local_port
        self.liveness_interval = liveness_interval
        self.on_broken = on_broken

        self._server: Optional[asyncio.AbstractServer] = None
        self._supervisor: Optional[asyncio.Task] = None
        self._connections: Set[asyncio.Task] = set()
        self._background: Set[asyncio.Task] = set()
        self._closed = False
        self.broken_reason: Optional[str] = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """Bind the local listener and start the pod supervisor."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.local_host, self.local_port))
            sock.listen(LISTEN_BACKLOG)
            sock.setblocking(False)
        except OSError as e:
            sock.close()
            raise TunnelError(f"failed to bind {self.local_host}:{self.local_port}: {e}") from e

        try:
            self._server = await asyncio.start_server(self._handle_client, sock=sock)
        except BaseException:
            sock.close()
            raise

        if self.liveness_interval > 0:
            self._supervisor = asyncio.create_task(self._supervise())

        logger.info(
            f"[PF:TUNNEL] Listening on {self.local_host}:{self.local_port} -> "
            f"pod {self.target.namespace}/{self.pod_name}:{self.target.remote_port}"
        )

    async def close(self) -> None:
        """Stop listening and drop all relayed connections. Idempotent."""
        if self._closed:
            return
        self._closed = True

        current = asyncio.current_task()
        if self._supervisor is not None and self._supervisor is not current:
            self._supervisor.cancel()

        if self._server is not None:
            self._server.close()

        connections = [task for task in self._connections if task is not current]
        for task in connections:
            task.cancel()
        if connections:
            await asyncio.gather(*connections, return_exceptions=True)

        if self._server is not None:
            try:
                await asyncio.wait_for(self._server.wait_closed(), timeout=CLOSE_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"[PF:TUNNEL] Listener on port {self.local_port} did not close in time")

        logger.info(f"[PF:TUNNEL] Closed tunnel on port {self.local_port}")

    # =========================================================================
    # FAILURE HANDLING
    # =========================================================================

    async def _fail(self, reason: str) -> None:
        if self._closed or self.broken_reason is not None:
            return
        self.broken_reason = reason
        logger.warning(f"[PF:TUNNEL] ❌ Tunnel on port {self.local_port} broken: {reason}")
        await self.close()
        if self.on_broken is not None:
            try:
                self.on_broken(reason)
            except Exception as e:
                logger.error(f"[PF:TUNNEL] Broken-tunnel callback failed: {e}", exc_info=True)

    def _fail_later(self, reason: str) -> None:
        # Connection handlers cannot await close() themselves: the server
        # waits for their own transport before wait_closed() returns.
        task = asyncio.create_task(self._fail(reason))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _supervise(self) -> None:
        namespace = self.target.namespace
        while not self._closed:
            await asyncio.sleep(self.liveness_interval)
            try:
                ready = await self.cluster.pod_is_ready(namespace, self.pod_name)
            except Exception as e:
                logger.warning(f"[PF:TUNNEL] Liveness check for pod {namespace}/{self.pod_name} failed: {e}")
                continue
            if not ready:
                await self._fail(f"pod {namespace}/{self.pod_name} is gone or no longer ready")
                return

    # =========================================================================
    # RELAY
    # =========================================================================

    def _open_upstream(self):
        """Worker-thread body: open one stream, dropping it if we closed meanwhile."""
        pf = self.cluster.open_port_forward(self.target.namespace, self.pod_name, self.target.remote_port)
        if self._closed:
            pf.socket(self.target.remote_port).close()
            return None
        return pf

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        self._connections.add(task)
        try:
            try:
                pf = await asyncio.to_thread(self._open_upstream)
            except Exception as e:
                self._fail_later(f"upstream stream failed: {e}")
                return
            if pf is None:
                return

            upstream = pf.socket(self.target.remote_port)
            try:
                await self._relay(reader, writer, upstream)
            except (ConnectionError, OSError) as e:
                logger.debug(f"[PF:TUNNEL] Connection on port {self.local_port} ended: {e}")
            finally:
                upstream.close()

            error = pf.error(self.target.remote_port)
            if error:
                logger.warning(f"[PF:TUNNEL] Stream error from pod {self.pod_name}: {error}")
        finally:
            self._connections.discard(task)
            writer.close()

    async def _relay(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, upstream) -> None:
        loop = asyncio.get_running_loop()
        upstream.setblocking(False)

        async def client_to_pod():
            while True:
                data = await reader.read(BUFFER_SIZE)
                if not data:
                    break
                await loop.sock_sendall(upstream, data)
            with suppress(OSError):
                upstream.shutdown(socket.SHUT_WR)

        async def pod_to_client():
            while True:
                data = await loop.sock_recv(upstream, BUFFER_SIZE)
                if not data:
                    break
                writer.write(data)
                await writer.drain()

        outbound = asyncio.ensure_future(client_to_pod())
        inbound = asyncio.ensure_future(pod_to_client())
        try:
            done, _ = await asyncio.wait({outbound, inbound}, return_when=asyncio.FIRST_COMPLETED)
            # Client half-closed cleanly: keep draining the pod's response
            if outbound in done and outbound.exception() is None and not inbound.done():
                await inbound
        finally:
            outbound.cancel()
            inbound.cancel()
            await asyncio.gather(outbound, inbound, return_exceptions=True)


class TunnelEstablisher:
    """Creates running tunnels within a deadline."""

    def __init__(self, cluster, local_host: str = LOCAL_HOST, liveness_interval: float = 10.0):
        self.cluster = cluster
        self.local_host = local_host
        self.liveness_interval = liveness_interval

    async def establish(
        self,
        target: ForwardTarget,
        local_port: int,
        deadline: float,
        on_broken: Optional[BrokenCallback] = None
    ) -> Tunnel:
        """
        Resolve a ready pod, verify the stream, and start listening on local_port.

        Raises:
            NoReadyBackend: the service has no ready pod
            ForwardTimeout: not ready within `deadline` seconds
            TunnelError: bind failure or rejected stream
        """
        try:
            return await asyncio.wait_for(self._open(target, local_port, on_broken), timeout=deadline)
        except asyncio.TimeoutError as e:
            logger.warning(f"[PF:TUNNEL] Timed out after {deadline:g}s establishing {target} on port {local_port}")
            raise ForwardTimeout(deadline) from e

    async def _open(self, target: ForwardTarget, local_port: int, on_broken: Optional[BrokenCallback]) -> Tunnel:
        pod_name = await self.cluster.find_ready_pod(target.namespace, target.service_name)
        await asyncio.to_thread(self._verify_upstream, target, pod_name)

        tunnel = Tunnel(
            self.cluster,
            target,
            pod_name,
            local_port,
            local_host=self.local_host,
            liveness_interval=self.liveness_interval,
            on_broken=on_broken
        )
        try:
            await tunnel.start()
        except BaseException:
            await tunnel.close()
            raise
        return tunnel

    def _verify_upstream(self, target: ForwardTarget, pod_name: str) -> None:
        # Runs in a worker thread and closes its own stream, so an abandoned
        # attempt (deadline hit) leaves nothing open behind it
        pf = self.cluster.open_port_forward(target.namespace, pod_name, target.remote_port)
        pf.socket(target.remote_port).close()
