"""
Local Port Allocator

Hands out local TCP ports from a bounded, inclusive range. Every lease and
release goes through one lock, so two live tunnels never get the same port.
"""

import logging
import random
import socket
import threading
from typing import Set

from .errors import ResourceExhausted

logger = logging.getLogger(__name__)


class PortAllocator:
    """
    Leases local ports in [port_min, port_max].

    With check_bindable on, a port is only leased if a test bind on `host`
    succeeds, which skips ports already taken by other processes.
    """

    def __init__(
        self,
        port_min: int = 40000,
        port_max: int = 50000,
        host: str = "127.0.0.1",
        check_bindable: bool = True
    ):
        if not (1 <= port_min <= 65535 and 1 <= port_max <= 65535):
            raise ValueError(f"port range {port_min}-{port_max} is outside 1-65535")
        if port_min > port_max:
            raise ValueError(f"port_min {port_min} is greater than port_max {port_max}")

        self.port_min = port_min
        self.port_max = port_max
        self.host = host
        self.check_bindable = check_bindable
        self._leased: Set[int] = set()
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self.port_max - self.port_min + 1

    def allocate(self) -> int:
        """Lease any free port. Raises ResourceExhausted when none is left."""
        with self._lock:
            if len(self._leased) < self.capacity:
                start = random.randrange(self.capacity)
                for offset in range(self.capacity):
                    port = self.port_min + (start + offset) % self.capacity
                    if port in self._leased:
                        continue
                    if self.check_bindable and not self._bindable(port):
                        logger.debug(f"[PF:PORTS] Port {port} is in use by another process, skipping")
                        continue
                    self._leased.add(port)
                    logger.debug(f"[PF:PORTS] Leased port {port} ({len(self._leased)}/{self.capacity})")
                    return port

        logger.warning(f"[PF:PORTS] No available ports in range {self.port_min}-{self.port_max}")
        raise ResourceExhausted(self.port_min, self.port_max)

    def reserve(self, port: int) -> bool:
        """Lease a specific port if it is in range and free."""
        with self._lock:
            if not self.port_min <= port <= self.port_max or port in self._leased:
                return False
            if self.check_bindable and not self._bindable(port):
                return False
            self._leased.add(port)
            return True

    def release(self, port: int) -> None:
        """Return a port to the pool. Releasing a free port is a no-op."""
        with self._lock:
            if port in self._leased:
                self._leased.discard(port)
                logger.debug(f"[PF:PORTS] Released port {port}")

    def is_leased(self, port: int) -> bool:
        with self._lock:
            return port in self._leased

    def leased(self) -> Set[int]:
        with self._lock:
            return set(self._leased)

    def _bindable(self, port: int) -> bool:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            # Match asyncio.start_server, which also binds with SO_REUSEADDR
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, port))
            return True
        except OSError:
            return False
        finally:
            sock.close()
