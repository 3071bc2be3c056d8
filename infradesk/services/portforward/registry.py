"""
Forward Registry

Authoritative table of known forwards, keyed by forward id with a secondary
index by connection. Reads return copies, so callers never observe a record
while the health monitor or reaper is changing it.
"""

import logging
import threading
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional

from .models import Forward, ForwardStatus, utcnow

logger = logging.getLogger(__name__)


class ForwardRegistry:
    """Thread-safe store of Forward records."""

    def __init__(self):
        self._forwards: Dict[str, Forward] = {}  # forward_id -> Forward
        self._by_connection: Dict[str, str] = {}  # connection_ref -> forward_id
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._forwards)

    def put(self, forward: Forward) -> Forward:
        """Insert or replace a forward and point its connection at it."""
        with self._lock:
            previous_id = self._by_connection.get(forward.connection_ref)
            if previous_id and previous_id != forward.id and previous_id in self._forwards:
                logger.debug(
                    f"[PF:REGISTRY] Connection {forward.connection_ref} re-pointed "
                    f"from {previous_id} to {forward.id}"
                )
            self._forwards[forward.id] = forward.copy()
            self._by_connection[forward.connection_ref] = forward.id
            return forward.copy()

    def get(self, forward_id: str) -> Optional[Forward]:
        with self._lock:
            forward = self._forwards.get(forward_id)
            return forward.copy() if forward else None

    def get_by_connection(self, connection_ref: str) -> Optional[Forward]:
        with self._lock:
            forward_id = self._by_connection.get(connection_ref)
            forward = self._forwards.get(forward_id) if forward_id else None
            return forward.copy() if forward else None

    def delete(self, forward_id: str) -> Optional[Forward]:
        """Remove a forward. Returns the removed record, or None if absent."""
        with self._lock:
            forward = self._forwards.pop(forward_id, None)
            if forward is None:
                return None
            # Only drop the index entry if it still points at this forward
            if self._by_connection.get(forward.connection_ref) == forward_id:
                del self._by_connection[forward.connection_ref]
            return forward

    def list(self) -> List[Forward]:
        """Point-in-time copy of all forwards."""
        with self._lock:
            return [forward.copy() for forward in self._forwards.values()]

    def touch(self, forward_id: str, now: Optional[datetime] = None) -> Optional[Forward]:
        """Refresh last_used_at. Returns the updated record, or None if absent."""
        with self._lock:
            forward = self._forwards.get(forward_id)
            if forward is None:
                return None
            forward.last_used_at = now or utcnow()
            return forward.copy()

    def set_status(
        self,
        forward_id: str,
        status: ForwardStatus,
        last_error: Optional[str] = None,
        expected: Optional[ForwardStatus] = None,
        now: Optional[datetime] = None
    ) -> Optional[Forward]:
        """
        Move a forward to `status`.

        When `expected` is given the change only applies if the forward is
        currently in that status (compare-and-set). Returns the updated
        record, or None if the forward is absent or the check failed.
        """
        with self._lock:
            forward = self._forwards.get(forward_id)
            if forward is None:
                return None
            if expected is not None and forward.status != expected:
                return None
            if forward.status != status:
                forward.status_changed_at = now or utcnow()
            forward.status = status
            forward.last_error = last_error if status == ForwardStatus.ERROR else None
            return forward.copy()

    def set_pod(self, forward_id: str, pod_name: Optional[str]) -> None:
        with self._lock:
            forward = self._forwards.get(forward_id)
            if forward is not None:
                forward.pod_name = pod_name

    def count_by_status(self) -> Dict[str, int]:
        with self._lock:
            counts = Counter(forward.status.value for forward in self._forwards.values())
        stats = {status.value: counts.get(status.value, 0) for status in ForwardStatus}
        stats["total"] = sum(counts.values())
        return stats
