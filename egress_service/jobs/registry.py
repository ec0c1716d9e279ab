"""
In-memory egress registry.

The registry owns the descriptor of every egress it has seen. Descriptors
are replaced copy-on-write, so a reference handed out by ``get`` or
``list`` is a stable point-in-time view. Only the ``JobWriter`` returned
by ``reserve`` may replace an entry.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional

from livekit.api import EgressInfo, EgressStatus

from egress_service.errors import DuplicateIdError, InvalidStateError, NotFoundError
from egress_service.jobs.models import EgressJob, copy_info, is_terminal, status_name


logger = logging.getLogger(__name__)

UpdateListener = Callable[[EgressInfo], None]

INTERRUPTED_ERROR = "egress interrupted by service restart"


class EgressStore(ABC):
    """Durable storage for descriptor snapshots."""

    @abstractmethod
    def save(self, info: EgressInfo) -> None:
        """Insert or replace the stored snapshot of ``info.egress_id``."""

    @abstractmethod
    def load(self) -> List[EgressInfo]:
        """All stored descriptors, oldest first."""

    @abstractmethod
    def delete(self, egress_id: str) -> None:
        """Forget a descriptor."""


class JobWriter:
    """Single mutator of one registry entry."""

    def __init__(self, registry: "EgressRegistry", egress_id: str):
        self._registry = registry
        self.egress_id = egress_id

    @property
    def current(self) -> EgressInfo:
        """Current descriptor. Must not be mutated."""
        return self._registry._get_ref(self.egress_id)

    def update(self, mutation: Callable[[EgressInfo], None]) -> EgressInfo:
        """
        Apply ``mutation`` to a copy of the descriptor and publish the copy.

        Args:
            mutation: Callable editing the descriptor in place

        Returns:
            EgressInfo: The published descriptor

        Raises:
            InvalidStateError: If the descriptor is already terminal
        """
        current = self.current
        if is_terminal(current.status):
            raise InvalidStateError(
                f"egress is {status_name(current.status)} and can no longer change",
                self.egress_id,
            )

        updated = copy_info(current)
        mutation(updated)
        updated.updated_at = time.time_ns()
        self._registry._replace(self.egress_id, current, updated)
        return updated


class EgressRegistry:
    """
    Thread-safe registry of egress descriptors.

    The lock only guards dictionary and reference operations; copying and
    persistence happen outside it. Store writes run in order on a single
    background thread so publishing never blocks the event loop.
    """

    def __init__(self, store: Optional[EgressStore] = None):
        self._lock = threading.Lock()
        # egress_id -> descriptor, insertion ordered
        self._entries: Dict[str, EgressInfo] = {}
        self._store = store
        self._store_writer: Optional[ThreadPoolExecutor] = None
        if store is not None:
            self._store_writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="egress-store")
        self._listeners: List[UpdateListener] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def add_listener(self, listener: UpdateListener) -> None:
        """Call ``listener`` with a snapshot whenever a descriptor is published."""
        self._listeners.append(listener)

    def reserve(self, job: EgressJob) -> JobWriter:
        """
        Register a new job.

        Args:
            job: Job whose descriptor becomes the registry entry

        Returns:
            JobWriter: The only writer for the entry

        Raises:
            DuplicateIdError: If the id is already registered
        """
        info = copy_info(job.info)
        if not info.updated_at:
            info.updated_at = time.time_ns()

        with self._lock:
            if info.egress_id in self._entries:
                raise DuplicateIdError(f"egress id {info.egress_id} is already registered", info.egress_id)
            self._entries[info.egress_id] = info

        self._published(info)
        return JobWriter(self, info.egress_id)

    def get(self, egress_id: str) -> EgressInfo:
        """
        Snapshot of one descriptor.

        Raises:
            NotFoundError: If the id is unknown
        """
        return copy_info(self._get_ref(egress_id))

    def list(self, room_name: str = "", egress_id: str = "", active: bool = False) -> List[EgressInfo]:
        """
        Point-in-time snapshot of matching descriptors in creation order.

        Args:
            room_name: Only jobs of this room
            egress_id: Only this job
            active: Only jobs that have not reached a terminal status
        """
        with self._lock:
            refs = list(self._entries.values())

        return [
            copy_info(info) for info in refs
            if (not room_name or info.room_name == room_name)
            and (not egress_id or info.egress_id == egress_id)
            and (not active or not is_terminal(info.status))
        ]

    def count_by_status(self) -> Dict[str, int]:
        with self._lock:
            refs = list(self._entries.values())

        counts: Dict[str, int] = {}
        for info in refs:
            name = status_name(info.status)
            counts[name] = counts.get(name, 0) + 1
        return counts

    def evict(self, egress_id: str) -> None:
        """
        Drop a terminal descriptor.

        Raises:
            NotFoundError: If the id is unknown
            InvalidStateError: If the job is still running
        """
        with self._lock:
            info = self._entries.get(egress_id)
            if info is None:
                raise NotFoundError(f"egress {egress_id} not found", egress_id)
            if not is_terminal(info.status):
                raise InvalidStateError(f"egress {egress_id} is still {status_name(info.status)}", egress_id)
            del self._entries[egress_id]

        self._persist(self._store_delete, egress_id)

    def cleanup_terminal(self, older_than: Optional[int] = None) -> int:
        """
        Evict terminal descriptors.

        Args:
            older_than: Only those that ended before this Unix time in nanoseconds

        Returns:
            int: Number of evicted descriptors
        """
        with self._lock:
            doomed = [
                egress_id for egress_id, info in self._entries.items()
                if is_terminal(info.status) and (older_than is None or info.ended_at < older_than)
            ]
            for egress_id in doomed:
                del self._entries[egress_id]

        for egress_id in doomed:
            self._persist(self._store_delete, egress_id)

        if doomed:
            logger.info(f"Evicted {len(doomed)} terminal egress descriptors")
        return len(doomed)

    def restore(self) -> int:
        """
        Load descriptors from the store.

        Jobs that were still running when the previous process stopped are
        marked ``EGRESS_FAILED``.

        Returns:
            int: Number of restored descriptors
        """
        if self._store is None:
            return 0

        restored = 0
        for info in self._store.load():
            if not is_terminal(info.status):
                now = time.time_ns()
                info.status = EgressStatus.EGRESS_FAILED
                info.error = INTERRUPTED_ERROR
                info.ended_at = max(now, info.started_at)
                info.updated_at = now
                self._store.save(info)
                logger.warning(f"Egress {info.egress_id} was interrupted", extra={"egress_id": info.egress_id})

            with self._lock:
                if info.egress_id in self._entries:
                    continue
                self._entries[info.egress_id] = info
            restored += 1

        logger.info(f"Restored {restored} egress descriptors")
        return restored

    def flush(self) -> None:
        """Block until every queued store write has been applied."""
        if self._store_writer is not None:
            self._store_writer.submit(lambda: None).result()

    def close(self) -> None:
        """Apply queued store writes and stop the writer thread."""
        if self._store_writer is not None:
            self._store_writer.shutdown(wait=True)
            self._store_writer = None

    def _get_ref(self, egress_id: str) -> EgressInfo:
        with self._lock:
            info = self._entries.get(egress_id)
        if info is None:
            raise NotFoundError(f"egress {egress_id} not found", egress_id)
        return info

    def _replace(self, egress_id: str, expected: EgressInfo, updated: EgressInfo) -> None:
        with self._lock:
            if self._entries.get(egress_id) is not expected:
                raise InvalidStateError(f"egress {egress_id} changed concurrently", egress_id)
            self._entries[egress_id] = updated
        self._published(updated)

    def _published(self, info: EgressInfo) -> None:
        # Published descriptors are never mutated, so the writer can hold a reference
        self._persist(self._store_save, info)

        for listener in self._listeners:
            try:
                listener(copy_info(info))
            except Exception as e:
                logger.error(f"Error executing egress update listener: {e}")

    def _persist(self, operation: Callable, *args) -> None:
        if self._store_writer is None:
            if self._store is not None:
                operation(*args)
            return
        self._store_writer.submit(operation, *args)

    def _store_save(self, info: EgressInfo) -> None:
        try:
            self._store.save(info)
        except Exception as e:
            logger.error(
                f"Failed to persist egress {info.egress_id}: {e}",
                extra={"egress_id": info.egress_id}
            )

    def _store_delete(self, egress_id: str) -> None:
        try:
            self._store.delete(egress_id)
        except Exception as e:
            logger.error(f"Failed to delete stored egress {egress_id}: {e}", extra={"egress_id": egress_id})
