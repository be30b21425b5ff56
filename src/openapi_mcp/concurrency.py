"""In-flight admission control, globally and per path template."""

from __future__ import annotations

import itertools
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Set

from .errors import ConcurrencyLimitError


logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ConcurrencySlot:
    """Opaque handle for one admitted call."""

    slot_id: int
    path: str
    released: bool = False


class ConcurrencyTracker:
    def __init__(self) -> None:
        self._in_flight: Set[int] = set()
        self._per_path: Dict[str, int] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def in_flight_for(self, path: str) -> int:
        return self._per_path.get(path, 0)

    def acquire(
        self,
        path: str,
        global_limit: Optional[int] = None,
        per_path_limit: Optional[int] = None,
    ) -> ConcurrencySlot:
        with self._lock:
            if global_limit and global_limit > 0 and len(self._in_flight) >= global_limit:
                raise ConcurrencyLimitError(
                    f"Concurrency limit exceeded: {len(self._in_flight)}/{global_limit} calls in flight"
                )
            path_count = self._per_path.get(path, 0)
            if per_path_limit and per_path_limit > 0 and path_count >= per_path_limit:
                raise ConcurrencyLimitError(
                    f"Concurrency limit exceeded for {path}: {path_count}/{per_path_limit} calls in flight"
                )
            slot = ConcurrencySlot(slot_id=next(self._ids), path=path)
            self._in_flight.add(slot.slot_id)
            self._per_path[path] = path_count + 1
            return slot

    def release(self, slot: ConcurrencySlot) -> None:
        with self._lock:
            if slot.released:
                return
            slot.released = True
            if slot.slot_id not in self._in_flight:
                logger.error("Released unknown concurrency slot %s for %s", slot.slot_id, slot.path)
                return
            self._in_flight.discard(slot.slot_id)
            remaining = self._per_path.get(slot.path, 0) - 1
            if remaining > 0:
                self._per_path[slot.path] = remaining
            else:
                self._per_path.pop(slot.path, None)

    @contextmanager
    def slot(
        self,
        path: str,
        global_limit: Optional[int] = None,
        per_path_limit: Optional[int] = None,
    ) -> Iterator[ConcurrencySlot]:
        acquired = self.acquire(path, global_limit, per_path_limit)
        try:
            yield acquired
        finally:
            self.release(acquired)
