"""
Shared, request-partitioned storage.

PartitionedStore keeps one append-only list per request identity.
A partition exists only between ``open()`` and ``evict()``; appends
addressed to an identity with no open partition are dropped, which is
how observations from stale requests are discarded.

ReportedHashSet is the bounded, time-limited set of exception hashes
whose reporting side effects already ran.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

logger = logging.getLogger("tracebar.store")


class PartitionedStore:
    """
    Mapping of request identity -> append-only list.

    Appends go through the partition list that already exists in the
    mapping; the mapping itself is only touched by ``open``/``evict``,
    so concurrent appends for different requests never interfere.
    """

    def __init__(
        self,
        name: str,
        *,
        ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.ttl = ttl
        self._clock = clock
        self._partitions: Dict[str, List[Any]] = {}
        self._opened_at: Dict[str, float] = {}

    def open(self, request_id: str) -> None:
        self._partitions.setdefault(request_id, [])
        self._opened_at.setdefault(request_id, self._clock())

    def is_open(self, request_id: Optional[str]) -> bool:
        return request_id is not None and request_id in self._partitions

    def append(self, request_id: Optional[str], item: Any) -> bool:
        """Append to a live partition. Returns False when dropped."""
        if request_id is None:
            return False
        partition = self._partitions.get(request_id)
        if partition is None:
            return False
        partition.append(item)
        return True

    def get(self, request_id: str) -> List[Any]:
        """Snapshot of a partition (empty list if none)."""
        return list(self._partitions.get(request_id, ()))

    def evict(self, request_id: str) -> List[Any]:
        """Remove a partition and return its contents."""
        self._opened_at.pop(request_id, None)
        return self._partitions.pop(request_id, [])

    def sweep(self, now: Optional[float] = None) -> int:
        """
        Evict partitions older than ``ttl``.

        Backstop for requests whose termination hook never ran
        (client disconnects, killed workers).
        """
        now = self._clock() if now is None else now
        cutoff = now - self.ttl
        stale = [rid for rid, opened in list(self._opened_at.items()) if opened <= cutoff]
        for rid in stale:
            self.evict(rid)
        if stale:
            logger.debug(f"{self.name}: swept {len(stale)} stale partition(s)")
        return len(stale)

    def request_ids(self) -> List[str]:
        return list(self._partitions)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._partitions

    def __len__(self) -> int:
        return len(self._partitions)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._partitions))

    def __repr__(self) -> str:
        return f"<PartitionedStore '{self.name}' partitions={len(self._partitions)}>"


class ReportedHashSet:
    """
    Recently reported exception hashes (hash -> time first reported).

    Soft-capped: when the set grows past ``cap`` the newest ``cap // 2``
    entries are kept. Entries older than ``ttl`` seconds are dropped on
    every cleanup and are never reported as present.
    """

    def __init__(
        self,
        cap: int = 100,
        ttl: float = 3600.0,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.cap = cap
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, float] = {}

    def __contains__(self, digest: object) -> bool:
        stamp = self._entries.get(digest)  # type: ignore[arg-type]
        if stamp is None:
            return False
        return stamp > self._clock() - self.ttl

    def add(self, digest: str) -> None:
        self._entries[digest] = self._clock()

    def cleanup(self) -> None:
        if len(self._entries) > self.cap:
            half = self.cap // 2
            self._entries = dict(list(self._entries.items())[-half:]) if half else {}

        cutoff = self._clock() - self.ttl
        self._entries = {
            digest: stamp for digest, stamp in self._entries.items() if stamp > cutoff
        }

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"<ReportedHashSet size={len(self._entries)} cap={self.cap}>"
