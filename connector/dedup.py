"""Bounded cache of recently emitted transfer ids."""

from collections import OrderedDict
from typing import Callable, Optional
import time


class DedupCache:
    """
    Suppresses re-emission of ids seen in overlapping poll windows.

    Holds at most `capacity` ids; inserting past capacity evicts the oldest
    insertion first. The cache lives in process memory only, so it is never
    the sole duplicate protection: the persisted high-water mark is.
    """

    def __init__(self, capacity: int = 10_000, clock: Callable[[], float] = time.monotonic):
        if capacity < 1:
            raise ValueError(f"DedupCache capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._clock = clock
        self._entries: "OrderedDict[str, float]" = OrderedDict()
        self.evictions = 0

    def add(self, transfer_id: str) -> None:
        """Record an id. Re-adding an id refreshes its position."""
        if transfer_id in self._entries:
            self._entries.move_to_end(transfer_id)
        self._entries[transfer_id] = self._clock()

        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)
            self.evictions += 1

    def inserted_at(self, transfer_id: str) -> Optional[float]:
        return self._entries.get(transfer_id)

    def __contains__(self, transfer_id: str) -> bool:
        return transfer_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
