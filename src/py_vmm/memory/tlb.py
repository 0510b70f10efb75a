"""Translation lookaside buffer — a small cache of recent translations.

Walking a four-level page table costs four memory reads per access.
The TLB remembers the last few (address space, virtual page) → frame
translations so most accesses skip the walk entirely.

Each simulated CPU has its own TLB.  When a mapping changes, every
CPU that might hold it must drop it — a **TLB shootdown**.  Because a
shootdown is issued from another CPU's thread, each TLB guards its
slots with its own small lock.

Replacement when full:
    - **LRU** — overwrite the least recently used entry (default).
    - **Round robin** — overwrite slots in rotation, ignoring use.

Entries are tagged with the address space id, so switching address
spaces does not require a full flush.
"""

from __future__ import annotations

import dataclasses
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING

from py_vmm.config import TLBEviction

if TYPE_CHECKING:
    from py_vmm.addressing import Protection


@dataclass(frozen=True)
class TLBEntry:
    """One cached translation."""

    address_space_id: int
    virtual_page: int
    frame_number: int
    protection: Protection
    valid: bool = True


class TLB:
    """Fixed-capacity, address-space-tagged translation cache.

    Holds at most one valid entry per ``(address_space_id, virtual_page)``.
    """

    def __init__(self, *, capacity: int, eviction: TLBEviction = TLBEviction.LRU) -> None:
        """Create an empty TLB.

        Args:
            capacity: Number of slots.
            eviction: Which entry to overwrite when all slots are valid.

        """
        if capacity < 1:
            msg = f"TLB capacity must be at least 1, got {capacity}"
            raise ValueError(msg)
        self._capacity = capacity
        self._eviction = eviction
        self._slots: list[TLBEntry | None] = [None] * capacity
        self._index: dict[tuple[int, int], int] = {}
        # Slot numbers, least recently used first.
        self._recency: OrderedDict[int, None] = OrderedDict()
        self._next_victim = 0
        self._hits = 0
        self._misses = 0
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        """Return the number of slots."""
        return self._capacity

    @property
    def hits(self) -> int:
        """Return the number of lookups that found a valid entry."""
        return self._hits

    @property
    def misses(self) -> int:
        """Return the number of lookups that found nothing."""
        return self._misses

    def entries(self) -> list[TLBEntry]:
        """Return the valid entries, in slot order."""
        with self._lock:
            return [e for e in self._slots if e is not None and e.valid]

    def cached_pages(self, address_space_id: int) -> set[int]:
        """Return the virtual pages cached for one address space."""
        return {e.virtual_page for e in self.entries() if e.address_space_id == address_space_id}

    def lookup(self, address_space_id: int, virtual_page: int) -> TLBEntry | None:
        """Return the cached translation, or None on a miss."""
        with self._lock:
            slot = self._index.get((address_space_id, virtual_page))
            if slot is None:
                self._misses += 1
                return None
            self._hits += 1
            self._recency.move_to_end(slot)
            return self._slots[slot]

    def insert(self, entry: TLBEntry) -> TLBEntry | None:
        """Cache a translation, replacing an entry if the TLB is full.

        Re-inserting a key overwrites its existing slot.

        Returns:
            The valid entry that was displaced, if any.

        """
        key = (entry.address_space_id, entry.virtual_page)
        with self._lock:
            slot = self._index.get(key)
            displaced: TLBEntry | None = None
            if slot is None:
                slot = self._free_slot()
                if slot is None:
                    slot = self._victim_slot()
                    displaced = self._slots[slot]
                    if displaced is not None:
                        del self._index[displaced.address_space_id, displaced.virtual_page]
            self._slots[slot] = entry
            self._index[key] = slot
            self._recency[slot] = None
            self._recency.move_to_end(slot)
            return displaced

    def _free_slot(self) -> int | None:
        for slot, current in enumerate(self._slots):
            if current is None or not current.valid:
                return slot
        return None

    def _victim_slot(self) -> int:
        if self._eviction is TLBEviction.ROUND_ROBIN:
            slot = self._next_victim
            self._next_victim = (self._next_victim + 1) % self._capacity
            return slot
        return next(iter(self._recency))

    def invalidate(self, address_space_id: int, virtual_page: int) -> bool:
        """Drop one translation.

        Returns:
            True if a valid entry was dropped.

        """
        with self._lock:
            slot = self._index.pop((address_space_id, virtual_page), None)
            if slot is None:
                return False
            self._drop(slot)
            return True

    def flush(self, address_space_id: int | None = None) -> int:
        """Drop every translation of one address space, or all of them.

        Returns:
            The number of entries dropped.

        """
        with self._lock:
            doomed = [
                (key, slot)
                for key, slot in self._index.items()
                if address_space_id is None or key[0] == address_space_id
            ]
            for key, slot in doomed:
                del self._index[key]
                self._drop(slot)
            return len(doomed)

    def _drop(self, slot: int) -> None:
        entry = self._slots[slot]
        if entry is not None:
            self._slots[slot] = dataclasses.replace(entry, valid=False)
        self._recency.pop(slot, None)

    def __len__(self) -> int:
        """Return the number of valid entries."""
        with self._lock:
            return len(self._index)
