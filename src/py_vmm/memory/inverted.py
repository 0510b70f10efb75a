"""Inverted page table — one entry per physical frame.

A multi-level table grows with the *virtual* address space.  An
inverted table instead has exactly one slot per *physical* frame,
recording which (address space, virtual page) currently lives there.
The table is shared by every address space on the machine.

Finding the frame for a virtual page means searching that table, so a
**hash anchor table** points from ``hash(asid, vpn)`` to the first
candidate slot, and each slot links to the next slot with the same
hash (chaining through the frame-indexed array)::

    anchors[h] ──▶ slot 7 ──next──▶ slot 2 ──next──▶ None

Pages that are not resident have no slot.  Their protection and
backed/unbacked state live in a side table, the way a real OS keeps
per-process software tables next to the hardware IPT.

Miss cost is measured in **probes** (slots inspected while chasing a
chain), not in levels walked; the two are not comparable.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from py_vmm.errors import FaultKind, PageFaultError
from py_vmm.memory.page_table import PageTableEntry

if TYPE_CHECKING:
    from py_vmm.addressing import AddressLayout, Protection

_HASH_MULTIPLIER = 0x9E3779B1


@dataclass
class _Slot:
    asid: int
    virtual_page: int
    entry: PageTableEntry
    next: int | None = None


class InvertedPageTable:
    """Machine-wide inverted page table with hashed, chained lookup.

    Args:
        layout: Address layout, used to validate page numbers.
        frame_count: Number of physical frames (and therefore slots).
        allow_lazy_intermediate: Whether an unknown page is a minor
            fault (lazy allocation) or a segmentation fault.

    """

    def __init__(
        self,
        layout: AddressLayout,
        *,
        frame_count: int,
        allow_lazy_intermediate: bool = True,
    ) -> None:
        """Create an empty inverted table with one slot per frame."""
        self._layout = layout
        self._lazy = allow_lazy_intermediate
        self._slots: list[_Slot | None] = [None] * frame_count
        self._anchors: list[int | None] = [None] * frame_count
        self._absent: dict[tuple[int, int], PageTableEntry] = {}
        self._probes = 0
        self._lock = threading.RLock()

    @property
    def probes(self) -> int:
        """Return the total number of slots inspected by lookups."""
        return self._probes

    def view(self, asid: int) -> InvertedPageTableView:
        """Return the per-address-space view of this table."""
        return InvertedPageTableView(self, asid)

    def _bucket(self, asid: int, virtual_page: int) -> int:
        return ((asid * _HASH_MULTIPLIER) ^ virtual_page) % len(self._anchors)

    def _find(self, asid: int, virtual_page: int) -> int | None:
        """Return the slot (frame number) holding a page, or None."""
        cursor = self._anchors[self._bucket(asid, virtual_page)]
        while cursor is not None:
            self._probes += 1
            slot = self._slots[cursor]
            if slot is None:
                break
            if slot.asid == asid and slot.virtual_page == virtual_page:
                return cursor
            cursor = slot.next
        return None

    def _unlink(self, frame_number: int) -> _Slot:
        """Remove a slot from its hash chain and return it."""
        slot = self._slots[frame_number]
        if slot is None:
            msg = f"Frame {frame_number} holds no page"
            raise ValueError(msg)
        bucket = self._bucket(slot.asid, slot.virtual_page)
        if self._anchors[bucket] == frame_number:
            self._anchors[bucket] = slot.next
        else:
            cursor = self._anchors[bucket]
            while cursor is not None:
                previous = self._slots[cursor]
                if previous is None:
                    break
                if previous.next == frame_number:
                    previous.next = slot.next
                    break
                cursor = previous.next
        self._slots[frame_number] = None
        return slot

    def lookup(self, asid: int, virtual_page: int) -> PageTableEntry | None:
        """Return the entry for a page (resident or not), or None."""
        self._layout.check_page(virtual_page)
        with self._lock:
            frame = self._find(asid, virtual_page)
            if frame is not None:
                slot = self._slots[frame]
                return None if slot is None else slot.entry
            return self._absent.get((asid, virtual_page))

    def translate(self, asid: int, virtual_page: int) -> PageTableEntry:
        """Return the present entry for a page or raise PageFaultError."""
        entry = self.lookup(asid, virtual_page)
        if entry is None:
            kind = FaultKind.MINOR if self._lazy else FaultKind.SEGMENTATION
            raise PageFaultError(kind, virtual_page, asid=asid)
        if not entry.present:
            kind = FaultKind.MAJOR if entry.backed else FaultKind.MINOR
            raise PageFaultError(kind, virtual_page, asid=asid)
        return entry

    def map(self, asid: int, virtual_page: int, frame_number: int, protection: Protection) -> None:
        """Install a page into the slot of its frame.

        Raises:
            ValueError: If the frame's slot already holds another page.

        """
        self._layout.check_page(virtual_page)
        with self._lock:
            occupant = self._slots[frame_number]
            if occupant is not None:
                if occupant.asid == asid and occupant.virtual_page == virtual_page:
                    self._unlink(frame_number)
                else:
                    msg = f"Frame {frame_number} already holds page {occupant.virtual_page}"
                    raise ValueError(msg)
            existing = self._find(asid, virtual_page)
            if existing is not None:
                self._unlink(existing)
            previous = self._absent.pop((asid, virtual_page), None)
            entry = PageTableEntry(
                frame_number=frame_number,
                present=True,
                protection=protection,
                backed=previous.backed if previous is not None else False,
            )
            bucket = self._bucket(asid, virtual_page)
            self._slots[frame_number] = _Slot(
                asid=asid, virtual_page=virtual_page, entry=entry, next=self._anchors[bucket]
            )
            self._anchors[bucket] = frame_number

    def unmap(self, asid: int, virtual_page: int) -> PageTableEntry | None:
        """Forget a page entirely; return its entry as it was."""
        with self._lock:
            frame = self._find(asid, virtual_page)
            if frame is not None:
                return self._unlink(frame).entry.snapshot()
            entry = self._absent.pop((asid, virtual_page), None)
            return None if entry is None else entry.snapshot()

    def evict(self, asid: int, virtual_page: int) -> PageTableEntry:
        """Release a page's slot and remember it as backed."""
        with self._lock:
            frame = self._find(asid, virtual_page)
            if frame is None:
                msg = f"Virtual page {virtual_page} is not present"
                raise ValueError(msg)
            before = self._unlink(frame).entry.snapshot()
            self._absent[asid, virtual_page] = PageTableEntry(
                protection=before.protection,
                cache_disabled=before.cache_disabled,
                backed=True,
            )
            return before

    def prepare(self, asid: int, virtual_page: int, protection: Protection) -> None:
        """Record an absent, unbacked entry for a page."""
        self._layout.check_page(virtual_page)
        with self._lock:
            if self._find(asid, virtual_page) is None:
                self._absent.setdefault((asid, virtual_page), PageTableEntry(protection=protection))

    def protect(self, asid: int, virtual_page: int, protection: Protection) -> None:
        """Change the protection of a known page (no-op if unknown)."""
        with self._lock:
            entry = self.lookup(asid, virtual_page)
            if entry is not None:
                entry.protection = protection

    def _present(self, asid: int, virtual_page: int) -> PageTableEntry:
        entry = self.lookup(asid, virtual_page)
        if entry is None or not entry.present:
            msg = f"Virtual page {virtual_page} is not present"
            raise ValueError(msg)
        return entry

    def set_referenced(self, asid: int, virtual_page: int, *, value: bool = True) -> None:
        """Set or clear the referenced bit of a resident page."""
        self._present(asid, virtual_page).referenced = value

    def set_dirty(self, asid: int, virtual_page: int, *, value: bool = True) -> None:
        """Set or clear the dirty bit of a resident page."""
        self._present(asid, virtual_page).dirty = value

    def mappings(self, asid: int) -> dict[int, int]:
        """Return the resident pages of one address space."""
        with self._lock:
            return {
                slot.virtual_page: frame
                for frame, slot in enumerate(self._slots)
                if slot is not None and slot.asid == asid
            }

    def clear(self, asid: int) -> None:
        """Drop every entry belonging to one address space."""
        with self._lock:
            for frame, slot in enumerate(self._slots):
                if slot is not None and slot.asid == asid:
                    self._unlink(frame)
            for key in [k for k in self._absent if k[0] == asid]:
                del self._absent[key]


class InvertedPageTableView:
    """The slice of an inverted table that belongs to one address space.

    Satisfies the same ``PageTable`` protocol as ``MultiLevelPageTable``
    so the fault handler never needs to know which one it is using.
    """

    def __init__(self, table: InvertedPageTable, asid: int) -> None:
        """Bind a shared inverted table to one address space id."""
        self._table = table
        self._asid = asid

    @property
    def table(self) -> InvertedPageTable:
        """Return the shared inverted table."""
        return self._table

    def lookup(self, virtual_page: int) -> PageTableEntry | None:
        """Return the entry for a page, or None."""
        return self._table.lookup(self._asid, virtual_page)

    def translate(self, virtual_page: int) -> PageTableEntry:
        """Return the present entry for a page or raise PageFaultError."""
        return self._table.translate(self._asid, virtual_page)

    def map(self, virtual_page: int, frame_number: int, protection: Protection) -> None:
        """Install a present mapping."""
        self._table.map(self._asid, virtual_page, frame_number, protection)

    def unmap(self, virtual_page: int) -> PageTableEntry | None:
        """Drop a mapping."""
        return self._table.unmap(self._asid, virtual_page)

    def evict(self, virtual_page: int) -> PageTableEntry:
        """Mark a resident page absent and backed."""
        return self._table.evict(self._asid, virtual_page)

    def prepare(self, virtual_page: int, protection: Protection) -> None:
        """Record an absent entry ahead of first touch."""
        self._table.prepare(self._asid, virtual_page, protection)

    def protect(self, virtual_page: int, protection: Protection) -> None:
        """Change a page's protection."""
        self._table.protect(self._asid, virtual_page, protection)

    def set_referenced(self, virtual_page: int, *, value: bool = True) -> None:
        """Set or clear the referenced bit."""
        self._table.set_referenced(self._asid, virtual_page, value=value)

    def set_dirty(self, virtual_page: int, *, value: bool = True) -> None:
        """Set or clear the dirty bit."""
        self._table.set_dirty(self._asid, virtual_page, value=value)

    def mappings(self) -> dict[int, int]:
        """Return the resident pages of this address space."""
        return self._table.mappings(self._asid)

    def clear(self) -> None:
        """Drop every entry of this address space."""
        self._table.clear(self._asid)

    def __len__(self) -> int:
        """Return the number of resident pages."""
        return len(self.mappings())
