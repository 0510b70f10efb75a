"""Address spaces — one per simulated process.

An address space bundles:

- a **page table** (multi-level, or a view of the shared inverted table),
- the set of **resident pages** (virtual pages currently in a frame),
- the **regions** of virtual memory that have a valid backing mapping,
- two **locks**.

Regions are what separate a minor fault from a segmentation fault: a
page inside a region that is not yet resident is demand-filled, a page
outside every region does not exist.  They play the role of Linux's
VMAs (``mmap`` regions).

Locking:
    ``lock`` serialises whole accesses and mapping changes within the
    space; it may be held across backing-store I/O.  ``table_lock``
    guards individual page-table and TLB mutations; it is held only
    briefly and is the one an evictor from another address space takes
    when it steals a frame from this one.  Lock order across the
    system is ``lock`` → frame-allocator lock → ``table_lock``.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from py_vmm.addressing import Protection
    from py_vmm.memory.page_table import PageTable


@dataclass(frozen=True)
class Region:
    """A run of virtual pages with a valid backing mapping."""

    start_page: int
    """First virtual page in the region."""

    num_pages: int
    """Number of pages the region spans."""

    protection: Protection
    """Protection given to pages in this region on first touch."""

    @property
    def end_page(self) -> int:
        """Return the first page after the region."""
        return self.start_page + self.num_pages

    def contains(self, virtual_page: int) -> bool:
        """Return True if the page falls inside the region."""
        return self.start_page <= virtual_page < self.end_page

    def overlaps(self, other: Region) -> bool:
        """Return True if the two regions share any page."""
        return self.start_page < other.end_page and other.start_page < self.end_page


class AddressSpace:
    """The virtual memory of one simulated process."""

    def __init__(self, asid: int, page_table: PageTable) -> None:
        """Create an empty address space around a page table."""
        self._asid = asid
        self._page_table = page_table
        self._regions: list[Region] = []
        self._resident: set[int] = set()
        self._lock = threading.RLock()
        self._table_lock = threading.RLock()
        self.destroyed = False
        self.minor_faults = 0
        self.major_faults = 0
        self.protection_faults = 0
        self.segmentation_faults = 0

    @property
    def asid(self) -> int:
        """Return the address space id."""
        return self._asid

    @property
    def page_table(self) -> PageTable:
        """Return the page table of this space."""
        return self._page_table

    @property
    def lock(self) -> threading.RLock:
        """Return the lock that serialises accesses to this space."""
        return self._lock

    @property
    def table_lock(self) -> threading.RLock:
        """Return the lock that guards page-table mutation."""
        return self._table_lock

    @property
    def regions(self) -> list[Region]:
        """Return the regions sorted by start page."""
        return sorted(self._regions, key=lambda r: r.start_page)

    @property
    def resident_pages(self) -> frozenset[int]:
        """Return the virtual pages currently held in frames."""
        return frozenset(self._resident)

    def mark_resident(self, virtual_page: int) -> None:
        """Record that a page now occupies a frame."""
        self._resident.add(virtual_page)

    def mark_absent(self, virtual_page: int) -> None:
        """Record that a page no longer occupies a frame."""
        self._resident.discard(virtual_page)

    def region_for(self, virtual_page: int) -> Region | None:
        """Return the region containing a page, or None."""
        for region in self._regions:
            if region.contains(virtual_page):
                return region
        return None

    def add_region(self, region: Region) -> None:
        """Add a region.

        Raises:
            ValueError: If the region is empty or overlaps an existing one.

        """
        if region.num_pages < 1:
            msg = f"Region must span at least one page, got {region.num_pages}"
            raise ValueError(msg)
        for existing in self._regions:
            if existing.overlaps(region):
                msg = (
                    f"Region {region.start_page}..{region.end_page - 1} overlaps "
                    f"{existing.start_page}..{existing.end_page - 1}"
                )
                raise ValueError(msg)
        self._regions.append(region)

    def carve(self, virtual_page: int) -> Region | None:
        """Cut one page out of whichever region holds it.

        The region is split into the parts before and after the page.

        Returns:
            The region the page was cut from, or None.

        """
        region = self.region_for(virtual_page)
        if region is None:
            return None
        self._regions.remove(region)
        before = virtual_page - region.start_page
        after = region.end_page - virtual_page - 1
        if before > 0:
            self._regions.append(Region(region.start_page, before, region.protection))
        if after > 0:
            self._regions.append(Region(virtual_page + 1, after, region.protection))
        return region

    def set_page_protection(self, virtual_page: int, protection: Protection) -> None:
        """Give one page its own one-page region with a new protection."""
        self.carve(virtual_page)
        self._regions.append(Region(virtual_page, 1, protection))

    def __repr__(self) -> str:
        """Return a developer-friendly representation."""
        return (
            f"AddressSpace(asid={self._asid}, resident={len(self._resident)}, "
            f"regions={len(self._regions)})"
        )
