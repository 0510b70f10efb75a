"""Page tables — per-address-space virtual-to-physical mappings.

A flat page table for a 48-bit address space would need 2**36 entries
per process, almost all of them empty.  Real MMUs use a **radix tree**
instead: the virtual page number is cut into several indices, each
selecting an entry in one level of the tree::

    root (L0) ──idx0──▶ L1 table ──idx1──▶ L2 table ──idx2──▶ leaf ──idx3──▶ PTE

Intermediate tables are only allocated when some page below them is
first touched, so a sparse address space costs a handful of tables.

Design choices:
    - **Arena of nodes** — tables live in a growable list and refer to
      their children by integer id.  No object graph, no cycles, O(1)
      child lookup through a dict.
    - **Plain attribute PTE** — present/dirty/referenced are booleans
      on a dataclass, not bits packed into an integer.
    - **Intermediate tables are never freed** — once a level exists it
      stays until the whole table is dropped with its address space.
      Unmapping only clears the leaf.

The ``PageTable`` protocol is the contract the fault handler relies
on; ``InvertedPageTableView`` (see ``inverted.py``) is the drop-in
alternative.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from py_vmm.addressing import Protection
from py_vmm.errors import FaultKind, PageFaultError

if TYPE_CHECKING:
    from py_vmm.addressing import AddressLayout


@dataclass(slots=True)
class PageTableEntry:
    """The mapping record for one virtual page.

    Attributes:
        frame_number: Physical frame backing the page (None unless present).
        present: True if the page is resident in physical memory.
        protection: Allowed access modes.
        dirty: Written since it was last loaded.
        referenced: Accessed since the clock hand last cleared it.
        cache_disabled: Accesses bypass the (unmodelled) data cache.
        backed: The backing store holds the page's contents.

    """

    frame_number: int | None = None
    present: bool = False
    protection: Protection = Protection.READ
    dirty: bool = False
    referenced: bool = False
    cache_disabled: bool = False
    backed: bool = False

    def snapshot(self) -> PageTableEntry:
        """Return an independent copy of this entry."""
        return dataclasses.replace(self)


class PageTable(Protocol):
    """Operations every page table implementation provides."""

    def lookup(self, virtual_page: int) -> PageTableEntry | None:
        """Return the leaf entry for a page, or None if none exists."""
        ...  # pragma: no cover

    def translate(self, virtual_page: int) -> PageTableEntry:
        """Return the present entry for a page or raise PageFaultError."""
        ...  # pragma: no cover

    def map(self, virtual_page: int, frame_number: int, protection: Protection) -> None:
        """Install a present mapping."""
        ...  # pragma: no cover

    def unmap(self, virtual_page: int) -> PageTableEntry | None:
        """Drop a mapping; return the entry as it was before."""
        ...  # pragma: no cover

    def evict(self, virtual_page: int) -> PageTableEntry:
        """Mark a resident page absent but held by the backing store."""
        ...  # pragma: no cover

    def prepare(self, virtual_page: int, protection: Protection) -> None:
        """Build the path and an absent leaf for a page ahead of first touch."""
        ...  # pragma: no cover

    def protect(self, virtual_page: int, protection: Protection) -> None:
        """Change the protection of an existing entry."""
        ...  # pragma: no cover

    def set_referenced(self, virtual_page: int, *, value: bool = True) -> None:
        """Set or clear the referenced bit of a present page."""
        ...  # pragma: no cover

    def set_dirty(self, virtual_page: int, *, value: bool = True) -> None:
        """Set or clear the dirty bit of a present page."""
        ...  # pragma: no cover

    def mappings(self) -> dict[int, int]:
        """Return every present virtual page mapped to its frame."""
        ...  # pragma: no cover

    def clear(self) -> None:
        """Drop every entry and table."""
        ...  # pragma: no cover


@dataclass
class _Node:
    """One table in the arena: intermediate (children) or leaf (entries)."""

    level: int
    children: dict[int, int] = field(default_factory=lambda: {})  # noqa: PIE807
    entries: dict[int, PageTableEntry] = field(default_factory=lambda: {})  # noqa: PIE807


class MultiLevelPageTable:
    """Radix-tree page table with lazily allocated intermediate levels.

    Args:
        layout: How virtual page numbers split into per-level indices.
        allow_lazy_intermediate: Whether a walk that runs off the end
            of the allocated tree is a recoverable (minor) fault or a
            segmentation fault.

    """

    def __init__(self, layout: AddressLayout, *, allow_lazy_intermediate: bool = True) -> None:
        """Create a page table holding only its top-level table."""
        self._layout = layout
        self._lazy = allow_lazy_intermediate
        self._nodes: list[_Node] = [_Node(level=0)]
        self._walks = 0

    @property
    def layout(self) -> AddressLayout:
        """Return the address layout this table was built for."""
        return self._layout

    @property
    def node_count(self) -> int:
        """Return the number of allocated tables (including the root)."""
        return len(self._nodes)

    @property
    def walks(self) -> int:
        """Return how many walks have been performed."""
        return self._walks

    def _entry(self, virtual_page: int) -> PageTableEntry | None:
        """Walk to the leaf entry for a page without allocating anything."""
        *path, leaf_index = self._layout.indices(virtual_page)
        node = self._nodes[0]
        for index in path:
            child = node.children.get(index)
            if child is None:
                return None
            node = self._nodes[child]
        return node.entries.get(leaf_index)

    def _ensure_entry(self, virtual_page: int) -> PageTableEntry:
        """Walk to the leaf entry for a page, allocating missing tables."""
        *path, leaf_index = self._layout.indices(virtual_page)
        node = self._nodes[0]
        for index in path:
            child = node.children.get(index)
            if child is None:
                child = len(self._nodes)
                self._nodes.append(_Node(level=node.level + 1))
                node.children[index] = child
            node = self._nodes[child]
        return node.entries.setdefault(leaf_index, PageTableEntry())

    def _present(self, virtual_page: int) -> PageTableEntry:
        entry = self._entry(virtual_page)
        if entry is None or not entry.present:
            msg = f"Virtual page {virtual_page} is not present"
            raise ValueError(msg)
        return entry

    def lookup(self, virtual_page: int) -> PageTableEntry | None:
        """Return the leaf entry for a page without faulting."""
        return self._entry(virtual_page)

    def translate(self, virtual_page: int) -> PageTableEntry:
        """Walk the table and return the present entry for a page.

        Raises:
            PageFaultError: ``MINOR`` or ``SEGMENTATION`` if the walk
                runs off the allocated tree (depending on whether lazy
                allocation is allowed), ``MAJOR`` if the leaf is absent
                but backed, ``MINOR`` if the leaf is absent and unbacked.

        """
        self._walks += 1
        entry = self._entry(virtual_page)
        if entry is None:
            kind = FaultKind.MINOR if self._lazy else FaultKind.SEGMENTATION
            raise PageFaultError(kind, virtual_page)
        if not entry.present:
            raise PageFaultError(FaultKind.MAJOR if entry.backed else FaultKind.MINOR, virtual_page)
        return entry

    def map(self, virtual_page: int, frame_number: int, protection: Protection) -> None:
        """Install a present leaf entry, allocating missing levels.

        The ``backed`` flag survives a remap so a page reloaded from
        the backing store still knows its canonical copy lives there.
        """
        entry = self._ensure_entry(virtual_page)
        entry.frame_number = frame_number
        entry.present = True
        entry.protection = protection
        entry.dirty = False
        entry.referenced = False

    def unmap(self, virtual_page: int) -> PageTableEntry | None:
        """Clear a leaf entry; intermediate tables stay allocated."""
        entry = self._entry(virtual_page)
        if entry is None:
            return None
        before = entry.snapshot()
        entry.frame_number = None
        entry.present = False
        entry.dirty = False
        entry.referenced = False
        entry.backed = False
        return before

    def evict(self, virtual_page: int) -> PageTableEntry:
        """Mark a present page absent and backed; return its prior state."""
        entry = self._present(virtual_page)
        before = entry.snapshot()
        entry.frame_number = None
        entry.present = False
        entry.dirty = False
        entry.referenced = False
        entry.backed = True
        return before

    def prepare(self, virtual_page: int, protection: Protection) -> None:
        """Allocate the path and an absent, unbacked leaf for a page."""
        entry = self._ensure_entry(virtual_page)
        if not entry.present and not entry.backed:
            entry.protection = protection

    def protect(self, virtual_page: int, protection: Protection) -> None:
        """Change the protection of an existing entry (no-op if none)."""
        entry = self._entry(virtual_page)
        if entry is not None:
            entry.protection = protection

    def set_referenced(self, virtual_page: int, *, value: bool = True) -> None:
        """Set or clear the referenced bit of a present page."""
        self._present(virtual_page).referenced = value

    def set_dirty(self, virtual_page: int, *, value: bool = True) -> None:
        """Set or clear the dirty bit of a present page."""
        self._present(virtual_page).dirty = value

    def mappings(self) -> dict[int, int]:
        """Return every present virtual page mapped to its frame."""
        result: dict[int, int] = {}
        self._collect(0, (), result)
        return result

    def _collect(self, node_id: int, prefix: tuple[int, ...], out: dict[int, int]) -> None:
        node = self._nodes[node_id]
        if node.level == self._layout.levels - 1:
            for index, entry in node.entries.items():
                if entry.present and entry.frame_number is not None:
                    out[self._layout.join((*prefix, index))] = entry.frame_number
            return
        for index, child in node.children.items():
            self._collect(child, (*prefix, index), out)

    def clear(self) -> None:
        """Drop every table except a fresh root."""
        self._nodes = [_Node(level=0)]

    def __len__(self) -> int:
        """Return the number of present pages."""
        return len(self.mappings())
