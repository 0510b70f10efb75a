"""Backing store — where pages live when they are not in RAM.

In a real OS this is a swap partition, a swap file, or the file a page
was mapped from.  The memory core needs four operations::

    load(page_id)  -> bytes     (read a page back in)
    store(page_id, data)        (write a dirty page out)
    remove(page_id)             (forget an unmapped page)
    discard_space(asid)         (forget a destroyed address space)

Two implementations ship here:

- **SwapSpace** — an in-memory dict with a slot capacity.
- **FileBackingStore** — one file per page under a directory.

A page that was never stored reads back as zeros, like a hole in a
sparse swap file.  That is what makes a clean, never-written page safe
to drop on eviction: reloading it yields exactly what it held.

Implementations report failures as ``BackingStoreError``.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from py_vmm.errors import BackingStoreError

if TYPE_CHECKING:
    from pathlib import Path


@dataclass(frozen=True)
class PageId:
    """Identify one virtual page of one address space in the backing store."""

    asid: int
    virtual_page: int

    def __str__(self) -> str:
        """Format as ``asid:vpn``."""
        return f"{self.asid}:{self.virtual_page}"


class BackingStore(Protocol):
    """Durable storage for non-resident pages."""

    def load(self, page_id: PageId) -> bytes:
        """Return the stored contents of a page (zeros if never stored)."""
        ...  # pragma: no cover

    def store(self, page_id: PageId, data: bytes) -> None:
        """Persist the contents of a page."""
        ...  # pragma: no cover

    def remove(self, page_id: PageId) -> None:
        """Drop a page's stored copy (no-op if absent)."""
        ...  # pragma: no cover

    def discard_space(self, asid: int) -> int:
        """Drop every stored page of one address space; return how many."""
        ...  # pragma: no cover


class SwapSpace:
    """Simulated swap device held in memory.

    Args:
        page_size: Size of one page; unknown pages load as this many zeros.
        capacity: Maximum number of distinct pages that can be stored
            (None for unlimited).

    """

    def __init__(self, *, page_size: int, capacity: int | None = None) -> None:
        """Create empty swap space."""
        self._page_size = page_size
        self._capacity = capacity
        self._slots: dict[PageId, bytes] = {}
        self._loads = 0
        self._stores = 0
        # Several CPUs page in and out at once.
        self._lock = threading.Lock()

    @property
    def used(self) -> int:
        """Return the number of pages currently stored."""
        with self._lock:
            return len(self._slots)

    @property
    def loads(self) -> int:
        """Return how many pages have been read back."""
        return self._loads

    @property
    def stores(self) -> int:
        """Return how many pages have been written out."""
        return self._stores

    def store(self, page_id: PageId, data: bytes) -> None:
        """Store a page's data, overwriting any previous copy.

        Raises:
            BackingStoreError: If swap is full and page_id is new.

        """
        with self._lock:
            if (
                page_id not in self._slots
                and self._capacity is not None
                and len(self._slots) >= self._capacity
            ):
                msg = f"Swap space full ({self._capacity} slots)"
                raise BackingStoreError(msg)
            self._slots[page_id] = bytes(data)
            self._stores += 1

    def load(self, page_id: PageId) -> bytes:
        """Return a page's data, or zeros if it was never stored."""
        with self._lock:
            self._loads += 1
            return self._slots.get(page_id, bytes(self._page_size))

    def remove(self, page_id: PageId) -> None:
        """Free a page's slot (no-op if absent)."""
        with self._lock:
            self._slots.pop(page_id, None)

    def contains(self, page_id: PageId) -> bool:
        """Check whether a page is stored."""
        with self._lock:
            return page_id in self._slots

    def discard_space(self, asid: int) -> int:
        """Free every slot belonging to one address space.

        Returns:
            The number of slots freed.

        """
        with self._lock:
            doomed = [p for p in self._slots if p.asid == asid]
            for page_id in doomed:
                del self._slots[page_id]
            return len(doomed)


class FileBackingStore:
    """Backing store that keeps one file per page in a directory.

    Files are named ``<asid>-<vpn>.page``.  OS-level errors are wrapped
    in ``BackingStoreError``.
    """

    def __init__(self, directory: Path, *, page_size: int) -> None:
        """Create a store rooted at directory (created if missing)."""
        self._directory = directory
        self._page_size = page_size
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            msg = f"Cannot create backing store directory {directory}: {e}"
            raise BackingStoreError(msg) from e

    def _path(self, page_id: PageId) -> Path:
        return self._directory / f"{page_id.asid}-{page_id.virtual_page}.page"

    def load(self, page_id: PageId) -> bytes:
        """Read a page file, or return zeros if it does not exist."""
        path = self._path(page_id)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return bytes(self._page_size)
        except OSError as e:
            msg = f"Cannot load page {page_id}: {e}"
            raise BackingStoreError(msg) from e

    def store(self, page_id: PageId, data: bytes) -> None:
        """Write a page file."""
        try:
            self._path(page_id).write_bytes(data)
        except OSError as e:
            msg = f"Cannot store page {page_id}: {e}"
            raise BackingStoreError(msg) from e

    def remove(self, page_id: PageId) -> None:
        """Delete a page file (no-op if absent)."""
        try:
            self._path(page_id).unlink(missing_ok=True)
        except OSError as e:
            msg = f"Cannot remove page {page_id}: {e}"
            raise BackingStoreError(msg) from e

    def discard_space(self, asid: int) -> int:
        """Delete every page file of one address space."""
        count = 0
        try:
            for path in self._directory.glob(f"{asid}-*.page"):
                path.unlink(missing_ok=True)
                count += 1
        except OSError as e:
            msg = f"Cannot discard pages of space {asid}: {e}"
            raise BackingStoreError(msg) from e
        return count
