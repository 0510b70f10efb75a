"""Fault kinds and the exception taxonomy of the memory subsystem.

Not every fault is an error.  The MMU reports four kinds of fault and
the kernel treats them very differently:

- **Minor fault** — the page can be made resident without touching
  disk (demand-zero fill, lazily allocated table levels).  Resolved
  internally; the access is retried.
- **Major fault** — the page lives in the backing store and must be
  read back in.  Resolved internally; the access is retried.
- **Protection fault** — the page exists but the access mode is not
  allowed (e.g. writing a read-only page).  Reported to the caller.
- **Segmentation fault** — the address has no valid mapping at all.
  Reported to the caller.

Resource failures (no evictable frame, broken backing store) are
separate errors because they are not properties of the address.
"""

from __future__ import annotations

from enum import StrEnum


class FaultKind(StrEnum):
    """Classification of a failed translation."""

    MINOR = "minor"
    MAJOR = "major"
    PROTECTION = "protection"
    SEGMENTATION = "segmentation"

    @property
    def recoverable(self) -> bool:
        """Return True if the handler resolves this fault and the access is retried."""
        return self in {FaultKind.MINOR, FaultKind.MAJOR}


class VMError(Exception):
    """Base class for every error raised by the memory subsystem."""


class MemoryFaultError(VMError):
    """Raise when a translation fails with a fault.

    Attributes:
        kind: The fault classification.
        asid: The address space the access belonged to (None if unknown).
        virtual_page: The virtual page that faulted.

    """

    def __init__(self, kind: FaultKind, virtual_page: int, *, asid: int | None = None) -> None:
        """Create a fault error for the given page."""
        where = f"page {virtual_page}" if asid is None else f"page {virtual_page} of space {asid}"
        super().__init__(f"{kind.value} fault on {where}")
        self.kind = kind
        self.asid = asid
        self.virtual_page = virtual_page


class PageFaultError(MemoryFaultError):
    """Raised by a page table when a walk does not end at a present entry."""


class ProtectionFaultError(MemoryFaultError):
    """Raised when an access mode violates the page's protection."""

    def __init__(self, virtual_page: int, *, asid: int | None = None) -> None:
        """Create a protection fault for the given page."""
        super().__init__(FaultKind.PROTECTION, virtual_page, asid=asid)


class SegmentationFaultError(MemoryFaultError):
    """Raised when an address has no valid mapping at any level."""

    def __init__(self, virtual_page: int, *, asid: int | None = None) -> None:
        """Create a segmentation fault for the given page."""
        super().__init__(FaultKind.SEGMENTATION, virtual_page, asid=asid)


class FramesExhaustedError(VMError):
    """Raise when the free list is empty.

    Not fatal: the fault handler catches it and asks the replacement
    policy for a victim.
    """


class OutOfMemoryError(VMError):
    """Raise when no frame is free and no frame can be evicted."""


class BackingStoreError(VMError):
    """Raise when the backing store cannot load or store a page."""
