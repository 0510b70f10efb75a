"""Addressing — access modes, protections, and address decomposition.

Every memory access carries three pieces of information:

- **Where** — a virtual address.
- **How** — an access mode (read, write, or execute).
- **Who** — the address space the access belongs to.

The MMU splits the virtual address into a list of page-table indices
plus a byte offset.  With the default 9-9-9-9-12 layout (x86-64 style)
a 48-bit address looks like this::

    | L0 idx | L1 idx | L2 idx | L3 idx |  offset  |
    |  9 bit |  9 bit |  9 bit |  9 bit |  12 bit  |

The indices together form the **virtual page number** (VPN); the
offset is carried unchanged into the physical address::

    physical address = frame_number * frame_size + offset

Design choices:
    - **Protection is an enum, not a bit mask** — the hardware packs
      R/W/X bits into a PTE word, but that packing is an optimisation,
      not part of the contract.
    - **AddressLayout is frozen** — a layout is fixed for the lifetime
      of a simulated machine.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class AccessMode(StrEnum):
    """The kind of memory access being attempted."""

    READ = "read"
    WRITE = "write"
    EXECUTE = "execute"


class Protection(StrEnum):
    """Permissions recorded in a page table entry.

    Every protection except ``NONE`` implies read access, matching
    the way common MMUs treat a present page as at least readable.
    """

    NONE = "none"
    READ = "r"
    READ_WRITE = "rw"
    READ_EXECUTE = "rx"
    READ_WRITE_EXECUTE = "rwx"

    def permits(self, mode: AccessMode) -> bool:
        """Return True if an access in the given mode is allowed."""
        match mode:
            case AccessMode.READ:
                return self is not Protection.NONE
            case AccessMode.WRITE:
                return "w" in self.value
            case AccessMode.EXECUTE:
                return "x" in self.value


@dataclass(frozen=True)
class AddressLayout:
    """Describe how a virtual address splits into indices and an offset.

    Attributes:
        level_bits: Index width of each page-table level, top level first.
        offset_bits: Width of the byte offset within a page.

    """

    level_bits: tuple[int, ...]
    offset_bits: int

    def __post_init__(self) -> None:
        """Reject layouts that cannot describe a page table."""
        if not self.level_bits:
            msg = "An address layout needs at least one page-table level"
            raise ValueError(msg)
        if any(bits < 1 for bits in self.level_bits):
            msg = f"Level widths must be positive, got {self.level_bits}"
            raise ValueError(msg)
        if self.offset_bits < 0:
            msg = f"Offset width must be non-negative, got {self.offset_bits}"
            raise ValueError(msg)

    @property
    def levels(self) -> int:
        """Return the number of page-table levels."""
        return len(self.level_bits)

    @property
    def page_size(self) -> int:
        """Return the size of a page (and of a frame) in bytes."""
        return 1 << self.offset_bits

    @property
    def vpn_bits(self) -> int:
        """Return the width of a virtual page number."""
        return sum(self.level_bits)

    @property
    def address_bits(self) -> int:
        """Return the total width of a virtual address."""
        return self.vpn_bits + self.offset_bits

    @property
    def page_count(self) -> int:
        """Return the number of virtual pages in one address space."""
        return 1 << self.vpn_bits

    def check_page(self, virtual_page: int) -> None:
        """Raise ValueError if a virtual page number is out of range."""
        if not 0 <= virtual_page < self.page_count:
            msg = f"Virtual page {virtual_page} outside {self.vpn_bits}-bit page space"
            raise ValueError(msg)

    def split(self, virtual_address: int) -> tuple[int, int]:
        """Split a virtual address into (virtual page number, offset).

        Raises:
            ValueError: If the address does not fit the layout.

        """
        if not 0 <= virtual_address < (1 << self.address_bits):
            msg = f"Virtual address {virtual_address:#x} outside {self.address_bits}-bit space"
            raise ValueError(msg)
        return virtual_address >> self.offset_bits, virtual_address & (self.page_size - 1)

    def indices(self, virtual_page: int) -> tuple[int, ...]:
        """Return the per-level table indices for a virtual page, top level first."""
        self.check_page(virtual_page)
        result: list[int] = []
        remaining = self.vpn_bits
        for bits in self.level_bits:
            remaining -= bits
            result.append((virtual_page >> remaining) & ((1 << bits) - 1))
        return tuple(result)

    def join(self, indices: tuple[int, ...]) -> int:
        """Rebuild a virtual page number from per-level indices."""
        vpn = 0
        for bits, index in zip(self.level_bits, indices, strict=True):
            vpn = (vpn << bits) | index
        return vpn

    def virtual_address(self, virtual_page: int, offset: int = 0) -> int:
        """Compose a virtual address from a page number and offset."""
        self.check_page(virtual_page)
        return (virtual_page << self.offset_bits) | offset

    def physical_address(self, frame_number: int, offset: int) -> int:
        """Compose a physical address from a frame number and offset."""
        return frame_number * self.page_size + offset
