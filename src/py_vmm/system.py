"""The simulated memory system — public entry point of the package.

``VirtualMemorySystem`` owns every component of one simulated machine
and exposes the programmatic surface a process loader would use::

    vm = configure(levels=(10, 10), offset_bits=12, frame_count=8)
    asid = vm.create_address_space()
    vm.map(asid, 0, Protection.READ_WRITE)
    vm.write(asid, 0x10, b"hello")
    vm.read(asid, 0x10, 5)            # b"hello"
    vm.access(asid, 0x10, AccessMode.READ)   # physical address

Design choices:
    - Systems are plain objects, never module-level singletons, so a
      test process can run any number of independent machines.
    - ``access`` re-runs the fault handler in an explicit loop until
      the attempt completes or faults terminally.  Minor and major
      faults are retried; protection and segmentation faults raise.
    - Every public method takes the target address space's lock, so
      accesses to one space are atomic and different spaces proceed in
      parallel.
"""

from __future__ import annotations

import itertools
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from py_vmm.address_space import AddressSpace, Region
from py_vmm.addressing import AccessMode, Protection
from py_vmm.config import DEFAULT_LEVELS, DEFAULT_OFFSET_BITS, PageTableKind, ReplacementKind, VMConfig
from py_vmm.errors import (
    BackingStoreError,
    FaultKind,
    OutOfMemoryError,
    ProtectionFaultError,
    SegmentationFaultError,
)
from py_vmm.events import EventEmitter, EventKind, EventLog
from py_vmm.fault import FaultHandler
from py_vmm.logging import Logger, LogLevel
from py_vmm.memory.frames import FrameAllocator, FrameOwner, FrameState, PhysicalMemory
from py_vmm.memory.inverted import InvertedPageTable
from py_vmm.memory.page_table import MultiLevelPageTable
from py_vmm.memory.replacement import make_policy
from py_vmm.memory.swap import SwapSpace
from py_vmm.memory.tlb import TLB

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from py_vmm.events import EventSink
    from py_vmm.fault import AccessAttempt
    from py_vmm.memory.page_table import PageTable
    from py_vmm.memory.swap import BackingStore

_SOURCE = "vmm"


@dataclass(frozen=True)
class AccessResult:
    """A completed access and the attempts it took.

    Attributes:
        physical_address: Where the access landed.
        frame: The frame holding the page.
        attempts: Every pass through the fault handler, in order.

    """

    physical_address: int
    frame: int
    attempts: tuple[AccessAttempt, ...]

    @property
    def faults(self) -> tuple[FaultKind, ...]:
        """Return the recoverable faults resolved on the way."""
        return tuple(a.fault for a in self.attempts if a.fault is not None)

    @property
    def tlb_hit(self) -> bool:
        """Return True if the first attempt hit in the TLB."""
        return self.attempts[0].tlb_hit


class VirtualMemorySystem:
    """One simulated machine: physical memory, TLBs, and address spaces."""

    def __init__(
        self,
        config: VMConfig | None = None,
        *,
        backing_store: BackingStore | None = None,
        sink: EventSink | None = None,
        logger: Logger | None = None,
    ) -> None:
        """Build a machine from a configuration.

        Args:
            config: Machine description (defaults to ``VMConfig()``).
            backing_store: Where evicted pages go (defaults to an
                unlimited in-memory ``SwapSpace``).
            sink: Receiver of memory events (defaults to an ``EventLog``).
            logger: Log buffer (defaults to a fresh ``Logger``).

        """
        self._config = config if config is not None else VMConfig()
        self._layout = self._config.layout
        self._store = (
            backing_store
            if backing_store is not None
            else SwapSpace(page_size=self._config.frame_size)
        )
        self._sink: EventSink = sink if sink is not None else EventLog()
        self._logger = logger if logger is not None else Logger()
        self._frames = FrameAllocator(total_frames=self._config.frame_count)
        self._memory = PhysicalMemory(frame_size=self._config.frame_size)
        self._tlbs = [
            TLB(capacity=self._config.tlb_capacity, eviction=self._config.tlb_eviction)
            for _ in range(self._config.num_cpus)
        ]
        self._inverted: InvertedPageTable | None = None
        if self._config.page_table_kind is PageTableKind.INVERTED:
            self._inverted = InvertedPageTable(
                self._layout,
                frame_count=self._config.frame_count,
                allow_lazy_intermediate=self._config.allow_lazy_intermediate,
            )
        self._spaces: dict[int, AddressSpace] = {}
        self._registry_lock = threading.Lock()
        self._asids = itertools.count(1)
        self._handler = FaultHandler(
            config=self._config,
            frames=self._frames,
            memory=self._memory,
            policy=make_policy(self._config.replacement_policy),
            backing_store=self._store,
            tlbs=self._tlbs,
            spaces=self._spaces,
            emitter=EventEmitter(self._sink),
            logger=self._logger,
        )
        self._logger.log(
            LogLevel.INFO,
            f"memory system up: {self._config.frame_count} frames of "
            f"{self._config.frame_size} bytes, {len(self._tlbs)} cpu(s), "
            f"{self._config.replacement_policy.value} replacement",
            source=_SOURCE,
        )

    # -- Components ------------------------------------------------------------

    @property
    def config(self) -> VMConfig:
        """Return the machine configuration."""
        return self._config

    @property
    def frames(self) -> FrameAllocator:
        """Return the frame allocator."""
        return self._frames

    @property
    def memory(self) -> PhysicalMemory:
        """Return simulated physical memory."""
        return self._memory

    @property
    def backing_store(self) -> BackingStore:
        """Return the backing store."""
        return self._store

    @property
    def events(self) -> EventSink:
        """Return the event sink."""
        return self._sink

    @property
    def logger(self) -> Logger:
        """Return the system log buffer."""
        return self._logger

    @property
    def handler(self) -> FaultHandler:
        """Return the fault handler."""
        return self._handler

    def dmesg(self) -> list[str]:
        """Return the log buffer as formatted lines."""
        return [str(entry) for entry in self._logger.entries]

    def tlb(self, cpu: int = 0) -> TLB:
        """Return one CPU's TLB.

        Raises:
            ValueError: If the CPU does not exist.

        """
        self._check_cpu(cpu)
        return self._tlbs[cpu]

    def address_space(self, asid: int) -> AddressSpace:
        """Return a live address space.

        Raises:
            KeyError: If no such address space exists.

        """
        with self._registry_lock:
            space = self._spaces.get(asid)
        if space is None:
            msg = f"No address space {asid}"
            raise KeyError(msg)
        return space

    def page_table(self, asid: int) -> PageTable:
        """Return the page table of an address space."""
        return self.address_space(asid).page_table

    @property
    def address_spaces(self) -> list[int]:
        """Return the ids of every live address space."""
        with self._registry_lock:
            return sorted(self._spaces)

    # -- Lifecycle -------------------------------------------------------------

    def create_address_space(self) -> int:
        """Create an empty address space and return its id.

        Ids increase monotonically and are never reused.
        """
        with self._registry_lock:
            asid = next(self._asids)
            self._spaces[asid] = AddressSpace(asid, self._new_page_table(asid))
        self._logger.log(LogLevel.INFO, "address space created", source=_SOURCE, asid=asid)
        return asid

    def _new_page_table(self, asid: int) -> PageTable:
        if self._inverted is not None:
            return self._inverted.view(asid)
        return MultiLevelPageTable(
            self._layout,
            allow_lazy_intermediate=self._config.allow_lazy_intermediate,
        )

    def destroy_address_space(self, asid: int) -> None:
        """Tear down an address space and free every frame it owns.

        Raises:
            KeyError: If no such address space exists.

        """
        with self._locked(asid) as space:
            with space.table_lock:
                space.destroyed = True
                self._handler.flush(asid)
                space.page_table.clear()
                for vpn in space.resident_pages:
                    space.mark_absent(vpn)
            freed = self._handler.release_space(asid)
            with self._registry_lock:
                del self._spaces[asid]
        self._logger.log(
            LogLevel.INFO,
            f"address space destroyed ({freed} frame(s) released)",
            source=_SOURCE,
            asid=asid,
        )

    @contextmanager
    def _locked(self, asid: int) -> Iterator[AddressSpace]:
        space = self.address_space(asid)
        with space.lock:
            if space.destroyed:
                msg = f"No address space {asid}"
                raise KeyError(msg)
            yield space

    # -- Mapping ---------------------------------------------------------------

    def reserve(self, asid: int, start_page: int, num_pages: int, protection: Protection) -> Region:
        """Declare a run of pages valid without making any of them resident.

        Pages in a reserved region are demand-zero filled on first
        touch.  With lazy table allocation disabled, their page-table
        paths are built now.

        Raises:
            KeyError: If no such address space exists.
            ValueError: If the range is empty, out of range, or overlaps
                an existing region.

        """
        self._layout.check_page(start_page)
        self._layout.check_page(start_page + max(num_pages, 1) - 1)
        region = Region(start_page, num_pages, Protection(protection))
        with self._locked(asid) as space:
            space.add_region(region)
            if not self._config.allow_lazy_intermediate:
                with space.table_lock:
                    for vpn in range(region.start_page, region.end_page):
                        space.page_table.prepare(vpn, region.protection)
        self._logger.log(
            LogLevel.DEBUG,
            f"reserved pages {start_page:#x}..{region.end_page - 1:#x} ({region.protection.value})",
            source=_SOURCE,
            asid=asid,
        )
        return region

    def map(self, asid: int, virtual_page: int, protection: Protection) -> int:
        """Make a page valid and resident, returning its frame.

        A page outside every region gets a region of its own.  Mapping
        an already resident page only changes its protection.  A page
        whose contents were evicted is reloaded from the backing store.
        If no frame can be had, a page that was invalid stays invalid.

        Raises:
            KeyError: If no such address space exists.
            ValueError: If the page number is out of range.
            OutOfMemoryError: If no frame can be obtained.
            BackingStoreError: If a page-in or write-back fails.

        """
        self._layout.check_page(virtual_page)
        protection = Protection(protection)
        with self._locked(asid) as space:
            region = space.region_for(virtual_page)
            if region is None:
                space.add_region(Region(virtual_page, 1, protection))
            elif region.protection is not protection:
                space.set_page_protection(virtual_page, protection)
            with space.table_lock:
                entry = space.page_table.lookup(virtual_page)
                if entry is not None and entry.present and entry.frame_number is not None:
                    space.page_table.protect(virtual_page, protection)
                    self._handler.shootdown(asid, virtual_page)
                    return entry.frame_number
                backed = entry is not None and entry.backed
                if not backed:
                    space.page_table.prepare(virtual_page, protection)
            kind = FaultKind.MAJOR if backed else FaultKind.MINOR
            try:
                frame = self._handler.resolve(space, virtual_page, kind, cpu=None)
            except (OutOfMemoryError, BackingStoreError):
                self._undo_map(space, virtual_page, region, protection)
                raise
        self._logger.log(
            LogLevel.DEBUG,
            f"mapped page {virtual_page:#x} to frame {frame} ({protection.value})",
            source=_SOURCE,
            asid=asid,
        )
        return frame

    @staticmethod
    def _undo_map(
        space: AddressSpace,
        virtual_page: int,
        region: Region | None,
        protection: Protection,
    ) -> None:
        """Put the page's region back the way it was before a failed map."""
        if region is None:
            space.carve(virtual_page)
        elif region.protection is not protection:
            space.set_page_protection(virtual_page, region.protection)

    def unmap(self, asid: int, virtual_page: int) -> None:
        """Remove a page's mapping and release its frame.

        The page leaves its region, so a later access is a segmentation
        fault.  Unmapping a page that is not mapped does nothing.

        Raises:
            KeyError: If no such address space exists.
            ValueError: If the page number is out of range.

        """
        self._layout.check_page(virtual_page)
        with self._locked(asid) as space:
            with space.table_lock:
                before = space.page_table.unmap(virtual_page)
                self._handler.shootdown(asid, virtual_page)
                space.mark_absent(virtual_page)
                space.carve(virtual_page)
            self._handler.forget_page(asid, virtual_page)
            if before is not None and before.present and before.frame_number is not None:
                self._handler.release_frame(before.frame_number, asid=asid, virtual_page=virtual_page)
        self._logger.log(LogLevel.DEBUG, f"unmapped page {virtual_page:#x}", source=_SOURCE, asid=asid)

    def protect(self, asid: int, virtual_page: int, protection: Protection) -> None:
        """Change the protection of one mapped page.

        Raises:
            KeyError: If no such address space exists.
            ValueError: If the page is not mapped.

        """
        self._layout.check_page(virtual_page)
        protection = Protection(protection)
        with self._locked(asid) as space:
            if space.region_for(virtual_page) is None:
                msg = f"Virtual page {virtual_page} is not mapped"
                raise ValueError(msg)
            space.set_page_protection(virtual_page, protection)
            with space.table_lock:
                space.page_table.protect(virtual_page, protection)
                self._handler.shootdown(asid, virtual_page)

    def pin(self, asid: int, virtual_page: int) -> int:
        """Make a page resident and exempt it from replacement.

        Returns:
            The frame the page is pinned to.

        Raises:
            KeyError: If no such address space exists.
            SegmentationFaultError: If the page is not mapped.
            OutOfMemoryError: If no frame can be obtained.

        """
        self._layout.check_page(virtual_page)
        owner = FrameOwner(asid, virtual_page)
        with self._locked(asid) as space:
            while True:
                with space.table_lock:
                    entry = space.page_table.lookup(virtual_page)
                    frame = entry.frame_number if entry is not None and entry.present else None
                    backed = entry is not None and entry.backed
                if frame is None:
                    if not backed and space.region_for(virtual_page) is None:
                        raise SegmentationFaultError(virtual_page, asid=asid)
                    kind = FaultKind.MAJOR if backed else FaultKind.MINOR
                    frame = self._handler.resolve(space, virtual_page, kind, cpu=None)
                with self._frames.lock:
                    record = self._frames.frame(frame)
                    if record.owner == owner and record.state is FrameState.ALLOCATED:
                        self._frames.set_pinned(frame, pinned=True)
                        return frame

    def unpin(self, asid: int, virtual_page: int) -> None:
        """Make a pinned page evictable again.

        Raises:
            KeyError: If no such address space exists.
            ValueError: If the page is not resident.

        """
        with self._locked(asid) as space:
            with space.table_lock:
                entry = space.page_table.lookup(virtual_page)
                frame = entry.frame_number if entry is not None and entry.present else None
            if frame is None:
                msg = f"Virtual page {virtual_page} is not resident"
                raise ValueError(msg)
            self._frames.set_pinned(frame, pinned=False)

    # -- Access ----------------------------------------------------------------

    def access(self, asid: int, virtual_address: int, mode: AccessMode, *, cpu: int = 0) -> int:
        """Translate one access, resolving recoverable faults on the way.

        Returns:
            The physical address of the access.

        Raises:
            KeyError: If no such address space exists.
            ValueError: If the address or CPU is out of range.
            ProtectionFaultError: If the mode is not allowed on the page.
            SegmentationFaultError: If the address has no valid mapping.
            OutOfMemoryError: If no frame can be obtained.
            BackingStoreError: If a page-in or write-back fails.

        """
        return self.translate(asid, virtual_address, mode, cpu=cpu).physical_address

    def translate(
        self,
        asid: int,
        virtual_address: int,
        mode: AccessMode = AccessMode.READ,
        *,
        cpu: int = 0,
    ) -> AccessResult:
        """Like ``access``, but also return the attempts it took."""
        virtual_page, offset = self._layout.split(virtual_address)
        frame, attempts = self._access_page(asid, virtual_page, AccessMode(mode), cpu=cpu)
        return AccessResult(
            physical_address=self._layout.physical_address(frame, offset),
            frame=frame,
            attempts=attempts,
        )

    def read(self, asid: int, virtual_address: int, size: int, *, cpu: int = 0) -> bytes:
        """Read bytes through address translation, page by page."""
        if size < 0:
            msg = f"size must be non-negative, got {size}"
            raise ValueError(msg)
        chunks: list[bytes] = []
        for vpn, offset, length, _ in self._spans(virtual_address, size):

            def copy_out(frame: int, offset: int = offset, length: int = length) -> None:
                chunks.append(self._memory.read(frame, offset, length))

            self._access_page(asid, vpn, AccessMode.READ, cpu=cpu, transfer=copy_out)
        return b"".join(chunks)

    def write(self, asid: int, virtual_address: int, data: bytes, *, cpu: int = 0) -> None:
        """Write bytes through address translation, page by page."""
        for vpn, offset, length, start in self._spans(virtual_address, len(data)):
            chunk = bytes(data[start : start + length])

            def copy_in(frame: int, offset: int = offset, chunk: bytes = chunk) -> None:
                self._memory.write(frame, offset, chunk)

            self._access_page(asid, vpn, AccessMode.WRITE, cpu=cpu, transfer=copy_in)

    def _spans(self, virtual_address: int, size: int) -> Iterator[tuple[int, int, int, int]]:
        """Yield ``(vpn, offset, length, position)`` for each page an access covers."""
        if size:
            self._layout.split(virtual_address + size - 1)
        page_size = self._layout.page_size
        position = 0
        while position < size:
            vpn, offset = self._layout.split(virtual_address + position)
            length = min(page_size - offset, size - position)
            yield vpn, offset, length, position
            position += length

    def _access_page(
        self,
        asid: int,
        virtual_page: int,
        mode: AccessMode,
        *,
        cpu: int,
        transfer: Callable[[int], None] | None = None,
    ) -> tuple[int, tuple[AccessAttempt, ...]]:
        self._check_cpu(cpu)
        attempts: list[AccessAttempt] = []
        with self._locked(asid) as space:
            while True:
                attempt = self._handler.attempt(space, virtual_page, mode, cpu=cpu, transfer=transfer)
                attempts.append(attempt)
                if attempt.frame is not None:
                    return attempt.frame, tuple(attempts)
                if attempt.retry:
                    continue
                if attempt.fault is FaultKind.PROTECTION:
                    raise ProtectionFaultError(virtual_page, asid=asid)
                raise SegmentationFaultError(virtual_page, asid=asid)

    def flush_tlb(self, asid: int | None = None) -> None:
        """Drop cached translations on every CPU (one space, or all)."""
        for tlb in self._tlbs:
            tlb.flush(asid)

    def _check_cpu(self, cpu: int) -> None:
        if not 0 <= cpu < len(self._tlbs):
            msg = f"CPU {cpu} does not exist (machine has {len(self._tlbs)})"
            raise ValueError(msg)

    # -- Inspection ------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        """Return a JSON-serialisable summary of the machine state."""
        with self._registry_lock:
            spaces = list(self._spaces.values())
        with self._frames.lock:
            allocated = self._frames.allocated_frames()
            pinned = sum(1 for n in allocated if self._frames.frame(n).pinned)
            free = self._frames.free_count
        summary: dict[str, Any] = {
            "config": self._config.to_dict(),
            "frames": {
                "total": self._frames.total_frames,
                "free": free,
                "allocated": len(allocated),
                "pinned": pinned,
            },
            "tlbs": [
                {"cpu": cpu, "hits": tlb.hits, "misses": tlb.misses, "entries": len(tlb)}
                for cpu, tlb in enumerate(self._tlbs)
            ],
            "spaces": [
                {
                    "asid": space.asid,
                    "resident": len(space.resident_pages),
                    "regions": len(space.regions),
                    "minor_faults": space.minor_faults,
                    "major_faults": space.major_faults,
                    "protection_faults": space.protection_faults,
                    "segmentation_faults": space.segmentation_faults,
                }
                for space in spaces
            ],
        }
        if self._inverted is not None:
            summary["page_table_probes"] = self._inverted.probes
        if isinstance(self._sink, EventLog):
            summary["events"] = {kind.value: count for kind, count in self._sink.counts().items()}
        return summary

    def event_count(self, kind: EventKind) -> int:
        """Return how many events of one kind the built-in log recorded."""
        if not isinstance(self._sink, EventLog):
            return 0
        return self._sink.counts()[kind]


def configure(  # noqa: PLR0913
    levels: tuple[int, ...] = DEFAULT_LEVELS,
    offset_bits: int = DEFAULT_OFFSET_BITS,
    frame_count: int = 64,
    tlb_capacity: int = 16,
    replacement_policy: ReplacementKind | str = ReplacementKind.CLOCK,
    allow_lazy_intermediate: bool = True,  # noqa: FBT001, FBT002
    *,
    backing_store: BackingStore | None = None,
    sink: EventSink | None = None,
    logger: Logger | None = None,
    **options: Any,
) -> VirtualMemorySystem:
    """Build a simulated memory system in one call.

    Extra keyword options (``tlb_eviction``, ``tlb_management``,
    ``num_cpus``, ``page_table_kind``) are passed through to
    ``VMConfig``.

    Raises:
        ConfigError: If any option is unknown or invalid.

    """
    config = VMConfig.from_dict(
        {
            "levels": levels,
            "offset_bits": offset_bits,
            "frame_count": frame_count,
            "tlb_capacity": tlb_capacity,
            "replacement_policy": replacement_policy,
            "allow_lazy_intermediate": allow_lazy_intermediate,
            **options,
        }
    )
    return VirtualMemorySystem(config, backing_store=backing_store, sink=sink, logger=logger)
