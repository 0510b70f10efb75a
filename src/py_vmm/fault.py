"""Fault handler — the state machine behind every memory access.

One access attempt walks this state machine::

    TLB_LOOKUP ──hit──▶ DONE
        │ miss
        ▼
    TABLE_WALK ──present──▶ REFILL_TLB ──▶ DONE          (soft miss)
        │ absent
        ▼
    CLASSIFY ──▶ PROTECTION | SEGMENTATION               (reported)
        │
        ├─ MINOR ──▶ FRAME_ACQUIRE ──▶ INSTALL_PTE ──▶ REFILL_TLB
        └─ MAJOR ──▶ FRAME_ACQUIRE ──▶ BACKING_STORE_LOAD ──▶ INSTALL_PTE ──▶ REFILL_TLB
                         │ exhausted
                         ▼
                       EVICT (write back if dirty, then reuse the frame)

A minor or major fault never finishes the access itself.  The handler
fixes the page tables and the caller **retries the access**, just as a
CPU re-executes the faulting instruction after the kernel returns.

Classification depends only on page-table state, the address space's
regions, and the access mode, so it is deterministic:

1. Present page: PROTECTION if the mode is not allowed, else no fault.
2. Absent page with a backing-store copy: PROTECTION or MAJOR.
3. Outside every region: SEGMENTATION.
4. Table levels missing and lazy allocation disabled: SEGMENTATION.
5. Otherwise PROTECTION or MINOR (demand-zero fill).

Dirty victims are written back before their frame is reused.  While a
write-back is in flight its data stays in an in-flight cache, so a page
that faults straight back in never reads a stale copy.  Write-backs reach
the store one at a time, and one whose page was unmapped or evicted again
meanwhile is dropped instead of written.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from py_vmm.addressing import AccessMode, Protection
from py_vmm.config import TLBManagement
from py_vmm.errors import (
    BackingStoreError,
    FaultKind,
    FramesExhaustedError,
    OutOfMemoryError,
    PageFaultError,
)
from py_vmm.events import EventKind
from py_vmm.logging import LogLevel
from py_vmm.memory.frames import FrameOwner, FrameState
from py_vmm.memory.swap import PageId
from py_vmm.memory.tlb import TLBEntry

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from py_vmm.address_space import AddressSpace
    from py_vmm.config import VMConfig
    from py_vmm.events import EventEmitter
    from py_vmm.logging import Logger
    from py_vmm.memory.frames import FrameAllocator, PhysicalMemory
    from py_vmm.memory.page_table import PageTableEntry
    from py_vmm.memory.replacement import ReplacementPolicy
    from py_vmm.memory.swap import BackingStore
    from py_vmm.memory.tlb import TLB

    Transfer = Callable[[int], None]

_FAULT_EVENTS = {
    FaultKind.MINOR: EventKind.MINOR_FAULT,
    FaultKind.MAJOR: EventKind.MAJOR_FAULT,
    FaultKind.PROTECTION: EventKind.PROTECTION_FAULT,
    FaultKind.SEGMENTATION: EventKind.SEGMENTATION_FAULT,
}


class FaultState(StrEnum):
    """States an access attempt passes through."""

    TLB_LOOKUP = "tlb_lookup"
    TABLE_WALK = "table_walk"
    REFILL_TLB = "refill_tlb"
    CLASSIFY = "classify"
    FRAME_ACQUIRE = "frame_acquire"
    EVICT = "evict"
    BACKING_STORE_LOAD = "backing_store_load"
    INSTALL_PTE = "install_pte"
    DONE = "done"


@dataclass(frozen=True)
class AccessAttempt:
    """The outcome of one pass through the state machine.

    Attributes:
        asid: Address space of the access.
        virtual_page: Page being accessed.
        mode: Access mode.
        cpu: CPU that issued the access.
        path: States visited, in order.
        frame: Frame the access resolved to (None unless it completed).
        fault: Fault raised by this attempt, if any.
        tlb_hit: True if the translation came straight from the TLB.

    """

    asid: int
    virtual_page: int
    mode: AccessMode
    cpu: int
    path: tuple[FaultState, ...]
    frame: int | None = None
    fault: FaultKind | None = None
    tlb_hit: bool = False

    @property
    def completed(self) -> bool:
        """Return True if the access produced a translation."""
        return self.frame is not None

    @property
    def soft_miss(self) -> bool:
        """Return True for a TLB miss resolved by a page-table walk."""
        return self.completed and not self.tlb_hit

    @property
    def hard_miss(self) -> bool:
        """Return True if the walk found the page absent from memory."""
        return self.fault is not None and self.fault.recoverable

    @property
    def retry(self) -> bool:
        """Return True if the caller should re-issue the access."""
        return not self.completed and (self.fault is None or self.fault.recoverable)


@dataclass(frozen=True, eq=False)
class _WriteBack:
    """A dirty page's contents on their way to the backing store.

    Compared by identity: each eviction makes its own.
    """

    page_id: PageId
    data: bytes


class _OwnerReferences:
    """Read and clear the referenced bit of a frame's owning PTE.

    Called by the replacement policy with the frame lock held; takes
    the owner's table lock, which is allowed in that order.
    """

    def __init__(self, frames: FrameAllocator, spaces: Mapping[int, AddressSpace]) -> None:
        self._frames = frames
        self._spaces = spaces

    def _locate(self, frame_number: int) -> tuple[AddressSpace, int] | None:
        owner = self._frames.frame(frame_number).owner
        if owner is None:
            return None
        space = self._spaces.get(owner.asid)
        return None if space is None else (space, owner.virtual_page)

    def _entry(self, space: AddressSpace, virtual_page: int, frame_number: int) -> PageTableEntry | None:
        entry = space.page_table.lookup(virtual_page)
        if entry is None or not entry.present or entry.frame_number != frame_number:
            return None
        return entry

    def is_referenced(self, frame_number: int) -> bool:
        located = self._locate(frame_number)
        if located is None:
            return False
        space, vpn = located
        with space.table_lock:
            entry = self._entry(space, vpn, frame_number)
            return entry is not None and entry.referenced

    def clear_referenced(self, frame_number: int) -> None:
        located = self._locate(frame_number)
        if located is None:
            return
        space, vpn = located
        with space.table_lock:
            if self._entry(space, vpn, frame_number) is not None:
                space.page_table.set_referenced(vpn, value=False)


class FaultHandler:
    """Drive translations, classify faults, and resolve the recoverable ones.

    The handler owns no state of its own beyond the in-flight write-back
    cache; it coordinates the frame allocator, replacement policy,
    physical memory, backing store, and per-CPU TLBs it is given.
    Callers must hold the address space's ``lock`` around ``attempt``
    and ``resolve``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        config: VMConfig,
        frames: FrameAllocator,
        memory: PhysicalMemory,
        policy: ReplacementPolicy,
        backing_store: BackingStore,
        tlbs: list[TLB],
        spaces: Mapping[int, AddressSpace],
        emitter: EventEmitter,
        logger: Logger,
    ) -> None:
        """Wire the handler to the components of one simulated machine."""
        self._config = config
        self._frames = frames
        self._memory = memory
        self._policy = policy
        self._store = backing_store
        self._tlbs = tlbs
        self._spaces = spaces
        self._emitter = emitter
        self._logger = logger
        self._references = _OwnerReferences(frames, spaces)
        self._in_flight: dict[PageId, _WriteBack] = {}
        # The write-back currently inside store(), if any.
        self._storing: _WriteBack | None = None
        self._in_flight_lock = threading.Lock()
        # Held across store(); taken with no frame or table lock held.
        self._write_back_lock = threading.Lock()

    # -- Translation -----------------------------------------------------------

    def attempt(
        self,
        space: AddressSpace,
        virtual_page: int,
        mode: AccessMode,
        *,
        cpu: int,
        transfer: Transfer | None = None,
    ) -> AccessAttempt:
        """Run one access attempt through the state machine.

        On success the page's referenced (and, for writes, dirty) bit is
        set and ``transfer`` is called with the frame number while the
        mapping is guaranteed to stay put.  Recoverable faults are
        resolved before returning, so the caller only has to retry.

        Raises:
            OutOfMemoryError: If a frame is needed and none can be evicted.
            BackingStoreError: If a page-in or write-back fails.

        """
        asid = space.asid
        tlb = self._tlbs[cpu]
        path = [FaultState.TLB_LOOKUP]
        frame: int | None = None
        fault: FaultKind | None = None
        tlb_hit = False

        with space.table_lock:
            cached = tlb.lookup(asid, virtual_page)
            if cached is not None and cached.protection.permits(mode):
                self._emit(EventKind.TLB_HIT, asid, virtual_page, cached.frame_number, cpu)
                frame, tlb_hit = cached.frame_number, True
            elif cached is not None:
                path.append(FaultState.CLASSIFY)
                fault = self.classify(space, virtual_page, mode)
            else:
                self._emit(EventKind.TLB_MISS, asid, virtual_page, None, cpu)
                if self._config.tlb_management is TLBManagement.SOFTWARE:
                    self._emit(EventKind.TLB_MISS_TRAP, asid, virtual_page, None, cpu)
                path.append(FaultState.TABLE_WALK)
                try:
                    entry = space.page_table.translate(virtual_page)
                except PageFaultError:
                    self._emit(EventKind.HARD_MISS, asid, virtual_page, None, cpu)
                    path.append(FaultState.CLASSIFY)
                    fault = self.classify(space, virtual_page, mode)
                else:
                    if entry.protection.permits(mode) and entry.frame_number is not None:
                        path.append(FaultState.REFILL_TLB)
                        self._refill(asid, virtual_page, entry, cpu)
                        self._emit(EventKind.SOFT_MISS, asid, virtual_page, entry.frame_number, cpu)
                        frame = entry.frame_number
                    else:
                        path.append(FaultState.CLASSIFY)
                        fault = self.classify(space, virtual_page, mode)

            if frame is not None:
                space.page_table.set_referenced(virtual_page)
                if mode is AccessMode.WRITE:
                    space.page_table.set_dirty(virtual_page)
                if transfer is not None:
                    transfer(frame)
                path.append(FaultState.DONE)

        if frame is not None:
            with self._frames.lock:
                self._policy.record_access(frame)
        elif fault is not None:
            self._record_fault(space, virtual_page, fault, cpu)
            if fault.recoverable:
                self.resolve(space, virtual_page, fault, cpu=cpu, path=path)

        return AccessAttempt(
            asid=asid,
            virtual_page=virtual_page,
            mode=mode,
            cpu=cpu,
            path=tuple(path),
            frame=frame,
            fault=fault,
            tlb_hit=tlb_hit,
        )

    def classify(self, space: AddressSpace, virtual_page: int, mode: AccessMode) -> FaultKind | None:
        """Classify an access against the current page-table state.

        Returns:
            The fault the access would raise, or None if it would succeed.

        """
        entry = space.page_table.lookup(virtual_page)
        if entry is not None and entry.present:
            return None if entry.protection.permits(mode) else FaultKind.PROTECTION
        if entry is not None and entry.backed:
            return FaultKind.MAJOR if entry.protection.permits(mode) else FaultKind.PROTECTION
        region = space.region_for(virtual_page)
        if region is None:
            return FaultKind.SEGMENTATION
        if entry is None and not self._config.allow_lazy_intermediate:
            return FaultKind.SEGMENTATION
        return FaultKind.MINOR if region.protection.permits(mode) else FaultKind.PROTECTION

    def _record_fault(self, space: AddressSpace, virtual_page: int, fault: FaultKind, cpu: int) -> None:
        match fault:
            case FaultKind.MINOR:
                space.minor_faults += 1
            case FaultKind.MAJOR:
                space.major_faults += 1
            case FaultKind.PROTECTION:
                space.protection_faults += 1
            case FaultKind.SEGMENTATION:
                space.segmentation_faults += 1
        self._emit(_FAULT_EVENTS[fault], space.asid, virtual_page, None, cpu)
        self._logger.log(
            LogLevel.DEBUG,
            f"{fault.value} fault on page {virtual_page:#x} (cpu {cpu})",
            source="fault",
            asid=space.asid,
        )

    # -- Resolution ------------------------------------------------------------

    def resolve(
        self,
        space: AddressSpace,
        virtual_page: int,
        kind: FaultKind,
        *,
        cpu: int | None,
        path: list[FaultState] | None = None,
    ) -> int:
        """Make a page resident after a minor or major fault.

        Args:
            space: The faulting address space.
            virtual_page: The faulting page.
            kind: ``MINOR`` (demand-zero) or ``MAJOR`` (page in).
            cpu: CPU whose TLB is refilled afterwards (None: no refill).
            path: State trace to extend.

        Returns:
            The frame now holding the page.

        Raises:
            ValueError: If kind is not recoverable.
            OutOfMemoryError: If no frame can be obtained.
            BackingStoreError: If the page-in or an eviction write-back fails.

        """
        if not kind.recoverable:
            msg = f"Cannot resolve a {kind.value} fault"
            raise ValueError(msg)
        trace = path if path is not None else []
        asid = space.asid
        trace.append(FaultState.FRAME_ACQUIRE)
        frame = self.acquire_frame(FrameOwner(asid, virtual_page), cpu=cpu, path=trace)

        dirty = False
        try:
            if kind is FaultKind.MAJOR:
                trace.append(FaultState.BACKING_STORE_LOAD)
                data, dirty = self._page_in(PageId(asid, virtual_page))
                self._memory.fill(frame, data)
            else:
                self._memory.zero(frame)
        except BackingStoreError:
            with self._frames.lock:
                self._policy.on_release(frame)
                self._frames.free(frame)
            raise

        trace.append(FaultState.INSTALL_PTE)
        with space.table_lock:
            current = space.page_table.lookup(virtual_page)
            existing = current.frame_number if current is not None and current.present else None
            if existing is None:
                space.page_table.map(virtual_page, frame, self._protection_for(space, virtual_page))
                if dirty:
                    space.page_table.set_dirty(virtual_page)
                space.mark_resident(virtual_page)
                if cpu is not None:
                    trace.append(FaultState.REFILL_TLB)
                    entry = space.page_table.lookup(virtual_page)
                    if entry is not None:
                        self._refill(asid, virtual_page, entry, cpu)
        if existing is not None:
            # A failed write-back put the page back in its old frame meanwhile.
            with self._frames.lock:
                self._policy.on_release(frame)
                self._frames.free(frame)
            return existing
        with self._frames.lock:
            self._frames.commit(frame)
        if kind is FaultKind.MAJOR:
            self._emit(EventKind.PAGE_IN, asid, virtual_page, frame, cpu)
        return frame

    def _protection_for(self, space: AddressSpace, virtual_page: int) -> Protection:
        region = space.region_for(virtual_page)
        if region is not None:
            return region.protection
        entry = space.page_table.lookup(virtual_page)
        return entry.protection if entry is not None else Protection.READ

    def _page_in(self, page_id: PageId) -> tuple[bytes, bool]:
        """Fetch a page's contents.

        Returns:
            The data, and True if it came from an unfinished write-back
            (so the backing store copy is not yet current).

        """
        with self._in_flight_lock:
            pending = self._in_flight.get(page_id)
            storing = self._storing
        if pending is not None:
            return pending.data, True
        if storing is not None and storing.page_id == page_id:
            # The old contents of an unmapped page are still being written.
            return bytes(self._memory.frame_size), False
        try:
            data = self._store.load(page_id)
        except OSError as e:
            msg = f"Cannot load page {page_id}: {e}"
            raise BackingStoreError(msg) from e
        if len(data) > self._memory.frame_size:
            msg = f"Backing store returned {len(data)} bytes for page {page_id}"
            raise BackingStoreError(msg)
        return data, False

    # -- Frames ----------------------------------------------------------------

    def acquire_frame(
        self,
        owner: FrameOwner,
        *,
        cpu: int | None = None,
        path: list[FaultState] | None = None,
    ) -> int:
        """Get a LOADING frame for a page, evicting a victim if needed.

        Raises:
            OutOfMemoryError: If the pool is exhausted and nothing is evictable.
            BackingStoreError: If the victim's write-back fails.

        """
        while True:
            with self._frames.lock:
                try:
                    frame = self._frames.allocate(owner)
                except FramesExhaustedError:
                    claimed = self._claim_victim(owner)
                else:
                    self._policy.on_allocate(frame)
                    self._emit(EventKind.FRAME_ALLOCATED, owner.asid, owner.virtual_page, frame, cpu)
                    return frame
            if claimed is None:
                # Every frame is mid-fault on another CPU; let it finish.
                time.sleep(0)
                continue
            victim, victim_owner = claimed
            if path is not None:
                path.append(FaultState.EVICT)
            self._evict(victim, victim_owner, cpu=cpu)
            with self._frames.lock:
                self._policy.on_release(victim)
                self._frames.reassign(victim, owner)
                self._policy.on_allocate(victim)
            self._emit(EventKind.FRAME_ALLOCATED, owner.asid, owner.virtual_page, victim, cpu)
            return victim

    def _claim_victim(self, owner: FrameOwner) -> tuple[int, FrameOwner] | None:
        """Pick and reserve a victim frame; call with the frame lock held."""
        candidates = self._frames.evictable_frames()
        if not candidates:
            if self._frames.in_transit():
                return None
            self._emit(EventKind.OUT_OF_MEMORY, owner.asid, owner.virtual_page, None, None)
            self._logger.log(
                LogLevel.WARNING,
                f"out of memory: no evictable frame for page {owner.virtual_page:#x}",
                source="frames",
                asid=owner.asid,
            )
            msg = f"No evictable frame for page {owner.virtual_page} of space {owner.asid}"
            raise OutOfMemoryError(msg)
        try:
            victim = self._policy.select_victim(candidates, self._references)
        except IndexError as e:
            msg = f"Replacement policy found no victim among {len(candidates)} frames"
            raise OutOfMemoryError(msg) from e
        return victim, self._frames.begin_reclaim(victim)

    def _evict(self, victim: int, owner: FrameOwner, *, cpu: int | None) -> None:
        """Detach a RECLAIMING frame from its page, writing it back if dirty."""
        asid, vpn = owner.asid, owner.virtual_page
        page_id = PageId(asid, vpn)
        space = self._spaces.get(asid)
        write_back: _WriteBack | None = None
        before: PageTableEntry | None = None
        if space is not None:
            with space.table_lock:
                entry = space.page_table.lookup(vpn)
                if (
                    not space.destroyed
                    and entry is not None
                    and entry.present
                    and entry.frame_number == victim
                ):
                    if entry.dirty:
                        write_back = _WriteBack(page_id, self._memory.snapshot(victim))
                        with self._in_flight_lock:
                            self._in_flight[page_id] = write_back
                    self.shootdown(asid, vpn)
                    before = space.page_table.evict(vpn)
                    space.mark_absent(vpn)
        self._emit(EventKind.EVICTION, asid, vpn, victim, cpu)
        self._logger.log(
            LogLevel.DEBUG,
            f"evicted page {vpn:#x} from frame {victim}" + (" (dirty)" if write_back else ""),
            source="replacement",
            asid=asid,
        )
        if write_back is None or space is None or before is None:
            return
        if self._write_back(space, victim, before, write_back):
            self._emit(EventKind.WRITE_BACK, asid, vpn, victim, cpu)

    def _write_back(
        self,
        space: AddressSpace,
        victim: int,
        before: PageTableEntry,
        write_back: _WriteBack,
    ) -> bool:
        """Store a dirty victim's contents unless they went stale meanwhile.

        Returns:
            True if the contents were written, False if they were dropped.

        Raises:
            BackingStoreError: If the store fails; the eviction is aborted first.

        """
        page_id = write_back.page_id
        with self._write_back_lock:
            with self._in_flight_lock:
                if self._in_flight.get(page_id) is not write_back:
                    # Unmapped, or evicted again with newer contents.
                    return False
                self._storing = write_back
            try:
                self._store.store(page_id, write_back.data)
            except BackingStoreError:
                self._abort_eviction(space, victim, before, write_back)
                raise
            except OSError as e:
                self._abort_eviction(space, victim, before, write_back)
                msg = f"Cannot store page {page_id}: {e}"
                raise BackingStoreError(msg) from e
            finally:
                self._settle(write_back)
        return True

    def _settle(self, write_back: _WriteBack) -> None:
        """Retire a finished write-back.

        If the page was unmapped while its contents were being stored,
        the copy that just landed is removed again.
        """
        page_id = write_back.page_id
        with self._in_flight_lock:
            if self._in_flight.get(page_id) is write_back:
                del self._in_flight[page_id]
            else:
                self._remove_stored(page_id)
            self._storing = None

    def _remove_stored(self, page_id: PageId) -> None:
        try:
            self._store.remove(page_id)
        except OSError as e:
            msg = f"Cannot remove page {page_id}: {e}"
            raise BackingStoreError(msg) from e

    def _abort_eviction(
        self,
        space: AddressSpace,
        victim: int,
        before: PageTableEntry,
        write_back: _WriteBack,
    ) -> None:
        """Put a dirty page back in its frame after a failed write-back.

        Nothing is restored if the page was faulted back in, unmapped, or
        evicted again since; the frame is freed instead.
        """
        virtual_page = write_back.page_id.virtual_page
        with space.table_lock:
            entry = space.page_table.lookup(virtual_page)
            with self._in_flight_lock:
                current = self._in_flight.get(write_back.page_id) is write_back
            restored = (
                current
                and not space.destroyed
                and entry is not None
                and entry.backed
                and not entry.present
            )
            if restored:
                space.page_table.map(virtual_page, victim, before.protection)
                space.page_table.set_dirty(virtual_page)
                space.mark_resident(virtual_page)
        with self._frames.lock:
            if restored:
                self._frames.abort_reclaim(victim)
            else:
                self._policy.on_release(victim)
                self._frames.free(victim)
        self._logger.log(
            LogLevel.ERROR,
            f"write-back of page {virtual_page:#x} failed; eviction aborted",
            source="swap",
            asid=space.asid,
        )

    def release_frame(self, frame_number: int, *, asid: int, virtual_page: int) -> bool:
        """Return an unmapped page's frame to the free list.

        A frame an evictor has already claimed (or handed to someone
        else) is left alone.

        Returns:
            True if the frame was freed.

        """
        with self._frames.lock:
            record = self._frames.frame(frame_number)
            if record.state is not FrameState.ALLOCATED or record.owner != FrameOwner(asid, virtual_page):
                return False
            self._policy.on_release(frame_number)
            self._frames.free(frame_number)
        self._emit(EventKind.FRAME_FREED, asid, virtual_page, frame_number, None)
        return True

    def forget_page(self, asid: int, virtual_page: int) -> None:
        """Drop every saved copy of an unmapped page.

        A later mapping of the page starts from zeros, even after a
        clean eviction turns it into a page-in.

        Raises:
            BackingStoreError: If the stored copy cannot be removed.

        """
        page_id = PageId(asid, virtual_page)
        with self._in_flight_lock:
            self._in_flight.pop(page_id, None)
        self._remove_stored(page_id)

    def release_space(self, asid: int) -> int:
        """Free every settled frame of a destroyed address space.

        The space's pages are also dropped from the in-flight cache and
        the backing store.

        Returns:
            The number of frames freed.

        Raises:
            BackingStoreError: If the stored pages cannot be discarded.

        """
        released: list[tuple[int, int]] = []
        with self._frames.lock:
            for frame_number in self._frames.owned_by(asid):
                record = self._frames.frame(frame_number)
                if record.state is not FrameState.ALLOCATED or record.owner is None:
                    continue
                self._policy.on_release(frame_number)
                self._frames.free(frame_number)
                released.append((frame_number, record.owner.virtual_page))
        for frame_number, virtual_page in released:
            self._emit(EventKind.FRAME_FREED, asid, virtual_page, frame_number, None)
        with self._in_flight_lock:
            for page_id in [p for p in self._in_flight if p.asid == asid]:
                del self._in_flight[page_id]
        try:
            discarded = self._store.discard_space(asid)
        except OSError as e:
            msg = f"Cannot discard pages of space {asid}: {e}"
            raise BackingStoreError(msg) from e
        if discarded:
            self._logger.log(
                LogLevel.DEBUG,
                f"discarded {discarded} stored page(s)",
                source="swap",
                asid=asid,
            )
        return len(released)

    # -- TLB -------------------------------------------------------------------

    def _refill(self, asid: int, virtual_page: int, entry: PageTableEntry, cpu: int) -> None:
        if entry.frame_number is None:
            return
        self._tlbs[cpu].insert(
            TLBEntry(
                address_space_id=asid,
                virtual_page=virtual_page,
                frame_number=entry.frame_number,
                protection=entry.protection,
            )
        )
        self._emit(EventKind.TLB_REFILL, asid, virtual_page, entry.frame_number, cpu)

    def shootdown(self, asid: int, virtual_page: int) -> None:
        """Invalidate one translation in every CPU's TLB."""
        for cpu, tlb in enumerate(self._tlbs):
            if tlb.invalidate(asid, virtual_page):
                self._emit(EventKind.TLB_SHOOTDOWN, asid, virtual_page, None, cpu)

    def flush(self, asid: int) -> None:
        """Invalidate every translation of an address space on every CPU."""
        for tlb in self._tlbs:
            tlb.flush(asid)

    def _emit(
        self,
        kind: EventKind,
        asid: int | None,
        virtual_page: int | None,
        frame: int | None,
        cpu: int | None,
    ) -> None:
        self._emitter.emit(kind, asid=asid, virtual_page=virtual_page, frame=frame, cpu=cpu)
