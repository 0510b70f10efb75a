"""Tests for the memory system's public surface.

These drive whole machines: mapping, translation, data transfer,
eviction and write-back, pinning, and address-space teardown.
"""

import pytest

from py_vmm.addressing import AccessMode, Protection
from py_vmm.config import ConfigError, VMConfig
from py_vmm.errors import (
    BackingStoreError,
    FaultKind,
    OutOfMemoryError,
    ProtectionFaultError,
    SegmentationFaultError,
)
from py_vmm.events import EventKind, EventLog
from py_vmm.fault import FaultState
from py_vmm.logging import LogLevel
from py_vmm.memory.frames import FrameOwner, FrameState
from py_vmm.memory.swap import PageId, SwapSpace
from py_vmm.system import VirtualMemorySystem, configure

LEVELS = (4, 4)
OFFSET_BITS = 4
PAGE_SIZE = 16


def _system(frame_count: int = 4, **options: object) -> VirtualMemorySystem:
    return configure(levels=LEVELS, offset_bits=OFFSET_BITS, frame_count=frame_count, **options)


def _address(virtual_page: int, offset: int = 0) -> int:
    return virtual_page * PAGE_SIZE + offset


class SpySwap(SwapSpace):
    """A swap device that records the victim frame's state at every store."""

    def __init__(self) -> None:
        """Start with nothing recorded."""
        super().__init__(page_size=PAGE_SIZE)
        self.vm: VirtualMemorySystem | None = None
        self.seen: list[tuple[PageId, FrameOwner | None, FrameState]] = []

    def store(self, page_id: PageId, data: bytes) -> None:
        """Record who owns frame 0 right now, then store."""
        assert self.vm is not None
        record = self.vm.frames.frame(0)
        self.seen.append((page_id, record.owner, record.state))
        super().store(page_id, data)


class BrokenSwap(SwapSpace):
    """A swap device whose writes always fail."""

    def store(self, page_id: PageId, data: bytes) -> None:
        """Refuse every write."""
        msg = f"device error writing {page_id}"
        raise BackingStoreError(msg)


class TestConfigure:
    """Verify building machines."""

    def test_default_machine(self) -> None:
        """A default system uses the default configuration."""
        vm = VirtualMemorySystem()
        assert vm.config == VMConfig()

    def test_options_pass_through(self) -> None:
        """Extra options reach the config."""
        cpus = 2
        vm = _system(num_cpus=cpus, replacement_policy="fifo")
        assert vm.config.num_cpus == cpus
        assert vm.config.replacement_policy.value == "fifo"

    def test_unknown_option_rejected(self) -> None:
        """A misspelt option is a config error."""
        with pytest.raises(ConfigError):
            _system(num_cpu=2)

    def test_machines_are_independent(self) -> None:
        """Two systems share no state."""
        first = _system()
        second = _system()
        first.map(first.create_address_space(), 0, Protection.READ)
        assert second.frames.free_count == second.frames.total_frames


class TestAddressSpaces:
    """Verify address-space lifecycle."""

    def test_ids_increase_and_are_not_reused(self) -> None:
        """A destroyed space's id is never handed out again."""
        vm = _system()
        first = vm.create_address_space()
        vm.destroy_address_space(first)
        second = vm.create_address_space()
        assert second > first
        assert vm.address_spaces == [second]

    def test_destroy_frees_frames(self) -> None:
        """Tearing a space down returns every frame it held."""
        vm = _system()
        asid = vm.create_address_space()
        for vpn in range(3):
            vm.map(asid, vpn, Protection.READ_WRITE)
        vm.destroy_address_space(asid)
        assert vm.frames.free_count == vm.frames.total_frames
        assert vm.event_count(EventKind.FRAME_FREED) == 3

    def test_destroy_discards_stored_pages(self) -> None:
        """A destroyed space leaves nothing behind in the backing store."""
        swap = SwapSpace(page_size=PAGE_SIZE)
        vm = _system(frame_count=1, backing_store=swap)
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ_WRITE)
        vm.write(asid, 0, b"gone")
        vm.map(asid, 1, Protection.READ_WRITE)
        assert swap.contains(PageId(asid, 0))
        vm.destroy_address_space(asid)
        assert swap.used == 0

    def test_destroy_flushes_tlbs(self) -> None:
        """No translation of a destroyed space survives in any TLB."""
        vm = _system(num_cpus=2)
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ)
        vm.access(asid, 0, AccessMode.READ, cpu=0)
        vm.access(asid, 0, AccessMode.READ, cpu=1)
        vm.destroy_address_space(asid)
        assert vm.tlb(0).cached_pages(asid) == set()
        assert vm.tlb(1).cached_pages(asid) == set()

    def test_destroyed_space_is_gone(self) -> None:
        """Using a destroyed space raises KeyError."""
        vm = _system()
        asid = vm.create_address_space()
        vm.destroy_address_space(asid)
        with pytest.raises(KeyError):
            vm.access(asid, 0, AccessMode.READ)
        with pytest.raises(KeyError):
            vm.destroy_address_space(asid)

    def test_unknown_space(self) -> None:
        """An id never created raises KeyError."""
        vm = _system()
        with pytest.raises(KeyError, match="No address space"):
            vm.map(99, 0, Protection.READ)


class TestMapAndAccess:
    """Verify mapping and translation."""

    def test_round_trip(self) -> None:
        """An access lands at frame * page size + offset."""
        vm = _system()
        asid = vm.create_address_space()
        frame = vm.map(asid, 3, Protection.READ_WRITE)
        offset = 7
        assert vm.access(asid, _address(3, offset), AccessMode.READ) == frame * PAGE_SIZE + offset

    def test_map_installs_a_present_entry(self) -> None:
        """After map the leaf is present, clean, and unreferenced."""
        vm = _system()
        asid = vm.create_address_space()
        frame = vm.map(asid, 5, Protection.READ)
        entry = vm.page_table(asid).lookup(5)
        assert entry is not None
        assert entry.present
        assert entry.frame_number == frame
        assert not entry.dirty
        assert not entry.referenced

    def test_map_does_not_fill_the_tlb(self) -> None:
        """Only accesses load translations into a TLB."""
        vm = _system()
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ)
        assert vm.tlb().cached_pages(asid) == set()

    def test_remap_changes_protection_only(self) -> None:
        """Mapping a resident page again keeps its frame."""
        vm = _system()
        asid = vm.create_address_space()
        frame = vm.map(asid, 0, Protection.READ)
        with pytest.raises(ProtectionFaultError):
            vm.access(asid, 0, AccessMode.WRITE)
        assert vm.map(asid, 0, Protection.READ_WRITE) == frame
        assert vm.access(asid, 0, AccessMode.WRITE) == frame * PAGE_SIZE

    def test_first_touch_of_reserved_page_is_minor(self) -> None:
        """A reserved page is zero-filled on first access."""
        vm = _system()
        asid = vm.create_address_space()
        vm.reserve(asid, 0, 2, Protection.READ)
        result = vm.translate(asid, _address(1), AccessMode.READ)
        assert result.faults == (FaultKind.MINOR,)
        assert not result.tlb_hit
        assert vm.read(asid, _address(1), PAGE_SIZE) == bytes(PAGE_SIZE)

    def test_second_access_hits_the_tlb(self) -> None:
        """A repeated access is served by the TLB."""
        vm = _system()
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ)
        vm.access(asid, 0, AccessMode.READ)
        assert vm.translate(asid, 0, AccessMode.READ).tlb_hit
        assert vm.tlb().hits == 1

    def test_unmapped_address_is_a_segfault(self) -> None:
        """An address outside every region raises SegmentationFaultError."""
        vm = _system()
        asid = vm.create_address_space()
        with pytest.raises(SegmentationFaultError) as info:
            vm.access(asid, _address(4), AccessMode.READ)
        assert info.value.virtual_page == 4
        assert info.value.asid == asid

    def test_execute_needs_execute_permission(self) -> None:
        """Executing a read-write page is a protection fault."""
        vm = _system()
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ_WRITE)
        with pytest.raises(ProtectionFaultError):
            vm.access(asid, 0, AccessMode.EXECUTE)
        vm.map(asid, 1, Protection.READ_EXECUTE)
        vm.access(asid, _address(1), AccessMode.EXECUTE)

    def test_address_out_of_range(self) -> None:
        """An address wider than the layout is rejected."""
        vm = _system()
        asid = vm.create_address_space()
        with pytest.raises(ValueError, match="outside"):
            vm.access(asid, 1 << 12, AccessMode.READ)

    def test_unknown_cpu(self) -> None:
        """Accessing from a CPU the machine lacks is rejected."""
        vm = _system()
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ)
        with pytest.raises(ValueError, match="CPU 1"):
            vm.access(asid, 0, AccessMode.READ, cpu=1)

    def test_overlapping_reserve_rejected(self) -> None:
        """Regions may not overlap."""
        vm = _system()
        asid = vm.create_address_space()
        vm.reserve(asid, 0, 4, Protection.READ)
        with pytest.raises(ValueError, match="overlaps"):
            vm.reserve(asid, 2, 4, Protection.READ)


class TestUnmapAndProtect:
    """Verify removing mappings and changing protections."""

    def test_unmap_frees_the_frame(self) -> None:
        """Unmapping returns the frame to the free list."""
        vm = _system()
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ)
        vm.unmap(asid, 0)
        assert vm.frames.free_count == vm.frames.total_frames

    def test_unmap_invalidates_every_tlb(self) -> None:
        """After unmap no CPU can hit the old translation."""
        vm = _system(num_cpus=2)
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ)
        vm.access(asid, 0, AccessMode.READ, cpu=0)
        vm.access(asid, 0, AccessMode.READ, cpu=1)
        vm.unmap(asid, 0)
        assert 0 not in vm.tlb(0).cached_pages(asid)
        assert 0 not in vm.tlb(1).cached_pages(asid)
        assert vm.event_count(EventKind.TLB_SHOOTDOWN) == 2
        with pytest.raises(SegmentationFaultError):
            vm.access(asid, 0, AccessMode.READ)

    def test_unmap_of_unmapped_page_is_a_no_op(self) -> None:
        """Unmapping a page that was never mapped does nothing."""
        vm = _system()
        asid = vm.create_address_space()
        vm.unmap(asid, 7)
        assert vm.frames.free_count == vm.frames.total_frames

    def test_unmap_splits_a_region(self) -> None:
        """Unmapping one page of a region leaves its neighbours valid."""
        vm = _system()
        asid = vm.create_address_space()
        vm.reserve(asid, 0, 3, Protection.READ)
        vm.unmap(asid, 1)
        vm.access(asid, _address(0), AccessMode.READ)
        vm.access(asid, _address(2), AccessMode.READ)
        with pytest.raises(SegmentationFaultError):
            vm.access(asid, _address(1), AccessMode.READ)

    def test_remapped_page_starts_from_zeros(self) -> None:
        """A page unmapped and mapped again never sees its old contents."""
        vm = _system(frame_count=1)
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ_WRITE)
        vm.write(asid, 0, b"old")
        vm.map(asid, 1, Protection.READ)
        vm.unmap(asid, 0)
        vm.map(asid, 0, Protection.READ_WRITE)
        vm.map(asid, 1, Protection.READ)
        assert vm.read(asid, 0, 3) == bytes(3)

    def test_unmap_drops_the_stored_copy(self) -> None:
        """Unmapping an evicted page removes it from the backing store."""
        swap = SwapSpace(page_size=PAGE_SIZE)
        vm = _system(frame_count=1, backing_store=swap)
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ_WRITE)
        vm.write(asid, 0, b"old")
        vm.map(asid, 1, Protection.READ)
        assert swap.contains(PageId(asid, 0))
        vm.unmap(asid, 0)
        assert not swap.contains(PageId(asid, 0))

    def test_protect_takes_effect_immediately(self) -> None:
        """Dropping write permission stops writes even with a warm TLB."""
        vm = _system()
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ_WRITE)
        vm.access(asid, 0, AccessMode.WRITE)
        vm.protect(asid, 0, Protection.READ)
        assert 0 not in vm.tlb().cached_pages(asid)
        with pytest.raises(ProtectionFaultError):
            vm.access(asid, 0, AccessMode.WRITE)
        vm.access(asid, 0, AccessMode.READ)

    def test_protect_unmapped_page(self) -> None:
        """Changing the protection of a page with no mapping is an error."""
        vm = _system()
        asid = vm.create_address_space()
        with pytest.raises(ValueError, match="not mapped"):
            vm.protect(asid, 0, Protection.READ)


class TestReadWrite:
    """Verify moving bytes through translation."""

    def test_write_then_read(self) -> None:
        """Written bytes read back unchanged."""
        vm = _system()
        asid = vm.create_address_space()
        vm.map(asid, 2, Protection.READ_WRITE)
        vm.write(asid, _address(2, 3), b"hello")
        assert vm.read(asid, _address(2, 3), 5) == b"hello"

    def test_access_spanning_pages(self) -> None:
        """Reads and writes cross page boundaries."""
        vm = _system()
        asid = vm.create_address_space()
        vm.reserve(asid, 0, 2, Protection.READ_WRITE)
        data = b"abcdefgh"
        vm.write(asid, _address(0, 12), data)
        assert vm.read(asid, _address(0, 12), len(data)) == data
        assert vm.read(asid, _address(1), 4) == b"efgh"

    def test_write_to_read_only_page(self) -> None:
        """Writing a read-only page raises a protection fault."""
        vm = _system()
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ)
        with pytest.raises(ProtectionFaultError):
            vm.write(asid, 0, b"x")

    def test_negative_size_rejected(self) -> None:
        """A negative read size is an error."""
        vm = _system()
        asid = vm.create_address_space()
        with pytest.raises(ValueError, match="non-negative"):
            vm.read(asid, 0, -1)

    def test_empty_read(self) -> None:
        """Reading zero bytes returns nothing and touches nothing."""
        vm = _system()
        asid = vm.create_address_space()
        assert vm.read(asid, 0, 0) == b""


class TestEviction:
    """Verify replacement, write-back, and page-in."""

    def test_data_survives_eviction(self) -> None:
        """A dirty page written back comes back with its contents."""
        vm = _system(frame_count=1)
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ_WRITE)
        vm.write(asid, 0, b"keep me")
        vm.map(asid, 1, Protection.READ_WRITE)
        result = vm.translate(asid, 0, AccessMode.READ)
        assert result.faults == (FaultKind.MAJOR,)
        assert vm.read(asid, 0, 7) == b"keep me"

    def test_dirty_victim_written_back_before_reuse(self) -> None:
        """The backing store sees the write while the frame is still reclaiming."""
        swap = SpySwap()
        vm = _system(frame_count=1, backing_store=swap)
        swap.vm = vm
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ_WRITE)
        vm.write(asid, 0, b"dirty")
        vm.map(asid, 1, Protection.READ)
        assert swap.seen == [(PageId(asid, 0), FrameOwner(asid, 0), FrameState.RECLAIMING)]
        assert vm.frames.frame(0).owner == FrameOwner(asid, 1)
        assert isinstance(vm.events, EventLog)
        kinds = [e.kind for e in vm.events.events if e.frame == 0]
        assert kinds.index(EventKind.WRITE_BACK) < len(kinds) - 1
        assert kinds[-1] is EventKind.FRAME_ALLOCATED

    def test_evicted_translation_is_shot_down(self) -> None:
        """After eviction the old translation is gone from the TLB."""
        vm = _system(frame_count=1)
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ)
        vm.access(asid, 0, AccessMode.READ)
        vm.map(asid, 1, Protection.READ)
        assert 0 not in vm.tlb().cached_pages(asid)
        result = vm.translate(asid, 0, AccessMode.READ)
        assert FaultState.CLASSIFY in result.attempts[0].path

    def test_clock_skips_referenced_pages(self) -> None:
        """The clock hand evicts the first frame not recently used."""
        vm = _system(frame_count=3)
        asid = vm.create_address_space()
        for vpn in range(3):
            vm.map(asid, vpn, Protection.READ)
        vm.access(asid, _address(0), AccessMode.READ)
        vm.access(asid, _address(1), AccessMode.READ)
        vm.map(asid, 3, Protection.READ)
        space = vm.address_space(asid)
        assert space.resident_pages == frozenset({0, 1, 3})

    def test_fifo_evicts_oldest(self) -> None:
        """FIFO replacement ignores use and evicts the oldest page."""
        vm = _system(frame_count=2, replacement_policy="fifo")
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ)
        vm.map(asid, 1, Protection.READ)
        vm.access(asid, _address(0), AccessMode.READ)
        vm.map(asid, 2, Protection.READ)
        assert vm.address_space(asid).resident_pages == frozenset({1, 2})

    def test_lru_evicts_least_recently_used(self) -> None:
        """LRU replacement keeps the page touched last."""
        vm = _system(frame_count=2, replacement_policy="lru")
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ)
        vm.map(asid, 1, Protection.READ)
        vm.access(asid, _address(0), AccessMode.READ)
        vm.map(asid, 2, Protection.READ)
        assert vm.address_space(asid).resident_pages == frozenset({0, 2})

    def test_eviction_crosses_address_spaces(self) -> None:
        """A fault in one space may steal a frame from another."""
        vm = _system(frame_count=1)
        first = vm.create_address_space()
        second = vm.create_address_space()
        vm.map(first, 0, Protection.READ_WRITE)
        vm.write(first, 0, b"first")
        vm.map(second, 0, Protection.READ_WRITE)
        assert vm.address_space(first).resident_pages == frozenset()
        assert vm.read(first, 0, 5) == b"first"

    def test_failed_write_back_keeps_the_page(self) -> None:
        """If the store refuses a write-back, the dirty page stays resident."""
        vm = _system(frame_count=1, backing_store=BrokenSwap(page_size=PAGE_SIZE))
        asid = vm.create_address_space()
        frame = vm.map(asid, 0, Protection.READ_WRITE)
        vm.write(asid, 0, b"precious")
        with pytest.raises(BackingStoreError):
            vm.map(asid, 1, Protection.READ)
        entry = vm.page_table(asid).lookup(0)
        assert entry is not None
        assert entry.present
        assert entry.dirty
        assert entry.frame_number == frame
        assert vm.frames.frame(frame).state is FrameState.ALLOCATED
        assert vm.read(asid, 0, 8) == b"precious"
        errors = vm.logger.filter(min_level=LogLevel.ERROR, source="swap")
        assert len(errors) == 1
        assert vm.address_space(asid).region_for(1) is None


class TestPinning:
    """Verify pinned pages are never evicted."""

    def test_pinned_page_survives_pressure(self) -> None:
        """Replacement skips a pinned frame."""
        vm = _system(frame_count=2)
        asid = vm.create_address_space()
        pinned = vm.map(asid, 0, Protection.READ)
        assert vm.pin(asid, 0) == pinned
        for vpn in range(1, 4):
            vm.map(asid, vpn, Protection.READ)
        assert 0 in vm.address_space(asid).resident_pages
        assert vm.frames.frame(pinned).pinned

    def test_all_pinned_is_out_of_memory(self) -> None:
        """With every frame pinned a fault cannot be resolved."""
        vm = _system(frame_count=1)
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ)
        vm.pin(asid, 0)
        with pytest.raises(OutOfMemoryError):
            vm.map(asid, 1, Protection.READ)
        assert vm.event_count(EventKind.OUT_OF_MEMORY) == 1

    def test_failed_map_leaves_page_invalid(self) -> None:
        """A page that could not be mapped still segfaults afterwards."""
        vm = _system(frame_count=1)
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ)
        vm.pin(asid, 0)
        with pytest.raises(OutOfMemoryError):
            vm.map(asid, 1, Protection.READ)
        assert vm.address_space(asid).region_for(1) is None
        with pytest.raises(SegmentationFaultError):
            vm.access(asid, _address(1), AccessMode.READ)

    def test_failed_map_restores_old_protection(self) -> None:
        """A failed map of a reserved page keeps the region's protection."""
        vm = _system(frame_count=1)
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ)
        vm.pin(asid, 0)
        vm.reserve(asid, 1, 1, Protection.READ)
        with pytest.raises(OutOfMemoryError):
            vm.map(asid, 1, Protection.READ_WRITE)
        region = vm.address_space(asid).region_for(1)
        assert region is not None
        assert region.protection is Protection.READ

    def test_unpin_makes_page_evictable(self) -> None:
        """An unpinned page can be replaced again."""
        vm = _system(frame_count=1)
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ)
        vm.pin(asid, 0)
        vm.unpin(asid, 0)
        vm.map(asid, 1, Protection.READ)
        assert vm.address_space(asid).resident_pages == frozenset({1})

    def test_pin_faults_a_reserved_page_in(self) -> None:
        """Pinning a reserved but untouched page makes it resident."""
        vm = _system()
        asid = vm.create_address_space()
        vm.reserve(asid, 0, 1, Protection.READ)
        frame = vm.pin(asid, 0)
        assert vm.frames.frame(frame).pinned
        assert 0 in vm.address_space(asid).resident_pages

    def test_pin_unmapped_page(self) -> None:
        """Pinning a page with no mapping is a segmentation fault."""
        vm = _system()
        asid = vm.create_address_space()
        with pytest.raises(SegmentationFaultError):
            vm.pin(asid, 0)

    def test_unpin_non_resident_page(self) -> None:
        """Unpinning a page that is not resident is an error."""
        vm = _system()
        asid = vm.create_address_space()
        with pytest.raises(ValueError, match="not resident"):
            vm.unpin(asid, 0)


class TestInvertedPageTable:
    """Verify the machine works the same with an inverted page table."""

    def test_round_trip_and_eviction(self) -> None:
        """Mapping, eviction, and page-in all work through the shared table."""
        vm = _system(frame_count=2, page_table_kind="inverted")
        first = vm.create_address_space()
        second = vm.create_address_space()
        frame = vm.map(first, 0, Protection.READ_WRITE)
        assert vm.access(first, 5, AccessMode.READ) == frame * PAGE_SIZE + 5
        vm.write(first, 0, b"inverted")
        vm.map(second, 0, Protection.READ)
        vm.map(second, 1, Protection.READ)
        assert vm.read(first, 0, 8) == b"inverted"
        assert "page_table_probes" in vm.stats()

    def test_spaces_do_not_see_each_other(self) -> None:
        """The same virtual page in two spaces maps to different frames."""
        vm = _system(page_table_kind="inverted")
        first = vm.create_address_space()
        second = vm.create_address_space()
        assert vm.map(first, 0, Protection.READ) != vm.map(second, 0, Protection.READ)
        vm.unmap(first, 0)
        vm.access(second, 0, AccessMode.READ)


class TestStats:
    """Verify the machine summary."""

    def test_stats_shape(self) -> None:
        """Stats report frames, TLBs, spaces, and event counts."""
        vm = _system(frame_count=4)
        asid = vm.create_address_space()
        vm.map(asid, 0, Protection.READ)
        vm.pin(asid, 0)
        vm.reserve(asid, 1, 1, Protection.READ)
        vm.access(asid, _address(1), AccessMode.READ)
        stats = vm.stats()
        assert stats["frames"] == {"total": 4, "free": 2, "allocated": 2, "pinned": 1}
        assert stats["tlbs"][0]["cpu"] == 0
        space = stats["spaces"][0]
        assert space["asid"] == asid
        assert space["resident"] == 2
        assert space["minor_faults"] == 1
        assert stats["events"]["minor_fault"] == 1
        assert "page_table_probes" not in stats
