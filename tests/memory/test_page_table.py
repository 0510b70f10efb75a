"""Tests for the multi-level page table.

The table is a radix tree over the virtual page number.  Intermediate
levels appear only when a page below them is first touched, and they
stay until the table is cleared.
"""

import pytest

from py_vmm.addressing import AddressLayout, Protection
from py_vmm.errors import FaultKind, PageFaultError
from py_vmm.memory.page_table import MultiLevelPageTable, PageTableEntry

LAYOUT = AddressLayout(level_bits=(2, 2, 2), offset_bits=4)
PAGE = 0b01_10_11
OTHER_PAGE = 0b01_10_00
FAR_PAGE = 0b11_00_00
FRAME = 5


def _table(*, lazy: bool = True) -> MultiLevelPageTable:
    return MultiLevelPageTable(LAYOUT, allow_lazy_intermediate=lazy)


class TestMapAndTranslate:
    """Verify installing and walking mappings."""

    def test_map_then_translate(self) -> None:
        """A mapped page should translate to its frame."""
        table = _table()
        table.map(PAGE, FRAME, Protection.READ_WRITE)
        entry = table.translate(PAGE)
        assert entry.present
        assert entry.frame_number == FRAME
        assert entry.protection is Protection.READ_WRITE

    def test_map_allocates_one_table_per_level(self) -> None:
        """A first mapping in a 3-level table should create two new tables."""
        table = _table()
        table.map(PAGE, FRAME, Protection.READ)
        expected_nodes = 3
        assert table.node_count == expected_nodes

    def test_sibling_pages_share_tables(self) -> None:
        """Pages under the same leaf table should not allocate more levels."""
        table = _table()
        table.map(PAGE, FRAME, Protection.READ)
        table.map(OTHER_PAGE, FRAME + 1, Protection.READ)
        expected_nodes = 3
        assert table.node_count == expected_nodes

    def test_map_resets_access_bits(self) -> None:
        """A fresh mapping starts clean and unreferenced."""
        table = _table()
        table.map(PAGE, FRAME, Protection.READ_WRITE)
        table.set_dirty(PAGE)
        table.set_referenced(PAGE)
        table.map(PAGE, FRAME + 1, Protection.READ_WRITE)
        entry = table.translate(PAGE)
        assert not entry.dirty
        assert not entry.referenced

    def test_walk_counter(self) -> None:
        """Each translate call should count as one walk."""
        table = _table()
        table.map(PAGE, FRAME, Protection.READ)
        table.translate(PAGE)
        table.translate(PAGE)
        expected_walks = 2
        assert table.walks == expected_walks

    def test_mappings_lists_present_pages(self) -> None:
        """Mappings should rebuild page numbers from tree indices."""
        table = _table()
        table.map(PAGE, FRAME, Protection.READ)
        table.map(FAR_PAGE, FRAME + 1, Protection.READ)
        assert table.mappings() == {PAGE: FRAME, FAR_PAGE: FRAME + 1}
        expected_len = 2
        assert len(table) == expected_len

    def test_out_of_range_page_raises(self) -> None:
        """A page number wider than the layout is a caller error."""
        table = _table()
        with pytest.raises(ValueError, match="outside"):
            table.map(LAYOUT.page_count, FRAME, Protection.READ)

    def test_single_level_layout(self) -> None:
        """A one-level layout should behave like a flat table."""
        table = MultiLevelPageTable(AddressLayout(level_bits=(4,), offset_bits=4))
        table.map(3, FRAME, Protection.READ)
        assert table.mappings() == {3: FRAME}


class TestFaults:
    """Verify which fault a failed walk raises."""

    def test_missing_levels_minor_when_lazy(self) -> None:
        """Running off the tree is a minor fault with lazy allocation."""
        table = _table(lazy=True)
        with pytest.raises(PageFaultError) as info:
            table.translate(PAGE)
        assert info.value.kind is FaultKind.MINOR

    def test_missing_levels_segmentation_when_strict(self) -> None:
        """Running off the tree is a segmentation fault without lazy allocation."""
        table = _table(lazy=False)
        with pytest.raises(PageFaultError) as info:
            table.translate(PAGE)
        assert info.value.kind is FaultKind.SEGMENTATION

    def test_prepared_page_faults_minor(self) -> None:
        """A prepared but absent leaf is a demand-zero (minor) fault."""
        table = _table(lazy=False)
        table.prepare(PAGE, Protection.READ)
        with pytest.raises(PageFaultError) as info:
            table.translate(PAGE)
        assert info.value.kind is FaultKind.MINOR

    def test_evicted_page_faults_major(self) -> None:
        """An evicted page lives in the backing store: major fault."""
        table = _table()
        table.map(PAGE, FRAME, Protection.READ)
        table.evict(PAGE)
        with pytest.raises(PageFaultError) as info:
            table.translate(PAGE)
        assert info.value.kind is FaultKind.MAJOR
        assert info.value.virtual_page == PAGE


class TestUnmapAndEvict:
    """Verify clearing leaves."""

    def test_unmap_returns_previous_state(self) -> None:
        """Unmap should report what the entry held."""
        table = _table()
        table.map(PAGE, FRAME, Protection.READ_WRITE)
        table.set_dirty(PAGE)
        before = table.unmap(PAGE)
        assert before is not None
        assert before.frame_number == FRAME
        assert before.dirty

    def test_unmap_keeps_intermediate_tables(self) -> None:
        """Levels stay allocated after their only page is unmapped."""
        table = _table()
        table.map(PAGE, FRAME, Protection.READ)
        nodes = table.node_count
        table.unmap(PAGE)
        assert table.node_count == nodes
        entry = table.lookup(PAGE)
        assert entry is not None
        assert not entry.present
        assert entry.frame_number is None

    def test_unmap_unknown_page_is_noop(self) -> None:
        """Unmapping a page that was never mapped returns None."""
        assert _table().unmap(PAGE) is None

    def test_unmap_forgets_backing_copy(self) -> None:
        """After unmap the page is no longer a major-fault candidate."""
        table = _table()
        table.map(PAGE, FRAME, Protection.READ)
        table.evict(PAGE)
        table.unmap(PAGE)
        entry = table.lookup(PAGE)
        assert entry is not None
        assert not entry.backed

    def test_evict_marks_absent_and_backed(self) -> None:
        """Evict should clear present and frame but set backed."""
        table = _table()
        table.map(PAGE, FRAME, Protection.READ_WRITE)
        before = table.evict(PAGE)
        entry = table.lookup(PAGE)
        assert before.frame_number == FRAME
        assert entry is not None
        assert not entry.present
        assert entry.frame_number is None
        assert entry.backed
        assert entry.protection is Protection.READ_WRITE

    def test_evict_absent_page_raises(self) -> None:
        """Only a present page can be evicted."""
        with pytest.raises(ValueError, match="not present"):
            _table().evict(PAGE)

    def test_remap_keeps_backed_flag(self) -> None:
        """A page reloaded from the backing store still knows it is backed."""
        table = _table()
        table.map(PAGE, FRAME, Protection.READ)
        table.evict(PAGE)
        table.map(PAGE, FRAME + 1, Protection.READ)
        assert table.translate(PAGE).backed

    def test_clear_drops_everything(self) -> None:
        """Clear should leave only an empty root."""
        table = _table()
        table.map(PAGE, FRAME, Protection.READ)
        table.clear()
        assert table.node_count == 1
        assert table.lookup(PAGE) is None


class TestBits:
    """Verify bit updates."""

    def test_set_and_clear_referenced(self) -> None:
        """The referenced bit can be set and cleared."""
        table = _table()
        table.map(PAGE, FRAME, Protection.READ)
        table.set_referenced(PAGE)
        assert table.translate(PAGE).referenced
        table.set_referenced(PAGE, value=False)
        assert not table.translate(PAGE).referenced

    def test_bits_on_absent_page_raise(self) -> None:
        """Bits can only change on a present page."""
        table = _table()
        with pytest.raises(ValueError, match="not present"):
            table.set_dirty(PAGE)

    def test_protect_changes_protection(self) -> None:
        """Protect should rewrite the entry's protection."""
        table = _table()
        table.map(PAGE, FRAME, Protection.READ_WRITE)
        table.protect(PAGE, Protection.READ)
        assert table.translate(PAGE).protection is Protection.READ

    def test_snapshot_is_independent(self) -> None:
        """A snapshot should not follow later changes."""
        entry = PageTableEntry(frame_number=FRAME, present=True)
        copy = entry.snapshot()
        entry.dirty = True
        assert not copy.dirty
