"""Memory hardware and its bookkeeping — frames, page tables, TLB, swap.

Re-exports public symbols so callers can write::

    from py_vmm.memory import FrameAllocator, MultiLevelPageTable, TLB
"""

from py_vmm.memory.frames import Frame, FrameAllocator, FrameOwner, FrameState, PhysicalMemory
from py_vmm.memory.inverted import InvertedPageTable, InvertedPageTableView
from py_vmm.memory.page_table import MultiLevelPageTable, PageTable, PageTableEntry
from py_vmm.memory.replacement import (
    ClockPolicy,
    FIFOPolicy,
    LRUPolicy,
    ReferenceBits,
    ReplacementPolicy,
    make_policy,
)
from py_vmm.memory.swap import BackingStore, FileBackingStore, PageId, SwapSpace
from py_vmm.memory.tlb import TLB, TLBEntry

__all__ = [
    "TLB",
    "BackingStore",
    "ClockPolicy",
    "FIFOPolicy",
    "FileBackingStore",
    "Frame",
    "FrameAllocator",
    "FrameOwner",
    "FrameState",
    "InvertedPageTable",
    "InvertedPageTableView",
    "LRUPolicy",
    "MultiLevelPageTable",
    "PageId",
    "PageTable",
    "PageTableEntry",
    "PhysicalMemory",
    "ReferenceBits",
    "ReplacementPolicy",
    "SwapSpace",
    "TLBEntry",
    "make_policy",
]
